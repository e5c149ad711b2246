"""Variant attribute normalisation and bounded combination.

Attribute axes (size, color, ...) are collected by the extractor; the
variant set is their cartesian product, generated lazily and cut off at
the configured cap so a page with many axes cannot blow up memory.
"""

from __future__ import annotations

import itertools
import json
import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

_NAME_ALIASES = {
    "colour": "color",
    "colours": "color",
    "colors": "color",
    "sizes": "size",
    "select_size": "size",
    "select_color": "color",
}


def normalize_attribute_name(name: object) -> str:
    key = re.sub(r"[^\w\s]", "", str(name or "").strip().lower())
    key = re.sub(r"\s+", "_", key.strip())
    return _NAME_ALIASES.get(key, key)


def normalize_attribute_value(value: object) -> str:
    return " ".join(str(value if value is not None else "").split())


def normalize_attributes(attributes: Mapping[str, object]) -> Dict[str, str]:
    """Clean names and values, keeping the original axis order."""
    out: Dict[str, str] = {}
    for name, value in attributes.items():
        key = normalize_attribute_name(name)
        val = normalize_attribute_value(value)
        if key and val and key not in out:
            out[key] = val
    return out


def attributes_key(attributes: Mapping[str, object]) -> str:
    """Signature used to match variants: ignores key order and value case."""
    pairs = sorted(
        (normalize_attribute_name(k), normalize_attribute_value(v).casefold())
        for k, v in attributes.items()
        if normalize_attribute_name(k) and normalize_attribute_value(v)
    )
    return json.dumps(pairs, ensure_ascii=False, separators=(",", ":"))


@dataclass
class Axis:
    name: str
    values: List[str] = field(default_factory=list)


def add_axis(axes: List[Axis], name: object, values: Iterable[object]) -> None:
    """Append an axis (or extend an existing one) with de-duplicated values."""
    key = normalize_attribute_name(name)
    if not key:
        return
    axis = next((a for a in axes if a.name == key), None)
    if axis is None:
        axis = Axis(key)
        axes.append(axis)
    seen = {v.casefold() for v in axis.values}
    for value in values:
        val = normalize_attribute_value(value)
        if val and val.casefold() not in seen:
            seen.add(val.casefold())
            axis.values.append(val)
    if not axis.values:
        axes.remove(axis)


def combine(axes: List[Axis], cap: int) -> Tuple[List[Dict[str, str]], Optional[str]]:
    """Return at most `cap` attribute combinations and a truncation note.

    Combinations come out in axis order with values in first-seen order,
    so the same input always keeps the same prefix of the full product.
    """
    axes = [a for a in axes if a.values]
    if not axes:
        return [{}], None

    total = math.prod(len(a.values) for a in axes)
    names = [a.name for a in axes]
    combos = itertools.islice(itertools.product(*(a.values for a in axes)), cap)
    kept = [dict(zip(names, combo)) for combo in combos]

    note = None
    if total > len(kept):
        note = f"variants truncated: found {total}, kept {len(kept)}"
    return kept, note


__all__ = [
    "Axis",
    "add_axis",
    "combine",
    "attributes_key",
    "normalize_attributes",
    "normalize_attribute_name",
    "normalize_attribute_value",
]
