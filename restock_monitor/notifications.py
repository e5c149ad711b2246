"""Notification generator.

Diffs a variant's newly ingested state against the state persisted before
the ingestion and records one notification per material change.  The
baseline is always the stored value, so re-running a check that already
committed finds nothing new.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Dict, List, Optional

from . import db
from .models import (IngestResult, Notification, NotificationType, StockStatus,
                     VariantSnapshot)
from .utils import utc_now

logger = logging.getLogger(__name__)

_WAS_UNAVAILABLE = (StockStatus.OUT_OF_STOCK, StockStatus.UNKNOWN)


def variant_label(name: str, attributes: Optional[Dict[str, str]] = None) -> str:
    if not attributes:
        return name
    return f"{name} ({' / '.join(attributes.values())})"


def _price_message(label: str, old: float, new: float) -> str:
    direction = "decreased" if new < old else "increased"
    pct = abs(new - old) / old * 100 if old else 0.0
    return f"{label} price {direction} by {pct:.1f}% from {old:.2f} to {new:.2f}"


def _stock_message(label: str, new: StockStatus) -> str:
    if new is StockStatus.IN_STOCK:
        return f"{label} is back in stock!"
    if new is StockStatus.OUT_OF_STOCK:
        return f"{label} is now out of stock"
    return f"{label} stock status is now unknown"


def detect_changes(
    variant_id: int,
    previous: Optional[VariantSnapshot],
    current: VariantSnapshot,
    *,
    product_id: int,
    label: str = "Product",
) -> List[Notification]:
    """Return the notifications for one variant's transition.

    Nothing is emitted for a first observation (`previous` is None).
    """
    if previous is None:
        return []
    now = utc_now()
    out: List[Notification] = []

    old_price, new_price = previous.current_price, current.current_price
    if old_price is not None and new_price is not None and old_price != new_price:
        out.append(Notification(
            type=NotificationType.PRICE,
            product_id=product_id,
            variant_id=variant_id,
            old_price=old_price,
            new_price=new_price,
            message=_price_message(label, old_price, new_price),
            created_at=now,
        ))

    old_status, new_status = previous.current_stock_status, current.current_stock_status
    if old_status is not new_status:
        restock = old_status in _WAS_UNAVAILABLE and new_status is StockStatus.IN_STOCK
        out.append(Notification(
            type=NotificationType.RESTOCK if restock else NotificationType.STOCK,
            product_id=product_id,
            variant_id=variant_id,
            old_status=old_status,
            new_status=new_status,
            message=_stock_message(label, new_status),
            created_at=now,
        ))
    return out


def record_changes(conn: sqlite3.Connection, result: IngestResult) -> List[Notification]:
    """Diff every ingested variant and store the resulting notifications."""
    created: List[Notification] = []
    for variant in result.variants:
        found = detect_changes(
            variant.id,
            result.previous.get(variant.id),
            VariantSnapshot.of(variant),
            product_id=result.product.id,
            label=variant_label(result.product.name, variant.attributes),
        )
        for n in found:
            db.insert_notification(conn, n)
            logger.info("%s notification %s: %s", n.type.value, n.id, n.message)
        created.extend(found)
    return created


__all__ = ["detect_changes", "record_changes", "variant_label"]
