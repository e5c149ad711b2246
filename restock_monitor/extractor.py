"""Product extractor.

Turns a fetched product page into an :class:`ExtractedProduct`.  Pages are
tried against an ordered list of strategies; the first one that yields a
plausible product (a name and at least one price) wins and nothing from
the strategies before it is kept.

* ``structured-data``: JSON-LD ``Product``/``ProductGroup`` nodes and
  Shopify-style product JSON blobs.
* ``dom-heuristics``: meta tags, price/stock selectors, title and image
  heuristics.

Both strategies share the variant enumeration step: attribute axes come
from the structured data when it has them, otherwise from the page's
option pickers (``<select>`` and radio groups).
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from . import config
from .errors import ExtractionError, ExtractionErrorKind
from .models import ExtractedProduct, ExtractedVariant, StockStatus
from .utils import SHOPIFY_MARKERS
from .variants import (Axis, add_axis, attributes_key, combine,
                       normalize_attribute_name, normalize_attributes)

logger = logging.getLogger(__name__)


# ---------------------------
# Page context
# ---------------------------

@dataclass
class PageContext:
    url: str
    soup: BeautifulSoup
    json_ld: List[Any] = field(default_factory=list)
    json_blobs: List[Any] = field(default_factory=list)
    # Shopify page or product-json attachment: integer prices are cents.
    shopify: bool = False


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        # Unescaped control characters are common in hand-written JSON-LD.
        return json.loads(re.sub(r"[\x00-\x1f]+", " ", text))


def build_context(html: str, url: str) -> PageContext:
    soup = BeautifulSoup(html, "html.parser")
    ctx = PageContext(url=url, soup=soup)
    ctx.shopify = (
        any(m in html for m in SHOPIFY_MARKERS)
        or soup.find("script", id="product-json") is not None
    )
    for tag in soup.find_all("script"):
        script_type = (tag.get("type") or "").lower()
        if script_type not in ("application/ld+json", "application/json"):
            continue
        text = tag.string or tag.get_text() or ""
        if not text.strip():
            continue
        try:
            data = _load_json(text.strip())
        except ValueError:
            logger.debug("Skipping malformed %s block on %s", script_type, url)
            continue
        if script_type == "application/ld+json":
            ctx.json_ld.append(data)
        else:
            ctx.json_blobs.append(data)
    return ctx


# ---------------------------
# Small parsing helpers
# ---------------------------

def _iter_dicts(o: Any, depth: int = 0) -> Iterator[dict]:
    """Yield all dicts inside arbitrary JSON (list/dict scalars)."""
    if depth > 12:
        return
    if isinstance(o, dict):
        yield o
        for v in o.values():
            yield from _iter_dicts(v, depth + 1)
    elif isinstance(o, list):
        for v in o:
            yield from _iter_dicts(v, depth + 1)


def _first_nonempty(*vals) -> Optional[str]:
    for v in vals:
        if v:
            s = " ".join(str(v).split())
            if s:
                return s
    return None


_CURRENCY_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY", "₹": "INR"}
_CURRENCY_CODE_RE = re.compile(r"\b(USD|EUR|GBP|JPY|INR|CAD|AUD|NZD|CHF|SEK|NOK|DKK|PLN)\b")
_NUMBER_RE = re.compile(r"\d[\d.,\s]*")


def parse_price(value: Any) -> Optional[float]:
    """Parse a price from a number or free text ("$1,299.99", "1.299,00 €")."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return round(float(value), 2) if value >= 0 else None
    m = _NUMBER_RE.search(str(value))
    if not m:
        return None
    num = re.sub(r"\s+", "", m.group(0)).rstrip(".,")
    if "," in num and "." in num:
        if num.rfind(",") > num.rfind("."):
            num = num.replace(".", "").replace(",", ".")
        else:
            num = num.replace(",", "")
    elif "," in num:
        head, _, tail = num.rpartition(",")
        if num.count(",") == 1 and len(tail) in (1, 2):
            num = f"{head}.{tail}"
        else:
            num = num.replace(",", "")
    elif num.count(".") > 1:
        num = num.replace(".", "")
    try:
        return round(float(num), 2)
    except ValueError:
        return None


def detect_currency(text: Any) -> Optional[str]:
    if not text:
        return None
    s = str(text)
    m = _CURRENCY_CODE_RE.search(s.upper())
    if m:
        return m.group(1)
    for symbol, code in _CURRENCY_SYMBOLS.items():
        if symbol in s:
            return code
    return None


_OUT_OF_STOCK_WORDS = ("outofstock", "out_of_stock", "out of stock", "soldout", "sold out",
                       "sold_out", "discontinued", "unavailable", "not available")
_IN_STOCK_WORDS = ("instock", "in_stock", "in stock", "limitedavailability", "onlineonly",
                   "instoreonly", "available")


def parse_availability(value: Any) -> StockStatus:
    """Map schema.org availability, booleans and free text to a stock status."""
    if isinstance(value, bool):
        return StockStatus.IN_STOCK if value else StockStatus.OUT_OF_STOCK
    if value is None:
        return StockStatus.UNKNOWN
    text = str(value).strip().lower()
    if not text:
        return StockStatus.UNKNOWN
    # "unavailable" contains "available": check the negative forms first
    if any(w in text for w in _OUT_OF_STOCK_WORDS):
        return StockStatus.OUT_OF_STOCK
    if any(w in text for w in _IN_STOCK_WORDS):
        return StockStatus.IN_STOCK
    return StockStatus.UNKNOWN


def _absolute_url(src: Any, base_url: str) -> Optional[str]:
    if not src or not isinstance(src, str):
        return None
    src = src.strip()
    if not src or src.startswith("data:"):
        return None
    if src.startswith("//"):
        return "https:" + src
    return urljoin(base_url, src)


def _meta(soup: BeautifulSoup, *keys: str) -> Optional[str]:
    for key in keys:
        el = soup.find("meta", attrs={"property": key}) or soup.find("meta", attrs={"name": key})
        if el and el.get("content"):
            return el["content"].strip()
    return None


def _combined_status(statuses: List[StockStatus]) -> StockStatus:
    if any(s is StockStatus.IN_STOCK for s in statuses):
        return StockStatus.IN_STOCK
    if statuses and all(s is StockStatus.OUT_OF_STOCK for s in statuses):
        return StockStatus.OUT_OF_STOCK
    return StockStatus.UNKNOWN


# ---------------------------
# Variant assembly
# ---------------------------

@dataclass
class _VariantData:
    """Attribute axes plus any per-variant data the page spells out."""

    axes: List[Axis] = field(default_factory=list)
    explicit: Dict[str, ExtractedVariant] = field(default_factory=dict)

    def add_explicit(self, variant: ExtractedVariant) -> None:
        key = attributes_key(variant.attributes)
        self.explicit.setdefault(key, variant)


def _assemble_variants(
    data: _VariantData,
    price: Optional[float],
    status: StockStatus,
    currency: Optional[str],
    notes: List[str],
    cap: int,
) -> List[ExtractedVariant]:
    combos, note = combine(data.axes, cap)
    if note:
        notes.append(note)
    out: List[ExtractedVariant] = []
    for attrs in combos:
        override = data.explicit.get(attributes_key(attrs))
        v_price = override.price if override and override.price is not None else price
        v_status = status
        if override and override.stock_status is not StockStatus.UNKNOWN:
            v_status = override.stock_status
        out.append(
            ExtractedVariant(
                attributes=dict(attrs),
                price=v_price,
                stock_status=v_status,
                currency=(override.currency if override and override.currency else currency),
                sku=override.sku if override else None,
            )
        )
    return out


# ---------------------------
# DOM pickers (shared by both strategies)
# ---------------------------

_SKIP_PICKER_NAMES = re.compile(
    r"quantity|qty|country|currency|sort|language|locale|region|shipping|payment|rating|"
    r"search|newsletter|gift|^id$",
    re.IGNORECASE,
)
_PLACEHOLDER_RE = re.compile(r"^(--|select\b|choose\b|pick\b|please select)", re.IGNORECASE)
_SOLD_OUT_SUFFIX_RE = re.compile(
    r"\s*[-–(\[]?\s*(sold out|out of stock|unavailable)\s*[)\]]?\s*$", re.IGNORECASE
)


def _clean_picker_name(raw: str) -> str:
    raw = (raw or "").strip()
    m = re.search(r"\[([^\]]+)\]$", raw)
    if m:
        raw = m.group(1)
    raw = re.sub(r"^(attribute_)?(pa_)?", "", raw)
    raw = re.sub(r"^(select|choose)[\s_-]+", "", raw, flags=re.IGNORECASE)
    return raw.replace("-", " ").strip()


def _label_for(soup: BeautifulSoup, el: Tag) -> Optional[str]:
    el_id = el.get("id")
    if el_id:
        label = soup.find("label", attrs={"for": el_id})
        if label:
            text = label.get_text(" ", strip=True).rstrip(":").strip()
            if text:
                return text
    return el.get("aria-label")


def _dom_variant_data(ctx: PageContext) -> _VariantData:
    soup = ctx.soup
    data = _VariantData()
    unavailable: Dict[str, List[str]] = {}

    for select in soup.find_all("select"):
        raw_name = select.get("name") or select.get("id") or ""
        if not raw_name or _SKIP_PICKER_NAMES.search(raw_name):
            continue
        name = _label_for(soup, select) or _clean_picker_name(raw_name)
        if _SKIP_PICKER_NAMES.search(name):
            continue
        values: List[str] = []
        for option in select.find_all("option"):
            text = option.get_text(" ", strip=True)
            value = option.get("value")
            if value is not None and not value.strip():
                continue
            if not text or _PLACEHOLDER_RE.match(text):
                continue
            sold_out = option.has_attr("disabled") or bool(_SOLD_OUT_SUFFIX_RE.search(text))
            text = _SOLD_OUT_SUFFIX_RE.sub("", text).strip()
            if not text:
                continue
            values.append(text)
            if sold_out:
                unavailable.setdefault(normalize_attribute_name(name), []).append(text)
        add_axis(data.axes, name, values)

    radio_groups: Dict[str, List[str]] = {}
    for radio in soup.find_all("input", attrs={"type": "radio"}):
        raw_name = radio.get("name") or ""
        if not raw_name or _SKIP_PICKER_NAMES.search(raw_name):
            continue
        label = _label_for(soup, radio)
        value = _first_nonempty(radio.get("value"), label)
        if not value:
            continue
        radio_groups.setdefault(_clean_picker_name(raw_name), []).append(value)
        if radio.has_attr("disabled"):
            unavailable.setdefault(normalize_attribute_name(_clean_picker_name(raw_name)), []).append(value)
    for name, values in radio_groups.items():
        if len(values) > 1:
            add_axis(data.axes, name, values)

    # Disabled options only say something about a variant when there is one axis.
    if len(data.axes) == 1:
        axis = data.axes[0]
        for value in unavailable.get(axis.name, []):
            data.add_explicit(
                ExtractedVariant(attributes={axis.name: value}, stock_status=StockStatus.OUT_OF_STOCK)
            )
    return data


# ---------------------------
# Structured data strategy
# ---------------------------

def _types(node: dict) -> List[str]:
    t = node.get("@type")
    items = t if isinstance(t, list) else [t]
    # "https://schema.org/Product" and "schema:Product" both count
    return [str(x).rsplit("/", 1)[-1].split(":")[-1].lower() for x in items if x]


def _ld_nodes(ctx: PageContext, kind: str) -> List[dict]:
    return [d for doc in ctx.json_ld for d in _iter_dicts(doc) if kind in _types(d)]


def _offers(node: dict) -> List[dict]:
    offers = node.get("offers")
    if isinstance(offers, dict):
        # AggregateOffer may nest the individual offers
        nested = offers.get("offers")
        if isinstance(nested, list):
            return [o for o in nested if isinstance(o, dict)] or [offers]
        return [offers]
    if isinstance(offers, list):
        return [o for o in offers if isinstance(o, dict)]
    return []


def _offer_price(offer: dict) -> Optional[float]:
    price_spec = offer.get("priceSpecification")
    if isinstance(price_spec, list):
        price_spec = price_spec[0] if price_spec and isinstance(price_spec[0], dict) else {}
    if not isinstance(price_spec, dict):
        price_spec = {}
    for raw in (offer.get("price"), offer.get("lowPrice"), price_spec.get("price")):
        price = parse_price(raw)
        if price is not None:
            return price
    return None


def _offer_currency(offer: dict) -> Optional[str]:
    price_spec = offer.get("priceSpecification")
    spec_currency = price_spec.get("priceCurrency") if isinstance(price_spec, dict) else None
    return _first_nonempty(offer.get("priceCurrency"), spec_currency)


def _summarize_offers(offers: List[dict]) -> Tuple[Optional[float], StockStatus, Optional[str]]:
    prices = [p for p in (_offer_price(o) for o in offers) if p is not None]
    statuses = [parse_availability(o.get("availability")) for o in offers if o.get("availability")]
    currency = next((c for c in (_offer_currency(o) for o in offers) if c), None)
    return (min(prices) if prices else None), _combined_status(statuses), currency


def _ld_images(node: dict, base_url: str) -> List[str]:
    image = node.get("image")
    items = image if isinstance(image, list) else [image]
    out = []
    for item in items:
        if isinstance(item, dict):
            item = item.get("url") or item.get("contentUrl")
        url = _absolute_url(item, base_url)
        if url:
            out.append(url)
    return out


def _brand_name(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return _first_nonempty(value.get("name"))
    if isinstance(value, list) and value:
        return _brand_name(value[0])
    return _first_nonempty(value) if isinstance(value, str) else None


_LD_ATTRIBUTE_KEYS = ("color", "size", "material", "pattern", "style", "width", "length", "flavor")


def _ld_variant_attributes(node: dict, varies_by: List[str]) -> Dict[str, str]:
    attrs: Dict[str, Any] = {}
    for key in varies_by or _LD_ATTRIBUTE_KEYS:
        value = node.get(key)
        if isinstance(value, dict):
            value = value.get("name")
        if value:
            attrs[key] = value
    for prop in node.get("additionalProperty") or []:
        if isinstance(prop, dict) and prop.get("name") and prop.get("value"):
            attrs.setdefault(prop["name"], prop["value"])
    return normalize_attributes(attrs)


def _ld_group_variant_data(group: dict) -> _VariantData:
    data = _VariantData()
    varies_by = group.get("variesBy") or []
    if isinstance(varies_by, str):
        varies_by = [varies_by]
    varies_by = [str(v).rstrip("/").rsplit("/", 1)[-1] for v in varies_by]

    members = group.get("hasVariant") or []
    if isinstance(members, dict):
        members = [members]
    for member in members:
        if not isinstance(member, dict):
            continue
        attrs = _ld_variant_attributes(member, varies_by)
        if not attrs:
            continue
        for name, value in attrs.items():
            add_axis(data.axes, name, [value])
        price, status, currency = _summarize_offers(_offers(member))
        data.add_explicit(
            ExtractedVariant(
                attributes=attrs,
                price=price,
                stock_status=status,
                currency=currency,
                sku=_first_nonempty(member.get("sku")),
            )
        )
    return data


def _is_shopify_product(d: dict) -> bool:
    variants = d.get("variants")
    if not isinstance(variants, list) or not variants:
        return False
    first = variants[0]
    return isinstance(first, dict) and ("option1" in first or "price" in first) and (
        "title" in d or "options" in d
    )


def _find_shopify_product(ctx: PageContext) -> Optional[dict]:
    for blob in ctx.json_blobs:
        for d in _iter_dicts(blob):
            if _is_shopify_product(d):
                return d
    return None


def _shopify_price(value: Any, cents: bool) -> Optional[float]:
    # Shopify themes and .js endpoints report integer cents; other sites whole units
    if cents and isinstance(value, int) and not isinstance(value, bool):
        return round(value / 100.0, 2)
    return parse_price(value)


def _shopify_variant_data(product: dict, cents: bool) -> _VariantData:
    data = _VariantData()
    names: List[str] = []
    for idx, opt in enumerate(product.get("options") or []):
        name = opt.get("name") if isinstance(opt, dict) else opt
        names.append(str(name or f"option{idx + 1}"))

    variants = [v for v in product.get("variants") or [] if isinstance(v, dict)]
    if not names and variants and variants[0].get("option1") is not None:
        names = ["option"]

    for v in variants:
        attrs = {}
        for idx, name in enumerate(names[:3]):
            value = v.get(f"option{idx + 1}")
            if value is not None:
                attrs[name] = value
        attrs = normalize_attributes(attrs)
        # Single-variant products carry a placeholder option
        if list(attrs.values()) == ["Default Title"]:
            attrs = {}
        for name, value in attrs.items():
            add_axis(data.axes, name, [value])
        available = v.get("available")
        data.add_explicit(
            ExtractedVariant(
                attributes=attrs,
                price=_shopify_price(v.get("price"), cents),
                stock_status=parse_availability(available) if available is not None else StockStatus.UNKNOWN,
                sku=_first_nonempty(v.get("sku")),
            )
        )
    return data


def _shopify_images(product: dict, base_url: str) -> List[str]:
    out = []
    items = list(product.get("images") or [])
    items.insert(0, product.get("featured_image"))
    for item in items:
        if isinstance(item, dict):
            item = item.get("src")
        url = _absolute_url(item, base_url)
        if url:
            out.append(url)
    return out


def _strip_html(text: Any) -> Optional[str]:
    if not text or not isinstance(text, str):
        return None
    if "<" in text:
        text = BeautifulSoup(text, "html.parser").get_text(" ", strip=True)
    return _first_nonempty(text)


def extract_structured(ctx: PageContext, cap: int) -> Optional[ExtractedProduct]:
    """Strategy (a): JSON-LD and embedded product JSON."""
    shopify = _find_shopify_product(ctx)
    groups = _ld_nodes(ctx, "productgroup")
    products = [p for p in _ld_nodes(ctx, "product") if p.get("name")]
    ld = groups[0] if groups else (products[0] if products else None)
    if shopify is None and ld is None:
        return None
    ld = ld or {}
    shopify = shopify or {}
    notes: List[str] = []

    name = _first_nonempty(ld.get("name"), shopify.get("title"))
    if not name:
        return None

    if shopify:
        data = _shopify_variant_data(shopify, ctx.shopify)
    elif groups:
        data = _ld_group_variant_data(groups[0])
    else:
        data = _VariantData()
    if not data.axes:
        data = _dom_variant_data(ctx)
        if data.axes:
            notes.append("variant options read from page pickers")

    price, status, currency = _summarize_offers(_offers(ld))
    explicit = list(data.explicit.values())
    explicit_prices = [v.price for v in explicit if v.price is not None]
    if price is None and explicit_prices:
        price = min(explicit_prices)
    if price is None and shopify:
        price = _shopify_price(shopify.get("price"), ctx.shopify)
    if status is StockStatus.UNKNOWN and explicit:
        status = _combined_status([v.stock_status for v in explicit])
    if status is StockStatus.UNKNOWN and shopify.get("available") is not None:
        status = parse_availability(shopify.get("available"))
    currency = currency or _meta(ctx.soup, "product:price:currency", "og:price:currency")

    images = _ld_images(ld, ctx.url) + _shopify_images(shopify, ctx.url) + _dom_images(ctx)
    images = list(dict.fromkeys(images))[: config.MAX_IMAGES]

    return ExtractedProduct(
        url=ctx.url,
        name=name,
        main_image_url=images[0] if images else None,
        description=_strip_html(ld.get("description")) or _strip_html(shopify.get("description")),
        vendor=_brand_name(ld.get("brand")) or _first_nonempty(shopify.get("vendor")),
        currency=currency,
        images=images,
        variants=_assemble_variants(data, price, status, currency, notes, cap),
        notes=notes,
    )


# ---------------------------
# DOM heuristics strategy
# ---------------------------

_TITLE_SELECTORS = [
    '[itemprop="name"]',
    ".product-title",
    ".product__title",
    ".product-name",
    ".product_title",
    "[data-product-title]",
    "h1",
]

_PRICE_SELECTORS = [
    'meta[itemprop="price"][content]',
    '[itemprop="price"]',
    "[data-price]",
    ".product-price",
    ".product__price",
    ".price__current",
    ".current-price",
    ".sale-price",
    ".price",
    '[class*="price"]',
    '[id*="price"]',
]
_OLD_PRICE_CLASS = re.compile(
    r"(?:^|[\s_-])(?:compare|was|old|strike|regular|original|crossed)", re.IGNORECASE
)
_TEXT_PRICE_RE = re.compile(r"([$€£¥₹])\s?(\d[\d.,]*)")

_IMAGE_SELECTORS = [
    ('meta[property="og:image"]', "content"),
    ('meta[name="og:image"]', "content"),
    ('meta[name="twitter:image"]', "content"),
    ('meta[property="twitter:image"]', "content"),
    ('[itemprop="image"]', "content"),
    ('link[rel="image_src"]', "href"),
    (".product__media img", "src"),
    (".product-image img", "src"),
    (".product-gallery img", "src"),
    ("[data-product-image]", "src"),
]
_SKIP_IMAGE_RE = re.compile(r"logo|icon|sprite|placeholder|\.svg", re.IGNORECASE)

_ADD_TO_CART_RE = re.compile(r"add to (cart|bag|basket)|buy now", re.IGNORECASE)
_SOLD_OUT_TEXT_RE = re.compile(
    r"\b(sold out|out of stock|currently unavailable|notify me when available|email me when available)\b",
    re.IGNORECASE,
)
_IN_STOCK_TEXT_RE = re.compile(r"\bin stock\b", re.IGNORECASE)


def _dom_title(ctx: PageContext) -> Optional[str]:
    soup = ctx.soup
    title = _meta(soup, "og:title", "twitter:title")
    if title:
        return _first_nonempty(title)
    for sel in _TITLE_SELECTORS:
        el = soup.select_one(sel)
        if not el:
            continue
        text = el.get("content") or el.get_text(" ", strip=True)
        if text:
            return _first_nonempty(text)
    if soup.title and soup.title.string:
        return _first_nonempty(re.split(r"\s[|\-–]\s", soup.title.string)[0])
    return None


def _dom_images(ctx: PageContext) -> List[str]:
    soup = ctx.soup
    out: List[str] = []
    for sel, attr in _IMAGE_SELECTORS:
        for el in soup.select(sel):
            url = _absolute_url(el.get(attr) or el.get("data-src") or el.get("src"), ctx.url)
            if url and not _SKIP_IMAGE_RE.search(url):
                out.append(url)
    if not out:
        sized = []
        for img in soup.find_all("img"):
            try:
                area = int(img.get("width") or 0) * int(img.get("height") or 0)
            except ValueError:
                continue
            url = _absolute_url(img.get("src") or img.get("data-src"), ctx.url)
            if url and area >= 100 * 100 and not _SKIP_IMAGE_RE.search(url):
                sized.append((area, url))
        # stable sort keeps document order among equal sizes
        out = [url for _, url in sorted(sized, key=lambda t: -t[0])]
    return list(dict.fromkeys(out))


def _is_old_price(el: Tag) -> bool:
    for node in [el] + list(el.parents)[:2]:
        if not isinstance(node, Tag):
            continue
        if node.name in ("del", "s", "strike"):
            return True
        classes = " ".join(node.get("class") or [])
        if _OLD_PRICE_CLASS.search(classes):
            return True
    return False


def _dom_price(ctx: PageContext) -> Tuple[Optional[float], Optional[str]]:
    soup = ctx.soup
    currency_el = soup.select_one('[itemprop="priceCurrency"]')
    currency = _first_nonempty(
        _meta(soup, "product:price:currency", "og:price:currency"),
        currency_el.get("content") if currency_el else None,
    )
    meta_price = parse_price(_meta(soup, "product:price:amount", "og:price:amount"))
    if meta_price is not None:
        return meta_price, currency
    for sel in _PRICE_SELECTORS:
        for el in soup.select(sel):
            if el.name in ("script", "style") or _is_old_price(el):
                continue
            raw = el.get("content") or el.get("data-price") or el.get_text(" ", strip=True)
            if not raw or not re.search(r"\d", raw):
                continue
            price = parse_price(raw)
            if price:
                return price, currency or detect_currency(raw)
    m = _TEXT_PRICE_RE.search(soup.get_text(" ", strip=True))
    if m:
        return parse_price(m.group(2)), currency or _CURRENCY_SYMBOLS.get(m.group(1))
    return None, currency


def _dom_stock(ctx: PageContext) -> StockStatus:
    soup = ctx.soup
    avail = soup.select_one('[itemprop="availability"]')
    if avail is not None:
        status = parse_availability(avail.get("href") or avail.get("content") or avail.get_text(" ", strip=True))
        if status is not StockStatus.UNKNOWN:
            return status
    status = parse_availability(_meta(soup, "product:availability", "og:availability"))
    if status is not StockStatus.UNKNOWN:
        return status

    for button in soup.find_all(["button", "input"]):
        if button.name == "input" and button.get("type") not in ("submit", "button"):
            continue
        label = button.get_text(" ", strip=True) or button.get("value") or ""
        classes = " ".join(button.get("class") or [])
        if not (_ADD_TO_CART_RE.search(label) or "add-to-cart" in classes or button.get("name") == "add"):
            if _SOLD_OUT_TEXT_RE.search(label):
                return StockStatus.OUT_OF_STOCK
            continue
        disabled = button.has_attr("disabled") or button.get("aria-disabled") == "true"
        if disabled or _SOLD_OUT_TEXT_RE.search(label):
            return StockStatus.OUT_OF_STOCK
        return StockStatus.IN_STOCK

    body = soup.body or soup
    text = body.get_text(" ", strip=True)[:50000]
    if _SOLD_OUT_TEXT_RE.search(text):
        return StockStatus.OUT_OF_STOCK
    if _IN_STOCK_TEXT_RE.search(text):
        return StockStatus.IN_STOCK
    return StockStatus.UNKNOWN


def extract_dom(ctx: PageContext, cap: int) -> Optional[ExtractedProduct]:
    """Strategy (b): selectors and meta tags."""
    name = _dom_title(ctx)
    if not name:
        return None
    price, currency = _dom_price(ctx)
    status = _dom_stock(ctx)
    images = _dom_images(ctx)[: config.MAX_IMAGES]
    notes: List[str] = []
    data = _dom_variant_data(ctx)
    return ExtractedProduct(
        url=ctx.url,
        name=name,
        main_image_url=images[0] if images else None,
        description=_first_nonempty(_meta(ctx.soup, "description", "og:description", "twitter:description")),
        vendor=_first_nonempty(_meta(ctx.soup, "og:site_name")),
        currency=currency,
        images=images,
        variants=_assemble_variants(data, price, status, currency, notes, cap),
        notes=notes,
    )


# ---------------------------
# Entry point
# ---------------------------

Strategy = Callable[[PageContext, int], Optional[ExtractedProduct]]

STRATEGIES: List[Tuple[str, Strategy]] = [
    ("structured-data", extract_structured),
    ("dom-heuristics", extract_dom),
]


def _is_plausible(product: ExtractedProduct) -> bool:
    return bool(product.name) and any(v.price is not None for v in product.variants)


def _looks_like_product_page(ctx: PageContext) -> bool:
    if _ld_nodes(ctx, "product") or _ld_nodes(ctx, "productgroup"):
        return True
    if (_meta(ctx.soup, "og:type") or "").lower() == "product":
        return True
    return any(
        _ADD_TO_CART_RE.search(b.get_text(" ", strip=True) or b.get("value") or "")
        for b in ctx.soup.find_all(["button", "input"])
    )


def extract(html: str, url: str, *, max_variants: Optional[int] = None) -> ExtractedProduct:
    """Extract a product from `html`, trying each strategy in order.

    Raises ExtractionError(NoProductFound) when the page does not look like
    a product page, or ExtractionError(UnsupportedLayout) when it does but
    no strategy could read a name and a price from it.
    """
    if not html or not html.strip():
        raise ExtractionError(ExtractionErrorKind.NO_PRODUCT_FOUND, f"empty document for {url}")
    cap = max_variants if max_variants is not None else config.MAX_VARIANTS
    ctx = build_context(html, url)

    for name, strategy in STRATEGIES:
        try:
            product = strategy(ctx, cap)
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.debug("Strategy %s failed on %s", name, url, exc_info=True)
            continue
        if product is not None and _is_plausible(product):
            product.strategy = name
            logger.debug(
                "Extracted %r from %s via %s (%d variants)",
                product.name, url, name, len(product.variants),
            )
            return product
        logger.debug("Strategy %s found no plausible product on %s", name, url)

    if _looks_like_product_page(ctx):
        raise ExtractionError(ExtractionErrorKind.UNSUPPORTED_LAYOUT, f"could not read name and price from {url}")
    raise ExtractionError(ExtractionErrorKind.NO_PRODUCT_FOUND, f"no product found at {url}")


__all__ = [
    "PageContext",
    "build_context",
    "extract",
    "extract_structured",
    "extract_dom",
    "STRATEGIES",
    "parse_price",
    "parse_availability",
    "detect_currency",
]
