"""Ingestion service.

Reconciles an :class:`ExtractedProduct` with the stored product and its
variants, and stages price/stock observations into the history tables.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from typing import Callable, Dict, Iterator, List, Optional, Set, TypeVar

from . import config, db
from .errors import IngestionError, IngestionErrorKind
from .models import (ExtractedProduct, IngestResult, StockStatus, Variant,
                     VariantSnapshot)
from .utils import normalize_url, retry_when, utc_now
from .variants import attributes_key, normalize_attributes

logger = logging.getLogger(__name__)

T = TypeVar("T")


@contextlib.contextmanager
def store_errors() -> Iterator[None]:
    """Translate sqlite3 failures into IngestionError kinds."""
    try:
        yield
    except sqlite3.IntegrityError as e:
        raise IngestionError(IngestionErrorKind.CONSTRAINT_VIOLATION, str(e)) from e
    except sqlite3.OperationalError as e:
        msg = str(e).lower()
        if "locked" in msg or "busy" in msg:
            raise IngestionError(IngestionErrorKind.TRANSIENT_STORE_FAILURE, str(e)) from e
        raise


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, IngestionError) and exc.retryable


def with_store_retries(func: Callable[[], T]) -> T:
    """Run `func` (one whole transaction), retrying transient store failures."""
    decorated = retry_when(
        _is_transient,
        config.INGEST_RETRIES,
        min_wait=config.RETRY_BACKOFF_SECONDS,
    )(func)
    return decorated()


def _stage_history(
    conn: sqlite3.Connection,
    variant_id: int,
    price: Optional[float],
    currency: Optional[str],
    status: StockStatus,
    now: str,
) -> None:
    if price is not None:
        last = db.last_price(conn, variant_id)
        if last is None or last["price"] != price or (currency and last["currency"] != currency):
            db.add_price_history(conn, variant_id, price, currency, now)
    if db.last_stock_status(conn, variant_id) != status.value:
        db.add_stock_history(conn, variant_id, status, now)


def ingest_in(conn: sqlite3.Connection, extracted: ExtractedProduct, *, now: Optional[str] = None) -> IngestResult:
    """Write one extraction using an open transaction.

    Variants are matched by normalised attribute set.  Variants missing
    from this extraction are left as they are.
    """
    now = now or utc_now()
    url = normalize_url(extracted.url)
    product = db.upsert_product(
        conn,
        url,
        extracted.name,
        main_image_url=extracted.main_image_url,
        description=extracted.description,
        vendor=extracted.vendor,
        images=extracted.images,
        now=now,
    )

    existing: Dict[int, Variant] = {v.id: v for v in db.list_variants(conn, product.id)}
    keys = db.variant_keys(conn, product.id)
    notes: List[str] = list(extracted.notes)
    previous: Dict[int, Optional[VariantSnapshot]] = {}
    touched: List[int] = []
    seen: Set[str] = set()

    for ev in extracted.variants:
        attrs = normalize_attributes(ev.attributes)
        key = attributes_key(attrs)
        if key in seen:
            notes.append(f"duplicate variant skipped: {attrs}")
            continue
        seen.add(key)
        currency = ev.currency or extracted.currency

        variant_id = keys.get(key)
        if variant_id is not None:
            previous[variant_id] = VariantSnapshot.of(existing[variant_id])
            db.update_variant(
                conn, variant_id,
                price=ev.price, currency=currency, status=ev.stock_status, sku=ev.sku, now=now,
            )
        else:
            variant_id = db.insert_variant(
                conn, product.id, attrs, key,
                price=ev.price, currency=currency, status=ev.stock_status, sku=ev.sku, now=now,
            )
            keys[key] = variant_id
            previous[variant_id] = None
        _stage_history(conn, variant_id, ev.price, currency, ev.stock_status, now)
        touched.append(variant_id)

    missing = len(existing) - len([vid for vid in touched if vid in existing])
    if missing > 0:
        notes.append(f"{missing} known variant(s) not on page; kept unchanged")

    variants = [v for v in (db.get_variant(conn, vid) for vid in touched) if v is not None]
    logger.info(
        "Ingested product %s (%s): %d variants, %d new",
        product.id, product.url, len(variants), sum(1 for p in previous.values() if p is None),
    )
    return IngestResult(product=product, variants=variants, notes=notes, previous=previous)


def ingest(extracted: ExtractedProduct, *, db_path: Optional[str] = None) -> IngestResult:
    """Ingest one extraction in its own transaction.

    Raises IngestionError (ConstraintViolation, or TransientStoreFailure
    once the retries are used up).
    """
    def attempt() -> IngestResult:
        with store_errors():
            with db.connect(db_path, write=True) as conn:
                return ingest_in(conn, extracted)

    return with_store_retries(attempt)


__all__ = ["ingest", "ingest_in", "store_errors", "with_store_retries"]
