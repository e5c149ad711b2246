"""SQLite persistence layer for the restock monitor.

Repository functions take an open connection so that one product check
(upsert, history, notifications) can run inside a single transaction
opened with :func:`connect`.
"""

from __future__ import annotations

import contextlib
import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from . import config
from .errors import IngestionError, IngestionErrorKind
from .models import (CheckRun, DueCheck, Notification, NotificationType, Product,
                     StockStatus, TrackedItem, Variant)
from .utils import utc_minutes_ago, utc_now


@contextlib.contextmanager
def connect(path: Optional[str] = None, *, write: bool = False) -> Iterator[sqlite3.Connection]:
    """Open a connection and run the block as one transaction.

    Commits on success, rolls back on any exception, always closes.  With
    ``write=True`` the write lock is taken up front (BEGIN IMMEDIATE) so a
    read-then-write sequence cannot race another writer.
    """
    db_path = path or config.SQLITE_DB_PATH
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        if write:
            conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(path: Optional[str] = None) -> None:
    """Create tables if they don't exist."""
    with connect(path) as conn:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript("""
          CREATE TABLE IF NOT EXISTS products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            url TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            main_image_url TEXT,
            description TEXT,
            vendor TEXT,
            images TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
          );

          CREATE TABLE IF NOT EXISTS variants (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            product_id INTEGER NOT NULL REFERENCES products(id) ON DELETE CASCADE,
            attributes TEXT NOT NULL,
            attributes_key TEXT NOT NULL,
            current_price REAL,
            currency TEXT,
            current_stock_status TEXT NOT NULL DEFAULT 'unknown'
              CHECK (current_stock_status IN ('in_stock', 'out_of_stock', 'unknown')),
            sku TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (product_id, attributes_key)
          );

          CREATE TABLE IF NOT EXISTS variant_price_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            variant_id INTEGER NOT NULL REFERENCES variants(id) ON DELETE CASCADE,
            price REAL NOT NULL,
            currency TEXT,
            recorded_at TEXT NOT NULL
          );

          CREATE TABLE IF NOT EXISTS variant_stock_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            variant_id INTEGER NOT NULL REFERENCES variants(id) ON DELETE CASCADE,
            status TEXT NOT NULL,
            recorded_at TEXT NOT NULL
          );

          CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            type TEXT NOT NULL CHECK (type IN ('PRICE', 'STOCK', 'RESTOCK')),
            product_id INTEGER NOT NULL,
            variant_id INTEGER NOT NULL,
            old_price REAL,
            new_price REAL,
            old_status TEXT,
            new_status TEXT,
            message TEXT NOT NULL,
            created_at TEXT NOT NULL,
            read INTEGER NOT NULL DEFAULT 0,
            sent INTEGER NOT NULL DEFAULT 0,
            sent_at TEXT,
            discord_sent INTEGER NOT NULL DEFAULT 0,
            email_sent INTEGER NOT NULL DEFAULT 0
          );

          CREATE TABLE IF NOT EXISTS check_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            product_id INTEGER,
            url TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ('success', 'failed')),
            error_kind TEXT,
            error_message TEXT,
            strategy_used TEXT,
            variants_found INTEGER NOT NULL DEFAULT 0,
            notifications_created INTEGER NOT NULL DEFAULT 0,
            duration_ms INTEGER NOT NULL DEFAULT 0
          );

          -- Owned by the subscription layer; products referenced here are never deleted.
          CREATE TABLE IF NOT EXISTS tracked_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT,
            product_id INTEGER NOT NULL REFERENCES products(id),
            variant_id INTEGER REFERENCES variants(id) ON DELETE SET NULL,
            notifications_enabled INTEGER NOT NULL DEFAULT 1,
            last_checked_at TEXT,
            created_at TEXT NOT NULL
          );

          CREATE INDEX IF NOT EXISTS idx_variants_product ON variants(product_id);
          CREATE INDEX IF NOT EXISTS idx_price_history_variant ON variant_price_history(variant_id, id);
          CREATE INDEX IF NOT EXISTS idx_stock_history_variant ON variant_stock_history(variant_id, id);
          CREATE INDEX IF NOT EXISTS idx_notifications_unsent ON notifications(sent, id);
          CREATE INDEX IF NOT EXISTS idx_check_runs_finished ON check_runs(finished_at);
          CREATE INDEX IF NOT EXISTS idx_tracked_last_checked ON tracked_items(last_checked_at);
        """)

        # --- Migration guard for older DBs (idempotent) ---
        for column in ("discord_sent", "email_sent"):
            try:
                conn.execute(f"ALTER TABLE notifications ADD COLUMN {column} INTEGER NOT NULL DEFAULT 0")
            except sqlite3.OperationalError:
                pass  # column already exists


# ---------------------------
# Products & variants
# ---------------------------

def _row_to_product(row: sqlite3.Row) -> Product:
    return Product(
        id=row["id"],
        url=row["url"],
        name=row["name"],
        main_image_url=row["main_image_url"],
        description=row["description"],
        vendor=row["vendor"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_variant(row: sqlite3.Row) -> Variant:
    return Variant(
        id=row["id"],
        product_id=row["product_id"],
        attributes=json.loads(row["attributes"]),
        current_price=row["current_price"],
        current_stock_status=StockStatus(row["current_stock_status"]),
        currency=row["currency"],
        sku=row["sku"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def get_product(conn: sqlite3.Connection, product_id: int) -> Optional[Product]:
    row = conn.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
    return _row_to_product(row) if row else None


def get_product_by_url(conn: sqlite3.Connection, url: str) -> Optional[Product]:
    row = conn.execute("SELECT * FROM products WHERE url = ?", (url,)).fetchone()
    return _row_to_product(row) if row else None


def upsert_product(
    conn: sqlite3.Connection,
    url: str,
    name: str,
    *,
    main_image_url: Optional[str] = None,
    description: Optional[str] = None,
    vendor: Optional[str] = None,
    images: Iterable[str] = (),
    now: Optional[str] = None,
) -> Product:
    """
    Insert a product keyed by its normalised URL, or refresh it.
    IMPORTANT: keep the stored image/description/vendor when the new
    extraction did not find one.
    """
    now = now or utc_now()
    conn.execute("""
        INSERT INTO products (url, name, main_image_url, description, vendor, images, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(url) DO UPDATE SET
        name           = excluded.name,
        main_image_url = CASE
                            WHEN excluded.main_image_url IS NOT NULL AND excluded.main_image_url <> ''
                            THEN excluded.main_image_url
                            ELSE products.main_image_url
                         END,
        description    = COALESCE(excluded.description, products.description),
        vendor         = COALESCE(excluded.vendor, products.vendor),
        images         = CASE
                            WHEN excluded.images <> '[]' THEN excluded.images
                            ELSE products.images
                         END,
        updated_at     = excluded.updated_at
    """, (url, name, main_image_url, description, vendor, json.dumps(list(images)), now, now))
    product = get_product_by_url(conn, url)
    if product is None:
        raise IngestionError(IngestionErrorKind.CONSTRAINT_VIOLATION, f"product {url} missing after upsert")
    return product


def list_variants(conn: sqlite3.Connection, product_id: int) -> List[Variant]:
    cur = conn.execute("SELECT * FROM variants WHERE product_id = ? ORDER BY id", (product_id,))
    return [_row_to_variant(r) for r in cur.fetchall()]


def get_variant(conn: sqlite3.Connection, variant_id: int) -> Optional[Variant]:
    row = conn.execute("SELECT * FROM variants WHERE id = ?", (variant_id,)).fetchone()
    return _row_to_variant(row) if row else None


def variant_keys(conn: sqlite3.Connection, product_id: int) -> Dict[str, int]:
    """Map attributes_key -> variant id for one product."""
    cur = conn.execute("SELECT id, attributes_key FROM variants WHERE product_id = ?", (product_id,))
    return {r["attributes_key"]: r["id"] for r in cur.fetchall()}


def insert_variant(
    conn: sqlite3.Connection,
    product_id: int,
    attributes: Dict[str, str],
    attributes_key: str,
    *,
    price: Optional[float],
    currency: Optional[str],
    status: StockStatus,
    sku: Optional[str],
    now: str,
) -> int:
    cur = conn.execute("""
        INSERT INTO variants (
          product_id, attributes, attributes_key, current_price, currency,
          current_stock_status, sku, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (product_id, json.dumps(attributes), attributes_key, price, currency,
          status.value, sku, now, now))
    return int(cur.lastrowid)


def update_variant(
    conn: sqlite3.Connection,
    variant_id: int,
    *,
    price: Optional[float],
    currency: Optional[str],
    status: StockStatus,
    sku: Optional[str],
    now: str,
) -> None:
    conn.execute("""
        UPDATE variants
           SET current_price = COALESCE(?, current_price),
               currency = COALESCE(?, currency),
               current_stock_status = ?,
               sku = COALESCE(?, sku),
               updated_at = ?
         WHERE id = ?
    """, (price, currency, status.value, sku, now, variant_id))


# ---------------------------
# History
# ---------------------------

def last_price(conn: sqlite3.Connection, variant_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT price, currency FROM variant_price_history WHERE variant_id = ? ORDER BY id DESC LIMIT 1",
        (variant_id,),
    ).fetchone()


def last_stock_status(conn: sqlite3.Connection, variant_id: int) -> Optional[str]:
    row = conn.execute(
        "SELECT status FROM variant_stock_history WHERE variant_id = ? ORDER BY id DESC LIMIT 1",
        (variant_id,),
    ).fetchone()
    return row["status"] if row else None


def add_price_history(conn: sqlite3.Connection, variant_id: int, price: float,
                      currency: Optional[str], recorded_at: str) -> None:
    conn.execute(
        "INSERT INTO variant_price_history (variant_id, price, currency, recorded_at) VALUES (?, ?, ?, ?)",
        (variant_id, price, currency, recorded_at),
    )


def add_stock_history(conn: sqlite3.Connection, variant_id: int, status: StockStatus, recorded_at: str) -> None:
    conn.execute(
        "INSERT INTO variant_stock_history (variant_id, status, recorded_at) VALUES (?, ?, ?)",
        (variant_id, status.value, recorded_at),
    )


def price_history(conn: sqlite3.Connection, variant_id: int) -> List[dict]:
    cur = conn.execute(
        "SELECT price, currency, recorded_at FROM variant_price_history WHERE variant_id = ? ORDER BY id",
        (variant_id,),
    )
    return [dict(r) for r in cur.fetchall()]


def stock_history(conn: sqlite3.Connection, variant_id: int) -> List[dict]:
    cur = conn.execute(
        "SELECT status, recorded_at FROM variant_stock_history WHERE variant_id = ? ORDER BY id",
        (variant_id,),
    )
    return [dict(r) for r in cur.fetchall()]


# ---------------------------
# Notifications
# ---------------------------

def insert_notification(conn: sqlite3.Connection, n: Notification) -> int:
    cur = conn.execute("""
        INSERT INTO notifications (
          type, product_id, variant_id, old_price, new_price, old_status, new_status,
          message, created_at, read, sent
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        n.type.value, n.product_id, n.variant_id, n.old_price, n.new_price,
        n.old_status.value if n.old_status else None,
        n.new_status.value if n.new_status else None,
        n.message, n.created_at or utc_now(), int(n.read), int(n.sent),
    ))
    n.id = int(cur.lastrowid)
    return n.id


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        type=NotificationType(row["type"]),
        product_id=row["product_id"],
        variant_id=row["variant_id"],
        message=row["message"],
        old_price=row["old_price"],
        new_price=row["new_price"],
        old_status=StockStatus(row["old_status"]) if row["old_status"] else None,
        new_status=StockStatus(row["new_status"]) if row["new_status"] else None,
        created_at=row["created_at"],
        read=bool(row["read"]),
        sent=bool(row["sent"]),
        discord_sent=bool(row["discord_sent"]),
        email_sent=bool(row["email_sent"]),
    )


def list_notifications(conn: sqlite3.Connection, variant_id: Optional[int] = None) -> List[Notification]:
    if variant_id is None:
        cur = conn.execute("SELECT * FROM notifications ORDER BY id")
    else:
        cur = conn.execute("SELECT * FROM notifications WHERE variant_id = ? ORDER BY id", (variant_id,))
    return [_row_to_notification(r) for r in cur.fetchall()]


def list_unsent_notifications(conn: sqlite3.Connection, limit: int = 50) -> List[Notification]:
    """
    Unsent notifications that someone wants: at least one tracked item on
    the product has notifications enabled and either tracks the whole
    product or exactly this variant.
    """
    cur = conn.execute("""
        SELECT n.* FROM notifications n
         WHERE n.sent = 0
           AND EXISTS (
                SELECT 1 FROM tracked_items t
                 WHERE t.product_id = n.product_id
                   AND t.notifications_enabled = 1
                   AND (t.variant_id IS NULL OR t.variant_id = n.variant_id)
           )
         ORDER BY n.id
         LIMIT ?
    """, (limit,))
    return [_row_to_notification(r) for r in cur.fetchall()]


_CHANNEL_COLUMNS = {"discord": "discord_sent", "email": "email_sent"}


def mark_channel_sent(conn: sqlite3.Connection, notification_id: int, channel: str) -> None:
    """Record that one delivery channel has accepted a notification."""
    column = _CHANNEL_COLUMNS[channel]
    conn.execute(f"UPDATE notifications SET {column} = 1 WHERE id = ?", (int(notification_id),))


def mark_notifications_sent(conn: sqlite3.Connection, ids: Iterable[int], now: Optional[str] = None) -> None:
    now = now or utc_now()
    conn.executemany(
        "UPDATE notifications SET sent = 1, sent_at = ? WHERE id = ?",
        [(now, int(i)) for i in ids],
    )


# ---------------------------
# Check runs
# ---------------------------

def record_check_run(conn: sqlite3.Connection, run: CheckRun) -> int:
    cur = conn.execute("""
        INSERT INTO check_runs (
          product_id, url, started_at, finished_at, status, error_kind, error_message,
          strategy_used, variants_found, notifications_created, duration_ms
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        run.product_id, run.url, run.started_at, run.finished_at, run.status.value,
        run.error_kind, run.error_message, run.strategy_used, run.variants_found,
        run.notifications_created, run.duration_ms,
    ))
    run.id = int(cur.lastrowid)
    return run.id


def list_check_runs(conn: sqlite3.Connection, product_id: Optional[int] = None) -> List[dict]:
    if product_id is None:
        cur = conn.execute("SELECT * FROM check_runs ORDER BY id")
    else:
        cur = conn.execute("SELECT * FROM check_runs WHERE product_id = ? ORDER BY id", (product_id,))
    return [dict(r) for r in cur.fetchall()]


def prune_check_runs(conn: sqlite3.Connection, keep: int) -> int:
    """Keep only the newest `keep` check runs per product; returns rows deleted."""
    cur = conn.execute("""
        DELETE FROM check_runs WHERE id IN (
            SELECT id FROM (
                SELECT id, ROW_NUMBER() OVER (
                    PARTITION BY COALESCE(product_id, url) ORDER BY id DESC
                ) AS rn
                FROM check_runs
            ) WHERE rn > ?
        )
    """, (max(0, int(keep)),))
    return cur.rowcount


def check_run_stats(conn: sqlite3.Connection, since: Optional[str] = None) -> Dict[str, Any]:
    """Success-rate summary over check runs finished after `since`."""
    row = conn.execute("""
        SELECT COUNT(*) AS total,
               COALESCE(SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END), 0) AS succeeded,
               COALESCE(AVG(duration_ms), 0) AS avg_duration_ms
          FROM check_runs
         WHERE finished_at >= ?
    """, (since or "",)).fetchone()
    total = int(row["total"])
    succeeded = int(row["succeeded"])
    kinds = conn.execute("""
        SELECT error_kind, COUNT(*) AS n FROM check_runs
         WHERE status = 'failed' AND finished_at >= ?
         GROUP BY error_kind ORDER BY n DESC
    """, (since or "",)).fetchall()
    return {
        "total": total,
        "succeeded": succeeded,
        "failed": total - succeeded,
        "success_rate": round(succeeded / total, 4) if total else None,
        "avg_duration_ms": int(row["avg_duration_ms"]),
        "failures_by_kind": {r["error_kind"] or "Unknown": r["n"] for r in kinds},
    }


# ---------------------------
# Tracked items
# ---------------------------

def add_tracked_item(
    conn: sqlite3.Connection,
    product_id: int,
    *,
    user_id: Optional[str] = None,
    variant_id: Optional[int] = None,
    notifications_enabled: bool = True,
) -> int:
    cur = conn.execute(
        "INSERT INTO tracked_items (user_id, product_id, variant_id, notifications_enabled, created_at) "
        "VALUES (?, ?, ?, ?, ?)",
        (user_id, product_id, variant_id, int(notifications_enabled), utc_now()),
    )
    return int(cur.lastrowid)


def get_tracked_item(conn: sqlite3.Connection, item_id: int) -> Optional[TrackedItem]:
    row = conn.execute("""
        SELECT t.*, p.url FROM tracked_items t JOIN products p ON p.id = t.product_id
         WHERE t.id = ?
    """, (item_id,)).fetchone()
    if not row:
        return None
    return TrackedItem(
        id=row["id"],
        product_id=row["product_id"],
        url=row["url"],
        user_id=row["user_id"],
        variant_id=row["variant_id"],
        notifications_enabled=bool(row["notifications_enabled"]),
        last_checked_at=row["last_checked_at"],
    )


def list_due_for_check(
    conn: sqlite3.Connection,
    interval_minutes: float,
    limit: Optional[int] = None,
) -> List[DueCheck]:
    """
    Tracked items not checked within `interval_minutes`, grouped by product
    so each product URL is fetched once however many users track it.
    Never-checked and oldest-checked products come first.
    """
    cutoff = utc_minutes_ago(interval_minutes)
    cur = conn.execute("""
        SELECT t.id, t.product_id, p.url
          FROM tracked_items t
          JOIN products p ON p.id = t.product_id
         WHERE t.last_checked_at IS NULL OR t.last_checked_at < ?
         ORDER BY COALESCE(t.last_checked_at, '') ASC, t.id ASC
    """, (cutoff,))
    due: Dict[int, DueCheck] = {}
    for row in cur.fetchall():
        item = due.get(row["product_id"])
        if item is None:
            if limit is not None and len(due) >= limit:
                continue
            item = due[row["product_id"]] = DueCheck(product_id=row["product_id"], url=row["url"])
        item.tracked_item_ids.append(row["id"])
    return list(due.values())


def mark_checked(conn: sqlite3.Connection, item_ids: Iterable[int], timestamp: Optional[str] = None) -> None:
    ts = timestamp or utc_now()
    conn.executemany(
        "UPDATE tracked_items SET last_checked_at = ? WHERE id = ?",
        [(ts, int(i)) for i in item_ids],
    )


__all__ = [
    "connect",
    "init_db",
    "get_product",
    "get_product_by_url",
    "upsert_product",
    "list_variants",
    "get_variant",
    "variant_keys",
    "insert_variant",
    "update_variant",
    "last_price",
    "last_stock_status",
    "add_price_history",
    "add_stock_history",
    "price_history",
    "stock_history",
    "insert_notification",
    "list_notifications",
    "list_unsent_notifications",
    "mark_notifications_sent",
    "record_check_run",
    "list_check_runs",
    "check_run_stats",
    "add_tracked_item",
    "get_tracked_item",
    "list_due_for_check",
    "mark_checked",
]
