"""Discord webhook notifier.

Delivers stored notifications (price changes, restocks, stock changes) to
a Discord channel via webhook, then flags them as sent.  Notifications
whose delivery fails stay unsent and are retried on the next pass.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

import requests

from . import config, db, emailer
from .models import Notification, NotificationType, Product, Variant
from .utils import HTTPError, get_http_session, retryable_request

logger = logging.getLogger(__name__)

_COLORS = {
    NotificationType.PRICE: 0x3498DB,
    NotificationType.RESTOCK: 0x2ECC71,
    NotificationType.STOCK: 0xE67E22,
}


@retryable_request
def _post(session: requests.Session, url: str, **kwargs) -> requests.Response:
    return session.post(url, **kwargs)


def _title(notification: Notification, name: str) -> str:
    if notification.type is NotificationType.RESTOCK:
        return f"Back in Stock: {name}"
    if notification.type is NotificationType.PRICE:
        dropped = (notification.new_price or 0) < (notification.old_price or 0)
        return f"{'Price Drop' if dropped else 'Price Increase'}: {name}"
    return f"Stock Update: {name}"


def _build_embed(notification: Notification, product: Optional[Product], variant: Optional[Variant]) -> dict:
    name = product.name if product else f"Product {notification.product_id}"
    desc_lines: list[str] = [notification.message]

    if variant and variant.attributes:
        desc_lines.append(", ".join(f"{k}: {v}" for k, v in variant.attributes.items()))
    if notification.type is NotificationType.PRICE:
        desc_lines.append(f"Was: {notification.old_price:.2f}  Now: {notification.new_price:.2f}")
    elif variant and variant.current_price is not None:
        currency = f" {variant.currency}" if variant.currency else ""
        desc_lines.append(f"Price: {variant.current_price:.2f}{currency}")

    embed = {
        "title": _title(notification, name),
        "description": "\n".join(desc_lines),
        "color": _COLORS[notification.type],
    }
    if product:
        embed["url"] = product.url
        img_url = (product.main_image_url or "").strip()
        if img_url:
            embed["image"] = {"url": img_url}
    return embed


def send_notification(
    notification: Notification,
    product: Optional[Product] = None,
    variant: Optional[Variant] = None,
    webhook_url: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> None:
    """Post one notification.  Raises on delivery failure."""
    webhook_url = webhook_url or config.DISCORD_WEBHOOK_URL
    if not webhook_url:
        raise ValueError("Discord webhook URL is not configured")

    close_session = False
    if session is None:
        session = get_http_session()
        close_session = True
    try:
        payload = {"embeds": [_build_embed(notification, product, variant)]}
        logger.info("Sending %s notification %s (%s)", notification.type.value, notification.id, notification.message)
        _post(session, webhook_url, json=payload, timeout=20)
    finally:
        if close_session:
            session.close()


def _mark_channel(db_path: Optional[str], notification_id: int, channel: str) -> None:
    with db.connect(db_path, write=True) as conn:
        db.mark_channel_sent(conn, notification_id, channel)


def deliver_pending(
    *,
    db_path: Optional[str] = None,
    limit: int = 50,
    webhook_url: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> int:
    """Deliver unsent notifications; returns how many were marked sent.

    Each channel is tracked separately, so a notification that reached
    Discord but not email is only re-sent by email on the next pass.
    """
    webhook_url = webhook_url or config.DISCORD_WEBHOOK_URL
    if not webhook_url and not config.EMAIL_ENABLED:
        logger.debug("No delivery channel configured; leaving notifications unsent")
        return 0

    products: Dict[int, Optional[Product]] = {}
    variants: Dict[int, Optional[Variant]] = {}
    with db.connect(db_path) as conn:
        pending = db.list_unsent_notifications(conn, limit)
        for n in pending:
            if n.product_id not in products:
                products[n.product_id] = db.get_product(conn, n.product_id)
            if n.variant_id not in variants:
                variants[n.variant_id] = db.get_variant(conn, n.variant_id)
    if not pending:
        return 0

    close_session = False
    if session is None:
        session = get_http_session()
        close_session = True
    delivered: List[int] = []
    try:
        for n in pending:
            product, variant = products.get(n.product_id), variants.get(n.variant_id)
            if webhook_url and not n.discord_sent:
                try:
                    send_notification(n, product, variant, webhook_url=webhook_url, session=session)
                except (requests.RequestException, HTTPError):
                    logger.exception("Discord delivery failed for notification %s", n.id)
                else:
                    n.discord_sent = True
                    _mark_channel(db_path, n.id, "discord")
            if config.EMAIL_ENABLED and not n.email_sent:
                if emailer.send_notification(n, product, variant):
                    n.email_sent = True
                    _mark_channel(db_path, n.id, "email")
            if (n.discord_sent or not webhook_url) and (n.email_sent or not config.EMAIL_ENABLED):
                delivered.append(n.id)
    finally:
        if close_session:
            session.close()

    if delivered:
        with db.connect(db_path, write=True) as conn:
            db.mark_notifications_sent(conn, delivered)
        logger.info("Delivered %d of %d pending notifications", len(delivered), len(pending))
    return len(delivered)


__all__ = ["send_notification", "deliver_pending"]
