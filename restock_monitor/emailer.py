"""Email delivery for change notifications.

One message per notification, plain text with an HTML alternative.
Port 587 uses STARTTLS, anything else implicit TLS.
"""

from __future__ import annotations

import contextlib
import html
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Iterator, List, Optional

from . import config
from .models import Notification, NotificationType, Product, Variant

logger = logging.getLogger(__name__)

_HEADINGS = {
    NotificationType.RESTOCK: "Back in Stock",
    NotificationType.PRICE: "Price Change",
    NotificationType.STOCK: "Stock Update",
}


def _product_name(notification: Notification, product: Optional[Product]) -> str:
    return product.name if product else f"Product {notification.product_id}"


def _detail_lines(notification: Notification, variant: Optional[Variant]) -> List[str]:
    lines = [notification.message]
    if variant is None:
        return lines
    if variant.attributes:
        lines.append(", ".join(f"{k}: {v}" for k, v in variant.attributes.items()))
    if variant.current_price is not None:
        lines.append(f"Current price: {variant.current_price:.2f} {variant.currency or ''}".rstrip())
    return lines


def _html_body(heading: str, lines: List[str], product: Optional[Product]) -> str:
    parts = [f"<h3>{html.escape(heading)}</h3>", "<ul>"]
    parts.extend(f"<li>{html.escape(line)}</li>" for line in lines)
    parts.append("</ul>")
    if product:
        parts.append(f'<p><a href="{html.escape(product.url)}">Open product page</a></p>')
        if product.main_image_url:
            parts.append(
                f'<p><img src="{html.escape(product.main_image_url)}" alt="" style="max-width:480px;"></p>'
            )
    return "<html><body>" + "".join(parts) + "</body></html>"


def build_message(notification: Notification, product: Optional[Product] = None,
                  variant: Optional[Variant] = None) -> EmailMessage:
    name = _product_name(notification, product)
    heading = f"{_HEADINGS[notification.type]}: {name}"
    lines = _detail_lines(notification, variant)

    text = heading + "\n\n" + "\n".join(lines) + "\n"
    if product:
        text += f"\nLink: {product.url}\n"

    msg = EmailMessage()
    msg["Subject"] = f"{config.EMAIL_SUBJECT_PREFIX} {heading}"
    msg["From"] = config.EMAIL_FROM or (config.EMAIL_USERNAME or "")
    msg["To"] = ", ".join(config.EMAIL_TO)
    msg.set_content(text)
    msg.add_alternative(_html_body(heading, lines, product), subtype="html")
    return msg


@contextlib.contextmanager
def _smtp() -> Iterator[smtplib.SMTP]:
    host, port = config.EMAIL_SMTP_HOST, int(config.EMAIL_SMTP_PORT)
    context = ssl.create_default_context()
    if config.EMAIL_USE_TLS and port == 587:
        client = smtplib.SMTP(host, port, timeout=20)
        client.ehlo()
        client.starttls(context=context)
    else:
        client = smtplib.SMTP_SSL(host, port, context=context, timeout=20)
    with client:
        client.login(config.EMAIL_USERNAME, config.EMAIL_PASSWORD)
        yield client


def send_notification(notification: Notification, product: Optional[Product] = None,
                      variant: Optional[Variant] = None) -> bool:
    """Email one notification.  Returns True once the server accepted it."""
    if not config.EMAIL_ENABLED or not config.EMAIL_TO:
        return False
    if not (config.EMAIL_USERNAME and config.EMAIL_PASSWORD and config.EMAIL_FROM):
        logger.error("Email config incomplete; set EMAIL_USERNAME, EMAIL_PASSWORD, EMAIL_FROM, EMAIL_TO")
        return False

    msg = build_message(notification, product, variant)
    try:
        with _smtp() as client:
            client.send_message(msg)
    except (smtplib.SMTPException, OSError):
        logger.exception("Failed to email notification %s", notification.id)
        return False
    logger.info("Emailed notification %s to %s", notification.id, ", ".join(config.EMAIL_TO))
    return True


__all__ = ["send_notification", "build_message"]
