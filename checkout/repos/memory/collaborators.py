"""
Default collaborator implementations.

Notification, email, invoice and seller lookup are owned by other services.
These implementations only log, which is enough for local development and
for the API process when no real collaborator is wired in. The audit log
writes to the dedicated ``checkout.audit`` logger so its output can be
routed separately; storage and rotation are left to the logging setup.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from checkout.domain import Order, SellerContact
from checkout.repositories import (
    AuditCategory,
    AuditLog,
    EmailService,
    InvoiceService,
    NotificationService,
    SellerDirectory,
)

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("checkout.audit")

_AUDIT_LEVELS = {
    "info": logging.INFO,
    "payment": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "security": logging.WARNING,
}


class LoggingAuditLog(AuditLog):
    """AuditLog that emits one log record per event."""

    async def record(
        self,
        category: AuditCategory,
        action: str,
        details: Dict[str, Any],
    ) -> None:
        audit_logger.log(
            _AUDIT_LEVELS.get(category, logging.INFO),
            action,
            extra={
                "audit_category": category,
                "audit_action": action,
                "audit_details": details,
            },
        )


class RecordingAuditLog(AuditLog):
    """AuditLog that keeps events in memory, for inspection."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    async def record(
        self,
        category: AuditCategory,
        action: str,
        details: Dict[str, Any],
    ) -> None:
        self.events.append((category, action, details))

    def actions(self, category: Optional[str] = None) -> List[str]:
        return [
            action
            for cat, action, _ in self.events
            if category is None or cat == category
        ]


class LoggingNotificationService(NotificationService):
    async def send_multi_channel_notification(
        self,
        recipient_id: str,
        payload: Dict[str, Any],
        recipient_email: Optional[str] = None,
    ) -> None:
        logger.info(
            "Notification dispatched",
            extra={
                "recipient_id": recipient_id,
                "notification_title": payload.get("title"),
                "has_email": recipient_email is not None,
            },
        )


class LoggingEmailService(EmailService):
    async def send_checkout_success_email(
        self, email: str, summary: Dict[str, Any]
    ) -> None:
        logger.info(
            "Checkout success email dispatched",
            extra={"order_id": summary.get("orderId")},
        )


class PlainTextInvoiceService(InvoiceService):
    """Renders a minimal text invoice; PDF layout lives elsewhere."""

    async def generate_invoice(self, order: Order) -> bytes:
        lines = [
            f"Invoice for {order.order_id}",
            f"Date: {order.created_at.date().isoformat()}",
        ]
        for item in order.order_items:
            lines.append(f"{item.name} x{item.quantity}  {item.subtotal}")
        lines.append(f"Discount: {order.discount_amount}")
        lines.append(f"Shipping: {order.shipping_charges}")
        lines.append(f"Total: {order.final_total}")
        return "\n".join(lines).encode("utf-8")


class StaticSellerDirectory(SellerDirectory):
    def __init__(self, contact: Optional[SellerContact] = None) -> None:
        self.contact = contact

    async def get_order_recipient(self) -> Optional[SellerContact]:
        return self.contact
