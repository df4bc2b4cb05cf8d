"""
Card/UPI aggregator adapter (Razorpay Orders API).

Checkout happens in the provider's in-page widget: we create a provider
order, the client completes payment and sends back
``razorpay_order_id``, ``razorpay_payment_id`` and ``razorpay_signature``.
No order row is written until that proof is confirmed.
"""

import base64
import json
import logging
from typing import Any, Dict, Optional

import httpx

from checkout.domain import (
    GatewayStatus,
    Order,
    PaymentIntent,
    PaymentProof,
    RefundResult,
    WebhookEvent,
    to_minor_units,
)
from checkout.errors import GatewayError, PaymentVerificationFailed
from .base import HttpGateway, hmac_sha256_hex, signatures_match

logger = logging.getLogger(__name__)

SUCCESS_EVENTS = ("payment.captured", "order.paid")
FAILURE_EVENTS = ("payment.failed",)
REFUND_EVENTS = ("refund.processed", "refund.failed")


class RazorpayAdapter(HttpGateway):
    method = "razorpay"
    persists_pending_order = False

    def __init__(
        self,
        client: httpx.AsyncClient,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        base_url: str = "https://api.razorpay.com",
        currency: str = "INR",
        **kwargs: Any,
    ) -> None:
        super().__init__(client, **kwargs)
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self.currency = currency

    async def _auth_headers(self, force_refresh: bool) -> Dict[str, str]:
        credentials = f"{self.key_id}:{self.key_secret}".encode()
        return {
            "Authorization": "Basic "
            + base64.b64encode(credentials).decode()
        }

    async def _create_intent(self, order: Order) -> PaymentIntent:
        payload = {
            "amount": to_minor_units(order.final_total),
            "currency": self.currency,
            "receipt": order.order_id,
            "notes": {
                "orderId": order.order_id,
                "idempotencyKey": order.idempotency_key,
                "baseIdempotencyKey": order.caller_key,
            },
        }
        data = await self._request(
            "POST", f"{self.base_url}/v1/orders", json=payload
        )
        provider_order_id = data.get("id")
        if not provider_order_id:
            logger.error(
                "Razorpay order response carried no order id",
                extra={"order_id": order.order_id},
            )
            raise GatewayError(
                "Payment provider did not return a checkout order."
            )
        return PaymentIntent(
            provider_transaction_id=provider_order_id,
            checkout_payload={
                "razorpayOrderId": provider_order_id,
                "key": self.key_id,
                "amount": data.get("amount", payload["amount"]),
                "currency": data.get("currency", self.currency),
            },
            raw_response=data,
        )

    async def _check_status(
        self, provider_transaction_id: str
    ) -> GatewayStatus:
        data = await self._request(
            "GET", f"{self.base_url}/v1/orders/{provider_transaction_id}"
        )
        state = str(data.get("status", "unknown"))
        return GatewayStatus(
            succeeded=state == "paid",
            state=state.upper(),
            amount_minor=data.get("amount_paid") or data.get("amount"),
            raw_response=data,
        )

    def _checkout_signature_valid(
        self, provider_order_id: str, payment_id: str, signature: str
    ) -> bool:
        expected = hmac_sha256_hex(
            self.key_secret, f"{provider_order_id}|{payment_id}".encode()
        )
        return signatures_match(expected, signature)

    async def confirm_payment(self, proof: PaymentProof) -> GatewayStatus:
        if not proof.payment_id or not proof.signature:
            raise PaymentVerificationFailed(
                "Missing required payment verification data."
            )
        if not self._checkout_signature_valid(
            proof.provider_transaction_id, proof.payment_id, proof.signature
        ):
            logger.warning(
                "Razorpay checkout signature mismatch",
                extra={
                    "provider_transaction_id": proof.provider_transaction_id,
                    "payment_id": proof.payment_id,
                },
            )
            raise PaymentVerificationFailed("Invalid payment signature.")
        status = await self.check_status(proof.provider_transaction_id)
        return status.model_copy(update={"transaction_id": proof.payment_id})

    def verify_signature(self, payload: bytes, signature_header: str) -> bool:
        if not self.webhook_secret or not signature_header:
            return False
        expected = hmac_sha256_hex(self.webhook_secret, payload)
        return signatures_match(expected, signature_header)

    def parse_webhook(self, payload: bytes) -> WebhookEvent:
        body = json.loads(payload)
        if not isinstance(body, dict):
            raise ValueError("Webhook body is not a JSON object")
        event_type = str(body.get("event", ""))
        entities = body.get("payload") or {}
        if not isinstance(entities, dict):
            raise ValueError("Webhook payload is not a JSON object")

        if event_type in REFUND_EVENTS:
            refund = entities.get("refund", {}).get("entity", {})
            return WebhookEvent(
                kind="refund",
                event_type=event_type,
                order_id=(refund.get("notes") or {}).get("orderId"),
                transaction_id=refund.get("payment_id"),
                amount_minor=refund.get("amount"),
                state=refund.get("status"),
                raw=body,
            )

        payment = entities.get("payment", {}).get("entity", {})
        notes = payment.get("notes") or {}
        if event_type in SUCCESS_EVENTS:
            kind = "success"
        elif event_type in FAILURE_EVENTS:
            kind = "failure"
        else:
            kind = "ignored"
        return WebhookEvent(
            kind=kind,
            event_type=event_type,
            order_id=notes.get("orderId"),
            merchant_transaction_id=payment.get("order_id"),
            transaction_id=payment.get("id"),
            amount_minor=payment.get("amount"),
            state=payment.get("status"),
            raw=body,
        )

    def refund_reference(self, order: Order) -> Optional[str]:
        return order.transaction_id

    async def _refund(
        self,
        provider_transaction_id: str,
        amount_minor_units: int,
        refund_id: str,
        metadata: Dict[str, Any],
    ) -> RefundResult:
        data = await self._request(
            "POST",
            f"{self.base_url}/v1/payments/{provider_transaction_id}/refund",
            json={
                "amount": amount_minor_units,
                "receipt": refund_id[:40],
                "notes": {k: str(v) for k, v in metadata.items()},
            },
        )
        return RefundResult(
            refund_id=refund_id,
            provider_refund_id=data.get("id"),
            status=str(data.get("status", "processed")),
            raw_response=data,
        )

    async def _refund_status(
        self, refund_id: str, provider_refund_id: Optional[str]
    ) -> RefundResult:
        if not provider_refund_id:
            raise GatewayError(
                "Refund has no provider reference to look up."
            )
        data = await self._request(
            "GET", f"{self.base_url}/v1/refunds/{provider_refund_id}"
        )
        return RefundResult(
            refund_id=refund_id,
            provider_refund_id=data.get("id", provider_refund_id),
            status=str(data.get("status", "unknown")),
            raw_response=data,
        )
