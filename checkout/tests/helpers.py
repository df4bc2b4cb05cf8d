"""
Scriptable in-process payment gateway for use case and API tests.

``FakeGateway`` satisfies the GatewayAdapter protocol without HTTP. Tests
set ``status``, ``status_error``, ``intent_error``, ``refund_state`` or
``proof_valid`` to steer what the provider "says", and inspect ``intents``
and ``refunds`` afterwards.
"""

import json
from typing import Any, Dict, List, Optional

from checkout.domain import (
    GatewayStatus,
    Order,
    PaymentIntent,
    PaymentProof,
    RefundResult,
    WebhookEvent,
)
from checkout.errors import PaymentVerificationFailed
from checkout.gateways.base import hmac_sha256_hex, signatures_match

WEBHOOK_SECRET = "whsec_test"


class FakeGateway:
    def __init__(
        self, method: str = "razorpay", persists_pending_order: bool = False
    ) -> None:
        self.method = method
        self.persists_pending_order = persists_pending_order
        self.status = GatewayStatus(succeeded=True, state="COMPLETED")
        self.status_error: Optional[Exception] = None
        self.intent_error: Optional[Exception] = None
        self.proof_valid = True
        self.intents: List[str] = []
        self.status_checks: List[str] = []
        self.refunds: List[Dict[str, Any]] = []
        self.refund_state = "processed"
        self.refund_status_checks: List[str] = []

    async def create_intent(self, order: Order) -> PaymentIntent:
        if self.intent_error is not None:
            raise self.intent_error
        txn = f"{self.method}-txn-{len(self.intents) + 1}"
        self.intents.append(txn)
        return PaymentIntent(
            provider_transaction_id=txn,
            redirect_url=(
                f"https://pay.example.com/{txn}"
                if self.persists_pending_order
                else None
            ),
            checkout_payload={"providerOrderId": txn},
        )

    async def check_status(
        self, provider_transaction_id: str
    ) -> GatewayStatus:
        self.status_checks.append(provider_transaction_id)
        if self.status_error is not None:
            raise self.status_error
        return self.status.model_copy(
            update={
                "transaction_id": self.status.transaction_id
                or f"pay-{provider_transaction_id}"
            }
        )

    async def confirm_payment(self, proof: PaymentProof) -> GatewayStatus:
        if not self.proof_valid:
            raise PaymentVerificationFailed("Invalid payment signature.")
        return await self.check_status(proof.provider_transaction_id)

    def verify_signature(self, payload: bytes, signature_header: str) -> bool:
        if not signature_header:
            return False
        return signatures_match(
            hmac_sha256_hex(WEBHOOK_SECRET, payload), signature_header
        )

    def parse_webhook(self, payload: bytes) -> WebhookEvent:
        return WebhookEvent.model_validate(json.loads(payload))

    def refund_reference(self, order: Order) -> Optional[str]:
        return order.transaction_id

    async def refund(
        self,
        provider_transaction_id: str,
        amount_minor_units: int,
        refund_id: str,
        metadata: Dict[str, Any],
    ) -> RefundResult:
        self.refunds.append(
            {
                "reference": provider_transaction_id,
                "amount": amount_minor_units,
                "refund_id": refund_id,
            }
        )
        return RefundResult(
            refund_id=refund_id,
            provider_refund_id=f"rfnd_{len(self.refunds)}",
            status="processed",
        )

    async def refund_status(
        self, refund_id: str, provider_refund_id: Optional[str]
    ) -> RefundResult:
        self.refund_status_checks.append(refund_id)
        return RefundResult(
            refund_id=refund_id,
            provider_refund_id=provider_refund_id,
            status=self.refund_state,
        )


def signed_webhook(event: Dict[str, Any]) -> Dict[str, Any]:
    """Body bytes and matching signature for a FakeGateway webhook."""
    body = json.dumps(event).encode()
    return {
        "payload": body,
        "signature": hmac_sha256_hex(WEBHOOK_SECRET, body),
    }
