"""
Wallet aggregator adapter (PhonePe Standard Checkout v2).

The provider redirects the browser to its hosted page and later back to
``/api/orders/phonepe-return/{order_id}``. Access tokens come from an OAuth
client-credentials exchange and are kept in a shared TokenCache; a token
is reused only while it has more than five minutes of validity left.
"""

import base64
import json
import logging
import secrets
import time
from typing import Any, Callable, Dict, Optional

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
from checkout.errors import GatewayError
from checkout.repositories import TokenCache
from .base import HttpGateway, hmac_sha256_hex, signatures_match

logger = logging.getLogger(__name__)

TOKEN_NAME = "phonepe"
TOKEN_REFRESH_MARGIN_SECONDS = 300
INTENT_EXPIRE_AFTER_SECONDS = 1200

SUCCESS_CODES = ("PAYMENT_SUCCESS",)
FAILURE_CODES = ("PAYMENT_ERROR", "PAYMENT_DECLINED", "TIMED_OUT")


def new_merchant_order_id() -> str:
    return f"ORD_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class PhonePeAdapter(HttpGateway):
    method = "phonepe"
    persists_pending_order = True
    supports_token_refresh = True

    def __init__(
        self,
        client: httpx.AsyncClient,
        client_id: str,
        client_secret: str,
        client_version: str,
        base_url: str,
        auth_url: str,
        salt_key: str,
        salt_index: str,
        backend_url: str,
        token_cache: TokenCache,
        clock: Callable[[], float] = time.time,
        **kwargs: Any,
    ) -> None:
        super().__init__(client, **kwargs)
        self.client_id = client_id
        self.client_secret = client_secret
        self.client_version = client_version
        self.base_url = base_url.rstrip("/")
        self.auth_url = auth_url.rstrip("/")
        self.salt_key = salt_key
        self.salt_index = str(salt_index)
        self.backend_url = backend_url.rstrip("/")
        self.token_cache = token_cache
        self._clock = clock

    async def _fetch_token(self) -> Dict[str, Any]:
        data = await self._request(
            "POST",
            f"{self.auth_url}/v1/oauth/token",
            data={
                "client_id": self.client_id,
                "client_version": self.client_version,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            },
            authenticated=False,
        )
        access_token = data.get("access_token")
        if not access_token:
            logger.error("PhonePe token response carried no access token")
            raise GatewayError()
        expires_at = float(
            data.get("expires_at") or self._clock() + 3600
        )
        await self.token_cache.put_token(TOKEN_NAME, access_token, expires_at)
        logger.info(
            "PhonePe access token refreshed",
            extra={"expires_at": expires_at},
        )
        return {"access_token": access_token, "expires_at": expires_at}

    async def _auth_headers(self, force_refresh: bool) -> Dict[str, str]:
        token: Optional[Dict[str, Any]] = None
        if force_refresh:
            await self.token_cache.invalidate(TOKEN_NAME)
        else:
            token = await self.token_cache.get_token(TOKEN_NAME)
            if token and (
                float(token["expires_at"]) - self._clock()
                <= TOKEN_REFRESH_MARGIN_SECONDS
            ):
                token = None
        if token is None:
            token = await self._fetch_token()
        return {"Authorization": f"O-Bearer {token['access_token']}"}

    async def _create_intent(self, order: Order) -> PaymentIntent:
        merchant_order_id = new_merchant_order_id()
        payload = {
            "merchantOrderId": merchant_order_id,
            "amount": to_minor_units(order.final_total),
            "expireAfter": INTENT_EXPIRE_AFTER_SECONDS,
            "metaInfo": {
                "udf1": order.order_id,
                "udf2": order.idempotency_key,
                "udf3": order.customer.reference,
            },
            "paymentFlow": {
                "type": "PG_CHECKOUT",
                "message": f"Payment for order {order.order_id}",
                "merchantUrls": {
                    "redirectUrl": (
                        f"{self.backend_url}/api/orders/phonepe-return/"
                        f"{order.order_id}"
                    ),
                },
            },
        }
        data = await self._request(
            "POST", f"{self.base_url}/checkout/v2/pay", json=payload
        )
        redirect_url = data.get("redirectUrl")
        if not redirect_url:
            logger.error(
                "PhonePe pay response carried no redirect URL",
                extra={"order_id": order.order_id},
            )
            raise GatewayError(
                "Payment provider did not return a checkout page."
            )
        return PaymentIntent(
            provider_transaction_id=merchant_order_id,
            redirect_url=redirect_url,
            checkout_payload={
                "merchantOrderId": merchant_order_id,
                "phonepeOrderId": data.get("orderId"),
            },
            raw_response=data,
        )

    async def _check_status(
        self, provider_transaction_id: str
    ) -> GatewayStatus:
        data = await self._request(
            "GET",
            f"{self.base_url}/checkout/v2/order/"
            f"{provider_transaction_id}/status",
        )
        state = str(data.get("state", "UNKNOWN")).upper()
        code = data.get("code")
        details = data.get("paymentDetails") or []
        transaction_id = (
            details[0].get("transactionId") if details else None
        )
        return GatewayStatus(
            succeeded=state == "COMPLETED" or code in SUCCESS_CODES,
            state=state,
            code=code,
            transaction_id=transaction_id,
            amount_minor=data.get("amount"),
            raw_response=data,
        )

    async def confirm_payment(self, proof: PaymentProof) -> GatewayStatus:
        return await self.check_status(proof.provider_transaction_id)

    def verify_signature(self, payload: bytes, signature_header: str) -> bool:
        """Check an ``X-Verify`` header of the form ``<hex>###<key-index>``."""
        if not self.salt_key or not signature_header:
            return False
        signature, sep, key_index = signature_header.partition("###")
        if not sep or key_index.strip() != self.salt_index:
            return False
        expected = hmac_sha256_hex(self.salt_key, payload)
        return signatures_match(expected, signature)

    def parse_webhook(self, payload: bytes) -> WebhookEvent:
        body = json.loads(payload)
        if isinstance(body, dict) and isinstance(body.get("response"), str):
            body = json.loads(base64.b64decode(body["response"]))
        if not isinstance(body, dict):
            raise ValueError("Webhook body is not a JSON object")
        data = body.get("data") or body.get("payload") or {}
        if not isinstance(data, dict):
            raise ValueError("Webhook data is not a JSON object")
        code = body.get("code")
        event_type = str(body.get("event") or code or "")
        state = str(data.get("state", "")).upper() or None

        if "refund" in event_type.lower():
            kind = "refund"
        elif code in SUCCESS_CODES or state == "COMPLETED":
            kind = "success"
        elif code in FAILURE_CODES or state == "FAILED":
            kind = "failure"
        else:
            kind = "ignored"

        return WebhookEvent(
            kind=kind,
            event_type=event_type,
            merchant_transaction_id=data.get("merchantTransactionId")
            or data.get("merchantOrderId")
            or data.get("originalMerchantOrderId"),
            transaction_id=data.get("transactionId"),
            amount_minor=data.get("amount"),
            state=state,
            raw=body,
        )

    def refund_reference(self, order: Order) -> Optional[str]:
        return order.merchant_transaction_id

    async def _refund(
        self,
        provider_transaction_id: str,
        amount_minor_units: int,
        refund_id: str,
        metadata: Dict[str, Any],
    ) -> RefundResult:
        meta_info = {
            f"udf{i}": str(value)
            for i, value in enumerate(metadata.values(), start=1)
            if i <= 5
        }
        data = await self._request(
            "POST",
            f"{self.base_url}/payments/v2/refund",
            json={
                "merchantRefundId": refund_id,
                "originalMerchantOrderId": provider_transaction_id,
                "amount": amount_minor_units,
                "metaInfo": meta_info,
            },
        )
        return RefundResult(
            refund_id=refund_id,
            provider_refund_id=data.get("refundId"),
            status=str(data.get("state", "PENDING")),
            raw_response=data,
        )

    async def _refund_status(
        self, refund_id: str, provider_refund_id: Optional[str]
    ) -> RefundResult:
        data = await self._request(
            "GET",
            f"{self.base_url}/payments/v2/refund/{refund_id}/status",
        )
        inner = data.get("data") or {}
        state = data.get("state") or data.get("status") or inner.get("state")
        return RefundResult(
            refund_id=refund_id,
            provider_refund_id=data.get("refundId")
            or inner.get("refundId")
            or provider_refund_id,
            status=str(state or "UNKNOWN").upper(),
            raw_response=data,
        )
