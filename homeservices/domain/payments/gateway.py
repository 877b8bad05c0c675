"""Stripe gateway - thin async client over the Stripe REST API"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import httpx

from ...config import PAYMENT_TIMEOUT_SECONDS, STRIPE_API_BASE, STRIPE_SECRET_KEY
from ...errors import PaymentFailure

logger = logging.getLogger(__name__)


@dataclass
class IntentResult:
    """What the coordinator needs from a processor response"""

    id: str
    status: str  # succeeded, requires_action, processing, requires_payment_method, canceled
    amount_cents: Optional[int] = None
    payment_method: Optional[str] = None
    client_secret: Optional[str] = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, data: dict) -> "IntentResult":
        payment_method = data.get("payment_method")
        if isinstance(payment_method, dict):
            payment_method = payment_method.get("id")
        return cls(
            id=data.get("id", ""),
            status=data.get("status", ""),
            amount_cents=data.get("amount"),
            payment_method=payment_method,
            client_secret=data.get("client_secret"),
            raw=data,
        )


class PaymentGateway(Protocol):
    async def create_setup_intent(self, idempotency_key: str, metadata: dict) -> IntentResult: ...

    async def create_payment_intent(
        self,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict,
        payment_method: Optional[str] = None,
        off_session: bool = False,
    ) -> IntentResult: ...

    async def cancel_payment_intent(self, intent_id: str, idempotency_key: str) -> IntentResult: ...

    async def refund(self, intent_id: str, amount_cents: int, idempotency_key: str) -> IntentResult: ...


def _form_metadata(metadata: dict) -> dict:
    return {f"metadata[{key}]": str(value) for key, value in metadata.items()}


class StripeGateway:
    """Stripe PaymentIntent / SetupIntent operations"""

    def __init__(
        self,
        api_key: Optional[str] = STRIPE_SECRET_KEY,
        base_url: str = STRIPE_API_BASE,
        timeout: float = PAYMENT_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY not set; payment calls will fail until configured")

    async def _post(self, path: str, data: dict, idempotency_key: str) -> dict:
        if not self.api_key:
            raise PaymentFailure("Payment processor not configured", retryable=False)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}{path}",
                    auth=(self.api_key, ""),
                    data=data,
                    headers={"Idempotency-Key": idempotency_key},
                )
        except httpx.TimeoutException as e:
            logger.error(f"❌ Stripe timeout on {path}: {e}")
            raise PaymentFailure("Payment processor timed out", retryable=True) from e
        except httpx.HTTPError as e:
            logger.error(f"❌ Stripe transport error on {path}: {e}")
            raise PaymentFailure(f"Payment processor unreachable: {e}", retryable=True) from e

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        if response.status_code in (200, 201):
            return body

        error = body.get("error", {}) if isinstance(body, dict) else {}
        message = error.get("message", f"HTTP {response.status_code}")
        retryable = response.status_code == 429 or response.status_code >= 500
        logger.error(f"❌ Stripe API error [{response.status_code}] on {path}: {message}")

        # A card decline on confirm still returns the intent; surface it to the caller
        intent = error.get("payment_intent")
        raise PaymentFailure(
            message,
            details={
                "status_code": response.status_code,
                "code": error.get("code"),
                "decline_code": error.get("decline_code"),
                "payment_intent": intent.get("id") if isinstance(intent, dict) else None,
            },
            retryable=retryable,
        )

    async def create_setup_intent(self, idempotency_key: str, metadata: dict) -> IntentResult:
        """Save a card for an off-session charge later (authorize-now flow)"""
        data = {"usage": "off_session", **_form_metadata(metadata)}
        return IntentResult.from_stripe(await self._post("/setup_intents", data, idempotency_key))

    async def create_payment_intent(
        self,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict,
        payment_method: Optional[str] = None,
        off_session: bool = False,
    ) -> IntentResult:
        data = {
            "amount": str(amount_cents),
            "currency": "usd",
            "automatic_payment_methods[enabled]": "true",
            **_form_metadata(metadata),
        }
        if payment_method:
            data["payment_method"] = payment_method
            data["confirm"] = "true"
            if off_session:
                data["off_session"] = "true"
                data["automatic_payment_methods[allow_redirects]"] = "never"
        logger.info(f"💳 Creating payment intent for {amount_cents}¢ ({idempotency_key})")
        return IntentResult.from_stripe(await self._post("/payment_intents", data, idempotency_key))

    async def cancel_payment_intent(self, intent_id: str, idempotency_key: str) -> IntentResult:
        return IntentResult.from_stripe(
            await self._post(f"/payment_intents/{intent_id}/cancel", {}, idempotency_key)
        )

    async def refund(self, intent_id: str, amount_cents: int, idempotency_key: str) -> IntentResult:
        data = {"payment_intent": intent_id, "amount": str(amount_cents)}
        return IntentResult.from_stripe(await self._post("/refunds", data, idempotency_key))
