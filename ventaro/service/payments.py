from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from ventaro.logging import get_logger
from ventaro.service.errors import (
    ExternalServiceError,
    NotFoundError,
    ServerError,
    ValidationError,
)

logger = get_logger(__name__)

PRODUCT_NAME = "30 AI Prompts for Profit"
PRODUCT_DESCRIPTION = "Proven AI prompts to help you make money online"
PRODUCT_SLUG = "ai-prompts-pack"
UNIT_AMOUNT_CENTS = 1000
CURRENCY = "usd"

WEBHOOK_TOLERANCE_SECONDS = 300
CHECKOUT_COMPLETED = "checkout.session.completed"


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    paid: bool
    payment_status: Optional[str] = None
    customer_email: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "CheckoutSession":
        details = payload.get("customer_details") or {}
        status = payload.get("payment_status")
        return cls(
            id=str(payload.get("id", "")),
            paid=status == "paid",
            payment_status=status,
            customer_email=details.get("email") or payload.get("customer_email"),
            url=payload.get("url"),
        )


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def object(self) -> dict[str, Any]:
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else {}


class PaymentClient:
    """Checkout client for a Stripe-compatible REST API.

    Every call is bounded by ``timeout``. Timeouts, transport failures and
    5xx/429 answers become retryable ``ExternalServiceError``s; session
    retrieval retries them with exponential backoff, checkout creation only
    when the caller supplied an idempotency key.
    """

    def __init__(
        self,
        secret_key: Optional[str],
        *,
        webhook_secret: Optional[str] = None,
        api_base: str = "https://api.stripe.com",
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self._transport = transport
        self._sleep = sleep
        self._clock = clock or time.time
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_base,
                timeout=httpx.Timeout(self.timeout),
                headers={"Authorization": f"Bearer {self.secret_key}"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _send_once(
        self,
        method: str,
        path: str,
        *,
        data: Optional[dict[str, str]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.request(method, path, data=data, headers=headers)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ExternalServiceError("payment provider timed out", retryable=True) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 404:
                raise NotFoundError("payment provider resource not found") from exc
            retryable = status >= 500 or status == 429
            raise ExternalServiceError(
                f"payment provider returned {status}",
                retryable=retryable,
                detail={"provider_status": status},
            ) from exc
        except httpx.TransportError as exc:
            raise ExternalServiceError("payment provider unreachable", retryable=True) from exc
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise ExternalServiceError("payment provider sent malformed JSON") from exc
        if not isinstance(payload, dict):
            raise ExternalServiceError("payment provider sent unexpected payload")
        return payload

    async def _request(
        self,
        method: str,
        path: str,
        *,
        attempts: int,
        data: Optional[dict[str, str]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        if not self.is_configured:
            raise ExternalServiceError("payment provider is not configured")
        for attempt in range(1, attempts + 1):
            try:
                return await self._send_once(method, path, data=data, headers=headers)
            except ExternalServiceError as exc:
                if not exc.retryable or attempt >= attempts:
                    logger.error(
                        "payment_request_failed",
                        path=path,
                        attempt=attempt,
                        retryable=exc.retryable,
                        error=exc.message,
                    )
                    raise
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "payment_request_retry",
                    path=path,
                    attempt=attempt,
                    retry_delay=delay,
                    error=exc.message,
                )
                await self._sleep(delay)
        raise ExternalServiceError("payment request exhausted retries")

    async def create_checkout_session(
        self, origin: str, *, idempotency_key: Optional[str] = None
    ) -> CheckoutSession:
        origin = origin.rstrip("/")
        form = {
            "mode": "payment",
            "payment_method_types[0]": "card",
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]": CURRENCY,
            "line_items[0][price_data][unit_amount]": str(UNIT_AMOUNT_CENTS),
            "line_items[0][price_data][product_data][name]": PRODUCT_NAME,
            "line_items[0][price_data][product_data][description]": PRODUCT_DESCRIPTION,
            "line_items[0][price_data][product_data][images][0]": f"{origin}/assets/product-image.jpg",
            "success_url": f"{origin}/download?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{origin}/buy",
            "metadata[product]": PRODUCT_SLUG,
        }
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        # Creating a session is not idempotent without a key; never retry it blind
        attempts = self.max_retries if idempotency_key else 1
        payload = await self._request(
            "POST", "/v1/checkout/sessions", attempts=attempts, data=form, headers=headers
        )
        session = CheckoutSession.from_payload(payload)
        logger.info("checkout_session_created", checkout_session_id=session.id)
        return session

    async def retrieve_session(self, session_id: str) -> CheckoutSession:
        payload = await self._request(
            "GET", f"/v1/checkout/sessions/{session_id}", attempts=self.max_retries
        )
        return CheckoutSession.from_payload(payload)

    def verify_webhook(self, payload: bytes, signature_header: Optional[str]) -> WebhookEvent:
        """Check a ``t=<ts>,v1=<hex>`` signature before trusting the event body."""
        if not self.webhook_secret:
            raise ServerError("webhook secret is not configured")
        if not signature_header:
            raise ValidationError("missing webhook signature", user_message="Invalid signature")

        timestamp: Optional[str] = None
        signatures: list[str] = []
        for item in signature_header.split(","):
            key, _, value = item.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if not timestamp or not timestamp.isdigit() or not signatures:
            raise ValidationError("malformed webhook signature", user_message="Invalid signature")
        if abs(self._clock() - int(timestamp)) > WEBHOOK_TOLERANCE_SECONDS:
            raise ValidationError("webhook timestamp outside tolerance", user_message="Invalid signature")

        signed = timestamp.encode() + b"." + payload
        expected = hmac.new(self.webhook_secret.encode(), signed, hashlib.sha256).hexdigest()
        if not any(hmac.compare_digest(expected.encode(), sig.encode()) for sig in signatures):
            logger.warning("webhook_signature_mismatch")
            raise ValidationError("webhook signature mismatch", user_message="Invalid signature")

        try:
            body = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError("webhook body is not JSON", user_message="Invalid payload") from exc
        if not isinstance(body, dict) or not isinstance(body.get("type"), str):
            raise ValidationError("webhook body missing type", user_message="Invalid payload")
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        return WebhookEvent(id=str(body.get("id", "")), type=body["type"], data=data)
