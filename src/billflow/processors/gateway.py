"""Payment gateway adapters over HTTP."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

from billflow.errors import ProcessorError, ProcessorTimeout
from billflow.models import PaymentMethodType, PaymentStatus
from billflow.processors.base import ProcessorResult

if TYPE_CHECKING:
    from billflow.config import GatewayConfig
    from billflow.processors.base import PaymentProcessor, PaymentRequest

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")

_STATUS_MAP = {
    "succeeded": PaymentStatus.COMPLETED,
    "completed": PaymentStatus.COMPLETED,
    "paid": PaymentStatus.COMPLETED,
    "pending": PaymentStatus.PROCESSING,
    "processing": PaymentStatus.PROCESSING,
    "submitted": PaymentStatus.PROCESSING,
    "failed": PaymentStatus.FAILED,
    "declined": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
    "returned": PaymentStatus.FAILED,
}


def map_status(raw: str) -> PaymentStatus:
    """Translate a gateway status; unknown values stay in flight."""
    return _STATUS_MAP.get(raw.lower(), PaymentStatus.PROCESSING)


class GatewayProcessor:
    """Base adapter posting payments to one gateway endpoint.

    Subclasses set the endpoint, the fee schedule and the delivery
    estimate for their payment rail.
    """

    method_type: ClassVar[PaymentMethodType]
    endpoint: ClassVar[str]
    delivery_days: ClassVar[int]
    flat_fee: ClassVar[Decimal] = Decimal("0")
    percent_fee: ClassVar[Decimal] = Decimal("0")

    def __init__(
        self,
        config: GatewayConfig,
        *,
        client: httpx.Client | None = None,
        timeout: float = 15.0,
    ) -> None:
        self.config = config
        self.client = client or httpx.Client()
        self.timeout = timeout

    def fee_for(self, amount: Decimal) -> Decimal:
        fee = amount * self.percent_fee + self.flat_fee
        return fee.quantize(_CENT, rounding=ROUND_HALF_UP)

    def process_payment(self, request: PaymentRequest) -> ProcessorResult:
        payload = {
            "amount": str(request.amount),
            "currency": request.currency,
            "reference": request.bill_reference,
            "payee": {
                "id": str(request.vendor.id),
                "name": request.vendor.name,
                "email": request.vendor.email,
            },
            "destination": request.method.details,
        }
        body = self._call(
            "POST",
            f"/v1/{self.endpoint}",
            token=request.idempotency_token,
            json=payload,
        )
        today = datetime.now(tz=UTC).date()
        return ProcessorResult(
            reference=body.get("id"),
            status=map_status(str(body.get("status", "processing"))),
            fee=self.fee_for(request.amount),
            estimated_delivery=today + timedelta(days=self.delivery_days),
            error=body.get("failure_reason"),
        )

    def fetch_status(self, idempotency_token: str) -> ProcessorResult:
        try:
            body = self._call(
                "GET", f"/v1/payments/{idempotency_token}", token=idempotency_token
            )
        except _UnknownPayment:
            return ProcessorResult(
                reference=None,
                status=PaymentStatus.FAILED,
                error="payment unknown to processor",
            )
        return ProcessorResult(
            reference=body.get("id"),
            status=map_status(str(body.get("status", "processing"))),
            error=body.get("failure_reason"),
        )

    def _call(
        self,
        method: str,
        path: str,
        *,
        token: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.config.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Idempotency-Key": token,
        }
        try:
            response = self.client.request(
                method, url, json=json, headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            logger.warning("Gateway timeout on %s %s", method, path)
            msg = f"{self.method_type.value} gateway timed out"
            raise ProcessorTimeout(msg) from e
        except httpx.RequestError as e:
            logger.error("Failed to reach payment gateway: %s", e)
            msg = f"{self.method_type.value} gateway unreachable: {e}"
            raise ProcessorError(msg, retryable=True) from e

        if response.status_code == 404 and method == "GET":
            raise _UnknownPayment
        if response.status_code >= 500:
            logger.error("Gateway error: %s", response.status_code)
            msg = f"{self.method_type.value} gateway error: {response.status_code}"
            raise ProcessorError(msg, retryable=True)
        if response.status_code >= 400:
            msg = (
                f"{self.method_type.value} payment declined: "
                f"{response.status_code} {_error_text(response)}"
            )
            raise ProcessorError(msg, retryable=False)
        return response.json()  # type: ignore[no-any-return]


class AchProcessor(GatewayProcessor):
    """Bank transfer over ACH."""

    method_type = PaymentMethodType.ACH
    endpoint = "ach_transfers"
    delivery_days = 3
    flat_fee = Decimal("0.25")


class CardProcessor(GatewayProcessor):
    method_type = PaymentMethodType.CARD
    endpoint = "card_payments"
    delivery_days = 2
    flat_fee = Decimal("0.30")
    percent_fee = Decimal("0.029")


class WireProcessor(GatewayProcessor):
    method_type = PaymentMethodType.WIRE
    endpoint = "wires"
    delivery_days = 1
    flat_fee = Decimal("25.00")


class WalletProcessor(GatewayProcessor):
    """Third-party wallet payout (PayPal-style)."""

    method_type = PaymentMethodType.WALLET
    endpoint = "wallet_payouts"
    delivery_days = 1
    flat_fee = Decimal("0.30")
    percent_fee = Decimal("0.029")


def build_processors(
    config: GatewayConfig,
    *,
    client: httpx.Client | None = None,
    timeout: float = 15.0,
) -> dict[PaymentMethodType, PaymentProcessor]:
    """One adapter per payment method type, sharing one HTTP client."""
    shared = client or httpx.Client()
    adapters: list[GatewayProcessor] = [
        cls(config, client=shared, timeout=timeout)
        for cls in (AchProcessor, CardProcessor, WireProcessor, WalletProcessor)
    ]
    return {adapter.method_type: adapter for adapter in adapters}


class _UnknownPayment(Exception):
    """Gateway has no record for the requested payment."""


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)
    return str(body)
