"""
Payment Gateway Boundary
========================

The intent plane does not move money. It asks a gateway for a payable
reference and then looks that reference up until the gateway reports a
terminal result. Gateways are opaque, possibly slow and possibly flaky:
network problems, rate limits and 5xx answers raise GatewayError, which the
supervisor treats as transient.

Implementations:
- StripeGateway: Stripe PaymentIntents through the stripe SDK
- HttpGateway: a generic REST order-status API through httpx
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import stripe

from .config import GatewayConfig, StripeConfig
from .errors import GatewayError, InvalidInput
from .models import Order, OrderStatus

logger = logging.getLogger(__name__)


@dataclass
class GatewayPayment:
    """What the gateway returned when asked for a payable reference."""
    external_reference: str
    payable_handle: Optional[str] = None


@dataclass
class GatewayStatus:
    """One status lookup result."""
    status: OrderStatus
    amount_confirmed: Optional[int] = None


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    name: str = "base"

    @abstractmethod
    async def create_payment(self, order: Order) -> GatewayPayment:
        """Request a payable reference for ``order``."""

    @abstractmethod
    async def lookup(self, external_reference: str) -> GatewayStatus:
        """Report the current status of a payment."""

    async def close(self):
        """Release any held connections."""


# =============================================================================
# Stripe
# =============================================================================

STRIPE_STATUS_MAP = {
    "succeeded": OrderStatus.PAID,
    "canceled": OrderStatus.FAILED,
}


def stripe_status(payment_intent: Any) -> GatewayStatus:
    """Normalize a Stripe PaymentIntent into a GatewayStatus."""
    status = STRIPE_STATUS_MAP.get(payment_intent["status"], OrderStatus.PENDING_CONFIRMATION)
    amount = payment_intent.get("amount_received") if status == OrderStatus.PAID else None
    return GatewayStatus(status=status, amount_confirmed=amount)


class StripeGateway(PaymentGateway):
    """Stripe PaymentIntents. SDK calls are blocking, so they run in a worker thread."""

    name = "stripe"

    def __init__(self, config: StripeConfig):
        if not config.is_configured:
            raise ValueError("STRIPE_SECRET_KEY is required for the stripe gateway")
        stripe.api_key = config.secret_key

    async def create_payment(self, order: Order) -> GatewayPayment:
        try:
            payment_intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=order.amount,
                currency=order.currency.lower(),
                metadata={
                    "order_id": order.order_id,
                    "intent_id": order.intent_id or "",
                    "payee": order.payee_reference,
                },
                idempotency_key=order.order_id,
            )
        except stripe.InvalidRequestError as e:
            raise InvalidInput(f"Stripe rejected order {order.order_id}: {e.user_message or e}") from e
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe unavailable: {e}") from e

        logger.info(
            f"Created Stripe PaymentIntent {payment_intent['id']} for order {order.order_id}",
            extra={"order_id": order.order_id},
        )
        return GatewayPayment(
            external_reference=payment_intent["id"],
            payable_handle=payment_intent["client_secret"],
        )

    async def lookup(self, external_reference: str) -> GatewayStatus:
        try:
            payment_intent = await asyncio.to_thread(
                stripe.PaymentIntent.retrieve, external_reference
            )
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe lookup failed: {e}") from e
        return stripe_status(payment_intent)


# =============================================================================
# Generic HTTP
# =============================================================================

HTTP_STATUS_MAP = {
    "paid": OrderStatus.PAID,
    "success": OrderStatus.PAID,
    "succeeded": OrderStatus.PAID,
    "failed": OrderStatus.FAILED,
    "cancelled": OrderStatus.FAILED,
    "canceled": OrderStatus.FAILED,
    "expired": OrderStatus.EXPIRED,
}


class HttpGateway(PaymentGateway):
    """
    REST order-status API.

        POST {base_url}/orders              -> {"reference", "payable_handle"}
        GET  {base_url}/orders/{reference}  -> {"status", "amount_confirmed"}
    """

    name = "http"

    def __init__(self, config: GatewayConfig, client: Optional[httpx.AsyncClient] = None):
        if not config.base_url:
            raise ValueError("GATEWAY_BASE_URL is required for the http gateway")
        headers = {"Accept": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        self.client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers=headers,
            timeout=config.timeout,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise GatewayError(f"Gateway unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise GatewayError(f"Gateway answered {response.status_code}")
        if response.status_code >= 400:
            raise InvalidInput(f"Gateway rejected request: {response.status_code} {response.text}")

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(f"Gateway returned invalid JSON: {e}") from e

    async def create_payment(self, order: Order) -> GatewayPayment:
        data = await self._request(
            "POST",
            "/orders",
            json={
                "order_id": order.order_id,
                "amount": order.amount,
                "currency": order.currency,
                "payee": order.payee_reference,
            },
        )
        if not data.get("reference"):
            raise GatewayError("Gateway response has no reference")
        return GatewayPayment(
            external_reference=data["reference"],
            payable_handle=data.get("payable_handle"),
        )

    async def lookup(self, external_reference: str) -> GatewayStatus:
        data = await self._request("GET", f"/orders/{external_reference}")
        raw = str(data.get("status", "")).lower()
        status = HTTP_STATUS_MAP.get(raw, OrderStatus.PENDING_CONFIRMATION)

        amount = data.get("amount_confirmed")
        if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int)):
            # Minor units only
            raise GatewayError(f"Gateway reported a non-integer amount: {amount!r}")
        return GatewayStatus(status=status, amount_confirmed=amount)

    async def close(self):
        await self.client.aclose()


def build_gateway(gateway_config: GatewayConfig, stripe_config: StripeConfig) -> PaymentGateway:
    """Create the gateway selected by GATEWAY_KIND."""
    if gateway_config.kind == "http":
        return HttpGateway(gateway_config)
    if gateway_config.kind == "stripe":
        return StripeGateway(stripe_config)
    raise ValueError(f"Unknown gateway kind: {gateway_config.kind}")
