"""
Intent Plane Test Fixtures
==========================

Shared fixtures for all test modules.
"""

import asyncio
import time
from typing import Callable, List, Optional, Union
from unittest.mock import MagicMock

import pytest

from intent_plane.catalog import Block, InMemoryCatalog, Product, Profile
from intent_plane.config import (
    CookieSettings,
    IntentPlaneConfig,
    StripeConfig,
    SupervisorSettings,
)
from intent_plane.engine import build_engine
from intent_plane.errors import GatewayError
from intent_plane.gateway import GatewayPayment, GatewayStatus, PaymentGateway
from intent_plane.models import Actor, Order, OrderStatus


USER_HEADERS = {
    "X-Authentik-UID": "user-42",
    "X-Authentik-Email": "buyer@example.com",
    "X-Authentik-Username": "buyer",
}

OWNER_HEADERS = {
    "X-Authentik-UID": "owner-1",
    "X-Authentik-Email": "seller@example.com",
    "X-Authentik-Username": "asha",
}

COURSE_PRICE = 50000  # ₹500.00 in paise


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` from test code running outside the app's event loop."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


# ============================================
# CONFIG
# ============================================

@pytest.fixture
def test_config():
    """Test configuration with dummy values and instant polling."""
    return IntentPlaneConfig(
        stripe=StripeConfig(
            secret_key="sk_test_fake",
            webhook_secret="whsec_test_fake",
        ),
        supervisor=SupervisorSettings(poll_interval=0, max_attempts=60, create_attempts=3),
        cookie=CookieSettings(secure=False),
        log_format="text",
        sweep_interval=3600,
    )


# ============================================
# CATALOG
# ============================================

@pytest.fixture
def catalog():
    """A creator page with one of every kind of CTA."""
    catalog = InMemoryCatalog()
    catalog.add_profile(Profile(
        profile_id="creator",
        owner_id="owner-1",
        display_name="Asha",
        email="seller@example.com",
    ))
    catalog.add_profile(Profile(profile_id="other", owner_id="owner-2", display_name="Other"))

    catalog.add_product(Product(
        product_id="prod_course",
        profile_id="creator",
        title="Sketching Course",
        price=COURSE_PRICE,
    ))
    catalog.add_product(Product(
        product_id="prod_guest",
        profile_id="creator",
        title="Wallpaper Pack",
        price=19900,
        allow_guest_checkout=True,
    ))
    catalog.add_product(Product(
        product_id="prod_free",
        profile_id="creator",
        title="Sample Chapter",
        price=0,
    ))

    catalog.add_block(Block(
        block_id="blk_buy",
        profile_id="creator",
        block_type="product",
        title="Buy the course",
        cta_type="buy_now",
        product_id="prod_course",
    ))
    catalog.add_block(Block(
        block_id="blk_link",
        profile_id="creator",
        title="Portfolio",
        cta_type="visit",
        url="https://example.com/portfolio",
    ))
    catalog.add_block(Block(
        block_id="blk_enquire",
        profile_id="creator",
        title="Commission me",
        cta_type="enquire",
    ))
    catalog.add_block(Block(
        block_id="blk_contact_open",
        profile_id="creator",
        title="Say hi",
        cta_type="contact",
        cta_requires_login=False,
    ))
    catalog.add_block(Block(
        block_id="blk_free",
        profile_id="creator",
        title="Free chapter",
        cta_type="buy_now",
        product_id="prod_free",
    ))
    catalog.add_block(Block(
        block_id="blk_text",
        profile_id="creator",
        block_type="text",
        title="About",
        cta_type="none",
    ))
    catalog.add_block(Block(
        block_id="blk_other",
        profile_id="other",
        cta_type="visit",
        url="https://example.org",
    ))
    return catalog


# ============================================
# MOCK GATEWAY
# ============================================

class FakeGateway(PaymentGateway):
    """Scripted payment gateway.

    ``script`` is consumed one entry per lookup: a GatewayStatus to return or
    an exception to raise. Once empty, every lookup reports ``pending``.
    """

    name = "fake"

    def __init__(self):
        self.script: List[Union[GatewayStatus, Exception]] = []
        self.create_failures = 0
        self.create_delay = 0.0
        self.created: List[Order] = []
        self.lookups = 0
        self.closed = False

    def queue(self, *results: Union[GatewayStatus, Exception]):
        self.script.extend(results)

    def queue_pending(self, count: int):
        self.queue(*[GatewayStatus(OrderStatus.PENDING_CONFIRMATION) for _ in range(count)])

    async def create_payment(self, order: Order) -> GatewayPayment:
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_failures > 0:
            self.create_failures -= 1
            raise GatewayError("gateway down")
        self.created.append(order)
        reference = f"pay_{len(self.created)}"
        return GatewayPayment(external_reference=reference, payable_handle=f"upi://pay?tr={reference}")

    async def lookup(self, external_reference: str) -> GatewayStatus:
        self.lookups += 1
        if self.script:
            result = self.script.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return GatewayStatus(OrderStatus.PENDING_CONFIRMATION)

    async def close(self):
        self.closed = True


def paid(amount: int = COURSE_PRICE) -> GatewayStatus:
    return GatewayStatus(OrderStatus.PAID, amount_confirmed=amount)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


# ============================================
# MOCK SERVICES
# ============================================

@pytest.fixture
def mock_email_service():
    """Mock email service."""
    service = MagicMock()
    service.smtp_configured = True
    service.send_order_notification = MagicMock(return_value=True)
    service.send_purchase_receipt = MagicMock(return_value=True)
    service.send_enquiry_notification = MagicMock(return_value=True)
    return service


# ============================================
# ENGINE
# ============================================

@pytest.fixture
def engine(test_config, catalog, fake_gateway, mock_email_service):
    """In-memory engine with a scripted gateway."""
    return build_engine(
        test_config,
        gateway=fake_gateway,
        catalog=catalog,
        notifier=mock_email_service,
    )


@pytest.fixture
def user():
    return Actor.user("user-42", email="buyer@example.com", username="buyer")


@pytest.fixture
def other_user():
    return Actor.user("user-99", email="someone@example.com")


# ============================================
# STRIPE MOCKS
# ============================================

def stripe_payment_event(
    event_type: str,
    payment_intent_id: str,
    status: str,
    amount_received: Optional[int] = None,
) -> dict:
    return {
        "id": "evt_test_123",
        "type": event_type,
        "data": {
            "object": {
                "id": payment_intent_id,
                "object": "payment_intent",
                "status": status,
                "amount": amount_received or 0,
                "amount_received": amount_received or 0,
            }
        },
    }


@pytest.fixture
def stripe_succeeded_event():
    """Mock Stripe payment_intent.succeeded event for the first fake payment."""
    return stripe_payment_event("payment_intent.succeeded", "pay_1", "succeeded", 19900)


@pytest.fixture
def stripe_failed_event():
    """Mock Stripe payment_intent.payment_failed event for the first fake payment."""
    return stripe_payment_event("payment_intent.payment_failed", "pay_1", "requires_payment_method")


# ============================================
# FASTAPI TEST CLIENT
# ============================================

@pytest.fixture
def api_engine(test_config, catalog, fake_gateway, mock_email_service):
    """Engine for HTTP tests: short polls with a long budget so orders stay pending."""
    test_config.supervisor = SupervisorSettings(poll_interval=0.02, max_attempts=500, create_attempts=3)
    return build_engine(
        test_config,
        gateway=fake_gateway,
        catalog=catalog,
        notifier=mock_email_service,
    )


@pytest.fixture
def test_client(api_engine):
    """FastAPI test client for main.py, running startup and shutdown."""
    from fastapi.testclient import TestClient
    import main

    main.set_engine(api_engine)
    main.limiter.enabled = False
    with TestClient(main.app) as client:
        yield client
    main.set_engine(None)
