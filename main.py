"""
Intent Plane API
================

Main entry point for the intent resolution and payment confirmation service.

Endpoints:
- POST /api/intents - Record a visitor action (public)
- POST /api/intents/resume - Resume the pending intent after login (authenticated)
- POST /api/intents/{intent_id}/dispatch - Run the completion flow
- PUT /api/intents/{intent_id}/abandon - Abandon an open intent
- GET /api/intents/{intent_id} - Intent status
- GET /api/intents - Dashboard listing (profile owner)
- GET /api/intents/stats - Dashboard stats (profile owner)
- GET /api/enquiries - Recorded enquiries (profile owner)
- POST /api/orders - Open a payment order and start supervision
- GET /api/orders/{order_id}/status - Order status
- POST /api/orders/{order_id}/cancel - Stop supervising an order
- POST /api/webhook/stripe - Stripe webhook (public, signature verified)
- GET /api/health - Health check
"""

import asyncio
import logging
import math
import re
from typing import Optional
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator
import stripe

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

# Load .env file if present (dev mode)
load_dotenv()

from intent_plane.config import IntentPlaneConfig
from intent_plane.database import check_health, close_pool, open_pool
from intent_plane.dispatcher import effect_for_order, order_owned_by, owned_by
from intent_plane.engine import IntentEngine, build_engine
from intent_plane.errors import (
    AuthenticationRequired,
    Conflict,
    InvalidInput,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    TransientError,
)
from intent_plane.gateway import stripe_status
from intent_plane.identity import get_actor, require_actor
from intent_plane.logging_config import configure_logging
from intent_plane.models import (
    Actor,
    ContactDetails,
    CtaKind,
    DispatchInstruction,
    IntentStatus,
    OrderStatus,
)
from intent_plane.resolver import IntentContext

logger = logging.getLogger(__name__)

# Load centralized config from environment
config = IntentPlaneConfig.from_env()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

# Initialize FastAPI
app = FastAPI(
    title="Intent Plane",
    description="Intent resolution and payment confirmation API",
    version="1.0.0",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS from config
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

# Stripe events that carry a payment result
PAYMENT_EVENTS = {
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
}

# Global state
_engine: Optional[IntentEngine] = None
_sweeper_task: Optional[asyncio.Task] = None


def get_engine() -> IntentEngine:
    """Get or create the engine instance."""
    global _engine
    if _engine is None:
        _engine = build_engine(config)
    return _engine


def set_engine(engine: Optional[IntentEngine]):
    """Replace the engine (used at startup and by tests)."""
    global _engine
    _engine = engine


@app.on_event("startup")
async def startup_event():
    """Initialize all services on startup."""
    global _sweeper_task
    configure_logging(config.log_level, config.log_format)

    if _engine is None:
        db_pool = None
        if config.database.is_configured:
            db_pool = await open_pool(config.database)
        set_engine(build_engine(config, db_pool=db_pool))

    _sweeper_task = asyncio.create_task(get_engine().sweeper.start())
    logger.info("Intent Plane API started")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on shutdown."""
    global _sweeper_task
    engine = get_engine()
    await engine.close()
    if _sweeper_task is not None:
        _sweeper_task.cancel()
        try:
            await _sweeper_task
        except asyncio.CancelledError:
            pass
        _sweeper_task = None
    if engine.db_pool is not None:
        await close_pool(engine.db_pool)


# =============================================================================
# Error mapping
# =============================================================================

def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(InvalidInput)
async def invalid_input_handler(request: Request, exc: InvalidInput):
    return _error(400, exc)


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return _error(404, exc)


@app.exception_handler(AuthenticationRequired)
async def authentication_handler(request: Request, exc: AuthenticationRequired):
    return _error(401, exc)


@app.exception_handler(PermissionDenied)
async def permission_handler(request: Request, exc: PermissionDenied):
    return _error(403, exc)


@app.exception_handler(Conflict)
async def conflict_handler(request: Request, exc: Conflict):
    return _error(409, exc)


@app.exception_handler(TransientError)
async def transient_handler(request: Request, exc: TransientError):
    logger.warning(f"Transient failure on {request.url.path}: {exc}")
    return _error(503, exc)


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    logger.error(f"Invalid transition on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal state error"})


# =============================================================================
# Request models
# =============================================================================

class CreateIntentRequest(BaseModel):
    profile_id: str
    block_id: Optional[str] = None
    product_id: Optional[str] = None
    cta_kind: Optional[CtaKind] = None
    source: Optional[str] = None
    session_id: Optional[str] = None

    @field_validator("profile_id")
    @classmethod
    def validate_profile_id(cls, v):
        if not v.strip():
            raise ValueError("profile_id is required")
        return v.strip()


class ContactRequest(BaseModel):
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    message: str = ""

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        if v is None or not v.strip():
            return None
        if not EMAIL_RE.match(v.strip()):
            raise ValueError("Invalid email format")
        return v.lower().strip()

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        if v is None or not v.strip():
            return None
        if not re.match(r"^\+?[0-9 ()-]{6,20}$", v.strip()):
            raise ValueError("Invalid phone number")
        return v.strip()

    def to_contact(self) -> ContactDetails:
        return ContactDetails(name=self.name, email=self.email, phone=self.phone, message=self.message)


class ResumeRequest(BaseModel):
    intent_id: Optional[str] = None


class DispatchRequest(BaseModel):
    contact: Optional[ContactRequest] = None


class CreateOrderRequest(BaseModel):
    intent_id: Optional[str] = None
    amount: int  # minor units
    payee: str
    currency: str = "INR"
    email: Optional[str] = None  # guest checkout

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v):
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError("amount must be an integer number of minor units")
        if v <= 0:
            raise ValueError("amount must be positive")
        return v

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v):
        if not re.match(r"^[A-Za-z]{3}$", v):
            raise ValueError("currency must be a 3-letter code")
        return v.upper()

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        if v is None or not v.strip():
            return None
        if not EMAIL_RE.match(v.strip()):
            raise ValueError("Invalid email format")
        return v.lower().strip()


# =============================================================================
# Health
# =============================================================================

@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    engine = get_engine()
    health = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "stripe_configured": engine.config.stripe.is_configured,
        "webhook_configured": bool(engine.config.stripe.webhook_secret),
        **engine.status(),
    }

    if engine.db_pool is not None:
        health["database"] = await check_health(engine.db_pool)
        if not health["database"]["connected"]:
            health["status"] = "degraded"

    return health


# =============================================================================
# Intents
# =============================================================================

@app.post("/api/intents")
@limiter.limit("30/minute")
async def create_intent(
    request: Request,
    response: Response,
    payload: CreateIntentRequest,
    actor: Actor = Depends(get_actor),
):
    """
    Record a visitor action and decide whether login is required.

    Login-gated intents are stored in the pending-intent cookie so they
    survive the identity detour. Plain links complete immediately.
    """
    engine = get_engine()
    intent = await engine.resolver.create_intent(
        IntentContext(
            profile_id=payload.profile_id,
            block_id=payload.block_id,
            product_id=payload.product_id,
            cta_kind=payload.cta_kind,
            source=payload.source,
            session_id=payload.session_id,
        ),
        actor,
    )

    result = {
        "intent_id": intent.intent_id,
        "requires_login": intent.requires_login,
        "flow_type": intent.cta_kind.value,
        "cta_kind": intent.cta_kind.value,
        "status": intent.status.value,
        "expires_at": intent.expires_at.isoformat(),
    }

    if intent.requires_login:
        engine.pending_token.write(response, intent.intent_id)
    elif intent.cta_kind in (CtaKind.REDIRECT, CtaKind.NONE):
        effect = await engine.dispatcher.dispatch(DispatchInstruction.from_intent(intent), actor)
        result["effect"] = effect.to_dict()
        result["status"] = IntentStatus.COMPLETED.value

    return result


@app.post("/api/intents/resume")
@limiter.limit("30/minute")
async def resume_intent(
    request: Request,
    response: Response,
    payload: Optional[ResumeRequest] = None,
    actor: Actor = Depends(require_actor),
):
    """Resume the intent named in the body, or the one held in the pending-intent cookie."""
    engine = get_engine()
    token = (payload.intent_id if payload else None) or engine.pending_token.read(request)

    result = await engine.resume_gate.resume(token, actor)
    if result.clear_token:
        engine.pending_token.clear(response)
    return result.to_dict()


@app.get("/api/intents/stats")
async def intent_stats(profile_id: str, actor: Actor = Depends(require_actor)):
    """Per-flow totals and completions for the profile owner's dashboard."""
    engine = get_engine()
    await _require_owner(engine, profile_id, actor)
    return await engine.intents.stats_for_profile(profile_id)


@app.get("/api/intents")
async def list_intents(
    profile_id: str,
    flow_type: Optional[CtaKind] = None,
    status: Optional[IntentStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(require_actor),
):
    """Newest-first intents for the profile owner's dashboard."""
    engine = get_engine()
    await _require_owner(engine, profile_id, actor)

    intents = await engine.intents.list_for_profile(
        profile_id, cta_kind=flow_type, status=status, limit=limit, skip=(page - 1) * limit,
    )
    total = await engine.intents.count_for_profile(profile_id, cta_kind=flow_type, status=status)
    return {
        "intents": [intent.to_dict() for intent in intents],
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit) if total else 0,
    }


@app.get("/api/intents/{intent_id}")
async def get_intent(intent_id: str):
    engine = get_engine()
    intent = await engine.intents.get(intent_id)
    if intent is None:
        raise HTTPException(status_code=404, detail="Intent not found")
    return intent.public_view()


@app.post("/api/intents/{intent_id}/dispatch")
@limiter.limit("30/minute")
async def dispatch_intent(
    request: Request,
    intent_id: str,
    payload: Optional[DispatchRequest] = None,
    actor: Actor = Depends(get_actor),
):
    """Run the completion flow for an intent that is ready to complete."""
    engine = get_engine()
    intent = await engine.intents.get(intent_id)
    if intent is None:
        raise HTTPException(status_code=404, detail="Intent not found")

    contact = payload.contact.to_contact() if payload and payload.contact else None
    effect = await engine.dispatcher.dispatch(DispatchInstruction.from_intent(intent), actor, contact)
    return {"effect": effect.to_dict()}


@app.put("/api/intents/{intent_id}/abandon")
async def abandon_intent(
    intent_id: str,
    request: Request,
    response: Response,
    actor: Actor = Depends(get_actor),
):
    engine = get_engine()
    await engine.dispatcher.abandon(intent_id, actor)
    intent = await engine.intents.get(intent_id)

    if engine.pending_token.read(request) == intent_id:
        engine.pending_token.clear(response)
    return {"intent_id": intent_id, "status": intent.status.value}


# =============================================================================
# Enquiries
# =============================================================================

@app.get("/api/enquiries")
async def list_enquiries(
    profile_id: str,
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(require_actor),
):
    engine = get_engine()
    await _require_owner(engine, profile_id, actor)
    enquiries = await engine.enquiries.list_for_profile(profile_id, limit=limit)
    return {"enquiries": [enquiry.to_dict() for enquiry in enquiries]}


async def _require_owner(engine: IntentEngine, profile_id: str, actor: Actor):
    profile = await engine.catalog.get_profile(profile_id)
    if profile is None:
        raise NotFound(f"Profile {profile_id} not found")
    if profile.owner_id != actor.user_id:
        raise PermissionDenied("Only the profile owner can view this")


# =============================================================================
# Orders
# =============================================================================

@app.post("/api/orders")
@limiter.limit("10/minute")
async def create_order(
    request: Request,
    payload: CreateOrderRequest,
    actor: Actor = Depends(get_actor),
):
    """Open a payment order and start supervising it."""
    engine = get_engine()

    if payload.intent_id:
        intent = await engine.intents.get(payload.intent_id)
        if intent is None:
            raise NotFound(f"Intent {payload.intent_id} not found")
        if not owned_by(intent, actor):
            raise PermissionDenied("This intent belongs to another user")

    buyer = actor
    if actor.is_anonymous and payload.email:
        buyer = Actor.guest(payload.email)

    order = await engine.supervisor.open_order(
        payload.intent_id,
        payload.amount,
        payload.payee,
        currency=payload.currency,
        buyer=buyer,
    )
    if order.status == OrderStatus.PENDING_CONFIRMATION:
        engine.supervisor.start(order.order_id)

    return {
        "order_id": order.order_id,
        "intent_id": order.intent_id,
        "external_reference": order.external_reference,
        "payable_handle": order.payable_handle,
        "amount": order.amount,
        "currency": order.currency,
        "status": order.status.value,
    }


@app.get("/api/orders/{order_id}/status")
async def get_order_status(order_id: str):
    engine = get_engine()
    order = await engine.orders.get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")

    effect = effect_for_order(order)
    return {
        "order_id": order.order_id,
        "status": order.status.value,
        "amount_confirmed": order.amount_confirmed,
        "message": effect.message,
        "effect": effect.to_dict(),
        "supervising": engine.supervisor.is_supervising(order_id),
    }


@app.post("/api/orders/{order_id}/cancel")
async def cancel_order(order_id: str, actor: Actor = Depends(get_actor)):
    """Stop supervising an order the visitor closed."""
    engine = get_engine()
    order = await engine.orders.get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    if not order_owned_by(order, actor):
        raise PermissionDenied("This order belongs to another user")

    cancelled = await engine.supervisor.cancel(order_id)
    order = await engine.orders.get(order_id)
    return {"order_id": order_id, "status": order.status.value, "cancelled": cancelled}


# =============================================================================
# Stripe webhook
# =============================================================================

@app.post("/api/webhook/stripe")
@limiter.limit("60/minute")
async def stripe_webhook(request: Request):
    """
    Handle Stripe payment events.

    This endpoint is PUBLIC but secured via Stripe signature verification.
    Results go through the same order transition as polling, so a duplicate
    or late event is a no-op.
    """
    engine = get_engine()
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not engine.config.stripe.webhook_secret:
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    try:
        event = stripe.Webhook.construct_event(
            payload, sig_header, engine.config.stripe.webhook_secret
        )
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    event_type = event["type"]
    logger.info(f"Stripe webhook received: {event_type}")

    if event_type not in PAYMENT_EVENTS:
        return {"received": True}

    payment_intent = event["data"]["object"]
    order = await engine.orders.get_by_external_reference(payment_intent["id"])
    if order is None:
        logger.warning(f"No order for Stripe PaymentIntent {payment_intent['id']}")
        return {"received": True}

    # payment_failed leaves the PaymentIntent retryable; only its own status settles the order
    result = stripe_status(payment_intent)
    updated = await engine.supervisor.apply_status(order.order_id, result.status, result.amount_confirmed)
    return {"received": True, "order_id": order.order_id, "applied": updated is not None}
