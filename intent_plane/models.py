"""
Intent Plane Data Model
=======================

Intent, Order and Enquiry records plus the typed results passed between
components.

Status edges live here as plain tables so every store enforces the same
state machine:

    Intent: pending -> resumed -> completed
            pending/resumed -> abandoned | expired
            pending -> completed   (only when login was never required)

    Order:  created -> pending_confirmation -> paid | failed | expired
            created -> failed
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from .errors import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CtaKind(str, Enum):
    """Semantic kind of a call-to-action; selects the completion flow."""
    REDIRECT = "redirect"
    ENQUIRY = "enquiry"
    BUY = "buy"
    NONE = "none"


class IntentStatus(str, Enum):
    PENDING = "pending"
    RESUMED = "resumed"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    EXPIRED = "expired"


class OrderStatus(str, Enum):
    CREATED = "created"
    PENDING_CONFIRMATION = "pending_confirmation"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"


INTENT_TRANSITIONS: Dict[IntentStatus, FrozenSet[IntentStatus]] = {
    IntentStatus.PENDING: frozenset({
        IntentStatus.RESUMED,
        IntentStatus.COMPLETED,
        IntentStatus.ABANDONED,
        IntentStatus.EXPIRED,
    }),
    IntentStatus.RESUMED: frozenset({
        IntentStatus.COMPLETED,
        IntentStatus.ABANDONED,
        IntentStatus.EXPIRED,
    }),
}

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({
        OrderStatus.PENDING_CONFIRMATION,
        OrderStatus.FAILED,
    }),
    OrderStatus.PENDING_CONFIRMATION: frozenset({
        OrderStatus.PAID,
        OrderStatus.FAILED,
        OrderStatus.EXPIRED,
    }),
}

INTENT_TERMINAL = frozenset({IntentStatus.COMPLETED, IntentStatus.ABANDONED, IntentStatus.EXPIRED})
ORDER_TERMINAL = frozenset({OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.EXPIRED})


class ActorKind(str, Enum):
    ANONYMOUS = "anonymous"
    USER = "user"
    GUEST = "guest"  # anonymous visitor identified only by a collected email


@dataclass(frozen=True)
class Actor:
    """Who performed an action."""
    kind: ActorKind = ActorKind.ANONYMOUS
    user_id: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None

    @classmethod
    def anonymous(cls) -> "Actor":
        return cls()

    @classmethod
    def user(cls, user_id: str, email: Optional[str] = None, username: Optional[str] = None) -> "Actor":
        return cls(kind=ActorKind.USER, user_id=user_id, email=email, username=username)

    @classmethod
    def guest(cls, email: str) -> "Actor":
        return cls(kind=ActorKind.GUEST, email=email.strip().lower())

    @property
    def is_anonymous(self) -> bool:
        return self.kind == ActorKind.ANONYMOUS

    @property
    def is_authenticated(self) -> bool:
        return self.kind == ActorKind.USER

    def reference(self) -> str:
        """Stable string form used for persistence and logs."""
        if self.kind == ActorKind.USER:
            return f"user:{self.user_id}"
        if self.kind == ActorKind.GUEST:
            return f"guest:{self.email}"
        return "anonymous"

    @classmethod
    def from_reference(cls, ref: Optional[str]) -> "Actor":
        if not ref or ref == "anonymous":
            return cls.anonymous()
        kind, _, value = ref.partition(":")
        if kind == "user":
            return cls.user(value)
        if kind == "guest":
            return cls.guest(value)
        raise ValueError(f"Unknown actor reference: {ref}")


@dataclass
class Intent:
    """A visitor's attempted action, recorded before any identity or payment step."""
    intent_id: str
    profile_id: str
    cta_kind: CtaKind
    requires_login: bool
    expires_at: datetime
    actor: Actor = field(default_factory=Actor.anonymous)
    block_id: Optional[str] = None
    product_id: Optional[str] = None
    status: IntentStatus = IntentStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)

    # Snapshot of the target taken at creation
    target_url: Optional[str] = None
    amount: int = 0
    currency: str = "INR"
    payee_reference: Optional[str] = None

    resumed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    linked_order_id: Optional[str] = None
    linked_enquiry_id: Optional[str] = None

    # Visitor tracking (internal only)
    source: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in INTENT_TERMINAL

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent_id": self.intent_id,
            "profile_id": self.profile_id,
            "block_id": self.block_id,
            "product_id": self.product_id,
            "actor": self.actor.reference(),
            "cta_kind": self.cta_kind.value,
            "requires_login": self.requires_login,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "resumed_at": self.resumed_at.isoformat() if self.resumed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "target_url": self.target_url,
            "amount": self.amount,
            "currency": self.currency,
            "payee_reference": self.payee_reference,
            "linked_order_id": self.linked_order_id,
            "linked_enquiry_id": self.linked_enquiry_id,
            "source": self.source,
            "session_id": self.session_id,
        }

    def public_view(self) -> Dict[str, Any]:
        """Fields safe to show the visitor who holds the token."""
        return {
            "intent_id": self.intent_id,
            "flow_type": self.cta_kind.value,
            "requires_login": self.requires_login,
            "status": self.status.value,
            "expires_at": self.expires_at.isoformat(),
            "linked_order_id": self.linked_order_id,
        }


@dataclass
class Order:
    """A payment attempt supervised until it reaches a terminal state."""
    order_id: str
    amount: int  # minor units, never a float
    payee_reference: str
    intent_id: Optional[str] = None
    currency: str = "INR"
    buyer: Actor = field(default_factory=Actor.anonymous)
    status: OrderStatus = OrderStatus.CREATED
    external_reference: Optional[str] = None
    payable_handle: Optional[str] = None
    amount_confirmed: Optional[int] = None
    failure_reason: Optional[str] = None
    poll_attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ORDER_TERMINAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "intent_id": self.intent_id,
            "amount": self.amount,
            "currency": self.currency,
            "payee_reference": self.payee_reference,
            "buyer": self.buyer.reference(),
            "status": self.status.value,
            "external_reference": self.external_reference,
            "payable_handle": self.payable_handle,
            "amount_confirmed": self.amount_confirmed,
            "failure_reason": self.failure_reason,
            "poll_attempts": self.poll_attempts,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class Enquiry:
    """Lead recorded by the enquiry flow."""
    enquiry_id: str
    intent_id: str
    profile_id: str
    actor: Actor
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    message: str = ""
    block_id: Optional[str] = None
    product_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enquiry_id": self.enquiry_id,
            "intent_id": self.intent_id,
            "profile_id": self.profile_id,
            "block_id": self.block_id,
            "product_id": self.product_id,
            "actor": self.actor.reference(),
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ContactDetails:
    """Contact details collected by the enquiry and guest checkout forms."""
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    message: str = ""


@dataclass(frozen=True)
class DispatchInstruction:
    """What the Completion Dispatcher should do for a resolved intent."""
    intent_id: str
    cta_kind: CtaKind
    profile_id: str
    block_id: Optional[str] = None
    product_id: Optional[str] = None
    target_url: Optional[str] = None
    amount: int = 0
    currency: str = "INR"
    payee_reference: Optional[str] = None

    @classmethod
    def from_intent(cls, intent: Intent) -> "DispatchInstruction":
        return cls(
            intent_id=intent.intent_id,
            cta_kind=intent.cta_kind,
            profile_id=intent.profile_id,
            block_id=intent.block_id,
            product_id=intent.product_id,
            target_url=intent.target_url,
            amount=intent.amount,
            currency=intent.currency,
            payee_reference=intent.payee_reference,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent_id": self.intent_id,
            "flow_type": self.cta_kind.value,
            "profile_id": self.profile_id,
            "block_id": self.block_id,
            "product_id": self.product_id,
            "target_url": self.target_url,
            "amount": self.amount,
            "currency": self.currency,
            "payee_reference": self.payee_reference,
        }


class ResumeStatus(str, Enum):
    DISPATCH = "dispatch"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_CONSUMED = "already_consumed"


@dataclass(frozen=True)
class ResumeResult:
    status: ResumeStatus
    instruction: Optional[DispatchInstruction] = None
    clear_token: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value}
        if self.instruction is not None:
            data["instruction"] = self.instruction.to_dict()
        return data


class EffectKind(str, Enum):
    OPEN_URL = "open_url"
    COMPLETED = "completed"
    ENQUIRY_RECORDED = "enquiry_recorded"
    AWAITING_PAYMENT = "awaiting_payment"
    UNLOCKED = "unlocked"
    TIMED_OUT = "timed_out"
    PAYMENT_FAILED = "payment_failed"
    ALREADY_HANDLED = "already_handled"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Effect:
    """Outcome of a completion flow, returned to the UI boundary."""
    kind: EffectKind
    intent_id: Optional[str] = None
    url: Optional[str] = None
    order_id: Optional[str] = None
    external_reference: Optional[str] = None
    payable_handle: Optional[str] = None
    enquiry_id: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "kind": self.kind.value,
            "intent_id": self.intent_id,
            "url": self.url,
            "order_id": self.order_id,
            "external_reference": self.external_reference,
            "payable_handle": self.payable_handle,
            "enquiry_id": self.enquiry_id,
            "message": self.message,
        }
        return {k: v for k, v in data.items() if v is not None}


def check_intent_transition(intent: Intent, new: IntentStatus) -> None:
    """Raise InvalidTransition unless ``intent.status -> new`` is a legal edge."""
    allowed = INTENT_TRANSITIONS.get(intent.status, frozenset())
    if new not in allowed:
        raise InvalidTransition("intent", intent.status.value, new.value)
    if (
        intent.status == IntentStatus.PENDING
        and new == IntentStatus.COMPLETED
        and intent.requires_login
    ):
        # Login-gated intents must pass through a resume first
        raise InvalidTransition("intent", intent.status.value, new.value)


def check_edge(current: IntentStatus, new: IntentStatus) -> None:
    if new not in INTENT_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition("intent", current.value, new.value)


def check_order_transition(current: OrderStatus, new: OrderStatus) -> None:
    if new not in ORDER_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition("order", current.value, new.value)


def with_updates(record, **updates):
    """Return a copy of a dataclass record with ``updates`` applied."""
    return replace(record, **updates)
