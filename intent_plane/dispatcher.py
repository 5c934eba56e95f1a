"""
Completion Dispatcher
=====================

Runs the fixed completion flow for a resolved intent:

- redirect: complete the intent and open the target URL
- none:     complete the intent
- enquiry:  record a lead from the visitor's contact details, complete the intent
- buy:      free products unlock at once; paid ones open an Order and the
            intent completes when the Order Supervisor reports ``paid``

Every intent write is a compare-and-swap from the status the dispatcher read.
Losing one means another caller already handled the intent, which is
reported as ``already_handled`` rather than as an error.
"""

import asyncio
import logging
import uuid
from typing import Optional

from .catalog import Catalog
from .email_service import EmailService
from .enquiry_store import EnquiryStore
from .errors import AuthenticationRequired, Conflict, InvalidInput, NotFound, PermissionDenied
from .intent_store import IntentStore
from .models import (
    Actor,
    ContactDetails,
    CtaKind,
    DispatchInstruction,
    Effect,
    EffectKind,
    Enquiry,
    Intent,
    IntentStatus,
    Order,
    OrderStatus,
    utcnow,
)
from .speculative import speculate
from .supervisor import OrderSupervisor

logger = logging.getLogger(__name__)

TIMED_OUT_MESSAGE = "Payment timed out, please retry"
PAYMENT_FAILED_MESSAGE = "Payment failed"
INTENT_EXPIRED_MESSAGE = "This action has expired, please start again"


def effect_for_order(order: Order) -> Effect:
    """What the visitor should see for an order's current status."""
    if order.status == OrderStatus.PAID:
        return Effect(EffectKind.UNLOCKED, intent_id=order.intent_id, order_id=order.order_id)
    if order.status == OrderStatus.EXPIRED:
        # Unconfirmed is reported as timed out, never as failed
        return Effect(
            EffectKind.TIMED_OUT,
            intent_id=order.intent_id,
            order_id=order.order_id,
            message=TIMED_OUT_MESSAGE,
        )
    if order.status == OrderStatus.FAILED:
        return Effect(
            EffectKind.PAYMENT_FAILED,
            intent_id=order.intent_id,
            order_id=order.order_id,
            message=PAYMENT_FAILED_MESSAGE,
        )
    return Effect(
        EffectKind.AWAITING_PAYMENT,
        intent_id=order.intent_id,
        order_id=order.order_id,
        external_reference=order.external_reference,
        payable_handle=order.payable_handle,
    )


def owned_by(intent: Intent, actor: Actor) -> bool:
    """Intents started by a signed-in user belong to that user; others belong to whoever holds the id."""
    return _same_user(intent.actor, actor)


def order_owned_by(order: Order, actor: Actor) -> bool:
    return _same_user(order.buyer, actor)


def _same_user(owner: Actor, actor: Actor) -> bool:
    if not owner.is_authenticated:
        return True
    return actor.is_authenticated and actor.user_id == owner.user_id


class CompletionDispatcher:
    """Performs the side effect of a resolved intent exactly once."""

    def __init__(
        self,
        intents: IntentStore,
        enquiries: EnquiryStore,
        supervisor: OrderSupervisor,
        catalog: Catalog,
        notifier: Optional[EmailService] = None,
    ):
        self.intents = intents
        self.enquiries = enquiries
        self.supervisor = supervisor
        self.catalog = catalog
        self.notifier = notifier
        supervisor.add_terminal_listener(self.on_order_terminal)

    async def dispatch(
        self,
        instruction: DispatchInstruction,
        actor: Actor,
        contact: Optional[ContactDetails] = None,
    ) -> Effect:
        """
        Execute the completion flow for ``instruction``.

        Raises:
            NotFound: the intent does not exist
            AuthenticationRequired: a login-gated intent has not been resumed
            PermissionDenied: the intent belongs to another user
            InvalidInput: missing contact details or guest email
        """
        intent = await self.intents.get(instruction.intent_id)
        if intent is None:
            raise NotFound(f"Intent {instruction.intent_id} not found")
        if not owned_by(intent, actor):
            raise PermissionDenied("This intent belongs to another user")

        if intent.status == IntentStatus.COMPLETED:
            return Effect(EffectKind.ALREADY_HANDLED, intent_id=intent.intent_id)
        if intent.is_terminal or intent.is_expired():
            return await self._expired(intent)

        if intent.requires_login and intent.status != IntentStatus.RESUMED:
            raise AuthenticationRequired("Log in to continue")

        if intent.cta_kind == CtaKind.REDIRECT:
            return await self._complete_redirect(intent)
        if intent.cta_kind == CtaKind.NONE:
            return await self._complete(intent, EffectKind.COMPLETED)

        actor = self._continuation_actor(intent, actor, contact)
        if intent.cta_kind == CtaKind.ENQUIRY:
            return await self._complete_enquiry(intent, actor, contact)
        return await self._start_purchase(intent, actor)

    async def abandon(self, intent_id: str, actor: Actor) -> Optional[Intent]:
        """Mark an open intent abandoned and stop any payment being supervised for it."""
        intent = await self.intents.get(intent_id)
        if intent is None:
            raise NotFound(f"Intent {intent_id} not found")
        if not owned_by(intent, actor):
            raise PermissionDenied("This intent belongs to another user")
        if intent.is_terminal:
            return None

        abandoned = await self.intents.transition(intent_id, intent.status, IntentStatus.ABANDONED)
        if abandoned is None:
            return None

        for order in await self.supervisor.orders.find_for_intent(intent_id):
            if not order.is_terminal:
                await self.supervisor.cancel(order.order_id)
        logger.info(f"Intent {intent_id} abandoned", extra={"intent_id": intent_id})
        return abandoned

    # =========================================================================
    # Flows
    # =========================================================================

    async def _expired(self, intent: Intent) -> Effect:
        if intent.status in (IntentStatus.PENDING, IntentStatus.RESUMED):
            await self.intents.transition(intent.intent_id, intent.status, IntentStatus.EXPIRED)
        return Effect(EffectKind.EXPIRED, intent_id=intent.intent_id, message=INTENT_EXPIRED_MESSAGE)

    async def _complete(self, intent: Intent, kind: EffectKind, **effect) -> Effect:
        completed = await self.intents.transition(
            intent.intent_id, intent.status, IntentStatus.COMPLETED, completed_at=utcnow(),
        )
        if completed is None:
            return Effect(EffectKind.ALREADY_HANDLED, intent_id=intent.intent_id)
        return Effect(kind, intent_id=intent.intent_id, **effect)

    async def _complete_redirect(self, intent: Intent) -> Effect:
        if not intent.target_url:
            raise InvalidInput(f"Intent {intent.intent_id} has no target URL")
        return await self._complete(intent, EffectKind.OPEN_URL, url=intent.target_url)

    @staticmethod
    def _continuation_actor(intent: Intent, actor: Actor, contact: Optional[ContactDetails]) -> Actor:
        if not actor.is_anonymous:
            return actor
        if contact is None or not contact.email:
            raise InvalidInput("An email address is required to continue as a guest")
        return Actor.guest(contact.email)

    async def _complete_enquiry(
        self,
        intent: Intent,
        actor: Actor,
        contact: Optional[ContactDetails],
    ) -> Effect:
        if contact is None or not contact.name.strip() or not contact.message.strip():
            raise InvalidInput("Name and message are required")
        if not (contact.email or contact.phone):
            raise InvalidInput("An email address or phone number is required")

        enquiry = Enquiry(
            enquiry_id=f"enq_{uuid.uuid4().hex[:20]}",
            intent_id=intent.intent_id,
            profile_id=intent.profile_id,
            block_id=intent.block_id,
            product_id=intent.product_id,
            actor=actor,
            name=contact.name.strip(),
            email=contact.email,
            phone=contact.phone,
            message=contact.message.strip(),
        )

        completed = await speculate(
            apply=lambda: self.enquiries.put(enquiry),
            confirm=lambda recorded: self.intents.transition(
                intent.intent_id,
                intent.status,
                IntentStatus.COMPLETED,
                completed_at=utcnow(),
                linked_enquiry_id=recorded.enquiry_id,
            ),
            compensate=lambda recorded: self.enquiries.delete(recorded.enquiry_id),
        )
        if completed is None:
            return Effect(EffectKind.ALREADY_HANDLED, intent_id=intent.intent_id)

        await self._notify_enquiry(completed, enquiry)
        return Effect(EffectKind.ENQUIRY_RECORDED, intent_id=intent.intent_id, enquiry_id=enquiry.enquiry_id)

    async def _start_purchase(self, intent: Intent, actor: Actor) -> Effect:
        if intent.amount == 0:
            return await self._complete(intent, EffectKind.UNLOCKED)

        try:
            order = await self.supervisor.open_order(
                intent.intent_id,
                intent.amount,
                intent.payee_reference or intent.profile_id,
                currency=intent.currency,
                buyer=actor,
            )
        except Conflict:
            logger.info(
                f"Intent {intent.intent_id} was paid, closed or is being opened by another caller",
                extra={"intent_id": intent.intent_id},
            )
            return Effect(EffectKind.ALREADY_HANDLED, intent_id=intent.intent_id)

        if order.status == OrderStatus.PENDING_CONFIRMATION:
            self.supervisor.start(order.order_id)
        return effect_for_order(order)

    # =========================================================================
    # Payment outcome
    # =========================================================================

    async def on_order_terminal(self, order: Order):
        """Complete the intent behind a paid order."""
        if order.status != OrderStatus.PAID:
            logger.info(
                f"Order {order.order_id} ended {order.status.value} ({order.failure_reason})",
                extra={"order_id": order.order_id, "intent_id": order.intent_id},
            )
            return
        if order.intent_id is None:
            return

        intent = await self.intents.get(order.intent_id)
        if intent is None or intent.is_terminal:
            logger.error(
                f"Paid order {order.order_id} but intent {order.intent_id} is "
                f"{intent.status.value if intent else 'missing'}",
                extra={"order_id": order.order_id, "intent_id": order.intent_id},
            )
            return

        completed = await self.intents.transition(
            intent.intent_id,
            intent.status,
            IntentStatus.COMPLETED,
            completed_at=utcnow(),
            linked_order_id=order.order_id,
        )
        if completed is None:
            logger.info(
                f"Intent {intent.intent_id} settled by another caller",
                extra={"intent_id": intent.intent_id, "order_id": order.order_id},
            )
            return

        logger.info(
            f"Intent {intent.intent_id} completed by order {order.order_id}",
            extra={"intent_id": intent.intent_id, "order_id": order.order_id},
        )
        await self._notify_purchase(completed, order)

    # =========================================================================
    # Notifications (best effort)
    # =========================================================================

    async def _notify_purchase(self, intent: Intent, order: Order):
        if self.notifier is None:
            return
        profile = await self.catalog.get_profile(intent.profile_id)
        product = await self.catalog.get_product(intent.product_id) if intent.product_id else None
        seller_name = profile.display_name if profile else intent.profile_id
        title = product.title if product else "your purchase"

        if profile and profile.email:
            await asyncio.to_thread(
                self.notifier.send_order_notification,
                to_email=profile.email,
                seller_name=seller_name,
                product_title=title,
                amount=order.amount,
                currency=order.currency,
                order_id=order.order_id,
                buyer=order.buyer.email or order.buyer.reference(),
            )
        if order.buyer.email:
            await asyncio.to_thread(
                self.notifier.send_purchase_receipt,
                to_email=order.buyer.email,
                seller_name=seller_name,
                product_title=title,
                amount=order.amount,
                currency=order.currency,
                order_id=order.order_id,
            )

    async def _notify_enquiry(self, intent: Intent, enquiry: Enquiry):
        if self.notifier is None:
            return
        profile = await self.catalog.get_profile(intent.profile_id)
        if profile is None or not profile.email:
            return
        product = await self.catalog.get_product(intent.product_id) if intent.product_id else None
        await asyncio.to_thread(
            self.notifier.send_enquiry_notification,
            to_email=profile.email,
            seller_name=profile.display_name or profile.profile_id,
            name=enquiry.name,
            contact_email=enquiry.email,
            phone=enquiry.phone,
            message=enquiry.message,
            subject_title=product.title if product else "",
        )
