"""
Tests for the Completion Dispatcher
===================================

Tests each completion flow and the speculative enquiry write.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from intent_plane.config import SupervisorSettings
from intent_plane.dispatcher import TIMED_OUT_MESSAGE, effect_for_order
from intent_plane.errors import AuthenticationRequired, InvalidInput, NotFound, PermissionDenied
from intent_plane.models import (
    Actor,
    ActorKind,
    ContactDetails,
    CtaKind,
    DispatchInstruction,
    EffectKind,
    IntentStatus,
    Order,
    OrderStatus,
    utcnow,
)
from intent_plane.resolver import IntentContext
from intent_plane.speculative import speculate
from intent_plane.supervisor import REASON_CANCELLED

from conftest import COURSE_PRICE, paid


async def create(engine, block_id, actor=None):
    return await engine.resolver.create_intent(IntentContext(profile_id="creator", block_id=block_id), actor)


async def dispatch(engine, intent, actor, contact=None):
    return await engine.dispatcher.dispatch(DispatchInstruction.from_intent(intent), actor, contact)


class TestLinkFlows:

    @pytest.mark.asyncio
    async def test_redirect_opens_url(self, engine):
        intent = await create(engine, "blk_link")

        effect = await dispatch(engine, intent, Actor.anonymous())

        assert effect.kind == EffectKind.OPEN_URL
        assert effect.url == "https://example.com/portfolio"
        stored = await engine.intents.get(intent.intent_id)
        assert stored.status == IntentStatus.COMPLETED
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_second_dispatch_is_already_handled(self, engine):
        intent = await create(engine, "blk_link")
        await dispatch(engine, intent, Actor.anonymous())
        effect = await dispatch(engine, intent, Actor.anonymous())
        assert effect.kind == EffectKind.ALREADY_HANDLED

    @pytest.mark.asyncio
    async def test_none_completes(self, engine):
        intent = await create(engine, "blk_text")
        effect = await dispatch(engine, intent, Actor.anonymous())
        assert effect.kind == EffectKind.COMPLETED
        assert (await engine.intents.get(intent.intent_id)).status == IntentStatus.COMPLETED


class TestGuards:

    @pytest.mark.asyncio
    async def test_unknown_intent(self, engine, user):
        instruction = DispatchInstruction(intent_id="int_missing", cta_kind=CtaKind.REDIRECT, profile_id="creator")
        with pytest.raises(NotFound):
            await engine.dispatcher.dispatch(instruction, user)
        with pytest.raises(NotFound):
            await engine.dispatcher.abandon("int_missing", user)

    @pytest.mark.asyncio
    async def test_login_gated_intent_needs_resume(self, engine, user):
        intent = await create(engine, "blk_buy")
        with pytest.raises(AuthenticationRequired):
            await dispatch(engine, intent, user)
        assert engine.gateway.created == []

    @pytest.mark.asyncio
    async def test_intent_of_another_user(self, engine, user, other_user):
        intent = await create(engine, "blk_enquire", user)
        with pytest.raises(PermissionDenied):
            await dispatch(engine, intent, other_user, ContactDetails(name="x", email="x@example.com", message="hi"))

    @pytest.mark.asyncio
    async def test_expired_intent(self, engine):
        intent = await create(engine, "blk_link")
        engine.intents._intents[intent.intent_id].expires_at = utcnow() - timedelta(seconds=1)

        effect = await dispatch(engine, intent, Actor.anonymous())

        assert effect.kind == EffectKind.EXPIRED
        assert (await engine.intents.get(intent.intent_id)).status == IntentStatus.EXPIRED


class TestEnquiryFlow:

    @pytest.mark.asyncio
    async def test_guest_enquiry_records_lead(self, engine, mock_email_service):
        intent = await create(engine, "blk_contact_open")
        contact = ContactDetails(name="Ravi", email="ravi@example.com", message="Can you do a portrait?")

        effect = await dispatch(engine, intent, Actor.anonymous(), contact)

        assert effect.kind == EffectKind.ENQUIRY_RECORDED
        enquiry = await engine.enquiries.get(effect.enquiry_id)
        assert enquiry.name == "Ravi"
        assert enquiry.actor.kind == ActorKind.GUEST
        assert enquiry.actor.email == "ravi@example.com"

        stored = await engine.intents.get(intent.intent_id)
        assert stored.status == IntentStatus.COMPLETED
        assert stored.linked_enquiry_id == effect.enquiry_id

        mock_email_service.send_enquiry_notification.assert_called_once()
        kwargs = mock_email_service.send_enquiry_notification.call_args.kwargs
        assert kwargs["to_email"] == "seller@example.com"
        assert kwargs["message"] == "Can you do a portrait?"

    @pytest.mark.asyncio
    async def test_signed_in_user_may_leave_phone_only(self, engine, user):
        intent = await create(engine, "blk_enquire", user)
        effect = await dispatch(engine, intent, user, ContactDetails(name="Ravi", phone="+919800000000", message="hi"))
        assert effect.kind == EffectKind.ENQUIRY_RECORDED
        assert (await engine.enquiries.get(effect.enquiry_id)).actor == user

    @pytest.mark.asyncio
    async def test_guest_needs_email(self, engine):
        intent = await create(engine, "blk_contact_open")
        with pytest.raises(InvalidInput):
            await dispatch(engine, intent, Actor.anonymous(), ContactDetails(name="Ravi", phone="123", message="hi"))
        assert (await engine.intents.get(intent.intent_id)).status == IntentStatus.PENDING

    @pytest.mark.asyncio
    @pytest.mark.parametrize("contact", [
        None,
        ContactDetails(name="", email="a@example.com", message="hi"),
        ContactDetails(name="Ravi", email="a@example.com", message="   "),
    ])
    async def test_incomplete_contact_rejected(self, engine, user, contact):
        intent = await create(engine, "blk_enquire", user)
        with pytest.raises(InvalidInput):
            await dispatch(engine, intent, user, contact)
        assert await engine.enquiries.list_for_profile("creator") == []

    @pytest.mark.asyncio
    async def test_lost_swap_removes_lead(self, engine, user, mock_email_service):
        """If the intent was handled elsewhere in the meantime, the recorded lead is undone."""
        intent = await create(engine, "blk_enquire", user)
        with patch.object(engine.intents, "transition", AsyncMock(return_value=None)):
            effect = await dispatch(engine, intent, user, ContactDetails(name="Ravi", email="r@example.com", message="hi"))

        assert effect.kind == EffectKind.ALREADY_HANDLED
        assert await engine.enquiries.list_for_profile("creator") == []
        mock_email_service.send_enquiry_notification.assert_not_called()


class TestBuyFlow:

    @pytest.mark.asyncio
    async def test_free_product_unlocks(self, engine, user, fake_gateway):
        intent = await create(engine, "blk_free", user)

        effect = await dispatch(engine, intent, user)

        assert effect.kind == EffectKind.UNLOCKED
        assert fake_gateway.created == []
        assert (await engine.intents.get(intent.intent_id)).status == IntentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_resumed_purchase_completes_on_payment(self, engine, user, fake_gateway, mock_email_service):
        """Buy Now after login: awaiting payment, then paid, then the intent completes."""
        intent = await create(engine, "blk_buy")
        resumed = await engine.resume_gate.resume(intent.intent_id, user)
        fake_gateway.queue_pending(2)
        fake_gateway.queue(paid())

        effect = await engine.dispatcher.dispatch(resumed.instruction, user)

        assert effect.kind == EffectKind.AWAITING_PAYMENT
        assert effect.payable_handle == "upi://pay?tr=pay_1"
        assert engine.supervisor.is_supervising(effect.order_id)
        assert fake_gateway.created[0].amount == COURSE_PRICE
        assert fake_gateway.created[0].buyer == user

        assert await engine.supervisor.start(effect.order_id) == OrderStatus.PAID
        stored = await engine.intents.get(intent.intent_id)
        assert stored.status == IntentStatus.COMPLETED
        assert stored.linked_order_id == effect.order_id
        receipt = mock_email_service.send_purchase_receipt.call_args.kwargs
        assert receipt["to_email"] == "buyer@example.com"
        assert receipt["amount"] == COURSE_PRICE

        again = await engine.dispatcher.dispatch(resumed.instruction, user)
        assert again.kind == EffectKind.ALREADY_HANDLED

    @pytest.mark.asyncio
    async def test_guest_checkout(self, engine, fake_gateway):
        intent = await engine.resolver.create_intent(IntentContext(profile_id="creator", product_id="prod_guest"))

        effect = await dispatch(engine, intent, Actor.anonymous(), ContactDetails(email="guest@example.com"))

        assert effect.kind == EffectKind.AWAITING_PAYMENT
        assert fake_gateway.created[0].buyer == Actor.guest("guest@example.com")
        await engine.supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_abandon_cancels_payment(self, engine, user):
        engine.supervisor.settings = SupervisorSettings(poll_interval=0.01, max_attempts=1000)
        intent = await create(engine, "blk_buy", user)
        effect = await dispatch(engine, intent, user)

        abandoned = await engine.dispatcher.abandon(intent.intent_id, user)

        assert abandoned.status == IntentStatus.ABANDONED
        order = await engine.orders.get(effect.order_id)
        assert order.status == OrderStatus.EXPIRED
        assert order.failure_reason == REASON_CANCELLED
        assert not engine.supervisor.is_supervising(effect.order_id)
        assert await engine.dispatcher.abandon(intent.intent_id, user) is None

    @pytest.mark.asyncio
    async def test_abandon_other_users_intent(self, engine, user, other_user):
        intent = await create(engine, "blk_buy", user)
        with pytest.raises(PermissionDenied):
            await engine.dispatcher.abandon(intent.intent_id, other_user)


class TestEffectForOrder:

    def test_expired_order_reports_timeout(self):
        order = Order(order_id="ord_1", amount=100, payee_reference="creator", status=OrderStatus.EXPIRED)
        effect = effect_for_order(order)
        assert effect.kind == EffectKind.TIMED_OUT
        assert effect.message == TIMED_OUT_MESSAGE

    def test_failed_order(self):
        order = Order(order_id="ord_1", amount=100, payee_reference="creator", status=OrderStatus.FAILED)
        assert effect_for_order(order).kind == EffectKind.PAYMENT_FAILED

    def test_effect_dict_drops_empty_fields(self):
        order = Order(order_id="ord_1", amount=100, payee_reference="creator", status=OrderStatus.PAID)
        assert effect_for_order(order).to_dict() == {"kind": "unlocked", "order_id": "ord_1"}


class TestSpeculate:

    @pytest.mark.asyncio
    async def test_confirmed(self):
        undone = []

        async def apply():
            return "lead"

        async def confirm(applied):
            return f"{applied}-ok"

        async def compensate(applied):
            undone.append(applied)

        assert await speculate(apply, confirm, compensate) == "lead-ok"
        assert undone == []

    @pytest.mark.asyncio
    async def test_unconfirmed_is_compensated(self):
        undone = []

        async def apply():
            return "lead"

        async def confirm(applied):
            return None

        async def compensate(applied):
            undone.append(applied)

        assert await speculate(apply, confirm, compensate) is None
        assert undone == ["lead"]

    @pytest.mark.asyncio
    async def test_confirm_error_is_compensated_and_raised(self):
        undone = []

        async def apply():
            return "lead"

        async def confirm(applied):
            raise RuntimeError("store down")

        async def compensate(applied):
            undone.append(applied)

        with pytest.raises(RuntimeError):
            await speculate(apply, confirm, compensate)
        assert undone == ["lead"]

    @pytest.mark.asyncio
    async def test_failing_compensation_is_logged(self, caplog):
        async def apply():
            return "lead"

        async def confirm(applied):
            return None

        async def compensate(applied):
            raise RuntimeError("cannot undo")

        assert await speculate(apply, confirm, compensate) is None
        assert "Compensating action failed" in caplog.text
