"""
Tests for the Resume Gate
=========================

Tests exactly-once consumption of a pending intent after login.
"""

import asyncio
from datetime import timedelta

import pytest

from intent_plane.errors import AuthenticationRequired
from intent_plane.models import Actor, CtaKind, IntentStatus, ResumeStatus, utcnow
from intent_plane.resolver import IntentContext

from conftest import COURSE_PRICE


async def pending_buy(engine):
    return await engine.resolver.create_intent(IntentContext(profile_id="creator", block_id="blk_buy"))


class TestResume:

    @pytest.mark.asyncio
    async def test_resume_returns_buy_instruction(self, engine, user):
        intent = await pending_buy(engine)

        result = await engine.resume_gate.resume(intent.intent_id, user)

        assert result.status == ResumeStatus.DISPATCH
        assert result.clear_token is True
        assert result.instruction.cta_kind == CtaKind.BUY
        assert result.instruction.product_id == "prod_course"
        assert result.instruction.amount == COURSE_PRICE

        stored = await engine.intents.get(intent.intent_id)
        assert stored.status == IntentStatus.RESUMED
        assert stored.actor == user
        assert stored.resumed_at is not None

    @pytest.mark.asyncio
    async def test_resume_extends_expiry(self, engine, user):
        intent = await pending_buy(engine)
        await engine.resume_gate.resume(intent.intent_id, user)
        stored = await engine.intents.get(intent.intent_id)
        assert stored.expires_at - stored.resumed_at >= timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_anonymous_caller_rejected(self, engine):
        intent = await pending_buy(engine)
        with pytest.raises(AuthenticationRequired):
            await engine.resume_gate.resume(intent.intent_id, Actor.anonymous())
        assert (await engine.intents.get(intent.intent_id)).status == IntentStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_token(self, engine, user):
        result = await engine.resume_gate.resume("int_nope", user)
        assert result.status == ResumeStatus.NOT_FOUND
        assert result.clear_token is True

    @pytest.mark.asyncio
    async def test_missing_token(self, engine, user):
        assert (await engine.resume_gate.resume(None, user)).status == ResumeStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_expired_token(self, engine, user):
        intent = await pending_buy(engine)
        engine.intents._intents[intent.intent_id].expires_at = utcnow() - timedelta(seconds=1)

        result = await engine.resume_gate.resume(intent.intent_id, user)

        assert result.status == ResumeStatus.EXPIRED
        assert result.clear_token is True
        assert (await engine.intents.get(intent.intent_id)).status == IntentStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_already_expired_by_sweeper(self, engine, user):
        intent = await pending_buy(engine)
        await engine.intents.transition(intent.intent_id, IntentStatus.PENDING, IntentStatus.EXPIRED)
        assert (await engine.resume_gate.resume(intent.intent_id, user)).status == ResumeStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_intent_of_another_user_is_not_disclosed(self, engine, user, other_user):
        intent = await engine.resolver.create_intent(
            IntentContext(profile_id="creator", block_id="blk_buy"), other_user,
        )
        result = await engine.resume_gate.resume(intent.intent_id, user)
        assert result.status == ResumeStatus.NOT_FOUND
        assert (await engine.intents.get(intent.intent_id)).status == IntentStatus.PENDING


class TestExactlyOnce:

    @pytest.mark.asyncio
    async def test_sequential_double_resume(self, engine, user):
        intent = await pending_buy(engine)

        first = await engine.resume_gate.resume(intent.intent_id, user)
        second = await engine.resume_gate.resume(intent.intent_id, user)

        assert first.status == ResumeStatus.DISPATCH
        assert second.status == ResumeStatus.ALREADY_CONSUMED
        assert second.instruction is None

    @pytest.mark.asyncio
    async def test_two_tabs_resume_at_once(self, engine, user):
        """Two concurrent resumes: one dispatch, one already_consumed."""
        intent = await pending_buy(engine)

        results = await asyncio.gather(
            engine.resume_gate.resume(intent.intent_id, user),
            engine.resume_gate.resume(intent.intent_id, user),
        )

        statuses = sorted(r.status.value for r in results)
        assert statuses == ["already_consumed", "dispatch"]

    @pytest.mark.asyncio
    async def test_many_concurrent_resumes(self, engine, user):
        intent = await pending_buy(engine)
        results = await asyncio.gather(*[
            engine.resume_gate.resume(intent.intent_id, user) for _ in range(20)
        ])
        assert sum(1 for r in results if r.status == ResumeStatus.DISPATCH) == 1

    @pytest.mark.asyncio
    async def test_resume_after_completion(self, engine, user):
        intent = await pending_buy(engine)
        await engine.resume_gate.resume(intent.intent_id, user)
        await engine.intents.transition(intent.intent_id, IntentStatus.RESUMED, IntentStatus.COMPLETED)
        result = await engine.resume_gate.resume(intent.intent_id, user)
        assert result.status == ResumeStatus.ALREADY_CONSUMED
