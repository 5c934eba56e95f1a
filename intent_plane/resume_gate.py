"""
Resume Gate
===========

Consumes a pending intent token exactly once after the visitor has logged in.

The only idempotency point is the ``pending -> resumed`` compare-and-swap in
the intent store. A duplicate redirect, a second tab or a client retry all
arrive here; the first one wins the swap and gets the dispatch instruction,
every other caller gets ``already_consumed``.
"""

import logging
from datetime import timedelta
from typing import Optional

from .errors import AuthenticationRequired
from .intent_store import IntentStore
from .models import (
    Actor,
    DispatchInstruction,
    IntentStatus,
    ResumeResult,
    ResumeStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class ResumeGate:

    def __init__(self, store: IntentStore, resume_window_seconds: int = 30 * 60):
        self.store = store
        self.resume_window = timedelta(seconds=resume_window_seconds)

    async def resume(self, token: Optional[str], actor: Actor) -> ResumeResult:
        """
        Resume the intent behind ``token`` for a freshly authenticated actor.

        Every result carries ``clear_token=True``: whatever happened, the
        stored token is spent.
        """
        if actor is None or not actor.is_authenticated:
            raise AuthenticationRequired("Resuming an intent requires an authenticated caller")

        if not token:
            return ResumeResult(ResumeStatus.NOT_FOUND)

        intent = await self.store.get(token)
        if intent is None:
            logger.info("Resume of unknown intent token", extra={"actor": actor.reference()})
            return ResumeResult(ResumeStatus.NOT_FOUND)

        # Intents started by a different signed-in user are not disclosed
        if intent.actor.is_authenticated and intent.actor.user_id != actor.user_id:
            logger.warning(
                f"Actor {actor.reference()} tried to resume intent owned by {intent.actor.reference()}",
                extra={"intent_id": intent.intent_id},
            )
            return ResumeResult(ResumeStatus.NOT_FOUND)

        now = utcnow()

        if intent.status == IntentStatus.EXPIRED:
            return ResumeResult(ResumeStatus.EXPIRED)

        if intent.status == IntentStatus.PENDING and intent.is_expired(now):
            await self.store.transition(intent.intent_id, IntentStatus.PENDING, IntentStatus.EXPIRED)
            logger.info(f"Intent {intent.intent_id} expired before resume", extra={"intent_id": intent.intent_id})
            return ResumeResult(ResumeStatus.EXPIRED)

        if intent.status != IntentStatus.PENDING:
            logger.info(
                f"Intent {intent.intent_id} already consumed (status {intent.status.value})",
                extra={"intent_id": intent.intent_id, "actor": actor.reference()},
            )
            return ResumeResult(ResumeStatus.ALREADY_CONSUMED)

        resumed = await self.store.transition(
            intent.intent_id,
            IntentStatus.PENDING,
            IntentStatus.RESUMED,
            actor=actor,
            resumed_at=now,
            expires_at=max(intent.expires_at, now + self.resume_window),
        )
        if resumed is None:
            return ResumeResult(ResumeStatus.ALREADY_CONSUMED)

        logger.info(
            f"Resumed intent {resumed.intent_id} ({resumed.cta_kind.value})",
            extra={"intent_id": resumed.intent_id, "actor": actor.reference()},
        )
        return ResumeResult(ResumeStatus.DISPATCH, DispatchInstruction.from_intent(resumed))
