"""
Intent Store
============

Durable keyed storage for Intent records.

Every status change goes through ``transition()``, a compare-and-swap keyed
on the expected current status. A caller that loses the race gets ``None``
back instead of overwriting; nothing in the package writes a status
unconditionally.

Two backends share the interface:
- InMemoryIntentStore: asyncio-locked dict (single process, tests)
- PostgresIntentStore: asyncpg, one conditional UPDATE per transition
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import asyncpg

from .errors import InvalidTransition, TransientError
from .models import (
    Actor,
    CtaKind,
    Intent,
    IntentStatus,
    check_edge,
    check_intent_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

# Fields a transition may change alongside the status
UPDATABLE_FIELDS = frozenset({
    "actor",
    "expires_at",
    "resumed_at",
    "completed_at",
    "linked_order_id",
    "linked_enquiry_id",
})

_OPEN_STATUSES = (IntentStatus.PENDING, IntentStatus.RESUMED)


def _day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class IntentStore(ABC):
    """Interface every intent backend implements."""

    @abstractmethod
    async def put(self, intent: Intent) -> Intent:
        """Persist a new intent."""

    @abstractmethod
    async def get(self, intent_id: str) -> Optional[Intent]:
        """Get an intent by id."""

    @abstractmethod
    async def transition(
        self,
        intent_id: str,
        expected: IntentStatus,
        new: IntentStatus,
        **updates: Any,
    ) -> Optional[Intent]:
        """
        Atomically move ``intent_id`` from ``expected`` to ``new``.

        Returns the updated intent, or None when the current status is not
        ``expected`` (or the id is unknown). Raises InvalidTransition for
        edges outside the state machine.
        """

    @abstractmethod
    async def list_for_profile(
        self,
        profile_id: str,
        cta_kind: Optional[CtaKind] = None,
        status: Optional[IntentStatus] = None,
        limit: int = 50,
        skip: int = 0,
    ) -> List[Intent]:
        """Newest-first intents for a profile."""

    @abstractmethod
    async def count_for_profile(
        self,
        profile_id: str,
        cta_kind: Optional[CtaKind] = None,
        status: Optional[IntentStatus] = None,
    ) -> int:
        """Number of intents matching the listing filter."""

    @abstractmethod
    async def stats_for_profile(self, profile_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Totals and completions per flow, plus today / last 7 days counts."""

    @abstractmethod
    async def expire_stale(
        self,
        now: Optional[datetime] = None,
        exclude: Iterable[str] = (),
    ) -> int:
        """
        Expire open intents whose TTL has passed. Returns how many moved.

        Intents listed in ``exclude`` (those with a payment still being
        confirmed) are left alone.
        """

    @staticmethod
    def _check_updates(updates: Dict[str, Any]) -> None:
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be changed by a transition: {sorted(unknown)}")


class InMemoryIntentStore(IntentStore):
    """Asyncio-safe in-process intent store."""

    def __init__(self):
        self._intents: Dict[str, Intent] = {}
        self._lock = asyncio.Lock()

    async def put(self, intent: Intent) -> Intent:
        async with self._lock:
            if intent.intent_id in self._intents:
                raise ValueError(f"Intent {intent.intent_id} already exists")
            self._intents[intent.intent_id] = replace(intent)
        logger.info(
            f"Created intent {intent.intent_id} ({intent.cta_kind.value}, "
            f"requires_login={intent.requires_login})",
            extra={"intent_id": intent.intent_id, "profile_id": intent.profile_id},
        )
        return replace(intent)

    async def get(self, intent_id: str) -> Optional[Intent]:
        async with self._lock:
            intent = self._intents.get(intent_id)
            return replace(intent) if intent else None

    async def transition(
        self,
        intent_id: str,
        expected: IntentStatus,
        new: IntentStatus,
        **updates: Any,
    ) -> Optional[Intent]:
        check_edge(expected, new)
        self._check_updates(updates)

        async with self._lock:
            current = self._intents.get(intent_id)
            if current is None:
                return None
            if current.status != expected:
                logger.info(
                    f"Intent {intent_id} transition {expected.value}->{new.value} lost: "
                    f"status is {current.status.value}",
                    extra={"intent_id": intent_id},
                )
                return None
            check_intent_transition(current, new)

            updated = replace(current, status=new, **updates)
            self._intents[intent_id] = updated

        logger.info(
            f"Intent {intent_id}: {expected.value} -> {new.value}",
            extra={"intent_id": intent_id},
        )
        return replace(updated)

    def _matching(
        self,
        profile_id: str,
        cta_kind: Optional[CtaKind],
        status: Optional[IntentStatus],
    ) -> List[Intent]:
        return [
            i for i in self._intents.values()
            if i.profile_id == profile_id
            and (cta_kind is None or i.cta_kind == cta_kind)
            and (status is None or i.status == status)
        ]

    async def list_for_profile(
        self,
        profile_id: str,
        cta_kind: Optional[CtaKind] = None,
        status: Optional[IntentStatus] = None,
        limit: int = 50,
        skip: int = 0,
    ) -> List[Intent]:
        async with self._lock:
            intents = self._matching(profile_id, cta_kind, status)
            intents.sort(key=lambda i: i.created_at, reverse=True)
            return [replace(i) for i in intents[skip:skip + limit]]

    async def count_for_profile(
        self,
        profile_id: str,
        cta_kind: Optional[CtaKind] = None,
        status: Optional[IntentStatus] = None,
    ) -> int:
        async with self._lock:
            return len(self._matching(profile_id, cta_kind, status))

    async def stats_for_profile(self, profile_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        today = _day_start(now)
        week_ago = now - timedelta(days=7)

        async with self._lock:
            intents = self._matching(profile_id, None, None)

        by_flow: Dict[str, Dict[str, Any]] = {}
        for intent in intents:
            flow = by_flow.setdefault(
                intent.cta_kind.value,
                {"flow_type": intent.cta_kind.value, "total": 0, "completed": 0},
            )
            flow["total"] += 1
            if intent.status == IntentStatus.COMPLETED:
                flow["completed"] += 1

        return {
            "by_flow": sorted(by_flow.values(), key=lambda f: f["flow_type"]),
            "today": sum(1 for i in intents if i.created_at >= today),
            "this_week": sum(1 for i in intents if i.created_at >= week_ago),
        }

    async def expire_stale(
        self,
        now: Optional[datetime] = None,
        exclude: Iterable[str] = (),
    ) -> int:
        now = now or utcnow()
        skip = set(exclude)
        expired = 0
        async with self._lock:
            for intent_id, intent in self._intents.items():
                if intent_id in skip:
                    continue
                if intent.status in _OPEN_STATUSES and intent.is_expired(now):
                    self._intents[intent_id] = replace(intent, status=IntentStatus.EXPIRED)
                    expired += 1
        if expired:
            logger.info(f"Expired {expired} stale intent(s)")
        return expired


# =============================================================================
# PostgreSQL backend
# =============================================================================

def _to_db(value: Any) -> Any:
    if isinstance(value, Actor):
        return value.reference()
    if isinstance(value, (IntentStatus, CtaKind)):
        return value.value
    return value


def _row_to_intent(row: asyncpg.Record) -> Intent:
    return Intent(
        intent_id=row["intent_id"],
        profile_id=row["profile_id"],
        block_id=row["block_id"],
        product_id=row["product_id"],
        actor=Actor.from_reference(row["actor"]),
        cta_kind=CtaKind(row["cta_kind"]),
        requires_login=row["requires_login"],
        status=IntentStatus(row["status"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        resumed_at=row["resumed_at"],
        completed_at=row["completed_at"],
        target_url=row["target_url"],
        amount=row["amount"],
        currency=row["currency"],
        payee_reference=row["payee_reference"],
        linked_order_id=row["linked_order_id"],
        linked_enquiry_id=row["linked_enquiry_id"],
        source=row["source"],
        session_id=row["session_id"],
    )


class PostgresIntentStore(IntentStore):
    """Intent store backed by the ``intents`` table."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def put(self, intent: Intent) -> Intent:
        try:
            await self.pool.execute(
                """
                INSERT INTO intents (
                    intent_id, profile_id, block_id, product_id, actor,
                    cta_kind, requires_login, status, created_at, expires_at,
                    target_url, amount, currency, payee_reference, source, session_id
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                    $11, $12, $13, $14, $15, $16
                )
                """,
                intent.intent_id,
                intent.profile_id,
                intent.block_id,
                intent.product_id,
                intent.actor.reference(),
                intent.cta_kind.value,
                intent.requires_login,
                intent.status.value,
                intent.created_at,
                intent.expires_at,
                intent.target_url,
                intent.amount,
                intent.currency,
                intent.payee_reference,
                intent.source,
                intent.session_id,
            )
        except (asyncpg.PostgresConnectionError, OSError) as e:
            raise TransientError(f"Could not persist intent: {e}") from e

        logger.info(
            f"Created intent {intent.intent_id} ({intent.cta_kind.value}, "
            f"requires_login={intent.requires_login})",
            extra={"intent_id": intent.intent_id, "profile_id": intent.profile_id},
        )
        return intent

    async def get(self, intent_id: str) -> Optional[Intent]:
        try:
            row = await self.pool.fetchrow("SELECT * FROM intents WHERE intent_id = $1", intent_id)
        except (asyncpg.PostgresConnectionError, OSError) as e:
            raise TransientError(f"Could not load intent: {e}") from e
        return _row_to_intent(row) if row else None

    async def transition(
        self,
        intent_id: str,
        expected: IntentStatus,
        new: IntentStatus,
        **updates: Any,
    ) -> Optional[Intent]:
        check_edge(expected, new)
        self._check_updates(updates)

        sets = ["status = $3"]
        params: list = [intent_id, expected.value, new.value]
        for key, value in updates.items():
            params.append(_to_db(value))
            sets.append(f"{key} = ${len(params)}")

        # Login-gated intents cannot skip the resume step
        guard = " AND NOT requires_login" if (
            expected == IntentStatus.PENDING and new == IntentStatus.COMPLETED
        ) else ""

        sql = (
            f"UPDATE intents SET {', '.join(sets)} "
            f"WHERE intent_id = $1 AND status = $2{guard} RETURNING *"
        )
        try:
            row = await self.pool.fetchrow(sql, *params)
        except (asyncpg.PostgresConnectionError, OSError) as e:
            raise TransientError(f"Could not update intent: {e}") from e

        if row is None:
            current = await self.get(intent_id)
            if guard and current and current.status == expected and current.requires_login:
                raise InvalidTransition("intent", expected.value, new.value)
            logger.info(
                f"Intent {intent_id} transition {expected.value}->{new.value} lost: "
                f"status is {current.status.value if current else 'missing'}",
                extra={"intent_id": intent_id},
            )
            return None

        logger.info(
            f"Intent {intent_id}: {expected.value} -> {new.value}",
            extra={"intent_id": intent_id},
        )
        return _row_to_intent(row)

    @staticmethod
    def _filter(profile_id: str, cta_kind: Optional[CtaKind], status: Optional[IntentStatus]):
        clauses = ["profile_id = $1"]
        params: list = [profile_id]
        if cta_kind is not None:
            params.append(cta_kind.value)
            clauses.append(f"cta_kind = ${len(params)}")
        if status is not None:
            params.append(status.value)
            clauses.append(f"status = ${len(params)}")
        return " AND ".join(clauses), params

    async def list_for_profile(
        self,
        profile_id: str,
        cta_kind: Optional[CtaKind] = None,
        status: Optional[IntentStatus] = None,
        limit: int = 50,
        skip: int = 0,
    ) -> List[Intent]:
        where, params = self._filter(profile_id, cta_kind, status)
        params.extend([limit, skip])
        rows = await self.pool.fetch(
            f"SELECT * FROM intents WHERE {where} "
            f"ORDER BY created_at DESC LIMIT ${len(params) - 1} OFFSET ${len(params)}",
            *params,
        )
        return [_row_to_intent(row) for row in rows]

    async def count_for_profile(
        self,
        profile_id: str,
        cta_kind: Optional[CtaKind] = None,
        status: Optional[IntentStatus] = None,
    ) -> int:
        where, params = self._filter(profile_id, cta_kind, status)
        return await self.pool.fetchval(f"SELECT COUNT(*) FROM intents WHERE {where}", *params)

    async def stats_for_profile(self, profile_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        rows = await self.pool.fetch(
            """
            SELECT cta_kind AS flow_type,
                   COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE status = 'completed') AS completed
            FROM intents
            WHERE profile_id = $1
            GROUP BY cta_kind
            ORDER BY cta_kind
            """,
            profile_id,
        )
        today = await self.pool.fetchval(
            "SELECT COUNT(*) FROM intents WHERE profile_id = $1 AND created_at >= $2",
            profile_id, _day_start(now),
        )
        this_week = await self.pool.fetchval(
            "SELECT COUNT(*) FROM intents WHERE profile_id = $1 AND created_at >= $2",
            profile_id, now - timedelta(days=7),
        )
        return {
            "by_flow": [dict(row) for row in rows],
            "today": today,
            "this_week": this_week,
        }

    async def expire_stale(
        self,
        now: Optional[datetime] = None,
        exclude: Iterable[str] = (),
    ) -> int:
        result = await self.pool.execute(
            """
            UPDATE intents SET status = 'expired'
            WHERE status IN ('pending', 'resumed')
              AND expires_at <= $1
              AND NOT (intent_id = ANY($2::text[]))
            """,
            now or utcnow(),
            list(exclude),
        )
        expired = int(result.split()[-1])
        if expired:
            logger.info(f"Expired {expired} stale intent(s)")
        return expired
