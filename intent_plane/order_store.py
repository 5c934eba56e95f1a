"""
Order Store
===========

Keyed storage for payment Orders. Like the intent store, every status write
is a compare-and-swap on the expected current status.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

import asyncpg

from .errors import DuplicateOrder, TransientError
from .models import (
    ORDER_TERMINAL,
    Actor,
    Order,
    OrderStatus,
    check_order_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({
    "external_reference",
    "payable_handle",
    "amount_confirmed",
    "failure_reason",
    "poll_attempts",
    "resolved_at",
})


class OrderStore(ABC):

    @abstractmethod
    async def put(self, order: Order) -> Order:
        """
        Persist a new order.

        Raises:
            DuplicateOrder: the intent already has a created or pending order
        """

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        """Get an order by id."""

    @abstractmethod
    async def get_by_external_reference(self, external_reference: str) -> Optional[Order]:
        """Find the order a gateway handle belongs to."""

    @abstractmethod
    async def find_for_intent(self, intent_id: str) -> List[Order]:
        """All orders opened for an intent, oldest first."""

    @abstractmethod
    async def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        **updates: Any,
    ) -> Optional[Order]:
        """CAS ``expected -> new``. Returns None when the order moved on."""

    @abstractmethod
    async def record_attempt(self, order_id: str) -> int:
        """Increment and return the poll attempt counter."""

    @abstractmethod
    async def active_intent_ids(self) -> Set[str]:
        """Intents that have an order still awaiting a terminal result."""

    @abstractmethod
    async def list_stale_open(self, older_than: datetime) -> List[Order]:
        """Created or pending orders opened before ``older_than``."""

    @staticmethod
    def _check_updates(updates: Dict[str, Any]) -> None:
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be changed by a transition: {sorted(unknown)}")


class InMemoryOrderStore(OrderStore):

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def put(self, order: Order) -> Order:
        async with self._lock:
            if order.order_id in self._orders:
                raise ValueError(f"Order {order.order_id} already exists")
            if order.intent_id and any(
                o.intent_id == order.intent_id and not o.is_terminal
                for o in self._orders.values()
            ):
                raise DuplicateOrder(f"Intent {order.intent_id} already has an open order")
            self._orders[order.order_id] = replace(order)
        logger.info(
            f"Created order {order.order_id} for {order.amount} {order.currency}",
            extra={"order_id": order.order_id, "intent_id": order.intent_id},
        )
        return replace(order)

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return replace(order) if order else None

    async def get_by_external_reference(self, external_reference: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.external_reference == external_reference:
                    return replace(order)
        return None

    async def find_for_intent(self, intent_id: str) -> List[Order]:
        async with self._lock:
            orders = [o for o in self._orders.values() if o.intent_id == intent_id]
        orders.sort(key=lambda o: o.created_at)
        return [replace(o) for o in orders]

    async def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        **updates: Any,
    ) -> Optional[Order]:
        check_order_transition(expected, new)
        self._check_updates(updates)

        async with self._lock:
            current = self._orders.get(order_id)
            if current is None or current.status != expected:
                logger.info(
                    f"Order {order_id} transition {expected.value}->{new.value} lost: "
                    f"status is {current.status.value if current else 'missing'}",
                    extra={"order_id": order_id},
                )
                return None
            if new == OrderStatus.PAID and current.intent_id and any(
                o.intent_id == current.intent_id and o.status == OrderStatus.PAID
                for o in self._orders.values()
            ):
                logger.error(
                    f"Order {order_id}: intent {current.intent_id} already has a paid order",
                    extra={"order_id": order_id, "intent_id": current.intent_id},
                )
                return None

            if new in ORDER_TERMINAL and "resolved_at" not in updates:
                updates["resolved_at"] = utcnow()
            updated = replace(current, status=new, **updates)
            self._orders[order_id] = updated

        logger.info(
            f"Order {order_id}: {expected.value} -> {new.value}",
            extra={"order_id": order_id},
        )
        return replace(updated)

    async def record_attempt(self, order_id: str) -> int:
        async with self._lock:
            current = self._orders[order_id]
            self._orders[order_id] = replace(current, poll_attempts=current.poll_attempts + 1)
            return current.poll_attempts + 1

    async def active_intent_ids(self) -> Set[str]:
        async with self._lock:
            return {
                o.intent_id for o in self._orders.values()
                if o.intent_id and not o.is_terminal
            }

    async def list_stale_open(self, older_than: datetime) -> List[Order]:
        async with self._lock:
            return [
                replace(o) for o in self._orders.values()
                if not o.is_terminal and o.created_at < older_than
            ]


# =============================================================================
# PostgreSQL backend
# =============================================================================

def _row_to_order(row: asyncpg.Record) -> Order:
    return Order(
        order_id=row["order_id"],
        intent_id=row["intent_id"],
        amount=row["amount"],
        currency=row["currency"],
        payee_reference=row["payee_reference"],
        buyer=Actor.from_reference(row["buyer"]),
        status=OrderStatus(row["status"]),
        external_reference=row["external_reference"],
        payable_handle=row["payable_handle"],
        amount_confirmed=row["amount_confirmed"],
        failure_reason=row["failure_reason"],
        poll_attempts=row["poll_attempts"],
        created_at=row["created_at"],
        resolved_at=row["resolved_at"],
    )


class PostgresOrderStore(OrderStore):
    """Order store backed by the ``orders`` table."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def _query(self, method: str, sql: str, *args) -> Any:
        try:
            return await getattr(self.pool, method)(sql, *args)
        except (asyncpg.PostgresConnectionError, OSError) as e:
            raise TransientError(f"Order storage unavailable: {e}") from e

    async def put(self, order: Order) -> Order:
        try:
            await self._query(
                "execute",
                """
                INSERT INTO orders (
                    order_id, intent_id, amount, currency, payee_reference,
                    buyer, status, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                order.order_id,
                order.intent_id,
                order.amount,
                order.currency,
                order.payee_reference,
                order.buyer.reference(),
                order.status.value,
                order.created_at,
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateOrder(f"Intent {order.intent_id} already has an open order") from e
        logger.info(
            f"Created order {order.order_id} for {order.amount} {order.currency}",
            extra={"order_id": order.order_id, "intent_id": order.intent_id},
        )
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        row = await self._query("fetchrow", "SELECT * FROM orders WHERE order_id = $1", order_id)
        return _row_to_order(row) if row else None

    async def get_by_external_reference(self, external_reference: str) -> Optional[Order]:
        row = await self._query(
            "fetchrow", "SELECT * FROM orders WHERE external_reference = $1", external_reference
        )
        return _row_to_order(row) if row else None

    async def find_for_intent(self, intent_id: str) -> List[Order]:
        rows = await self._query(
            "fetch", "SELECT * FROM orders WHERE intent_id = $1 ORDER BY created_at", intent_id
        )
        return [_row_to_order(row) for row in rows]

    async def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        **updates: Any,
    ) -> Optional[Order]:
        check_order_transition(expected, new)
        self._check_updates(updates)
        if new in ORDER_TERMINAL and "resolved_at" not in updates:
            updates["resolved_at"] = utcnow()

        sets = ["status = $3"]
        params: list = [order_id, expected.value, new.value]
        for key, value in updates.items():
            params.append(value)
            sets.append(f"{key} = ${len(params)}")

        sql = (
            f"UPDATE orders SET {', '.join(sets)} "
            f"WHERE order_id = $1 AND status = $2 RETURNING *"
        )
        try:
            row = await self._query("fetchrow", sql, *params)
        except asyncpg.UniqueViolationError:
            logger.error(
                f"Order {order_id}: intent already has a paid order",
                extra={"order_id": order_id},
            )
            return None

        if row is None:
            logger.info(
                f"Order {order_id} transition {expected.value}->{new.value} lost",
                extra={"order_id": order_id},
            )
            return None

        logger.info(
            f"Order {order_id}: {expected.value} -> {new.value}",
            extra={"order_id": order_id},
        )
        return _row_to_order(row)

    async def record_attempt(self, order_id: str) -> int:
        return await self._query(
            "fetchval",
            "UPDATE orders SET poll_attempts = poll_attempts + 1 "
            "WHERE order_id = $1 RETURNING poll_attempts",
            order_id,
        )

    async def active_intent_ids(self) -> Set[str]:
        rows = await self._query(
            "fetch",
            "SELECT DISTINCT intent_id FROM orders "
            "WHERE intent_id IS NOT NULL AND status IN ('created', 'pending_confirmation')",
        )
        return {row["intent_id"] for row in rows}

    async def list_stale_open(self, older_than: datetime) -> List[Order]:
        rows = await self._query(
            "fetch",
            "SELECT * FROM orders "
            "WHERE status IN ('created', 'pending_confirmation') AND created_at < $1",
            older_than,
        )
        return [_row_to_order(row) for row in rows]
