"""
Order Supervisor
================

Opens payment Orders and watches them until the gateway reports a terminal
result.

Supervision is an asyncio task per order: a loop with an explicit attempt
counter that sleeps ``poll_interval`` between lookups and gives up after
``max_attempts``. Each lookup result, and every push confirmation from a
webhook, goes through ``apply_status()``, which commits through the order
store's compare-and-swap. Whoever wins that swap, and only they, notify the
terminal listeners.

Order lifecycle:
    created -> pending_confirmation -> paid | failed | expired
    created -> failed   (gateway never produced a payable reference)
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .config import SupervisorSettings
from .errors import (
    AuthenticationRequired,
    Conflict,
    DuplicateOrder,
    IntentPlaneError,
    InvalidInput,
    NotFound,
    TransientError,
)
from .gateway import GatewayPayment, PaymentGateway
from .intent_store import IntentStore
from .models import Actor, CtaKind, IntentStatus, Order, OrderStatus
from .order_store import OrderStore

logger = logging.getLogger(__name__)

TerminalListener = Callable[[Order], Awaitable[None]]

# Reasons recorded on orders that did not end in ``paid``
REASON_AMOUNT_MISMATCH = "amount_mismatch"
REASON_DECLINED = "gateway_declined"
REASON_GATEWAY_EXPIRED = "gateway_expired"
REASON_GATEWAY_UNAVAILABLE = "gateway_unavailable"
REASON_GATEWAY_REJECTED = "gateway_rejected"
REASON_TIMEOUT = "confirmation_timeout"
REASON_CANCELLED = "cancelled"


def generate_order_id() -> str:
    return f"ord_{uuid.uuid4().hex[:20]}"


class OrderSupervisor:
    """Creates orders and runs their bounded, cancellable confirmation polling."""

    def __init__(
        self,
        orders: OrderStore,
        intents: IntentStore,
        gateway: PaymentGateway,
        settings: Optional[SupervisorSettings] = None,
    ):
        self.orders = orders
        self.intents = intents
        self.gateway = gateway
        self.settings = settings or SupervisorSettings()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._listeners: List[TerminalListener] = []
        self._open_locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    def add_terminal_listener(self, listener: TerminalListener):
        """Register a coroutine called once with each order that reaches a terminal state."""
        self._listeners.append(listener)

    # =========================================================================
    # Opening orders
    # =========================================================================

    async def open_order(
        self,
        intent_id: Optional[str],
        amount: int,
        payee: str,
        currency: str = "INR",
        buyer: Optional[Actor] = None,
    ) -> Order:
        """
        Create an order and obtain a payable reference from the gateway.

        Concurrent or retried calls for one intent get the same live order
        instead of opening a second one.

        Raises:
            InvalidInput: bad amount/payee, or an intent that cannot be paid for
            Conflict: the intent is closed, already paid, or another server is opening its order
            TransientError: the gateway stayed unavailable for every attempt
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidInput("amount must be a positive integer in minor units")
        if not payee:
            raise InvalidInput("payee is required")

        order = Order(
            order_id=generate_order_id(),
            intent_id=intent_id,
            amount=amount,
            currency=currency.upper(),
            payee_reference=payee,
            buyer=buyer or Actor.anonymous(),
        )
        if not intent_id:
            return await self._open(order)

        async with self._opening(intent_id):
            existing = await self._check_intent(intent_id, amount)
            if existing is None:
                try:
                    return await self._open(order)
                except DuplicateOrder:
                    existing = await self._live_order(intent_id)

            if existing is None or existing.status != OrderStatus.PENDING_CONFIRMATION:
                raise Conflict("A payment for this purchase is already being opened, please retry")
            logger.info(
                f"Intent {intent_id} already has live order {existing.order_id}",
                extra={"intent_id": intent_id, "order_id": existing.order_id},
            )
            return existing

    @asynccontextmanager
    async def _opening(self, intent_id: str):
        """Serialize order opening per intent within this process."""
        lock, users = self._open_locks.get(intent_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._open_locks[intent_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._open_locks[intent_id]
            if users == 1:
                del self._open_locks[intent_id]
            else:
                self._open_locks[intent_id] = (lock, users - 1)

    async def _open(self, order: Order) -> Order:
        order = await self.orders.put(order)

        try:
            payment = await self._create_payment(order)
        except InvalidInput:
            await self.orders.transition(
                order.order_id, OrderStatus.CREATED, OrderStatus.FAILED,
                failure_reason=REASON_GATEWAY_REJECTED,
            )
            raise

        if payment is None:
            await self._commit(
                order.order_id, OrderStatus.CREATED, OrderStatus.FAILED,
                failure_reason=REASON_GATEWAY_UNAVAILABLE,
            )
            raise TransientError("Payment gateway unavailable, please retry")

        pending = await self.orders.transition(
            order.order_id,
            OrderStatus.CREATED,
            OrderStatus.PENDING_CONFIRMATION,
            external_reference=payment.external_reference,
            payable_handle=payment.payable_handle,
        )
        if pending is None:
            raise Conflict(f"Order {order.order_id} changed while it was being opened")
        return pending

    async def _live_order(self, intent_id: str) -> Optional[Order]:
        for order in await self.orders.find_for_intent(intent_id):
            if order.status == OrderStatus.PAID:
                raise Conflict(f"Intent {intent_id} is already paid")
            if not order.is_terminal:
                return order
        return None

    async def _check_intent(self, intent_id: str, amount: int) -> Optional[Order]:
        intent = await self.intents.get(intent_id)
        if intent is None:
            raise NotFound(f"Intent {intent_id} not found")
        if intent.cta_kind != CtaKind.BUY:
            raise InvalidInput(f"Intent {intent_id} is not a purchase")
        if intent.is_terminal:
            raise Conflict(f"Intent {intent_id} is already {intent.status.value}")
        if intent.requires_login and intent.status == IntentStatus.PENDING:
            raise AuthenticationRequired("Log in to continue with this purchase")
        if amount != intent.amount:
            raise InvalidInput(
                f"amount {amount} does not match the price {intent.amount} recorded on the intent"
            )
        return await self._live_order(intent_id)

    async def abandon_unopened(self, order_id: str) -> Optional[Order]:
        """Fail an order whose gateway payment was never created (e.g. a crash mid-open)."""
        return await self._commit(
            order_id, OrderStatus.CREATED, OrderStatus.FAILED,
            failure_reason=REASON_GATEWAY_UNAVAILABLE,
        )

    async def _create_payment(self, order: Order) -> Optional[GatewayPayment]:
        attempts = max(1, self.settings.create_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await self.gateway.create_payment(order)
            except TransientError as e:
                logger.warning(
                    f"Gateway create attempt {attempt}/{attempts} failed for order {order.order_id}: {e}",
                    extra={"order_id": order.order_id},
                )
                if attempt < attempts:
                    await asyncio.sleep(self.settings.poll_interval)
        return None

    # =========================================================================
    # Supervision
    # =========================================================================

    def start(self, order_id: str) -> asyncio.Task:
        """Start (or return the running) supervision task for an order."""
        task = self._tasks.get(order_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(self.supervise(order_id), name=f"supervise-{order_id}")
        self._tasks[order_id] = task
        task.add_done_callback(lambda t: self._on_task_done(order_id, t))
        logger.info(f"Supervising order {order_id}", extra={"order_id": order_id})
        return task

    def _on_task_done(self, order_id: str, task: asyncio.Task):
        if self._tasks.get(order_id) is task:
            del self._tasks[order_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Supervision of order {order_id} crashed: {error}",
                exc_info=error,
                extra={"order_id": order_id},
            )

    def is_supervising(self, order_id: str) -> bool:
        task = self._tasks.get(order_id)
        return task is not None and not task.done()

    async def supervise(self, order_id: str) -> OrderStatus:
        """
        Poll the gateway until the order is terminal or the attempt budget runs out.

        Every failed poll, gateway or storage, uses up one attempt. A gateway
        that rejects the lookup outright fails the order.
        """
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        if order.status != OrderStatus.PENDING_CONFIRMATION:
            return order.status

        attempts = order.poll_attempts
        while attempts < self.settings.max_attempts:
            await asyncio.sleep(self.settings.poll_interval)
            attempts += 1

            try:
                await self.orders.record_attempt(order_id)
                result = await self.gateway.lookup(order.external_reference)
            except InvalidInput as e:
                logger.error(
                    f"Gateway rejected lookup for order {order_id}: {e}",
                    extra={"order_id": order_id},
                )
                return await self._settle(order_id, OrderStatus.FAILED, REASON_GATEWAY_REJECTED)
            except IntentPlaneError as e:
                self._log_failed_poll(order_id, attempts, e)
                continue

            try:
                await self.apply_status(order_id, result.status, result.amount_confirmed)
                # A webhook may have settled the order between polls
                current = await self.orders.get(order_id)
            except IntentPlaneError as e:
                self._log_failed_poll(order_id, attempts, e)
                continue

            if current is None:
                return order.status
            if current.is_terminal:
                return current.status

        logger.info(
            f"Order {order_id} unconfirmed after {attempts} attempts",
            extra={"order_id": order_id},
        )
        return await self._settle(order_id, OrderStatus.EXPIRED, REASON_TIMEOUT)

    def _log_failed_poll(self, order_id: str, attempt: int, error: Exception):
        logger.warning(
            f"Poll {attempt}/{self.settings.max_attempts} for order {order_id} failed: {error}",
            extra={"order_id": order_id},
        )

    async def _settle(self, order_id: str, new: OrderStatus, reason: str) -> OrderStatus:
        """Close a pending order. If storage is down the sweeper closes it later."""
        try:
            await self._commit(
                order_id, OrderStatus.PENDING_CONFIRMATION, new, failure_reason=reason,
            )
            current = await self.orders.get(order_id)
        except TransientError as e:
            logger.error(
                f"Could not close order {order_id} as {new.value}: {e}",
                extra={"order_id": order_id},
            )
            return OrderStatus.PENDING_CONFIRMATION
        return current.status if current else new

    async def cancel(self, order_id: str) -> bool:
        """
        Stop supervising an order the visitor walked away from.

        A still-pending order is moved to ``expired``; a terminal result that
        was already committed stays as it is. Returns True if anything stopped.
        """
        stopped = False
        task = self._tasks.pop(order_id, None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            stopped = True

        expired = await self.expire(order_id, REASON_CANCELLED)
        if expired is not None:
            logger.info(f"Cancelled order {order_id}", extra={"order_id": order_id})
        return stopped or expired is not None

    async def expire(self, order_id: str, reason: str = REASON_TIMEOUT) -> Optional[Order]:
        """Expire a pending order that no task is watching."""
        return await self._commit(
            order_id, OrderStatus.PENDING_CONFIRMATION, OrderStatus.EXPIRED,
            failure_reason=reason,
        )

    async def shutdown(self):
        """Cancel every supervision task without touching order state."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Stopped {len(tasks)} supervision task(s)")
        self._tasks.clear()

    # =========================================================================
    # Status funnel
    # =========================================================================

    async def apply_status(
        self,
        order_id: str,
        reported: OrderStatus,
        amount_confirmed: Optional[int] = None,
    ) -> Optional[Order]:
        """
        Apply a gateway result (poll or push) to an order.

        Returns the order if this call moved it to a terminal state, None if
        the result was non-terminal or arrived after the order had settled.
        """
        if reported in (OrderStatus.CREATED, OrderStatus.PENDING_CONFIRMATION):
            return None

        order = await self.orders.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        if order.status != OrderStatus.PENDING_CONFIRMATION:
            logger.info(
                f"Ignoring {reported.value} for order {order_id}: status is {order.status.value}",
                extra={"order_id": order_id},
            )
            return None

        new = reported
        updates = {}
        if reported == OrderStatus.PAID:
            if amount_confirmed is not None and amount_confirmed != order.amount:
                logger.error(
                    f"Order {order_id} confirmed {amount_confirmed}, expected {order.amount}",
                    extra={"order_id": order_id},
                )
                new = OrderStatus.FAILED
                updates["failure_reason"] = REASON_AMOUNT_MISMATCH
            updates["amount_confirmed"] = order.amount if amount_confirmed is None else amount_confirmed
        elif reported == OrderStatus.FAILED:
            updates["failure_reason"] = REASON_DECLINED
        else:
            updates["failure_reason"] = REASON_GATEWAY_EXPIRED

        return await self._commit(order_id, OrderStatus.PENDING_CONFIRMATION, new, **updates)

    async def _commit(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        **updates,
    ) -> Optional[Order]:
        order = await self.orders.transition(order_id, expected, new, **updates)
        if order is not None and order.is_terminal:
            # The swap is committed; listeners must run even if the poller is cancelled now
            await asyncio.shield(self._notify(order))
        return order

    async def _notify(self, order: Order):
        for listener in list(self._listeners):
            try:
                await listener(order)
            except Exception:
                logger.exception(
                    f"Terminal listener failed for order {order.order_id}",
                    extra={"order_id": order.order_id},
                )
