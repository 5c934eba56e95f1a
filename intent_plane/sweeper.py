"""
Intent Plane Sweeper
====================

Background service that periodically expires records nobody will come back
for: intents whose TTL passed without a resume or completion, and orders left
in ``created`` or ``pending_confirmation`` with no live supervision task
(for example after a restart).

Runs as a background task in the FastAPI application.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .intent_store import IntentStore
from .models import OrderStatus, utcnow
from .order_store import OrderStore
from .supervisor import OrderSupervisor

logger = logging.getLogger(__name__)


class Sweeper:
    """Expires stale intents and orphaned orders on a fixed interval."""

    def __init__(
        self,
        intents: IntentStore,
        orders: OrderStore,
        supervisor: OrderSupervisor,
        interval: float = 60.0,
    ):
        self.intents = intents
        self.orders = orders
        self.supervisor = supervisor
        self.interval = interval
        self._running = False
        self.last_run: Optional[datetime] = None

    async def start(self):
        """Start the sweep loop."""
        self._running = True
        logger.info("Sweeper started")

        while self._running:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Sweep cycle failed: {e}")

            await asyncio.sleep(self.interval)

    def stop(self):
        """Stop the sweep loop."""
        self._running = False
        logger.info("Sweeper stopped")

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run one sweep pass and report what was expired."""
        now = now or utcnow()

        active = await self.orders.active_intent_ids()
        intents_expired = await self.intents.expire_stale(now, exclude=active)

        cutoff = now - timedelta(seconds=self.supervisor.settings.window_seconds)
        orders_expired = 0
        for order in await self.orders.list_stale_open(cutoff):
            if self.supervisor.is_supervising(order.order_id):
                continue
            if order.status == OrderStatus.CREATED:
                committed = await self.supervisor.abandon_unopened(order.order_id)
            else:
                committed = await self.supervisor.expire(order.order_id)
            if committed is not None:
                orders_expired += 1
                logger.warning(
                    f"Closed orphaned order {order.order_id} as {committed.status.value}",
                    extra={"order_id": order.order_id},
                )

        self.last_run = now
        return {"intents_expired": intents_expired, "orders_expired": orders_expired}

    @property
    def is_running(self) -> bool:
        return self._running
