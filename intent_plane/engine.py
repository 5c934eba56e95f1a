"""
Intent Plane Engine
===================

Wires the components together. With a database pool every store is
Postgres-backed; without one, everything runs in memory (development and
tests).
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import asyncpg

from .catalog import Catalog, InMemoryCatalog, PostgresCatalog
from .config import IntentPlaneConfig
from .dispatcher import CompletionDispatcher
from .email_service import EmailService
from .enquiry_store import EnquiryStore, InMemoryEnquiryStore, PostgresEnquiryStore
from .gateway import PaymentGateway, build_gateway
from .intent_store import InMemoryIntentStore, IntentStore, PostgresIntentStore
from .order_store import InMemoryOrderStore, OrderStore, PostgresOrderStore
from .pending_token import PendingTokenCookie
from .resolver import IntentResolver
from .resume_gate import ResumeGate
from .supervisor import OrderSupervisor
from .sweeper import Sweeper

logger = logging.getLogger(__name__)


@dataclass
class IntentEngine:
    """Every component of the intent plane, sharing one set of stores."""
    config: IntentPlaneConfig
    catalog: Catalog
    intents: IntentStore
    orders: OrderStore
    enquiries: EnquiryStore
    gateway: PaymentGateway
    resolver: IntentResolver
    resume_gate: ResumeGate
    supervisor: OrderSupervisor
    dispatcher: CompletionDispatcher
    sweeper: Sweeper
    pending_token: PendingTokenCookie
    notifier: Optional[EmailService] = None
    db_pool: Optional[asyncpg.Pool] = None

    async def close(self):
        """Stop background work and release gateway connections."""
        self.sweeper.stop()
        await self.supervisor.shutdown()
        await self.gateway.close()

    def status(self) -> Dict[str, Any]:
        return {
            "storage": "postgres" if self.db_pool is not None else "memory",
            "gateway": self.gateway.name,
            "sweeper_running": self.sweeper.is_running,
            "email_configured": bool(self.notifier and self.notifier.smtp_configured),
        }


def build_engine(
    config: IntentPlaneConfig,
    db_pool: Optional[asyncpg.Pool] = None,
    gateway: Optional[PaymentGateway] = None,
    catalog: Optional[Catalog] = None,
    notifier: Optional[EmailService] = None,
) -> IntentEngine:
    """Create an engine from configuration."""
    if db_pool is not None:
        catalog = catalog or PostgresCatalog(db_pool)
        intents: IntentStore = PostgresIntentStore(db_pool)
        orders: OrderStore = PostgresOrderStore(db_pool)
        enquiries: EnquiryStore = PostgresEnquiryStore(db_pool)
    else:
        logger.warning("No DATABASE_URL set, using in-memory stores")
        catalog = catalog or InMemoryCatalog()
        intents = InMemoryIntentStore()
        orders = InMemoryOrderStore()
        enquiries = InMemoryEnquiryStore()

    gateway = gateway or build_gateway(config.gateway, config.stripe)
    if notifier is None and config.smtp.is_configured:
        notifier = EmailService(config.smtp)

    supervisor = OrderSupervisor(orders, intents, gateway, config.supervisor)
    dispatcher = CompletionDispatcher(intents, enquiries, supervisor, catalog, notifier)

    return IntentEngine(
        config=config,
        catalog=catalog,
        intents=intents,
        orders=orders,
        enquiries=enquiries,
        gateway=gateway,
        resolver=IntentResolver(catalog, intents, config.intents.ttl_seconds),
        resume_gate=ResumeGate(intents, config.intents.resume_window_seconds),
        supervisor=supervisor,
        dispatcher=dispatcher,
        sweeper=Sweeper(intents, orders, supervisor, config.sweep_interval),
        pending_token=PendingTokenCookie(config.cookie, max_age=config.intents.ttl_seconds),
        notifier=notifier,
        db_pool=db_pool,
    )
