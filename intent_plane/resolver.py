"""
Intent Resolver
===============

Turns a visitor interaction into a persisted Intent and decides, once and
for all, whether the visitor must log in before the action can complete.

The decision reads a single catalog snapshot taken at creation time:

    requires_login = False  when the CTA is a plain link (redirect/none),
                            the seller allows anonymous enquiry/purchase,
                            or the caller is already authenticated
    requires_login = True   otherwise
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .catalog import Block, Catalog, Product, Profile
from .errors import InvalidInput, NotFound
from .intent_store import IntentStore
from .models import Actor, CtaKind, Intent, utcnow

logger = logging.getLogger(__name__)

# CTA kinds that never need an identity
_LOGIN_FREE = frozenset({CtaKind.REDIRECT, CtaKind.NONE})


@dataclass
class IntentContext:
    """What the visitor interacted with."""
    profile_id: str
    block_id: Optional[str] = None
    product_id: Optional[str] = None
    cta_kind: Optional[CtaKind] = None  # only honoured for product buttons
    source: Optional[str] = None
    session_id: Optional[str] = None


def generate_intent_id() -> str:
    return f"int_{secrets.token_urlsafe(24)}"


def allows_anonymous(profile: Profile, block: Optional[Block], product: Optional[Product]) -> bool:
    """Whether the seller lets visitors enquire or buy without an account."""
    if profile.allow_anonymous:
        return True
    if block is not None and not block.cta_requires_login:
        return True
    if product is not None and product.allow_guest_checkout:
        return True
    return False


def decide_requires_login(
    cta_kind: CtaKind,
    actor: Actor,
    profile: Profile,
    block: Optional[Block] = None,
    product: Optional[Product] = None,
) -> bool:
    if cta_kind in _LOGIN_FREE:
        return False
    if actor.is_authenticated:
        return False
    return not allows_anonymous(profile, block, product)


class IntentResolver:
    """Builds and persists intents from interaction contexts."""

    def __init__(self, catalog: Catalog, store: IntentStore, ttl_seconds: int = 15 * 60):
        self.catalog = catalog
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)

    async def create_intent(self, context: IntentContext, actor: Optional[Actor] = None) -> Intent:
        """
        Validate the context, decide requires_login and persist a pending intent.

        Raises:
            InvalidInput / NotFound: malformed context or unknown records
            TransientError: storage failure (the visitor may retry)
        """
        actor = actor or Actor.anonymous()

        if not context.profile_id:
            raise InvalidInput("profile_id is required")
        if not context.block_id and not context.product_id:
            raise InvalidInput("block_id or product_id is required")

        profile = await self.catalog.get_profile(context.profile_id)
        if profile is None:
            raise NotFound(f"Profile {context.profile_id} not found")

        block = None
        if context.block_id:
            block = await self.catalog.get_block(context.block_id)
            if block is None or block.profile_id != profile.profile_id:
                raise NotFound(f"Block {context.block_id} not found")

        product_id = context.product_id or (block.product_id if block else None)
        product = None
        if product_id:
            product = await self.catalog.get_product(product_id)
            if product is None or product.profile_id != profile.profile_id:
                raise NotFound(f"Product {product_id} not found")

        cta_kind = self._cta_kind(context, block)

        amount = 0
        currency = "INR"
        if cta_kind == CtaKind.BUY:
            if product is None:
                raise InvalidInput("A buy action needs a product with a price")
            amount = product.price
            currency = product.currency
        if cta_kind == CtaKind.REDIRECT and not (block and block.url):
            raise InvalidInput("A link action needs a target URL")

        now = utcnow()
        intent = Intent(
            intent_id=generate_intent_id(),
            profile_id=profile.profile_id,
            block_id=block.block_id if block else None,
            product_id=product.product_id if product else None,
            actor=actor,
            cta_kind=cta_kind,
            requires_login=decide_requires_login(cta_kind, actor, profile, block, product),
            created_at=now,
            expires_at=now + self.ttl,
            target_url=block.url if block else None,
            amount=amount,
            currency=currency,
            payee_reference=profile.profile_id,
            source=context.source,
            session_id=context.session_id,
        )
        return await self.store.put(intent)

    @staticmethod
    def _cta_kind(context: IntentContext, block: Optional[Block]) -> CtaKind:
        if block is not None:
            return block.cta_kind
        # Product buttons default to buy; an explicit kind may switch them to enquiry
        if context.cta_kind in (CtaKind.BUY, CtaKind.ENQUIRY):
            return context.cta_kind
        if context.cta_kind is not None:
            raise InvalidInput(f"A product button cannot be a {context.cta_kind.value} action")
        return CtaKind.BUY
