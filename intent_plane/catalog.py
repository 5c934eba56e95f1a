"""
Catalog Snapshot
================

Read-only view of the profiles, blocks and products that CTAs point at.
The catalog itself is managed elsewhere; the intent plane only looks records
up when an intent is created and snapshots what it needs onto the intent.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import asyncpg

from .errors import TransientError
from .models import CtaKind

logger = logging.getLogger(__name__)

# Block CTA configuration -> completion flow
CTA_FLOW_MAP: Dict[str, CtaKind] = {
    "buy_now": CtaKind.BUY,
    "buy": CtaKind.BUY,
    "donate": CtaKind.BUY,
    "enquire": CtaKind.ENQUIRY,
    "enquiry": CtaKind.ENQUIRY,
    "contact": CtaKind.ENQUIRY,
    "book": CtaKind.ENQUIRY,
    "visit": CtaKind.REDIRECT,
    "download": CtaKind.REDIRECT,
    "custom": CtaKind.REDIRECT,
    "redirect": CtaKind.REDIRECT,
    "none": CtaKind.NONE,
}


def cta_kind_for(cta_type: Optional[str]) -> CtaKind:
    """Map a block's configured CTA type to its flow. Unknown types redirect."""
    if not cta_type:
        return CtaKind.NONE
    return CTA_FLOW_MAP.get(cta_type.strip().lower(), CtaKind.REDIRECT)


@dataclass
class Profile:
    profile_id: str
    owner_id: str
    display_name: str = ""
    email: Optional[str] = None
    allow_anonymous: bool = False


@dataclass
class Product:
    product_id: str
    profile_id: str
    title: str = ""
    price: int = 0  # minor units
    currency: str = "INR"
    allow_guest_checkout: bool = False


@dataclass
class Block:
    block_id: str
    profile_id: str
    block_type: str = "link"
    title: str = ""
    cta_type: str = "none"
    url: Optional[str] = None
    product_id: Optional[str] = None
    cta_requires_login: bool = True

    @property
    def cta_kind(self) -> CtaKind:
        return cta_kind_for(self.cta_type)


class Catalog(ABC):

    @abstractmethod
    async def get_profile(self, profile_id: str) -> Optional[Profile]:
        """Look up a profile."""

    @abstractmethod
    async def get_block(self, block_id: str) -> Optional[Block]:
        """Look up a block."""

    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]:
        """Look up a product."""


class InMemoryCatalog(Catalog):
    """Dict-backed catalog for development and tests."""

    def __init__(self):
        self.profiles: Dict[str, Profile] = {}
        self.blocks: Dict[str, Block] = {}
        self.products: Dict[str, Product] = {}
        self._lock = asyncio.Lock()

    def add_profile(self, profile: Profile) -> Profile:
        self.profiles[profile.profile_id] = profile
        return profile

    def add_block(self, block: Block) -> Block:
        self.blocks[block.block_id] = block
        return block

    def add_product(self, product: Product) -> Product:
        self.products[product.product_id] = product
        return product

    async def get_profile(self, profile_id: str) -> Optional[Profile]:
        async with self._lock:
            return self.profiles.get(profile_id)

    async def get_block(self, block_id: str) -> Optional[Block]:
        async with self._lock:
            return self.blocks.get(block_id)

    async def get_product(self, product_id: str) -> Optional[Product]:
        async with self._lock:
            return self.products.get(product_id)


class PostgresCatalog(Catalog):
    """Reads the catalog tables shared with the store service."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def _fetchrow(self, sql: str, *args) -> Optional[asyncpg.Record]:
        try:
            return await self.pool.fetchrow(sql, *args)
        except (asyncpg.PostgresConnectionError, OSError) as e:
            raise TransientError(f"Catalog unavailable: {e}") from e

    async def get_profile(self, profile_id: str) -> Optional[Profile]:
        row = await self._fetchrow("SELECT * FROM profiles WHERE profile_id = $1", profile_id)
        return Profile(**dict(row)) if row else None

    async def get_block(self, block_id: str) -> Optional[Block]:
        row = await self._fetchrow("SELECT * FROM blocks WHERE block_id = $1", block_id)
        return Block(**dict(row)) if row else None

    async def get_product(self, product_id: str) -> Optional[Product]:
        row = await self._fetchrow("SELECT * FROM products WHERE product_id = $1", product_id)
        return Product(**dict(row)) if row else None
