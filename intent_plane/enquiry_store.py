"""Storage for enquiry leads recorded by the enquiry flow."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Dict, List, Optional

import asyncpg

from .errors import TransientError
from .models import Actor, Enquiry

logger = logging.getLogger(__name__)


class EnquiryStore(ABC):

    @abstractmethod
    async def put(self, enquiry: Enquiry) -> Enquiry:
        """Record a new enquiry."""

    @abstractmethod
    async def get(self, enquiry_id: str) -> Optional[Enquiry]:
        """Get an enquiry by id."""

    @abstractmethod
    async def delete(self, enquiry_id: str) -> bool:
        """Remove an enquiry. Returns False if it did not exist."""

    @abstractmethod
    async def list_for_profile(self, profile_id: str, limit: int = 50) -> List[Enquiry]:
        """Newest-first enquiries for a profile."""


class InMemoryEnquiryStore(EnquiryStore):

    def __init__(self):
        self._enquiries: Dict[str, Enquiry] = {}
        self._lock = asyncio.Lock()

    async def put(self, enquiry: Enquiry) -> Enquiry:
        async with self._lock:
            self._enquiries[enquiry.enquiry_id] = replace(enquiry)
        logger.info(
            f"Recorded enquiry {enquiry.enquiry_id}",
            extra={"intent_id": enquiry.intent_id, "profile_id": enquiry.profile_id},
        )
        return replace(enquiry)

    async def get(self, enquiry_id: str) -> Optional[Enquiry]:
        async with self._lock:
            enquiry = self._enquiries.get(enquiry_id)
            return replace(enquiry) if enquiry else None

    async def delete(self, enquiry_id: str) -> bool:
        async with self._lock:
            return self._enquiries.pop(enquiry_id, None) is not None

    async def list_for_profile(self, profile_id: str, limit: int = 50) -> List[Enquiry]:
        async with self._lock:
            enquiries = [e for e in self._enquiries.values() if e.profile_id == profile_id]
        enquiries.sort(key=lambda e: e.created_at, reverse=True)
        return [replace(e) for e in enquiries[:limit]]


def _row_to_enquiry(row: asyncpg.Record) -> Enquiry:
    return Enquiry(
        enquiry_id=row["enquiry_id"],
        intent_id=row["intent_id"],
        profile_id=row["profile_id"],
        block_id=row["block_id"],
        product_id=row["product_id"],
        actor=Actor.from_reference(row["actor"]),
        name=row["name"],
        email=row["email"],
        phone=row["phone"],
        message=row["message"],
        created_at=row["created_at"],
    )


class PostgresEnquiryStore(EnquiryStore):

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def _query(self, method: str, sql: str, *args) -> Any:
        try:
            return await getattr(self.pool, method)(sql, *args)
        except (asyncpg.PostgresConnectionError, OSError) as e:
            raise TransientError(f"Enquiry storage unavailable: {e}") from e

    async def put(self, enquiry: Enquiry) -> Enquiry:
        await self._query(
            "execute",
            """
            INSERT INTO enquiries (
                enquiry_id, intent_id, profile_id, block_id, product_id,
                actor, name, email, phone, message, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
            enquiry.enquiry_id,
            enquiry.intent_id,
            enquiry.profile_id,
            enquiry.block_id,
            enquiry.product_id,
            enquiry.actor.reference(),
            enquiry.name,
            enquiry.email,
            enquiry.phone,
            enquiry.message,
            enquiry.created_at,
        )
        logger.info(
            f"Recorded enquiry {enquiry.enquiry_id}",
            extra={"intent_id": enquiry.intent_id, "profile_id": enquiry.profile_id},
        )
        return enquiry

    async def get(self, enquiry_id: str) -> Optional[Enquiry]:
        row = await self._query("fetchrow", "SELECT * FROM enquiries WHERE enquiry_id = $1", enquiry_id)
        return _row_to_enquiry(row) if row else None

    async def delete(self, enquiry_id: str) -> bool:
        result = await self._query("execute", "DELETE FROM enquiries WHERE enquiry_id = $1", enquiry_id)
        return result == "DELETE 1"

    async def list_for_profile(self, profile_id: str, limit: int = 50) -> List[Enquiry]:
        rows = await self._query(
            "fetch",
            "SELECT * FROM enquiries WHERE profile_id = $1 ORDER BY created_at DESC LIMIT $2",
            profile_id, limit,
        )
        return [_row_to_enquiry(row) for row in rows]
