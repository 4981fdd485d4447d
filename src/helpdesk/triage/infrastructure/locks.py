"""
Triage Single-Flight Locks
===========================

At most one triage run per ticket ID at a time.

- InMemoryTriageLock: process-local
- DatabaseTriageLease: row lease in ``triage_leases``, shared across
  processes using the same database; expired leases can be taken over
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Set

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from helpdesk.triage.application import ITriageLock
from helpdesk.triage.infrastructure.models import TriageLeaseModel
from helpdesk.config import Settings
from helpdesk.core import ConfigurationException
from helpdesk.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class InMemoryTriageLock(ITriageLock):
    """Set of ticket IDs with a run in progress."""

    def __init__(self):
        self._held: Set[str] = set()
        self._mutex = asyncio.Lock()

    async def try_acquire(self, ticket_id: str) -> bool:
        async with self._mutex:
            if ticket_id in self._held:
                return False
            self._held.add(ticket_id)
            return True

    async def release(self, ticket_id: str) -> None:
        async with self._mutex:
            self._held.discard(ticket_id)

    def is_held(self, ticket_id: str) -> bool:
        return ticket_id in self._held


class DatabaseTriageLease(ITriageLock):
    """
    Lease row per ticket ID.

    A lease older than ``lease_seconds`` is considered abandoned (its holder
    crashed mid-run) and may be taken over by another holder.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lease_seconds: int = 300,
        holder: Optional[str] = None
    ):
        self._session_factory = session_factory
        self._lease = timedelta(seconds=lease_seconds)
        self.holder = holder or str(uuid.uuid4())

    async def try_acquire(self, ticket_id: str) -> bool:
        now = datetime.now(timezone.utc)
        expires_at = now + self._lease

        async with self._session_factory() as session:
            session.add(TriageLeaseModel(
                ticket_id=ticket_id,
                holder=self.holder,
                expires_at=expires_at
            ))
            try:
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()

        # Lease exists; take it over only if it has expired
        async with self._session_factory() as session:
            result = await session.execute(
                update(TriageLeaseModel)
                .where(
                    TriageLeaseModel.ticket_id == ticket_id,
                    TriageLeaseModel.expires_at < now
                )
                .values(holder=self.holder, expires_at=expires_at)
            )
            await session.commit()

        if result.rowcount == 1:
            logger.warning(
                "Took over expired triage lease",
                extra={"ticket_id": ticket_id, "holder": self.holder}
            )
            return True
        return False

    async def release(self, ticket_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(TriageLeaseModel).where(
                    TriageLeaseModel.ticket_id == ticket_id,
                    TriageLeaseModel.holder == self.holder
                )
            )
            await session.commit()


def build_triage_lock(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None
) -> ITriageLock:
    """Select the lock named by ``settings.triage_lock_backend``."""
    if settings.triage_lock_backend == "memory":
        return InMemoryTriageLock()
    if settings.triage_lock_backend == "database":
        if session_factory is None:
            raise ConfigurationException("Database lease requires a session factory")
        return DatabaseTriageLease(session_factory, lease_seconds=settings.triage_lease_seconds)
    raise ConfigurationException(f"Unknown lock backend: {settings.triage_lock_backend}")
