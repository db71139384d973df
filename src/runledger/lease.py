"""Single-executor leases on runs.

Only one executor may drive a run at a time. Within one process that is
easy; across processes (a queue worker dies, another picks the same run
up) it needs a claim in the shared store. A lease is that claim: it names
its owner and expires, so a crashed executor's run can be taken over once
its lease lapses, and never before.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from runledger.exceptions import LeaseHeldError, LeaseLostError
from runledger.storage.base import Storage
from runledger.types import Lease, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TTL = timedelta(seconds=60)


def default_owner() -> str:
    """``host:pid:random``, unique per executor instance."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LeaseManager:
    """Acquires, renews and releases run leases for one executor.

    Args:
        storage: Backend holding lease rows.
        owner: Identity of this executor (default: host, pid and a random suffix).
        ttl: How long a lease lasts without renewal.
        clock: Source of "now" (UTC-aware). Override in tests.
    """

    def __init__(
        self,
        storage: Storage,
        *,
        owner: str | None = None,
        ttl: timedelta = DEFAULT_LEASE_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        if ttl <= timedelta(0):
            raise ValueError(f"ttl must be positive, got {ttl}")
        self._storage = storage
        self.owner = owner or default_owner()
        self.ttl = ttl
        self._clock = clock

    async def acquire(self, run_id: str) -> Lease:
        """Claim *run_id* for this executor.

        Raises:
            LeaseHeldError: Another owner holds an unexpired lease.
        """
        now = self._clock()
        lease = await self._storage.acquire_lease(run_id, self.owner, now=now, expires_at=now + self.ttl)
        if lease.owner != self.owner:
            raise LeaseHeldError(run_id, lease.owner)
        logger.debug("Lease on run %s acquired by %s until %s", run_id, self.owner, lease.expires_at)
        return lease

    async def renew(self, lease: Lease) -> Lease:
        """Push the lease's expiry out by ``ttl``.

        Raises:
            LeaseLostError: The lease was released or taken over.
        """
        renewed = await self._storage.renew_lease(lease.run_id, self.owner, expires_at=self._clock() + self.ttl)
        if renewed is None:
            logger.warning("Lease on run %s lost by %s", lease.run_id, self.owner)
            raise LeaseLostError(lease.run_id, self.owner)
        logger.debug("Lease on run %s renewed by %s until %s", lease.run_id, self.owner, renewed.expires_at)
        return renewed

    async def release(self, lease: Lease) -> bool:
        """Give the lease up. Returns False if it was no longer held."""
        released = await self._storage.release_lease(lease.run_id, self.owner)
        if not released:
            logger.warning("Lease on run %s was not held by %s at release", lease.run_id, self.owner)
        return released

    @asynccontextmanager
    async def hold(self, run_id: str) -> AsyncIterator[Lease]:
        """Hold a lease for the duration of the block."""
        lease = await self.acquire(run_id)
        try:
            yield lease
        finally:
            await self.release(lease)
