"""
Per-agent run serialization.

Two layers:

* :class:`AgentRunLocks` – in-process lease registry keyed by agent id.  Runs
  for the same agent queue behind one ``asyncio.Lock``; payload-less triggers
  (schedule ticks, task events) that arrive while one is already waiting are
  coalesced into that waiting run.
* :class:`AgentLockManager` – PostgreSQL advisory locks so that several
  scheduler processes sharing one database still never overlap runs of the
  same agent.  Skipped on other dialects.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from contextlib import contextmanager
from dataclasses import dataclass
from typing import AsyncIterator
from typing import Dict
from typing import Generator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass
class _Lease:
    lock: asyncio.Lock
    # Payload-less trigger currently waiting for the lock.
    coalescable_waiting: bool = False
    holders: int = 0


class AgentRunLocks:
    """In-process lease registry: one run at a time per agent id."""

    def __init__(self):
        self._leases: Dict[int, _Lease] = {}

    def _lease(self, agent_id: int) -> _Lease:
        lease = self._leases.get(agent_id)
        if lease is None:
            lease = self._leases[agent_id] = _Lease(lock=asyncio.Lock())
        return lease

    def is_running(self, agent_id: int) -> bool:
        lease = self._leases.get(agent_id)
        return bool(lease and lease.lock.locked())

    @asynccontextmanager
    async def run_slot(self, agent_id: int, *, coalesce: bool = True) -> AsyncIterator[bool]:
        """Wait for the agent's slot.

        Yields ``True`` once the slot is held.  Yields ``False`` immediately
        when *coalesce* is set and an equivalent trigger is already queued;
        the caller then skips its run.
        """
        lease = self._lease(agent_id)
        if coalesce and lease.lock.locked():
            if lease.coalescable_waiting:
                logger.debug(f"Trigger for agent {agent_id} coalesced into queued run")
                yield False
                return
            lease.coalescable_waiting = True
            waiting_flag = True
        else:
            waiting_flag = False

        lease.holders += 1
        try:
            async with lease.lock:
                if waiting_flag:
                    lease.coalescable_waiting = False
                yield True
        finally:
            if waiting_flag and lease.coalescable_waiting:
                # Cancelled while waiting.
                lease.coalescable_waiting = False
            lease.holders -= 1
            if lease.holders == 0 and not lease.lock.locked():
                self._leases.pop(agent_id, None)


class AgentLockManager:
    """
    Agent concurrency across processes using PostgreSQL advisory locks.

    Advisory locks are session-scoped and automatically released when the
    connection terminates, so a crashed worker never leaves an agent locked.
    """

    @staticmethod
    def supported(db: Session) -> bool:
        bind = db.get_bind()
        return bind is not None and bind.dialect.name == "postgresql"

    @staticmethod
    def acquire_agent_lock(db: Session, agent_id: int) -> bool:
        """Non-blocking ``pg_try_advisory_lock``; ``False`` when held elsewhere."""
        try:
            # A second acquisition from the same session counts as "not acquired".
            already_held = db.execute(
                text(
                    """
                    SELECT 1
                    FROM pg_locks
                    WHERE locktype = 'advisory'
                      AND granted = true
                      AND pid = pg_backend_pid()
                      AND ((classid::bigint << 32) | objid::bigint) = :agent_id
                    LIMIT 1
                    """
                ),
                {"agent_id": int(agent_id)},
            ).scalar()
            if already_held:
                logger.debug(f"Advisory lock for agent {agent_id} already held by this session")
                return False

            acquired = db.execute(text("SELECT pg_try_advisory_lock(:agent_id)"), {"agent_id": int(agent_id)}).scalar()
            if acquired:
                logger.debug(f"Acquired advisory lock for agent {agent_id}")
            else:
                logger.debug(f"Agent {agent_id} is already locked by another session")
            return bool(acquired)

        except SQLAlchemyError as e:
            logger.error(f"Failed to acquire advisory lock for agent {agent_id}: {e}")
            return False

    @staticmethod
    def release_agent_lock(db: Session, agent_id: int) -> bool:
        try:
            released = db.execute(text("SELECT pg_advisory_unlock(:agent_id)"), {"agent_id": int(agent_id)}).scalar()
            if not released:
                logger.warning(f"Advisory lock for agent {agent_id} was not held by this session")
            return bool(released)
        except SQLAlchemyError as e:
            logger.error(f"Failed to release advisory lock for agent {agent_id}: {e}")
            return False

    @staticmethod
    @contextmanager
    def agent_lock(db: Session, agent_id: int) -> Generator[bool, None, None]:
        """Yield whether the cross-process lock is held.  Always ``True`` off Postgres.

        Usage::

            with AgentLockManager.agent_lock(db, agent_id) as acquired:
                if not acquired:
                    return  # another process is running this agent
        """
        if not AgentLockManager.supported(db):
            yield True
            return

        acquired = AgentLockManager.acquire_agent_lock(db, agent_id)
        try:
            yield acquired
        finally:
            if acquired:
                AgentLockManager.release_agent_lock(db, agent_id)


__all__ = ["AgentRunLocks", "AgentLockManager"]
