"""
Scheduler Service for running agents on a tick, on cron schedules and on events.

This module provides the SchedulerService class that handles:
- The periodic tick: staleness guard first, then every eligible agent
- Event-driven runs (task created, do-now, delivered agent messages)
- Maintenance jobs (monthly token reset, thought retention, memory compression)
- Per-agent serialization of all runs
"""

import asyncio
import logging
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Set
from typing import Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from humanagent.config import get_settings
from humanagent.crud import crud
from humanagent.database import db_session
from humanagent.events import EventType
from humanagent.events import event_bus
from humanagent.metrics import scheduler_dispatch_total
from humanagent.models.enums import AgentStatus
from humanagent.models.enums import AuditStatus
from humanagent.models.enums import RunTrigger
from humanagent.models.enums import SchedulingMode
from humanagent.models.enums import TaskStatus
from humanagent.models.enums import ThoughtType
from humanagent.models.models import Agent
from humanagent.models.models import Task
from humanagent.services.agent_locks import AgentLockManager
from humanagent.services.agent_locks import AgentRunLocks
from humanagent.services.agent_thinking import cleanup_thoughts
from humanagent.services.agent_thinking import record_thought
from humanagent.services.memory import compress_memories
from humanagent.services.pipeline import RunResult
from humanagent.services.pipeline import run_pipeline
from humanagent.services.quota import reset_monthly_usage
from humanagent.services.staleness_guard import reconcile_stale_tasks
from humanagent.utils.time import utc_now_naive

logger = logging.getLogger(__name__)

MONTHLY_RESET_CRON = "0 0 1 * *"
THOUGHT_CLEANUP_CRON = "30 3 * * *"
MEMORY_COMPRESSION_CRON = "0 4 * * *"


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def cron_due(agent: Agent, now: datetime) -> bool:
    """True when a cron fire time lies between the agent's last run and *now*."""
    try:
        trigger = CronTrigger.from_crontab(agent.cron_spec, timezone=timezone.utc)
    except (TypeError, ValueError) as e:
        logger.warning(f"Agent {agent.id} has an invalid cron expression {agent.cron_spec!r}: {e}")
        return False
    base = agent.last_run_at or agent.created_at or now
    next_fire = trigger.get_next_fire_time(None, _as_utc(base) + timedelta(seconds=1))
    return next_fire is not None and next_fire <= _as_utc(now)


def next_cron_fire(agent: Agent, now: datetime) -> Optional[datetime]:
    try:
        trigger = CronTrigger.from_crontab(agent.cron_spec, timezone=timezone.utc)
    except (TypeError, ValueError):
        return None
    fire = trigger.get_next_fire_time(None, _as_utc(now) + timedelta(seconds=1))
    return fire.astimezone(timezone.utc).replace(tzinfo=None) if fire else None


class SchedulerService:
    """Service for ticking, triggering and serializing agent runs."""

    def __init__(self, session_factory=None, pipeline=None, **pipeline_kwargs: Any):
        """Initialize the scheduler service.

        Args:
            session_factory: Session factory for database connections.
            pipeline: Coroutine run for one agent (defaults to :func:`run_pipeline`).
            **pipeline_kwargs: Extra keyword arguments forwarded to the pipeline.
        """
        self.scheduler = AsyncIOScheduler()
        self.session_factory = session_factory
        self.pipeline = pipeline or run_pipeline
        self.pipeline_kwargs = pipeline_kwargs
        self.locks = AgentRunLocks()
        self._background: Set[asyncio.Task] = set()
        self._running = False

    async def start(self):
        """Start the scheduler and register the recurring jobs."""
        if self._running:
            return
        settings = get_settings()

        self.scheduler.add_job(
            self.tick,
            IntervalTrigger(minutes=settings.scheduler_tick_minutes),
            id="scheduler_tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.reset_monthly_tokens,
            CronTrigger.from_crontab(MONTHLY_RESET_CRON, timezone=timezone.utc),
            id="monthly_token_reset",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.cleanup_thoughts,
            CronTrigger.from_crontab(THOUGHT_CLEANUP_CRON, timezone=timezone.utc),
            id="thought_cleanup",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.compress_memories,
            CronTrigger.from_crontab(MEMORY_COMPRESSION_CRON, timezone=timezone.utc),
            id="memory_compression",
            replace_existing=True,
        )

        self.scheduler.start()
        self._subscribe_to_events()
        self._running = True
        logger.info(f"Scheduler service started (tick every {settings.scheduler_tick_minutes} min)")

    async def stop(self):
        """Stop the scheduler and wait for in-flight runs."""
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        # AsyncIOScheduler finishes the shutdown on the next loop iteration.
        await asyncio.sleep(0)
        self._unsubscribe_from_events()
        self._running = False
        await self.drain()
        logger.info("Scheduler service stopped")

    def _subscribe_to_events(self):
        event_bus.subscribe(EventType.TASK_CREATED, self._handle_task_created)
        event_bus.subscribe(EventType.TASK_DO_NOW, self._handle_task_do_now)
        event_bus.subscribe(EventType.A2A_MESSAGE_DELIVERED, self._handle_a2a_delivered)
        logger.info("Scheduler subscribed to task and agent message events")

    def _unsubscribe_from_events(self):
        event_bus.unsubscribe(EventType.TASK_CREATED, self._handle_task_created)
        event_bus.unsubscribe(EventType.TASK_DO_NOW, self._handle_task_do_now)
        event_bus.unsubscribe(EventType.A2A_MESSAGE_DELIVERED, self._handle_a2a_delivered)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _handle_task_created(self, data: Dict[str, Any]) -> None:
        agent_id = data.get("agent_id")
        if agent_id is None:
            # Unassigned tasks wait for the next tick.
            return
        self.spawn(int(agent_id), RunTrigger.TASK_CREATED)

    async def _handle_task_do_now(self, data: Dict[str, Any]) -> None:
        agent_id = data.get("agent_id")
        if agent_id is None:
            return
        self.spawn(int(agent_id), RunTrigger.DO_NOW)

    async def _handle_a2a_delivered(self, data: Dict[str, Any]) -> None:
        # Never awaited inline: the sender may be mid-run inside its own slot.
        self.spawn(int(data["agent_id"]), RunTrigger.A2A, payload=dict(data))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def spawn(self, agent_id: int, trigger: RunTrigger, payload: Optional[Dict[str, Any]] = None) -> asyncio.Task:
        """Run :meth:`dispatch` in the background and track the task."""
        task = asyncio.create_task(self.dispatch(agent_id, trigger, payload))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait until every background dispatch (including ones they spawn) finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def dispatch(
        self,
        agent_id: int,
        trigger: RunTrigger,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[RunResult]:
        """Run the pipeline for *agent_id* once its run slot is free.

        Payload-less triggers coalesce with an already queued run of the same
        agent; message deliveries always get their own run.  Returns ``None``
        when the run was coalesced, locked elsewhere, timed out or crashed.
        """
        timeout = get_settings().stale_task_minutes * 60
        async with self.locks.run_slot(agent_id, coalesce=payload is None) as acquired:
            if not acquired:
                scheduler_dispatch_total.labels("coalesced").inc()
                return None
            with db_session(self.session_factory) as lock_db:
                with AgentLockManager.agent_lock(lock_db, agent_id) as held:
                    if not held:
                        logger.info(f"Agent {agent_id} is running in another process; skipping {trigger.value}")
                        scheduler_dispatch_total.labels("locked").inc()
                        return None
                    try:
                        result = await asyncio.wait_for(
                            self.pipeline(
                                agent_id,
                                trigger,
                                payload=payload,
                                session_factory=self.session_factory,
                                **self.pipeline_kwargs,
                            ),
                            timeout=timeout,
                        )
                    except asyncio.TimeoutError:
                        # The staleness guard fails whatever the run left in progress.
                        logger.error(f"Run of agent {agent_id} exceeded {timeout}s and was cancelled")
                        scheduler_dispatch_total.labels("timeout").inc()
                        self._release_agent(agent_id, f"Run timed out after {timeout:g}s")
                        return None
                    except Exception as e:
                        logger.exception(f"Run of agent {agent_id} ({trigger.value}) crashed: {e}")
                        scheduler_dispatch_total.labels("error").inc()
                        self._release_agent(agent_id, f"Run crashed: {e}"[:500])
                        return None
        scheduler_dispatch_total.labels("ran").inc()
        return result

    def _release_agent(self, agent_id: int, error: str) -> None:
        """Return an agent left mid-run by a cancelled or crashed pipeline to idle."""
        with db_session(self.session_factory) as db:
            agent = crud.get_agent(db, agent_id)
            if agent is not None and agent.status == AgentStatus.RUNNING:
                agent.status = AgentStatus.IDLE
                agent.last_error = error

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def _select_due_agents(self, db: Session, now: datetime) -> List[Tuple[int, RunTrigger]]:
        selected = []
        for agent in crud.list_active_agents(db):
            if agent.status == AgentStatus.BUDGET_EXHAUSTED:
                continue
            trigger = None
            if agent.scheduling_mode == SchedulingMode.AUTO:
                trigger = RunTrigger.SCHEDULE
            elif agent.scheduling_mode == SchedulingMode.CRON and agent.cron_spec and cron_due(agent, now):
                trigger = RunTrigger.CRON
                # A fire time counts once, whether or not the run finds work.
                agent.last_run_at = now
                agent.next_run_at = next_cron_fire(agent, now)
            elif crud.has_claimable_tasks(db, agent) or _has_in_progress(db, agent):
                trigger = RunTrigger.SCHEDULE
            if trigger is None:
                continue

            pending = crud.list_pending_tasks(db, owner_id=agent.owner_id, agent_id=agent.id)
            record_thought(
                db,
                agent,
                ThoughtType.OBSERVATION,
                f"Scheduled check ({trigger.value}): {len(pending)} pending task(s).",
                context="scheduler_tick",
            )
            crud.create_audit_entry(
                db,
                actor="system:scheduler",
                action="agent_scheduled_run",
                resource=f"agent:{agent.id}",
                status=AuditStatus.ALLOWED,
                owner_id=agent.owner_id,
                agent_id=agent.id,
                details={"trigger": trigger.value, "pending_tasks": len(pending)},
            )
            selected.append((agent.id, trigger))
        db.commit()
        return selected

    async def tick(self, now: Optional[datetime] = None) -> List[Optional[RunResult]]:
        """Reconcile stale tasks, then run every eligible agent concurrently."""
        now = now or utc_now_naive()
        with db_session(self.session_factory) as db:
            stale = reconcile_stale_tasks(db, now=now)
            if stale:
                logger.warning(f"Staleness guard failed {len(stale)} task(s): {stale}")
            due = self._select_due_agents(db, now)

        if not due:
            return []
        logger.info(f"Scheduler tick dispatching {len(due)} agent(s)")
        results = await asyncio.gather(
            *(self.dispatch(agent_id, trigger) for agent_id, trigger in due),
            return_exceptions=True,
        )
        for (agent_id, _), result in zip(due, results):
            if isinstance(result, BaseException):
                logger.error(f"Scheduled run of agent {agent_id} raised: {result}")
        return [None if isinstance(r, BaseException) else r for r in results]

    # ------------------------------------------------------------------
    # Maintenance jobs
    # ------------------------------------------------------------------

    async def reset_monthly_tokens(self) -> int:
        with db_session(self.session_factory) as db:
            return reset_monthly_usage(db)

    async def cleanup_thoughts(self) -> int:
        keep = get_settings().thought_retention
        with db_session(self.session_factory) as db:
            return cleanup_thoughts(db, keep=keep)

    async def compress_memories(self) -> int:
        keep = get_settings().memory_retention
        with db_session(self.session_factory) as db:
            return compress_memories(db, keep=keep)


def _has_in_progress(db: Session, agent: Agent) -> bool:
    return (
        db.query(Task.id).filter(Task.agent_id == agent.id, Task.status == TaskStatus.IN_PROGRESS).first() is not None
    )


__all__ = ["SchedulerService", "cron_due", "next_cron_fire"]
