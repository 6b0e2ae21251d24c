"""
Staleness guard: reconcile tasks stuck ``in_progress``.

A run that hangs (unresponsive provider, stuck executor) is never signalled to
stop.  Instead, each scheduler tick force-fails tasks whose last progress is
older than the threshold.  The transition is a compare-and-set that also
revokes the claim token, so

* each stale task is failed exactly once, and
* a late write from the original run is a no-op.
"""

import logging
from datetime import datetime
from datetime import timedelta
from typing import List
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from humanagent.config import get_settings
from humanagent.crud import crud
from humanagent.metrics import stale_tasks_reconciled_total
from humanagent.models.enums import AuditStatus
from humanagent.models.enums import StepStatus
from humanagent.models.enums import TaskStatus
from humanagent.models.models import Task
from humanagent.utils.time import utc_now_naive

logger = logging.getLogger(__name__)

STALE_OUTCOME = (
    "Task timed out: no progress was recorded for {minutes} minutes while it was in progress, "
    "so it was marked failed. Run it again to retry."
)


def reconcile_stale_tasks(
    db: Session,
    *,
    now: Optional[datetime] = None,
    threshold_minutes: Optional[int] = None,
) -> List[int]:
    """Force-fail stale ``in_progress`` tasks.

    Returns:
        Ids of the tasks this call transitioned.
    """
    now = now or utc_now_naive()
    minutes = threshold_minutes if threshold_minutes is not None else get_settings().stale_task_minutes
    cutoff = now - timedelta(minutes=minutes)

    last_progress = func.coalesce(Task.last_progress_at, Task.claimed_at, Task.do_now_at, Task.created_at)
    candidates = (
        db.query(Task)
        .filter(Task.status == TaskStatus.IN_PROGRESS, last_progress < cutoff)
        .order_by(Task.id)
        .all()
    )
    if not candidates:
        return []

    reconciled = []
    for task in candidates:
        steps = list(task.workflow_steps or [])
        steps.append(
            {
                "label": "Staleness guard",
                "status": StepStatus.FAILED.value,
                "started_at": now.isoformat(),
                "completed_at": now.isoformat(),
                "duration_ms": 0,
                "detail": f"No progress for more than {minutes} minutes",
            }
        )
        won = crud.transition_task(
            db,
            task.id,
            new_status=TaskStatus.FAILED,
            expected=[TaskStatus.IN_PROGRESS],
            claim_token=task.claim_token,
            clear_claim=True,
            outcome_summary=STALE_OUTCOME.format(minutes=minutes),
            workflow_steps=steps,
            completed_at=now,
            last_progress_at=now,
        )
        if not won:
            # The run finished (or another guard pass won) in between.
            continue

        reconciled.append(task.id)
        stale_tasks_reconciled_total.inc()
        crud.create_audit_entry(
            db,
            actor="system:staleness_guard",
            action="stale_task_reconciled",
            resource=f"task:{task.id}",
            status=AuditStatus.FAILED,
            owner_id=task.owner_id,
            agent_id=task.agent_id,
            details={"threshold_minutes": minutes},
        )

    if reconciled:
        logger.warning(f"Force-failed {len(reconciled)} stale tasks: {reconciled}")
    return reconciled


__all__ = ["reconcile_stale_tasks", "STALE_OUTCOME"]
