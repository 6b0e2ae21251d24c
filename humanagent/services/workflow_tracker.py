"""Per-run phase trace.

Steps are kept in memory while the run executes and written onto every task
the run touched in a single statement per task (:meth:`WorkflowTracker.flush`),
so readers never observe a half-written trace.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional

from sqlalchemy.orm import Session

from humanagent.crud import crud
from humanagent.models.enums import StepStatus
from humanagent.utils.time import duration_ms
from humanagent.utils.time import utc_now_naive

logger = logging.getLogger(__name__)

SECURITY_SCAN = "Security scan"
CONTEXT_BUILD = "Context build"
LLM_CALL = "LLM call"
PARSE_RESPONSE = "Parse response"
EXECUTE_ACTIONS = "Execute actions"
SAVE_MEMORY = "Save memory"

PHASES = (SECURITY_SCAN, CONTEXT_BUILD, LLM_CALL, PARSE_RESPONSE, EXECUTE_ACTIONS, SAVE_MEMORY)


@dataclass
class WorkflowStep:
    label: str
    status: str
    started_at: str
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


class WorkflowTracker:
    """Collects timed phase steps for one run."""

    def __init__(self, clock: Callable[[], datetime] = utc_now_naive):
        self._clock = clock
        self._steps: List[WorkflowStep] = []
        self._open: Optional[WorkflowStep] = None
        self._open_started: Optional[datetime] = None
        self._last: Optional[datetime] = None

    def _now(self) -> datetime:
        # Keep the trace monotone even if the wall clock steps backwards.
        now = self._clock()
        if self._last is not None and now < self._last:
            now = self._last
        self._last = now
        return now

    @property
    def steps(self) -> List[dict]:
        return [s.to_dict() for s in self._steps]

    @property
    def current(self) -> Optional[str]:
        return self._open.label if self._open else None

    def start(self, label: str) -> None:
        if self._open is not None:
            # An unterminated phase is closed as completed before the next begins.
            self.complete()
        now = self._now()
        step = WorkflowStep(label=label, status=StepStatus.IN_PROGRESS.value, started_at=now.isoformat())
        self._steps.append(step)
        self._open = step
        self._open_started = now

    def _close(self, status: StepStatus, detail: Optional[str]) -> None:
        if self._open is None:
            return
        now = self._now()
        self._open.status = status.value
        self._open.completed_at = now.isoformat()
        self._open.duration_ms = duration_ms(self._open_started, now)
        if detail:
            self._open.detail = detail[:500]
        self._open = None
        self._open_started = None

    def complete(self, detail: Optional[str] = None) -> None:
        self._close(StepStatus.COMPLETED, detail)

    def fail(self, detail: Optional[str] = None) -> None:
        self._close(StepStatus.FAILED, detail)

    def skip(self, label: str, detail: Optional[str] = None) -> None:
        now = self._now().isoformat()
        self._steps.append(
            WorkflowStep(
                label=label,
                status=StepStatus.SKIPPED.value,
                started_at=now,
                completed_at=now,
                duration_ms=0,
                detail=detail,
            )
        )

    def skip_remaining(self, detail: Optional[str] = None) -> None:
        """Mark every phase that never started as skipped (early termination)."""
        seen = {s.label for s in self._steps}
        for label in PHASES:
            if label not in seen:
                self.skip(label, detail)

    def flush(
        self,
        db: Session,
        task_ids: Iterable[int],
        *,
        claim_tokens: Optional[Dict[int, str]] = None,
    ) -> List[int]:
        """Write the trace onto each task once.  Returns the ids actually written.

        Tasks listed in *claim_tokens* only accept the write while the claim is
        still held; a task force-failed by the staleness guard keeps its trace.
        """
        if self._open is not None:
            self.complete()
        claim_tokens = claim_tokens or {}
        steps = self.steps
        written = []
        for task_id in dict.fromkeys(task_ids):
            if crud.write_workflow_steps(db, task_id, steps, claim_token=claim_tokens.get(task_id)):
                written.append(task_id)
            else:
                logger.info("workflow trace for task %s ignored (claim no longer held)", task_id)
        return written


__all__ = [
    "WorkflowTracker",
    "WorkflowStep",
    "PHASES",
    "SECURITY_SCAN",
    "CONTEXT_BUILD",
    "LLM_CALL",
    "PARSE_RESPONSE",
    "EXECUTE_ACTIONS",
    "SAVE_MEMORY",
]
