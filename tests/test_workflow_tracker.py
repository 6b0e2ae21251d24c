"""Tests for the per-run phase trace."""

from datetime import datetime
from datetime import timedelta

from humanagent.crud import crud
from humanagent.services import workflow_tracker as wf
from humanagent.services.workflow_tracker import WorkflowTracker


def _clock(*offsets):
    """Clock returning the given second offsets in order."""
    base = datetime(2026, 1, 1, 9, 0, 0)
    values = iter(base + timedelta(seconds=s) for s in offsets)
    return lambda: next(values)


class TestWorkflowTracker:
    def test_steps_are_ordered_and_timed(self):
        tracker = WorkflowTracker(clock=_clock(0, 1, 1, 3))
        tracker.start(wf.SECURITY_SCAN)
        tracker.complete("safe")
        tracker.start(wf.CONTEXT_BUILD)
        tracker.complete()

        steps = tracker.steps
        assert [s["label"] for s in steps] == [wf.SECURITY_SCAN, wf.CONTEXT_BUILD]
        assert steps[0]["duration_ms"] == 1000
        assert steps[0]["detail"] == "safe"
        assert steps[1]["duration_ms"] == 2000
        assert all(s["status"] == "completed" for s in steps)

    def test_clock_going_backwards_is_clamped(self):
        tracker = WorkflowTracker(clock=_clock(10, 5))
        tracker.start(wf.LLM_CALL)
        tracker.complete()
        step = tracker.steps[0]
        assert step["duration_ms"] == 0
        assert step["completed_at"] >= step["started_at"]

    def test_starting_next_phase_closes_open_one(self):
        tracker = WorkflowTracker()
        tracker.start(wf.PARSE_RESPONSE)
        tracker.start(wf.EXECUTE_ACTIONS)
        assert tracker.steps[0]["status"] == "completed"
        assert tracker.current == wf.EXECUTE_ACTIONS

    def test_skip_remaining_after_failure(self):
        tracker = WorkflowTracker()
        tracker.start(wf.SECURITY_SCAN)
        tracker.fail("blocked")
        tracker.skip_remaining("blocked by security scan")

        steps = tracker.steps
        assert [s["label"] for s in steps] == list(wf.PHASES)
        assert steps[0]["status"] == "failed"
        assert {s["status"] for s in steps[1:]} == {"skipped"}

    def test_flush_writes_trace_once_per_task(self, db_session, make_task):
        first, second = make_task(), make_task("Draft newsletter")
        tracker = WorkflowTracker()
        tracker.start(wf.SECURITY_SCAN)
        tracker.complete()
        tracker.start(wf.CONTEXT_BUILD)

        written = tracker.flush(db_session, [first.id, second.id, first.id])

        assert written == [first.id, second.id]
        for task_id in written:
            steps = crud.get_task(db_session, task_id).workflow_steps
            assert [s["label"] for s in steps] == [wf.SECURITY_SCAN, wf.CONTEXT_BUILD]
            # Open phase is closed on flush
            assert steps[-1]["status"] == "completed"
