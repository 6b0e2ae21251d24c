"""
Agent pipeline – one serialized run of one agent.

Two entry points share the same phases:

* :func:`run_pipeline` – scheduled / event-driven task processing.
* :func:`process_inbound_message` – a delivered agent-to-agent message.

Phases (recorded by :class:`WorkflowTracker`)::

    Security scan -> Context build -> LLM call -> Parse response
                  -> Execute actions -> Save memory

Every run of an active agent writes exactly one audit entry, skipped runs included.
Callers must hold the agent's run slot (see :class:`SchedulerService`).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from langchain_core.language_models.chat_models import BaseChatModel
from sqlalchemy.orm import Session

from humanagent.crud import crud
from humanagent.database import get_session_factory
from humanagent.events import EventType
from humanagent.events import event_bus
from humanagent.exceptions import A2ARejected
from humanagent.exceptions import ProviderError
from humanagent.exceptions import ProviderFatal
from humanagent.managers.model_invoker import ModelInvoker
from humanagent.managers.model_invoker import ModelResult
from humanagent.metrics import pipeline_run_duration_seconds
from humanagent.metrics import pipeline_runs_total
from humanagent.models.enums import AgentStatus
from humanagent.models.enums import AuditStatus
from humanagent.models.enums import MemoryType
from humanagent.models.enums import RunTrigger
from humanagent.models.enums import TaskStatus
from humanagent.models.enums import ThoughtType
from humanagent.models.models import Agent
from humanagent.models.models import Task
from humanagent.prompts import build_a2a_prompt
from humanagent.prompts import build_system_prompt
from humanagent.prompts import build_task_prompt
from humanagent.schemas.actions import ACTION_TYPES
from humanagent.services import a2a
from humanagent.services import agent_thinking
from humanagent.services import workflow_tracker as wf
from humanagent.services.action_executor import NO_DETAIL_COMPLETED
from humanagent.services.action_executor import ActionExecutor
from humanagent.services.action_executor import ActionResult
from humanagent.services.action_executor import RunContext
from humanagent.services.action_executor import pick_task_outcome
from humanagent.services.action_parser import ParsedResponse
from humanagent.services.action_parser import parse_model_output
from humanagent.services.action_parser import strip_internal_ids
from humanagent.services.context_builder import build_agent_context
from humanagent.services.context_builder import render_context
from humanagent.services.context_builder import task_brief
from humanagent.services.quota import check_token_budget
from humanagent.services.quota import mark_budget_exhausted
from humanagent.services.quota import record_token_usage
from humanagent.services.quota import run_cost_usd
from humanagent.services.security_scanner import ScanVerdict
from humanagent.services.security_scanner import SecurityScanner
from humanagent.services.security_scanner import record_flags
from humanagent.services.security_scanner import sanitize_input
from humanagent.services.security_scanner import scan_input
from humanagent.utils.time import utc_now_naive

logger = logging.getLogger(__name__)

# Upper bound of tasks claimed by one run.
MAX_TASKS_PER_RUN = 10
MEMORY_SNIPPET_CHARS = 1000


@dataclass
class RunResult:
    status: str
    audit_status: Optional[AuditStatus] = None
    task_ids: List[int] = field(default_factory=list)
    actions_executed: int = 0
    tokens_used: int = 0
    reply_text: str = ""
    action_results: List[ActionResult] = field(default_factory=list)
    error: Optional[str] = None


class _Run:
    """State of one pipeline run.  Not reused across runs."""

    def __init__(
        self,
        db: Session,
        agent: Agent,
        trigger: RunTrigger,
        *,
        chat_model: Optional[BaseChatModel] = None,
        scanner: Optional[SecurityScanner] = None,
        executor_kwargs: Optional[Dict[str, Any]] = None,
    ):
        self.db = db
        self.agent = agent
        self.trigger = trigger
        self.chat_model = chat_model
        self.scanner = scanner
        self.executor_kwargs = executor_kwargs or {}
        self.tracker = wf.WorkflowTracker()
        self.context = RunContext(trigger=trigger.value)
        self.claimed: List[Task] = []
        # Tasks already in progress when the run started.
        self.adopted_ids: List[int] = []
        self.diagnostic: Optional[str] = None
        self.model_result: Optional[ModelResult] = None

    # ------------------------------------------------------------------
    # Shared phases
    # ------------------------------------------------------------------

    def security_scan(self, text: str, *, source: str) -> ScanVerdict:
        self.tracker.start(wf.SECURITY_SCAN)
        verdict = scan_input(text, scanner=self.scanner)
        if verdict.flags:
            first_task = self.claimed[0].id if self.claimed else None
            record_flags(
                self.db,
                verdict,
                source=source,
                owner_id=self.agent.owner_id,
                agent_id=self.agent.id,
                task_id=first_task,
            )
        if verdict.blocked:
            self.tracker.fail(verdict.reason)
        else:
            self.tracker.complete(verdict.severity)
        return verdict

    def sanitize(self, text: Optional[str]) -> str:
        return sanitize_input(text, scanner=self.scanner)

    def build_system_prompt(self, query: str) -> str:
        self.tracker.start(wf.CONTEXT_BUILD)
        context = build_agent_context(self.db, self.agent, query=query or None)
        owner = crud.get_user(self.db, self.agent.owner_id)
        prompt = build_system_prompt(
            agent_name=self.agent.name,
            owner_name=(owner.display_name or owner.email) if owner else "your owner",
            action_names=ACTION_TYPES,
            persona=self.agent.persona,
            instructions=self.agent.instructions,
            context_text=self.sanitize(render_context(context)),
        )
        self.tracker.complete(
            f"{len(context.pending_tasks)} pending, {len(context.in_progress_tasks)} in progress, "
            f"{len(context.knowledge)} knowledge nodes"
        )
        return prompt

    async def call_model(self, system_prompt: str, user_prompt: str) -> ModelResult:
        self.tracker.start(wf.LLM_CALL)
        invoker = ModelInvoker(self.db, self.agent, chat_model=self.chat_model)
        try:
            result = await invoker.invoke(system_prompt, user_prompt)
        except ProviderError as exc:
            self.tracker.fail(str(exc)[:200])
            self.diagnostic = invoker.diagnostic_for(exc)
            raise
        self.model_result = result
        record_token_usage(self.db, self.agent, result.total_tokens, model=result.model)
        self.tracker.complete(f"{result.total_tokens} tokens")
        return result

    def parse(self, raw: str) -> ParsedResponse:
        self.tracker.start(wf.PARSE_RESPONSE)
        parsed = parse_model_output(raw)
        self.context.response_text = strip_internal_ids(parsed.clean_text)
        self.tracker.complete(f"{len(parsed.actions)} actions, {len(parsed.rejected)} rejected")
        return parsed

    async def execute(self, parsed: ParsedResponse) -> List[ActionResult]:
        self.tracker.start(wf.EXECUTE_ACTIONS)
        executor = ActionExecutor(self.db, self.agent, run=self.context, scanner=self.scanner, **self.executor_kwargs)
        results = await executor.execute(parsed.actions)
        failed = sum(1 for r in results if not r.ok)
        self.tracker.complete(f"{len(results) - failed} applied, {failed} not applied")
        return results

    def save_memory(self, parsed: ParsedResponse, *, memory_type: MemoryType, source: str, meta: dict) -> None:
        self.tracker.start(wf.SAVE_MEMORY)
        summary = self.context.response_text or "(no visible response)"
        crud.append_memory(
            self.db,
            agent_id=self.agent.id,
            owner_id=self.agent.owner_id,
            memory_type=memory_type,
            content=summary[:MEMORY_SNIPPET_CHARS],
            source=source,
            meta=meta,
        )
        if parsed.thinking:
            agent_thinking.record_thought(
                self.db,
                self.agent,
                ThoughtType.REASONING,
                parsed.thinking,
                context=self.trigger.value,
                related_task_id=self.claimed[0].id if self.claimed else None,
            )
        self.tracker.complete()

    def flush_trace(self) -> None:
        task_ids = [t.id for t in self.claimed] + list(self.context.touched_task_ids)
        self.tracker.flush(self.db, task_ids, claim_tokens=self.context.claim_tokens)

    def audit(self, action: str, status: AuditStatus, **details: Any) -> None:
        result = self.model_result
        tokens = result.total_tokens if result else 0
        if result:
            details.setdefault("model", result.model)
            details.setdefault(
                "cost_usd", run_cost_usd(result.model, result.prompt_tokens, result.completion_tokens)
            )
        crud.create_audit_entry(
            self.db,
            actor=f"agent:{self.agent.id}",
            action=action,
            resource=f"agent:{self.agent.id}",
            status=status,
            owner_id=self.agent.owner_id,
            agent_id=self.agent.id,
            token_count=tokens,
            details={"trigger": self.trigger.value, **details},
        )

    def fail_claimed(self, outcome: str) -> None:
        for task in self.claimed:
            token = self.context.claim_tokens.get(task.id)
            if not crud.transition_task(
                self.db,
                task.id,
                new_status=TaskStatus.FAILED,
                expected=[TaskStatus.IN_PROGRESS],
                claim_token=token,
                outcome_summary=outcome,
            ):
                logger.info("task %s was already finished elsewhere; failure not recorded", task.id)

    def finish_agent(self, status: AgentStatus = AgentStatus.IDLE, error: Optional[str] = None) -> None:
        self.db.refresh(self.agent)
        if self.agent.status != AgentStatus.BUDGET_EXHAUSTED:
            self.agent.status = status
        self.agent.last_error = error
        self.agent.last_run_at = utc_now_naive()
        self.db.commit()

    def tokens_used(self) -> int:
        return self.model_result.total_tokens if self.model_result else 0

    # ------------------------------------------------------------------
    # Task processing
    # ------------------------------------------------------------------

    def claim_tasks(self) -> None:
        in_progress = crud.list_in_progress_tasks(self.db, agent_id=self.agent.id, limit=MAX_TASKS_PER_RUN)
        for task in in_progress:
            # Runs of one agent are serialized, so a live claim here is ours.
            if task.claim_token:
                self.claimed.append(task)
                self.adopted_ids.append(task.id)
                self.context.claim_tokens[task.id] = task.claim_token

        room = MAX_TASKS_PER_RUN - len(self.claimed)
        if room <= 0:
            return
        for task in crud.list_pending_tasks(self.db, owner_id=self.agent.owner_id, agent_id=self.agent.id, limit=room):
            token = crud.claim_task(self.db, task.id, agent_id=self.agent.id)
            if token is None:
                logger.debug("task %s claimed by another worker", task.id)
                continue
            self.claimed.append(crud.get_task(self.db, task.id))
            self.context.claim_tokens[task.id] = token

    def settle_unaddressed(self) -> None:
        """Finish claimed tasks the model did not address explicitly."""
        for task in self.claimed:
            current = crud.get_task(self.db, task.id)
            if current is None or current.status != TaskStatus.IN_PROGRESS:
                continue
            if current.claim_token != self.context.claim_tokens.get(task.id):
                continue
            outcome = pick_task_outcome(self.context.response_text, None)
            status = TaskStatus.COMPLETED if outcome else TaskStatus.FAILED
            values = {"outcome_summary": outcome or NO_DETAIL_COMPLETED}
            if not crud.transition_task(
                self.db,
                task.id,
                new_status=status,
                expected=[TaskStatus.IN_PROGRESS],
                claim_token=self.context.claim_tokens[task.id],
                **values,
            ):
                logger.info("task %s changed during the run; leaving it as is", task.id)


def _failure_outcome(exc: ProviderError, diagnostic: Optional[str]) -> str:
    if diagnostic:
        return diagnostic
    if isinstance(exc, ProviderFatal):
        return "The model provider rejected the request. Check the agent's provider settings and run the task again."
    return "The model provider was unavailable. Run the task again later."


async def _with_session(session_factory, fn):
    factory = session_factory or get_session_factory()
    db = factory()
    try:
        return await fn(db)
    finally:
        db.close()


async def run_pipeline(
    agent_id: int,
    trigger: RunTrigger | str = RunTrigger.SCHEDULE,
    *,
    payload: Optional[Dict[str, Any]] = None,
    session_factory=None,
    chat_model: Optional[BaseChatModel] = None,
    scanner: Optional[SecurityScanner] = None,
    **executor_kwargs: Any,
) -> RunResult:
    """Run the task-processing pipeline for *agent_id* once.

    A payload carrying an agent message is routed to
    :func:`process_inbound_message`.
    """
    trigger = RunTrigger(trigger)
    if payload is not None and trigger == RunTrigger.A2A:
        return await process_inbound_message(
            agent_id,
            payload,
            session_factory=session_factory,
            chat_model=chat_model,
            scanner=scanner,
            **executor_kwargs,
        )

    async def _go(db: Session) -> RunResult:
        agent = crud.get_agent(db, agent_id)
        if agent is None or not agent.is_active:
            return RunResult(status="skipped", error="agent not found or inactive")
        run = _Run(db, agent, trigger, chat_model=chat_model, scanner=scanner, executor_kwargs=executor_kwargs)
        return await _process_tasks(run)

    started = time.perf_counter()
    result = await _with_session(session_factory, _go)
    pipeline_runs_total.labels(result.status).inc()
    pipeline_run_duration_seconds.observe(time.perf_counter() - started)
    return result


async def _process_tasks(run: _Run) -> RunResult:
    db, agent = run.db, run.agent

    budget = check_token_budget(agent)
    if budget.exhausted:
        mark_budget_exhausted(db, agent)
        run.audit("task_run", AuditStatus.BLOCKED, reason="monthly token budget exhausted")
        return RunResult(status="budget_exhausted", audit_status=AuditStatus.BLOCKED, error="budget exhausted")

    run.claim_tasks()
    if not run.claimed and not agent.current_goal:
        logger.debug("agent %s has no work for trigger %s", agent.id, run.trigger.value)
        run.audit("task_run", AuditStatus.ALLOWED, skipped="no claimable tasks and no goal")
        return RunResult(status="skipped", audit_status=AuditStatus.ALLOWED)

    task_ids = [t.id for t in run.claimed]
    agent.status = AgentStatus.RUNNING
    db.commit()
    await event_bus.publish(
        EventType.RUN_STARTED, {"agent_id": agent.id, "trigger": run.trigger.value, "task_ids": task_ids}
    )

    scan_text = "\n".join([agent.current_goal or ""] + [t.description for t in run.claimed])
    verdict = run.security_scan(scan_text, source="task")
    if verdict.blocked:
        run.fail_claimed(f"Blocked by security scan: {verdict.reason}")
        run.tracker.skip_remaining("blocked by security scan")
        run.flush_trace()
        run.audit("task_run", AuditStatus.BLOCKED, reason=verdict.reason, task_ids=task_ids)
        run.finish_agent()
        await event_bus.publish(EventType.RUN_FINISHED, {"agent_id": agent.id, "status": "blocked"})
        return RunResult(status="blocked", audit_status=AuditStatus.BLOCKED, task_ids=task_ids, error=verdict.reason)

    # The model only ever sees redacted task text.
    briefs = {t.id: task_brief(t, description=run.sanitize(t.description)) for t in run.claimed}
    new_tasks = [briefs[t.id] for t in run.claimed if t.id not in run.adopted_ids]
    adopted = [briefs[t.id] for t in run.claimed if t.id in run.adopted_ids]
    goal = run.sanitize(agent.current_goal) if agent.current_goal else None
    system_prompt = run.build_system_prompt(verdict.sanitized)
    user_prompt = build_task_prompt(new_tasks, adopted, goal=goal)

    try:
        model_result = await run.call_model(system_prompt, user_prompt)
    except ProviderError as exc:
        run.fail_claimed(_failure_outcome(exc, run.diagnostic))
        run.tracker.skip_remaining("model call failed")
        run.flush_trace()
        run.audit("task_run", AuditStatus.FAILED, error=str(exc)[:500], task_ids=task_ids)
        if isinstance(exc, ProviderFatal):
            run.finish_agent(AgentStatus.ERROR, str(exc)[:500])
        else:
            run.finish_agent()
        await event_bus.publish(EventType.RUN_FINISHED, {"agent_id": agent.id, "status": "failed"})
        return RunResult(status="failed", audit_status=AuditStatus.FAILED, task_ids=task_ids, error=str(exc))

    parsed = run.parse(model_result.content)
    results = await run.execute(parsed)
    run.settle_unaddressed()
    run.save_memory(parsed, memory_type=MemoryType.RUN_SUMMARY, source="task_run", meta={"task_ids": task_ids})
    if run.context.response_text:
        agent_thinking.record_last_thought(db, agent, run.context.response_text)

    run.flush_trace()
    run.audit(
        "task_run",
        AuditStatus.ALLOWED,
        task_ids=task_ids,
        actions=[r.to_dict() for r in results],
        rejected=[str(e) for e in parsed.rejected],
    )
    run.finish_agent()
    await event_bus.publish(EventType.RUN_FINISHED, {"agent_id": agent.id, "status": "completed"})
    return RunResult(
        status="completed",
        audit_status=AuditStatus.ALLOWED,
        task_ids=task_ids,
        actions_executed=sum(1 for r in results if r.ok),
        tokens_used=run.tokens_used(),
        reply_text=run.context.response_text,
        action_results=results,
    )


async def process_inbound_message(
    agent_id: int,
    payload: Dict[str, Any],
    *,
    session_factory=None,
    chat_model: Optional[BaseChatModel] = None,
    scanner: Optional[SecurityScanner] = None,
    **executor_kwargs: Any,
) -> RunResult:
    """Answer a delivered agent message and send the reply back automatically.

    *payload* carries ``from_agent_id``, ``thread_id``, ``content`` and
    ``hop_count`` (see :func:`humanagent.services.a2a.deliver_a2a_message`).
    """

    async def _go(db: Session) -> RunResult:
        agent = crud.get_agent(db, agent_id)
        sender = crud.get_agent(db, int(payload["from_agent_id"]))
        if agent is None or sender is None or not agent.is_active:
            return RunResult(status="skipped", error="agent not found or inactive")
        run = _Run(db, agent, RunTrigger.A2A, chat_model=chat_model, scanner=scanner, executor_kwargs=executor_kwargs)
        return await _process_message(run, sender, payload)

    started = time.perf_counter()
    result = await _with_session(session_factory, _go)
    pipeline_runs_total.labels(result.status).inc()
    pipeline_run_duration_seconds.observe(time.perf_counter() - started)
    return result


async def _process_message(run: _Run, sender: Agent, payload: Dict[str, Any]) -> RunResult:
    db, agent = run.db, run.agent
    thread_id = payload.get("thread_id") or a2a.build_thread_id(agent.id, sender.id)
    hop_count = int(payload.get("hop_count") or 0)
    content = str(payload.get("content") or "")
    base_details = {"thread_id": thread_id, "from_agent_id": sender.id, "hop_count": hop_count}

    budget = check_token_budget(agent)
    if budget.exhausted:
        mark_budget_exhausted(db, agent)
        run.audit("message_processed", AuditStatus.BLOCKED, reason="monthly token budget exhausted", **base_details)
        return RunResult(status="budget_exhausted", audit_status=AuditStatus.BLOCKED)

    # Anything this run sends is caused by the inbound message.
    run.context.outbound_hop = hop_count + 1
    run.context.outbound_automatic = True

    verdict = run.security_scan(content, source="a2a")
    if verdict.blocked:
        run.tracker.skip_remaining("blocked by security scan")
        run.audit("message_processed", AuditStatus.BLOCKED, reason=verdict.reason, **base_details)
        return RunResult(status="blocked", audit_status=AuditStatus.BLOCKED, error=verdict.reason)

    system_prompt = run.build_system_prompt(verdict.sanitized)
    user_prompt = build_a2a_prompt(
        peer_name=sender.name,
        peer_slug=sender.slug,
        thread_id=thread_id,
        content=verdict.sanitized,
    )

    try:
        model_result = await run.call_model(system_prompt, user_prompt)
    except ProviderError as exc:
        run.tracker.skip_remaining("model call failed")
        run.audit("message_processed", AuditStatus.FAILED, error=str(exc)[:500], **base_details)
        if isinstance(exc, ProviderFatal):
            run.finish_agent(AgentStatus.ERROR, str(exc)[:500])
        return RunResult(status="failed", audit_status=AuditStatus.FAILED, error=str(exc))

    parsed = run.parse(model_result.content)
    results = await run.execute(parsed)
    run.save_memory(parsed, memory_type=MemoryType.CONVERSATION, source="a2a", meta=base_details)

    reply = run.context.response_text
    replied = False
    if reply and not model_result.degraded:
        try:
            await a2a.send_agent_message(
                db,
                from_agent=agent,
                to_agent=sender,
                content=reply,
                hop_count=run.context.outbound_hop,
                automatic=True,
            )
            replied = True
        except A2ARejected as exc:
            logger.info("a2a reply from agent %s not sent: %s", agent.id, exc)

    run.flush_trace()
    run.audit(
        "message_processed",
        AuditStatus.ALLOWED,
        replied=replied,
        actions=[r.to_dict() for r in results],
        rejected=[str(e) for e in parsed.rejected],
        **base_details,
    )
    run.finish_agent()
    return RunResult(
        status="completed",
        audit_status=AuditStatus.ALLOWED,
        actions_executed=sum(1 for r in results if r.ok),
        tokens_used=run.tokens_used(),
        reply_text=reply,
        action_results=results,
    )


__all__ = ["RunResult", "run_pipeline", "process_inbound_message"]
