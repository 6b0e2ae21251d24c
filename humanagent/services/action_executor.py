"""Apply validated action directives from one model response.

Each directive is applied on its own: a failure or a lost race is recorded
as that directive's :class:`ActionResult` and the remaining directives still
run.  Task status changes always go through the compare-and-set helpers in
:mod:`humanagent.crud.crud`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional

from sqlalchemy.orm import Session

from humanagent.config import get_settings
from humanagent.crud import crud
from humanagent.delivery.providers import EmailProvider
from humanagent.delivery.providers import ImageProvider
from humanagent.delivery.providers import SpeechProvider
from humanagent.delivery.providers import get_email_provider
from humanagent.delivery.providers import get_image_provider
from humanagent.delivery.providers import get_speech_provider
from humanagent.exceptions import A2ARejected
from humanagent.exceptions import ActionConflict
from humanagent.metrics import actions_executed_total
from humanagent.models.enums import DeliveryStatus
from humanagent.models.enums import MemoryType
from humanagent.models.enums import TaskStatus
from humanagent.models.models import Agent
from humanagent.models.models import Task
from humanagent.schemas import actions as schema
from humanagent.services import a2a
from humanagent.services.action_parser import strip_internal_ids
from humanagent.services.credentials import CredentialResolver
from humanagent.services.security_scanner import SecurityScanner
from humanagent.services.security_scanner import record_flags
from humanagent.services.security_scanner import scan_input
from humanagent.tools.registry import ImmutableToolRegistry
from humanagent.tools.registry import ToolNotAllowed
from humanagent.tools.registry import get_tool_registry

logger = logging.getLogger(__name__)

OUTCOME_PREVIEW_CHARS = 2000
TOOL_OUTPUT_CHARS = 4000

NO_DETAIL_COMPLETED = (
    "Task marked completed, but the agent did not return detailed output. Run it again for full results."
)
NO_DETAIL_FAILED = "Task failed, but the agent did not return a detailed failure report. Run it again for full details."

_BOILERPLATE = [
    re.compile(p)
    for p in (
        r"^processing scheduled tasks\.?$",
        r"^done\.?$",
        r"^done\. i applied the requested app update\.?$",
        r"^task(s)? processed\.?$",
        r"^completed\.?$",
        r"^i will get back to you.*$",
        r"^working on it.*$",
    )
]
# Shorter answers are acknowledgements, not task output.
MIN_OUTCOME_CHARS = 40


def is_boilerplate_outcome(text: Optional[str]) -> bool:
    normalized = (text or "").strip().lower()
    if not normalized:
        return True
    if any(p.match(normalized) for p in _BOILERPLATE):
        return True
    return len(normalized) < MIN_OUTCOME_CHARS


def pick_task_outcome(response_text: Optional[str], action_summary: Optional[str]) -> Optional[str]:
    """Substantive outcome for a finished task, or ``None`` when there is only boilerplate.

    The user-facing response wins over the directive's own summary.
    """
    for candidate in (response_text, action_summary):
        candidate = (candidate or "").strip()
        if candidate and not is_boilerplate_outcome(candidate):
            return strip_internal_ids(candidate)
    return None


@dataclass
class RunContext:
    """What the executor needs to know about the run that produced the actions."""

    trigger: str
    response_text: str = ""
    # Claim tokens of the tasks this run holds.
    claim_tokens: Dict[int, str] = field(default_factory=dict)
    # Hop count and automatic flag stamped on outbound A2A messages.
    outbound_hop: int = 0
    outbound_automatic: bool = False
    touched_task_ids: List[int] = field(default_factory=list)

    def touch(self, task_id: int) -> None:
        if task_id not in self.touched_task_ids:
            self.touched_task_ids.append(task_id)


@dataclass
class ActionResult:
    type: str
    ok: bool
    detail: str = ""
    task_id: Optional[int] = None
    conflict: bool = False

    def to_dict(self) -> dict:
        return {"type": self.type, "ok": self.ok, "detail": self.detail, "task_id": self.task_id}


class ActionExecutor:
    """Dispatches parsed directives to their handlers for one agent run."""

    def __init__(
        self,
        db: Session,
        agent: Agent,
        *,
        run: RunContext,
        resolver: Optional[CredentialResolver] = None,
        email_provider: Optional[EmailProvider] = None,
        speech_provider: Optional[SpeechProvider] = None,
        image_provider: Optional[ImageProvider] = None,
        tool_registry: Optional[ImmutableToolRegistry] = None,
        scanner: Optional[SecurityScanner] = None,
    ):
        self.db = db
        self.agent = agent
        self.run = run
        self.resolver = resolver or CredentialResolver(agent.id, db, owner_id=agent.owner_id)
        self.email_provider = email_provider or get_email_provider()
        config = agent.config or {}
        self.speech_provider = speech_provider or get_speech_provider(config.get("voice_provider", "openai"))
        self.image_provider = image_provider or get_image_provider()
        self.tool_registry = tool_registry or get_tool_registry()
        self.scanner = scanner
        self._handlers: Dict[type, Callable[[Any], Any]] = {
            schema.CreateTaskAction: self._create_task,
            schema.UpdateTaskStatusAction: self._update_task_status,
            schema.MoveTaskAction: self._move_task,
            schema.CreateSubtaskAction: self._create_subtask,
            schema.DelegateToAgentAction: self._delegate_to_agent,
            schema.CreateFeedItemAction: self._create_feed_item,
            schema.CreateSkillAction: self._create_skill,
            schema.UpdateSkillAction: self._update_skill,
            schema.GenerateImageAction: self._generate_image,
            schema.GenerateAudioAction: self._generate_audio,
            schema.CallToolAction: self._call_tool,
            schema.CreateKnowledgeNodeAction: self._create_knowledge_node,
            schema.LinkKnowledgeNodesAction: self._link_knowledge_nodes,
        }

    async def execute(self, actions: List[Any]) -> List[ActionResult]:
        results = []
        for action in actions:
            result = await self._execute_one(action)
            outcome = "conflict" if result.conflict else ("ok" if result.ok else "failed")
            actions_executed_total.labels(result.type, outcome).inc()
            results.append(result)
        return results

    async def _execute_one(self, action: Any) -> ActionResult:
        action_type = getattr(action, "type", type(action).__name__)
        handler = self._handlers.get(type(action))
        if handler is None:
            return ActionResult(action_type, False, "unsupported action")
        try:
            return await handler(action)
        except ActionConflict as exc:
            logger.info("action %s skipped for agent %s: %s", action_type, self.agent.id, exc)
            return ActionResult(action_type, False, str(exc), task_id=getattr(action, "task_id", None), conflict=True)
        except Exception as exc:
            # One broken directive must not stop the others; the session is
            # rolled back so later directives start clean.
            self.db.rollback()
            logger.exception("action %s failed for agent %s", action_type, self.agent.id)
            detail = f"{type(exc).__name__}: {exc}"
            return ActionResult(action_type, False, detail, task_id=getattr(action, "task_id", None))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _owned_task(self, task_id: Optional[int]) -> Task:
        task = crud.get_task(self.db, task_id) if task_id is not None else None
        if task is None or task.owner_id != self.agent.owner_id:
            raise LookupError(f"task {task_id} not found")
        if task.agent_id is not None and task.agent_id != self.agent.id:
            raise ActionConflict(f"task {task_id} is assigned to another agent")
        return task

    def _ensure_claimed(self, task: Task) -> str:
        """Return this run's claim token for *task*, claiming it when still pending."""
        token = self.run.claim_tokens.get(task.id)
        if token:
            return token
        if task.status == TaskStatus.PENDING:
            token = crud.claim_task(self.db, task.id, agent_id=self.agent.id)
            if token:
                self.run.claim_tokens[task.id] = token
                return token
        raise ActionConflict(f"task {task.id} is not held by this run")

    def _outcome_values(self, task: Task, outcome: str) -> Dict[str, Any]:
        limit = get_settings().outcome_inline_limit
        if len(outcome) <= limit:
            return {"outcome_summary": outcome}
        blob = crud.store_blob(
            self.db,
            owner_id=task.owner_id,
            data=outcome.encode("utf-8"),
            filename=f"task-{task.id}-outcome.md",
            content_type="text/markdown",
        )
        preview = outcome[:OUTCOME_PREVIEW_CHARS].rstrip()
        return {
            "outcome_summary": f"{preview}\n\n[Full outcome ({len(outcome)} characters) attached as a file.]",
            "outcome_file_id": blob.id,
        }

    async def _email_outcome(self, task: Task, outcome: str) -> None:
        if not task.requester_email:
            return
        api_key = self.resolver.api_key("agentmail")
        if self.email_provider is None or not api_key:
            crud.update_task_fields(self.db, task, outcome_email_status=DeliveryStatus.SKIPPED)
            return

        text = outcome
        public_url = get_settings().app_public_url
        if public_url:
            text += f"\n\nView the task: {public_url.rstrip('/')}/tasks/{task.id}"
        result = await self.email_provider.send(
            api_key=api_key,
            to=task.requester_email,
            subject=f"Task completed: {task.description[:80]}",
            text=text,
        )
        crud.update_task_fields(
            self.db,
            task,
            outcome_email_status=DeliveryStatus.SENT if result.ok else DeliveryStatus.FAILED,
            outcome_email_id=result.reference_id,
        )

    # ------------------------------------------------------------------
    # Task handlers
    # ------------------------------------------------------------------

    async def _create_task(self, action: schema.CreateTaskAction) -> ActionResult:
        task = crud.create_task(
            self.db, owner_id=self.agent.owner_id, description=action.description, agent_id=self.agent.id
        )
        if action.is_public:
            crud.create_feed_item(
                self.db,
                owner_id=self.agent.owner_id,
                agent_id=self.agent.id,
                item_type="task_created",
                title=f"New task: {action.description[:100]}",
                is_public=True,
            )
        return ActionResult(action.type, True, "task created", task_id=task.id)

    async def _create_subtask(self, action: schema.CreateSubtaskAction) -> ActionResult:
        parent = self._owned_task(action.parent_task_id)
        task = crud.create_task(
            self.db,
            owner_id=self.agent.owner_id,
            description=action.description,
            agent_id=self.agent.id,
            parent_task_id=parent.id,
            column_id=parent.column_id,
        )
        return ActionResult(action.type, True, f"subtask of {parent.id}", task_id=task.id)

    async def _move_task(self, action: schema.MoveTaskAction) -> ActionResult:
        task = self._owned_task(action.task_id)
        column = crud.find_board_column(
            self.db,
            owner_id=self.agent.owner_id,
            column_id=action.board_column_id,
            name=action.board_column_name,
        )
        if column is None:
            raise LookupError(f"board column {action.board_column_id or action.board_column_name!r} not found")
        crud.update_task_fields(self.db, task, column_id=column.id)
        self.run.touch(task.id)
        return ActionResult(action.type, True, f"moved to {column.name}", task_id=task.id)

    async def _update_task_status(self, action: schema.UpdateTaskStatusAction) -> ActionResult:
        task = self._owned_task(action.task_id)
        self.run.touch(task.id)
        status = TaskStatus(action.status)

        if status == TaskStatus.PENDING:
            raise ActionConflict(f"task {task.id} cannot return to pending")

        if status == TaskStatus.IN_PROGRESS:
            if task.status == TaskStatus.IN_PROGRESS and task.id in self.run.claim_tokens:
                return ActionResult(action.type, True, "already in progress", task_id=task.id)
            self._ensure_claimed(task)
            return ActionResult(action.type, True, "claimed", task_id=task.id)

        token = self._ensure_claimed(task)
        outcome = pick_task_outcome(self.run.response_text, action.outcome_summary)

        if status == TaskStatus.COMPLETED and outcome is None:
            # A completion without any real output is reported as a failure.
            won = crud.transition_task(
                self.db,
                task.id,
                new_status=TaskStatus.FAILED,
                expected=[TaskStatus.IN_PROGRESS],
                claim_token=token,
                outcome_summary=NO_DETAIL_COMPLETED,
            )
            if not won:
                raise ActionConflict(f"task {task.id} changed before it could be finished")
            return ActionResult(action.type, False, "completion rejected: no substantive outcome", task_id=task.id)

        if outcome is None:
            outcome = NO_DETAIL_FAILED

        values = self._outcome_values(task, outcome)
        if action.outcome_links:
            values["outcome_links"] = list(dict.fromkeys(list(task.outcome_links or []) + list(action.outcome_links)))
        won = crud.transition_task(
            self.db,
            task.id,
            new_status=status,
            expected=[TaskStatus.IN_PROGRESS],
            claim_token=token,
            **values,
        )
        if not won:
            raise ActionConflict(f"task {task.id} changed before it could be finished")

        task = crud.get_task(self.db, task.id)
        if status == TaskStatus.COMPLETED:
            await self._email_outcome(task, outcome)
            if self.agent.is_public:
                crud.create_feed_item(
                    self.db,
                    owner_id=self.agent.owner_id,
                    agent_id=self.agent.id,
                    item_type="task_completed",
                    title=f"Completed: {task.description[:100]}",
                    content=outcome[:320],
                    is_public=True,
                )
        return ActionResult(action.type, True, status.value, task_id=task.id)

    # ------------------------------------------------------------------
    # Delegation, social and skills
    # ------------------------------------------------------------------

    async def _delegate_to_agent(self, action: schema.DelegateToAgentAction) -> ActionResult:
        try:
            sent = await a2a.send_agent_message(
                self.db,
                from_agent=self.agent,
                to_slug=action.target_agent_slug,
                content=action.task_description,
                hop_count=self.run.outbound_hop,
                automatic=self.run.outbound_automatic,
            )
        except A2ARejected as exc:
            return ActionResult(action.type, False, str(exc))
        detail = f"thread {sent.thread_id}" + (" (auto-reply requested)" if sent.auto_reply_scheduled else "")
        return ActionResult(action.type, True, detail)

    async def _create_feed_item(self, action: schema.CreateFeedItemAction) -> ActionResult:
        crud.create_feed_item(
            self.db,
            owner_id=self.agent.owner_id,
            agent_id=self.agent.id,
            title=action.title,
            content=action.content,
            is_public=action.is_public,
        )
        return ActionResult(action.type, True, action.title)

    async def _create_skill(self, action: schema.CreateSkillAction) -> ActionResult:
        skill = crud.create_skill(
            self.db,
            owner_id=self.agent.owner_id,
            agent_id=self.agent.id,
            name=action.name,
            bio=action.bio,
            capabilities=[c.model_dump() for c in action.capabilities],
        )
        return ActionResult(action.type, True, f"skill {skill.id}")

    async def _update_skill(self, action: schema.UpdateSkillAction) -> ActionResult:
        skill = crud.update_skill(
            self.db,
            owner_id=self.agent.owner_id,
            skill_id=action.skill_id,
            name=action.name,
            bio=action.bio,
            capabilities=[c.model_dump() for c in action.capabilities] if action.capabilities is not None else None,
            is_active=action.is_active,
        )
        if skill is None:
            raise LookupError(f"skill {action.skill_id} not found")
        return ActionResult(action.type, True, f"skill {skill.id}")

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    async def _generate_image(self, action: schema.GenerateImageAction) -> ActionResult:
        task = self._owned_task(action.task_id) if action.task_id is not None else None
        api_key = self.resolver.api_key("openai")
        if self.image_provider is None or not api_key:
            return ActionResult(action.type, False, "no image provider configured", task_id=action.task_id)

        result = await self.image_provider.generate(api_key=api_key, prompt=action.prompt)
        if not result.ok:
            return ActionResult(action.type, False, result.error or "image generation failed", task_id=action.task_id)
        if task is not None:
            links = list(task.outcome_links or [])
            links.append(result.reference_id)
            crud.update_task_fields(self.db, task, outcome_links=links)
            self.run.touch(task.id)
        return ActionResult(action.type, True, result.reference_id or "", task_id=action.task_id)

    async def _generate_audio(self, action: schema.GenerateAudioAction) -> ActionResult:
        task = self._owned_task(action.task_id) if action.task_id is not None else None
        provider_name = getattr(self.speech_provider, "name", "openai")
        api_key = self.resolver.api_key(provider_name)
        if self.speech_provider is None or not api_key:
            return ActionResult(action.type, False, "no speech provider configured", task_id=action.task_id)

        voice = (self.agent.config or {}).get("voice")
        text = strip_internal_ids(action.text)
        result = await self.speech_provider.synthesize(api_key=api_key, text=text, voice=voice)
        if not result.ok or not result.data:
            return ActionResult(action.type, False, result.error or "speech synthesis failed", task_id=action.task_id)

        blob = crud.store_blob(
            self.db,
            owner_id=self.agent.owner_id,
            data=result.data,
            filename=f"agent-{self.agent.id}-audio.mp3",
            content_type=result.content_type or "audio/mpeg",
        )
        if task is not None:
            crud.update_task_fields(self.db, task, outcome_audio_id=blob.id)
            self.run.touch(task.id)
        return ActionResult(action.type, True, f"audio blob {blob.id}", task_id=action.task_id)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _call_tool(self, action: schema.CallToolAction) -> ActionResult:
        task = self._owned_task(action.task_id) if action.task_id is not None else None
        try:
            output = await self.tool_registry.invoke(action.tool_name, action.input, allowed=self.agent.allowed_tools)
        except (KeyError, ToolNotAllowed) as exc:
            return ActionResult(action.type, False, str(exc), task_id=action.task_id)

        text = output if isinstance(output, str) else json.dumps(output, default=str)
        verdict = scan_input(text, scanner=self.scanner)
        if verdict.flags:
            record_flags(
                self.db,
                verdict,
                source="tool_output",
                owner_id=self.agent.owner_id,
                agent_id=self.agent.id,
                task_id=action.task_id,
            )
        stored = verdict.sanitized[:TOOL_OUTPUT_CHARS]

        entry = {"tool": action.tool_name, "input": action.input, "output": stored, "blocked": verdict.blocked}
        if task is not None:
            crud.append_tool_call(self.db, task, entry)
            self.run.touch(task.id)
        crud.append_memory(
            self.db,
            agent_id=self.agent.id,
            owner_id=self.agent.owner_id,
            memory_type=MemoryType.TOOL_RESULT,
            content=f"{action.tool_name}: {stored}",
            source="tool",
            meta={"tool": action.tool_name, "blocked": verdict.blocked},
        )
        if verdict.blocked:
            return ActionResult(action.type, False, "tool output blocked by security scan", task_id=action.task_id)
        return ActionResult(action.type, True, stored[:200], task_id=action.task_id)

    # ------------------------------------------------------------------
    # Knowledge graph
    # ------------------------------------------------------------------

    async def _create_knowledge_node(self, action: schema.CreateKnowledgeNodeAction) -> ActionResult:
        node = crud.create_knowledge_node(
            self.db,
            owner_id=self.agent.owner_id,
            agent_id=self.agent.id,
            title=action.title,
            description=action.description,
            content=action.content,
            node_type=action.node_type,
            tags=action.tags,
        )
        return ActionResult(action.type, True, f"node {node.id}")

    async def _link_knowledge_nodes(self, action: schema.LinkKnowledgeNodesAction) -> ActionResult:
        linked = crud.link_knowledge_nodes(
            self.db,
            owner_id=self.agent.owner_id,
            source_id=action.source_node_id,
            target_id=action.target_node_id,
        )
        if not linked:
            return ActionResult(action.type, False, "nodes not linkable (missing, foreign or identical)")
        return ActionResult(action.type, True, f"{action.source_node_id}<->{action.target_node_id}")


__all__ = [
    "ActionExecutor",
    "ActionResult",
    "RunContext",
    "is_boilerplate_outcome",
    "pick_task_outcome",
]
