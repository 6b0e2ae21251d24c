"""Prompt composer - builds final prompts from templates + agent data."""

from __future__ import annotations

from datetime import datetime
from datetime import timezone
from typing import Iterable
from typing import Optional
from typing import Sequence

from humanagent.prompts.templates import A2A_HEADER
from humanagent.prompts.templates import ACTION_EXAMPLES
from humanagent.prompts.templates import BASE_SYSTEM_PROMPT
from humanagent.prompts.templates import TASK_PROCESSING_FOOTER
from humanagent.prompts.templates import TASK_PROCESSING_HEADER

MAX_TASKS_IN_PROMPT = 10


def format_date_context(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.strftime("%A, %b %d, %Y %H:%M %Z")


def build_system_prompt(
    *,
    agent_name: str,
    owner_name: str,
    action_names: Iterable[str],
    persona: Optional[str] = None,
    instructions: Optional[str] = None,
    context_text: str = "",
    now: Optional[datetime] = None,
) -> str:
    """Compose the hardened system prompt for one run.

    Args:
        agent_name: Display name of the agent
        owner_name: Display name (or e-mail) of the owning user
        action_names: Action types the parser accepts
        persona: Optional persona text
        instructions: Owner-defined custom instructions
        context_text: Rendered context bundle (goal, memory, knowledge)
        now: Clock override for tests

    Returns:
        The complete system prompt
    """
    persona_block = f"- Persona: {persona.strip()}\n" if persona and persona.strip() else ""
    instructions_block = (
        f"\n## Custom Instructions (OWNER-DEFINED)\n{instructions.strip()}\n"
        if instructions and instructions.strip()
        else ""
    )
    context_block = f"\n{context_text.strip()}\n" if context_text.strip() else ""
    return BASE_SYSTEM_PROMPT.format(
        agent_name=agent_name,
        owner_name=owner_name,
        date_context=format_date_context(now),
        persona_block=persona_block,
        action_examples="[" + ",".join(ACTION_EXAMPLES) + "]",
        action_names=", ".join(sorted(action_names)),
        instructions_block=instructions_block,
        context_block=context_block,
    )


def _task_line(task) -> str:
    line = f'  taskId="{task.id}" description="{task.description}"'
    if task.target_completion_at:
        line += f" (due {str(task.target_completion_at)[:10]})"
    return line


def build_task_prompt(pending: Sequence, in_progress: Sequence, *, goal: Optional[str] = None) -> str:
    """List the claimed work for an automated run.

    *pending* / *in_progress* are objects with ``id``, ``description`` and
    ``target_completion_at`` (tasks or :class:`TaskBrief`).
    """
    lines = [TASK_PROCESSING_HEADER, ""]
    if pending:
        lines.append("NEW TASKS (complete immediately or mark failed if impossible):")
        lines.extend(_task_line(t) for t in list(pending)[:MAX_TASKS_IN_PROMPT])
        lines.append("")
    if in_progress:
        lines.append("IN-PROGRESS TASKS (MUST complete now with outcomeSummary):")
        lines.extend(_task_line(t) for t in list(in_progress)[:MAX_TASKS_IN_PROMPT])
        lines.append("")
    if goal:
        lines.append(f"Current goal: {goal}")
        lines.append("")
    lines.append(TASK_PROCESSING_FOOTER)
    return "\n".join(lines)


def build_a2a_prompt(*, peer_name: str, peer_slug: str, thread_id: str, content: str) -> str:
    header = A2A_HEADER.format(peer_name=peer_name, peer_slug=peer_slug, thread_id=thread_id)
    return f"{header}\n\n{content}"
