"""Assemble the bounded prompt context for one agent run.

Each collaborator lookup is independent: if one of them fails the bundle is
still produced with an empty section and a warning in the log.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Callable
from typing import List
from typing import Optional
from typing import TypeVar

from sqlalchemy.orm import Session

from humanagent.crud import crud
from humanagent.models.models import Agent
from humanagent.services.knowledge import KnowledgeItem
from humanagent.services.knowledge import KnowledgeRanker
from humanagent.services.knowledge import load_relevant_knowledge
from humanagent.services.knowledge import render_knowledge

logger = logging.getLogger(__name__)

RECENT_THOUGHTS = 10
PENDING_TASKS = 10
IN_PROGRESS_TASKS = 10
RECENT_MEMORIES = 5
KNOWLEDGE_NODES = 5

_T = TypeVar("_T")


@dataclass(frozen=True)
class TaskBrief:
    id: int
    description: str
    status: str
    priority: str
    target_completion_at: Optional[str] = None
    fast_tracked: bool = False


@dataclass(frozen=True)
class AgentContext:
    agent_id: int
    current_goal: Optional[str]
    thoughts: List[str] = field(default_factory=list)
    pending_tasks: List[TaskBrief] = field(default_factory=list)
    in_progress_tasks: List[TaskBrief] = field(default_factory=list)
    memories: List[str] = field(default_factory=list)
    knowledge: List[KnowledgeItem] = field(default_factory=list)


def task_brief(task, *, description: Optional[str] = None) -> TaskBrief:
    return TaskBrief(
        id=task.id,
        description=task.description if description is None else description,
        status=getattr(task.status, "value", task.status),
        priority=task.priority or "medium",
        target_completion_at=task.target_completion_at.isoformat() if task.target_completion_at else None,
        fast_tracked=task.do_now_at is not None,
    )


def _collect(db: Session, label: str, agent_id: int, fn: Callable[[], List[_T]]) -> List[_T]:
    try:
        return fn()
    except Exception:
        # A broken collaborator leaves its section empty; the session must be
        # usable for the rest of the run.
        db.rollback()
        logger.warning("context section %s unavailable for agent %s", label, agent_id, exc_info=True)
        return []


def build_agent_context(
    db: Session,
    agent: Agent,
    *,
    query: Optional[str] = None,
    ranker: Optional[KnowledgeRanker] = None,
) -> AgentContext:
    """Gather goal, thoughts, tasks, memories and a knowledge slice for *agent*.

    *query* drives the knowledge search; it defaults to the current goal plus
    the descriptions of the work in front of the agent.
    """

    thoughts = _collect(
        db,
        "thoughts",
        agent.id,
        lambda: [
            f"[{getattr(t.type, 'value', t.type)}] {t.content}"
            for t in reversed(crud.list_recent_thoughts(db, agent.id, limit=RECENT_THOUGHTS))
        ],
    )
    pending = _collect(
        db,
        "pending_tasks",
        agent.id,
        lambda: [
            task_brief(t)
            for t in crud.list_pending_tasks(db, owner_id=agent.owner_id, agent_id=agent.id, limit=PENDING_TASKS)
        ],
    )
    in_progress = _collect(
        db,
        "in_progress_tasks",
        agent.id,
        lambda: [task_brief(t) for t in crud.list_in_progress_tasks(db, agent_id=agent.id, limit=IN_PROGRESS_TASKS)],
    )
    memories = _collect(
        db,
        "memories",
        agent.id,
        lambda: [m.content for m in reversed(crud.list_recent_memories(db, agent.id, limit=RECENT_MEMORIES))],
    )

    if query is None:
        parts = [agent.current_goal or ""]
        parts.extend(t.description for t in in_progress + pending)
        query = " ".join(p for p in parts if p)

    knowledge = (
        _collect(
            db,
            "knowledge",
            agent.id,
            lambda: load_relevant_knowledge(
                db,
                owner_id=agent.owner_id,
                query=query,
                max_nodes=KNOWLEDGE_NODES,
                ranker=ranker,
                agent_id=agent.id,
            ),
        )
        if query
        else []
    )

    return AgentContext(
        agent_id=agent.id,
        current_goal=agent.current_goal,
        thoughts=thoughts,
        pending_tasks=pending,
        in_progress_tasks=in_progress,
        memories=memories,
        knowledge=knowledge,
    )


def render_context(context: AgentContext) -> str:
    """Render the bundle as prompt sections; empty sections are omitted."""

    sections = []
    if context.current_goal:
        sections.append(f"## Current Goal\n{context.current_goal}")
    if context.thoughts:
        sections.append("## Recent Thoughts\n" + "\n".join(f"- {t}" for t in context.thoughts))
    if context.memories:
        sections.append("## Recent Memory\n" + "\n".join(f"- {m}" for m in context.memories))
    knowledge = render_knowledge(context.knowledge)
    if knowledge:
        sections.append(knowledge)
    return "\n\n".join(sections)


__all__ = ["AgentContext", "TaskBrief", "build_agent_context", "task_brief", "render_context"]
