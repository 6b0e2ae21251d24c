"""Transition functions for an agent's thinking sub-record.

The thinking fields on :class:`~humanagent.models.models.Agent`
(``thinking_enabled``, ``thinking_paused``, ``current_goal``,
``last_thought``, ``last_thought_at``) are written only here.
"""

from __future__ import annotations

import logging
from typing import Any
from typing import Dict
from typing import Optional

from sqlalchemy.orm import Session

from humanagent.crud import crud
from humanagent.models.enums import ThoughtType
from humanagent.models.models import Agent
from humanagent.models.models import AgentThought
from humanagent.utils.time import utc_now_naive

logger = logging.getLogger(__name__)

LAST_THOUGHT_CHARS = 500


def thinking_active(agent: Agent) -> bool:
    return bool(agent.thinking_enabled) and not bool(agent.thinking_paused)


def toggle_thinking_pause(db: Session, agent: Agent) -> bool:
    """Flip the pause flag; returns the new value."""
    agent.thinking_paused = not bool(agent.thinking_paused)
    db.commit()
    logger.info("agent %s thinking %s", agent.id, "paused" if agent.thinking_paused else "resumed")
    return agent.thinking_paused


def set_goal(db: Session, agent: Agent, goal: str) -> AgentThought:
    """Replace the current goal and log a ``goal_update`` thought."""
    goal = goal.strip()
    agent.current_goal = goal or None
    db.commit()
    content = f"New goal: {goal}" if goal else "Goal cleared"
    return crud.create_thought(db, agent=agent, type=ThoughtType.GOAL_UPDATE, content=content)


def record_last_thought(db: Session, agent: Agent, content: str) -> None:
    agent.last_thought = content.strip()[:LAST_THOUGHT_CHARS]
    agent.last_thought_at = utc_now_naive()
    db.commit()


def record_thought(
    db: Session,
    agent: Agent,
    type: ThoughtType,
    content: str,
    *,
    context: Optional[str] = None,
    related_task_id: Optional[int] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Optional[AgentThought]:
    """Append a thought and update ``last_thought``.

    Returns ``None`` without writing when thinking is disabled or paused.
    """
    if not thinking_active(agent) or not content.strip():
        return None
    thought = crud.create_thought(
        db,
        agent=agent,
        type=type,
        content=content.strip(),
        context=context,
        related_task_id=related_task_id,
        meta=meta,
    )
    record_last_thought(db, agent, content)
    return thought


def cleanup_thoughts(db: Session, *, keep: int) -> int:
    """Apply the retention policy to every agent.  Returns rows deleted."""
    deleted = 0
    for agent in crud.list_active_agents(db):
        deleted += crud.delete_thoughts_beyond(db, agent.id, keep=keep)
    if deleted:
        logger.info("thought cleanup removed %d rows (keep=%d per agent)", deleted, keep)
    return deleted


__all__ = [
    "thinking_active",
    "toggle_thinking_pause",
    "set_goal",
    "record_last_thought",
    "record_thought",
    "cleanup_thoughts",
]
