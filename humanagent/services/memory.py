"""Short-term memory retention.

Memories are append-only during runs.  The daily compression job keeps the
newest ``keep`` entries of each agent verbatim and folds the older detailed
entries into one ``run_summary`` memory.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from humanagent.crud import crud
from humanagent.models.enums import MemoryType
from humanagent.models.models import AgentMemory

logger = logging.getLogger(__name__)

SUMMARY_LINE_CHARS = 160
SUMMARY_MAX_CHARS = 4000

_DETAILED = (MemoryType.CONVERSATION, MemoryType.A2A, MemoryType.TOOL_RESULT)


def compress_agent_memories(db: Session, agent_id: int, owner_id: int, *, keep: int) -> Optional[AgentMemory]:
    """Fold detailed memories older than the newest *keep* into one summary."""
    keep_ids = [m.id for m in crud.list_recent_memories(db, agent_id, limit=keep)]
    query = db.query(AgentMemory).filter(AgentMemory.agent_id == agent_id, AgentMemory.memory_type.in_(_DETAILED))
    if keep_ids:
        query = query.filter(AgentMemory.id.notin_(keep_ids))
    old = query.order_by(AgentMemory.created_at, AgentMemory.id).all()
    if not old:
        return None

    lines = []
    for memory in old:
        stamp = memory.created_at.strftime("%Y-%m-%d") if memory.created_at else "?"
        lines.append(f"- [{stamp} {memory.memory_type.value}] {memory.content[:SUMMARY_LINE_CHARS]}")
    content = f"Summary of {len(old)} earlier memories:\n" + "\n".join(lines)
    if len(content) > SUMMARY_MAX_CHARS:
        content = content[: SUMMARY_MAX_CHARS - 3] + "..."

    for memory in old:
        db.delete(memory)
    db.commit()
    return crud.append_memory(
        db,
        agent_id=agent_id,
        owner_id=owner_id,
        memory_type=MemoryType.RUN_SUMMARY,
        content=content,
        source="compression",
        meta={"folded": len(old)},
    )


def compress_memories(db: Session, *, keep: int) -> int:
    """Run :func:`compress_agent_memories` for every active agent.  Returns agents compressed."""
    compressed = 0
    for agent in crud.list_active_agents(db):
        if compress_agent_memories(db, agent.id, agent.owner_id, keep=keep) is not None:
            compressed += 1
    if compressed:
        logger.info(f"Compressed memories of {compressed} agents (keep={keep})")
    return compressed


__all__ = ["compress_agent_memories", "compress_memories"]
