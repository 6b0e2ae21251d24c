"""Agent-to-agent (A2A) messaging with bounded auto-replies.

A thread is the unordered pair of agents.  Every message carries a
``hop_count``: ``0`` for a message that did not originate from an automatic
reply, otherwise one more than the message that caused it.  A recipient only
auto-responds while the delivered hop count stays below its
``a2a_max_auto_reply_hops``; past that the thread is left open for a human.

Auto-replies are never executed inline.  Delivery publishes
``A2A_MESSAGE_DELIVERED`` and the scheduler runs the recipient's pipeline
under that agent's own run lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from humanagent.crud import crud
from humanagent.events import EventType
from humanagent.events import event_bus
from humanagent.exceptions import A2ARejected
from humanagent.metrics import a2a_messages_total
from humanagent.models.enums import AuditStatus
from humanagent.models.enums import Direction
from humanagent.models.enums import MemoryType
from humanagent.models.models import Agent

logger = logging.getLogger(__name__)

DEFAULT_MAX_AUTO_REPLY_HOPS = 2


@dataclass(frozen=True)
class A2ASendResult:
    thread_id: str
    message_id: int
    hop_count: int
    auto_reply_scheduled: bool


def build_thread_id(agent_a: int, agent_b: int) -> str:
    low, high = sorted((int(agent_a), int(agent_b)))
    return f"{low}:{high}"


def thread_hop_count(db: Session, thread_id: str) -> int:
    """Automatic messages since the most recent non-automatic one."""
    hops = 0
    for message in reversed(crud.list_thread_messages(db, thread_id)):
        if not message.is_automatic:
            break
        hops += 1
    return hops


def max_auto_reply_hops(agent: Agent) -> int:
    value = agent.a2a_max_auto_reply_hops
    return DEFAULT_MAX_AUTO_REPLY_HOPS if value is None else max(0, int(value))


def _check_reachable(from_agent: Agent, to_agent: Agent) -> None:
    if from_agent.id == to_agent.id:
        raise A2ARejected("an agent cannot message itself")
    if not from_agent.a2a_enabled:
        raise A2ARejected(f"sender agent '{from_agent.slug}' does not allow A2A messaging")
    if not to_agent.a2a_enabled:
        raise A2ARejected(f"recipient agent '{to_agent.slug}' does not allow A2A messaging")
    if from_agent.owner_id != to_agent.owner_id:
        if not to_agent.is_public or not from_agent.a2a_allow_public_agents:
            raise A2ARejected(f"recipient agent '{to_agent.slug}' is not open for cross-owner A2A messaging")


async def send_agent_message(
    db: Session,
    *,
    from_agent: Agent,
    content: str,
    to_agent: Optional[Agent] = None,
    to_slug: Optional[str] = None,
    hop_count: int = 0,
    automatic: bool = False,
) -> A2ASendResult:
    """Persist and route one message from *from_agent* to the target agent.

    Raises:
        A2ARejected: unknown target, A2A disabled, cross-owner policy or
            the hop limit forbids the message.
    """
    if to_agent is None:
        to_agent = crud.get_agent_by_slug(db, (to_slug or "").strip())
        if to_agent is None:
            a2a_messages_total.labels("rejected").inc()
            raise A2ARejected(f"no agent with slug '{to_slug}'")
    content = (content or "").strip()
    if not content:
        raise A2ARejected("empty A2A message")

    try:
        _check_reachable(from_agent, to_agent)
    except A2ARejected:
        a2a_messages_total.labels("rejected").inc()
        raise

    hop_count = max(0, int(hop_count))
    if hop_count > max_auto_reply_hops(to_agent):
        a2a_messages_total.labels("rejected").inc()
        raise A2ARejected("A2A loop protection triggered: hop limit reached")

    thread_id = build_thread_id(from_agent.id, to_agent.id)
    message = crud.create_a2a_message(
        db,
        thread_id=thread_id,
        from_agent_id=from_agent.id,
        to_agent_id=to_agent.id,
        content=content,
        hop_count=hop_count,
        is_automatic=automatic,
    )

    for owner, peer, direction in (
        (from_agent, to_agent, Direction.OUTBOUND),
        (to_agent, from_agent, Direction.INBOUND),
    ):
        crud.append_memory(
            db,
            agent_id=owner.id,
            owner_id=owner.owner_id,
            memory_type=MemoryType.A2A,
            content=content,
            source="a2a",
            meta={
                "thread_id": thread_id,
                "hop_count": hop_count,
                "peer_agent_id": peer.id,
                "direction": direction.value,
                "message_id": message.id,
            },
        )

    crud.create_audit_entry(
        db,
        actor=f"agent:{from_agent.id}",
        action="a2a_message_sent",
        resource=f"a2a:{thread_id}",
        status=AuditStatus.ALLOWED,
        owner_id=from_agent.owner_id,
        agent_id=from_agent.id,
        details={"to_agent_id": to_agent.id, "hop_count": hop_count, "automatic": automatic},
    )

    if from_agent.is_public:
        crud.create_feed_item(
            db,
            owner_id=from_agent.owner_id,
            agent_id=from_agent.id,
            item_type="message_handled",
            title=f"{from_agent.name} sent an agent-to-agent message",
            content=f"To {to_agent.name}",
            is_public=True,
        )

    scheduled = await deliver_a2a_message(
        db,
        thread_id,
        from_agent,
        to_agent,
        content,
        hop_count=hop_count,
        message_id=message.id,
    )
    return A2ASendResult(
        thread_id=thread_id, message_id=message.id, hop_count=hop_count, auto_reply_scheduled=scheduled
    )


async def deliver_a2a_message(
    db: Session,
    thread_id: str,
    from_agent: Agent,
    to_agent: Agent,
    content: str,
    *,
    hop_count: int,
    message_id: Optional[int] = None,
) -> bool:
    """Decide whether *to_agent* auto-responds.  Returns ``True`` when a run was requested."""

    effective_hops = max(int(hop_count), thread_hop_count(db, thread_id))
    limit = max_auto_reply_hops(to_agent)

    if not to_agent.a2a_auto_respond:
        reason = "auto-respond disabled"
    elif effective_hops >= limit:
        reason = f"hop limit reached ({effective_hops}/{limit})"
    else:
        reason = None

    if reason is not None:
        a2a_messages_total.labels("suppressed").inc()
        crud.create_audit_entry(
            db,
            actor=f"agent:{from_agent.id}",
            action="a2a_auto_reply_suppressed",
            resource=f"a2a:{thread_id}",
            status=AuditStatus.BLOCKED,
            owner_id=to_agent.owner_id,
            agent_id=to_agent.id,
            details={"reason": reason, "hop_count": effective_hops, "message_id": message_id},
        )
        logger.info("a2a thread %s left open for manual follow-up: %s", thread_id, reason)
        return False

    a2a_messages_total.labels("delivered").inc()
    await event_bus.publish(
        EventType.A2A_MESSAGE_DELIVERED,
        {
            "agent_id": to_agent.id,
            "from_agent_id": from_agent.id,
            "thread_id": thread_id,
            "message_id": message_id,
            "content": content,
            "hop_count": effective_hops,
        },
    )
    return True


__all__ = [
    "A2ASendResult",
    "build_thread_id",
    "thread_hop_count",
    "max_auto_reply_hops",
    "send_agent_message",
    "deliver_a2a_message",
]
