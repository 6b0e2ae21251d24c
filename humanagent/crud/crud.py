import hashlib
import uuid
from datetime import datetime
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import or_
from sqlalchemy import update
from sqlalchemy.orm import Session

from humanagent.models.enums import AuditStatus
from humanagent.models.enums import MemoryType
from humanagent.models.enums import NodeType
from humanagent.models.enums import SchedulingMode
from humanagent.models.enums import TaskStatus
from humanagent.models.enums import ThoughtType
from humanagent.models.models import A2AMessage
from humanagent.models.models import Agent
from humanagent.models.models import AgentMemory
from humanagent.models.models import AgentThought
from humanagent.models.models import AuditLogEntry
from humanagent.models.models import BlobObject
from humanagent.models.models import BoardColumn
from humanagent.models.models import FeedItem
from humanagent.models.models import KnowledgeNode
from humanagent.models.models import SecurityFlagRecord
from humanagent.models.models import Skill
from humanagent.models.models import Task
from humanagent.models.models import User
from humanagent.utils.time import utc_now_naive


def _validate_cron_or_raise(expr: str | None):
    """Raise ``ValueError`` if *expr* is not a valid crontab string."""

    if expr is None:
        return

    try:
        CronTrigger.from_crontab(expr)
    except ValueError as exc:
        raise ValueError(f"Invalid cron expression: {expr} ({exc})") from exc


# ---------------------------------------------------------------------------
# Users & agents
# ---------------------------------------------------------------------------


def create_user(db: Session, *, email: str, display_name: Optional[str] = None) -> User:
    user = User(email=email, display_name=display_name, tokens_used_this_month=0)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def create_agent(
    db: Session,
    *,
    owner_id: int,
    slug: str,
    name: str,
    scheduling_mode: SchedulingMode = SchedulingMode.MANUAL,
    cron_spec: Optional[str] = None,
    **fields: Any,
) -> Agent:
    """Create a new agent row and persist it.

    Extra keyword arguments map 1:1 onto :class:`Agent` columns.
    """

    _validate_cron_or_raise(cron_spec)
    if scheduling_mode == SchedulingMode.CRON and not cron_spec:
        raise ValueError("cron scheduling requires a cron_spec")

    agent = Agent(
        owner_id=owner_id,
        slug=slug,
        name=name,
        scheduling_mode=scheduling_mode,
        cron_spec=cron_spec,
        **fields,
    )
    db.add(agent)
    db.commit()
    db.refresh(agent)
    return agent


def get_agent(db: Session, agent_id: int) -> Optional[Agent]:
    return db.query(Agent).filter(Agent.id == agent_id).first()


def get_agent_by_slug(db: Session, slug: str) -> Optional[Agent]:
    return db.query(Agent).filter(Agent.slug == slug).first()


def list_active_agents(db: Session) -> List[Agent]:
    return db.query(Agent).filter(Agent.is_active.is_(True)).order_by(Agent.id).all()


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def create_task(
    db: Session,
    *,
    owner_id: int,
    description: str,
    agent_id: Optional[int] = None,
    parent_task_id: Optional[int] = None,
    column_id: Optional[int] = None,
    priority: str = "medium",
    requester_email: Optional[str] = None,
    target_completion_at: Optional[datetime] = None,
    do_now: bool = False,
) -> Task:
    task = Task(
        owner_id=owner_id,
        description=description,
        agent_id=agent_id,
        parent_task_id=parent_task_id,
        column_id=column_id,
        priority=priority,
        requester_email=requester_email,
        target_completion_at=target_completion_at,
        do_now_at=utc_now_naive() if do_now else None,
        status=TaskStatus.PENDING,
        outcome_links=[],
        workflow_steps=[],
        tool_call_log=[],
    )
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def get_task(db: Session, task_id: int) -> Optional[Task]:
    return db.query(Task).filter(Task.id == task_id).first()


def list_pending_tasks(db: Session, *, owner_id: int, agent_id: int, limit: int = 10) -> List[Task]:
    """Pending tasks of *owner_id* that are unassigned or assigned to *agent_id*.

    Fast-tracked tasks come first, then oldest first.
    """
    return (
        db.query(Task)
        .filter(
            Task.owner_id == owner_id,
            Task.status == TaskStatus.PENDING,
            or_(Task.agent_id.is_(None), Task.agent_id == agent_id),
        )
        .order_by(Task.do_now_at.is_(None), Task.do_now_at, Task.created_at, Task.id)
        .limit(limit)
        .all()
    )


def list_in_progress_tasks(db: Session, *, agent_id: int, limit: int = 10) -> List[Task]:
    return (
        db.query(Task)
        .filter(Task.agent_id == agent_id, Task.status == TaskStatus.IN_PROGRESS)
        .order_by(Task.claimed_at, Task.id)
        .limit(limit)
        .all()
    )


def has_claimable_tasks(db: Session, agent: Agent) -> bool:
    pending = (
        db.query(Task.id)
        .filter(
            Task.owner_id == agent.owner_id,
            Task.status == TaskStatus.PENDING,
            or_(Task.agent_id.is_(None), Task.agent_id == agent.id),
        )
        .first()
    )
    return pending is not None


def claim_task(db: Session, task_id: int, *, agent_id: int) -> Optional[str]:
    """Atomically move a pending task to ``in_progress`` for *agent_id*.

    Returns the new claim token, or ``None`` when another worker got there
    first (the row is no longer pending or belongs to a different agent).
    """
    token = str(uuid.uuid4())
    now = utc_now_naive()
    result = db.execute(
        update(Task)
        .where(
            Task.id == task_id,
            Task.status == TaskStatus.PENDING,
            or_(Task.agent_id.is_(None), Task.agent_id == agent_id),
        )
        .values(
            status=TaskStatus.IN_PROGRESS,
            agent_id=agent_id,
            claim_token=token,
            claimed_at=now,
            last_progress_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.expire_all()
    return token if result.rowcount == 1 else None


# Allowed prior states per target state.  Monotone: nothing leaves a
# terminal state and nothing returns to pending.
_ALLOWED_PRIOR: Dict[TaskStatus, tuple] = {
    TaskStatus.IN_PROGRESS: (TaskStatus.PENDING,),
    TaskStatus.COMPLETED: (TaskStatus.IN_PROGRESS,),
    TaskStatus.FAILED: (TaskStatus.PENDING, TaskStatus.IN_PROGRESS),
}


def transition_task(
    db: Session,
    task_id: int,
    *,
    new_status: TaskStatus,
    expected: Optional[Iterable[TaskStatus]] = None,
    claim_token: Optional[str] = None,
    clear_claim: bool = False,
    **values: Any,
) -> bool:
    """Compare-and-set status change.

    The update only applies while the task is still in one of the *expected*
    prior states (defaults to every state allowed to reach *new_status*) and,
    when *claim_token* is given, still held by that claim.  Returns ``False``
    when the race was lost; callers treat that as a no-op.
    """
    new_status = TaskStatus(new_status)
    if new_status not in _ALLOWED_PRIOR:
        raise ValueError(f"tasks cannot transition to {new_status.value}")

    allowed = _ALLOWED_PRIOR[new_status]
    expected = tuple(TaskStatus(s) for s in expected) if expected is not None else allowed
    if not set(expected) <= set(allowed):
        raise ValueError(f"illegal transition {[s.value for s in expected]} -> {new_status.value}")

    now = utc_now_naive()
    values = dict(values)
    values["status"] = new_status
    values["updated_at"] = now
    values.setdefault("last_progress_at", now)
    if new_status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
        values.setdefault("completed_at", now)
    if clear_claim:
        values["claim_token"] = None

    stmt = update(Task).where(Task.id == task_id, Task.status.in_(expected))
    if claim_token is not None:
        stmt = stmt.where(Task.claim_token == claim_token)

    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    db.commit()
    db.expire_all()
    return result.rowcount == 1


def write_workflow_steps(
    db: Session,
    task_id: int,
    steps: List[Dict[str, Any]],
    *,
    claim_token: Optional[str] = None,
) -> bool:
    """Replace the task's workflow trace in one statement.

    With *claim_token* the write is ignored once the claim has been revoked.
    """
    stmt = update(Task).where(Task.id == task_id)
    if claim_token is not None:
        stmt = stmt.where(Task.claim_token == claim_token)
    now = utc_now_naive()
    result = db.execute(
        stmt.values(workflow_steps=list(steps), last_progress_at=now, updated_at=now).execution_options(
            synchronize_session=False
        )
    )
    db.commit()
    db.expire_all()
    return result.rowcount == 1


def append_tool_call(db: Session, task: Task, entry: Dict[str, Any]) -> None:
    log_entries = list(task.tool_call_log or [])
    log_entries.append(entry)
    task.tool_call_log = log_entries
    db.commit()


def update_task_fields(db: Session, task: Task, **values: Any) -> Task:
    """Non-status field updates (board column, outcome attachments)."""
    if "status" in values:
        raise ValueError("status changes go through transition_task()")
    for key, value in values.items():
        setattr(task, key, value)
    db.commit()
    db.refresh(task)
    return task


def find_board_column(
    db: Session, *, owner_id: int, column_id: Optional[int] = None, name: Optional[str] = None
) -> Optional[BoardColumn]:
    query = db.query(BoardColumn).filter(BoardColumn.owner_id == owner_id)
    if column_id is not None:
        return query.filter(BoardColumn.id == column_id).first()
    if name:
        return query.filter(BoardColumn.name.ilike(name.strip())).first()
    return None


def create_board_column(db: Session, *, owner_id: int, name: str, position: int = 0) -> BoardColumn:
    column = BoardColumn(owner_id=owner_id, name=name, position=position)
    db.add(column)
    db.commit()
    db.refresh(column)
    return column


# ---------------------------------------------------------------------------
# Blob storage
# ---------------------------------------------------------------------------


def store_blob(
    db: Session,
    *,
    owner_id: int,
    data: bytes,
    filename: str,
    content_type: str = "text/markdown",
) -> BlobObject:
    blob = BlobObject(
        owner_id=owner_id,
        filename=filename,
        content_type=content_type,
        data=data,
        size_bytes=len(data),
        sha256=hashlib.sha256(data).hexdigest(),
    )
    db.add(blob)
    db.commit()
    db.refresh(blob)
    return blob


def get_blob(db: Session, blob_id: int) -> Optional[BlobObject]:
    return db.query(BlobObject).filter(BlobObject.id == blob_id).first()


# ---------------------------------------------------------------------------
# Thoughts & memories
# ---------------------------------------------------------------------------


def create_thought(
    db: Session,
    *,
    agent: Agent,
    type: ThoughtType,
    content: str,
    context: Optional[str] = None,
    related_task_id: Optional[int] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> AgentThought:
    thought = AgentThought(
        agent_id=agent.id,
        owner_id=agent.owner_id,
        type=ThoughtType(type),
        content=content,
        context=context,
        related_task_id=related_task_id,
        meta=meta,
    )
    db.add(thought)
    db.commit()
    db.refresh(thought)
    return thought


def list_recent_thoughts(db: Session, agent_id: int, *, limit: int = 10) -> List[AgentThought]:
    return (
        db.query(AgentThought)
        .filter(AgentThought.agent_id == agent_id)
        .order_by(AgentThought.created_at.desc(), AgentThought.id.desc())
        .limit(limit)
        .all()
    )


def delete_thoughts_beyond(db: Session, agent_id: int, *, keep: int) -> int:
    """Delete all but the *keep* most recent thoughts of *agent_id*."""
    keep_ids = [t.id for t in list_recent_thoughts(db, agent_id, limit=keep)]
    query = db.query(AgentThought).filter(AgentThought.agent_id == agent_id)
    if keep_ids:
        query = query.filter(AgentThought.id.notin_(keep_ids))
    deleted = query.delete(synchronize_session=False)
    db.commit()
    return deleted


def append_memory(
    db: Session,
    *,
    agent_id: int,
    owner_id: int,
    memory_type: MemoryType,
    content: str,
    source: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> AgentMemory:
    memory = AgentMemory(
        agent_id=agent_id,
        owner_id=owner_id,
        memory_type=MemoryType(memory_type),
        content=content,
        source=source,
        meta=meta,
    )
    db.add(memory)
    db.commit()
    db.refresh(memory)
    return memory


def list_recent_memories(db: Session, agent_id: int, *, limit: int = 5) -> List[AgentMemory]:
    return (
        db.query(AgentMemory)
        .filter(AgentMemory.agent_id == agent_id)
        .order_by(AgentMemory.created_at.desc(), AgentMemory.id.desc())
        .limit(limit)
        .all()
    )


# ---------------------------------------------------------------------------
# Knowledge graph
# ---------------------------------------------------------------------------


def create_knowledge_node(
    db: Session,
    *,
    owner_id: int,
    title: str,
    description: str = "",
    content: str = "",
    node_type: NodeType = NodeType.CONCEPT,
    tags: Optional[List[str]] = None,
    agent_id: Optional[int] = None,
) -> KnowledgeNode:
    node = KnowledgeNode(
        owner_id=owner_id,
        agent_id=agent_id,
        title=title,
        description=description,
        content=content,
        node_type=NodeType(node_type),
        tags=list(tags or []),
        linked_node_ids=[],
    )
    db.add(node)
    db.commit()
    db.refresh(node)
    return node


def list_knowledge_nodes(db: Session, *, owner_id: int, limit: int = 500) -> List[KnowledgeNode]:
    return (
        db.query(KnowledgeNode)
        .filter(KnowledgeNode.owner_id == owner_id)
        .order_by(KnowledgeNode.updated_at.desc(), KnowledgeNode.id.desc())
        .limit(limit)
        .all()
    )


def get_knowledge_nodes(db: Session, *, owner_id: int, node_ids: Iterable[int]) -> List[KnowledgeNode]:
    ids = list(node_ids)
    if not ids:
        return []
    return (
        db.query(KnowledgeNode)
        .filter(KnowledgeNode.owner_id == owner_id, KnowledgeNode.id.in_(ids))
        .all()
    )


def link_knowledge_nodes(db: Session, *, owner_id: int, source_id: int, target_id: int) -> bool:
    """Link two nodes of the same owner in both directions.  Self links are ignored."""
    if source_id == target_id:
        return False
    nodes = {n.id: n for n in get_knowledge_nodes(db, owner_id=owner_id, node_ids=[source_id, target_id])}
    if len(nodes) != 2:
        return False
    for a, b in ((source_id, target_id), (target_id, source_id)):
        links = list(nodes[a].linked_node_ids or [])
        if b not in links:
            links.append(b)
            nodes[a].linked_node_ids = links
    db.commit()
    return True


# ---------------------------------------------------------------------------
# A2A messages
# ---------------------------------------------------------------------------


def create_a2a_message(
    db: Session,
    *,
    thread_id: str,
    from_agent_id: int,
    to_agent_id: int,
    content: str,
    hop_count: int = 0,
    is_automatic: bool = False,
) -> A2AMessage:
    message = A2AMessage(
        thread_id=thread_id,
        from_agent_id=from_agent_id,
        to_agent_id=to_agent_id,
        content=content,
        hop_count=hop_count,
        is_automatic=is_automatic,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def list_thread_messages(db: Session, thread_id: str) -> List[A2AMessage]:
    return (
        db.query(A2AMessage)
        .filter(A2AMessage.thread_id == thread_id)
        .order_by(A2AMessage.created_at, A2AMessage.id)
        .all()
    )


# ---------------------------------------------------------------------------
# Audit & security flags
# ---------------------------------------------------------------------------


def create_audit_entry(
    db: Session,
    *,
    actor: str,
    action: str,
    resource: str,
    status: AuditStatus,
    owner_id: Optional[int] = None,
    agent_id: Optional[int] = None,
    token_count: int = 0,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLogEntry:
    entry = AuditLogEntry(
        owner_id=owner_id,
        agent_id=agent_id,
        actor=actor,
        action=action,
        resource=resource,
        status=AuditStatus(status),
        token_count=token_count,
        details=details,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def list_audit_entries(
    db: Session, *, agent_id: Optional[int] = None, action: Optional[str] = None
) -> List[AuditLogEntry]:
    query = db.query(AuditLogEntry)
    if agent_id is not None:
        query = query.filter(AuditLogEntry.agent_id == agent_id)
    if action is not None:
        query = query.filter(AuditLogEntry.action == action)
    return query.order_by(AuditLogEntry.id).all()


def create_security_flag(
    db: Session,
    *,
    source: str,
    flag_type: str,
    pattern: str,
    match: str,
    severity: str,
    owner_id: Optional[int] = None,
    agent_id: Optional[int] = None,
    task_id: Optional[int] = None,
) -> SecurityFlagRecord:
    record = SecurityFlagRecord(
        owner_id=owner_id,
        agent_id=agent_id,
        task_id=task_id,
        source=source,
        flag_type=flag_type,
        pattern=pattern,
        match=match,
        severity=severity,
    )
    db.add(record)
    db.commit()
    return record


# ---------------------------------------------------------------------------
# Feed & skills
# ---------------------------------------------------------------------------


def create_feed_item(
    db: Session,
    *,
    owner_id: int,
    title: str,
    content: Optional[str] = None,
    agent_id: Optional[int] = None,
    item_type: str = "update",
    is_public: bool = False,
) -> FeedItem:
    item = FeedItem(
        owner_id=owner_id,
        agent_id=agent_id,
        title=title,
        content=content,
        item_type=item_type,
        is_public=is_public,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def create_skill(
    db: Session,
    *,
    owner_id: int,
    name: str,
    bio: Optional[str] = None,
    capabilities: Optional[List[Dict[str, str]]] = None,
    agent_id: Optional[int] = None,
) -> Skill:
    skill = Skill(owner_id=owner_id, agent_id=agent_id, name=name, bio=bio, capabilities=list(capabilities or []))
    db.add(skill)
    db.commit()
    db.refresh(skill)
    return skill


def update_skill(db: Session, *, owner_id: int, skill_id: int, **values: Any) -> Optional[Skill]:
    skill = db.query(Skill).filter(Skill.id == skill_id, Skill.owner_id == owner_id).first()
    if skill is None:
        return None
    for key, value in values.items():
        if value is not None:
            setattr(skill, key, value)
    db.commit()
    db.refresh(skill)
    return skill
