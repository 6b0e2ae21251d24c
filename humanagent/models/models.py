from sqlalchemy import JSON
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import LargeBinary
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import relationship

from humanagent.database import Base
from humanagent.models.enums import AgentStatus
from humanagent.models.enums import AuditStatus
from humanagent.models.enums import DeliveryStatus
from humanagent.models.enums import MemoryType
from humanagent.models.enums import NodeType
from humanagent.models.enums import SchedulingMode
from humanagent.models.enums import TaskStatus
from humanagent.models.enums import ThoughtType
from humanagent.utils.time import utc_now_naive


def _enum(enum_cls, name):
    # Persist the enum *values* ("in_progress") rather than member names.
    return SAEnum(enum_cls, native_enum=False, name=name, values_callable=lambda e: [m.value for m in e])


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """Owner of agents, tasks and knowledge.  Account management lives elsewhere."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    tokens_used_this_month = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utc_now_naive)

    agents = relationship("Agent", back_populates="owner")


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class Agent(Base):
    __tablename__ = "agents"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    slug = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    persona = Column(Text, nullable=True)
    instructions = Column(Text, nullable=True)

    # LLM configuration -------------------------------------------------
    llm_provider = Column(String, nullable=True)
    llm_model = Column(String, nullable=True)
    # 0 = unlimited
    monthly_token_budget = Column(Integer, nullable=False, default=0)
    tokens_used_this_month = Column(Integer, nullable=False, default=0)

    status = Column(_enum(AgentStatus, "agent_status_enum"), nullable=False, default=AgentStatus.IDLE)
    last_error = Column(Text, nullable=True)

    # Scheduling --------------------------------------------------------
    scheduling_mode = Column(
        _enum(SchedulingMode, "scheduling_mode_enum"), nullable=False, default=SchedulingMode.MANUAL
    )
    cron_spec = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_run_at = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=True)

    # Thinking sub-record.  Mutated only through services.agent_thinking.
    thinking_enabled = Column(Boolean, nullable=False, default=True)
    thinking_paused = Column(Boolean, nullable=False, default=False)
    current_goal = Column(Text, nullable=True)
    last_thought = Column(Text, nullable=True)
    last_thought_at = Column(DateTime, nullable=True)

    # A2A sub-record ----------------------------------------------------
    a2a_enabled = Column(Boolean, nullable=False, default=False)
    a2a_allow_public_agents = Column(Boolean, nullable=False, default=False)
    a2a_auto_respond = Column(Boolean, nullable=False, default=True)
    a2a_max_auto_reply_hops = Column(Integer, nullable=False, default=2)
    is_public = Column(Boolean, nullable=False, default=False)

    allowed_tools = Column(MutableList.as_mutable(JSON), nullable=True, default=list)
    # Free-form per-agent options (tts voice, email signature, ...)
    config = Column(MutableDict.as_mutable(JSON), nullable=True, default=dict)

    created_at = Column(DateTime, default=utc_now_naive)
    updated_at = Column(DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    owner = relationship("User", back_populates="agents")


# ---------------------------------------------------------------------------
# Tasks & board
# ---------------------------------------------------------------------------


class BoardColumn(Base):
    __tablename__ = "board_columns"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    position = Column(Integer, nullable=False, default=0)


class Task(Base):
    """Unit of work processed by an agent run.

    ``status`` only ever changes through :func:`humanagent.crud.crud.transition_task`.
    ``claim_token`` identifies the run currently holding the task; writes from
    that run are conditional on it so a force-failed task ignores late writes.
    """

    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=True, index=True)
    parent_task_id = Column(Integer, ForeignKey("tasks.id"), nullable=True)
    column_id = Column(Integer, ForeignKey("board_columns.id"), nullable=True)

    description = Column(Text, nullable=False)
    status = Column(_enum(TaskStatus, "task_status_enum"), nullable=False, default=TaskStatus.PENDING, index=True)
    priority = Column(String, nullable=False, default="medium")
    requester_email = Column(String, nullable=True)

    target_completion_at = Column(DateTime, nullable=True)
    do_now_at = Column(DateTime, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    claim_token = Column(String(36), nullable=True)
    last_progress_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Outcome -----------------------------------------------------------
    outcome_summary = Column(Text, nullable=True)
    outcome_links = Column(MutableList.as_mutable(JSON), nullable=True, default=list)
    outcome_file_id = Column(Integer, ForeignKey("blobs.id"), nullable=True)
    outcome_audio_id = Column(Integer, ForeignKey("blobs.id"), nullable=True)
    outcome_email_status = Column(_enum(DeliveryStatus, "delivery_status_enum"), nullable=True)
    outcome_email_id = Column(String, nullable=True)

    workflow_steps = Column(MutableList.as_mutable(JSON), nullable=True, default=list)
    tool_call_log = Column(MutableList.as_mutable(JSON), nullable=True, default=list)

    created_at = Column(DateTime, default=utc_now_naive)
    updated_at = Column(DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    agent = relationship("Agent")


# ---------------------------------------------------------------------------
# Thinking / memory / knowledge
# ---------------------------------------------------------------------------


class AgentThought(Base):
    __tablename__ = "agent_thoughts"

    id = Column(Integer, primary_key=True, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    type = Column(_enum(ThoughtType, "thought_type_enum"), nullable=False)
    content = Column(Text, nullable=False)
    context = Column(Text, nullable=True)
    related_task_id = Column(Integer, ForeignKey("tasks.id"), nullable=True)
    meta = Column("metadata", MutableDict.as_mutable(JSON), nullable=True)
    created_at = Column(DateTime, default=utc_now_naive, index=True)


class AgentMemory(Base):
    """Append-only short-term memory of an agent."""

    __tablename__ = "agent_memories"

    id = Column(Integer, primary_key=True, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    memory_type = Column(_enum(MemoryType, "memory_type_enum"), nullable=False)
    content = Column(Text, nullable=False)
    source = Column(String, nullable=True)
    meta = Column("metadata", MutableDict.as_mutable(JSON), nullable=True)
    created_at = Column(DateTime, default=utc_now_naive, index=True)


class KnowledgeNode(Base):
    __tablename__ = "knowledge_nodes"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=True)
    node_type = Column(_enum(NodeType, "node_type_enum"), nullable=False, default=NodeType.CONCEPT)
    title = Column(String, nullable=False)
    description = Column(String, nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    tags = Column(MutableList.as_mutable(JSON), nullable=True, default=list)
    linked_node_ids = Column(MutableList.as_mutable(JSON), nullable=True, default=list)
    created_at = Column(DateTime, default=utc_now_naive)
    updated_at = Column(DateTime, default=utc_now_naive, onupdate=utc_now_naive)


# ---------------------------------------------------------------------------
# Agent-to-agent messages
# ---------------------------------------------------------------------------


class A2AMessage(Base):
    __tablename__ = "a2a_messages"

    id = Column(Integer, primary_key=True, index=True)
    thread_id = Column(String, nullable=False, index=True)
    from_agent_id = Column(Integer, ForeignKey("agents.id"), nullable=False)
    to_agent_id = Column(Integer, ForeignKey("agents.id"), nullable=False)
    content = Column(Text, nullable=False)
    # Causal depth of automatic replies; 0 for agent- or human-initiated messages.
    hop_count = Column(Integer, nullable=False, default=0)
    is_automatic = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utc_now_naive, index=True)


# ---------------------------------------------------------------------------
# Audit & security
# ---------------------------------------------------------------------------


class AuditLogEntry(Base):
    """Append-only audit trail.  Rows are never updated or deleted."""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=True, index=True)
    actor = Column(String, nullable=False)
    action = Column(String, nullable=False)
    resource = Column(String, nullable=False)
    status = Column(_enum(AuditStatus, "audit_status_enum"), nullable=False)
    token_count = Column(Integer, nullable=False, default=0)
    details = Column(MutableDict.as_mutable(JSON), nullable=True)
    created_at = Column(DateTime, default=utc_now_naive, index=True)


class SecurityFlagRecord(Base):
    __tablename__ = "security_flags"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=True)
    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=True)
    source = Column(String, nullable=False)
    flag_type = Column(String, nullable=False)
    pattern = Column(String, nullable=False)
    match = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    created_at = Column(DateTime, default=utc_now_naive)


# ---------------------------------------------------------------------------
# Blob storage & credentials
# ---------------------------------------------------------------------------


class BlobObject(Base):
    __tablename__ = "blobs"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    filename = Column(String, nullable=False)
    content_type = Column(String, nullable=False)
    data = Column(LargeBinary, nullable=False)
    size_bytes = Column(Integer, nullable=False)
    sha256 = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=utc_now_naive)


class ProviderCredential(Base):
    """Encrypted API key for a model or delivery provider.

    ``agent_id`` set = agent-level override, otherwise account-level.
    """

    __tablename__ = "provider_credentials"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=True, index=True)
    provider = Column(String, nullable=False)
    encrypted_value = Column(Text, nullable=False)
    base_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=utc_now_naive)


# ---------------------------------------------------------------------------
# Social surface written by actions
# ---------------------------------------------------------------------------


class FeedItem(Base):
    __tablename__ = "feed_items"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=True)
    item_type = Column(String, nullable=False, default="update")
    title = Column(String, nullable=False)
    content = Column(Text, nullable=True)
    is_public = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utc_now_naive)


class Skill(Base):
    __tablename__ = "skills"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=True)
    name = Column(String, nullable=False)
    bio = Column(Text, nullable=True)
    capabilities = Column(MutableList.as_mutable(JSON), nullable=True, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    is_public = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utc_now_naive)
    updated_at = Column(DateTime, default=utc_now_naive, onupdate=utc_now_naive)
