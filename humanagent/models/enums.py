"""Shared *Enum* definitions for SQLAlchemy & Pydantic models.

The Enums inherit from ``str`` so that JSON serialisation renders plain
strings and equality checks against raw literals keep working.
"""

from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ThoughtType(str, Enum):
    OBSERVATION = "observation"
    REASONING = "reasoning"
    DECISION = "decision"
    REFLECTION = "reflection"
    GOAL_UPDATE = "goal_update"


class AgentStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"
    BUDGET_EXHAUSTED = "budget_exhausted"


class SchedulingMode(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"
    CRON = "cron"


class RunTrigger(str, Enum):
    SCHEDULE = "schedule"
    CRON = "cron"
    TASK_CREATED = "task_created"
    DO_NOW = "do_now"
    A2A = "a2a"
    MANUAL = "manual"


class AuditStatus(str, Enum):
    ALLOWED = "allowed"
    BLOCKED = "blocked"
    FAILED = "failed"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class NodeType(str, Enum):
    CONCEPT = "concept"
    TECHNIQUE = "technique"
    REFERENCE = "reference"
    MOC = "moc"
    CLAIM = "claim"
    PROCEDURE = "procedure"


class MemoryType(str, Enum):
    CONVERSATION = "conversation"
    RUN_SUMMARY = "run_summary"
    A2A = "a2a"
    TOOL_RESULT = "tool_result"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


__all__ = [
    "TaskStatus",
    "StepStatus",
    "ThoughtType",
    "AgentStatus",
    "SchedulingMode",
    "RunTrigger",
    "AuditStatus",
    "Direction",
    "NodeType",
    "MemoryType",
    "DeliveryStatus",
]
