"""Prompt components for agent runs."""

from humanagent.prompts.composer import build_a2a_prompt
from humanagent.prompts.composer import build_system_prompt
from humanagent.prompts.composer import build_task_prompt
from humanagent.prompts.composer import format_date_context

__all__ = [
    "build_system_prompt",
    "build_task_prompt",
    "build_a2a_prompt",
    "format_date_context",
]
