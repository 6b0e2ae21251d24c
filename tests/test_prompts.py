"""Tests for prompt composition."""

from datetime import datetime

from humanagent.prompts.composer import MAX_TASKS_IN_PROMPT
from humanagent.prompts.composer import build_a2a_prompt
from humanagent.prompts.composer import build_system_prompt
from humanagent.prompts.composer import build_task_prompt
from humanagent.services.context_builder import TaskBrief


def _brief(task_id, description, due=None):
    return TaskBrief(id=task_id, description=description, status="pending", priority="medium", target_completion_at=due)


class TestSystemPrompt:
    def test_blocks(self):
        prompt = build_system_prompt(
            agent_name="Scout",
            owner_name="Olivia",
            action_names=["update_task_status", "create_task"],
            persona="Dry wit",
            instructions="Always cite sources.",
            context_text="## Current Goal\nLaunch",
            now=datetime(2026, 5, 4, 12, 30),
        )

        assert prompt.startswith("You are Scout, an AI agent working for Olivia.")
        assert "Monday, May 04, 2026 12:30 UTC" in prompt
        assert "- Persona: Dry wit" in prompt
        assert "## Custom Instructions (OWNER-DEFINED)\nAlways cite sources." in prompt
        assert "## Current Goal\nLaunch" in prompt
        assert "Only use supported action types: create_task, update_task_status." in prompt

    def test_optional_blocks_omitted(self):
        prompt = build_system_prompt(agent_name="Scout", owner_name="Olivia", action_names=[], instructions="  ")
        assert "Custom Instructions" not in prompt
        assert "Persona" not in prompt


class TestTaskPrompt:
    def test_sections(self):
        prompt = build_task_prompt(
            [_brief(1, "Write launch post", due="2026-05-10T00:00:00")],
            [_brief(2, "Finish pricing table")],
            goal="Launch in May",
        )

        assert 'taskId="1" description="Write launch post" (due 2026-05-10)' in prompt
        assert "IN-PROGRESS TASKS" in prompt
        assert prompt.index("NEW TASKS") < prompt.index("IN-PROGRESS TASKS")
        assert "Current goal: Launch in May" in prompt

    def test_task_list_is_bounded(self):
        pending = [_brief(i, f"task {i}") for i in range(MAX_TASKS_IN_PROMPT + 5)]
        prompt = build_task_prompt(pending, [])
        assert prompt.count("taskId=") == MAX_TASKS_IN_PROMPT
        assert "IN-PROGRESS" not in prompt


def test_a2a_prompt():
    prompt = build_a2a_prompt(peer_name="Bob", peer_slug="bob", thread_id="1:2", content="Any news?")
    assert prompt.startswith("AGENT MESSAGE from Bob (@bob), thread 1:2.")
    assert prompt.endswith("\n\nAny news?")
