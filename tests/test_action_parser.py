"""Tests for splitting model output into text, thinking and directives."""

from humanagent.schemas.actions import CreateTaskAction
from humanagent.schemas.actions import UpdateTaskStatusAction
from humanagent.services.action_parser import parse_model_output
from humanagent.services.action_parser import strip_internal_ids


class TestParseModelOutput:
    def test_unknown_directive_is_dropped_and_valid_ones_kept(self):
        raw = (
            "All three items handled.\n"
            "<app_actions>["
            '{"type": "launch_rocket", "target": "moon"},'
            '{"type": "create_task", "description": "Follow up with finance"},'
            '{"type": "update_task_status", "taskId": 7, "status": "completed", "outcomeSummary": "Report sent"}'
            "]</app_actions>"
        )
        parsed = parse_model_output(raw)

        assert parsed.clean_text == "All three items handled."
        assert len(parsed.actions) == 2
        assert isinstance(parsed.actions[0], CreateTaskAction)
        assert isinstance(parsed.actions[1], UpdateTaskStatusAction)
        assert parsed.actions[1].task_id == 7
        assert len(parsed.rejected) == 1
        assert "launch_rocket" in str(parsed.rejected[0])

    def test_thinking_is_separated(self):
        parsed = parse_model_output("<thinking>check the backlog first</thinking>Here is the plan.")
        assert parsed.thinking == "check the backlog first"
        assert parsed.clean_text == "Here is the plan."
        assert parsed.actions == []

    def test_unclosed_thinking_is_dropped(self):
        parsed = parse_model_output("Answer first.\n<thinking>truncated reas")
        assert parsed.clean_text == "Answer first."

    def test_invalid_json_never_raises(self):
        parsed = parse_model_output("Done <app_actions>[{not json}]</app_actions>")
        assert parsed.actions == []
        assert len(parsed.rejected) == 1
        assert parsed.clean_text == "Done"

    def test_missing_required_field_rejected(self):
        raw = '<app_actions>[{"type": "update_task_status", "status": "completed"}]</app_actions>'
        parsed = parse_model_output(raw)
        assert parsed.actions == []
        assert "taskId" in str(parsed.rejected[0]) or "task_id" in str(parsed.rejected[0])

    def test_extra_fields_ignored(self):
        parsed = parse_model_output(
            '<app_actions>[{"type": "create_task", "description": "x", "colour": "red"}]</app_actions>'
        )
        assert len(parsed.actions) == 1
        assert parsed.rejected == []

    def test_single_object_accepted(self):
        parsed = parse_model_output('<app_actions>{"type": "create_task", "description": "Plan offsite"}</app_actions>')
        assert len(parsed.actions) == 1

    def test_fenced_json_fallback(self):
        raw = 'Sure.\n```json\n[{"type": "create_feed_item", "title": "Shipped"}]\n```'
        parsed = parse_model_output(raw)
        assert parsed.clean_text == "Sure."
        assert parsed.actions[0].title == "Shipped"

    def test_none_input(self):
        parsed = parse_model_output(None)
        assert parsed.clean_text == ""
        assert parsed.actions == []


class TestStripInternalIds:
    def test_removes_ids_and_uuids(self):
        text = "Finished (task_id=42) for run 0f8fad5b-d9cb-469f-a165-70867728950e today."
        assert strip_internal_ids(text) == "Finished for run today."

    def test_plain_text_untouched(self):
        assert strip_internal_ids("Nothing to strip here.") == "Nothing to strip here."
