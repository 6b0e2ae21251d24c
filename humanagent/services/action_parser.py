"""Split raw model output into thinking, user-facing text and action directives.

Output contract (see prompt templates)::

    <thinking>private reasoning</thinking>
    Human readable answer...
    <app_actions>[{"type": "update_task_status", ...}]</app_actions>

Unknown or malformed directives never fail the run: they are collected in
:attr:`ParsedResponse.rejected` and logged.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import List
from typing import Optional

from pydantic import ValidationError

from humanagent.exceptions import ParseUnrecognized
from humanagent.schemas.actions import ACTION_TYPES
from humanagent.schemas.actions import app_action_adapter

logger = logging.getLogger(__name__)

_THINKING_RE = re.compile(r"<thinking>(.*?)</thinking>", re.IGNORECASE | re.DOTALL)
_UNCLOSED_THINKING_RE = re.compile(r"<thinking>.*\Z", re.IGNORECASE | re.DOTALL)
_ACTIONS_RE = re.compile(r"<app_actions>\s*(.*?)\s*</app_actions>", re.IGNORECASE | re.DOTALL)
_UNCLOSED_ACTIONS_RE = re.compile(r"<app_actions>\s*(.*)\Z", re.IGNORECASE | re.DOTALL)
_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\[\s*\{.*?\}\s*\])\s*```", re.DOTALL)

_UUID_RE = re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.IGNORECASE)
_ID_ASSIGNMENT_RE = re.compile(
    r"\(?\b(?:task|parent_?task|skill|node|source_?node|target_?node|column)_?id\s*[=:]\s*\"?\d+\"?\)?",
    re.IGNORECASE,
)


@dataclass
class ParsedResponse:
    clean_text: str
    thinking: Optional[str] = None
    actions: List[Any] = field(default_factory=list)
    rejected: List[ParseUnrecognized] = field(default_factory=list)


def _extract_thinking(raw: str) -> tuple[str, Optional[str]]:
    blocks = [b.strip() for b in _THINKING_RE.findall(raw) if b.strip()]
    without = _THINKING_RE.sub("", raw)
    # A truncated response may leave an opening tag behind.
    without = _UNCLOSED_THINKING_RE.sub("", without)
    return without, ("\n\n".join(blocks) or None)


def _extract_action_json(text: str) -> tuple[str, Optional[str]]:
    match = _ACTIONS_RE.search(text) or _UNCLOSED_ACTIONS_RE.search(text)
    if match:
        return text.replace(match.group(0), ""), match.group(1).strip()
    fenced = _FENCED_JSON_RE.search(text)
    if fenced and '"type"' in fenced.group(1):
        return text.replace(fenced.group(0), ""), fenced.group(1)
    return text, None


def _validate(item: Any, index: int) -> tuple[Any, Optional[ParseUnrecognized]]:
    if not isinstance(item, dict):
        return None, ParseUnrecognized(f"directive #{index} is not an object", raw=item)
    action_type = item.get("type")
    if action_type not in ACTION_TYPES:
        return None, ParseUnrecognized(f"unknown action type {action_type!r}", raw=item)
    try:
        return app_action_adapter.validate_python(item), None
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        return None, ParseUnrecognized(f"invalid {action_type} directive ({fields})", raw=item)


def parse_model_output(raw: Optional[str]) -> ParsedResponse:
    """Parse *raw* model output.  Never raises."""

    raw = raw or ""
    without_thinking, thinking = _extract_thinking(raw)
    text, action_json = _extract_action_json(without_thinking)
    parsed = ParsedResponse(clean_text=re.sub(r"\n{3,}", "\n\n", text).strip(), thinking=thinking)

    if not action_json:
        return parsed

    try:
        payload = json.loads(action_json)
    except json.JSONDecodeError as exc:
        parsed.rejected.append(ParseUnrecognized(f"action block is not valid JSON: {exc.msg}", raw=action_json[:200]))
        payload = []

    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        parsed.rejected.append(ParseUnrecognized("action block is not a JSON array", raw=payload))
        payload = []

    for index, item in enumerate(payload):
        action, error = _validate(item, index)
        if action is not None:
            parsed.actions.append(action)
        else:
            parsed.rejected.append(error)

    for error in parsed.rejected:
        logger.warning("dropping model directive: %s", error)
    return parsed


def strip_internal_ids(text: str) -> str:
    """Remove internal identifiers from user-visible text."""
    cleaned = _ID_ASSIGNMENT_RE.sub("", text or "")
    cleaned = _UUID_RE.sub("", cleaned)
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
    return re.sub(r"\n{3,}", "\n\n", cleaned).strip()


__all__ = ["ParsedResponse", "parse_model_output", "strip_internal_ids"]
