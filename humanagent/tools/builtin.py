"""Built-in tools available to ``call_tool`` directives."""

import datetime as dt
import uuid
from typing import List
from typing import Optional

from langchain_core.tools import StructuredTool

from humanagent.utils.time import utc_now


def get_current_time() -> str:
    """Return the current UTC date/time as ISO-8601 string (tz-aware)."""
    return utc_now().isoformat()


def datetime_diff(start_time: str, end_time: str, unit: Optional[str] = "seconds") -> float:
    """Calculate the difference between two datetime strings.

    Args:
        start_time: Start datetime in ISO-8601 format
        end_time: End datetime in ISO-8601 format
        unit: Unit for the result - "seconds", "minutes", "hours", or "days"

    Raises:
        ValueError: If datetime strings cannot be parsed or unit is invalid
    """
    try:
        start_dt = dt.datetime.fromisoformat(start_time.replace("Z", "+00:00"))
        end_dt = dt.datetime.fromisoformat(end_time.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"Invalid datetime format: {e}") from e

    divisors = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}
    if unit not in divisors:
        raise ValueError(f"Invalid unit '{unit}'. Must be one of: seconds, minutes, hours, days")
    return (end_dt - start_dt).total_seconds() / divisors[unit]


def generate_uuid() -> str:
    """Return a random UUID4 string."""
    return str(uuid.uuid4())


def word_count(text: str) -> int:
    """Count whitespace separated words in *text*."""
    return len(text.split())


BUILTIN_TOOLS: List[StructuredTool] = [
    StructuredTool.from_function(
        func=get_current_time, name="get_current_time", description="Get the current date and time in ISO-8601 format"
    ),
    StructuredTool.from_function(
        func=datetime_diff, name="datetime_diff", description="Calculate the difference between two dates/times"
    ),
    StructuredTool.from_function(func=generate_uuid, name="generate_uuid", description="Generate a random UUID"),
    StructuredTool.from_function(func=word_count, name="word_count", description="Count the words in a text"),
]

__all__ = ["BUILTIN_TOOLS"]
