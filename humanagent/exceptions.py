"""Error taxonomy of the agent pipeline.

Only ``ProviderTransient`` and ``ProviderFatal`` terminate a run by raising.
``ParseUnrecognized`` and ``ActionConflict`` are recorded and swallowed per
directive.  Security vetoes, exhausted budgets and stale tasks are run
outcomes, reported through ``RunResult.status`` and the audit log.
"""

from __future__ import annotations


class HumanAgentError(Exception):
    """Base class for runtime errors."""


class ProviderError(HumanAgentError):
    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderTransient(ProviderError):
    """Timeout, rate limit or 5xx – worth another attempt."""


class ProviderFatal(ProviderError):
    """Auth, billing, quota or configuration problem – retrying cannot help."""


class ParseUnrecognized(HumanAgentError):
    def __init__(self, message: str, *, raw: object = None):
        super().__init__(message)
        self.raw = raw


class ActionConflict(HumanAgentError):
    """Conditional task update lost the race."""


class A2ARejected(HumanAgentError):
    """Agent-to-agent message refused (A2A disabled, not reachable, hop limit)."""


__all__ = [
    "HumanAgentError",
    "ProviderError",
    "ProviderTransient",
    "ProviderFatal",
    "ParseUnrecognized",
    "ActionConflict",
    "A2ARejected",
]
