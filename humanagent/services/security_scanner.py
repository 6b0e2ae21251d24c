"""Input security scanner.

Every piece of untrusted text that can reach a prompt (task descriptions,
inbound agent messages, tool output) goes through :func:`scan_input` first.
The function is pure: it never touches the database.  Persisting flags is a
separate step (:func:`record_flags`) performed by the pipeline.

Severity model
--------------
* ``prompt_injection`` / ``exfiltration`` patterns → ``block``
* ``sensitive_data`` patterns → ``warn`` (allowed, but redacted in
  :attr:`ScanVerdict.sanitized`)

The catalogue is data, not code: callers can build a :class:`SecurityScanner`
with their own list of :class:`SecurityPattern` entries.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from dataclasses import field
from typing import Literal
from typing import Optional
from typing import Sequence

from sqlalchemy.orm import Session

from humanagent.crud import crud
from humanagent.metrics import security_verdicts_total

logger = logging.getLogger(__name__)

FlagKind = Literal["prompt_injection", "exfiltration", "sensitive_data"]
Severity = Literal["warn", "block"]

_MATCH_PREVIEW = 50


@dataclass(frozen=True)
class SecurityPattern:
    kind: FlagKind
    regex: re.Pattern
    severity: Severity
    # Replacement used when sanitising matched text.
    replacement: str = "[BLOCKED]"


@dataclass(frozen=True)
class SecurityFlag:
    kind: FlagKind
    pattern: str
    match: str
    severity: Severity


@dataclass(frozen=True)
class ScanVerdict:
    verdict: Literal["allow", "block"]
    severity: Literal["safe", "warn", "block"]
    reason: Optional[str] = None
    flags: tuple = field(default_factory=tuple)
    sanitized: str = ""

    @property
    def blocked(self) -> bool:
        return self.verdict == "block"


def _p(kind: FlagKind, pattern: str, severity: Severity, replacement: str = "[BLOCKED]", flags=re.IGNORECASE):
    return SecurityPattern(kind=kind, regex=re.compile(pattern, flags), severity=severity, replacement=replacement)


INJECTION_PATTERNS = (
    # Direct instruction overrides
    _p("prompt_injection", r"ignore\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?)", "block"),
    _p("prompt_injection", r"disregard\s+(all\s+)?(your\s+)?(instructions?|rules?|guidelines?)", "block"),
    _p("prompt_injection", r"forget\s+(everything|all)\s+(you|your)", "block"),
    # Role manipulation
    _p("prompt_injection", r"you\s+are\s+(now|actually)\s+(a\s+)?(?!my\s+agent)", "block"),
    _p("prompt_injection", r"pretend\s+(to\s+)?be\s+(?!helpful)", "block"),
    _p("prompt_injection", r"act\s+as\s+(if|though)\s+you", "block"),
    # System prompt extraction
    _p("prompt_injection", r"what\s+(is|are)\s+your\s+(system\s+)?prompt", "block"),
    _p("prompt_injection", r"reveal\s+your\s+(instructions|prompts?|rules)", "block"),
    _p("prompt_injection", r"show\s+me\s+your\s+(original|initial)\s+(instructions?|prompt)", "block"),
    # Output manipulation
    _p("prompt_injection", r"output\s+(only|just)\s+the\s+(following|text)", "block"),
    _p("prompt_injection", r"respond\s+with\s+(only|just)\s+\"[^\"]+\"", "block"),
    # Jailbreaks
    _p("prompt_injection", r"\bDAN\s*[:=]|do\s+anything\s+now", "block"),
    _p("prompt_injection", r"developer\s+mode|sudo\s+mode", "block"),
    _p("prompt_injection", r"jailbreak|bypass\s+(your\s+)?restrictions", "block"),
    # Encoded payloads
    _p("prompt_injection", r"base64\s*[:=]\s*[A-Za-z0-9+/=]+", "block", "[BASE64_REMOVED]"),
    _p("prompt_injection", r"\bhex\s*[:=]\s*[0-9a-fA-F]+", "block"),
)

EXFILTRATION_PATTERNS = (
    _p("exfiltration", r"send\s+(this|my|the)\s+(data|info|details)\s+to\s+\S+", "block"),
    _p("exfiltration", r"post\s+to\s+https?://", "block"),
    _p("exfiltration", r"\bcurl\b|\bwget\b|\bfetch\s*\(", "block"),
    _p("exfiltration", r"upload\s+(this|my|the)\s+(file|data)", "block"),
    _p("exfiltration", r"(print|reveal|send|share)\s+(your\s+)?(api[_\s-]?keys?|credentials|secrets)", "block"),
)

SENSITIVE_PATTERNS = (
    _p("sensitive_data", r"(?:api[_-]?key|secret[_-]?key|password|token|bearer)\s*[:=]\s*\S+", "warn", "[REDACTED]"),
    _p("sensitive_data", r"sk-[a-zA-Z0-9_-]{20,}", "warn", "[REDACTED]"),
    _p("sensitive_data", r"ghp_[a-zA-Z0-9]{36}", "warn", "[REDACTED]"),
    _p("sensitive_data", r"xox[baprs]-[0-9a-zA-Z-]+", "warn", "[REDACTED]"),
    _p("sensitive_data", r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b", "warn", "[REDACTED]", 0),
    _p("sensitive_data", r"\b\d{3}-\d{2}-\d{4}\b", "warn", "[REDACTED]", 0),
)

DEFAULT_CATALOGUE: tuple = INJECTION_PATTERNS + EXFILTRATION_PATTERNS + SENSITIVE_PATTERNS

_ESCAPES = (re.compile(r"\\x[0-9a-fA-F]{2}"), re.compile(r"\\u[0-9a-fA-F]{4}"))


class SecurityScanner:
    """Pattern-catalogue scanner.  Stateless once constructed."""

    def __init__(self, catalogue: Sequence[SecurityPattern] = DEFAULT_CATALOGUE):
        self.catalogue = tuple(catalogue)

    def scan(self, text: Optional[str]) -> ScanVerdict:
        text = text or ""
        flags = []
        for entry in self.catalogue:
            found = entry.regex.search(text)
            if not found:
                continue
            shown = "[REDACTED]" if entry.kind == "sensitive_data" else found.group(0)[:_MATCH_PREVIEW]
            flags.append(
                SecurityFlag(kind=entry.kind, pattern=entry.regex.pattern, match=shown, severity=entry.severity)
            )

        blocking = [f for f in flags if f.severity == "block"]
        if blocking:
            kinds = sorted({f.kind for f in blocking})
            verdict = ScanVerdict(
                verdict="block",
                severity="block",
                reason=f"Input blocked by security scan ({', '.join(kinds)})",
                flags=tuple(flags),
                sanitized=self.sanitize(text),
            )
        else:
            verdict = ScanVerdict(
                verdict="allow",
                severity="warn" if flags else "safe",
                flags=tuple(flags),
                sanitized=self.sanitize(text),
            )
        security_verdicts_total.labels(verdict.severity).inc()
        return verdict

    def sanitize(self, text: str) -> str:
        sanitized = text
        for entry in self.catalogue:
            sanitized = entry.regex.sub(entry.replacement, sanitized)
        for escape in _ESCAPES:
            sanitized = escape.sub("", sanitized)
        return sanitized


_default_scanner = SecurityScanner()


def scan_input(text: Optional[str], *, scanner: Optional[SecurityScanner] = None) -> ScanVerdict:
    """Scan *text* with the default catalogue (or *scanner*)."""
    return (scanner or _default_scanner).scan(text)


def sanitize_input(text: Optional[str], *, scanner: Optional[SecurityScanner] = None) -> str:
    """Redact catalogue matches in *text* without producing a verdict."""
    return (scanner or _default_scanner).sanitize(text or "")


def record_flags(
    db: Session,
    verdict: ScanVerdict,
    *,
    source: str,
    owner_id: Optional[int] = None,
    agent_id: Optional[int] = None,
    task_id: Optional[int] = None,
) -> int:
    """Persist *verdict* flags; returns the number stored."""
    for flag in verdict.flags:
        crud.create_security_flag(
            db,
            source=source,
            flag_type=flag.kind,
            pattern=flag.pattern[:200],
            match=flag.match,
            severity=flag.severity,
            owner_id=owner_id,
            agent_id=agent_id,
            task_id=task_id,
        )
    if verdict.flags:
        logger.warning(
            "security flags recorded source=%s agent_id=%s task_id=%s verdict=%s kinds=%s",
            source,
            agent_id,
            task_id,
            verdict.verdict,
            sorted({f.kind for f in verdict.flags}),
        )
    return len(verdict.flags)


__all__ = [
    "SecurityPattern",
    "SecurityFlag",
    "ScanVerdict",
    "SecurityScanner",
    "DEFAULT_CATALOGUE",
    "scan_input",
    "sanitize_input",
    "record_flags",
]
