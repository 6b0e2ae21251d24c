"""Centralised configuration helper.

This module eliminates scattered ``os.getenv`` calls by exposing a
:class:`Settings` instance (retrieved via :func:`get_settings`).  Values come
from the process environment, optionally seeded from a ``.env`` file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# ``_REPO_ROOT`` points to the directory holding the ``humanagent`` package.
_REPO_ROOT = Path(__file__).resolve().parents[2]


def _truthy(value: str | None) -> bool:  # noqa: D401 – small helper
    """Return *True* when *value* looks like an affirmative string."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:  # noqa: D401 – simple data container
    """Lightweight settings container populated from environment variables."""

    # Runtime flags -----------------------------------------------------
    testing: bool
    log_level: str
    environment: Any

    # Database ---------------------------------------------------------
    database_url: str

    # Cryptography -----------------------------------------------------
    fernet_secret: Any

    # LLM defaults -----------------------------------------------------
    default_provider: str
    default_model: str
    llm_timeout_seconds: float
    llm_max_retries: int

    # Provider keys (fallback when no stored credential exists) --------
    openai_api_key: Any
    anthropic_api_key: Any
    openrouter_api_key: Any
    elevenlabs_api_key: Any

    # Delivery ----------------------------------------------------------
    agentmail_api_key: Any
    agentmail_base_url: str
    agentmail_inbox: Any
    app_public_url: str | None

    # Scheduler & pipeline limits --------------------------------------
    scheduler_tick_minutes: int
    stale_task_minutes: int
    outcome_inline_limit: int
    thought_retention: int
    memory_retention: int

    # Dynamic guards (evaluated at runtime) -----------------------------
    @property
    def llm_disabled(self) -> bool:  # noqa: D401
        """Return True when outbound LLM calls are globally disabled."""
        return _truthy(os.getenv("LLM_DISABLED"))

    # Helper for tests to override values at runtime -------------------
    def override(self, **kwargs: Any) -> None:  # pragma: no cover – test util
        for key, value in kwargs.items():
            if not hasattr(self, key):
                raise AttributeError(f"Settings has no attribute '{key}'")
            setattr(self, key, value)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:  # noqa: D401 – helper
    """Populate :class:`Settings` from environment variables."""

    env_path = _REPO_ROOT / ".env"
    if env_path.exists():
        # Explicit environment wins over the file so tests can pin values.
        load_dotenv(env_path, override=False)

    testing = _truthy(os.getenv("TESTING"))

    return Settings(
        testing=testing,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        environment=os.getenv("ENVIRONMENT"),
        database_url=os.getenv("DATABASE_URL", ""),
        fernet_secret=os.getenv("FERNET_SECRET"),
        default_provider=os.getenv("DEFAULT_LLM_PROVIDER", "openai"),
        default_model=os.getenv("DEFAULT_LLM_MODEL", "gpt-4o-mini"),
        llm_timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "120")),
        llm_max_retries=int(os.getenv("LLM_MAX_RETRIES", "3")),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY"),
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY"),
        agentmail_api_key=os.getenv("AGENTMAIL_API_KEY"),
        agentmail_base_url=os.getenv("AGENTMAIL_BASE_URL", "https://api.agentmail.to/v0"),
        agentmail_inbox=os.getenv("AGENTMAIL_INBOX"),
        app_public_url=os.getenv("APP_PUBLIC_URL"),
        scheduler_tick_minutes=int(os.getenv("SCHEDULER_TICK_MINUTES", "5")),
        stale_task_minutes=int(os.getenv("STALE_TASK_MINUTES", "30")),
        outcome_inline_limit=int(os.getenv("OUTCOME_INLINE_LIMIT", "8000")),
        thought_retention=int(os.getenv("THOUGHT_RETENTION", "100")),
        memory_retention=int(os.getenv("MEMORY_RETENTION", "50")),
    )


# ------------------------------------------------------------------
# Runtime validation – fail fast when *required* settings are missing.
# ------------------------------------------------------------------


def _validate_required(settings: Settings) -> None:  # noqa: D401 – helper
    """Abort startup when mandatory configuration is missing.

    Tests run against in-memory SQLite with scripted models, so the check is
    skipped when ``TESTING`` is set.
    """

    if settings.testing:
        return

    missing_vars = []
    if not settings.database_url:
        missing_vars.append("DATABASE_URL")
    if not settings.fernet_secret:
        missing_vars.append("FERNET_SECRET")

    if missing_vars:
        raise RuntimeError(
            f"CRITICAL: Missing required environment variables: {', '.join(missing_vars)}\n"
            f"Set these in your .env file or deployment environment."
        )


def get_settings() -> Settings:  # noqa: D401 – public accessor
    """Return :class:`Settings` instance loaded from environment."""

    settings = _load_settings()
    _validate_required(settings)
    return settings


__all__ = [
    "Settings",
    "get_settings",
]
