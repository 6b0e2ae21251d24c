"""Credential resolver for model and delivery providers.

Instantiated per run with the agent's id.  Resolution order:

1. Agent-level override (``provider_credentials`` row with ``agent_id``)
2. Account-level credential (row with ``owner_id`` and no ``agent_id``)
3. Process environment (``OPENAI_API_KEY`` & co. via :class:`Settings`)

Decrypted values are cached for the lifetime of the resolver and are never
logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal
from typing import Optional

from sqlalchemy.orm import Session

from humanagent.config import get_settings
from humanagent.models.models import ProviderCredential
from humanagent.utils.crypto import decrypt

logger = logging.getLogger(__name__)

Source = Literal["agent", "account", "env", "none"]

# Provider name -> Settings attribute used as last resort.
_ENV_FALLBACK = {
    "openai": "openai_api_key",
    "anthropic": "anthropic_api_key",
    "openrouter": "openrouter_api_key",
    "elevenlabs": "elevenlabs_api_key",
    "agentmail": "agentmail_api_key",
}


@dataclass(frozen=True)
class ResolvedCredential:
    api_key: str
    source: Source
    base_url: Optional[str] = None


class CredentialResolver:
    """Resolves and decrypts provider credentials for one agent.

    Usage::

        resolver = CredentialResolver(agent_id=42, db=session, owner_id=1)
        cred = resolver.get("openai")
        if cred:
            client = AsyncOpenAI(api_key=cred.api_key)
    """

    def __init__(self, agent_id: Optional[int], db: Session, *, owner_id: Optional[int] = None):
        self.agent_id = agent_id
        self.owner_id = owner_id
        self.db = db
        self._cache: dict[str, Optional[ResolvedCredential]] = {}

    def get(self, provider: str) -> Optional[ResolvedCredential]:
        provider = provider.lower()
        if provider in self._cache:
            return self._cache[provider]

        resolved = self._resolve_agent(provider)
        if resolved is None and self.owner_id is not None:
            resolved = self._resolve_account(provider)
        if resolved is None:
            resolved = self._resolve_env(provider)

        self._cache[provider] = resolved
        logger.debug(
            "credential_resolver.resolve agent_id=%s owner_id=%s provider=%s source=%s",
            self.agent_id,
            self.owner_id,
            provider,
            resolved.source if resolved else "none",
        )
        return resolved

    def api_key(self, provider: str) -> Optional[str]:
        resolved = self.get(provider)
        return resolved.api_key if resolved else None

    def has(self, provider: str) -> bool:
        return self.get(provider) is not None

    def _decrypt_row(self, row: Optional[ProviderCredential], source: Source) -> Optional[ResolvedCredential]:
        if row is None:
            return None
        try:
            return ResolvedCredential(api_key=decrypt(row.encrypted_value), source=source, base_url=row.base_url)
        except ValueError as e:
            # Wrong key or corrupted ciphertext; fall through to the next source.
            logger.warning(
                "Failed to decrypt %s credential agent_id=%s provider=%s: %s",
                source,
                self.agent_id,
                row.provider,
                str(e),
            )
            return None

    def _resolve_agent(self, provider: str) -> Optional[ResolvedCredential]:
        if self.agent_id is None:
            return None
        row = (
            self.db.query(ProviderCredential)
            .filter(ProviderCredential.agent_id == self.agent_id, ProviderCredential.provider == provider)
            .order_by(ProviderCredential.id.desc())
            .first()
        )
        return self._decrypt_row(row, "agent")

    def _resolve_account(self, provider: str) -> Optional[ResolvedCredential]:
        row = (
            self.db.query(ProviderCredential)
            .filter(
                ProviderCredential.owner_id == self.owner_id,
                ProviderCredential.agent_id.is_(None),
                ProviderCredential.provider == provider,
            )
            .order_by(ProviderCredential.id.desc())
            .first()
        )
        return self._decrypt_row(row, "account")

    def _resolve_env(self, provider: str) -> Optional[ResolvedCredential]:
        attr = _ENV_FALLBACK.get(provider)
        value = getattr(get_settings(), attr, None) if attr else None
        if not value:
            return None
        return ResolvedCredential(api_key=value, source="env")

    def clear_cache(self) -> None:
        self._cache.clear()


__all__ = ["CredentialResolver", "ResolvedCredential"]
