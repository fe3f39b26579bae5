"""Interfaces of the services the engine consumes but does not own.

The secrets vault and the API connection directory live outside apiflow.
The in-memory implementations below back the tests and the CLI worker.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from pydantic import BaseModel, Field

from .config import ApiflowConfig
from .constants import DEFAULT_API_KEY_HEADER
from .contracts import utcnow
from .errors import NotFoundError

logger = logging.getLogger(__name__)


class AuthType(str, Enum):
    NONE = "NONE"
    API_KEY = "API_KEY"
    BEARER_TOKEN = "BEARER_TOKEN"
    BASIC_AUTH = "BASIC_AUTH"
    OAUTH2 = "OAUTH2"
    CUSTOM = "CUSTOM"


class SecretType(str, Enum):
    API_KEY = "api_key"
    BEARER_TOKEN = "bearer_token"
    BASIC_AUTH = "basic_auth"
    OAUTH2_TOKEN = "oauth2_token"
    WEBHOOK_SECRET = "webhook_secret"
    CUSTOM = "custom"


# Secret types that must be present before a connection of a given auth type
# can be called.
REQUIRED_SECRET_TYPES: Dict[AuthType, Tuple[SecretType, ...]] = {
    AuthType.NONE: (),
    AuthType.API_KEY: (SecretType.API_KEY,),
    AuthType.BEARER_TOKEN: (SecretType.BEARER_TOKEN,),
    AuthType.BASIC_AUTH: (SecretType.BASIC_AUTH,),
    AuthType.OAUTH2: (SecretType.OAUTH2_TOKEN,),
    AuthType.CUSTOM: (),
}


class ApiConnection(BaseModel):
    id: str
    base_url: str
    auth_type: AuthType = AuthType.NONE
    auth_header: str = DEFAULT_API_KEY_HEADER


class SecretMetadata(BaseModel):
    """Secret descriptor; never carries the secret value."""

    name: str
    type: SecretType
    is_active: bool = True
    expires_at: Optional[datetime] = None


class SecretsValidation(BaseModel):
    is_valid: bool
    missing: List[str] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)


class SecretsProvider(Protocol):
    """Protocol for the external secrets vault."""

    async def get_secrets_for_connection(
        self, user_id: str, connection_id: str
    ) -> List[SecretMetadata]:
        """Return metadata of the secrets linked to a connection."""

    async def get_secret_value(self, user_id: str, name: str) -> str:
        """Return the decrypted value of secret ``name``."""

    async def validate_connection_secrets(
        self, user_id: str, connection_id: str, required_types: Sequence[SecretType]
    ) -> SecretsValidation:
        """Check that every required secret type is present and usable."""


class ConnectionDirectory(Protocol):
    """Protocol for the read-only API connection directory."""

    async def get_connection(self, connection_id: str) -> Optional[ApiConnection]:
        """Return the connection or ``None`` when unknown."""


class InMemorySecretsProvider(SecretsProvider):
    """Keep secrets in local memory, keyed by user.

    Useful for tests and for single-host workers whose secrets are handed
    in through environment variables.
    """

    def __init__(self) -> None:
        self._values: Dict[Tuple[str, str], str] = {}
        self._metadata: Dict[Tuple[str, str], SecretMetadata] = {}
        self._links: Dict[Tuple[str, str], List[str]] = {}

    def add_secret(
        self,
        user_id: str,
        connection_id: str,
        name: str,
        secret_type: SecretType | str,
        value: str,
        expires_at: Optional[datetime] = None,
        is_active: bool = True,
    ) -> SecretMetadata:
        metadata = SecretMetadata(
            name=name,
            type=SecretType(secret_type),
            expires_at=expires_at,
            is_active=is_active,
        )
        self._values[(user_id, name)] = value
        self._metadata[(user_id, name)] = metadata
        linked = self._links.setdefault((user_id, connection_id), [])
        if name not in linked:
            linked.append(name)
        return metadata

    async def get_secrets_for_connection(
        self, user_id: str, connection_id: str
    ) -> List[SecretMetadata]:
        names = self._links.get((user_id, connection_id), [])
        return [self._metadata[(user_id, name)] for name in names]

    async def get_secret_value(self, user_id: str, name: str) -> str:
        try:
            return self._values[(user_id, name)]
        except KeyError:
            raise NotFoundError(f"Secret not found: {name}") from None

    async def validate_connection_secrets(
        self, user_id: str, connection_id: str, required_types: Sequence[SecretType]
    ) -> SecretsValidation:
        secrets = await self.get_secrets_for_connection(user_id, connection_id)
        found = {s.type for s in secrets}
        missing = [SecretType(t).value for t in required_types if SecretType(t) not in found]
        issues: List[str] = []
        now = utcnow()
        for required in required_types:
            secret = next((s for s in secrets if s.type == SecretType(required)), None)
            if secret is None:
                continue
            if not secret.is_active:
                issues.append(f"{secret.type.value} secret is inactive")
            elif secret.expires_at is not None and secret.expires_at < now:
                issues.append(f"{secret.type.value} secret expired")
        return SecretsValidation(
            is_valid=not missing and not issues, missing=missing, issues=issues
        )

    @classmethod
    def from_config(cls, config: ApiflowConfig) -> "InMemorySecretsProvider":
        """Build a provider from ``config.secrets`` reading values from env."""
        provider = cls()
        for entry in config.secrets:
            value = os.getenv(entry.value_env)
            if value is None:
                logger.warning(
                    f"Environment variable {entry.value_env} for secret {entry.name} is not set"
                )
                continue
            provider.add_secret(
                entry.user_id, entry.connection_id, entry.name, entry.type, value
            )
        return provider


class InMemoryConnectionDirectory(ConnectionDirectory):
    def __init__(self, connections: Iterable[ApiConnection] = ()) -> None:
        self._connections: Dict[str, ApiConnection] = {c.id: c for c in connections}

    def add(self, connection: ApiConnection) -> None:
        self._connections[connection.id] = connection

    async def get_connection(self, connection_id: str) -> Optional[ApiConnection]:
        return self._connections.get(connection_id)

    @classmethod
    def from_config(cls, config: ApiflowConfig) -> "InMemoryConnectionDirectory":
        return cls(ApiConnection(**c.model_dump()) for c in config.connections)
