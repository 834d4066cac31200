"""Secret storage for plugin credentials and the cloud API key.

Secrets are addressed by a flat string key. Plugin environment values use
``mcp-env-{server_id}-{NAME}`` so removing a server can clear exactly its
own entries.
"""

from __future__ import annotations

import os
import re
import threading
from abc import ABC, abstractmethod


def env_secret_key(server_id: str, name: str) -> str:
    """Storage key for one plugin environment variable."""
    return f"mcp-env-{server_id}-{name}"


class SecretStore(ABC):
    """Key/value store for secret strings."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the secret, or None when it is not stored."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store or replace a secret."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a secret; missing keys are ignored."""


class InMemorySecretStore(SecretStore):
    """Process-local store, used by tests and one-off sessions."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)


class EnvironmentSecretStore(SecretStore):
    """Reads secrets from environment variables.

    A key maps to ``{prefix}{KEY}`` with every non-alphanumeric character
    replaced by ``_``; ``mcp-env-abc-BRAVE_API_KEY`` is read from
    ``AIDAEMON_MCP_ENV_ABC_BRAVE_API_KEY``. Writes only affect this process.
    """

    def __init__(self, prefix: str = "AIDAEMON_") -> None:
        self.prefix = prefix

    def variable_name(self, key: str) -> str:
        return self.prefix + re.sub(r"[^A-Za-z0-9]", "_", key).upper()

    def get(self, key: str) -> str | None:
        value = os.environ.get(self.variable_name(key))
        return value if value else None

    def set(self, key: str, value: str) -> None:
        os.environ[self.variable_name(key)] = value

    def delete(self, key: str) -> None:
        os.environ.pop(self.variable_name(key), None)
