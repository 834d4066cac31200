"""Plugin server configuration and its on-disk catalog.

The catalog is ``mcp-servers.json`` in the per-user data directory: a JSON
list of server records. Secret values never appear in it, only the names of
the environment variables whose values live in secure storage.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from aidaemon.exceptions import ConfigError

logger = logging.getLogger(__name__)

CATALOG_FILE_NAME = "mcp-servers.json"

CATALOG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "array",
    "items": {
        "type": "object",
        "required": ["id", "name", "transport"],
        "properties": {
            "id": {"type": "string", "minLength": 1},
            "name": {"type": "string", "minLength": 1},
            "transport": {"enum": ["stdio", "http"]},
            "command": {"type": ["string", "null"]},
            "arguments": {"type": ["array", "null"], "items": {"type": "string"}},
            "url": {"type": ["string", "null"]},
            "environmentKeys": {"type": ["array", "null"], "items": {"type": "string"}},
            "enabled": {"type": "boolean"},
        },
    },
}

_catalog_validator = Draft202012Validator(CATALOG_SCHEMA)


class TransportKind(Enum):
    """How a plugin server is reached."""

    STDIO = "stdio"
    HTTP = "http"


@dataclass(frozen=True)
class PluginServerConfig:
    """Persisted configuration of one plugin server."""

    name: str
    transport: TransportKind
    id: str = field(default_factory=lambda: str(uuid.uuid4()).upper())
    command: str | None = None
    arguments: tuple[str, ...] = ()
    url: str | None = None
    environment_keys: tuple[str, ...] = ()
    enabled: bool = True

    def with_changes(self, **changes: Any) -> PluginServerConfig:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the catalog's JSON record."""
        record: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "transport": self.transport.value,
            "enabled": self.enabled,
        }
        if self.command is not None:
            record["command"] = self.command
        if self.arguments:
            record["arguments"] = list(self.arguments)
        if self.url is not None:
            record["url"] = self.url
        if self.environment_keys:
            record["environmentKeys"] = list(self.environment_keys)
        return record

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> PluginServerConfig:
        return cls(
            id=record["id"],
            name=record["name"],
            transport=TransportKind(record["transport"]),
            command=record.get("command"),
            arguments=tuple(record.get("arguments") or ()),
            url=record.get("url"),
            environment_keys=tuple(record.get("environmentKeys") or ()),
            enabled=record.get("enabled", True),
        )


def default_data_dir() -> Path:
    """Per-user data directory for aidaemon files."""
    override = os.environ.get("AIDAEMON_DATA_DIR")
    if override:
        return Path(override).expanduser()
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".local" / "share"
    return base / "aidaemon"


class ServerCatalog:
    """Loads and saves the list of configured plugin servers."""

    def __init__(self, path: Path) -> None:
        """Initialize the catalog.

        Args:
            path: Location of the JSON catalog file.
        """
        self.path = path

    @classmethod
    def in_data_dir(cls, data_dir: Path | None = None) -> ServerCatalog:
        return cls((data_dir or default_data_dir()) / CATALOG_FILE_NAME)

    def load(self) -> list[PluginServerConfig]:
        """Read the catalog.

        Returns:
            Configured servers; empty when the file does not exist yet.

        Raises:
            ConfigError: If the file is unreadable or fails schema validation.
        """
        if not self.path.exists():
            logger.info("No server catalog at %s, starting fresh", self.path)
            return []

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read server catalog {self.path}: {e}") from e

        errors = sorted(_catalog_validator.iter_errors(data), key=lambda err: list(err.path))
        if errors:
            first = errors[0]
            location = "/".join(str(p) for p in first.absolute_path) or "root"
            raise ConfigError(
                f"Invalid server catalog {self.path} at {location}: {first.message}",
                {"errors": [err.message for err in errors]},
            )

        servers = [PluginServerConfig.from_dict(record) for record in data]
        logger.info("Loaded %d server configs", len(servers))
        return servers

    def save(self, servers: list[PluginServerConfig]) -> None:
        """Write the catalog atomically.

        Args:
            servers: Servers to persist.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps([s.to_dict() for s in servers], indent=2, sort_keys=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(payload + "\n", encoding="utf-8")
        os.replace(tmp_path, self.path)
        logger.info("Saved %d server configs", len(servers))


class Preset(Enum):
    """Ready-made configurations for common plugin servers."""

    FILESYSTEM = "filesystem"
    GITHUB = "github"
    BRAVE_SEARCH = "brave_search"

    @property
    def display_name(self) -> str:
        return {
            Preset.FILESYSTEM: "Filesystem",
            Preset.GITHUB: "GitHub",
            Preset.BRAVE_SEARCH: "Brave Search",
        }[self]

    @property
    def description(self) -> str:
        return {
            Preset.FILESYSTEM: "Read, write, and search files in allowed directories",
            Preset.GITHUB: "Browse repos, issues, pull requests, and files on GitHub",
            Preset.BRAVE_SEARCH: "Search the web using Brave Search API",
        }[self]

    def make_config(self) -> PluginServerConfig:
        """Build a fresh server config for this preset."""
        if self == Preset.FILESYSTEM:
            home = Path.home()
            return PluginServerConfig(
                name="Filesystem",
                transport=TransportKind.STDIO,
                command="npx",
                arguments=(
                    "-y",
                    "@modelcontextprotocol/server-filesystem",
                    str(home / "Desktop"),
                    str(home / "Documents"),
                    str(home / "Downloads"),
                ),
            )
        if self == Preset.GITHUB:
            return PluginServerConfig(
                name="GitHub",
                transport=TransportKind.STDIO,
                command="npx",
                arguments=("-y", "@modelcontextprotocol/server-github"),
                environment_keys=("GITHUB_PERSONAL_ACCESS_TOKEN",),
            )
        return PluginServerConfig(
            name="Brave Search",
            transport=TransportKind.STDIO,
            command="npx",
            arguments=("-y", "@modelcontextprotocol/server-brave-search"),
            environment_keys=("BRAVE_API_KEY",),
        )
