"""Application configuration.

Settings are read from a YAML file where every key is optional. String
values may reference environment variables with ``${VAR_NAME}`` syntax.

Example::

    autonomy_level: auto_execute
    routing_mode: auto
    anthropic:
      model: claude-sonnet-4-5-20250929
      api_key: ${ANTHROPIC_API_KEY}
    local:
      base_url: http://127.0.0.1:8080/v1
    audit:
      log_file: ${HOME}/.local/share/aidaemon/audit.log
    agent:
      max_rounds: 10
      turn_timeout: 90
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from aidaemon.exceptions import ConfigError
from aidaemon.models.anthropic import DEFAULT_MODEL as DEFAULT_CLOUD_MODEL
from aidaemon.models.local import DEFAULT_BASE_URL, DEFAULT_MODEL as DEFAULT_LOCAL_MODEL
from aidaemon.models.router import RoutingMode
from aidaemon.plugins.config import default_data_dir
from aidaemon.security.policy import AutonomyLevel

DEFAULT_MAX_ROUNDS = 10
DEFAULT_TURN_TIMEOUT = 90.0
DEFAULT_MCP_TIMEOUT = 30.0


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports ${VAR_NAME} syntax. Unknown variables are left unchanged.

    Args:
        value: String potentially containing environment variable references.

    Returns:
        String with known environment variables expanded.
    """
    pattern = re.compile(r"\$\{([^}]+)\}")

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is not None:
            return env_value
        if var_name == "HOME":
            return os.path.expanduser("~")
        return match.group(0)

    return pattern.sub(replacer, value)


def _section(config: dict[str, Any], name: str) -> dict[str, Any]:
    section = config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return section


def _optional_str(section: dict[str, Any], key: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    expanded = expand_env_vars(str(value))
    # An unset ${VAR} reference counts as missing
    if not expanded or re.fullmatch(r"\$\{[^}]+\}", expanded):
        return None
    return expanded


def _number(section: dict[str, Any], key: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise ConfigError(f"'{key}' must be a positive number, got {value!r}")
    return float(value)


def _enum(enum_cls: type, raw: Any, key: str, default: Any) -> Any:
    if raw is None:
        return default
    try:
        return enum_cls(str(raw))
    except ValueError as e:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigError(f"'{key}' must be one of: {allowed}") from e


@dataclass
class AppConfig:
    """Runtime settings for one aidaemon session."""

    autonomy_level: AutonomyLevel = AutonomyLevel.AUTO_EXECUTE
    routing_mode: RoutingMode = RoutingMode.AUTO

    anthropic_model: str = DEFAULT_CLOUD_MODEL
    anthropic_api_key: str | None = None

    local_base_url: str = DEFAULT_BASE_URL
    local_model: str = DEFAULT_LOCAL_MODEL

    data_dir: Path | None = None
    audit_log_file: Path | None = None

    max_rounds: int = DEFAULT_MAX_ROUNDS
    turn_timeout: float = DEFAULT_TURN_TIMEOUT

    mcp_init_timeout: float = DEFAULT_MCP_TIMEOUT
    mcp_call_timeout: float = DEFAULT_MCP_TIMEOUT
    mcp_ready_timeout: float = DEFAULT_MCP_TIMEOUT

    @property
    def resolved_data_dir(self) -> Path:
        return self.data_dir or default_data_dir()

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> AppConfig:
        """Create an AppConfig from a configuration dictionary.

        Args:
            config: Dictionary parsed from YAML configuration.

        Returns:
            AppConfig with defaults for every missing key.

        Raises:
            ConfigError: If a value has the wrong type or an unknown choice.
        """
        anthropic = _section(config, "anthropic")
        local = _section(config, "local")
        audit = _section(config, "audit")
        agent = _section(config, "agent")
        mcp = _section(config, "mcp")

        data_dir = _optional_str(config, "data_dir")
        log_file = _optional_str(audit, "log_file")

        return cls(
            autonomy_level=_enum(
                AutonomyLevel, config.get("autonomy_level"), "autonomy_level",
                AutonomyLevel.AUTO_EXECUTE,
            ),
            routing_mode=_enum(
                RoutingMode, config.get("routing_mode"), "routing_mode", RoutingMode.AUTO
            ),
            anthropic_model=_optional_str(anthropic, "model") or DEFAULT_CLOUD_MODEL,
            anthropic_api_key=_optional_str(anthropic, "api_key"),
            local_base_url=_optional_str(local, "base_url") or DEFAULT_BASE_URL,
            local_model=_optional_str(local, "model") or DEFAULT_LOCAL_MODEL,
            data_dir=Path(data_dir).expanduser() if data_dir else None,
            audit_log_file=Path(log_file).expanduser() if log_file else None,
            max_rounds=int(_number(agent, "max_rounds", DEFAULT_MAX_ROUNDS)),
            turn_timeout=_number(agent, "turn_timeout", DEFAULT_TURN_TIMEOUT),
            mcp_init_timeout=_number(mcp, "init_timeout", DEFAULT_MCP_TIMEOUT),
            mcp_call_timeout=_number(mcp, "call_timeout", DEFAULT_MCP_TIMEOUT),
            mcp_ready_timeout=_number(mcp, "ready_timeout", DEFAULT_MCP_TIMEOUT),
        )


def load_config(path: Path | None) -> AppConfig:
    """Load application settings from a YAML file.

    Args:
        path: Path to the YAML file, or None for all defaults.

    Returns:
        AppConfig instance.

    Raises:
        ConfigError: If the file cannot be found, parsed, or validated.
    """
    if path is None:
        return AppConfig()

    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path) as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config YAML: {e}") from e

    if config is None:
        return AppConfig()
    if not isinstance(config, dict):
        raise ConfigError("Config must be a YAML mapping")

    return AppConfig.from_dict(config)
