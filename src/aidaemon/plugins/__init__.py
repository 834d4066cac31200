"""Plugin servers: persisted configuration, secrets and connection management."""

from aidaemon.plugins.config import (
    PluginServerConfig,
    Preset,
    ServerCatalog,
    TransportKind,
    default_data_dir,
)
from aidaemon.plugins.manager import (
    ConnectionState,
    McpToolExecutor,
    PluginConnectionStatus,
    ServerManager,
    tool_registry_id,
)
from aidaemon.plugins.secrets import (
    EnvironmentSecretStore,
    InMemorySecretStore,
    SecretStore,
    env_secret_key,
)

__all__ = [
    "ConnectionState",
    "EnvironmentSecretStore",
    "InMemorySecretStore",
    "McpToolExecutor",
    "PluginConnectionStatus",
    "PluginServerConfig",
    "Preset",
    "SecretStore",
    "ServerCatalog",
    "ServerManager",
    "TransportKind",
    "default_data_dir",
    "env_secret_key",
    "tool_registry_id",
]
