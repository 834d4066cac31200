#!/usr/bin/env python3
"""aiDAEMON core - interactive command-line entry point.

Reads requests from stdin, runs each one through the orchestrator, and prints
the reply. Diagnostics go to stderr so stdout carries only replies.

================================================================================
DEVELOPER GUIDE: Adding Plugin Servers and Built-in Tools
================================================================================

PLUGIN SERVERS (MCP)
--------------------
Plugin servers are listed in mcp-servers.json in the data directory
($AIDAEMON_DATA_DIR, else $XDG_DATA_HOME/aidaemon, else
~/.local/share/aidaemon). Add one from a preset:

    python main.py --add-preset brave_search

or edit the file directly:

    [
      {
        "id": "5B0C6E1A-...",
        "name": "Brave Search",
        "transport": "stdio",
        "command": "npx",
        "arguments": ["-y", "@modelcontextprotocol/server-brave-search"],
        "environmentKeys": ["BRAVE_API_KEY"],
        "enabled": true
      }
    ]

Secret values are never stored in the file. Each environment key is read from
AIDAEMON_MCP_ENV_<SERVER_ID>_<NAME> (see aidaemon.plugins.secrets). Every tool
the server offers is registered as mcp__<server_name>__<tool_name>.

BUILT-IN TOOLS
--------------
Built-in tool schemas live in aidaemon.tools.builtin. This CLI ships no
platform executors, so every built-in is registered with a PlaceholderExecutor
that answers "<Tool> is not yet implemented.". A host supplies real ones:

    from aidaemon.tools import FunctionExecutor, ToolExecutionResult
    from aidaemon.tools.builtin import register_builtin_tools

    def system_info(arguments):
        return ToolExecutionResult.ok(f"Hostname: {socket.gethostname()}")

    register_builtin_tools(registry, {"system_info": FunctionExecutor(system_info)})

SECURITY NOTES
--------------
- Never hardcode credentials. Use environment variables or the secret store.
- Every tool call is sanitized, validated and checked by the policy engine.
- Dangerous tools always ask for confirmation, whatever the autonomy level.
- Configure audit.log_file to keep a JSON Lines record of every tool call.

================================================================================
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from aidaemon import __version__
from aidaemon.config import AppConfig, load_config
from aidaemon.conversation import Conversation
from aidaemon.exceptions import ConfigError
from aidaemon.models.anthropic import API_KEY_SECRET, AnthropicProvider
from aidaemon.models.local import LocalModelProvider
from aidaemon.models.router import ModelRouter, RoutingMode
from aidaemon.orchestrator import ConfirmationRequest, Orchestrator
from aidaemon.plugins.config import Preset, ServerCatalog
from aidaemon.plugins.manager import ServerManager
from aidaemon.plugins.secrets import EnvironmentSecretStore, SecretStore, env_secret_key
from aidaemon.security.audit import AuditLogger
from aidaemon.security.policy import AutonomyLevel, PolicyEngine
from aidaemon.tools.builtin import register_builtin_tools
from aidaemon.tools.registry import ToolRegistry

logger = logging.getLogger("aidaemon")

EXIT_WORDS = frozenset({"exit", "quit"})


def setup_logging(verbose: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[aidaemon] %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger("aidaemon")
    if not root.handlers:
        root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="aiDAEMON core: agent loop over local tools and MCP plugin servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=None,
        help="Path to YAML settings file (default: built-in defaults)",
    )
    parser.add_argument(
        "--servers",
        type=Path,
        default=None,
        help="Path to the plugin server catalog (default: <data dir>/mcp-servers.json)",
    )
    parser.add_argument(
        "--autonomy",
        choices=[level.value for level in AutonomyLevel],
        default=None,
        help="Override the configured autonomy level",
    )
    parser.add_argument(
        "--routing",
        choices=[mode.value for mode in RoutingMode],
        default=None,
        help="Override the configured routing mode",
    )
    parser.add_argument(
        "--add-preset",
        choices=[preset.value for preset in Preset],
        default=None,
        help="Add a preset plugin server to the catalog and exit",
    )
    parser.add_argument(
        "--list-servers",
        action="store_true",
        help="List configured plugin servers and exit",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log diagnostics to stderr",
    )
    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"aidaemon-core {__version__}",
    )
    return parser


def make_api_key_loader(config: AppConfig, secrets: SecretStore):
    """API key lookup order: settings file, secret store, ANTHROPIC_API_KEY."""

    def load() -> str | None:
        return (
            config.anthropic_api_key
            or secrets.get(API_KEY_SECRET)
            or os.environ.get("ANTHROPIC_API_KEY")
            or None
        )

    return load


def confirm_on_terminal(request: ConfirmationRequest) -> bool:
    print(
        f"[{request.level.value}] {request.reason}",
        file=sys.stderr,
    )
    try:
        answer = input(f"Run '{request.tool_call.tool_id}'? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def print_status(status: str) -> None:
    print(f"... {status}", file=sys.stderr)


def list_servers(manager: ServerManager) -> None:
    servers = manager.servers
    if not servers:
        print("No plugin servers configured.")
        return
    for server in servers:
        state = "enabled" if server.enabled else "disabled"
        print(f"{server.name} [{server.transport.value}, {state}] {server.id}")


def run_interactive(orchestrator: Orchestrator) -> None:
    conversation = Conversation()
    while True:
        try:
            text = input("> ").strip()
        except EOFError:
            logger.info("EOF received, shutting down")
            return
        if not text:
            continue
        if text.lower() in EXIT_WORDS:
            return

        conversation.add_user_message(text)
        result = orchestrator.handle_user_input(text, conversation)
        conversation.add_assistant_message(
            result.response_text,
            model_used=result.model_used,
            was_cloud=result.was_cloud,
            success=result.success,
        )
        print(result.response_text)
        print(f"{result.model_used} {result.summary}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    """Run the assistant.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.autonomy:
        config.autonomy_level = AutonomyLevel(args.autonomy)
    if args.routing:
        config.routing_mode = RoutingMode(args.routing)

    secrets = EnvironmentSecretStore()
    registry = ToolRegistry()
    register_builtin_tools(registry, {}, placeholders=True)
    catalog = ServerCatalog(args.servers) if args.servers else ServerCatalog.in_data_dir(
        config.resolved_data_dir
    )
    manager = ServerManager(
        registry,
        catalog=catalog,
        secrets=secrets,
        init_timeout=config.mcp_init_timeout,
        call_timeout=config.mcp_call_timeout,
    )

    try:
        manager.load()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.list_servers:
        list_servers(manager)
        return 0

    if args.add_preset:
        preset = Preset(args.add_preset)
        server = preset.make_config()
        status = manager.add_server(server)
        manager.disconnect_all()
        print(f"Added {preset.display_name} ({server.id}): {status.display_text}")
        for key in server.environment_keys:
            print(f"  Set {secrets.variable_name(env_secret_key(server.id, key))} for {key}")
        return 0

    audit = AuditLogger(config.audit_log_file) if config.audit_log_file else None
    cloud = AnthropicProvider(make_api_key_loader(config, secrets), model=config.anthropic_model)
    local = LocalModelProvider(base_url=config.local_base_url, model=config.local_model)
    local.refresh_availability()

    orchestrator = Orchestrator(
        registry=registry,
        policy=PolicyEngine(registry, audit=audit),
        cloud=cloud,
        local=local,
        router=ModelRouter(local=local, cloud=cloud, mode=config.routing_mode),
        server_manager=manager,
        autonomy_level=config.autonomy_level,
        max_rounds=config.max_rounds,
        turn_timeout=config.turn_timeout,
        ready_timeout=config.mcp_ready_timeout,
        on_status=print_status,
        on_confirmation=confirm_on_terminal,
        audit=audit,
    )

    try:
        run_interactive(orchestrator)
    except KeyboardInterrupt:
        orchestrator.abort()
        logger.info("Interrupted, shutting down")
        return 130  # Standard exit code for SIGINT
    finally:
        manager.disconnect_all()
        cloud.close()
        local.close()
        if audit is not None:
            audit.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
