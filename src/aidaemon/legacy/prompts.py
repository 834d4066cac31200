"""Prompt construction for single-step command interpretation."""

from __future__ import annotations

from collections.abc import Sequence

from aidaemon.conversation import Message, MessageRole

MAX_INPUT_LENGTH = 500
MAX_HISTORY_CHARS = 6000

SYSTEM_PROMPT = """\
You are a desktop command interpreter. Convert user intent to structured JSON.

Available command types:
- APP_OPEN: Open an application or URL
- FILE_SEARCH: Find files using the system search index
- WINDOW_MANAGE: Resize, move, or close windows
- SYSTEM_INFO: Check or show system status (ip, disk, cpu, battery, memory, hostname, os version, uptime)
- FILE_OP: File operations (move, rename, delete, create)
- PROCESS_MANAGE: Quit, restart, or kill processes
- QUICK_ACTION: Perform system actions (screenshot, empty trash, DND, lock screen)

Use SYSTEM_INFO for questions about system status. Use QUICK_ACTION only for actions that change something.
SYSTEM_INFO targets: ip_address, disk_space, cpu_usage, battery, memory, hostname, os_version, uptime.

Output JSON only, no explanation.

Example:
User: "open youtube"
{"type": "APP_OPEN", "target": "https://youtube.com", "confidence": 0.95}

User: "find tax documents from 2024"
{"type": "FILE_SEARCH", "query": "tax", "parameters": {"kind": "pdf", "date": "2024"}, "confidence": 0.85}

User: "left half"
{"type": "WINDOW_MANAGE", "target": "frontmost", "parameters": {"position": "left_half"}, "confidence": 0.95}

User: "what's my ip"
{"type": "SYSTEM_INFO", "target": "ip_address", "confidence": 0.95}

User: "check battery"
{"type": "SYSTEM_INFO", "target": "battery", "confidence": 0.95}

User: "how much ram do i have"
{"type": "SYSTEM_INFO", "target": "memory", "confidence": 0.95}

User: "disk space"
{"type": "SYSTEM_INFO", "target": "disk_space", "confidence": 0.95}

User: "quit chrome"
{"type": "PROCESS_MANAGE", "target": "Google Chrome", "parameters": {"action": "quit"}, "confidence": 0.90}

User: "take a screenshot"
{"type": "QUICK_ACTION", "target": "screenshot", "confidence": 0.95}

"""

HISTORY_HEADER = (
    "Recent conversation (for context, use this to resolve references like "
    '"it", "that", etc.):\n'
)
HISTORY_FOOTER = "\nNow respond to this new input. Output JSON only, no explanation.\n"


def _is_noncharacter(code_point: int) -> bool:
    return 0xFDD0 <= code_point <= 0xFDEF or (code_point & 0xFFFE) == 0xFFFE


def sanitize_input(text: str) -> str:
    """Make user text safe to embed inside the quoted ``User: "..."`` line."""
    result = "".join(ch for ch in text if ch != "\0" and not _is_noncharacter(ord(ch)))
    result = result.replace('"', '\\"')
    while "  " in result:
        result = result.replace("  ", " ")
    return result.strip()[:MAX_INPUT_LENGTH]


def _user_line(text: str) -> str:
    return f'User: "{sanitize_input(text)}"\n'


def build_command_prompt(user_input: str) -> str:
    return SYSTEM_PROMPT + _user_line(user_input)


def build_conversational_prompt(
    messages: Sequence[Message],
    current_input: str,
    max_history_chars: int = MAX_HISTORY_CHARS,
) -> str:
    """Command prompt preceded by recent conversation for resolving references.

    History lines are added oldest first until the next one would exceed the
    character budget.
    """
    if not messages:
        return build_command_prompt(current_input)

    prompt = SYSTEM_PROMPT + HISTORY_HEADER
    used = 0
    for message in messages:
        role = "User" if message.role == MessageRole.USER else "Assistant"
        line = f"[{role}]: {sanitize_input(message.content)}\n"
        if used + len(line) > max_history_chars:
            break
        prompt += line
        used += len(line)

    return prompt + HISTORY_FOOTER + _user_line(current_input)
