"""Transport layer for MCP plugin communication.

Two transports implement the same contract: a local subprocess speaking
newline-delimited JSON over its standard streams, and a remote HTTPS endpoint
receiving one JSON-RPC message per POST. Transports move bytes only; they
know nothing about JSON-RPC.
"""

from __future__ import annotations

import logging
import os
import queue
import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from urllib.parse import urlparse

import httpx

from aidaemon.exceptions import (
    ConnectionFailedError,
    McpTimeoutError,
    NotConnectedError,
    ProcessLaunchFailedError,
    ServerError,
    TransportClosedError,
)

logger = logging.getLogger(__name__)

# Directories searched when the login-shell PATH probe fails
FALLBACK_PATH_DIRS = [
    "/opt/homebrew/bin",
    "/opt/homebrew/sbin",
    "/usr/local/bin",
    "/usr/local/sbin",
    "~/.nvm/current/bin",
    "~/.volta/bin",
    "~/.fnm/current/bin",
    "/usr/bin",
    "/bin",
    "/usr/sbin",
    "/sbin",
]

SHELL_PROBE_TIMEOUT = 5.0
TERMINATE_GRACE_SECONDS = 2.0
HTTP_TIMEOUT = 30.0
SESSION_HEADER = "Mcp-Session-Id"

_shell_path: str | None = None
_shell_path_lock = threading.Lock()

# Enqueued once the stream ends; every waiting receive() sees it
_CLOSED = object()


def fallback_path() -> str:
    """Return the hardcoded search PATH used when the shell probe fails."""
    return os.pathsep.join(os.path.expanduser(d) for d in FALLBACK_PATH_DIRS)


def _probe_login_shell_path() -> str | None:
    shell = os.environ.get("SHELL") or "/bin/sh"
    try:
        completed = subprocess.run(
            [shell, "-l", "-i", "-c", "echo $PATH"],
            capture_output=True,
            text=True,
            timeout=SHELL_PROBE_TIMEOUT,
            stdin=subprocess.DEVNULL,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("Login shell PATH probe failed: %s", e)
        return None

    # Interactive shells may print banners; PATH is the last line
    lines = [line.strip() for line in completed.stdout.splitlines() if line.strip()]
    if completed.returncode != 0 or not lines or "/" not in lines[-1]:
        logger.warning("Login shell PATH probe returned no usable PATH")
        return None
    return lines[-1]


def resolve_shell_path() -> str:
    """Return the user's login-shell PATH, probing the shell once per process.

    Returns:
        PATH string; the fallback directory list if the probe fails.
    """
    global _shell_path
    with _shell_path_lock:
        if _shell_path is None:
            _shell_path = _probe_login_shell_path() or fallback_path()
            logger.debug("Resolved shell PATH: %s", _shell_path)
        return _shell_path


def reset_shell_path_cache() -> None:
    """Forget the cached shell PATH so the next resolve probes again."""
    global _shell_path
    with _shell_path_lock:
        _shell_path = None


def build_argv(command: str, args: list[str], search_path: str) -> list[str]:
    """Build the argument vector for a plugin process.

    The executable is resolved against ``search_path``; when it cannot be
    found there, ``/usr/bin/env`` is used to look it up at exec time.

    Args:
        command: Executable name or path.
        args: Arguments passed to the executable.
        search_path: PATH to resolve the executable against.

    Returns:
        Argument vector suitable for ``subprocess.Popen`` without a shell.
    """
    if os.sep in command:
        if os.access(command, os.X_OK):
            return [command, *args]
        return ["/usr/bin/env", command, *args]

    resolved = shutil.which(command, path=search_path)
    if resolved is None:
        return ["/usr/bin/env", command, *args]
    return [resolved, *args]


class Transport(ABC):
    """Byte-level message exchange with a plugin server."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the transport can currently send."""
        pass

    @abstractmethod
    def start(self) -> None:
        """Open the transport.

        Raises:
            ConnectionFailedError: If the endpoint cannot be reached or is not allowed.
            ProcessLaunchFailedError: If a subprocess cannot be started.
        """
        pass

    @abstractmethod
    def send(self, message: str) -> None:
        """Send one serialized message.

        Raises:
            NotConnectedError: If the transport is not started.
            TransportClosedError: If the peer went away.
        """
        pass

    @abstractmethod
    def receive(self, timeout: float | None = None) -> str:
        """Block until one message is available.

        Args:
            timeout: Seconds to wait; None waits forever.

        Returns:
            One complete message.

        Raises:
            McpTimeoutError: If nothing arrives in time.
            TransportClosedError: If the transport closed while waiting.
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the transport and release any waiting reader."""
        pass


class _MessageQueue:
    """Thread-safe FIFO of inbound messages with close-aware blocking reads."""

    def __init__(self) -> None:
        self._queue: queue.Queue[object] = queue.Queue()

    def put(self, message: str) -> None:
        self._queue.put(message)

    def close(self) -> None:
        self._queue.put(_CLOSED)

    def get(self, timeout: float | None) -> str:
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            raise McpTimeoutError() from None
        if item is _CLOSED:
            # Leave the marker for the next waiter
            self._queue.put(_CLOSED)
            raise TransportClosedError()
        return item  # type: ignore[return-value]


class StdioTransport(Transport):
    """Subprocess transport using line-delimited JSON over stdin/stdout.

    The child is launched from an explicit argument vector, never a shell
    string. A reader thread splits stdout on newlines and queues each
    non-empty line; a second thread drains stderr into the log.
    """

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        name: str | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            command: Executable to launch.
            args: Arguments for the executable.
            env: Extra environment variables layered over the inherited ones.
            name: Label used in log lines (defaults to the command).
        """
        self.command = command
        self.args = list(args or [])
        self.extra_env = dict(env or {})
        self.name = name or command
        self._process: subprocess.Popen[bytes] | None = None
        self._messages = _MessageQueue()
        self._write_lock = threading.Lock()
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return (
            self._process is not None and not self._closed and self._process.poll() is None
        )

    def _build_env(self, search_path: str) -> dict[str, str]:
        env = dict(os.environ)
        env["PATH"] = search_path
        env.update(self.extra_env)
        return env

    def start(self) -> None:
        search_path = resolve_shell_path()
        argv = build_argv(self.command, self.args, search_path)
        logger.info("Launching MCP server %s: %s", self.name, argv[0])

        try:
            self._process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self._build_env(search_path),
                bufsize=0,
            )
        except OSError as e:
            raise ProcessLaunchFailedError(f"{self.command}: {e}") from e

        self._closed = False
        self._messages = _MessageQueue()
        threading.Thread(
            target=self._read_stdout, name=f"mcp-stdout-{self.name}", daemon=True
        ).start()
        threading.Thread(
            target=self._drain_stderr, name=f"mcp-stderr-{self.name}", daemon=True
        ).start()

    def _read_stdout(self) -> None:
        process = self._process
        assert process is not None and process.stdout is not None
        try:
            for raw_line in iter(process.stdout.readline, b""):
                line = raw_line.decode("utf-8", errors="replace").strip()
                if line:
                    self._messages.put(line)
        except (OSError, ValueError) as e:
            logger.debug("MCP server %s stdout closed: %s", self.name, e)
        finally:
            logger.info("MCP server %s output ended", self.name)
            self._messages.close()

    def _drain_stderr(self) -> None:
        process = self._process
        assert process is not None and process.stderr is not None
        try:
            for raw_line in iter(process.stderr.readline, b""):
                text = raw_line.decode("utf-8", errors="replace").rstrip()
                if text:
                    logger.debug("[%s stderr] %s", self.name, text)
        except (OSError, ValueError):
            pass

    def send(self, message: str) -> None:
        process = self._process
        if process is None or process.stdin is None or self._closed:
            raise NotConnectedError()

        data = message.encode("utf-8") + b"\n"
        with self._write_lock:
            try:
                process.stdin.write(data)
                process.stdin.flush()
            except (BrokenPipeError, ValueError) as e:
                raise TransportClosedError(f"MCP server {self.name} closed its input") from e
            except OSError as e:
                raise ConnectionFailedError(f"write to {self.name} failed: {e}") from e

    def receive(self, timeout: float | None = None) -> str:
        return self._messages.get(timeout)

    def close(self) -> None:
        process = self._process
        if process is None or self._closed:
            return
        self._closed = True

        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=TERMINATE_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning("MCP server %s ignored terminate, killing", self.name)
                process.kill()
                process.wait()

        for stream in (process.stdin, process.stdout, process.stderr):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass
        self._messages.close()
        logger.info("MCP server %s stopped", self.name)


def _sse_payloads(body: str) -> list[str]:
    """Extract the data payloads of a text/event-stream body."""
    payloads: list[str] = []
    data_lines: list[str] = []
    for line in body.splitlines():
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
        elif not line.strip():
            if data_lines:
                payloads.append("\n".join(data_lines))
                data_lines = []
    if data_lines:
        payloads.append("\n".join(data_lines))
    return [p for p in payloads if p.strip()]


class HttpTransport(Transport):
    """HTTPS transport: one POST per outbound JSON-RPC message.

    A 200 body is queued as the reply, 202 means accepted with no reply,
    anything else is a server error. The session id header returned by the
    server is replayed on every later request.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = HTTP_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            url: HTTPS endpoint of the MCP server.
            headers: Extra request headers (e.g. authorization).
            timeout: Per-request timeout in seconds.
            client: Preconfigured HTTP client, mainly for tests.
        """
        self.url = url
        self.extra_headers = dict(headers or {})
        self.timeout = timeout
        self.session_id: str | None = None
        self._client = client
        self._owns_client = client is None
        self._messages = _MessageQueue()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def start(self) -> None:
        if urlparse(self.url).scheme != "https":
            raise ConnectionFailedError(f"MCP HTTP transport requires HTTPS. Got: {self.url}")
        self._messages = _MessageQueue()
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        self._connected = True
        logger.info("MCP HTTP transport ready for %s", self.url)

    def send(self, message: str) -> None:
        if not self._connected or self._client is None:
            raise NotConnectedError()

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **self.extra_headers,
        }
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id

        try:
            response = self._client.post(
                self.url, content=message.encode("utf-8"), headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise McpTimeoutError(f"HTTP request to {self.url} timed out") from e
        except httpx.HTTPError as e:
            raise ConnectionFailedError(str(e)) from e

        session_id = response.headers.get(SESSION_HEADER)
        if session_id:
            self.session_id = session_id

        if response.status_code == 202:
            return
        if response.status_code != 200:
            raise ServerError(response.status_code, response.text)

        body = response.text
        if response.headers.get("content-type", "").startswith("text/event-stream"):
            for payload in _sse_payloads(body):
                self._messages.put(payload)
        elif body.strip():
            self._messages.put(body)

    def receive(self, timeout: float | None = None) -> str:
        return self._messages.get(timeout)

    def close(self) -> None:
        if not self._connected:
            return
        self._connected = False
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None
        self._messages.close()
