"""Anthropic Messages API provider.

Talks to https://api.anthropic.com/v1/messages over httpx. The API key is
fetched from its loader at call time and only ever sent in the
``x-api-key`` header.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import httpx

from aidaemon.exceptions import ModelProviderError
from aidaemon.models.base import (
    GenerationParams,
    ModelResponse,
    StopReason,
    ToolCallingProvider,
    ToolUseBlock,
    call_cancellable,
)

logger = logging.getLogger(__name__)

ANTHROPIC_ENDPOINT = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
USER_AGENT = "aiDAEMON/1.0"
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
TOOL_MAX_TOKENS = 4096
REQUEST_TIMEOUT = 30.0

API_KEY_SECRET = "anthropic-apikey"


def describe_http_error(status_code: int, body: str) -> str:
    """User-facing text for a failed Messages API call."""
    if status_code == 401:
        return "Invalid Anthropic API key (401). Check your key in Settings → Cloud."
    if status_code == 429:
        return "Anthropic rate limit reached (429). Please wait a moment and try again."
    if status_code == 529:
        return "Anthropic API is overloaded (529). Please try again in a few seconds."
    if 500 <= status_code <= 599:
        return f"Anthropic service error ({status_code}). Please try again."
    return f"Anthropic API error ({status_code}): {body[:200]}"


def parse_response(data: Any) -> ModelResponse:
    """Parse a Messages API reply into a ModelResponse.

    Text and tool_use blocks are normalized; unknown block types are kept
    verbatim in the raw blocks so the turn replays unchanged.

    Raises:
        ModelProviderError: If the body has no content array.
    """
    if not isinstance(data, dict) or not isinstance(data.get("content"), list):
        raise ModelProviderError("Received an unexpected response from Anthropic.")

    response = ModelResponse(stop_reason=StopReason.from_api(data.get("stop_reason")))
    for block in data["content"]:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            text = block.get("text")
            if not isinstance(text, str):
                continue
            response.text_blocks.append(text)
            response.raw_content_blocks.append({"type": "text", "text": text})
        elif block_type == "tool_use":
            block_id, name = block.get("id"), block.get("name")
            if not isinstance(block_id, str) or not isinstance(name, str):
                continue
            tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
            response.tool_use_blocks.append(ToolUseBlock(id=block_id, name=name, input=tool_input))
            response.raw_content_blocks.append(
                {"type": "tool_use", "id": block_id, "name": name, "input": tool_input}
            )
        elif isinstance(block_type, str):
            response.raw_content_blocks.append(block)
    return response


class AnthropicProvider(ToolCallingProvider):
    """Cloud provider backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key_loader: Callable[[], str | None],
        model: str = DEFAULT_MODEL,
        endpoint: str = ANTHROPIC_ENDPOINT,
        timeout: float = REQUEST_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            api_key_loader: Returns the API key, or None when none is configured.
            model: Model id sent with every request.
            endpoint: Messages API URL.
            timeout: Per-request timeout in seconds.
            client: Preconfigured HTTP client, mainly for tests.
        """
        self._api_key_loader = api_key_loader
        self.model = model
        self.endpoint = endpoint
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="anthropic")
        self._inflight: threading.Event | None = None
        self._inflight_lock = threading.Lock()
        self._key_exists = self._api_key_loader() is not None

    @property
    def provider_name(self) -> str:
        return "Anthropic Claude"

    @property
    def is_cloud(self) -> bool:
        return True

    @property
    def is_available(self) -> bool:
        return self._key_exists

    def refresh_availability(self) -> bool:
        self._key_exists = self._api_key_loader() is not None
        return self._key_exists

    def generate(self, prompt: str, params: GenerationParams | None = None) -> str:
        params = params or GenerationParams()
        response = self._perform_request(
            {
                "model": self.model,
                "max_tokens": params.max_tokens,
                "messages": [{"role": "user", "content": prompt}],
            }
        )
        text = response.text_content
        if not text:
            raise ModelProviderError("Anthropic returned an empty response.")
        return text

    def send_with_tools(
        self,
        messages: list[dict[str, Any]],
        system: str,
        tools: list[dict[str, Any]],
    ) -> ModelResponse:
        return self._perform_request(
            {
                "model": self.model,
                "max_tokens": TOOL_MAX_TOKENS,
                "system": system,
                "messages": messages,
                "tools": tools,
            }
        )

    def abort(self) -> None:
        with self._inflight_lock:
            if self._inflight is not None:
                self._inflight.set()

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
        self._client.close()

    def _perform_request(self, body: dict[str, Any]) -> ModelResponse:
        api_key = self._api_key_loader()
        if api_key is None:
            raise ModelProviderError(
                "No Anthropic API key configured. Go to Settings → Cloud to add your key."
            )

        headers = {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "User-Agent": USER_AGENT,
        }

        def post() -> httpx.Response:
            return self._client.post(self.endpoint, json=body, headers=headers, timeout=self.timeout)

        cancel = threading.Event()
        with self._inflight_lock:
            self._inflight = cancel
        try:
            http_response = call_cancellable(self._pool, post, cancel)
        except httpx.TimeoutException as e:
            raise ModelProviderError("Anthropic request timed out.") from e
        except httpx.HTTPError as e:
            raise ModelProviderError(f"Anthropic request failed: {e}") from e
        finally:
            with self._inflight_lock:
                if self._inflight is cancel:
                    self._inflight = None

        if http_response.status_code != 200:
            logger.warning("Anthropic API returned HTTP %d", http_response.status_code)
            raise ModelProviderError(
                describe_http_error(http_response.status_code, http_response.text),
                status_code=http_response.status_code,
            )

        try:
            data = http_response.json()
        except ValueError as e:
            raise ModelProviderError("Received an unexpected response from Anthropic.") from e
        return parse_response(data)
