"""Local model provider.

Uses the OpenAI-compatible chat completions API exposed by a local
llama.cpp or Ollama server. No request leaves the machine.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import httpx

from aidaemon.exceptions import ModelProviderError
from aidaemon.models.base import GenerationParams, ModelProvider, call_cancellable

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8080/v1"
DEFAULT_MODEL = "local"
PROBE_TIMEOUT = 2.0
REQUEST_TIMEOUT = 60.0


class LocalModelProvider(ModelProvider):
    """Provider backed by a model served on localhost."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        name: str = "Local Model",
        timeout: float = REQUEST_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.name = name
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="local-model")
        self._inflight: threading.Event | None = None
        self._inflight_lock = threading.Lock()
        self._available = False

    @property
    def provider_name(self) -> str:
        return self.name

    @property
    def is_cloud(self) -> bool:
        return False

    @property
    def is_available(self) -> bool:
        return self._available

    def refresh_availability(self) -> bool:
        """Probe the server's model listing."""
        try:
            response = self._client.get(f"{self.base_url}/models", timeout=PROBE_TIMEOUT)
            self._available = response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug("Local model server not reachable: %s", e)
            self._available = False
        return self._available

    def generate(self, prompt: str, params: GenerationParams | None = None) -> str:
        params = params or GenerationParams()
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
            "top_p": params.top_p,
            "top_k": params.top_k,
            "repeat_penalty": params.repeat_penalty,
        }

        def post() -> httpx.Response:
            return self._client.post(
                f"{self.base_url}/chat/completions", json=payload, timeout=self.timeout
            )

        cancel = threading.Event()
        with self._inflight_lock:
            self._inflight = cancel
        try:
            response = call_cancellable(self._pool, post, cancel)
        except httpx.HTTPError as e:
            self._available = False
            raise ModelProviderError(f"Local model request failed: {e}") from e
        finally:
            with self._inflight_lock:
                if self._inflight is cancel:
                    self._inflight = None

        if response.status_code != 200:
            raise ModelProviderError(
                f"Local model error ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ModelProviderError("Local model returned an unexpected response.") from e
        if not isinstance(content, str) or not content.strip():
            raise ModelProviderError("Local model returned an empty response.")
        return content

    def abort(self) -> None:
        with self._inflight_lock:
            if self._inflight is not None:
                self._inflight.set()

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
        self._client.close()
