"""LLM client: streaming HTTP connection to a text-completion backend.

The orchestrator consumes a token stream matching the protocol:

    def __call__(self, stage: str, prompt: str) -> AsyncIterator[str]: ...

`stage` identifies which step is calling (e.g. "response"). The
implementation may use it for logging or routing; the simplest
implementation ignores it. Chunks may be split anywhere, even inside a tag;
the parser copes with that.

Two implementations are provided:

    HttpStreamLLM: real streaming HTTP client, supports KoboldCpp and
                   OpenAI-compatible backends. Selected by provider_format.
    EchoLLM      : streams the prompt back in fixed-size chunks. Useful for
                   driving the pipeline without a running model.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Literal, Protocol

import httpx

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol: every token stream implementation must match this signature
# ---------------------------------------------------------------------------

class TokenStream(Protocol):
    def __call__(self, stage: str, prompt: str) -> AsyncIterator[str]: ...


# ---------------------------------------------------------------------------
# HttpStreamLLM: connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai"]

SSE_DATA_PREFIX = "data:"
OPENAI_DONE = "[DONE]"


class HttpStreamLLM:
    """Async streaming client for text-completion backends.

    Supported formats:
      "koboldcpp"  : POST /api/extra/generate/stream  {"prompt": ...}
                     SSE frames: data: {"token": "..."}
      "openai"     : POST /v1/completions  {"model": ..., "prompt": ..., "stream": true}
                     SSE frames: data: {"choices": [{"text": "..."}]}, then data: [DONE]

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "koboldcpp".
        model:           Model identifier, used only by the openai format.
        timeout:         HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, prompt: str) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai":
            url = f"{self._base_url}/v1/completions"
            body: dict = {"prompt": prompt, "stream": True}
            if self._model:
                body["model"] = self._model
            return url, body

        # koboldcpp (default)
        url = f"{self._base_url}/api/extra/generate/stream"
        return url, {"prompt": prompt}

    def _parse_frame(self, payload: str) -> str:
        """Extract the text fragment from one SSE data payload."""
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise LLMError(f"Malformed stream frame: {payload[:80]!r}") from e

        if self._format == "openai":
            if not isinstance(data, dict) or "choices" not in data:
                raise LLMError("Unexpected stream frame from OpenAI-compatible backend")
            choices = data["choices"]
            if not choices:
                return ""  # usage or keep-alive frame
            if not isinstance(choices[0], dict) or "text" not in choices[0]:
                raise LLMError("Unexpected stream frame from OpenAI-compatible backend")
            return choices[0]["text"]

        # koboldcpp
        if not isinstance(data, dict) or "token" not in data:
            raise LLMError("Unexpected stream frame from KoboldCpp backend")
        return data["token"]

    async def __call__(self, stage: str, prompt: str) -> AsyncIterator[str]:
        url, body = self._build_request(prompt)
        logger.debug("llm stream stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        received = 0
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                async with client.stream("POST", url, json=body, headers=self._headers()) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        if not line.startswith(SSE_DATA_PREFIX):
                            continue  # event:, id:, comments, keep-alives
                        payload = line[len(SSE_DATA_PREFIX):].strip()
                        if payload == OPENAI_DONE:
                            break
                        text = self._parse_frame(payload)
                        if text:
                            received += len(text)
                            yield text
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM stream failed: {e}") from e

        logger.debug("llm stream done stage=%s len=%d", stage, received)


# ---------------------------------------------------------------------------
# EchoLLM: streams the prompt back; useful for pipeline smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Streams the prompt text back in ``chunk_size`` pieces. No network calls.

    Feed it already-tagged text to exercise the parser, aggregator and
    storage end-to-end, including chunk splits that land inside tags.
    """

    def __init__(self, chunk_size: int = 16) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self._chunk_size = chunk_size

    async def __call__(self, stage: str, prompt: str) -> AsyncIterator[str]:
        logger.debug("EchoLLM stage=%s prompt_len=%d", stage, len(prompt))
        for start in range(0, len(prompt), self._chunk_size):
            yield prompt[start:start + self._chunk_size]


# ---------------------------------------------------------------------------
# LLMError: raised by HttpStreamLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
