"""Tests for rpg_stream.llm: HttpStreamLLM and EchoLLM."""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from rpg_stream.llm import EchoLLM, HttpStreamLLM, LLMError


async def _collect(llm, prompt: str = "prompt") -> list[str]:
    return [chunk async for chunk in llm("response", prompt)]


# ---------------------------------------------------------------------------
# EchoLLM
# ---------------------------------------------------------------------------

class TestEchoLLM:
    async def test_streams_prompt_back_in_chunks(self) -> None:
        llm = EchoLLM(chunk_size=4)
        assert await _collect(llm, "[narrative]Hi") == ["[nar", "rati", "ve]H", "i"]

    async def test_joined_output_is_prompt(self) -> None:
        llm = EchoLLM()
        prompt = "[speech:Aria]\nWho goes there?" * 3
        assert "".join(await _collect(llm, prompt)) == prompt

    async def test_empty_prompt(self) -> None:
        assert await _collect(EchoLLM(), "") == []

    def test_chunk_size_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            EchoLLM(chunk_size=0)


# ---------------------------------------------------------------------------
# HttpStreamLLM helpers
# ---------------------------------------------------------------------------

class FakeStreamResponse:
    """Stands in for the response object of httpx.AsyncClient.stream()."""

    def __init__(self, lines: list[str], status: int = 200) -> None:
        self.lines = lines
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise httpx.HTTPStatusError("", request=MagicMock(), response=self)

    async def aiter_lines(self):
        for line in self.lines:
            yield line

    async def __aenter__(self) -> "FakeStreamResponse":
        return self

    async def __aexit__(self, *exc) -> bool:
        return False


def _sse(payloads: list[dict]) -> list[str]:
    lines: list[str] = []
    for p in payloads:
        lines.extend(["event: message", f"data: {json.dumps(p)}", ""])
    return lines


def _mock_stream(lines: list[str], status: int = 200) -> MagicMock:
    return MagicMock(return_value=FakeStreamResponse(lines, status))


# ---------------------------------------------------------------------------
# HttpStreamLLM: KoboldCpp format
# ---------------------------------------------------------------------------

class TestHttpStreamLLMKoboldCpp:
    @pytest.fixture
    def llm(self) -> HttpStreamLLM:
        return HttpStreamLLM(provider_url="http://localhost:5001", api_key="")

    async def test_happy_path(self, llm: HttpStreamLLM) -> None:
        lines = _sse([{"token": "[narra"}, {"token": "tive]"}, {"token": "Dark."}])
        with patch("httpx.AsyncClient.stream", _mock_stream(lines)):
            chunks = await _collect(llm)
        assert chunks == ["[narra", "tive]", "Dark."]

    async def test_posts_to_stream_url(self, llm: HttpStreamLLM) -> None:
        mock_stream = _mock_stream(_sse([{"token": "ok"}]))
        with patch("httpx.AsyncClient.stream", mock_stream):
            await _collect(llm)
        method, url = mock_stream.call_args[0]
        assert method == "POST"
        assert url == "http://localhost:5001/api/extra/generate/stream"

    async def test_sends_prompt_in_body(self, llm: HttpStreamLLM) -> None:
        mock_stream = _mock_stream(_sse([{"token": "ok"}]))
        with patch("httpx.AsyncClient.stream", mock_stream):
            await _collect(llm, "my prompt")
        assert mock_stream.call_args.kwargs["json"] == {"prompt": "my prompt"}

    async def test_bearer_token_sent_when_api_key_set(self) -> None:
        llm = HttpStreamLLM(provider_url="http://localhost:5001", api_key="secret")
        mock_stream = _mock_stream(_sse([{"token": "ok"}]))
        with patch("httpx.AsyncClient.stream", mock_stream):
            await _collect(llm)
        headers = mock_stream.call_args.kwargs["headers"]
        assert headers.get("Authorization") == "Bearer secret"

    async def test_no_auth_header_when_no_api_key(self, llm: HttpStreamLLM) -> None:
        mock_stream = _mock_stream(_sse([{"token": "ok"}]))
        with patch("httpx.AsyncClient.stream", mock_stream):
            await _collect(llm)
        assert "Authorization" not in mock_stream.call_args.kwargs["headers"]

    async def test_trailing_slash_stripped_from_url(self) -> None:
        llm = HttpStreamLLM(provider_url="http://localhost:5001/")
        mock_stream = _mock_stream(_sse([{"token": "ok"}]))
        with patch("httpx.AsyncClient.stream", mock_stream):
            await _collect(llm)
        assert mock_stream.call_args[0][1] == "http://localhost:5001/api/extra/generate/stream"

    async def test_empty_tokens_skipped(self, llm: HttpStreamLLM) -> None:
        lines = _sse([{"token": ""}, {"token": "a"}])
        with patch("httpx.AsyncClient.stream", _mock_stream(lines)):
            assert await _collect(llm) == ["a"]

    async def test_connect_error_raises_llm_error(self, llm: HttpStreamLLM) -> None:
        mock_stream = MagicMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.stream", mock_stream):
            with pytest.raises(LLMError, match="Cannot connect"):
                await _collect(llm)

    async def test_timeout_raises_llm_error(self, llm: HttpStreamLLM) -> None:
        mock_stream = MagicMock(side_effect=httpx.TimeoutException("timeout"))
        with patch("httpx.AsyncClient.stream", mock_stream):
            with pytest.raises(LLMError, match="timed out"):
                await _collect(llm)

    async def test_http_error_raises_llm_error(self, llm: HttpStreamLLM) -> None:
        with patch("httpx.AsyncClient.stream", _mock_stream([], status=503)):
            with pytest.raises(LLMError, match="HTTP 503"):
                await _collect(llm)

    async def test_malformed_frame_raises_llm_error(self, llm: HttpStreamLLM) -> None:
        with patch("httpx.AsyncClient.stream", _mock_stream(["data: {not json"])):
            with pytest.raises(LLMError, match="Malformed stream frame"):
                await _collect(llm)

    async def test_unexpected_frame_raises_llm_error(self, llm: HttpStreamLLM) -> None:
        lines = _sse([{"choices": [{"text": "openai format accidentally"}]}])
        with patch("httpx.AsyncClient.stream", _mock_stream(lines)):
            with pytest.raises(LLMError, match="Unexpected stream frame"):
                await _collect(llm)


# ---------------------------------------------------------------------------
# HttpStreamLLM: OpenAI format
# ---------------------------------------------------------------------------

class TestHttpStreamLLMOpenAI:
    @pytest.fixture
    def llm(self) -> HttpStreamLLM:
        return HttpStreamLLM(
            provider_url="http://localhost:8080",
            provider_format="openai",
            model="mistral-7b",
        )

    async def test_posts_to_completions_url(self, llm: HttpStreamLLM) -> None:
        mock_stream = _mock_stream(["data: [DONE]"])
        with patch("httpx.AsyncClient.stream", mock_stream):
            await _collect(llm)
        assert mock_stream.call_args[0][1] == "http://localhost:8080/v1/completions"

    async def test_requests_streaming_with_model(self, llm: HttpStreamLLM) -> None:
        mock_stream = _mock_stream(["data: [DONE]"])
        with patch("httpx.AsyncClient.stream", mock_stream):
            await _collect(llm, "prompt")
        assert mock_stream.call_args.kwargs["json"] == {
            "prompt": "prompt", "stream": True, "model": "mistral-7b",
        }

    async def test_happy_path_stops_at_done(self, llm: HttpStreamLLM) -> None:
        lines = [
            'data: {"choices": [{"text": "[speech:"}]}',
            ": keep-alive",
            'data: {"choices": [{"text": "Aria]Hi"}]}',
            "data: [DONE]",
            'data: {"choices": [{"text": "after done"}]}',
        ]
        with patch("httpx.AsyncClient.stream", _mock_stream(lines)):
            assert await _collect(llm) == ["[speech:", "Aria]Hi"]

    async def test_unexpected_frame_raises_llm_error(self, llm: HttpStreamLLM) -> None:
        with patch("httpx.AsyncClient.stream", _mock_stream(['data: {"token": "kobold"}'])):
            with pytest.raises(LLMError, match="Unexpected stream frame"):
                await _collect(llm)

    async def test_empty_choices_frame_is_skipped(self, llm: HttpStreamLLM) -> None:
        lines = [
            'data: {"choices": [{"text": "[narrative]Hi"}]}',
            'data: {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 3}}',
            "data: [DONE]",
        ]
        with patch("httpx.AsyncClient.stream", _mock_stream(lines)):
            assert await _collect(llm) == ["[narrative]Hi"]

    async def test_non_object_frame_raises_llm_error(self, llm: HttpStreamLLM) -> None:
        with patch("httpx.AsyncClient.stream", _mock_stream(["data: [1, 2]"])):
            with pytest.raises(LLMError, match="Unexpected stream frame"):
                await _collect(llm)


# ---------------------------------------------------------------------------
# HttpStreamLLM: transport failures mid-stream
# ---------------------------------------------------------------------------

class DroppedStreamResponse(FakeStreamResponse):
    """Yields its lines, then fails the way a dropped connection does."""

    def __init__(self, lines: list[str], error: Exception) -> None:
        super().__init__(lines)
        self.error = error

    async def aiter_lines(self):
        for line in self.lines:
            yield line
        raise self.error


class TestHttpStreamLLMDroppedConnection:
    @pytest.mark.parametrize("error", [
        httpx.RemoteProtocolError("peer closed connection without sending complete message body"),
        httpx.ReadError("connection reset"),
    ])
    async def test_transport_error_raises_llm_error(self, error: Exception) -> None:
        llm = HttpStreamLLM(provider_url="http://localhost:5001")
        response = DroppedStreamResponse(_sse([{"token": "[narrative]Hi"}]), error)
        chunks: list[str] = []
        with patch("httpx.AsyncClient.stream", MagicMock(return_value=response)):
            with pytest.raises(LLMError, match="LLM stream failed"):
                async for chunk in llm("response", "prompt"):
                    chunks.append(chunk)
        assert chunks == ["[narrative]Hi"]
