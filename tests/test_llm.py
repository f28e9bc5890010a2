"""Tests for scene_tagger.llm — backend selection, HttpGenerator and EchoGenerator."""

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from scene_tagger.host import HostBridge
from scene_tagger.llm import (
    EchoGenerator,
    HttpGenerator,
    LLMError,
    QuietPromptBackend,
    RawGenerateBackend,
    resolve_backend,
)
from scene_tagger.prompts import STRUCTURED_SCHEMA, TAG_SYSTEM_PROMPT


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------

class TestResolveBackend:
    def test_no_backend(self) -> None:
        assert resolve_backend(HostBridge(), {}) is None

    def test_prefers_raw_generation(self) -> None:
        raw, quiet = AsyncMock(), AsyncMock()
        backend = resolve_backend(HostBridge(generate_raw=raw, generate_quiet_prompt=quiet))
        assert backend == RawGenerateBackend(raw)

    def test_quiet_prompt_when_no_raw(self) -> None:
        quiet = AsyncMock()
        backend = resolve_backend(HostBridge(generate_quiet_prompt=quiet))
        assert backend == QuietPromptBackend(quiet)

    def test_context_entry_point_wins(self) -> None:
        context_raw, host_raw = AsyncMock(), AsyncMock()
        backend = resolve_backend(HostBridge(generate_raw=host_raw), {"generateRaw": context_raw})
        assert backend == RawGenerateBackend(context_raw)

    def test_context_quiet_prompt_still_loses_to_host_raw(self) -> None:
        context_quiet, host_raw = AsyncMock(), AsyncMock()
        backend = resolve_backend(
            HostBridge(generate_raw=host_raw), {"generateQuietPrompt": context_quiet}
        )
        assert backend == RawGenerateBackend(host_raw)

    def test_non_callable_entries_ignored(self) -> None:
        assert resolve_backend(HostBridge(), {"generateRaw": "nope"}) is None


class TestBackendInvoke:
    @pytest.mark.asyncio
    async def test_raw_generation_arguments(self) -> None:
        fn = AsyncMock(return_value="tags")
        result = await RawGenerateBackend(fn).invoke("describe the scene")
        assert result == "tags"
        fn.assert_awaited_once_with(
            system_prompt=TAG_SYSTEM_PROMPT, prompt="describe the scene", trim_names=True
        )

    @pytest.mark.asyncio
    async def test_raw_generation_with_schema(self) -> None:
        fn = AsyncMock(return_value="{}")
        await RawGenerateBackend(fn).invoke("p", STRUCTURED_SCHEMA, system_prompt="sys")
        assert fn.call_args.kwargs["json_schema"] is STRUCTURED_SCHEMA
        assert fn.call_args.kwargs["system_prompt"] == "sys"

    @pytest.mark.asyncio
    async def test_quiet_prompt_combines_system_prompt(self) -> None:
        fn = AsyncMock(return_value="tags")
        await QuietPromptBackend(fn).invoke("describe", system_prompt="sys")
        fn.assert_awaited_once_with(quiet_prompt="sys\n\ndescribe")

    @pytest.mark.asyncio
    async def test_sync_entry_point_supported(self) -> None:
        fn = MagicMock(return_value="sync tags")
        assert await QuietPromptBackend(fn).invoke("p") == "sync tags"

    @pytest.mark.asyncio
    async def test_errors_propagate(self) -> None:
        fn = AsyncMock(side_effect=RuntimeError("backend down"))
        with pytest.raises(RuntimeError, match="backend down"):
            await RawGenerateBackend(fn).invoke("p")


# ---------------------------------------------------------------------------
# EchoGenerator
# ---------------------------------------------------------------------------

class TestEchoGenerator:
    @pytest.mark.asyncio
    async def test_raw_returns_prompt_unchanged(self) -> None:
        gen = EchoGenerator()
        assert await gen.generate_raw(system_prompt="s", prompt="hello world", trim_names=True) == "hello world"

    @pytest.mark.asyncio
    async def test_quiet_returns_prompt_unchanged(self) -> None:
        gen = EchoGenerator()
        assert await gen.generate_quiet_prompt(quiet_prompt="x") == "x"


# ---------------------------------------------------------------------------
# HttpGenerator — KoboldCpp format
# ---------------------------------------------------------------------------

def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


class TestHttpGeneratorKoboldCpp:
    @pytest.fixture
    def gen(self) -> HttpGenerator:
        return HttpGenerator(provider_url="http://localhost:5001", api_key="")

    @pytest.mark.asyncio
    async def test_happy_path(self, gen: HttpGenerator) -> None:
        body = {"results": [{"text": "tavern, candlelight"}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await gen.generate_raw(system_prompt="sys", prompt="Describe.")
        assert result == "tavern, candlelight"

    @pytest.mark.asyncio
    async def test_posts_to_correct_url(self, gen: HttpGenerator) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await gen.generate_raw(prompt="prompt")
        url = mock_post.call_args[0][0]
        assert url == "http://localhost:5001/api/v1/generate"

    @pytest.mark.asyncio
    async def test_system_prompt_prepended(self, gen: HttpGenerator) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await gen.generate_raw(system_prompt="sys", prompt="my prompt", json_schema=STRUCTURED_SCHEMA)
        sent_body = mock_post.call_args.kwargs["json"]
        assert sent_body == {"prompt": "sys\n\nmy prompt"}

    @pytest.mark.asyncio
    async def test_quiet_prompt_sent_as_is(self, gen: HttpGenerator) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await gen.generate_quiet_prompt(quiet_prompt="quiet")
        assert mock_post.call_args.kwargs["json"] == {"prompt": "quiet"}

    @pytest.mark.asyncio
    async def test_trim_names_strips_speaker_label(self, gen: HttpGenerator) -> None:
        body = {"results": [{"text": "Assistant: forest, mist"}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            assert await gen.generate_raw(prompt="p") == "forest, mist"
            assert await gen.generate_raw(prompt="p", trim_names=False) == "Assistant: forest, mist"

    @pytest.mark.asyncio
    async def test_bearer_token_sent_when_api_key_set(self) -> None:
        gen = HttpGenerator(provider_url="http://localhost:5001", api_key="secret")
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await gen.generate_raw(prompt="prompt")
        headers = mock_post.call_args.kwargs["headers"]
        assert headers.get("Authorization") == "Bearer secret"

    @pytest.mark.asyncio
    async def test_no_auth_header_when_no_api_key(self, gen: HttpGenerator) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await gen.generate_raw(prompt="prompt")
        assert "Authorization" not in mock_post.call_args.kwargs["headers"]

    @pytest.mark.asyncio
    async def test_trailing_slash_stripped_from_url(self) -> None:
        gen = HttpGenerator(provider_url="http://localhost:5001/")
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await gen.generate_raw(prompt="prompt")
        assert mock_post.call_args[0][0] == "http://localhost:5001/api/v1/generate"

    @pytest.mark.asyncio
    async def test_connect_error_raises_llm_error(self, gen: HttpGenerator) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Cannot connect"):
                await gen.generate_raw(prompt="prompt")

    @pytest.mark.asyncio
    async def test_timeout_raises_llm_error(self, gen: HttpGenerator) -> None:
        mock_post = AsyncMock(side_effect=httpx.TimeoutException("timeout"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="timed out"):
                await gen.generate_raw(prompt="prompt")

    @pytest.mark.asyncio
    async def test_http_error_raises_llm_error(self, gen: HttpGenerator) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=503))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="HTTP 503"):
                await gen.generate_raw(prompt="prompt")

    @pytest.mark.asyncio
    async def test_malformed_response_raises_llm_error(self, gen: HttpGenerator) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"unexpected": "format"}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await gen.generate_raw(prompt="prompt")


# ---------------------------------------------------------------------------
# HttpGenerator — OpenAI format
# ---------------------------------------------------------------------------

def _chat_body(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class TestHttpGeneratorOpenAI:
    @pytest.fixture
    def gen(self) -> HttpGenerator:
        return HttpGenerator(
            provider_url="http://localhost:8080",
            provider_format="openai",
            model="mistral-7b",
        )

    @pytest.mark.asyncio
    async def test_posts_to_correct_url(self, gen: HttpGenerator) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_chat_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await gen.generate_raw(prompt="prompt")
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/chat/completions"

    @pytest.mark.asyncio
    async def test_sends_messages_and_model(self, gen: HttpGenerator) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_chat_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await gen.generate_raw(system_prompt="sys", prompt="prompt")
        sent_body = mock_post.call_args.kwargs["json"]
        assert sent_body["model"] == "mistral-7b"
        assert sent_body["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "prompt"},
        ]
        assert "response_format" not in sent_body

    @pytest.mark.asyncio
    async def test_schema_sent_as_response_format(self, gen: HttpGenerator) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_chat_body("{}")))
        with patch("httpx.AsyncClient.post", mock_post):
            await gen.generate_quiet_prompt(quiet_prompt="prompt", json_schema=STRUCTURED_SCHEMA)
        sent_body = mock_post.call_args.kwargs["json"]
        assert sent_body["messages"] == [{"role": "user", "content": "prompt"}]
        assert sent_body["response_format"] == {
            "type": "json_schema",
            "json_schema": {
                "name": "image_prompt_sections",
                "strict": True,
                "schema": STRUCTURED_SCHEMA["value"],
            },
        }

    @pytest.mark.asyncio
    async def test_happy_path(self, gen: HttpGenerator) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_chat_body("stormy night, rain")))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await gen.generate_raw(prompt="prompt")
        assert result == "stormy night, rain"

    @pytest.mark.asyncio
    async def test_malformed_response_raises_llm_error(self, gen: HttpGenerator) -> None:
        body = {"results": [{"text": "kobold format accidentally"}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await gen.generate_raw(prompt="prompt")
