"""Text-generation backends.

The host exposes up to two generation entry points with different shapes:

    generate_raw(*, system_prompt, prompt, trim_names, json_schema=None)
    generate_quiet_prompt(*, quiet_prompt, json_schema=None)

Either may be sync or async, and either may raise. `resolve_backend()` picks
one once per request and wraps it in a variant with a single interface:

    await backend.invoke(prompt, schema=None, system_prompt=...)

    RawGenerateBackend  — preferred; system prompt sent separately
    QuietPromptBackend  — fallback; system prompt prepended to the prompt
    None                — no backend; callers apply a local fallback

Two concrete generators are provided for running outside a host:

    HttpGenerator — real HTTP client for KoboldCpp and OpenAI-compatible
                    backends. Selected by provider_format.
    EchoGenerator — returns the prompt back unchanged. Useful for
                    smoke-testing the pipeline wiring without a model.
"""

from __future__ import annotations

import inspect
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal, Union

import httpx

from scene_tagger.host import HostBridge, lookup
from scene_tagger.prompts import TAG_SYSTEM_PROMPT

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Backend variants
# ---------------------------------------------------------------------------

async def _settle(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


@dataclass(frozen=True)
class RawGenerateBackend:
    fn: Callable[..., Any]

    async def invoke(
        self,
        prompt: str,
        schema: dict[str, Any] | None = None,
        *,
        system_prompt: str = TAG_SYSTEM_PROMPT,
    ) -> Any:
        kwargs: dict[str, Any] = {
            "system_prompt": system_prompt,
            "prompt": prompt,
            "trim_names": True,
        }
        if schema is not None:
            kwargs["json_schema"] = schema
        logger.debug("generate_raw prompt_len=%d schema=%s", len(prompt), schema is not None)
        return await _settle(self.fn(**kwargs))


@dataclass(frozen=True)
class QuietPromptBackend:
    fn: Callable[..., Any]

    async def invoke(
        self,
        prompt: str,
        schema: dict[str, Any] | None = None,
        *,
        system_prompt: str = TAG_SYSTEM_PROMPT,
    ) -> Any:
        kwargs: dict[str, Any] = {"quiet_prompt": f"{system_prompt}\n\n{prompt}"}
        if schema is not None:
            kwargs["json_schema"] = schema
        logger.debug("generate_quiet_prompt prompt_len=%d schema=%s", len(prompt), schema is not None)
        return await _settle(self.fn(**kwargs))


Backend = Union[RawGenerateBackend, QuietPromptBackend]


def _first_callable(*candidates: Any) -> Callable[..., Any] | None:
    return next((c for c in candidates if callable(c)), None)


def resolve_backend(host: HostBridge, context: Any = None) -> Backend | None:
    """Pick the generation entry point for one request.

    Raw generation wins over quiet-prompt generation; entry points found on
    the host context win over the bridge's own.
    """
    raw = _first_callable(
        lookup(context, "generateRaw"), lookup(context, "generate_raw"), host.generate_raw
    )
    if raw is not None:
        return RawGenerateBackend(raw)
    quiet = _first_callable(
        lookup(context, "generateQuietPrompt"),
        lookup(context, "generate_quiet_prompt"),
        host.generate_quiet_prompt,
    )
    if quiet is not None:
        return QuietPromptBackend(quiet)
    logger.warning("Neither generate_raw nor generate_quiet_prompt is available")
    return None


# ---------------------------------------------------------------------------
# HttpGenerator — connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai"]

_SPEAKER_LABEL = re.compile(r"^\s*(?:assistant|system|user|model)\s*:\s*", re.IGNORECASE)


class HttpGenerator:
    """Async HTTP client exposing the host's two generation entry points.

    Supported formats:
      "koboldcpp"  — POST /api/v1/generate        {"prompt": ...}
                     Response: {"results": [{"text": "..."}]}
                     JSON schemas are not forwarded.
      "openai"     — POST /v1/chat/completions    {"model": ..., "messages": [...]}
                     Response: {"choices": [{"message": {"content": "..."}}]}
                     JSON schemas are sent as response_format.

    `trim_names` on generate_raw drops a leading "assistant:"-style speaker
    label from the completion, the way chat hosts trim names from raw output.
    The API key, when set, is sent as a bearer token; `model` only matters for
    the openai format.
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
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(
        self, system_prompt: str, prompt: str, json_schema: dict[str, Any] | None
    ) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai":
            url = f"{self._base_url}/v1/chat/completions"
            messages = []
            if system_prompt:
                messages.append({"role": "system", "content": system_prompt})
            messages.append({"role": "user", "content": prompt})
            body: dict = {"messages": messages}
            if self._model:
                body["model"] = self._model
            if json_schema is not None:
                body["response_format"] = {
                    "type": "json_schema",
                    "json_schema": {
                        "name": json_schema.get("name", "response"),
                        "strict": bool(json_schema.get("strict", True)),
                        "schema": json_schema.get("value", json_schema),
                    },
                }
            return url, body

        # koboldcpp (default)
        if json_schema is not None:
            logger.debug("koboldcpp format does not forward JSON schemas")
        url = f"{self._base_url}/api/v1/generate"
        full_prompt = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
        return url, {"prompt": full_prompt}

    def _parse_response(self, data: dict) -> str:
        """Extract the completion text from the response body."""
        if self._format == "openai":
            choices = data.get("choices")
            if not choices or "content" not in (choices[0].get("message") or {}):
                raise LLMError("Unexpected response format from OpenAI-compatible backend")
            return choices[0]["message"]["content"] or ""

        # koboldcpp
        results = data.get("results")
        if not results or "text" not in results[0]:
            raise LLMError("Unexpected response format from KoboldCpp backend")
        return results[0]["text"]

    async def _complete(
        self, system_prompt: str, prompt: str, json_schema: dict[str, Any] | None
    ) -> str:
        url, body = self._build_request(system_prompt, prompt, json_schema)
        logger.debug("llm call url=%s prompt_len=%d", url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e

        text = self._parse_response(resp.json())
        logger.debug("llm response len=%d", len(text))
        return text

    async def generate_raw(
        self,
        *,
        prompt: str,
        system_prompt: str = "",
        trim_names: bool = True,
        json_schema: dict[str, Any] | None = None,
    ) -> str:
        text = await self._complete(system_prompt, prompt, json_schema)
        return _SPEAKER_LABEL.sub("", text, count=1) if trim_names else text

    async def generate_quiet_prompt(
        self, *, quiet_prompt: str, json_schema: dict[str, Any] | None = None
    ) -> str:
        return await self._complete("", quiet_prompt, json_schema)


# ---------------------------------------------------------------------------
# EchoGenerator — returns the prompt unchanged; useful for pipeline smoke tests
# ---------------------------------------------------------------------------

class EchoGenerator:
    """Returns the prompt text as-is. No network calls.

    Lets you verify the wiring (snapshot, prompt building, parsing, settings
    writes) end-to-end without a running model. The echoed text is not valid
    JSON, so the structured style will report no data.
    """

    async def generate_raw(self, *, prompt: str, **_: Any) -> str:
        logger.debug("EchoGenerator generate_raw prompt_len=%d", len(prompt))
        return prompt

    async def generate_quiet_prompt(self, *, quiet_prompt: str, **_: Any) -> str:
        logger.debug("EchoGenerator generate_quiet_prompt prompt_len=%d", len(quiet_prompt))
        return quiet_prompt


# ---------------------------------------------------------------------------
# LLMError — raised by HttpGenerator for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
