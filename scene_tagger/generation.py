"""Generation invoker and output parser/applier.

Tag-list style (generate_tag_outputs):
  Three section prompts are invoked one after another. Each call is
  isolated: an exception or an empty answer degrades that section only.
  Empty sections then fall back:
    scene      → tag-formatted "directive ..., dialogue ..." composite
    character  → the resolved character description
    user       → the resolved user description
  With no backend at all, deterministic local outputs are returned.

Structured style (generate_structured_output):
  Exactly one call carrying STRUCTURED_SCHEMA. No backend, a failed call, an
  empty answer or unparsable JSON all yield None ("no data") for the whole
  request; nothing is partially applied.

apply_outputs() commits the three strings through the settings repository.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from scene_tagger.llm import Backend
from scene_tagger.models import SECTIONS, ContextSnapshot, PersistedSettings, StructuredOutput
from scene_tagger.prompts import (
    STRUCTURED_SCHEMA,
    STRUCTURED_SYSTEM_PROMPT,
    build_section_prompts,
    build_structured_prompt,
    character_text,
    format_transcript,
    resolve_directive,
    user_text,
)
from scene_tagger.storage import SettingsRepository
from scene_tagger.text import format_tag_list, normalize_text, stringify_prompt

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured output decoding
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Parsed:
    data: dict[str, Any]


@dataclass(frozen=True)
class Malformed:
    raw: Any
    reason: str


@dataclass(frozen=True)
class Empty:
    pass


Decoded = Union[Parsed, Malformed, Empty]


def _strip_code_fence(text: str) -> str:
    """Strip surrounding markdown fences from LLM output."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines).strip()
    return cleaned


def decode_structured(raw: Any) -> Decoded:
    """Classify a raw structured-style result.

    A mapping is used as-is; a string must hold a JSON object (optionally
    fenced); None or blank text is Empty; anything else is Malformed.
    """
    if raw is None:
        return Empty()
    if isinstance(raw, Mapping):
        return Parsed(dict(raw))
    if not isinstance(raw, str):
        return Malformed(raw, f"unexpected result type {type(raw).__name__}")

    cleaned = _strip_code_fence(raw)
    if not cleaned:
        return Empty()
    try:
        data = json.loads(cleaned)
    except (ValueError, RecursionError) as e:
        # JSONDecodeError, the int digit limit and runaway nesting
        return Malformed(raw, f"invalid JSON: {e}")
    if not isinstance(data, dict):
        return Malformed(raw, f"expected a JSON object, got {type(data).__name__}")
    return Parsed(data)


def to_structured_output(data: Mapping[str, Any]) -> StructuredOutput:
    """Stringify and trim each section; missing or empty values become ""."""
    return StructuredOutput(
        **{section: normalize_text(stringify_prompt(data.get(section))) or "" for section in SECTIONS}
    )


# ---------------------------------------------------------------------------
# Fallbacks
# ---------------------------------------------------------------------------

def fallback_scene(directive: str, transcript: str) -> str:
    parts = []
    if directive:
        parts.append(f"directive {directive}")
    if transcript:
        parts.append(f"dialogue {transcript}")
    return format_tag_list(", ".join(parts) or directive or "scene")


def fallback_outputs(directive: Any, snapshot: ContextSnapshot) -> StructuredOutput:
    """Deterministic outputs used when no generation backend exists."""
    base = resolve_directive(directive)
    return StructuredOutput(
        scene=fallback_scene(base, format_transcript(snapshot.messages)),
        character=format_tag_list(character_text(snapshot)) or "character",
        user=format_tag_list(user_text(snapshot)) or "user",
    )


# ---------------------------------------------------------------------------
# Tag-list style
# ---------------------------------------------------------------------------

async def _generate_section(backend: Backend, section: str, prompt: str) -> str:
    try:
        generated = await backend.invoke(prompt)
    except Exception as e:
        logger.warning(f"Failed to generate {section} description, falling back: {e}")
        return ""
    text = normalize_text(generated)
    if text is None:
        logger.warning(f"No {section} description generated, falling back")
        return ""
    return format_tag_list(text)


async def generate_tag_outputs(
    directive: Any, snapshot: ContextSnapshot, backend: Backend | None
) -> StructuredOutput:
    """Run the three section prompts sequentially. Never raises for backend failures."""
    base = resolve_directive(directive)
    if backend is None:
        logger.warning("No generation backend available; using local fallback descriptions")
        return fallback_outputs(base, snapshot)

    prompts = build_section_prompts(base, snapshot)
    outputs: dict[str, str] = {}
    for section in SECTIONS:
        outputs[section] = await _generate_section(backend, section, prompts[section])

    return StructuredOutput(
        scene=outputs["scene"] or fallback_scene(base, format_transcript(snapshot.messages)),
        character=outputs["character"] or character_text(snapshot),
        user=outputs["user"] or user_text(snapshot),
    )


# ---------------------------------------------------------------------------
# Structured style
# ---------------------------------------------------------------------------

async def generate_structured_output(
    directive: Any, snapshot: ContextSnapshot, backend: Backend | None
) -> StructuredOutput | None:
    """One schema-constrained call. Returns None when there is no usable data."""
    if backend is None:
        logger.warning("No generation backend available; structured output skipped")
        return None

    prompt = build_structured_prompt(directive, snapshot)
    try:
        raw = await backend.invoke(
            prompt, STRUCTURED_SCHEMA, system_prompt=STRUCTURED_SYSTEM_PROMPT
        )
    except Exception as e:
        logger.warning(f"Structured output request failed: {e}")
        return None

    decoded = decode_structured(raw)
    if isinstance(decoded, Parsed):
        return to_structured_output(decoded.data)
    if isinstance(decoded, Malformed):
        preview = stringify_prompt(decoded.raw)[:200]
        logger.warning(f"Structured output could not be parsed ({decoded.reason}): {preview!r}")
        return None
    logger.warning("Structured output request returned no data")
    return None


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

def apply_outputs(store: SettingsRepository, output: StructuredOutput) -> PersistedSettings:
    """Commit scene / character / user to the settings store in one save."""
    patch = {
        section: normalize_text(stringify_prompt(getattr(output, section))) or ""
        for section in SECTIONS
    }
    return store.save(patch)
