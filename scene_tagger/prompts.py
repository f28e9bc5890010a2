"""Handlebars prompt rendering for the tag-list and structured prompt styles.

Tag-list style: three independent prompts (scene / character / user), each a
strict instruction demanding lowercase comma-separated tags only. They share
one structure and differ in which subject may be tagged:
  scene      everything in view
  character  the non-user character(s) only; the user persona is context only
  user       the user persona only

Structured style: one prompt asking for a single JSON object with exactly the
three string fields, sent together with STRUCTURED_SCHEMA.

Every context block is labelled "context only, do not repeat verbatim" and
every prompt ends with the exact sentence to emit when compliance fails.
"""

from collections.abc import Callable, Sequence
from typing import Any

import pybars

from scene_tagger.models import SECTIONS, ChatTurn, ContextSnapshot, SectionPrompts
from scene_tagger.text import normalize_text

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


DEFAULT_PROMPT = (
    "Generate only lowercase comma-separated visual tags.\n"
    "No sentences, no narration, no dialogue, no quotes, no conjunctions, no filler words.\n"
    "\n"
    "Include tags for:\n"
    "- number of characters\n"
    "- gender and appearance\n"
    "- clothing\n"
    "- expression\n"
    "- pose\n"
    "- camera angle and composition\n"
    "- environment and mood\n"
    "\n"
    "Use short tags only, similar to: 1girl, black hair, grey eyes, head tilt, "
    "looking at viewer, close-up, from above."
)

TAG_SYSTEM_PROMPT = (
    "You are an image-tag formatter. Respond ONLY with lowercase comma-separated tags. "
    "Never write sentences or narration."
)
STRUCTURED_SYSTEM_PROMPT = (
    "You are an image-tag formatter. Respond ONLY with a single JSON object matching "
    "the requested schema. Never write sentences or narration."
)

NO_CHARACTER_DESCRIPTION = "No character description provided."
NO_USER_DESCRIPTION = "No user description provided."
NO_MESSAGES = "[No recent messages provided]"
NO_TEXT = "[No text provided]"

UNAVAILABLE: dict[str, str] = {section: f"{section} tags unavailable." for section in SECTIONS}

STRUCTURED_SCHEMA: dict[str, Any] = {
    "name": "image_prompt_sections",
    "strict": True,
    "value": {
        "type": "object",
        "additionalProperties": False,
        "required": list(SECTIONS),
        "properties": {section: {"type": "string"} for section in SECTIONS},
    },
}


# ── Templates ────────────────────────────────────────────

_HEADER = (
    "IGNORE ALL PREVIOUS INSTRUCTIONS. OUTPUT ONLY LOWERCASE COMMA-SEPARATED TAGS.\n\n"
    "Strict rules: no sentences, no narration, no explanations, no meta-commentary, "
    "no quotes, no conjunctions, no story continuation. Tags only.\n\n"
    "Overall directive (style guidance, do not repeat verbatim):\n{{{directive}}}\n\n"
)

_TRANSCRIPT = (
    "Recent dialogue (context only, do not repeat verbatim):\n{{{transcript}}}\n\n"
)

SCENE_TEMPLATE = (
    _HEADER
    + "Task: describe the entire scene with tags for environment, weather, lighting, mood, "
    "camera angle, character count, major actions, and notable props.\n\n"
    "{{#if persona}}User persona (context only, do not repeat verbatim):\n{{{persona}}}\n\n{{/if}}"
    "Character background (context only, do not repeat verbatim):\n{{{character}}}\n\n"
    "Example: moonlit forest, mist, 2 characters, walking together, cinematic lighting.\n\n"
    + _TRANSCRIPT
    + 'If you cannot comply, output exactly "{{{unavailable}}}"'
)

CHARACTER_TEMPLATE = (
    _HEADER
    + "Task: describe ONLY the non-user character(s) with tags for count, gender, physique, "
    "clothing, expression, pose, and props. Do not tag the user persona or any narrative text.\n\n"
    "Character background (context only, do not repeat verbatim):\n{{{character}}}\n\n"
    "User persona reference (context only, do not tag the user, do not repeat verbatim):\n"
    "{{{user}}}\n\n"
    "Example: 1girl, silver hair, battle armor, determined expression, sword ready, dynamic pose.\n\n"
    + _TRANSCRIPT
    + 'If you cannot comply, output exactly "{{{unavailable}}}"'
)

USER_TEMPLATE = (
    _HEADER
    + "Task: describe ONLY the user persona with tags for appearance, clothing, mood, pose, "
    "props, and camera framing. Do not tag other characters or any narrative text.\n\n"
    "User persona information (context only, do not repeat verbatim):\n{{{user}}}\n\n"
    "{{#if persona_extra}}Additional persona details (context only, do not repeat verbatim):\n"
    "{{{persona_extra}}}\n\n{{/if}}"
    "Example: 1woman, rune-stitched robe, mischievous smile, holding wand, dim light, full length.\n\n"
    + _TRANSCRIPT
    + 'If you cannot comply, output exactly "{{{unavailable}}}"'
)

STRUCTURED_TEMPLATE = (
    "IGNORE ALL PREVIOUS INSTRUCTIONS. OUTPUT ONLY ONE JSON OBJECT.\n\n"
    'Return a single JSON object with exactly three string fields: "scene", "character", "user". '
    "No other keys, no markdown, no commentary.\n\n"
    "Every value is a lowercase comma-separated tag list:\n"
    "- scene: the entire scene, with environment, weather, lighting, mood, camera angle, "
    "character count, major actions, and notable props.\n"
    "- character: ONLY the non-user character(s), with count, gender, physique, clothing, "
    "expression, pose, and props. Never tag the user persona here.\n"
    "- user: ONLY the user persona, with appearance, clothing, mood, pose, props, "
    "and camera framing.\n\n"
    "Overall directive (style guidance, do not repeat verbatim):\n{{{directive}}}\n\n"
    "Character background (context only, do not repeat verbatim):\n{{{character}}}\n\n"
    "User persona information (context only, do not repeat verbatim):\n{{{user}}}\n\n"
    "{{#if persona_extra}}Additional persona details (context only, do not repeat verbatim):\n"
    "{{{persona_extra}}}\n\n{{/if}}"
    + _TRANSCRIPT
    + 'Example: {"scene": "tavern interior, candlelight, 2 characters", '
    '"character": "1man, grey beard, leather apron", "user": "1woman, travel cloak, hood up"}\n\n'
    'If a field cannot be described, use "<field> tags unavailable." as its value.'
)

SECTION_TEMPLATES: dict[str, str] = {
    "scene": SCENE_TEMPLATE,
    "character": CHARACTER_TEMPLATE,
    "user": USER_TEMPLATE,
}


# ── Rendering ────────────────────────────────────────────


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Context assembly ─────────────────────────────────────


def resolve_directive(prompt: Any) -> str:
    """User-supplied directive, or DEFAULT_PROMPT when it is empty."""
    return normalize_text(prompt) or DEFAULT_PROMPT


def format_transcript(messages: Sequence[ChatTurn]) -> str:
    """Render turns as "speaker: text" lines. Never returns an empty string."""
    lines = []
    for idx, message in enumerate(messages):
        speaker = message.speaker or f"Speaker {idx + 1}"
        text = normalize_text(message.text) or NO_TEXT
        lines.append(f"{speaker}: {text}")
    return "\n".join(lines) or NO_MESSAGES


def character_text(snapshot: ContextSnapshot) -> str:
    return normalize_text(snapshot.character_description) or NO_CHARACTER_DESCRIPTION


def user_text(snapshot: ContextSnapshot) -> str:
    persona = snapshot.persona.description if snapshot.persona else None
    return (
        normalize_text(snapshot.user_description)
        or normalize_text(persona)
        or NO_USER_DESCRIPTION
    )


def build_context(directive: Any, snapshot: ContextSnapshot) -> dict[str, Any]:
    """Assemble template variables from a snapshot and the caller's directive."""
    persona = normalize_text(snapshot.persona.description) if snapshot.persona else None
    user = user_text(snapshot)
    return {
        "directive": resolve_directive(directive),
        "persona": persona,
        "persona_extra": persona if persona and persona != user else None,
        "character": character_text(snapshot),
        "user": user,
        "transcript": format_transcript(snapshot.messages),
    }


# ── Prompt builders ──────────────────────────────────────


def build_section_prompts(directive: Any, snapshot: ContextSnapshot) -> SectionPrompts:
    """Tag-list style: one strict prompt per section."""
    ctx = build_context(directive, snapshot)
    return {
        section: render_prompt(template, {**ctx, "unavailable": UNAVAILABLE[section]})
        for section, template in SECTION_TEMPLATES.items()
    }


def build_structured_prompt(directive: Any, snapshot: ContextSnapshot) -> str:
    """Structured style: a single prompt to be sent together with STRUCTURED_SCHEMA."""
    return render_prompt(STRUCTURED_TEMPLATE, build_context(directive, snapshot))
