"""Context resolver — host state → ContextSnapshot.

The host's chat/character/persona state has no fixed schema, so every value
is resolved through an ordered table of (name, extractor) strategies. The
first strategy yielding an acceptable value wins; the table order *is* the
precedence order, and the names make it enumerable in tests and debug logs.

Resolution never raises and never mutates host state. Missing fields simply
fall through to the next strategy, and finally to None.

Resolved per request:
  messages               last 5 user/character dialogue turns, log order
  user_description       persona descriptor → power-user/context persona
                         fields → host card-field accessor → derived user card
  character_description  active character card → legacy context fields
  persona                id / name / description / avatar of the active persona
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from scene_tagger.host import (
    HostBridge,
    call_host,
    first_present,
    first_truthy,
    flatten_collection,
    lookup,
)
from scene_tagger.models import (
    MAX_SNAPSHOT_MESSAGES,
    ChatTurn,
    ContextSnapshot,
    PersonaInfo,
)
from scene_tagger.text import normalize_text, stringify_prompt

logger = logging.getLogger(__name__)

Strategy = tuple[str, Callable[..., Any]]


def _truthy(value: Any) -> Any:
    return value or None


def resolve_first(
    strategies: list[Strategy],
    *args: Any,
    accept: Callable[[Any], Any] = _truthy,
) -> Any:
    """Run strategies in order; return the first value `accept` does not reject."""
    for name, extract in strategies:
        value = accept(extract(*args))
        if value is not None:
            logger.debug("resolved via %s", name)
            return value
    return None


# ---------------------------------------------------------------------------
# Field tables
# ---------------------------------------------------------------------------

# Card description fields, nested card data first.
CARD_DESCRIPTION_FIELDS: tuple[tuple[str, ...], ...] = (
    ("data", "description"),
    ("data", "description_full"),
    ("data", "persona"),
    ("data", "personality"),
    ("data", "bio"),
    ("description",),
    ("persona",),
    ("bio",),
)

PROFILE_DESCRIPTION_FIELDS: tuple[tuple[str, ...], ...] = (
    ("description",),
    ("persona",),
    ("bio",),
    ("profile",),
    ("prompt",),
    ("data", "description"),
)

CHARACTER_DESCRIPTION_FALLBACKS: tuple[str, ...] = (
    "character_description",
    "characterDescription",
    "description",
)

USER_NAME_HINT_FIELDS: tuple[str, ...] = ("name1", "user_name", "userName", "username")

DISPLAY_NAME_FIELDS: tuple[tuple[str, ...], ...] = (
    ("name",),
    ("display_name",),
    ("title",),
    ("data", "name"),
    ("data", "display_name"),
)

USER_CHARACTER_COLLECTIONS: tuple[str, ...] = ("characters", "characterCache", "groupCharacters")

# Presence of any of these turns the context itself into a synthetic user card.
LEGACY_PERSONA_TRIGGERS: tuple[str, ...] = (
    "persona",
    "persona_description",
    "user_definition",
    "userDefinition",
)
LEGACY_PERSONA_TEXT_ORDER: tuple[str, ...] = (
    "persona_description",
    "persona",
    "user_definition",
    "userDefinition",
)

POWER_USER_PROBES: list[Strategy] = [
    ("context.powerUserSettings", lambda ctx, host: lookup(ctx, "powerUserSettings")),
    ("context.power_user", lambda ctx, host: lookup(ctx, "power_user")),
    ("host.power_user", lambda ctx, host: host.power_user),
    ("globals.power_user", lambda ctx, host: lookup(host.globals, "power_user")),
]


# ---------------------------------------------------------------------------
# Card helpers
# ---------------------------------------------------------------------------

def extract_card_description(card: Any) -> str | None:
    """First non-empty description-like field of a character/user card."""
    if not card:
        return None
    for path in CARD_DESCRIPTION_FIELDS:
        text = normalize_text(lookup(card, *path))
        if text:
            return text
    return None


def _display_name(character: Any) -> str | None:
    for path in DISPLAY_NAME_FIELDS:
        value = lookup(character, *path)
        if value:
            return value.strip().lower() if isinstance(value, str) else None
    return None


def is_user_character(character: Any, name_hints: set[str]) -> bool:
    """True when a character entry represents the human user."""
    if not character:
        return False
    if (
        first_truthy(character, "is_user", "isUser", "isYou")
        or lookup(character, "user") is True
        or lookup(character, "type") == "user"
        or lookup(character, "role") == "user"
        or lookup(character, "data", "role") == "user"
    ):
        return True
    name = _display_name(character)
    return bool(name) and name in name_hints


def _as_index(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def active_character_card(context: Any) -> Any:
    """The character the chat is currently with.

    `characterId` is an index into the character collection when it is
    integral and in range, otherwise an avatar/id to match. Defaults to the
    first character.
    """
    characters = flatten_collection(lookup(context, "characters"))
    if not characters:
        return None

    character_id = lookup(context, "characterId")
    idx = _as_index(character_id)
    if idx is not None and 0 <= idx < len(characters):
        return characters[idx]

    if isinstance(character_id, str):
        for character in characters:
            if character_id in (lookup(character, "avatar"), lookup(character, "id")):
                return character

    return characters[0]


# ---------------------------------------------------------------------------
# User card derivation
# ---------------------------------------------------------------------------

def _find_profile(profiles: Any, profile_id: Any) -> Any:
    if isinstance(profiles, (list, tuple)):
        return next((p for p in profiles if lookup(p, "id") == profile_id), None)
    if isinstance(profiles, Mapping) and isinstance(profile_id, (str, int)):
        return profiles.get(profile_id)
    return None


def profile_card(context: Any) -> dict[str, Any] | None:
    """User card built from the host's active profile, if it has a profile manager."""
    manager = first_present(context, "profile_manager", "profileManager")
    profiles = flatten_collection(lookup(manager, "profiles")) or flatten_collection(
        lookup(context, "profiles")
    )

    profile_id = first_present(manager, "currentProfile", "selectedProfile", "activeProfile")
    if profile_id is None:
        profile_id = first_present(context, "profileId", "profile_id")

    active = None
    if profile_id is not None:
        active = _find_profile(lookup(manager, "profiles"), profile_id)
        if active is None:
            active = _find_profile(lookup(context, "profiles"), profile_id)

    if active is None:
        active = (
            next((p for p in profiles if lookup(p, "selected")), None)
            or next((p for p in profiles if lookup(p, "isDefault")), None)
            or (profiles[0] if profiles else None)
        )
    if not active:
        return None

    description = None
    for path in PROFILE_DESCRIPTION_FIELDS:
        description = normalize_text(lookup(active, *path))
        if description:
            break

    name = first_truthy(active, "name", "title", "displayName") or lookup(context, "name1") or "User"
    return {"name": name, "data": {"description": description}}


def matching_user_character(context: Any) -> Any:
    """A character entry that is flagged as, or named like, the current user."""
    name_hints = {
        value.strip().lower()
        for value in (lookup(context, name) for name in USER_NAME_HINT_FIELDS)
        if isinstance(value, str) and value.strip()
    }
    for collection in USER_CHARACTER_COLLECTIONS:
        for character in flatten_collection(lookup(context, collection)):
            if is_user_character(character, name_hints):
                return character
    return None


def legacy_persona_card(context: Any) -> dict[str, Any] | None:
    """Synthetic user card from the host's older persona text fields."""
    if not any(lookup(context, name) for name in LEGACY_PERSONA_TRIGGERS):
        return None
    return {
        "name": lookup(context, "name1") or "User",
        "data": {"description": first_present(context, *LEGACY_PERSONA_TEXT_ORDER)},
    }


USER_CARD_SOURCES: list[Strategy] = [
    ("context.user", lambda ctx: lookup(ctx, "user")),
    ("context.userCard", lambda ctx: lookup(ctx, "userCard")),
    ("profile", profile_card),
    ("user character", matching_user_character),
    ("legacy persona fields", legacy_persona_card),
]


def derive_user_card(context: Any) -> Any:
    return resolve_first(USER_CARD_SOURCES, context)


# ---------------------------------------------------------------------------
# Description resolution
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Sources:
    context: Any
    power_user: Any
    persona: PersonaInfo


def _card_fields_persona(src: _Sources) -> Any:
    accessor = lookup(src.context, "getCharacterCardFields")
    chid = first_present(src.context, "characterId", "character_id")
    return lookup(call_host(accessor, chid=chid), "persona")


USER_DESCRIPTION_SOURCES: list[Strategy] = [
    ("persona descriptor", lambda src: src.persona.description),
    ("power_user.persona_description", lambda src: lookup(src.power_user, "persona_description")),
    ("power_user.personaDescription", lambda src: lookup(src.power_user, "personaDescription")),
    ("context.persona_description", lambda src: lookup(src.context, "persona_description")),
    ("context.personaDescription", lambda src: lookup(src.context, "personaDescription")),
    ("context.user_definition", lambda src: lookup(src.context, "user_definition")),
    ("context.userDefinition", lambda src: lookup(src.context, "userDefinition")),
    ("card fields persona", _card_fields_persona),
    ("user card", lambda src: extract_card_description(derive_user_card(src.context))),
]


def resolve_power_user(context: Any, host: HostBridge) -> Any:
    return resolve_first(POWER_USER_PROBES, context, host)


def resolve_persona(host: HostBridge, power_user: Any) -> PersonaInfo:
    """Active persona from the host's current persona reference.

    No persona id is not an error: every field is simply None.
    """
    persona_id = host.user_avatar if isinstance(host.user_avatar, str) and host.user_avatar else None
    if persona_id is None:
        return PersonaInfo()

    description = normalize_text(lookup(power_user, "persona_descriptions", persona_id, "description"))
    name = lookup(power_user, "personas", persona_id)
    avatar = call_host(host.get_user_avatar, persona_id)
    return PersonaInfo(
        id=persona_id,
        name=name if isinstance(name, str) else None,
        description=description,
        avatar=avatar if isinstance(avatar, str) else None,
    )


def resolve_user_description(context: Any, power_user: Any, persona: PersonaInfo) -> str | None:
    if context is None and not persona.description:
        return None
    return resolve_first(
        USER_DESCRIPTION_SOURCES,
        _Sources(context, power_user, persona),
        accept=normalize_text,
    )


def resolve_character_description(context: Any) -> str | None:
    if context is None:
        return None
    description = extract_card_description(active_character_card(context))
    if description:
        return description
    for name in CHARACTER_DESCRIPTION_FALLBACKS:
        text = normalize_text(lookup(context, name))
        if text:
            return text
    return None


# ---------------------------------------------------------------------------
# Chat log
# ---------------------------------------------------------------------------

def is_dialogue_entry(entry: Any) -> bool:
    """Whether a chat log entry is user or character dialogue (not system)."""
    if entry is None:
        return False
    if isinstance(entry, str):
        return True
    if (
        lookup(entry, "is_system")
        or lookup(entry, "role") == "system"
        or lookup(entry, "type") == "system"
        or lookup(entry, "data", "role") == "system"
    ):
        return False
    if isinstance(lookup(entry, "is_user"), bool):
        return True
    role = first_present(entry, "role")
    if role is None:
        role = lookup(entry, "data", "role")
    return role in ("user", "assistant")


def _speaker(entry: Any, context: Any) -> str:
    name = lookup(entry, "name")
    if name:
        return stringify_prompt(name)
    if lookup(entry, "is_user"):
        return stringify_prompt(lookup(context, "name1") or "You")
    return stringify_prompt(lookup(context, "name2") or "Character") or "unknown"


def collect_recent_turns(context: Any) -> tuple[ChatTurn, ...]:
    """Last qualifying dialogue turns of the chat log, oldest first, indices kept."""
    chat = lookup(context, "chat")
    if not isinstance(chat, (list, tuple)):
        return ()

    relevant = [(idx, entry) for idx, entry in enumerate(chat) if is_dialogue_entry(entry)]
    turns: list[ChatTurn] = []
    for idx, entry in relevant[-MAX_SNAPSHOT_MESSAGES:]:
        if isinstance(entry, str):
            turns.append(ChatTurn(index=idx, speaker="unknown", text=entry))
            continue
        text = first_present(entry, "mes", "text")
        turns.append(ChatTurn(index=idx, speaker=_speaker(entry, context), text=stringify_prompt(text)))
    return tuple(turns)


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

_FETCH: Any = object()


def capture_context_snapshot(host: HostBridge, context: Any = _FETCH) -> ContextSnapshot:
    """Resolve the host's current state into a fresh, immutable snapshot.

    Pass `context` when the caller already read it from the host for the same
    request; None then means "no context available".
    """
    if context is _FETCH:
        context = host.context()
    power_user = resolve_power_user(context, host)
    persona = resolve_persona(host, power_user)

    if context is None:
        logger.debug("No host context available; persona-only snapshot")
        return ContextSnapshot(persona=persona, user_description=persona.description)

    snapshot = ContextSnapshot(
        messages=collect_recent_turns(context),
        user_description=resolve_user_description(context, power_user, persona),
        character_description=resolve_character_description(context),
        persona=persona,
    )
    logger.debug(
        "snapshot messages=%d user_description=%s character_description=%s persona=%s",
        len(snapshot.messages),
        snapshot.user_description is not None,
        snapshot.character_description is not None,
        persona.id,
    )
    return snapshot
