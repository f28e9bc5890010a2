"""Core domain models.

The resolver, prompt builder and parser all operate on these types.
Pydantic validates them at every boundary (host state in, settings out).
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Section = Literal["scene", "character", "user"]
SECTIONS: tuple[Section, ...] = ("scene", "character", "user")

PromptStyle = Literal["tags", "structured"]

MAX_SNAPSHOT_MESSAGES = 5

# Fixed keys scene / character / user → instruction text
SectionPrompts = dict[str, str]


class ChatTurn(BaseModel):
    """One dialogue line taken from the host chat log."""

    model_config = ConfigDict(frozen=True)

    index: int  # position in the original chat log
    speaker: str
    text: str


class PersonaInfo(BaseModel):
    """The user's active persona, independent from any character card."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    name: str | None = None
    description: str | None = None
    avatar: str | None = None


class ContextSnapshot(BaseModel):
    """Resolved chat/persona/character state at the moment a request starts."""

    model_config = ConfigDict(frozen=True)

    messages: tuple[ChatTurn, ...] = Field(default=(), max_length=MAX_SNAPSHOT_MESSAGES)
    user_description: str | None = Field(default=None, min_length=1)
    character_description: str | None = Field(default=None, min_length=1)
    persona: PersonaInfo | None = None


class StructuredOutput(BaseModel):
    """The three descriptions produced by one generation request."""

    scene: str = ""
    character: str = ""
    user: str = ""


class PersistedSettings(BaseModel):
    """Settings owned by the settings store: the directive and the last results."""

    prompt: str = ""
    scene: str = ""
    character: str = ""
    user: str = ""
