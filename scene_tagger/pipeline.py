"""Pipeline orchestrator — runs one "generate description" action end-to-end.

Action flow:
  1. Read the host context once; capture a ContextSnapshot from it.
  2. Read the directive from the settings store (default when empty).
  3. Resolve the generation backend from that same context.
  4. Generate: three tag-list calls, or one structured call.
  5. Apply the three strings to the settings store (success path only).

Failures never escape describe(): they are logged and reported as None, and
the previous settings values stay untouched. GenerationTrigger keeps at most
one action in flight per trigger and always re-arms itself.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from scene_tagger.context import capture_context_snapshot
from scene_tagger.generation import apply_outputs, generate_structured_output, generate_tag_outputs
from scene_tagger.host import HostBridge
from scene_tagger.llm import resolve_backend
from scene_tagger.models import PersistedSettings, PromptStyle
from scene_tagger.prompts import resolve_directive
from scene_tagger.storage import SettingsRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TriggerBusy(RuntimeError):
    """Raised when an action is requested while the previous one is still running."""


class GenerationTrigger:
    """Single-in-flight guard for a user-facing control.

    While an action runs the trigger is busy (the control is disabled); the
    busy flag is cleared in a finally block whatever the outcome.
    """

    def __init__(self) -> None:
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    async def run(self, action: Callable[[], Awaitable[T]]) -> T:
        if self._busy:
            raise TriggerBusy("A description request is already in progress")
        self._busy = True
        try:
            return await action()
        finally:
            self._busy = False


async def describe(
    host: HostBridge,
    store: SettingsRepository,
    style: PromptStyle = "tags",
) -> PersistedSettings | None:
    """Generate and store scene / character / user descriptions.

    Returns the updated settings, or None when the request produced no data.
    """
    try:
        context = host.context()
        snapshot = capture_context_snapshot(host, context)
        directive = resolve_directive(store.load().prompt)
        backend = resolve_backend(host, context)

        if style == "structured":
            output = await generate_structured_output(directive, snapshot, backend)
        else:
            output = await generate_tag_outputs(directive, snapshot, backend)

        if output is None:
            logger.warning("Description request returned no data; settings unchanged")
            return None

        settings = apply_outputs(store, output)
        logger.info("Applied %s descriptions from %d messages", style, len(snapshot.messages))
        return settings
    except Exception:
        logger.exception("Failed to generate descriptions")
        return None
