"""Host collaborator interface and schema-less access helpers.

The host application (a chat front-end) owns the chat log, character cards,
personas and the text-generation entry points. This package only ever reads
that state through a HostBridge, and never assumes a fixed schema: every
field may be missing, renamed, or of an unexpected type.

Host state arrives either as plain JSON-like mappings (the HTTP API and CLI)
or as arbitrary objects; `lookup()` treats both the same way.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

_SCALARS = (str, bytes, int, float, bool, list, tuple, set)


@dataclass
class HostBridge:
    """Everything the core consumes from the host application.

    Attributes:
        get_context:           Returns the current chat/character state, or None.
        power_user:            Global power-user settings singleton.
        globals:               Alternate global namespace probed for settings.
        user_avatar:           Id of the currently selected user persona.
        get_user_avatar:       Persona id → avatar reference.
        generate_raw:          Preferred generation entry point; accepts
                               system_prompt, prompt, trim_names, json_schema.
        generate_quiet_prompt: Fallback entry point; accepts quiet_prompt,
                               json_schema.
    """

    get_context: Callable[[], Any] | None = None
    power_user: Any = None
    globals: Mapping[str, Any] = field(default_factory=dict)
    user_avatar: str | None = None
    get_user_avatar: Callable[[str], Any] | None = None
    generate_raw: Callable[..., Any] | None = None
    generate_quiet_prompt: Callable[..., Any] | None = None

    @classmethod
    def from_state(
        cls,
        context: Any = None,
        power_user: Any = None,
        user_avatar: str | None = None,
        avatars: Mapping[str, str] | None = None,
        **backends: Callable[..., Any] | None,
    ) -> HostBridge:
        """Build a bridge around a host state that was shipped as plain data."""
        avatar_map = dict(avatars or {})
        return cls(
            get_context=(lambda: context) if context is not None else None,
            power_user=power_user,
            user_avatar=user_avatar,
            get_user_avatar=avatar_map.get if avatar_map else None,
            **backends,
        )

    def context(self) -> Any:
        """Current host context, or None when the host cannot provide one."""
        return call_host(self.get_context)


def lookup(obj: Any, *path: str) -> Any:
    """Walk `path` through nested mappings/objects. Missing steps yield None."""
    current = obj
    for name in path:
        if current is None or isinstance(current, _SCALARS):
            return None
        if isinstance(current, Mapping):
            current = current.get(name)
        else:
            current = getattr(current, name, None)
    return current


def first_present(obj: Any, *names: str) -> Any:
    """First field among `names` that is not None."""
    for name in names:
        value = lookup(obj, name)
        if value is not None:
            return value
    return None


def first_truthy(obj: Any, *names: str) -> Any:
    """First field among `names` with a truthy value."""
    for name in names:
        value = lookup(obj, name)
        if value:
            return value
    return None


def flatten_collection(collection: Any) -> list[Any]:
    """List- or map-shaped collection → list of its non-empty members."""
    if not collection:
        return []
    if isinstance(collection, Mapping):
        return [item for item in collection.values() if item]
    if isinstance(collection, (list, tuple)):
        return [item for item in collection if item]
    return []


def call_host(fn: Any, *args: Any, **kwargs: Any) -> Any:
    """Call a synchronous host accessor; a missing accessor or a failure yields None."""
    if not callable(fn):
        return None
    try:
        return fn(*args, **kwargs)
    except Exception:
        logger.warning("Host accessor %r failed", getattr(fn, "__name__", fn), exc_info=True)
        return None
