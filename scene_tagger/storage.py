"""JSON file settings store.

The persisted settings live in one flat JSON file shared with other
extensions, each under its own top-level key:

    {base}/
      extension_settings.json   ← {"advanced_nai_image": {prompt, scene, character, user}, ...}

Reads merge the stored values over the defaults; writes are partial patches
and leave every other top-level key untouched.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

from scene_tagger.models import PersistedSettings
from scene_tagger.prompts import DEFAULT_PROMPT

logger = logging.getLogger(__name__)

SETTINGS_KEY = "advanced_nai_image"
SETTINGS_FILE = "extension_settings.json"

DEFAULT_SETTINGS = PersistedSettings(prompt=DEFAULT_PROMPT)


class SettingsRepository(Protocol):
    def load(self) -> PersistedSettings: ...

    def save(self, patch: Mapping[str, Any]) -> PersistedSettings: ...


class SettingsStore:
    def __init__(self, base_path: Path, key: str = SETTINGS_KEY) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)
        self._key = key

    @property
    def path(self) -> Path:
        return self._base / SETTINGS_FILE

    def _read_all(self) -> dict[str, Any]:
        if not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            logger.warning(f"Settings file {self.path} is not valid JSON, using defaults: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict[str, Any]) -> None:
        self.path.write_text(json.dumps(data, indent=2))

    def load(self) -> PersistedSettings:
        """Stored settings with any missing (or non-string) field filled from defaults."""
        settings = DEFAULT_SETTINGS.model_dump()
        stored = self._read_all().get(self._key)
        if isinstance(stored, dict):
            for name in PersistedSettings.model_fields:
                if isinstance(stored.get(name), str):
                    settings[name] = stored[name]
        return PersistedSettings.model_validate(settings)

    def save(self, patch: Mapping[str, Any]) -> PersistedSettings:
        """Merge known string fields from `patch` and persist. Returns the full settings."""
        settings = self.load().model_dump()
        for name in PersistedSettings.model_fields:
            if name in patch and isinstance(patch[name], str):
                settings[name] = patch[name]
        result = PersistedSettings.model_validate(settings)

        data = self._read_all()
        data[self._key] = result.model_dump()
        self._write_all(data)
        return result
