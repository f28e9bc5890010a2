import pytest

from scene_tagger.storage import SettingsStore


@pytest.fixture
def store(tmp_path):
    """Fresh settings store under a per-test temporary directory."""
    return SettingsStore(tmp_path / "data")


@pytest.fixture
def knight_context() -> dict:
    """One system entry, two dialogue entries, a knight character, no persona."""
    return {
        "name1": "Ann",
        "name2": "Sir Kay",
        "characterId": 0,
        "chat": [
            {"is_system": True, "mes": "Chat started."},
            {"is_user": True, "name": "Ann", "mes": "Who goes there?"},
            {"is_user": False, "name": "Sir Kay", "mes": "A friend of the crown."},
        ],
        "characters": [
            {"name": "Sir Kay", "avatar": "kay.png", "data": {"description": "A knight"}},
        ],
    }
