from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, MutableMapping

from .hierarchy import validate_display_mode

logger = logging.getLogger(__name__)

PREFERENCES_VERSION = 1
SIDEBAR_WIDTH_RANGE = (160, 640)


class PreferenceKey(str, Enum):
    COLLAPSED_GROUPS = "collapsed-groups"
    DISPLAY_MODE = "display-mode"
    ACTIVE_TAB = "active-tab"
    SIDEBAR_WIDTH = "sidebar-width"


def _valid_collapsed(value: object) -> frozenset[str] | None:
    if isinstance(value, (list, tuple, set, frozenset)) and all(isinstance(v, str) for v in value):
        return frozenset(value)
    return None


def _valid_tab(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _valid_width(value: object) -> int | None:
    low, high = SIDEBAR_WIDTH_RANGE
    if isinstance(value, int) and not isinstance(value, bool) and low <= value <= high:
        return value
    return None


_VALIDATORS: dict[PreferenceKey, Callable[[object], object | None]] = {
    PreferenceKey.COLLAPSED_GROUPS: _valid_collapsed,
    PreferenceKey.DISPLAY_MODE: validate_display_mode,
    PreferenceKey.ACTIVE_TAB: _valid_tab,
    PreferenceKey.SIDEBAR_WIDTH: _valid_width,
}

_PER_PRESENTATION = {
    PreferenceKey.COLLAPSED_GROUPS,
    PreferenceKey.DISPLAY_MODE,
    PreferenceKey.ACTIVE_TAB,
}


class PreferenceStore:
    """Per-client UI preferences behind one validated key-value interface.

    Keys are namespaced as ``deckview:v<version>:<key>[:<presentation>]``.
    Reads run the key's validator and drop stored values that fail it, so a
    stale value (for example a retired display mode) never reaches callers.
    """

    def __init__(self, backend: MutableMapping[str, object] | None = None) -> None:
        self._backend: MutableMapping[str, object] = backend if backend is not None else {}
        self._current_presentation: str | None = None

    @staticmethod
    def storage_key(key: PreferenceKey, presentation_id: str | None = None) -> str:
        base = f"deckview:v{PREFERENCES_VERSION}:{key.value}"
        if key in _PER_PRESENTATION:
            if not presentation_id:
                raise ValueError(f"{key.value} is stored per presentation")
            return f"{base}:{presentation_id}"
        return base

    def get(self, key: PreferenceKey, presentation_id: str | None = None) -> object | None:
        storage_key = self.storage_key(key, presentation_id)
        if storage_key not in self._backend:
            return None
        value = _VALIDATORS[key](self._backend[storage_key])
        if value is None:
            logger.debug("Discarding invalid stored preference %s", storage_key)
            del self._backend[storage_key]
        return value

    def set(self, key: PreferenceKey, value: object, presentation_id: str | None = None) -> None:
        storage_key = self.storage_key(key, presentation_id)
        if value is None:
            self._backend.pop(storage_key, None)
            return
        validated = _VALIDATORS[key](value)
        if validated is None:
            raise ValueError(f"Invalid value for {key.value}: {value!r}")
        if isinstance(validated, frozenset):
            validated = sorted(validated)
        self._backend[storage_key] = validated

    def clear(self, key: PreferenceKey, presentation_id: str | None = None) -> None:
        self._backend.pop(self.storage_key(key, presentation_id), None)

    def collapsed_groups(self, presentation_id: str) -> set[str]:
        value = self.get(PreferenceKey.COLLAPSED_GROUPS, presentation_id)
        return set(value) if isinstance(value, frozenset) else set()

    def enter_presentation(self, presentation_id: str) -> None:
        """Record that the client opened ``presentation_id``.

        Opening a different presentation drops the display-mode override of
        the one being left; reopening the same one keeps it.
        """
        previous = self._current_presentation
        if previous is not None and previous != presentation_id:
            self.clear(PreferenceKey.DISPLAY_MODE, previous)
        self._current_presentation = presentation_id


__all__ = ["PREFERENCES_VERSION", "PreferenceKey", "PreferenceStore"]
