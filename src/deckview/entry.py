from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .models import HTML_SUFFIX, TabDefinition, format_name, sort_tabs

PRIMARY_ENTRY_FILENAME = "index.html"
LEGACY_PRIMARY_ENTRY_FILENAME = "presentation.html"
TAB_ENTRY_PATTERN = re.compile(r"^index-([a-z0-9][a-z0-9_-]*)\.html$")
LEGACY_TAB_ENTRY_PATTERN = re.compile(r"^tab-([a-z0-9][a-z0-9_-]*)\.html$")
_DETECTED_TAB_ORDER_BASE = 1000


@dataclass(slots=True)
class EntryPoint:
    filename: str
    source: str
    tab_id: str | None = None
    tabs: list[TabDefinition] = field(default_factory=list)


def _detected_tabs(
    names: set[str],
    pattern: re.Pattern[str],
    taken_ids: set[str],
    taken_files: set[str],
) -> list[TabDefinition]:
    detected: list[TabDefinition] = []
    for name in sorted(names):
        match = pattern.match(name)
        if not match or name in taken_files:
            continue
        tab_id = match.group(1)
        if tab_id in taken_ids:
            continue
        taken_ids.add(tab_id)
        detected.append(
            TabDefinition(
                id=tab_id,
                label=format_name(tab_id),
                file=name,
                order=_DETECTED_TAB_ORDER_BASE + len(detected),
            )
        )
    return detected


def resolve_entry_point(
    filenames: Iterable[str],
    manifest_tabs: Iterable[TabDefinition] | None = None,
) -> EntryPoint | None:
    """Pick the default document of a folder, or ``None`` if it is not a presentation.

    Checked in priority order: the canonical primary document, the legacy
    primary document, per-tab entry documents (declared by the manifest or
    named ``index-<tab>.html``) and finally legacy ``tab-<tab>.html``
    documents. Without a primary document the tab with the lowest ``order``
    wins, ties broken by identifier.
    """
    names = {name for name in filenames if name.lower().endswith(HTML_SUFFIX)}
    declared = [tab for tab in (manifest_tabs or []) if tab.file in names]
    taken_ids = {tab.id for tab in declared}
    taken_files = {tab.file for tab in declared}
    current = declared + _detected_tabs(names, TAB_ENTRY_PATTERN, taken_ids, taken_files)
    taken_files.update(tab.file for tab in current)
    legacy = _detected_tabs(names, LEGACY_TAB_ENTRY_PATTERN, taken_ids, taken_files)
    all_tabs = sort_tabs(current) + sort_tabs(legacy)

    if PRIMARY_ENTRY_FILENAME in names:
        return EntryPoint(PRIMARY_ENTRY_FILENAME, "primary", tabs=all_tabs)
    if LEGACY_PRIMARY_ENTRY_FILENAME in names:
        return EntryPoint(LEGACY_PRIMARY_ENTRY_FILENAME, "legacy-primary", tabs=all_tabs)
    for source, candidates in (("tab", current), ("legacy-tab", legacy)):
        if candidates:
            first = sort_tabs(candidates)[0]
            return EntryPoint(first.file, source, tab_id=first.id, tabs=all_tabs)
    return None


def is_presentation_folder(
    folder: Path,
    manifest_tabs: Iterable[TabDefinition] | None = None,
) -> bool:
    if not folder.is_dir():
        return False
    try:
        names = [entry.name for entry in folder.iterdir() if entry.is_file()]
    except OSError:
        return False
    return resolve_entry_point(names, manifest_tabs) is not None


__all__ = [
    "EntryPoint",
    "LEGACY_PRIMARY_ENTRY_FILENAME",
    "LEGACY_TAB_ENTRY_PATTERN",
    "PRIMARY_ENTRY_FILENAME",
    "TAB_ENTRY_PATTERN",
    "is_presentation_folder",
    "resolve_entry_point",
]
