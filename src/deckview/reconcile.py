from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterable, Mapping

from .manifest import manifest_slides
from .models import HTML_SUFFIX, Asset, DanglingReference, GroupDefinition, TabDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FileEntry:
    name: str
    created: float
    modified: float


@dataclass(slots=True)
class ReconcileResult:
    assets: list[Asset]
    warnings: list[DanglingReference] = field(default_factory=list)


def scan_html_files(folder: Path) -> list[FileEntry]:
    entries: list[FileEntry] = []
    for entry in folder.iterdir():
        if entry.name.startswith(".") or not entry.name.lower().endswith(HTML_SUFFIX):
            continue
        try:
            if not entry.is_file():
                continue
            stat = entry.stat()
        except OSError:
            continue
        created = getattr(stat, "st_birthtime", None)
        if not isinstance(created, (int, float)) or created <= 0:
            created = stat.st_ctime or stat.st_mtime
        entries.append(FileEntry(entry.name, float(created), float(stat.st_mtime)))
    entries.sort(key=lambda item: item.name)
    return entries


def _asset_from_slide(slide: Mapping[str, Any], entry: FileEntry) -> Asset:
    def _text(key: str) -> str | None:
        value = slide.get(key)
        return value if isinstance(value, str) else None

    tags = slide.get("tags")
    return Asset(
        filename=entry.name,
        created=entry.created,
        modified=entry.modified,
        title=_text("title"),
        description=_text("description"),
        tags=[tag for tag in tags if isinstance(tag, str)] if isinstance(tags, list) else [],
        group=_text("group") or None,
        recommended=slide.get("recommended") is True,
    )


def reconcile(
    manifest: Mapping[str, Any],
    files: Iterable[FileEntry],
    entry_file: str | None = None,
    groups: Mapping[str, GroupDefinition] | None = None,
) -> ReconcileResult:
    """Merge the declared slide order with what is actually on disk.

    Declared files keep their position and metadata, declared files missing
    from disk are dropped, and undeclared files are appended by creation time
    (then modification time, then name). When ``groups`` is given, slide
    group references that name no group are dropped.
    """
    on_disk = {entry.name: entry for entry in files}
    warnings: list[DanglingReference] = []
    assets: list[Asset] = []
    declared: set[str] = set()

    for slide in manifest_slides(manifest):
        filename = slide["file"]
        if filename in declared:
            continue
        declared.add(filename)
        entry = on_disk.get(filename)
        if entry is None:
            warnings.append(DanglingReference("missing-slide-file", "slides", filename))
            continue
        asset = _asset_from_slide(slide, entry)
        if groups is not None and asset.group is not None and asset.group not in groups:
            warnings.append(DanglingReference("unknown-group", filename, asset.group))
            asset.group = None
        assets.append(asset)

    undeclared = sorted(
        (entry for name, entry in on_disk.items() if name not in declared),
        key=lambda entry: (entry.created, entry.modified, entry.name),
    )
    for entry in undeclared:
        assets.append(Asset(filename=entry.name, created=entry.created, modified=entry.modified))

    if entry_file is not None:
        assets = [replace(asset, is_index=asset.filename == entry_file) for asset in assets]

    for warning in warnings:
        logger.debug("Reconciled dangling reference %s", warning)
    return ReconcileResult(assets=assets, warnings=warnings)


def heal_references(
    groups: Mapping[str, GroupDefinition],
    tabs: Iterable[TabDefinition],
    filenames: Iterable[str],
) -> tuple[dict[str, GroupDefinition], list[DanglingReference]]:
    """Drop group tab references to unknown tabs and report tabs with missing files."""
    tab_list = list(tabs)
    tab_ids = {tab.id for tab in tab_list}
    names = set(filenames)
    warnings: list[DanglingReference] = []
    healed: dict[str, GroupDefinition] = {}
    for group_id, group in groups.items():
        if group.tab_id is not None and group.tab_id not in tab_ids:
            warnings.append(DanglingReference("unknown-tab", group_id, group.tab_id))
            group = replace(group, tab_id=None)
        healed[group_id] = group
    for tab in tab_list:
        if tab.file not in names:
            warnings.append(DanglingReference("missing-tab-file", tab.id, tab.file))
    return healed, warnings


__all__ = [
    "FileEntry",
    "ReconcileResult",
    "heal_references",
    "reconcile",
    "scan_html_files",
]
