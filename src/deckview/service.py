from __future__ import annotations

import html
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from .boundary import inject_boundary_script
from .entry import PRIMARY_ENTRY_FILENAME, resolve_entry_point
from .errors import (
    ConflictError,
    InvalidRequestError,
    ManifestValidationError,
    NotFoundError,
    Violation,
)
from .hierarchy import HierarchyView, presentation_hierarchy
from .manifest import (
    manifest_groups,
    manifest_path,
    manifest_slides,
    manifest_tabs,
    patch_manifest as patch_manifest_file,
    read_manifest,
    validate_manifest as validate_manifest_doc,
    write_manifest,
)
from .models import HTML_SUFFIX, DanglingReference, Presentation, format_name
from .reconcile import heal_references, reconcile, scan_html_files
from .sync import SyncResult, sync_from_entry_documents
from .templates import apply_template as apply_manifest_template, get_template
from .watcher import ChangeEvent

logger = logging.getLogger(__name__)

PRESENTATION_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
KEBAB_ID_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
ON_CONFLICT_STRATEGIES = ("skip", "update", "rename")
SLIDE_FIELDS = ("title", "group", "description", "recommended", "tags")

_STARTER_DOCUMENT = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>{title}</title>
</head>
<body>
  <h1>{title}</h1>
</body>
</html>
"""


@dataclass(slots=True)
class BulkAddResult:
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    skipped: list[dict[str, str]] = field(default_factory=list)
    created_groups: list[str] = field(default_factory=list)
    dry_run: bool = False

    def as_payload(self) -> dict[str, object]:
        return {
            "success": True,
            "dryRun": self.dry_run,
            "added": len(self.added),
            "updated": len(self.updated),
            "skipped": len(self.skipped),
            "addedItems": list(self.added),
            "updatedItems": list(self.updated),
            "skippedItems": list(self.skipped),
            "createdGroups": list(self.created_groups),
        }


@dataclass(slots=True)
class ValidationReport:
    valid: bool
    errors: list[Violation] = field(default_factory=list)
    warnings: list[DanglingReference] = field(default_factory=list)

    def as_payload(self) -> dict[str, object]:
        return {
            "valid": self.valid,
            "errors": [error.as_payload() for error in self.errors],
            "warnings": [warning.as_payload() for warning in self.warnings],
        }


def _require_kebab(value: object, what: str) -> str:
    if not isinstance(value, str) or not KEBAB_ID_PATTERN.match(value):
        raise InvalidRequestError(f'Invalid {what} id: must be lowercase kebab-case (e.g., "my-{what}")')
    return value


def _require_label(value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError("Missing required field: label")
    return value.strip()


def _require_html(value: object) -> str:
    if not isinstance(value, str) or not value.lower().endswith(HTML_SUFFIX):
        raise InvalidRequestError("Invalid file: must end with .html")
    return value


def _next_order(entries: Iterable[Mapping[str, Any]]) -> int:
    orders = [entry.get("order") for entry in entries]
    numbers = [order for order in orders if isinstance(order, int) and not isinstance(order, bool)]
    return max(numbers, default=0) + 1


def _find_tab(doc: Mapping[str, Any], tab_id: str) -> dict[str, Any] | None:
    for tab in doc.get("tabs") or []:
        if isinstance(tab, dict) and tab.get("id") == tab_id:
            return tab
    return None


def _find_slide(doc: Mapping[str, Any], slide_id: str) -> dict[str, Any] | None:
    slides = manifest_slides(doc)
    for slide in slides:
        if slide["file"] == slide_id:
            return slide
    for slide in slides:
        if Path(slide["file"]).stem == slide_id:
            return slide
    return None


def _reordered(ids: list[str], known: Iterable[str], what: str) -> list[str]:
    known_list = list(known)
    for item in ids:
        if item not in known_list:
            raise NotFoundError(f"{what} not found: {item}")
    return list(dict.fromkeys(ids)) + [item for item in known_list if item not in ids]


def _isoformat(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat(timespec="seconds")


def _unique_filename(filename: str, taken: set[str]) -> str:
    stem = Path(filename).stem
    counter = 2
    candidate = f"{stem}-{counter}{HTML_SUFFIX}"
    while candidate in taken:
        counter += 1
        candidate = f"{stem}-{counter}{HTML_SUFFIX}"
    return candidate


class PresentationService:
    """Read and write presentations under one root folder.

    Reads are cached per presentation and invalidated by change events or by
    this service's own writes. Writers are serialized by a process-local
    lock; there is no locking across processes (last write wins).
    """

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser().resolve()
        self._cache: dict[str, Presentation] = {}
        self._generations: dict[str, int] = {}
        self._cache_lock = threading.Lock()
        self._write_lock = threading.RLock()

    # -- cache -----------------------------------------------------------

    def generation(self, presentation_id: str) -> int:
        with self._cache_lock:
            return self._generations.get(presentation_id, 0)

    def invalidate(self, presentation_id: str | None = None) -> None:
        with self._cache_lock:
            if presentation_id is None:
                ids = set(self._cache) | set(self._generations)
                self._cache.clear()
            else:
                ids = {presentation_id}
                self._cache.pop(presentation_id, None)
            for pid in ids:
                self._generations[pid] = self._generations.get(pid, 0) + 1

    def handle_change(self, event: ChangeEvent) -> None:
        self.invalidate(event.presentation_id)

    # -- reads -----------------------------------------------------------

    def folder(self, presentation_id: str) -> Path:
        if not isinstance(presentation_id, str) or not PRESENTATION_ID_PATTERN.match(presentation_id):
            raise NotFoundError(f"Presentation not found: {presentation_id}")
        path = self.root / presentation_id
        if not path.is_dir():
            raise NotFoundError(f"Presentation not found: {presentation_id}")
        return path

    def load_presentation(self, presentation_id: str) -> Presentation:
        """Scan a presentation from disk, bypassing the cache."""
        folder = self.folder(presentation_id)
        doc = read_manifest(folder)
        declared_tabs = manifest_tabs(doc)
        files = scan_html_files(folder)
        names = [entry.name for entry in files]
        entry = resolve_entry_point(names, declared_tabs)
        if entry is None:
            raise NotFoundError(f"Presentation not found: {presentation_id}")
        groups, warnings = heal_references(manifest_groups(doc), declared_tabs, names)
        declared_files = {tab.file for tab in declared_tabs}
        index_file = entry.filename if entry.filename not in declared_files else None
        result = reconcile(doc, files, index_file, groups)
        meta = doc.get("meta")
        stamps = [item.modified for item in files]
        path = manifest_path(folder)
        if path.exists():
            stamps.append(path.stat().st_mtime)
        return Presentation(
            id=presentation_id,
            path=folder,
            assets=result.assets,
            groups=groups,
            tabs=declared_tabs,
            meta=dict(meta) if isinstance(meta, Mapping) else {},
            entry_file=entry.filename,
            warnings=warnings + result.warnings,
            modified=max(stamps, default=0.0),
        )

    def get_presentation(self, presentation_id: str) -> Presentation:
        with self._cache_lock:
            cached = self._cache.get(presentation_id)
            generation = self._generations.get(presentation_id, 0)
        if cached is not None:
            return cached
        presentation = self.load_presentation(presentation_id)
        with self._cache_lock:
            if self._generations.get(presentation_id, 0) == generation:
                self._cache[presentation_id] = presentation
            else:
                logger.debug("Discarding superseded scan of %s", presentation_id)
        return presentation

    def discover_all(self) -> list[Presentation]:
        if not self.root.is_dir():
            raise NotFoundError(f"Presentations root not found: {self.root}")
        presentations: list[Presentation] = []
        for entry in sorted(self.root.iterdir(), key=lambda p: p.name.casefold()):
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            if not PRESENTATION_ID_PATTERN.match(entry.name):
                continue
            try:
                presentations.append(self.get_presentation(entry.name))
            except NotFoundError:
                continue
        return presentations

    # -- read-only queries for integrations --------------------------------

    def query_routes(self) -> dict[str, Any]:
        presentations = self.discover_all()
        route = {
            "name": self.root.name,
            "path": str(self.root),
            "presentationCount": len(presentations),
            "isCurrent": True,
        }
        return {"routes": [route], "currentRoute": self.root.name}

    def query_route(self, route: str) -> dict[str, Any]:
        if route != self.root.name:
            raise NotFoundError(f"Route '{route}' not found. Available: {self.root.name}")
        return {
            "name": self.root.name,
            "path": str(self.root),
            "presentations": [
                {
                    "id": presentation.id,
                    "name": presentation.name,
                    "assetCount": len(presentation.assets),
                    "lastModified": _isoformat(presentation.modified),
                }
                for presentation in self.discover_all()
            ],
        }

    def query_presentation(self, presentation_id: str) -> dict[str, Any]:
        """Asset order, size and modification time of one presentation."""
        presentation = self.get_presentation(presentation_id)
        assets: list[dict[str, Any]] = []
        for position, asset in enumerate(presentation.assets, start=1):
            try:
                size = (presentation.path / asset.filename).stat().st_size
            except OSError:
                size = 0
            assets.append(
                {
                    "id": asset.id,
                    "name": asset.filename,
                    "order": position,
                    "size": size,
                    "lastModified": _isoformat(asset.modified),
                }
            )
        return {
            "id": presentation.id,
            "name": presentation.name,
            "route": self.root.name,
            "assets": assets,
            "totalAssets": len(assets),
        }

    def hierarchy(self, presentation_id: str, tab_id: str | None = None) -> HierarchyView:
        return presentation_hierarchy(self.get_presentation(presentation_id), tab_id)

    def get_manifest(self, presentation_id: str) -> dict[str, Any]:
        return read_manifest(self.folder(presentation_id))

    def asset_path(self, presentation_id: str, filename: str) -> Path:
        folder = self.folder(presentation_id).resolve()
        candidate = (folder / filename).resolve()
        try:
            candidate.relative_to(folder)
        except ValueError:
            raise NotFoundError(f"Asset not found: {filename}") from None
        if not candidate.is_file() or any(part.startswith(".") for part in candidate.relative_to(folder).parts):
            raise NotFoundError(f"Asset not found: {filename}")
        return candidate

    def read_asset_content(self, presentation_id: str, filename: str) -> str:
        """Return an asset's HTML with the boundary script and a base URL injected."""
        path = self.asset_path(presentation_id, filename)
        content = path.read_text(encoding="utf-8", errors="replace")
        return inject_boundary_script(content, base_href=f"/presentations/{presentation_id}/")

    def validate_manifest(
        self,
        presentation_id: str,
        doc: object,
        check_files: bool = True,
    ) -> ValidationReport:
        folder = self.folder(presentation_id)
        errors = validate_manifest_doc(doc)
        if errors or not check_files or not isinstance(doc, Mapping):
            return ValidationReport(valid=not errors, errors=errors)
        warnings: list[DanglingReference] = []
        for slide in manifest_slides(doc):
            if not (folder / slide["file"]).is_file():
                warnings.append(DanglingReference("missing-slide-file", "slides", slide["file"]))
        tabs = manifest_tabs(doc)
        tab_ids = {tab.id for tab in tabs}
        for tab in tabs:
            if not (folder / tab.file).is_file():
                warnings.append(DanglingReference("missing-tab-file", tab.id, tab.file))
        groups = manifest_groups(doc)
        for group in groups.values():
            if group.tab_id is not None and group.tab_id not in tab_ids:
                warnings.append(DanglingReference("unknown-tab", group.id, group.tab_id))
        for slide in manifest_slides(doc):
            group_id = slide.get("group")
            if isinstance(group_id, str) and group_id not in groups:
                warnings.append(DanglingReference("unknown-group", slide["file"], group_id))
        return ValidationReport(valid=True, warnings=warnings)

    # -- writes ----------------------------------------------------------

    def _mutate(self, presentation_id: str, change: Callable[[dict[str, Any]], Any]) -> Any:
        folder = self.folder(presentation_id)
        with self._write_lock:
            doc = read_manifest(folder)
            violations = validate_manifest_doc(doc)
            if violations:
                raise ManifestValidationError(
                    violations,
                    "Stored manifest is invalid; replace it before editing: "
                    + ", ".join(str(v) for v in violations),
                )
            outcome = change(doc)
            write_manifest(folder, doc)
        self.invalidate(presentation_id)
        return outcome

    def replace_manifest(self, presentation_id: str, doc: Mapping[str, Any]) -> dict[str, Any]:
        folder = self.folder(presentation_id)
        with self._write_lock:
            committed = write_manifest(folder, doc)
        self.invalidate(presentation_id)
        return committed

    def patch_manifest(self, presentation_id: str, partial: Mapping[str, Any]) -> dict[str, Any]:
        folder = self.folder(presentation_id)
        with self._write_lock:
            committed = patch_manifest_file(folder, partial)
        self.invalidate(presentation_id)
        return committed

    def reorder_assets(self, presentation_id: str, filenames: list[str]) -> None:
        if not isinstance(filenames, list) or not all(isinstance(name, str) for name in filenames):
            raise InvalidRequestError("Invalid request: order must be an array of filenames")
        for name in filenames:
            _require_html(name)

        def change(doc: dict[str, Any]) -> None:
            existing = {slide["file"]: slide for slide in manifest_slides(doc)}
            ordered = [existing.get(name, {"file": name}) for name in dict.fromkeys(filenames)]
            listed = set(filenames)
            ordered.extend(slide for name, slide in existing.items() if name not in listed)
            doc["slides"] = ordered

        self._mutate(presentation_id, change)

    # groups

    def create_group(
        self,
        presentation_id: str,
        group_id: str,
        label: str,
        order: int | None = None,
        tab_id: str | None = None,
    ) -> dict[str, Any]:
        _require_kebab(group_id, "group")
        label = _require_label(label)

        def change(doc: dict[str, Any]) -> dict[str, Any]:
            groups = doc["groups"]
            if group_id in groups:
                raise ConflictError(f"Group already exists: {group_id}")
            if tab_id is not None and _find_tab(doc, tab_id) is None:
                raise NotFoundError(f"Tab not found: {tab_id}")
            group: dict[str, Any] = {
                "label": label,
                "order": order if order is not None else _next_order(groups.values()),
            }
            if tab_id is not None:
                group["tabId"] = tab_id
            groups[group_id] = group
            return group

        return self._mutate(presentation_id, change)

    def update_group(
        self,
        presentation_id: str,
        group_id: str,
        label: str | None = None,
        order: int | None = None,
    ) -> dict[str, Any]:
        if label is not None:
            label = _require_label(label)

        def change(doc: dict[str, Any]) -> dict[str, Any]:
            group = doc["groups"].get(group_id)
            if not isinstance(group, dict):
                raise NotFoundError(f"Group not found: {group_id}")
            if label is not None:
                group["label"] = label
            if order is not None:
                group["order"] = order
            return group

        return self._mutate(presentation_id, change)

    def delete_group(self, presentation_id: str, group_id: str) -> None:
        """Remove a group; its slides move to the root level."""

        def change(doc: dict[str, Any]) -> None:
            if group_id not in doc["groups"]:
                raise NotFoundError(f"Group not found: {group_id}")
            del doc["groups"][group_id]
            for slide in manifest_slides(doc):
                if slide.get("group") == group_id:
                    del slide["group"]

        self._mutate(presentation_id, change)

    def reorder_groups(self, presentation_id: str, group_ids: list[str]) -> None:
        if not isinstance(group_ids, list):
            raise InvalidRequestError("Invalid request: order must be an array of group IDs")

        def change(doc: dict[str, Any]) -> None:
            groups = doc["groups"]
            current = sorted(groups, key=lambda gid: (groups[gid].get("order", 0), gid))
            for position, gid in enumerate(_reordered(group_ids, current, "Group"), start=1):
                groups[gid]["order"] = position

        self._mutate(presentation_id, change)

    def set_group_parent_tab(self, presentation_id: str, group_id: str, tab_id: str | None) -> None:
        def change(doc: dict[str, Any]) -> None:
            group = doc["groups"].get(group_id)
            if not isinstance(group, dict):
                raise NotFoundError(f"Group not found: {group_id}")
            if tab_id is None:
                group.pop("tabId", None)
                return
            if _find_tab(doc, tab_id) is None:
                raise NotFoundError(f"Tab not found: {tab_id}")
            group["tabId"] = tab_id

        self._mutate(presentation_id, change)

    def bulk_add_groups(
        self,
        presentation_id: str,
        groups: list[Mapping[str, Any]],
        dry_run: bool = False,
    ) -> BulkAddResult:
        if not isinstance(groups, list):
            raise InvalidRequestError("Missing required field: groups (must be an array)")
        for index, entry in enumerate(groups):
            if not isinstance(entry, Mapping):
                raise InvalidRequestError(f"Group at index {index} must be an object")
            _require_kebab(entry.get("id"), "group")
            _require_label(entry.get("label"))

        def change(doc: dict[str, Any]) -> BulkAddResult:
            result = BulkAddResult(dry_run=dry_run)
            existing = doc["groups"]
            for entry in groups:
                gid = entry["id"]
                if gid in existing:
                    result.skipped.append({"id": gid, "reason": "already exists"})
                    continue
                group: dict[str, Any] = {
                    "label": entry["label"].strip(),
                    "order": entry.get("order") or _next_order(existing.values()),
                }
                tab_id = entry.get("tabId")
                if isinstance(tab_id, str) and tab_id:
                    group["tabId"] = tab_id
                existing[gid] = group
                result.added.append(gid)
            return result

        if dry_run:
            return change(self.get_manifest(presentation_id))
        return self._mutate(presentation_id, change)

    # tabs

    def create_tab(
        self,
        presentation_id: str,
        tab_id: str,
        label: str,
        file: str | None = None,
        order: int | None = None,
        subtitle: str | None = None,
    ) -> dict[str, Any]:
        _require_kebab(tab_id, "tab")
        label = _require_label(label)
        filename = _require_html(file) if file is not None else f"index-{tab_id}{HTML_SUFFIX}"

        def change(doc: dict[str, Any]) -> dict[str, Any]:
            if _find_tab(doc, tab_id) is not None:
                raise ConflictError(f"Tab already exists: {tab_id}")
            tab: dict[str, Any] = {
                "id": tab_id,
                "label": label,
                "file": filename,
                "order": order if order is not None else _next_order(doc["tabs"]),
            }
            if subtitle is not None:
                tab["subtitle"] = subtitle
            doc["tabs"].append(tab)
            return tab

        return self._mutate(presentation_id, change)

    def update_tab(
        self,
        presentation_id: str,
        tab_id: str,
        label: str | None = None,
        subtitle: str | None = None,
        file: str | None = None,
        order: int | None = None,
    ) -> dict[str, Any]:
        if label is not None:
            label = _require_label(label)
        if file is not None:
            _require_html(file)

        def change(doc: dict[str, Any]) -> dict[str, Any]:
            tab = _find_tab(doc, tab_id)
            if tab is None:
                raise NotFoundError(f"Tab not found: {tab_id}")
            for key, value in (("label", label), ("subtitle", subtitle), ("file", file), ("order", order)):
                if value is not None:
                    tab[key] = value
            return tab

        return self._mutate(presentation_id, change)

    def delete_tab(self, presentation_id: str, tab_id: str, strategy: str = "orphan") -> None:
        """Remove a tab and handle its child groups.

        ``orphan`` leaves the groups without a tab, ``cascade`` deletes them
        (their slides move to the root level) and ``reparent:<tab>`` moves them
        under another tab.
        """
        target: str | None = None
        if strategy.startswith("reparent:"):
            target = strategy.split(":", 1)[1]
            if not target or target == tab_id:
                raise InvalidRequestError(f"Invalid reparent target: {target!r}")
            mode = "reparent"
        elif strategy in ("orphan", "cascade"):
            mode = strategy
        else:
            raise InvalidRequestError(f"Unknown delete strategy: {strategy}")

        def change(doc: dict[str, Any]) -> None:
            tab = _find_tab(doc, tab_id)
            if tab is None:
                raise NotFoundError(f"Tab not found: {tab_id}")
            if target is not None and _find_tab(doc, target) is None:
                raise NotFoundError(f"Tab not found: {target}")
            doc["tabs"] = [entry for entry in doc["tabs"] if entry is not tab]
            groups = doc["groups"]
            children = [gid for gid, group in groups.items() if isinstance(group, dict) and group.get("tabId") == tab_id]
            for gid in children:
                if mode == "cascade":
                    del groups[gid]
                elif mode == "reparent":
                    groups[gid]["tabId"] = target
                else:
                    del groups[gid]["tabId"]
            if mode == "cascade":
                removed = set(children)
                for slide in manifest_slides(doc):
                    if slide.get("group") in removed:
                        del slide["group"]

        self._mutate(presentation_id, change)

    def reorder_tabs(self, presentation_id: str, tab_ids: list[str]) -> None:
        if not isinstance(tab_ids, list):
            raise InvalidRequestError("Invalid request: order must be an array of tab IDs")

        def change(doc: dict[str, Any]) -> None:
            tabs = sorted(doc["tabs"], key=lambda tab: (tab.get("order", 0), tab.get("id", "")))
            by_id = {tab["id"]: tab for tab in tabs}
            ordered = _reordered(tab_ids, [tab["id"] for tab in tabs], "Tab")
            for position, tid in enumerate(ordered, start=1):
                by_id[tid]["order"] = position
            doc["tabs"] = [by_id[tid] for tid in ordered]

        self._mutate(presentation_id, change)

    # slides

    def add_slide(self, presentation_id: str, file: str, **fields: Any) -> dict[str, Any]:
        _require_html(file)

        def change(doc: dict[str, Any]) -> dict[str, Any]:
            if _find_slide(doc, file) is not None:
                raise ConflictError(f"Slide already exists: {file}")
            group = fields.get("group")
            if group is not None and group not in doc["groups"]:
                raise NotFoundError(f"Group not found: {group}")
            slide: dict[str, Any] = {"file": file}
            slide.update({key: fields[key] for key in SLIDE_FIELDS if fields.get(key) is not None})
            doc["slides"].append(slide)
            return slide

        return self._mutate(presentation_id, change)

    def update_slide(self, presentation_id: str, slide_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        """Update slide metadata; a ``None`` value removes the field."""

        def change(doc: dict[str, Any]) -> dict[str, Any]:
            slide = _find_slide(doc, slide_id)
            if slide is None:
                raise NotFoundError(f"Slide not found: {slide_id}")
            for key in SLIDE_FIELDS:
                if key not in changes:
                    continue
                value = changes[key]
                if value is None:
                    slide.pop(key, None)
                    continue
                if key == "group" and value not in doc["groups"]:
                    raise NotFoundError(f"Group not found: {value}")
                slide[key] = value
            return slide

        return self._mutate(presentation_id, change)

    def remove_slide(self, presentation_id: str, slide_id: str) -> None:
        def change(doc: dict[str, Any]) -> None:
            slide = _find_slide(doc, slide_id)
            if slide is None:
                raise NotFoundError(f"Slide not found: {slide_id}")
            doc["slides"] = [entry for entry in doc["slides"] if entry is not slide]

        self._mutate(presentation_id, change)

    def bulk_add_slides(
        self,
        presentation_id: str,
        slides: list[Mapping[str, Any]],
        on_conflict: str = "skip",
        create_groups: bool = False,
        position: str = "end",
        dry_run: bool = False,
    ) -> BulkAddResult:
        if not isinstance(slides, list):
            raise InvalidRequestError("Missing required field: slides (must be an array)")
        if on_conflict not in ON_CONFLICT_STRATEGIES:
            raise InvalidRequestError(f"Unknown conflict strategy: {on_conflict}")
        if position not in ("start", "end"):
            raise InvalidRequestError(f"Unknown position: {position}")
        for index, entry in enumerate(slides):
            if not isinstance(entry, Mapping) or not entry.get("file"):
                raise InvalidRequestError(f"Slide at index {index} is missing required field: file")
            if not str(entry["file"]).lower().endswith(HTML_SUFFIX):
                raise InvalidRequestError(f"Slide at index {index} has invalid file: must end with .html")

        def change(doc: dict[str, Any]) -> BulkAddResult:
            result = BulkAddResult(dry_run=dry_run)
            groups = doc["groups"]
            existing = {slide["file"]: slide for slide in manifest_slides(doc)}
            fresh: list[dict[str, Any]] = []
            for entry in slides:
                file = str(entry["file"])
                group = entry.get("group")
                if isinstance(group, str) and group and group not in groups:
                    if not create_groups:
                        result.skipped.append({"file": file, "reason": f"unknown group: {group}"})
                        continue
                    groups[group] = {"label": format_name(group), "order": _next_order(groups.values())}
                    result.created_groups.append(group)
                fields = {key: entry[key] for key in SLIDE_FIELDS if entry.get(key) is not None}
                if file in existing:
                    if on_conflict == "skip":
                        result.skipped.append({"file": file, "reason": "already exists"})
                        continue
                    if on_conflict == "update":
                        existing[file].update(fields)
                        result.updated.append(file)
                        continue
                    file = _unique_filename(file, set(existing))
                slide = {"file": file, **fields}
                existing[file] = slide
                fresh.append(slide)
                result.added.append(file)
            if position == "start":
                doc["slides"] = fresh + doc["slides"]
            else:
                doc["slides"].extend(fresh)
            return result

        if dry_run:
            return change(self.get_manifest(presentation_id))
        return self._mutate(presentation_id, change)

    # whole-manifest operations

    def apply_template(self, presentation_id: str, template_id: str, merge: bool = True) -> dict[str, Any]:
        template = get_template(template_id)
        if template is None:
            raise NotFoundError(f"Template not found: {template_id}")
        folder = self.folder(presentation_id)
        with self._write_lock:
            current = read_manifest(folder) if manifest_path(folder).exists() else None
            committed = write_manifest(folder, apply_manifest_template(current, template, merge))
        self.invalidate(presentation_id)
        return committed

    def sync_from_entry_documents(self, presentation_id: str, strategy: str = "merge") -> SyncResult:
        folder = self.folder(presentation_id)
        with self._write_lock:
            result = sync_from_entry_documents(folder, read_manifest(folder), strategy)
            result.manifest = write_manifest(folder, result.manifest)
        self.invalidate(presentation_id)
        return result

    def sync_manifest(self, presentation_id: str, strategy: str = "merge") -> list[str]:
        """Align the slide list with the HTML files on disk.

        ``merge`` drops slides whose files are gone and appends new files;
        ``replace`` rewrites the slide list as the effective order with each
        slide's metadata kept. Returns the resulting slide files.
        """
        if strategy not in ("merge", "replace"):
            raise InvalidRequestError(f"Unknown sync strategy: {strategy}")
        presentation = self.load_presentation(presentation_id)
        skip = {tab.file for tab in presentation.tabs}
        if presentation.entry_file is not None:
            skip.add(presentation.entry_file)

        def change(doc: dict[str, Any]) -> list[str]:
            declared = {slide["file"]: slide for slide in manifest_slides(doc)}
            on_disk = [asset.filename for asset in presentation.assets if asset.filename not in skip]
            if strategy == "replace":
                doc["slides"] = [declared.get(name, {"file": name}) for name in on_disk]
            else:
                present = set(on_disk)
                kept = [slide for slide in manifest_slides(doc) if slide["file"] in present]
                kept.extend({"file": name} for name in on_disk if name not in declared)
                doc["slides"] = kept
            return [slide["file"] for slide in doc["slides"]]

        return self._mutate(presentation_id, change)

    def create_presentation(
        self,
        presentation_id: str,
        name: str | None = None,
        slides: list[Mapping[str, Any]] | None = None,
    ) -> Path:
        if not isinstance(presentation_id, str) or not PRESENTATION_ID_PATTERN.match(presentation_id):
            raise InvalidRequestError(
                "Invalid id: must contain only letters, numbers, hyphens, and underscores"
            )
        folder = self.root / presentation_id
        doc: dict[str, Any] = {"meta": {}, "groups": {}, "tabs": [], "slides": []}
        if name:
            doc["meta"]["name"] = name
        for entry in slides or []:
            if isinstance(entry, Mapping) and entry.get("file"):
                fields = {key: entry[key] for key in SLIDE_FIELDS if entry.get(key) is not None}
                doc["slides"].append({"file": entry["file"], **fields})
        violations = validate_manifest_doc(doc)
        if violations:
            raise ManifestValidationError(violations)
        with self._write_lock:
            if folder.exists():
                raise ConflictError(f"Presentation already exists: {presentation_id}")
            folder.mkdir(parents=True)
            write_manifest(folder, doc)
            starter = folder / PRIMARY_ENTRY_FILENAME
            starter.write_text(
                _STARTER_DOCUMENT.format(title=html.escape(name or format_name(presentation_id))),
                encoding="utf-8",
            )
        self.invalidate(presentation_id)
        logger.info("Created presentation %s", folder)
        return folder


__all__ = [
    "BulkAddResult",
    "KEBAB_ID_PATTERN",
    "ON_CONFLICT_STRATEGIES",
    "PRESENTATION_ID_PATTERN",
    "PresentationService",
    "ValidationReport",
]
