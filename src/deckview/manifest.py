from __future__ import annotations

import json
import logging
import os
import tempfile
from copy import deepcopy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from .errors import ManifestValidationError, Violation
from .models import HTML_SUFFIX, GroupDefinition, TabDefinition

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "deckview.json"
DISPLAY_MODES = ("flat", "grouped")
RETIRED_DISPLAY_MODES = ("tabbed",)


def manifest_path(folder: Path) -> Path:
    return folder / MANIFEST_FILENAME


def empty_manifest() -> dict[str, Any]:
    return {"meta": {}, "groups": {}, "tabs": [], "slides": []}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def normalize_manifest(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Fill in missing sections, convert the legacy ``assets.order`` form and drop retired display modes."""
    doc = deepcopy(dict(raw))
    legacy = doc.pop("assets", None)
    if "slides" not in doc and isinstance(legacy, Mapping):
        order = legacy.get("order")
        if isinstance(order, list):
            doc["slides"] = [{"file": name} for name in order if isinstance(name, str)]
    meta = doc.setdefault("meta", {})
    if isinstance(meta, dict) and meta.get("displayMode") in RETIRED_DISPLAY_MODES:
        logger.debug("Dropping retired display mode %r", meta.pop("displayMode"))
    doc.setdefault("groups", {})
    doc.setdefault("tabs", [])
    doc.setdefault("slides", [])
    return doc


def read_manifest(folder: Path) -> dict[str, Any]:
    path = manifest_path(folder)
    if not path.exists():
        return empty_manifest()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable manifest %s: %s", path, exc)
        return empty_manifest()
    if not isinstance(raw, dict):
        logger.warning("Ignoring manifest %s: top level is not an object", path)
        return empty_manifest()
    return normalize_manifest(raw)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_optional_str(
    violations: list[Violation], entry: Mapping[str, Any], key: str, prefix: str
) -> None:
    value = entry.get(key)
    if value is not None and not isinstance(value, str):
        violations.append(Violation(f"{prefix}.{key}", "must be a string", value))


def _validate_meta(meta: object, violations: list[Violation]) -> None:
    if not isinstance(meta, Mapping):
        violations.append(Violation("meta", "must be an object", meta))
        return
    for key in ("name", "created", "updated"):
        _check_optional_str(violations, meta, key, "meta")
    mode = meta.get("displayMode")
    if mode is not None and mode not in DISPLAY_MODES:
        violations.append(
            Violation(
                "meta.displayMode",
                f"must be one of {', '.join(DISPLAY_MODES)}",
                mode,
            )
        )


def _validate_groups(groups: object, violations: list[Violation]) -> None:
    if not isinstance(groups, Mapping):
        violations.append(Violation("groups", "must be an object keyed by group id", groups))
        return
    for group_id, group in groups.items():
        prefix = f"groups.{group_id}"
        if not isinstance(group_id, str) or not group_id.strip():
            violations.append(Violation("groups", "group ids must be non-empty strings", group_id))
            continue
        if not isinstance(group, Mapping):
            violations.append(Violation(prefix, "must be an object", group))
            continue
        label = group.get("label")
        if not isinstance(label, str) or not label.strip():
            violations.append(Violation(f"{prefix}.label", "is required", label))
        if not _is_int(group.get("order")):
            violations.append(Violation(f"{prefix}.order", "must be an integer", group.get("order")))
        _check_optional_str(violations, group, "tabId", prefix)


def _validate_tabs(tabs: object, violations: list[Violation]) -> None:
    if not isinstance(tabs, list):
        violations.append(Violation("tabs", "must be an array", tabs))
        return
    seen: set[str] = set()
    for index, tab in enumerate(tabs):
        prefix = f"tabs[{index}]"
        if not isinstance(tab, Mapping):
            violations.append(Violation(prefix, "must be an object", tab))
            continue
        tab_id = tab.get("id")
        if not isinstance(tab_id, str) or not tab_id.strip():
            violations.append(Violation(f"{prefix}.id", "is required", tab_id))
        elif tab_id in seen:
            violations.append(Violation(f"{prefix}.id", "is duplicated", tab_id))
        else:
            seen.add(tab_id)
        label = tab.get("label")
        if not isinstance(label, str) or not label.strip():
            violations.append(Violation(f"{prefix}.label", "is required", label))
        file = tab.get("file")
        if not isinstance(file, str) or not file.lower().endswith(HTML_SUFFIX):
            violations.append(Violation(f"{prefix}.file", "must be an .html filename", file))
        if not _is_int(tab.get("order")):
            violations.append(Violation(f"{prefix}.order", "must be an integer", tab.get("order")))
        _check_optional_str(violations, tab, "subtitle", prefix)


def _validate_slides(slides: object, violations: list[Violation]) -> None:
    if not isinstance(slides, list):
        violations.append(Violation("slides", "must be an array", slides))
        return
    seen: set[str] = set()
    for index, slide in enumerate(slides):
        prefix = f"slides[{index}]"
        if not isinstance(slide, Mapping):
            violations.append(Violation(prefix, "must be an object", slide))
            continue
        file = slide.get("file")
        if not isinstance(file, str) or not file.lower().endswith(HTML_SUFFIX):
            violations.append(Violation(f"{prefix}.file", "must be an .html filename", file))
        elif file in seen:
            violations.append(Violation(f"{prefix}.file", "is duplicated", file))
        else:
            seen.add(file)
        for key in ("title", "group", "description"):
            _check_optional_str(violations, slide, key, prefix)
        recommended = slide.get("recommended")
        if recommended is not None and not isinstance(recommended, bool):
            violations.append(Violation(f"{prefix}.recommended", "must be a boolean", recommended))
        tags = slide.get("tags")
        if tags is not None and (
            not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags)
        ):
            violations.append(Violation(f"{prefix}.tags", "must be an array of strings", tags))


def validate_manifest(candidate: object) -> list[Violation]:
    """Return every field-level problem with ``candidate``; empty means valid."""
    if not isinstance(candidate, Mapping):
        return [Violation("root", "manifest must be an object", candidate)]
    violations: list[Violation] = []
    if "meta" in candidate:
        _validate_meta(candidate["meta"], violations)
    if "groups" in candidate:
        _validate_groups(candidate["groups"], violations)
    if "tabs" in candidate:
        _validate_tabs(candidate["tabs"], violations)
    if "slides" in candidate:
        _validate_slides(candidate["slides"], violations)
    legacy = candidate.get("assets")
    if legacy is not None:
        order = legacy.get("order") if isinstance(legacy, Mapping) else None
        if not isinstance(order, list) or not all(isinstance(name, str) for name in order):
            violations.append(Violation("assets.order", "must be an array of filenames", legacy))
    return violations


_HTML_FILE = {"type": "string", "pattern": r"\.[Hh][Tt][Mm][Ll]$"}
_OPTIONAL_STRING = {"type": "string"}
_LABEL = {"type": "string", "minLength": 1}


def manifest_schema() -> dict[str, Any]:
    """Describe the document :func:`validate_manifest` accepts as a JSON Schema."""
    schema = {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": "deckview manifest",
        "type": "object",
        "properties": {
            "meta": {
                "type": "object",
                "properties": {
                    "name": _OPTIONAL_STRING,
                    "created": _OPTIONAL_STRING,
                    "updated": _OPTIONAL_STRING,
                    "displayMode": {"enum": list(DISPLAY_MODES)},
                },
            },
            "groups": {
                "type": "object",
                "propertyNames": {"minLength": 1},
                "additionalProperties": {
                    "type": "object",
                    "required": ["label", "order"],
                    "properties": {
                        "label": _LABEL,
                        "order": {"type": "integer"},
                        "tabId": _OPTIONAL_STRING,
                    },
                },
            },
            "tabs": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["id", "label", "file", "order"],
                    "properties": {
                        "id": _LABEL,
                        "label": _LABEL,
                        "file": _HTML_FILE,
                        "order": {"type": "integer"},
                        "subtitle": _OPTIONAL_STRING,
                    },
                },
            },
            "slides": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["file"],
                    "properties": {
                        "file": _HTML_FILE,
                        "title": _OPTIONAL_STRING,
                        "group": _OPTIONAL_STRING,
                        "description": _OPTIONAL_STRING,
                        "recommended": {"type": "boolean"},
                        "tags": {"type": "array", "items": {"type": "string"}},
                    },
                },
            },
            "assets": {
                "description": "Legacy ordering, converted to slides on read.",
                "type": "object",
                "required": ["order"],
                "properties": {"order": {"type": "array", "items": {"type": "string"}}},
            },
        },
    }
    return deepcopy(schema)


def deep_merge(target: Mapping[str, Any], source: Mapping[str, Any]) -> dict[str, Any]:
    """Merge ``source`` into a copy of ``target``.

    Objects merge recursively, arrays and scalars replace, and ``None``
    removes the key.
    """
    result = deepcopy(dict(target))
    for key, value in source.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, Mapping):
            current = result.get(key)
            if isinstance(current, Mapping):
                result[key] = deep_merge(current, value)
            else:
                result[key] = deep_merge({}, value)
        else:
            result[key] = deepcopy(value)
    return result


def _stamp(doc: dict[str, Any]) -> dict[str, Any]:
    meta = doc.get("meta")
    if not isinstance(meta, dict):
        meta = {}
        doc["meta"] = meta
    now = _now_iso()
    meta.setdefault("created", now)
    meta["updated"] = now
    return doc


def _atomic_write(path: Path, doc: Mapping[str, Any]) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(doc, handle, ensure_ascii=False, indent=2)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_manifest(folder: Path, doc: Mapping[str, Any]) -> dict[str, Any]:
    violations = validate_manifest(doc)
    if violations:
        raise ManifestValidationError(violations)
    committed = _stamp(normalize_manifest(doc))
    _atomic_write(manifest_path(folder), committed)
    logger.debug("Wrote manifest %s", manifest_path(folder))
    return committed


def patch_manifest(folder: Path, partial: Mapping[str, Any]) -> dict[str, Any]:
    if not isinstance(partial, Mapping):
        raise ManifestValidationError([Violation("root", "patch must be an object", partial)])
    merged = deep_merge(read_manifest(folder), partial)
    violations = validate_manifest(merged)
    if violations:
        raise ManifestValidationError(
            violations,
            "Manifest validation failed after merge: " + ", ".join(str(v) for v in violations),
        )
    return write_manifest(folder, merged)


def manifest_tabs(doc: Mapping[str, Any]) -> list[TabDefinition]:
    tabs: list[TabDefinition] = []
    seen: set[str] = set()
    raw_tabs = doc.get("tabs")
    if not isinstance(raw_tabs, list):
        return tabs
    for entry in raw_tabs:
        tab = TabDefinition.from_payload(entry)
        if tab is None or tab.id in seen:
            continue
        seen.add(tab.id)
        tabs.append(tab)
    return tabs


def manifest_groups(doc: Mapping[str, Any]) -> dict[str, GroupDefinition]:
    groups: dict[str, GroupDefinition] = {}
    raw_groups = doc.get("groups")
    if not isinstance(raw_groups, Mapping):
        return groups
    for group_id, payload in raw_groups.items():
        if not isinstance(group_id, str):
            continue
        group = GroupDefinition.from_payload(group_id, payload)
        if group is not None:
            groups[group_id] = group
    return groups


def manifest_slides(doc: Mapping[str, Any]) -> list[dict[str, Any]]:
    raw_slides = doc.get("slides")
    if not isinstance(raw_slides, list):
        return []
    return [slide for slide in raw_slides if isinstance(slide, Mapping) and isinstance(slide.get("file"), str)]


__all__ = [
    "DISPLAY_MODES",
    "MANIFEST_FILENAME",
    "RETIRED_DISPLAY_MODES",
    "deep_merge",
    "empty_manifest",
    "manifest_groups",
    "manifest_path",
    "manifest_schema",
    "manifest_slides",
    "manifest_tabs",
    "normalize_manifest",
    "patch_manifest",
    "read_manifest",
    "validate_manifest",
    "write_manifest",
]
