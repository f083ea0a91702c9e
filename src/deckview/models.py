from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

HTML_SUFFIX = ".html"


def format_name(stem: str) -> str:
    """Turn a kebab-case or snake_case stem into a display title."""
    spaced = re.sub(r"[-_]+", " ", stem).strip()
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), spaced)


@dataclass(slots=True)
class Asset:
    filename: str
    created: float = 0.0
    modified: float = 0.0
    title: str | None = None
    description: str | None = None
    tags: list[str] = field(default_factory=list)
    group: str | None = None
    recommended: bool = False
    is_index: bool = False

    @property
    def id(self) -> str:
        return Path(self.filename).stem

    @property
    def name(self) -> str:
        if self.title:
            return self.title
        if self.is_index:
            return "Index"
        return format_name(self.id)

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": self.id,
            "name": self.name,
            "filename": self.filename,
            "isIndex": self.is_index,
            "createdAt": self.created,
            "lastModified": self.modified,
            "recommended": self.recommended,
        }
        if self.title is not None:
            payload["title"] = self.title
        if self.description is not None:
            payload["description"] = self.description
        if self.tags:
            payload["tags"] = list(self.tags)
        if self.group is not None:
            payload["group"] = self.group
        return payload


@dataclass(slots=True)
class GroupDefinition:
    id: str
    label: str
    order: int
    tab_id: str | None = None

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"label": self.label, "order": self.order}
        if self.tab_id is not None:
            payload["tabId"] = self.tab_id
        return payload

    @classmethod
    def from_payload(cls, group_id: str, payload: object) -> "GroupDefinition | None":
        if not isinstance(payload, Mapping):
            return None
        label = payload.get("label")
        order = payload.get("order")
        tab_id = payload.get("tabId")
        return cls(
            id=group_id,
            label=label if isinstance(label, str) else group_id,
            order=order if isinstance(order, int) and not isinstance(order, bool) else 0,
            tab_id=tab_id if isinstance(tab_id, str) and tab_id else None,
        )


@dataclass(slots=True)
class TabDefinition:
    id: str
    label: str
    file: str
    order: int = 0
    subtitle: str | None = None

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": self.id,
            "label": self.label,
            "file": self.file,
            "order": self.order,
        }
        if self.subtitle is not None:
            payload["subtitle"] = self.subtitle
        return payload

    @classmethod
    def from_payload(cls, payload: object) -> "TabDefinition | None":
        if not isinstance(payload, Mapping):
            return None
        tab_id = payload.get("id")
        file = payload.get("file")
        if not isinstance(tab_id, str) or not tab_id or not isinstance(file, str):
            return None
        label = payload.get("label")
        order = payload.get("order")
        subtitle = payload.get("subtitle")
        return cls(
            id=tab_id,
            label=label if isinstance(label, str) else format_name(tab_id),
            file=file,
            order=order if isinstance(order, int) and not isinstance(order, bool) else 0,
            subtitle=subtitle if isinstance(subtitle, str) else None,
        )


def sort_tabs(tabs: list[TabDefinition]) -> list[TabDefinition]:
    return sorted(tabs, key=lambda tab: (tab.order, tab.id))


@dataclass(slots=True)
class DanglingReference:
    """A reference that was dropped while deriving the effective state."""

    kind: str
    subject: str
    target: str

    def as_payload(self) -> dict[str, str]:
        return {"kind": self.kind, "subject": self.subject, "target": self.target}

    def __str__(self) -> str:
        return f"{self.kind}: {self.subject} -> {self.target}"


@dataclass(slots=True)
class Presentation:
    id: str
    path: Path
    assets: list[Asset]
    groups: dict[str, GroupDefinition] = field(default_factory=dict)
    tabs: list[TabDefinition] = field(default_factory=list)
    meta: dict[str, object] = field(default_factory=dict)
    entry_file: str | None = None
    warnings: list[DanglingReference] = field(default_factory=list)
    modified: float = 0.0

    @property
    def name(self) -> str:
        meta_name = self.meta.get("name")
        if isinstance(meta_name, str) and meta_name.strip():
            return meta_name.strip()
        return format_name(self.id)

    @property
    def sorted_tabs(self) -> list[TabDefinition]:
        return sort_tabs(self.tabs)

    def find_asset(self, filename: str) -> Asset | None:
        for asset in self.assets:
            if asset.filename == filename:
                return asset
        return None

    def find_tab(self, tab_id: str | None) -> TabDefinition | None:
        if tab_id is None:
            return None
        for tab in self.tabs:
            if tab.id == tab_id:
                return tab
        return None

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": self.id,
            "name": self.name,
            "path": str(self.path),
            "assets": [asset.as_payload() for asset in self.assets],
            "groups": {gid: group.as_payload() for gid, group in self.groups.items()},
            "tabs": [tab.as_payload() for tab in self.sorted_tabs],
            "lastModified": self.modified,
        }
        if self.meta:
            payload["meta"] = dict(self.meta)
        if self.entry_file is not None:
            payload["entryFile"] = self.entry_file
        if self.warnings:
            payload["warnings"] = [warning.as_payload() for warning in self.warnings]
        return payload


__all__ = [
    "Asset",
    "DanglingReference",
    "GroupDefinition",
    "HTML_SUFFIX",
    "Presentation",
    "TabDefinition",
    "format_name",
    "sort_tabs",
]
