from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping

from .manifest import DISPLAY_MODES
from .models import Asset, GroupDefinition, Presentation, TabDefinition, format_name, sort_tabs

DISPLAY_MODE_FLAT = "flat"
DISPLAY_MODE_GROUPED = "grouped"
GROUPED_ASSET_THRESHOLD = 15


@dataclass(slots=True)
class GroupView:
    id: str
    label: str
    order: int
    tab_id: str | None
    assets: list[Asset] = field(default_factory=list)
    defined: bool = True

    def as_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "label": self.label,
            "order": self.order,
            "tabId": self.tab_id,
            "defined": self.defined,
            "assets": [asset.filename for asset in self.assets],
        }


@dataclass(slots=True)
class HierarchyView:
    active_tab: str | None
    index: Asset | None
    root_assets: list[Asset]
    groups: list[GroupView]

    def flatten(self) -> list[Asset]:
        ordered: list[Asset] = []
        if self.index is not None:
            ordered.append(self.index)
        ordered.extend(self.root_assets)
        for group in self.groups:
            ordered.extend(group.assets)
        return ordered

    def group_of(self, filename: str) -> str | None:
        for group in self.groups:
            if any(asset.filename == filename for asset in group.assets):
                return group.id
        return None

    def as_payload(self) -> dict[str, object]:
        return {
            "activeTab": self.active_tab,
            "index": self.index.filename if self.index else None,
            "rootAssets": [asset.filename for asset in self.root_assets],
            "groups": [group.as_payload() for group in self.groups],
            "order": [asset.filename for asset in self.flatten()],
        }


def resolve_active_tab(tabs: Iterable[TabDefinition], requested: str | None) -> str | None:
    """Return ``requested`` if it names a tab, else the first tab by order, else ``None``."""
    ordered = sort_tabs(list(tabs))
    if requested is not None and any(tab.id == requested for tab in ordered):
        return requested
    return ordered[0].id if ordered else None


def resolve_hierarchy(
    assets: Iterable[Asset],
    groups: Mapping[str, GroupDefinition],
    tabs: Iterable[TabDefinition],
    active_tab: str | None = None,
) -> HierarchyView:
    """Compute the grouped, tab-filtered view of an effective asset list.

    Assets without a group are visible under every tab. A group is visible
    when it has no tab or its tab is the active one; groups left without
    members are omitted. Groups referenced by assets but never defined are
    appended after the defined ones with a label derived from their id.
    """
    tab_list = list(tabs)
    tab_files = {tab.file for tab in tab_list}
    active = resolve_active_tab(tab_list, active_tab) if active_tab is not None else None

    index: Asset | None = None
    root_assets: list[Asset] = []
    by_group: dict[str, list[Asset]] = {}
    for asset in assets:
        if asset.is_index:
            if index is None and active is None:
                index = asset
            continue
        if asset.filename in tab_files:
            continue
        if asset.group is None:
            root_assets.append(asset)
        else:
            by_group.setdefault(asset.group, []).append(asset)

    views: list[GroupView] = []
    for group in sorted(groups.values(), key=lambda g: (g.order, g.id)):
        # Pop every defined group, hidden or not, so only undefined ids remain below.
        members = by_group.pop(group.id, [])
        if active is not None and group.tab_id is not None and group.tab_id != active:
            continue
        if members:
            views.append(GroupView(group.id, group.label, group.order, group.tab_id, members))

    next_order = max((g.order for g in groups.values()), default=0) + 1
    for offset, group_id in enumerate(sorted(by_group)):
        views.append(
            GroupView(
                group_id,
                format_name(group_id),
                next_order + offset,
                None,
                by_group[group_id],
                defined=False,
            )
        )
    return HierarchyView(active_tab=active, index=index, root_assets=root_assets, groups=views)


def presentation_hierarchy(presentation: Presentation, active_tab: str | None = None) -> HierarchyView:
    return resolve_hierarchy(presentation.assets, presentation.groups, presentation.tabs, active_tab)


def validate_display_mode(value: object) -> str | None:
    """Accept only current display modes; retired or unknown values are discarded."""
    if isinstance(value, str) and value in DISPLAY_MODES:
        return value
    return None


def detect_display_mode(
    asset_count: int,
    group_count: int,
    tab_count: int = 0,
    stored: object = None,
) -> str:
    chosen = validate_display_mode(stored)
    if chosen is not None:
        return chosen
    if tab_count > 0:
        return DISPLAY_MODE_GROUPED if group_count > 0 else DISPLAY_MODE_FLAT
    if group_count > 0 and asset_count > GROUPED_ASSET_THRESHOLD:
        return DISPLAY_MODE_GROUPED
    return DISPLAY_MODE_FLAT


def presentation_display_mode(presentation: Presentation, override: object = None) -> str:
    stored = validate_display_mode(override) or validate_display_mode(
        presentation.meta.get("displayMode")
    )
    return detect_display_mode(
        len(presentation.assets),
        len(presentation.groups),
        len(presentation.tabs),
        stored,
    )


__all__ = [
    "DISPLAY_MODE_FLAT",
    "DISPLAY_MODE_GROUPED",
    "GroupView",
    "HierarchyView",
    "detect_display_mode",
    "presentation_display_mode",
    "presentation_hierarchy",
    "resolve_active_tab",
    "resolve_hierarchy",
    "validate_display_mode",
]
