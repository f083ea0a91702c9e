from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .boundary import (
    ForwardedKey,
    InternalNavigation,
    KeyCombo,
    RenderTarget,
    key_action,
    parse_boundary_message,
)
from .errors import NotFoundError
from .hierarchy import HierarchyView, presentation_hierarchy, resolve_active_tab
from .models import Asset, Presentation
from .preferences import PreferenceKey, PreferenceStore

logger = logging.getLogger(__name__)

DIRECTIONS = ("next", "prev", "first", "last")


class NavState(str, Enum):
    NO_SELECTION = "no-selection"
    ASSET_SELECTED = "asset-selected"
    TAB_INDEX_SELECTED = "tab-index-selected"


@dataclass(frozen=True, slots=True)
class RenderInstruction:
    mode: str
    filename: str


class NavigationCursor:
    """Per-client position in the tab -> group -> asset hierarchy.

    All transitions are pure over the presentation snapshot held by the
    cursor. Structural changes arrive through :meth:`refresh`, which re-anchors
    the cursor so it never points at a tab or asset that no longer exists.
    """

    def __init__(
        self,
        presentation: Presentation,
        preferences: PreferenceStore | None = None,
        *,
        auto_select: bool = True,
    ) -> None:
        self.presentation = presentation
        self.preferences = preferences if preferences is not None else PreferenceStore()
        self.preferences.enter_presentation(presentation.id)
        self.state = NavState.NO_SELECTION
        self.asset: str | None = None
        self.tab_id: str | None = None
        if presentation.tabs:
            saved = self.preferences.get(PreferenceKey.ACTIVE_TAB, presentation.id)
            self.tab_id = resolve_active_tab(presentation.tabs, saved if isinstance(saved, str) else None)
        if auto_select:
            self._select_default()

    # -- derived views -------------------------------------------------

    def hierarchy(self) -> HierarchyView:
        return presentation_hierarchy(self.presentation, self.tab_id)

    def visible_order(self) -> list[Asset]:
        return self.hierarchy().flatten()

    @property
    def collapsed_groups(self) -> set[str]:
        return self.preferences.collapsed_groups(self.presentation.id)

    def is_collapsed(self, group_id: str) -> bool:
        return group_id in self.collapsed_groups

    # -- transitions ---------------------------------------------------

    def select_asset(self, filename: str) -> NavState:
        tab = next((t for t in self.presentation.tabs if t.file == filename), None)
        if tab is not None:
            return self.select_tab(tab.id)
        asset = self.presentation.find_asset(filename)
        if asset is None:
            raise NotFoundError(f"Asset not found: {filename}")
        self._enter_asset(asset)
        return self.state

    def select_tab(self, tab_id: str) -> NavState:
        if self.presentation.find_tab(tab_id) is None:
            raise NotFoundError(f"Tab not found: {tab_id}")
        self.tab_id = tab_id
        self.asset = None
        self.state = NavState.TAB_INDEX_SELECTED
        self.preferences.set(PreferenceKey.ACTIVE_TAB, tab_id, self.presentation.id)
        return self.state

    def navigate(self, direction: str) -> NavState:
        if direction not in DIRECTIONS:
            raise ValueError(f"Unknown navigation direction: {direction}")
        order = self.visible_order()
        if not order:
            return self.state
        if self.state is not NavState.ASSET_SELECTED:
            # Leaving a tab index (or nothing) always lands on a real asset.
            target = order[-1] if direction in ("prev", "last") else order[0]
        else:
            names = [asset.filename for asset in order]
            if self.asset not in names:
                target = order[0]
            else:
                position = names.index(self.asset)
                if direction == "next":
                    target = order[(position + 1) % len(order)]
                elif direction == "prev":
                    target = order[(position - 1) % len(order)]
                elif direction == "first":
                    target = order[0]
                else:
                    target = order[-1]
        self._enter_asset(target)
        return self.state

    def report_boundary_navigation(self, filename: str) -> bool:
        """Follow a document change the boundary made on its own.

        Returns ``False`` (state untouched) when ``filename`` matches neither a
        tab entry document nor an asset.
        """
        tab = next((t for t in self.presentation.tabs if t.file == filename), None)
        if tab is not None:
            if not (self.state is NavState.TAB_INDEX_SELECTED and self.tab_id == tab.id):
                self.select_tab(tab.id)
            return True
        asset = self.presentation.find_asset(filename)
        if asset is None:
            logger.debug("Ignoring boundary navigation to unknown document %s", filename)
            return False
        if not (self.state is NavState.ASSET_SELECTED and self.asset == filename):
            self._enter_asset(asset)
        return True

    def handle_boundary_message(self, raw: object) -> str | None:
        """Apply a raw boundary message; returns the action taken, if any."""
        message = parse_boundary_message(raw)
        if isinstance(message, InternalNavigation):
            return "internal-navigation" if self.report_boundary_navigation(message.filename) else None
        if isinstance(message, ForwardedKey):
            return self.handle_key(message.combo)
        return None

    def handle_key(self, combo: KeyCombo) -> str | None:
        action = key_action(combo)
        if action in DIRECTIONS:
            self.navigate(action)
        return action

    def toggle_group(self, group_id: str) -> bool:
        collapsed = self.collapsed_groups
        if group_id in collapsed:
            collapsed.discard(group_id)
        else:
            collapsed.add(group_id)
        self._save_collapsed(collapsed)
        return group_id in collapsed

    def refresh(self, presentation: Presentation) -> NavState:
        self.presentation = presentation
        if self.tab_id is not None and presentation.find_tab(self.tab_id) is None:
            self.tab_id = resolve_active_tab(presentation.tabs, None)
        elif self.tab_id is None and self.state is NavState.TAB_INDEX_SELECTED:
            self.tab_id = resolve_active_tab(presentation.tabs, None)

        if self.state is NavState.TAB_INDEX_SELECTED:
            if self.tab_id is not None:
                return self.state
            self._select_default()
        elif self.state is NavState.ASSET_SELECTED:
            asset = presentation.find_asset(self.asset or "")
            if asset is not None:
                # The asset's group may have moved to another tab.
                self._enter_asset(asset)
                if any(a.filename == asset.filename for a in self.visible_order()):
                    return self.state
            order = self.visible_order()
            if order:
                self._enter_asset(order[0])
            else:
                self._select_default()
        return self.state

    # -- rendering -----------------------------------------------------

    def render_instruction(self) -> RenderInstruction | None:
        if self.state is NavState.TAB_INDEX_SELECTED:
            tab = self.presentation.find_tab(self.tab_id)
            if tab is not None:
                return RenderInstruction("reference", tab.file)
        if self.state is NavState.ASSET_SELECTED and self.asset is not None:
            return RenderInstruction("inline", self.asset)
        return None

    def apply_render(
        self,
        target: RenderTarget,
        load_content: Callable[[str], str],
        reference_url: Callable[[str], str],
    ) -> None:
        instruction = self.render_instruction()
        if instruction is None:
            target.clear()
        elif instruction.mode == "reference":
            target.show_reference(reference_url(instruction.filename))
        else:
            target.show_inline(load_content(instruction.filename))

    def render_target(
        self,
        load_content: Callable[[str], str],
        reference_url: Callable[[str], str],
    ) -> RenderTarget:
        target = RenderTarget()
        self.apply_render(target, load_content, reference_url)
        return target

    def snapshot(self) -> dict[str, object]:
        view = self.hierarchy()
        return {
            "state": self.state.value,
            "tabId": self.tab_id,
            "asset": self.asset,
            "collapsedGroups": sorted(self.collapsed_groups),
            "hierarchy": view.as_payload(),
        }

    # -- internals -----------------------------------------------------

    def _enter_asset(self, asset: Asset) -> None:
        group = self.presentation.groups.get(asset.group) if asset.group else None
        if group is not None and self.presentation.find_tab(group.tab_id) is not None:
            self.tab_id = group.tab_id
            self.preferences.set(PreferenceKey.ACTIVE_TAB, group.tab_id, self.presentation.id)
        self.asset = asset.filename
        self.state = NavState.ASSET_SELECTED
        if asset.group is not None:
            collapsed = self.collapsed_groups
            if asset.group in collapsed:
                collapsed.discard(asset.group)
                self._save_collapsed(collapsed)

    def _save_collapsed(self, collapsed: set[str]) -> None:
        self.preferences.set(
            PreferenceKey.COLLAPSED_GROUPS,
            collapsed or None,
            self.presentation.id,
        )

    def _select_default(self) -> None:
        if self.tab_id is not None:
            self.asset = None
            self.state = NavState.TAB_INDEX_SELECTED
            return
        order = self.visible_order()
        if order:
            self._enter_asset(order[0])
        else:
            self.asset = None
            self.state = NavState.NO_SELECTION


__all__ = ["DIRECTIONS", "NavState", "NavigationCursor", "RenderInstruction"]
