from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Mapping


@dataclass(frozen=True, slots=True)
class ManifestTemplate:
    id: str
    name: str
    description: str
    structure: Mapping[str, Any]

    def as_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "structure": deepcopy(dict(self.structure)),
        }


def _groups(*labels: str, tab_id: str | None = None) -> dict[str, dict[str, object]]:
    groups: dict[str, dict[str, object]] = {}
    for order, label in enumerate(labels, start=1):
        group: dict[str, object] = {"label": label, "order": order}
        if tab_id is not None:
            group["tabId"] = tab_id
        groups[label.lower().replace(" ", "-")] = group
    return groups


MANIFEST_TEMPLATES: tuple[ManifestTemplate, ...] = (
    ManifestTemplate(
        id="simple",
        name="Simple Presentation",
        description="Flat list with no grouping, for small presentations",
        structure={"meta": {"displayMode": "flat"}, "groups": {}, "tabs": [], "slides": []},
    ),
    ManifestTemplate(
        id="tutorial",
        name="Tutorial Series",
        description="Grouped by chapter, for step-by-step guides",
        structure={
            "meta": {"displayMode": "grouped"},
            "groups": _groups("Introduction", "Basics", "Advanced", "Summary"),
            "tabs": [],
            "slides": [],
        },
    ),
    ManifestTemplate(
        id="api-docs",
        name="API Documentation",
        description="Sections for API reference material",
        structure={
            "meta": {"displayMode": "grouped"},
            "groups": _groups("Overview", "Authentication", "Endpoints", "Examples", "Reference"),
            "tabs": [],
            "slides": [],
        },
    ),
    ManifestTemplate(
        id="component-library",
        name="Component Library",
        description="Organized for UI component showcases",
        structure={
            "meta": {"displayMode": "grouped"},
            "groups": _groups("Foundation", "Components", "Patterns", "Templates"),
            "tabs": [],
            "slides": [],
        },
    ),
    ManifestTemplate(
        id="tabbed-sections",
        name="Tabbed Sections",
        description="One tab per audience, each with its own entry document",
        structure={
            "meta": {"displayMode": "grouped"},
            "groups": {
                "developer-guides": {"label": "Guides", "order": 1, "tabId": "developer"},
                "designer-guides": {"label": "Guides", "order": 2, "tabId": "designer"},
                "manager-guides": {"label": "Guides", "order": 3, "tabId": "manager"},
            },
            "tabs": [
                {"id": "developer", "label": "Developer", "file": "index-developer.html", "order": 1},
                {"id": "designer", "label": "Designer", "file": "index-designer.html", "order": 2},
                {"id": "manager", "label": "Manager", "file": "index-manager.html", "order": 3},
            ],
            "slides": [],
        },
    ),
)


def list_templates() -> list[ManifestTemplate]:
    return list(MANIFEST_TEMPLATES)


def get_template(template_id: str) -> ManifestTemplate | None:
    for template in MANIFEST_TEMPLATES:
        if template.id == template_id:
            return template
    return None


def apply_template(
    current: Mapping[str, Any] | None,
    template: ManifestTemplate,
    merge: bool = True,
) -> dict[str, Any]:
    """Combine ``template`` with an existing manifest.

    Slides always survive. When merging, existing meta values, groups and
    tabs take precedence over the template's; otherwise the template's
    structure replaces everything but the slides.
    """
    structure = deepcopy(dict(template.structure))
    slides = deepcopy(list((current or {}).get("slides") or []))
    if not merge or not current:
        structure["slides"] = slides
        return structure

    current_tabs = [tab for tab in current.get("tabs") or [] if isinstance(tab, Mapping)]
    taken = {tab.get("id") for tab in current_tabs}
    merged = deepcopy(dict(current))
    merged["meta"] = {**structure.get("meta", {}), **deepcopy(dict(current.get("meta") or {}))}
    merged["groups"] = {**structure.get("groups", {}), **deepcopy(dict(current.get("groups") or {}))}
    merged["tabs"] = deepcopy(current_tabs) + [
        tab for tab in structure.get("tabs", []) if tab.get("id") not in taken
    ]
    merged["slides"] = slides
    return merged


__all__ = [
    "MANIFEST_TEMPLATES",
    "ManifestTemplate",
    "apply_template",
    "get_template",
    "list_templates",
]
