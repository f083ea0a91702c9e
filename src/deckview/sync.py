from __future__ import annotations

import logging
import re
import warnings
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Mapping
from urllib.parse import unquote, urlsplit

from bs4 import BeautifulSoup, FeatureNotFound, Tag, XMLParsedAsHTMLWarning

from .entry import resolve_entry_point
from .errors import InvalidRequestError, NotFoundError
from .manifest import manifest_slides, manifest_tabs, normalize_manifest
from .models import HTML_SUFFIX, DanglingReference, format_name

logger = logging.getLogger(__name__)

SYNC_STRATEGIES = ("merge", "replace")
CARD_SELECTOR = "[data-slide], [data-file], .card"


@dataclass(slots=True)
class SlideCard:
    file: str
    title: str | None = None
    description: str | None = None
    group: str | None = None


@dataclass(slots=True)
class EntryDocument:
    filename: str
    title: str | None
    cards: list[SlideCard]


@dataclass(slots=True)
class SyncResult:
    manifest: dict[str, Any]
    strategy: str
    tabs: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    warnings: list[DanglingReference] = field(default_factory=list)

    def as_payload(self) -> dict[str, object]:
        return {
            "success": True,
            "strategy": self.strategy,
            "tabs": list(self.tabs),
            "added": list(self.added),
            "updated": list(self.updated),
            "warnings": [warning.as_payload() for warning in self.warnings],
        }


def _soup_from_html(html: str) -> BeautifulSoup:
    for parser in ("lxml", "html.parser"):
        try:
            with warnings.catch_warnings():
                warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
                return BeautifulSoup(html, parser)
        except FeatureNotFound:
            continue
    return BeautifulSoup(html, "html.parser")


def _slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-")


def _local_document(href: object) -> str | None:
    if not isinstance(href, str) or not href.strip():
        return None
    parts = urlsplit(href.strip())
    if parts.scheme or parts.netloc:
        return None
    path = PurePosixPath(unquote(parts.path))
    if not path.name.lower().endswith(HTML_SUFFIX):
        return None
    return path.name


def _text(node: Tag | None) -> str | None:
    if node is None:
        return None
    text = " ".join(node.get_text(" ", strip=True).split())
    return text or None


def _card_from_element(element: Tag) -> SlideCard | None:
    file = _local_document(element.get("data-slide")) or _local_document(element.get("data-file"))
    link: Tag | None = None
    if file is None:
        if element.name == "a":
            link = element
        else:
            link = element.find("a", href=True)
        file = _local_document(link.get("href")) if link is not None else None
    if file is None:
        return None
    title = element.get("data-title")
    if not isinstance(title, str) or not title.strip():
        title = _text(element.find(re.compile(r"^h[1-6]$"))) or _text(link) or None
    group = element.get("data-group")
    if not isinstance(group, str):
        parent = element.find_parent(attrs={"data-group": True})
        group = parent.get("data-group") if parent is not None else None
    group_id = _slugify(group) if isinstance(group, str) else ""
    return SlideCard(
        file=file,
        title=title.strip() if isinstance(title, str) else None,
        description=_text(element.find("p")),
        group=group_id or None,
    )


def parse_entry_document(filename: str, html: str) -> EntryDocument:
    """Extract the slide cards an entry document links to.

    Cards are elements marked with ``data-slide``/``data-file`` or the
    ``card`` class; documents without any fall back to plain links to local
    ``.html`` files. Each file is reported once, in document order.
    """
    soup = _soup_from_html(html)
    title = _text(soup.title)
    elements = soup.select(CARD_SELECTOR) or soup.find_all("a", href=True)
    cards: list[SlideCard] = []
    seen: set[str] = set()
    for element in elements:
        card = _card_from_element(element)
        if card is None or card.file in seen or card.file == filename:
            continue
        seen.add(card.file)
        cards.append(card)
    return EntryDocument(filename=filename, title=title, cards=cards)


def _read_document(folder: Path, filename: str) -> EntryDocument | None:
    try:
        html = (folder / filename).read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.warning("Could not read entry document %s: %s", folder / filename, exc)
        return None
    return parse_entry_document(filename, html)


def _merge_slide(slide: dict[str, Any], card: SlideCard, group: str | None, overwrite: bool) -> bool:
    changed = False
    for key, value in (("group", group), ("title", card.title), ("description", card.description)):
        if value is None:
            continue
        if overwrite or not slide.get(key):
            if slide.get(key) != value:
                slide[key] = value
                changed = True
    return changed


def sync_from_entry_documents(
    folder: Path,
    current: Mapping[str, Any],
    strategy: str = "merge",
) -> SyncResult:
    """Rebuild tabs, groups and slide assignments from the folder's entry documents.

    Every tab document contributes its cards to that tab: cards carrying a
    ``data-group`` land in ``<tab>-<group>``, the rest in a group named after
    the tab. Cards in the primary document keep their ``data-group`` (if any)
    without a tab. ``merge`` keeps existing metadata and only fills gaps;
    ``replace`` rebuilds tabs, groups and slides from the documents alone.
    """
    if strategy not in SYNC_STRATEGIES:
        raise InvalidRequestError(f"Unknown sync strategy: {strategy}")
    names = sorted(
        entry.name
        for entry in folder.iterdir()
        if entry.is_file() and entry.name.lower().endswith(HTML_SUFFIX) and not entry.name.startswith(".")
    )
    base = normalize_manifest(current)
    entry = resolve_entry_point(names, manifest_tabs(base))
    if entry is None:
        raise NotFoundError(f"No entry documents found in {folder.name}")

    replace = strategy == "replace"
    doc = deepcopy(base)
    if replace:
        doc["groups"] = {}
        doc["tabs"] = []
        doc["slides"] = []
    tabs: list[dict[str, Any]] = doc["tabs"]
    groups: dict[str, Any] = doc["groups"]
    slides: list[dict[str, Any]] = doc["slides"]
    slides_by_file = {slide["file"]: slide for slide in manifest_slides(doc)}
    result = SyncResult(manifest=doc, strategy=strategy)

    on_disk = set(names)
    entry_files = {tab.file for tab in entry.tabs}
    if entry.tab_id is None:
        entry_files.add(entry.filename)
    claimed: set[str] = set()

    def _ensure_group(group_id: str, label: str, tab_id: str | None) -> None:
        if group_id in groups:
            return
        group: dict[str, Any] = {"label": label, "order": len(groups) + 1}
        if tab_id is not None:
            group["tabId"] = tab_id
        groups[group_id] = group

    def _take_cards(document: EntryDocument, tab_id: str | None) -> None:
        for card in document.cards:
            if card.file not in on_disk:
                result.warnings.append(DanglingReference("missing-slide-file", document.filename, card.file))
                continue
            if card.file in entry_files or card.file in claimed:
                continue
            claimed.add(card.file)
            group_id: str | None
            if tab_id is None:
                group_id = card.group
                if group_id is not None:
                    _ensure_group(group_id, format_name(group_id), None)
            elif card.group:
                group_id = f"{tab_id}-{card.group}"
                _ensure_group(group_id, format_name(card.group), tab_id)
            else:
                group_id = tab_id
                _ensure_group(group_id, format_name(tab_id), tab_id)
            existing = slides_by_file.get(card.file)
            if existing is None:
                slide: dict[str, Any] = {"file": card.file}
                _merge_slide(slide, card, group_id, overwrite=True)
                slides.append(slide)
                slides_by_file[card.file] = slide
                result.added.append(card.file)
            elif _merge_slide(existing, card, group_id, overwrite=replace):
                result.updated.append(card.file)

    known_tabs = {tab.get("id") for tab in tabs if isinstance(tab, Mapping)}
    for tab in entry.tabs:
        document = _read_document(folder, tab.file)
        if document is None:
            continue
        if tab.id not in known_tabs:
            tabs.append(
                {
                    "id": tab.id,
                    "label": document.title or tab.label,
                    "file": tab.file,
                    "order": len(tabs) + 1,
                }
            )
            known_tabs.add(tab.id)
        result.tabs.append(tab.id)
        _take_cards(document, tab.id)

    if entry.tab_id is None:
        document = _read_document(folder, entry.filename)
        if document is not None:
            _take_cards(document, None)

    for warning in result.warnings:
        logger.debug("Sync warning for %s: %s", folder.name, warning)
    return result


__all__ = [
    "EntryDocument",
    "SYNC_STRATEGIES",
    "SlideCard",
    "SyncResult",
    "parse_entry_document",
    "sync_from_entry_documents",
]
