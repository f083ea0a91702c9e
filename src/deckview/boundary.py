from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Mapping, Union
from urllib.parse import unquote, urlsplit

from .errors import AmbiguousRenderStateError
from .models import HTML_SUFFIX

logger = logging.getLogger(__name__)

NAVIGATION_KEYS = ("ArrowLeft", "ArrowRight", "Home", "End")
PRESENTATION_TOGGLE_KEYS = ("f", "F")
EXIT_KEY = "Escape"

_KEY_ACTIONS = {
    "ArrowLeft": "prev",
    "ArrowRight": "next",
    "Home": "first",
    "End": "last",
}


@dataclass(frozen=True, slots=True)
class KeyCombo:
    key: str
    ctrl: bool = False
    meta: bool = False
    shift: bool = False
    alt: bool = False


def is_forwarded_key(combo: KeyCombo) -> bool:
    """Only the fixed allow-list crosses the boundary; content keeps every other key."""
    if combo.key == EXIT_KEY:
        return True
    if combo.key in PRESENTATION_TOGGLE_KEYS:
        return not (combo.ctrl or combo.meta or combo.alt)
    return combo.key in NAVIGATION_KEYS and (combo.ctrl or combo.meta)


def key_action(combo: KeyCombo) -> str | None:
    if not is_forwarded_key(combo):
        return None
    if combo.key == EXIT_KEY:
        return "exit-presentation"
    if combo.key in PRESENTATION_TOGGLE_KEYS:
        return "toggle-presentation"
    return _KEY_ACTIONS[combo.key]


# host -> boundary
@dataclass(frozen=True, slots=True)
class DisplayDocument:
    inline: str | None = None
    reference: str | None = None

    def as_payload(self) -> dict[str, object]:
        if self.inline is not None:
            return {"type": "display", "mode": "inline", "content": self.inline}
        return {"type": "display", "mode": "reference", "src": self.reference}


@dataclass(frozen=True, slots=True)
class ForwardKeys:
    def as_payload(self) -> dict[str, object]:
        return {
            "type": "forward-keys",
            "escape": EXIT_KEY,
            "toggle": list(PRESENTATION_TOGGLE_KEYS),
            "navigation": list(NAVIGATION_KEYS),
        }


# boundary -> host
@dataclass(frozen=True, slots=True)
class InternalNavigation:
    filename: str


@dataclass(frozen=True, slots=True)
class ForwardedKey:
    combo: KeyCombo


BoundaryMessage = Union[InternalNavigation, ForwardedKey]


def _document_name(location: str) -> str | None:
    path = unquote(urlsplit(location).path)
    name = PurePosixPath(path).name
    if not name.lower().endswith(HTML_SUFFIX):
        return None
    return name


def parse_boundary_message(raw: object) -> BoundaryMessage | None:
    """Validate a message received from the boundary; unknown shapes yield ``None``."""
    if not isinstance(raw, Mapping):
        return None
    kind = raw.get("type")
    if kind == "internal-navigation":
        location = raw.get("filename")
        if not isinstance(location, str):
            return None
        name = _document_name(location)
        return InternalNavigation(name) if name else None
    if kind == "forwarded-key":
        key = raw.get("key")
        if not isinstance(key, str):
            return None
        flags = {}
        for flag in ("ctrl", "meta", "shift", "alt"):
            value = raw.get(f"{flag}Key", False)
            if not isinstance(value, bool):
                return None
            flags[flag] = value
        combo = KeyCombo(key, **flags)
        return ForwardedKey(combo) if is_forwarded_key(combo) else None
    return None


class RenderTarget:
    """The single content frame: inline content or a document reference, never both."""

    def __init__(self) -> None:
        self.inline: str | None = None
        self.reference: str | None = None

    def show_inline(self, content: str) -> None:
        self.reference = None
        self.inline = content

    def show_reference(self, src: str) -> None:
        self.inline = None
        self.reference = src

    def clear(self) -> None:
        self.inline = None
        self.reference = None

    @property
    def mode(self) -> str | None:
        if self.inline is not None:
            return "inline"
        if self.reference is not None:
            return "reference"
        return None

    def resolve(self, *, strict: bool = False) -> DisplayDocument | None:
        if self.inline is not None and self.reference is not None:
            if strict:
                raise AmbiguousRenderStateError(
                    f"Render target has both inline content and reference {self.reference!r}"
                )
            logger.error(
                "Ambiguous render state: inline content and reference %r both set; using inline",
                self.reference,
            )
            self.reference = None
        if self.inline is not None:
            return DisplayDocument(inline=self.inline)
        if self.reference is not None:
            return DisplayDocument(reference=self.reference)
        return None


def _boundary_script() -> str:
    allow = json.dumps(
        {
            "escape": EXIT_KEY,
            "toggle": list(PRESENTATION_TOGGLE_KEYS),
            "navigation": list(NAVIGATION_KEYS),
        }
    )
    return f"""<script data-deckview-boundary>
(function() {{
  var allow = {allow};
  function forwarded(e) {{
    if (e.key === allow.escape) return true;
    if (allow.toggle.indexOf(e.key) !== -1) return !(e.ctrlKey || e.metaKey || e.altKey);
    return allow.navigation.indexOf(e.key) !== -1 && (e.ctrlKey || e.metaKey);
  }}
  document.addEventListener('keydown', function(e) {{
    if (!forwarded(e)) return;
    if (e.ctrlKey || e.metaKey) e.preventDefault();
    window.parent.postMessage({{type: 'forwarded-key', key: e.key, ctrlKey: e.ctrlKey,
      metaKey: e.metaKey, shiftKey: e.shiftKey, altKey: e.altKey}}, '*');
  }});
  window.addEventListener('load', function() {{
    if (!location.pathname || location.protocol === 'about:') return;
    window.parent.postMessage({{type: 'internal-navigation', filename: location.pathname}}, '*');
  }});
}})();
</script>"""


BOUNDARY_SCRIPT = _boundary_script()


def inject_boundary_script(html: str, base_href: str | None = None) -> str:
    """Insert the key-forwarding script (and optionally a ``<base>``) into ``html``."""
    head_extra = ""
    if base_href:
        head_extra += f'<base href="{base_href}">'
    head_extra += BOUNDARY_SCRIPT
    lowered = html.lower()
    position = lowered.find("<head")
    if position != -1:
        close = html.find(">", position)
        if close != -1:
            return html[: close + 1] + head_extra + html[close + 1 :]
    return head_extra + html


__all__ = [
    "BOUNDARY_SCRIPT",
    "BoundaryMessage",
    "DisplayDocument",
    "ForwardKeys",
    "ForwardedKey",
    "InternalNavigation",
    "KeyCombo",
    "RenderTarget",
    "inject_boundary_script",
    "is_forwarded_key",
    "key_action",
    "parse_boundary_message",
]
