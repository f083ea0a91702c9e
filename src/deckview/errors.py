from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class Violation:
    field: str
    message: str
    value: object = None

    def as_payload(self) -> dict[str, object]:
        return {"field": self.field, "message": self.message, "value": self.value}

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class DeckviewError(Exception):
    """Base class for errors surfaced to API callers."""


class ManifestValidationError(DeckviewError, ValueError):
    """Raised when a manifest write would produce an invalid document."""

    def __init__(self, violations: list[Violation], message: str | None = None) -> None:
        self.violations = list(violations)
        detail = ", ".join(str(v) for v in self.violations)
        super().__init__(message or f"Manifest validation failed: {detail}")


class InvalidRequestError(DeckviewError, ValueError):
    """Raised when an operation receives arguments it cannot act on."""


class NotFoundError(DeckviewError, LookupError):
    """Raised when a presentation, asset, group or tab does not exist."""


class ConflictError(DeckviewError):
    """Raised when creating something whose identifier is already taken."""


class AmbiguousRenderStateError(DeckviewError):
    """Both inline content and a document reference were set on one render target."""


__all__ = [
    "AmbiguousRenderStateError",
    "ConflictError",
    "DeckviewError",
    "InvalidRequestError",
    "ManifestValidationError",
    "NotFoundError",
    "Violation",
]
