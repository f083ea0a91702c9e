from .errors import (
    ConflictError,
    DeckviewError,
    InvalidRequestError,
    ManifestValidationError,
    NotFoundError,
)
from .hierarchy import HierarchyView, resolve_hierarchy
from .models import Asset, GroupDefinition, Presentation, TabDefinition
from .navigation import NavigationCursor
from .service import PresentationService
from .watcher import ChangeEvent, ChangeWatcher

__all__ = [
    "Asset",
    "GroupDefinition",
    "TabDefinition",
    "Presentation",
    "HierarchyView",
    "resolve_hierarchy",
    "NavigationCursor",
    "PresentationService",
    "ChangeEvent",
    "ChangeWatcher",
    "DeckviewError",
    "ManifestValidationError",
    "InvalidRequestError",
    "NotFoundError",
    "ConflictError",
]
