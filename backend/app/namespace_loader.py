"""
Namespace Loader: reads insight namespace definitions from namespaces.yaml.

Each entry is validated on load. Invalid entries are reported in
`validation_errors` and skipped; the remaining namespaces stay usable.
"""

import yaml
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACES_FILE = Path(__file__).parent / "namespaces.yaml"

_ALLOWED_KEYS = {"page", "entity", "ttl_fresh_minutes", "source_version", "broadcast", "description"}


@dataclass
class NamespaceDefinition:
    """One insight namespace."""
    name: str
    page: Optional[str] = None
    entity: Optional[str] = None
    ttl_fresh_seconds: Optional[float] = None
    source_version: int = 1
    broadcast: bool = True
    description: str = ""

    @property
    def is_entity(self) -> bool:
        return self.entity is not None


class NamespaceRegistry:
    """Validated namespace definitions keyed by name."""

    def __init__(self, path: Optional[Path] = None, known_pages: Iterable[str] = ()):
        self.path = Path(path) if path else DEFAULT_NAMESPACES_FILE
        self.known_pages = set(known_pages)
        self.definitions: Dict[str, NamespaceDefinition] = {}
        self.validation_errors: List[str] = []
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            raise ValueError(f"Namespace file not found: {self.path}")
        with open(self.path, "r") as f:
            data = yaml.safe_load(f) or {}
        entries = data.get("namespaces") or {}
        if not isinstance(entries, dict):
            self.validation_errors.append("'namespaces' must be a mapping")
            return
        for name, raw in entries.items():
            definition = self._parse(str(name), raw)
            if definition is not None:
                self.definitions[definition.name] = definition
        for err in self.validation_errors:
            logger.error(f"Namespace config: {err}")
        logger.info(f"Loaded {len(self.definitions)} namespaces from {self.path.name}")

    def _parse(self, name: str, raw: Any) -> Optional[NamespaceDefinition]:
        errors: List[str] = []
        if not isinstance(raw, dict):
            self.validation_errors.append(f"{name}: definition must be a mapping")
            return None

        unknown = sorted(set(raw) - _ALLOWED_KEYS)
        if unknown:
            errors.append(f"{name}: unknown keys {unknown}")

        page = raw.get("page")
        entity = raw.get("entity")
        if (page is None) == (entity is None):
            errors.append(f"{name}: exactly one of 'page' or 'entity' is required")
        if page is not None and self.known_pages and page not in self.known_pages:
            errors.append(f"{name}: unknown page '{page}'")

        ttl = raw.get("ttl_fresh_minutes")
        if ttl is not None and (isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl <= 0):
            errors.append(f"{name}: ttl_fresh_minutes must be a positive number")

        version = raw.get("source_version", 1)
        if isinstance(version, bool) or not isinstance(version, int) or version < 0:
            errors.append(f"{name}: source_version must be a non-negative integer")

        broadcast = raw.get("broadcast", True)
        if not isinstance(broadcast, bool):
            errors.append(f"{name}: broadcast must be true or false")

        if errors:
            self.validation_errors.extend(errors)
            return None

        return NamespaceDefinition(
            name=name,
            page=page,
            entity=entity,
            ttl_fresh_seconds=float(ttl) * 60 if ttl is not None else None,
            source_version=version,
            broadcast=broadcast,
            description=str(raw.get("description") or ""),
        )

    def get(self, name: str) -> Optional[NamespaceDefinition]:
        return self.definitions.get(name)

    def for_page(self, page: str) -> Optional[NamespaceDefinition]:
        for definition in self.definitions.values():
            if definition.page == page:
                return definition
        return None

    def ttl_overrides(self) -> Dict[str, float]:
        return {
            name: d.ttl_fresh_seconds
            for name, d in self.definitions.items()
            if d.ttl_fresh_seconds is not None
        }

    def silent_namespaces(self) -> List[str]:
        return sorted(name for name, d in self.definitions.items() if not d.broadcast)
