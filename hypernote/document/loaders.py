"""
Document Loaders.

Sources of compiled documents for the engine.

Design Principle:
    The engine consumes already-compiled documents. Loaders only abstract
    away WHERE a compiled document comes from.
    - Development: FileDocumentLoader (JSON/YAML files)
    - Testing: MemoryDocumentLoader (in-memory)

Usage:
    # File-based
    loader = FileDocumentLoader("documents/")
    document = await loader.load("feed")        # documents/feed.json|.yaml|.yml

    # Memory
    loader = MemoryDocumentLoader()
    loader.add("feed", {"queries": {"$feed": {"kinds": [1], "limit": 20}}})
    document = await loader.load("feed")
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml

from .models import Document

logger = logging.getLogger(__name__)

_SUFFIXES = (".json", ".yaml", ".yml")


class DocumentNotFoundError(LookupError):
    """No document is stored under the requested name."""


class FileDocumentLoader:
    """
    Loads compiled documents from JSON or YAML files.

    Layout:

    documents/
    ├── feed.json
    ├── counter.yaml
    └── profile-card.yml

    ``load("feed")`` tries ``feed.json``, ``feed.yaml`` and ``feed.yml`` in
    that order. ``load_path`` reads an explicit file.
    """

    def __init__(self, base_dir: str | Path):
        """
        Initialize loader.

        Args:
            base_dir: Directory holding compiled documents
        """
        self._base_dir = Path(base_dir)

    async def load(self, name: str) -> Document:
        """
        Load and validate a document by name.

        Raises:
            DocumentNotFoundError: no file for ``name``
            pydantic.ValidationError: the file is not a valid document
        """
        for suffix in _SUFFIXES:
            path = self._base_dir / f"{name}{suffix}"
            if path.exists():
                return self.load_path(path)
        raise DocumentNotFoundError(f"No document named {name!r} in {self._base_dir}")

    def load_path(self, path: str | Path) -> Document:
        path = Path(path)
        data = self._read(path)
        document = Document.model_validate(data or {})
        logger.info(
            f"[file_loader] Loaded {path.name}: "
            f"{len(document.queries)} queries, {len(document.events)} actions"
        )
        return document

    async def list_documents(self) -> list[str]:
        """Names of the documents available in the base directory."""
        if not self._base_dir.exists():
            logger.warning(f"[file_loader] Documents directory not found: {self._base_dir}")
            return []
        names = {
            path.stem for path in self._base_dir.iterdir() if path.suffix in _SUFFIXES
        }
        return sorted(names)

    def _read(self, path: Path) -> Any:
        with path.open(encoding="utf-8") as f:
            if path.suffix == ".json":
                return json.load(f)
            return yaml.safe_load(f)


class MemoryDocumentLoader:
    """
    In-memory document loader for testing.

    Usage:
        loader = MemoryDocumentLoader()
        loader.add("counter", {"queries": {...}, "events": {...}})
        document = await loader.load("counter")
    """

    def __init__(self):
        self._documents: dict[str, Document] = {}

    def add(self, name: str, document: Document | dict[str, Any]) -> Document:
        """Store a document, validating raw dicts."""
        if not isinstance(document, Document):
            document = Document.model_validate(document)
        self._documents[name] = document
        return document

    async def load(self, name: str) -> Document:
        try:
            return self._documents[name]
        except KeyError:
            raise DocumentNotFoundError(f"No document named {name!r}") from None

    async def list_documents(self) -> list[str]:
        return sorted(self._documents)

    def clear(self) -> None:
        """Clear all documents."""
        self._documents.clear()
