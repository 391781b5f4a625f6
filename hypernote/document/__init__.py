"""
Hypernote Documents.

Compiled document models and the loaders that produce them.
"""

from .loaders import DocumentNotFoundError, FileDocumentLoader, MemoryDocumentLoader
from .models import ActionSpec, Document, QuerySpec

__all__ = [
    "ActionSpec",
    "Document",
    "DocumentNotFoundError",
    "FileDocumentLoader",
    "MemoryDocumentLoader",
    "QuerySpec",
]
