"""
Core indexing components: models, parsing, tracking, vectors and dependencies.

Submodules are imported directly, e.g. ``from code_index.core.vectorizer import CodeVectorizer``.
"""

from .models import (
    ChangeType,
    CodeElement,
    ElementType,
    Language,
    Parameter,
    VectorDocument,
)

__all__ = [
    "ChangeType",
    "CodeElement",
    "ElementType",
    "Language",
    "Parameter",
    "VectorDocument",
]
