"""
Tree-sitter integration for the code index.

Provides language loading and parsing utilities shared by adapters.
"""

from .parser import parse_source, get_parser
from .languages import get_py_language, get_ts_language, get_tsx_language

__all__ = [
    "parse_source",
    "get_parser",
    "get_py_language",
    "get_ts_language",
    "get_tsx_language",
]
