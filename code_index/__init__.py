"""
Incremental semantic code indexing.

Tracks file changes, re-embeds only the code elements that changed and keeps
an import dependency graph current for impact and cycle analysis.
"""

__version__ = "0.1.0"
