"""
File identity tracking.

Keeps a durable map of absolute file path -> content hash and timestamps so
that "has this file changed" can be answered without re-parsing, and so that
edits made while the indexer was not running can be found at startup.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from code_index.core.models import FileTrackingEntry
from code_index.core.utils import (
    DEFAULT_WATCH_PATTERNS,
    DebouncedSaver,
    atomic_write_json,
    compute_file_hash,
    iter_project_files,
    load_json_state,
)

TRACKER_FORMAT_VERSION = "1.0"


class FileTracker:
    """
    Path -> FileTrackingEntry map persisted as a single JSON document.

    A file counts as changed only when its SHA-256 differs from the stored
    one. Modification time is only a cheap pre-filter for
    ``find_externally_changed``.
    """

    def __init__(self, project_root: Path, storage_path: Path, save_delay: float = 5.0):
        self.project_root = Path(project_root).resolve()
        self.storage_path = Path(storage_path)
        self._entries: Dict[str, FileTrackingEntry] = {}
        self._lock = threading.RLock()
        self._saver = DebouncedSaver(self.save, save_delay)
        self._load()

    def _key(self, file_path) -> str:
        return str(Path(file_path).resolve())

    def _load(self) -> None:
        data = load_json_state(self.storage_path, mappings=("files",))
        if data is None:
            return
        files = data.get("files", {})
        loaded = 0
        for path, raw in files.items():
            try:
                self._entries[path] = FileTrackingEntry.from_dict(raw)
                loaded += 1
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logging.warning(f"Dropping malformed tracking entry for {path}: {e}")
        logging.info(f"Loaded {loaded} file tracking entries from {self.storage_path}")

    def save(self) -> None:
        with self._lock:
            payload = {
                "version": TRACKER_FORMAT_VERSION,
                "project_path": str(self.project_root),
                "files": {path: entry.to_dict() for path, entry in self._entries.items()},
                "last_updated": time.time(),
            }
            atomic_write_json(self.storage_path, payload)

    def flush(self) -> None:
        self._saver.flush()

    def get_entry(self, file_path) -> Optional[FileTrackingEntry]:
        with self._lock:
            return self._entries.get(self._key(file_path))

    def tracked_files(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def has_changed(self, file_path) -> bool:
        """True if the file is untracked or its content hash differs."""
        key = self._key(file_path)
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return True
        try:
            current = compute_file_hash(Path(key))
        except OSError:
            # Unreadable or deleted counts as changed.
            return True
        return current != entry.file_hash

    def record_tracking(self, file_path) -> Optional[FileTrackingEntry]:
        """Recompute hash and timestamps for ``file_path`` and store them."""
        key = self._key(file_path)
        path = Path(key)
        try:
            stat = path.stat()
            file_hash = compute_file_hash(path)
        except FileNotFoundError:
            self.remove_file(key)
            return None
        entry = FileTrackingEntry(
            file_hash=file_hash,
            last_modified=stat.st_mtime,
            last_checked=time.time(),
            file_size=stat.st_size,
        )
        with self._lock:
            self._entries[key] = entry
        self._saver.schedule()
        return entry

    def remove_file(self, file_path) -> bool:
        with self._lock:
            removed = self._entries.pop(self._key(file_path), None) is not None
        if removed:
            self._saver.schedule()
        return removed

    def find_externally_changed(self) -> List[str]:
        """
        Tracked files modified on disk after we last checked them.

        Catches edits made while the indexer was not running. Files that no
        longer exist are not reported here; ``full_scan`` prunes them.
        """
        changed: List[str] = []
        with self._lock:
            snapshot = list(self._entries.items())
        for path, entry in snapshot:
            try:
                mtime = Path(path).stat().st_mtime
            except OSError:
                continue
            if mtime > entry.last_checked:
                changed.append(path)
        return changed

    def full_scan(self, root_path: Optional[Path] = None, patterns: Optional[List[str]] = None) -> int:
        """
        Track every matching file under ``root_path`` and prune entries for
        files that no longer exist. Returns the number of tracked files.
        """
        root = Path(root_path).resolve() if root_path else self.project_root
        seen = set()
        for path in iter_project_files(root, patterns or DEFAULT_WATCH_PATTERNS):
            try:
                entry = self.record_tracking(path)
            except OSError as e:
                logging.warning(f"Failed to track {path}: {e}")
                continue
            if entry is not None:
                seen.add(self._key(path))

        with self._lock:
            stale = [p for p in self._entries if p.startswith(str(root)) and p not in seen and not Path(p).exists()]
            for path in stale:
                del self._entries[path]
            count = len(self._entries)
        if stale:
            logging.info(f"Pruned {len(stale)} tracking entries for deleted files")
        self._saver.schedule()
        return count

    def clear_tracking(self) -> None:
        with self._lock:
            self._entries.clear()
        self._saver.schedule()

    def shutdown(self) -> None:
        self._saver.flush()
