"""
Shared utility functions for the code index.

Content hashing, ignore rules, pattern matching and the JSON persistence
helpers used by every component that keeps state on disk.
"""

import fnmatch
import hashlib
import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional


# Directories that are never watched, tracked or indexed.
DEFAULT_IGNORED_DIRECTORIES = frozenset({
    "node_modules",
    "dist",
    "build",
    ".git",
    "coverage",
    "tmp",
    ".next",
    ".nuxt",
    "vendor",
    "__pycache__",
    ".pytest_cache",
    "target",
    "bin",
    "obj",
    ".codeindex",
})

DEFAULT_WATCH_PATTERNS = [
    "**/*.ts",
    "**/*.tsx",
    "**/*.js",
    "**/*.jsx",
    "**/*.py",
    "**/*.pyw",
    "**/*.java",
    "**/*.go",
    "**/*.c",
    "**/*.cpp",
    "**/*.h",
    "**/*.hpp",
    "**/*.rs",
    "**/*.swift",
    "**/*.kt",
    "**/*.rb",
    "**/*.php",
    "**/*.cs",
]

_HASH_CHUNK_SIZE = 8192


# --- Content Hashing ---

def compute_file_hash(file_path: Path) -> str:
    """
    SHA-256 of the full file content, read in chunks.

    Used for change detection only.
    """
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(_HASH_CHUNK_SIZE), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# --- Ignore Rules and Pattern Matching ---

def is_ignored_path(file_path: Path, extra_patterns: Optional[Iterable[str]] = None) -> bool:
    """
    True when any path component is in the fixed ignore list, or the path
    matches one of ``extra_patterns``.
    """
    parts = Path(file_path).parts
    if any(part in DEFAULT_IGNORED_DIRECTORIES for part in parts):
        return True
    if extra_patterns:
        posix = Path(file_path).as_posix()
        for pattern in extra_patterns:
            if pattern in parts or fnmatch.fnmatch(posix, pattern) or fnmatch.fnmatch(Path(file_path).name, pattern):
                return True
    return False


def matches_pattern(file_path: str, pattern: str) -> bool:
    """
    Match a path against one subscriber pattern.

    ``**/*.ext`` and ``*.ext`` compare the file extension; anything else is a
    glob match against the full path, then a plain substring test.
    """
    posix = Path(file_path).as_posix()
    if pattern.startswith("**/*.") and "/" not in pattern[3:]:
        return posix.endswith(pattern[4:])
    if pattern.startswith("*.") and "/" not in pattern:
        return posix.endswith(pattern[1:])
    if fnmatch.fnmatch(posix, pattern):
        return True
    return pattern in posix


def matches_any(file_path: str, patterns: List[str]) -> bool:
    """An empty pattern list matches everything."""
    if not patterns:
        return True
    return any(matches_pattern(file_path, pattern) for pattern in patterns)


def iter_project_files(
    root: Path,
    patterns: List[str],
    extra_ignores: Optional[Iterable[str]] = None,
) -> Iterator[Path]:
    """
    Walk ``root`` yielding files that match ``patterns`` and are not ignored.

    Ignore rules apply to the path relative to ``root``, never to the
    directories above it.
    """
    root = Path(root)
    extra = list(extra_ignores or [])
    for dirpath, dirnames, filenames in os.walk(root):
        relative_dir = Path(dirpath).relative_to(root)
        dirnames[:] = sorted(
            d for d in dirnames
            if d not in DEFAULT_IGNORED_DIRECTORIES and not is_ignored_path(relative_dir / d, extra)
        )
        for filename in sorted(filenames):
            relative = relative_dir / filename
            if is_ignored_path(relative, extra):
                continue
            if matches_any(relative.as_posix(), patterns):
                yield Path(dirpath) / filename


# --- JSON Persistence ---

def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to a temp file in the target directory, then rename over ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def backup_corrupt_file(path: Path) -> Optional[Path]:
    """Move an unreadable state file aside so a fresh one can be written."""
    path = Path(path)
    if not path.exists():
        return None
    backup = path.with_name(f"{path.name}.corrupt-{int(time.time() * 1000)}")
    os.replace(path, backup)
    logging.warning(f"Backed up corrupt state file {path} to {backup}")
    return backup


def load_json_state(path: Path, mappings: Iterable[str] = ()) -> Optional[Dict[str, Any]]:
    """
    Load a JSON state document.

    Returns None when the file does not exist. A file that cannot be parsed,
    whose top level is not an object, or where any key named in ``mappings``
    holds something other than an object, is backed up and None is returned
    so the caller starts from an empty state.
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
        logging.warning(f"Failed to read state file {path}: {e}")
        backup_corrupt_file(path)
        return None
    if not isinstance(data, dict):
        logging.warning(f"State file {path} has unexpected format")
        backup_corrupt_file(path)
        return None
    for key in mappings:
        if not isinstance(data.get(key, {}), dict):
            logging.warning(f"State file {path} has unexpected format for '{key}'")
            backup_corrupt_file(path)
            return None
    return data


class DebouncedSaver:
    """
    Runs ``save_fn`` once after ``delay`` seconds of quiet.

    ``schedule()`` restarts the timer; ``flush()`` cancels any pending timer
    and saves immediately when something is pending. Timer and flush saves
    never overlap, and ``flush()`` waits for a timer save that is already
    running.
    """

    def __init__(self, save_fn, delay: float):
        self._save_fn = save_fn
        self._delay = delay
        self._timer: Optional[threading.Timer] = None
        self._pending = False
        # bumped by every schedule(); a save only clears what it has seen
        self._generation = 0
        self._lock = threading.Lock()
        self._save_lock = threading.Lock()

    @property
    def pending(self) -> bool:
        return self._pending

    def schedule(self) -> None:
        with self._lock:
            self._pending = True
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self._delay > 0:
                self._timer = threading.Timer(self._delay, self._fire)
                self._timer.daemon = True
                self._timer.start()
                return
        # Callers may hold their own lock here, so no _save_lock.
        self._save()

    def flush(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        self._save_if_pending()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending = False

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
        self._save_if_pending()

    def _save_if_pending(self) -> None:
        with self._save_lock:
            self._save()

    def _save(self) -> None:
        with self._lock:
            if not self._pending:
                return
            generation = self._generation
        try:
            self._save_fn()
        except OSError as e:
            logging.error(f"Debounced save failed: {e}")
            return
        with self._lock:
            if self._generation == generation:
                self._pending = False
