"""
Incremental code vectorization.

Drives parse -> diff -> embed -> store for source files. A per-project state
file remembers each file's content hash and the hash and vector id of each
of its elements, so unchanged files are skipped outright and changed files
only re-embed the elements that actually changed.
"""

import asyncio
import hashlib
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from code_index.core.element_differ import ElementDiff, ElementRecord, diff_elements
from code_index.core.embeddings import Embedder, EmbeddingError
from code_index.core.models import (
    CodeElement,
    DocumentType,
    ElementType,
    Language,
    VectorDocument,
    document_type_for,
    language_for_path,
)
from code_index.core.parsing import ParseError, parse_file as default_parse_file
from code_index.core.summaries import DescriptionGenerator
from code_index.core.utils import (
    DEFAULT_WATCH_PATTERNS,
    DebouncedSaver,
    atomic_write_json,
    compute_file_hash,
    iter_project_files,
    load_json_state,
)
from code_index.core.vector_index import DimensionMismatchError, SearchResult, VectorIndex, VectorStore

STATE_FORMAT_VERSION = "1.0"
CODE_EXCERPT_CHARS = 500

ParseFn = Callable[[Path], List[CodeElement]]
ProgressCallback = Callable[["VectorizationProgress"], None]


@dataclass
class FileState:
    file_hash: str
    elements: Dict[str, ElementRecord] = field(default_factory=dict)
    updated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_hash": self.file_hash,
            "elements": {key: record.to_dict() for key, record in self.elements.items()},
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileState":
        return cls(
            file_hash=data.get("file_hash", ""),
            elements={
                key: ElementRecord(element_hash=raw["element_hash"], vector_id=raw["vector_id"])
                for key, raw in data.get("elements", {}).items()
            },
            updated_at=float(data.get("updated_at", 0.0)),
        )


@dataclass
class VectorizationProgress:
    files_processed: int = 0
    total_files: int = 0
    elements_processed: int = 0
    total_elements: int = 0
    current_file: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    start_time: Optional[float] = None

    @property
    def estimated_time_remaining(self) -> Optional[float]:
        if not self.start_time or self.files_processed == 0 or self.total_files == 0:
            return None
        elapsed = time.time() - self.start_time
        per_file = elapsed / self.files_processed
        return max(self.total_files - self.files_processed, 0) * per_file

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files_processed": self.files_processed,
            "total_files": self.total_files,
            "elements_processed": self.elements_processed,
            "total_elements": self.total_elements,
            "current_file": self.current_file,
            "errors": list(self.errors),
            "start_time": self.start_time,
            "estimated_time_remaining": self.estimated_time_remaining,
        }


@dataclass
class PreScanResult:
    total_files: int = 0
    total_elements: int = 0
    file_types: Dict[str, int] = field(default_factory=dict)
    element_types: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)


@dataclass
class FileVectorizationResult:
    file_path: str
    documents: List[VectorDocument]
    embedded: int = 0
    reused: int = 0
    removed: int = 0
    failed: int = 0
    fast_path: bool = False


@dataclass
class ProjectVectorizationResult:
    total_files: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    deleted_files: int = 0
    embedded_elements: int = 0
    failed_elements: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)


def make_document_id(relative_path: str, element: CodeElement) -> str:
    """Stable id: the same element in the same file always maps to the same document."""
    key = f"{relative_path}:{element.type.value}:{element.name}:{element.start_line}"
    return "code_" + hashlib.md5(key.encode("utf-8")).hexdigest()


def read_git_branch(project_root: Path) -> str:
    head = Path(project_root) / ".git" / "HEAD"
    try:
        content = head.read_text(encoding="utf-8").strip()
    except OSError:
        return "unknown"
    if content.startswith("ref: refs/heads/"):
        return content[len("ref: refs/heads/"):]
    return "unknown"


def build_embedding_text(element: CodeElement, relative_path: str, description: Optional[str] = None) -> str:
    parts = [f"{element.type.value}: {element.name}", f"File: {relative_path}"]
    if element.language != Language.UNKNOWN:
        parts.append(f"Language: {element.language.value}")
    if element.doc_comment:
        parts.append(f"Documentation: {element.doc_comment}")
    if element.parameters:
        params = ", ".join(f"{p.name}: {p.type}" if p.type else p.name for p in element.parameters)
        parts.append(f"Parameters: {params}")
    if element.return_type:
        parts.append(f"Returns: {element.return_type}")
    if description:
        parts.append(f"Description: {description}")
    parts.append(f"Code:\n{element.content[:CODE_EXCERPT_CHARS]}")
    return "\n\n".join(parts)


class CodeVectorizer:
    """
    Vectorizes project files into a single VectorIndex.

    The index is picked by ``(index_name, provider, model, dimensions)`` so
    switching embedding models never mixes incompatible vectors.
    """

    def __init__(
        self,
        project_root: Path,
        store: VectorStore,
        embedder: Embedder,
        state_path: Path,
        parse_file: ParseFn = default_parse_file,
        describer: Optional[DescriptionGenerator] = None,
        index_name: str = "code",
        patterns: Optional[List[str]] = None,
        ignored_patterns: Optional[List[str]] = None,
        save_delay: float = 2.0,
    ):
        self.project_root = Path(project_root).resolve()
        self.store = store
        self.embedder = embedder
        self.parse_file = parse_file
        self.describer = describer
        self.patterns = patterns or list(DEFAULT_WATCH_PATTERNS)
        self.ignored_patterns = ignored_patterns or []
        self.state_path = Path(state_path)
        self.index: VectorIndex = store.get_or_create(
            index_name, embedder.provider, embedder.model, embedder.dimensions
        )
        self.branch = read_git_branch(self.project_root)
        self.progress = VectorizationProgress()
        self.last_sync: Optional[float] = None

        self._files: Dict[str, FileState] = {}
        self._state_lock = threading.RLock()
        self._file_locks: Dict[str, asyncio.Lock] = {}
        self._cancel_requested = False
        self._saver = DebouncedSaver(self.save_state, save_delay)
        self._load_state()

    # --- State persistence ---

    def _load_state(self) -> None:
        data = load_json_state(self.state_path, mappings=("files",))
        if data is None:
            return
        if data.get("index_id") != self.index.id:
            logging.info("Vectorization state belongs to a different index, starting fresh")
            return
        for path, raw in data.get("files", {}).items():
            try:
                self._files[path] = FileState.from_dict(raw)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logging.warning(f"Dropping malformed vectorization state for {path}: {e}")
        self.last_sync = data.get("last_sync")
        logging.info(f"Loaded vectorization state for {len(self._files)} files")

    def save_state(self) -> None:
        with self._state_lock:
            payload = {
                "version": STATE_FORMAT_VERSION,
                "project_path": str(self.project_root),
                "index_id": self.index.id,
                "files": {path: state.to_dict() for path, state in self._files.items()},
                "last_sync": self.last_sync,
            }
            atomic_write_json(self.state_path, payload)

    def flush(self) -> None:
        self._saver.flush()
        self.index.flush()

    def shutdown(self) -> None:
        self._cancel_requested = True
        self.flush()

    # --- Helpers ---

    def _resolve(self, file_path) -> Path:
        path = Path(file_path)
        if not path.is_absolute():
            path = self.project_root / path
        return path.resolve()

    def _relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.project_root).as_posix()
        except ValueError:
            return path.as_posix()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._file_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._file_locks[key] = lock
        return lock

    def get_file_state(self, file_path) -> Optional[FileState]:
        with self._state_lock:
            return self._files.get(str(self._resolve(file_path)))

    def indexed_files(self) -> List[str]:
        with self._state_lock:
            return list(self._files.keys())

    def _existing_documents(self, state: FileState) -> Optional[List[VectorDocument]]:
        documents = []
        for record in state.elements.values():
            doc = self.index.get_document(record.vector_id, include_embedding=False)
            if doc is None or not self.index.has_embedding(record.vector_id):
                return None
            documents.append(doc)
        return documents

    # --- Vectorization ---

    async def vectorize_file(self, file_path, force_reindex: bool = False) -> List[VectorDocument]:
        result = await self.vectorize_file_detailed(file_path, force_reindex)
        return result.documents

    async def vectorize_file_detailed(self, file_path, force_reindex: bool = False) -> FileVectorizationResult:
        path = self._resolve(file_path)
        key = str(path)
        async with self._lock_for(key):
            return await self._vectorize_locked(path, force_reindex)

    async def _vectorize_locked(self, path: Path, force_reindex: bool) -> FileVectorizationResult:
        key = str(path)
        relative = self._relative(path)
        try:
            file_hash = await asyncio.to_thread(compute_file_hash, path)
        except OSError as e:
            raise ParseError(key, str(e)) from e

        with self._state_lock:
            previous_state = self._files.get(key)

        if previous_state is not None and not force_reindex and previous_state.file_hash == file_hash:
            existing = self._existing_documents(previous_state)
            if existing is not None:
                logging.debug(f"Unchanged, skipping {relative}")
                return FileVectorizationResult(key, existing, reused=len(existing), fast_path=True)

        try:
            elements = await asyncio.to_thread(self.parse_file, path)
        except ParseError:
            raise
        except (OSError, ValueError, UnicodeDecodeError) as e:
            raise ParseError(key, str(e)) from e

        previous = dict(previous_state.elements) if previous_state else {}
        diff = diff_elements(previous, elements)
        if force_reindex:
            self._force_all_changed(diff, elements)

        documents: List[VectorDocument] = []
        for key, record in list(diff.unchanged.items()):
            doc = self.index.get_document(record.vector_id, include_embedding=False)
            if doc is None or not self.index.has_embedding(record.vector_id):
                # Recorded but gone from the index; embed it again.
                logging.info(f"Missing document for {key} in {relative}, re-embedding")
                del diff.unchanged[key]
                diff.changed.append(self._element_by_key(elements, key))
                continue
            documents.append(doc)

        # Diff is final before any embedding call for this file.
        for record in diff.removed.values():
            self.index.delete_document(record.vector_id)

        records: Dict[str, ElementRecord] = dict(diff.unchanged)

        embedded = 0
        failed = 0
        for element in diff.changed:
            document = await self._embed_element(element, path, relative, file_hash, diff.current_hashes[element.key])
            self.progress.elements_processed += 1
            if document is None:
                failed += 1
                old = diff.replaced.get(element.key)
                if old is not None:
                    # Keep the last good vector for this element.
                    records[element.key] = old
                    doc = self.index.get_document(old.vector_id, include_embedding=False)
                    if doc is not None:
                        documents.append(doc)
                continue
            records[element.key] = ElementRecord(
                element_hash=diff.current_hashes[element.key],
                vector_id=document.id,
            )
            documents.append(document)
            embedded += 1

        with self._state_lock:
            # An empty hash makes the next run re-diff and retry failed elements.
            self._files[key] = FileState(
                file_hash="" if failed else file_hash,
                elements=records,
                updated_at=time.time(),
            )
            self.last_sync = time.time()
        self._saver.schedule()

        if failed:
            logging.warning(f"Vectorized {relative}: {embedded} embedded, {len(diff.unchanged)} reused, {failed} failed")
        else:
            logging.info(f"Vectorized {relative}: {embedded} embedded, {len(diff.unchanged)} reused, {len(diff.removed)} removed")
        return FileVectorizationResult(
            file_path=key,
            documents=documents,
            embedded=embedded,
            reused=len(diff.unchanged),
            removed=len(diff.removed),
            failed=failed,
        )

    @staticmethod
    def _element_by_key(elements: List[CodeElement], key: str) -> CodeElement:
        return next(element for element in elements if element.key == key)

    @staticmethod
    def _force_all_changed(diff: ElementDiff, elements: List[CodeElement]) -> None:
        by_key = {}
        for element in elements:
            by_key.setdefault(element.key, element)
        for key, record in diff.unchanged.items():
            diff.changed.append(by_key[key])
            diff.replaced[key] = record
        diff.unchanged.clear()

    async def _embed_element(
        self,
        element: CodeElement,
        path: Path,
        relative: str,
        file_hash: str,
        element_hash: str,
    ) -> Optional[VectorDocument]:
        description = None
        if self.describer is not None and self.describer.should_describe(element):
            description = await self.describer.generate_description(element)

        text = build_embedding_text(element, relative, description)
        try:
            embedding = await asyncio.to_thread(self.embedder.embed, text)
        except EmbeddingError as e:
            logging.warning(f"Embedding failed for {element.key} in {relative}: {e}")
            return None
        except Exception as e:
            logging.error(f"Embedding provider error for {element.key} in {relative}: {e}")
            return None
        if not embedding:
            logging.warning(f"Empty embedding for {element.key} in {relative}")
            return None

        now = datetime.now(timezone.utc).isoformat()
        document = VectorDocument(
            id=make_document_id(relative, element),
            content=element.content,
            metadata={
                "type": document_type_for(element.type).value,
                "element_type": element.type.value,
                "element_name": element.name,
                "element_key": element.key,
                "file_path": relative,
                "absolute_path": str(path),
                "file_hash": file_hash,
                "element_hash": element_hash,
                "language": (element.language if element.language != Language.UNKNOWN
                             else language_for_path(str(path))).value,
                "start_line": element.start_line,
                "end_line": element.end_line,
                "parameters": [p.name for p in element.parameters],
                "return_type": element.return_type,
                "modifiers": list(element.modifiers),
                "complexity": element.complexity,
                "ai_description": description,
                "branch": self.branch,
                "created_at": now,
                "updated_at": now,
            },
            embedding=embedding,
        )
        try:
            self.index.add_document(document)
        except DimensionMismatchError as e:
            logging.error(str(e))
            return None
        return document

    def delete_file_vectors(self, file_path) -> int:
        """Remove every document belonging to ``file_path``. Returns the count removed."""
        path = self._resolve(file_path)
        key = str(path)
        with self._state_lock:
            state = self._files.pop(key, None)
        lock = self._file_locks.get(key)
        if lock is not None and not lock.locked():
            del self._file_locks[key]
        ids = set()
        if state is not None:
            ids.update(record.vector_id for record in state.elements.values())
        ids.update(
            doc.id for doc in self.index.iter_documents()
            if doc.metadata.get("absolute_path") == key
        )
        removed = sum(1 for doc_id in ids if self.index.delete_document(doc_id))
        if state is not None or removed:
            self._saver.schedule()
            logging.info(f"Deleted {removed} vectors for {self._relative(path)}")
        return removed

    def list_project_files(self, patterns: Optional[List[str]] = None) -> List[Path]:
        return list(iter_project_files(self.project_root, patterns or self.patterns, self.ignored_patterns))

    async def pre_scan_project(self, patterns: Optional[List[str]] = None) -> PreScanResult:
        """Parse every matching file (no embedding) to count files and elements."""
        files = await asyncio.to_thread(self.list_project_files, patterns)
        result = PreScanResult(total_files=len(files))
        file_types: Counter = Counter()
        element_types: Counter = Counter()
        for path in files:
            file_types[path.suffix.lower() or path.name] += 1
            try:
                elements = await asyncio.to_thread(self.parse_file, path)
            except (ParseError, OSError, ValueError) as e:
                result.errors.append(f"{self._relative(path)}: {e}")
                continue
            result.total_elements += len(elements)
            element_types.update(e.type.value for e in elements)
        result.file_types = dict(file_types)
        result.element_types = dict(element_types)
        return result

    def cancel(self) -> None:
        """Stop starting new files; in-flight files run to completion."""
        self._cancel_requested = True

    async def vectorize_project(
        self,
        patterns: Optional[List[str]] = None,
        concurrency: int = 4,
        force_reindex: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
        file_callback: Optional[Callable[[str, bool, Optional[str]], None]] = None,
    ) -> ProjectVectorizationResult:
        """
        Vectorize every matching file with at most ``concurrency`` files in
        flight. A failing file is recorded and the batch carries on.
        """
        self._cancel_requested = False
        scan = await self.pre_scan_project(patterns)
        files = await asyncio.to_thread(self.list_project_files, patterns)

        self.progress = VectorizationProgress(
            total_files=len(files),
            total_elements=scan.total_elements,
            start_time=time.time(),
        )
        result = ProjectVectorizationResult(total_files=len(files))

        # Files indexed before but gone from disk.
        present = {str(p.resolve()) for p in files}
        for stale in [p for p in self.indexed_files() if p not in present and not Path(p).exists()]:
            self.delete_file_vectors(stale)
            result.deleted_files += 1

        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def _process(path: Path) -> None:
            async with semaphore:
                if self._cancel_requested:
                    result.skipped += 1
                    return
                relative = self._relative(path)
                self.progress.current_file = relative
                error: Optional[str] = None
                try:
                    file_result = await self.vectorize_file_detailed(path, force_reindex)
                    result.embedded_elements += file_result.embedded
                    result.failed_elements += file_result.failed
                    self.progress.elements_processed += file_result.reused
                except ParseError as e:
                    error = str(e)
                except Exception as e:
                    error = f"Unexpected error processing {relative}: {e}"
                    logging.exception(error)
                self.progress.files_processed += 1
                if error:
                    result.failed += 1
                    result.errors.append((relative, error))
                    self.progress.errors.append(error)
                    logging.warning(error)
                else:
                    result.succeeded += 1
                if file_callback is not None:
                    file_callback(str(path), error is None, error)
                if progress_callback is not None:
                    progress_callback(self.progress)

        await asyncio.gather(*(_process(path) for path in files))
        self.progress.current_file = None
        self.last_sync = time.time()
        self.flush()
        logging.info(
            f"Vectorized project: {result.succeeded} files ok, {result.failed} failed, "
            f"{result.embedded_elements} elements embedded, {result.deleted_files} deleted"
        )
        return result

    # --- Queries ---

    async def search_code(
        self,
        query: str,
        limit: int = 10,
        element_type: Optional[str] = None,
        language: Optional[str] = None,
        min_similarity: float = 0.7,
    ) -> List[SearchResult]:
        query_vector = await asyncio.to_thread(self.embedder.embed, query)

        def _filter(doc: VectorDocument) -> bool:
            if element_type and element_type not in (doc.metadata.get("type"), doc.metadata.get("element_type")):
                return False
            if language and doc.metadata.get("language") != language:
                return False
            return True

        return self.index.search_similar(query_vector, top_k=limit, threshold=min_similarity, filter=_filter)

    async def find_similar_code(self, code_snippet: str, limit: int = 10, min_similarity: float = 0.8) -> List[SearchResult]:
        query_vector = await asyncio.to_thread(self.embedder.embed, code_snippet)
        return self.index.search_similar(query_vector, top_k=limit, threshold=min_similarity)

    def get_stats(self) -> Dict[str, Any]:
        documents = self.index.iter_documents()
        by_type = Counter(doc.metadata.get("type", DocumentType.CODE_BLOCK.value) for doc in documents)
        by_language = Counter(doc.metadata.get("language", Language.UNKNOWN.value) for doc in documents)
        by_element = Counter(doc.metadata.get("element_type", ElementType.VARIABLE.value) for doc in documents)
        return {
            "total_documents": len(documents),
            "indexed_files": len(self.indexed_files()),
            "documents_by_type": dict(by_type),
            "documents_by_element_type": dict(by_element),
            "documents_by_language": dict(by_language),
            "index_id": self.index.id,
            "embedding_provider": self.index.embedding_provider,
            "embedding_model": self.index.embedding_model,
            "dimensions": self.index.dimensions,
            "last_updated": self.index.metadata.get("updated_at"),
            "last_sync": self.last_sync,
        }
