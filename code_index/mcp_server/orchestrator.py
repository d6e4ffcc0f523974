from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
from dataclasses import dataclass
from enum import Enum
import asyncio
import logging
import time

from code_index.core.config import IndexerConfig
from code_index.core.dependency_graph import DEFAULT_DEPENDENCY_PATTERNS, DependencyGraph
from code_index.core.embeddings import Embedder, create_embedder
from code_index.core.file_tracker import FileTracker
from code_index.core.models import ChangeType, FileChangeEvent, ImpactAnalysis, IndexPhase
from code_index.core.parsing import ParseError, parse_file as default_parse_file
from code_index.core.summaries import DescriptionGenerator
from code_index.core.vector_index import SearchResult, VectorStore
from code_index.core.vectorizer import CodeVectorizer, ParseFn, ProjectVectorizationResult
from code_index.core.watcher import ChangeNotifier, ChangeQueue

TRACKER_SUBSCRIBER = "file-tracker"
VECTORIZER_SUBSCRIBER = "code-vectorizer"
DEPENDENCY_SUBSCRIBER = "dependency-graph"


class AnalysisState(Enum):
    """Enum representing the current state of the initial indexing run."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class IndexNotReadyError(RuntimeError):
    """Raised when an operation needs components that are not initialized yet."""


@dataclass
class FileProcessedEvent:
    file_path: str
    change_type: ChangeType
    success: bool
    error: Optional[str] = None
    deleted_vectors: int = 0


FileListener = Callable[[FileProcessedEvent], None]


class IndexOrchestrator:
    """
    Owns and wires the tracker, vectorizer, dependency graph and watcher.

    Components are built in ``initialize``; any of them can be injected for
    testing. Every query refuses to run before initialization.
    """

    def __init__(
        self,
        config: Union[IndexerConfig, Dict[str, Any]],
        embedder: Optional[Embedder] = None,
        parse_file: ParseFn = default_parse_file,
        notifier: Optional[ChangeNotifier] = None,
        describer: Optional[DescriptionGenerator] = None,
    ):
        if isinstance(config, dict):
            config = IndexerConfig(**config)
        self.config = config
        self.project_root: Optional[Path] = Path(config.project_root).resolve() if config.project_root else None
        self._embedder = embedder
        self._parse_file = parse_file
        self._describer = describer
        self.notifier = notifier or ChangeNotifier(ignored_patterns=config.ignored_patterns)

        self.file_tracker: Optional[FileTracker] = None
        self.vector_store: Optional[VectorStore] = None
        self.vectorizer: Optional[CodeVectorizer] = None
        self.dependency_graph: Optional[DependencyGraph] = None

        self.initialized = False
        self.phase = IndexPhase.IDLE
        self.analysis_state = AnalysisState.NOT_STARTED
        self.analysis_task: Optional[asyncio.Task] = None
        self.analysis_error: Optional[Exception] = None
        self.last_result: Optional[ProjectVectorizationResult] = None
        self.externally_changed: List[str] = []
        self.watch_errors: List[str] = []

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._queues: Dict[str, ChangeQueue] = {}
        self._listeners: List[FileListener] = []

    # --- Lifecycle ---

    async def initialize(self, project_root: Optional[Path] = None) -> None:
        """
        Build every component for ``project_root``. Storage failures here are
        fatal and propagate to the caller.
        """
        if project_root is not None:
            self.project_root = Path(project_root).resolve()
            self.config.project_root = str(self.project_root)
        if self.project_root is None:
            raise ValueError("project_root must be set before initialize()")
        if self.initialized:
            return

        self.phase = IndexPhase.INITIALIZING
        logging.info(f"Initializing code index for {self.project_root}")
        state_dir = self.config.state_dir()
        state_dir.mkdir(parents=True, exist_ok=True)

        if self._embedder is None:
            self._embedder = await asyncio.to_thread(
                create_embedder,
                self.config.embedding_provider,
                self.config.embedding_model,
                self.config.llm_config,
            )
        if self._describer is None and self.config.summary_generation_enabled:
            self._describer = DescriptionGenerator(self.config.llm_config)

        save_delay = self.config.save_debounce_seconds
        self.file_tracker = FileTracker(self.project_root, self.config.file_tracker_path(), save_delay=save_delay)
        self.vector_store = VectorStore(self.config.vectors_dir(), save_delay=save_delay)
        self.vectorizer = CodeVectorizer(
            project_root=self.project_root,
            store=self.vector_store,
            embedder=self._embedder,
            state_path=self.config.vectorization_state_path(),
            parse_file=self._parse_file,
            describer=self._describer,
            index_name=self.config.index_name,
            patterns=self.config.watch_patterns,
            ignored_patterns=self.config.ignored_patterns,
            save_delay=save_delay,
        )
        self.dependency_graph = DependencyGraph(
            self.project_root, self.config.dependencies_dir(), save_delay=save_delay
        )
        self.externally_changed = self.file_tracker.find_externally_changed()
        if self.externally_changed:
            logging.info(f"{len(self.externally_changed)} files changed while the indexer was not running")

        self.loop = asyncio.get_running_loop()
        self.initialized = True
        self.phase = IndexPhase.IDLE
        logging.info("Code index initialized")

    def _require_ready(self) -> None:
        if not self.initialized:
            raise IndexNotReadyError("Code index is not initialized yet")

    def is_ready(self) -> bool:
        return self.initialized

    async def start_indexing(self) -> None:
        """Run the initial sync in the background, then start watching.

        The server stays available while this runs.
        """
        if self.analysis_state != AnalysisState.NOT_STARTED:
            logging.warning(f"Indexing already started (state: {self.analysis_state.value})")
            return

        async def run_indexing():
            try:
                self.analysis_state = AnalysisState.IN_PROGRESS
                logging.info("Background indexing started")
                await self.initialize()
                await self.sync_project()
                if self.config.watch_enabled:
                    self.start_watching()
                self.analysis_state = AnalysisState.COMPLETED
                logging.info("Background indexing completed")
            except Exception as e:
                self.analysis_state = AnalysisState.FAILED
                self.analysis_error = e
                self.phase = IndexPhase.IDLE
                logging.error(f"Background indexing failed: {e}", exc_info=True)

        self.analysis_task = asyncio.create_task(run_indexing())
        logging.info("Indexing task started in background")

    async def wait_for_indexing(self, timeout: Optional[float] = None) -> bool:
        """Wait for the initial indexing run. True if it completed successfully."""
        if self.analysis_state == AnalysisState.COMPLETED:
            return True
        if self.analysis_task is None:
            return False
        try:
            await asyncio.wait_for(asyncio.shield(self.analysis_task), timeout=timeout)
            return self.analysis_state == AnalysisState.COMPLETED
        except asyncio.TimeoutError:
            return False

    async def sync_project(self, force_reindex: bool = False) -> ProjectVectorizationResult:
        """Full rescan: file tracking, dependency graph, then vectors."""
        self._require_ready()
        self.phase = IndexPhase.SCANNING
        await asyncio.to_thread(self.file_tracker.full_scan, self.project_root, self.config.watch_patterns)
        await asyncio.to_thread(self.dependency_graph.analyze_project, DEFAULT_DEPENDENCY_PATTERNS)

        self.phase = IndexPhase.VECTORIZING
        try:
            result = await self.vectorizer.vectorize_project(
                patterns=self.config.watch_patterns,
                concurrency=self.config.concurrency,
                force_reindex=force_reindex,
                file_callback=self._on_project_file,
            )
        finally:
            self.phase = IndexPhase.WATCHING if self.notifier.is_watching else IndexPhase.IDLE
        self.last_result = result
        self.externally_changed = []
        return result

    async def force_reindex(self) -> ProjectVectorizationResult:
        logging.info("Forcing full re-index")
        return await self.sync_project(force_reindex=True)

    def _on_project_file(self, file_path: str, success: bool, error: Optional[str]) -> None:
        self._notify(FileProcessedEvent(file_path, ChangeType.CHANGE, success, error))

    # --- Watching ---

    def start_watching(self) -> bool:
        self._require_ready()
        loop = self.loop or asyncio.get_running_loop()
        delay = self.config.debounce_seconds
        patterns = self.config.watch_patterns
        routes = {
            TRACKER_SUBSCRIBER: (patterns, self._process_tracker_batch),
            VECTORIZER_SUBSCRIBER: (patterns, self._process_vectorizer_batch),
            DEPENDENCY_SUBSCRIBER: (DEFAULT_DEPENDENCY_PATTERNS, self._process_dependency_batch),
        }
        for subscriber_id, (sub_patterns, processor) in routes.items():
            queue = ChangeQueue(processor, loop, delay=delay)
            self._queues[subscriber_id] = queue
            self.notifier.subscribe(subscriber_id, sub_patterns, queue.enqueue)
        self.notifier.add_error_listener(self._on_watch_error)
        started = self.notifier.start(self.project_root)
        if started:
            self.phase = IndexPhase.WATCHING
        return started

    def stop_watching(self) -> None:
        for subscriber_id, queue in list(self._queues.items()):
            self.notifier.unsubscribe(subscriber_id)
            queue.cancel()
        self._queues.clear()
        self.notifier.remove_error_listener(self._on_watch_error)
        self.notifier.stop()
        if self.phase == IndexPhase.WATCHING:
            self.phase = IndexPhase.IDLE

    def _on_watch_error(self, error: Exception) -> None:
        self.watch_errors.append(str(error))

    async def flush_pending_changes(self) -> int:
        """Process queued watcher events now instead of waiting for the debounce."""
        handled = 0
        for queue in list(self._queues.values()):
            handled += await queue.flush()
        return handled

    async def _process_tracker_batch(self, events: List[FileChangeEvent]) -> None:
        for event in events:
            if event.type == ChangeType.REMOVE:
                self.file_tracker.remove_file(event.path)
                continue
            try:
                await asyncio.to_thread(self.file_tracker.record_tracking, event.path)
            except OSError as e:
                logging.warning(f"Failed to track {event.path}: {e}")

    async def _process_dependency_batch(self, events: List[FileChangeEvent]) -> None:
        for event in events:
            if event.type == ChangeType.REMOVE:
                self.dependency_graph.delete_file(event.path)
            else:
                await asyncio.to_thread(self.dependency_graph.update_file, event.path)

    async def _process_vectorizer_batch(self, events: List[FileChangeEvent]) -> None:
        logging.info(f"Processing {len(events)} changed files")
        successful = failed = deleted = 0
        for event in events:
            if event.type == ChangeType.REMOVE:
                removed = self.vectorizer.delete_file_vectors(event.path)
                deleted += 1
                self._notify(FileProcessedEvent(event.path, event.type, True, deleted_vectors=removed))
                continue
            error: Optional[str] = None
            try:
                await self.vectorizer.vectorize_file(event.path)
            except ParseError as e:
                error = str(e)
                logging.warning(error)
            except Exception as e:
                error = f"Unexpected error processing {event.path}: {e}"
                logging.exception(error)
            if error:
                failed += 1
                self._notify(FileProcessedEvent(event.path, event.type, False, error))
                continue
            successful += 1
            self._notify(FileProcessedEvent(event.path, event.type, True))
        self.vectorizer.last_sync = time.time()
        logging.info(f"Change batch complete: {successful} successful, {failed} failed, {deleted} deleted")

    # --- Listeners ---

    def add_listener(self, listener: FileListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: FileListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, event: FileProcessedEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logging.error(f"File listener failed: {e}")

    # --- Queries ---

    async def search_code(self, query: str, limit: int = 10, element_type: Optional[str] = None,
                          language: Optional[str] = None, min_similarity: Optional[float] = None) -> List[SearchResult]:
        self._require_ready()
        threshold = self.config.search_min_similarity if min_similarity is None else min_similarity
        return await self.vectorizer.search_code(query, limit, element_type, language, threshold)

    async def find_similar_code(self, code_snippet: str, limit: int = 10,
                                min_similarity: Optional[float] = None) -> List[SearchResult]:
        self._require_ready()
        threshold = self.config.similar_code_min_similarity if min_similarity is None else min_similarity
        return await self.vectorizer.find_similar_code(code_snippet, limit, threshold)

    def get_dependents(self, file_path: str) -> List[str]:
        self._require_ready()
        return self.dependency_graph.get_dependents(file_path)

    def get_dependencies(self, file_path: str) -> List[str]:
        self._require_ready()
        return self.dependency_graph.get_dependencies(file_path)

    def find_dependency_path(self, from_path: str, to_path: str) -> Optional[List[str]]:
        self._require_ready()
        return self.dependency_graph.find_dependency_path(from_path, to_path)

    def get_impact(self, file_path: str, max_depth: Optional[int] = None) -> ImpactAnalysis:
        self._require_ready()
        return self.dependency_graph.get_impact(file_path, max_depth or self.config.impact_max_depth)

    def find_circular_dependencies(self) -> List[List[str]]:
        self._require_ready()
        return self.dependency_graph.find_circular_dependencies()

    def get_status(self) -> Dict[str, Any]:
        """Initialized/processing flags, progress counters and last sync time."""
        status: Dict[str, Any] = {
            "initialized": self.initialized,
            "processing": self.phase in (IndexPhase.SCANNING, IndexPhase.VECTORIZING),
            "phase": self.phase.value,
            "analysis_state": self.analysis_state.value,
            "watching": self.notifier.is_watching,
            "files_processed": 0,
            "total_files": 0,
            "elements_processed": 0,
            "total_elements": 0,
            "current_file": None,
            "errors": [],
            "start_time": None,
            "estimated_time_remaining": None,
            "last_sync": None,
            "watch_errors": list(self.watch_errors),
            "stats": None,
        }
        if self.vectorizer is not None:
            status.update(self.vectorizer.progress.to_dict())
            status["last_sync"] = self.vectorizer.last_sync
            status["stats"] = self.vectorizer.get_stats()
        return status

    def shutdown(self) -> None:
        """Stop watching and flush all persisted state."""
        if self.vectorizer is not None:
            self.vectorizer.cancel()
        self.stop_watching()
        if self.file_tracker is not None:
            self.file_tracker.shutdown()
        if self.vectorizer is not None:
            self.vectorizer.shutdown()
        if self.dependency_graph is not None:
            self.dependency_graph.flush()
        logging.info("Code index shut down")
