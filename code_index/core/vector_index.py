"""
Persistent vector index with cosine-similarity search.

Layout under the store directory::

    indices/<index_id>.json                 index metadata + documents (no vectors)
    embeddings/<index_id>/<doc_id>.npy      one float32 vector per document

Vectors are loaded lazily on first use so opening an index does not pull
every embedding into memory.
"""

import logging
import os
import random
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from code_index.core.models import VectorDocument
from code_index.core.utils import DebouncedSaver, atomic_write_json, backup_corrupt_file, load_json_state

DocumentFilter = Callable[[VectorDocument], bool]


class DimensionMismatchError(ValueError):
    """An embedding's length disagrees with the index dimensionality."""

    def __init__(self, expected: int, actual: int, doc_id: Optional[str] = None):
        target = f" for document {doc_id}" if doc_id else ""
        super().__init__(
            f"Embedding dimension mismatch{target}: index expects {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual
        self.doc_id = doc_id


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|), or 0.0 when either norm is zero."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise DimensionMismatchError(va.shape[0], vb.shape[0])
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


@dataclass
class SearchResult:
    document: VectorDocument
    similarity: float

    def to_dict(self) -> Dict[str, Any]:
        data = self.document.to_dict()
        data["similarity"] = self.similarity
        return data


class VectorIndex:
    """
    A provider/model/dimension specific collection of documents.

    All mutations go through this object and are serialized by its lock.
    """

    def __init__(
        self,
        index_id: str,
        name: str,
        dimensions: int,
        index_path: Path,
        embeddings_dir: Path,
        metadata: Optional[Dict[str, Any]] = None,
        save_delay: float = 2.0,
    ):
        self.id = index_id
        self.name = name
        self.dimensions = dimensions
        self.metadata: Dict[str, Any] = metadata or {}
        self.index_path = Path(index_path)
        self.embeddings_dir = Path(embeddings_dir)
        self._documents: Dict[str, VectorDocument] = {}
        self._vectors: Dict[str, np.ndarray] = {}
        self._lock = threading.RLock()
        self._saver = DebouncedSaver(self.save, save_delay)

    @property
    def embedding_provider(self) -> str:
        return self.metadata.get("embedding_provider", "")

    @property
    def embedding_model(self) -> str:
        return self.metadata.get("embedding_model", "")

    def __len__(self) -> int:
        return len(self._documents)

    # --- Persistence ---

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "id": self.id,
                "name": self.name,
                "dimensions": self.dimensions,
                "metadata": dict(self.metadata),
                "documents": {doc_id: doc.to_dict() for doc_id, doc in self._documents.items()},
            }

    def save(self) -> None:
        with self._lock:
            atomic_write_json(self.index_path, self.to_dict())

    def flush(self) -> None:
        self._saver.flush()

    def discard_pending_save(self) -> None:
        self._saver.cancel()

    def load_documents(self, raw_documents: Dict[str, Any]) -> None:
        for doc_id, raw in raw_documents.items():
            self._documents[doc_id] = VectorDocument(
                id=raw.get("id", doc_id),
                content=raw.get("content", ""),
                metadata=raw.get("metadata", {}),
            )

    def _embedding_path(self, doc_id: str) -> Path:
        return self.embeddings_dir / f"{doc_id}.npy"

    def _write_embedding(self, doc_id: str, vector: np.ndarray) -> None:
        self.embeddings_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{doc_id}.", suffix=".tmp", dir=self.embeddings_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                np.save(f, vector)
            os.replace(tmp_name, self._embedding_path(doc_id))
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _load_vector(self, doc_id: str) -> Optional[np.ndarray]:
        vector = self._vectors.get(doc_id)
        if vector is not None:
            return vector
        path = self._embedding_path(doc_id)
        try:
            vector = np.load(path)
        except (OSError, ValueError) as e:
            logging.warning(f"Missing or unreadable embedding for {doc_id} in index {self.id}: {e}")
            return None
        if vector.shape != (self.dimensions,):
            logging.warning(f"Ignoring embedding for {doc_id} with shape {vector.shape}")
            return None
        self._vectors[doc_id] = vector
        return vector

    def _validated(self, doc_id: str, embedding: Sequence[float]) -> np.ndarray:
        vector = np.asarray(embedding, dtype=np.float32)
        if vector.ndim != 1 or vector.shape[0] != self.dimensions:
            actual = vector.shape[0] if vector.ndim == 1 else int(vector.size)
            raise DimensionMismatchError(self.dimensions, actual, doc_id)
        return vector

    def _touch(self) -> None:
        self.metadata["updated_at"] = _now_iso()
        self._saver.schedule()

    # --- Document operations ---

    def add_document(self, document: VectorDocument) -> None:
        """Insert or replace a document. Rejects embeddings of the wrong length."""
        vector = self._validated(document.id, document.embedding)
        with self._lock:
            self._write_embedding(document.id, vector)
            self._vectors[document.id] = vector
            self._documents[document.id] = VectorDocument(
                id=document.id,
                content=document.content,
                metadata=dict(document.metadata),
            )
            self._touch()

    def update_document(
        self,
        doc_id: str,
        content: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        embedding: Optional[Sequence[float]] = None,
    ) -> bool:
        """Merge metadata and optionally replace content/embedding. False if missing."""
        vector = self._validated(doc_id, embedding) if embedding is not None else None
        with self._lock:
            existing = self._documents.get(doc_id)
            if existing is None:
                return False
            if vector is not None:
                self._write_embedding(doc_id, vector)
                self._vectors[doc_id] = vector
            if content is not None:
                existing.content = content
            merged = dict(existing.metadata)
            merged.update(metadata or {})
            merged["updated_at"] = _now_iso()
            existing.metadata = merged
            self._touch()
            return True

    def delete_document(self, doc_id: str) -> bool:
        with self._lock:
            if self._documents.pop(doc_id, None) is None:
                return False
            self._vectors.pop(doc_id, None)
            try:
                self._embedding_path(doc_id).unlink()
            except FileNotFoundError:
                pass
            self._touch()
            return True

    def has_document(self, doc_id: str) -> bool:
        with self._lock:
            return doc_id in self._documents

    def has_embedding(self, doc_id: str) -> bool:
        """Whether a stored vector exists for ``doc_id``. Does not load it."""
        with self._lock:
            if doc_id not in self._documents:
                return False
            return doc_id in self._vectors or self._embedding_path(doc_id).is_file()

    def get_document(self, doc_id: str, include_embedding: bool = True) -> Optional[VectorDocument]:
        with self._lock:
            doc = self._documents.get(doc_id)
            if doc is None:
                return None
            embedding: List[float] = []
            if include_embedding:
                vector = self._load_vector(doc_id)
                if vector is not None:
                    embedding = vector.tolist()
            return VectorDocument(id=doc.id, content=doc.content, metadata=dict(doc.metadata), embedding=embedding)

    def list_document_ids(self) -> List[str]:
        with self._lock:
            return list(self._documents.keys())

    def iter_documents(self) -> List[VectorDocument]:
        """Documents without embeddings."""
        with self._lock:
            return [
                VectorDocument(id=d.id, content=d.content, metadata=dict(d.metadata))
                for d in self._documents.values()
            ]

    def search_similar(
        self,
        query_vector: Sequence[float],
        top_k: int = 10,
        threshold: float = 0.0,
        filter: Optional[DocumentFilter] = None,
    ) -> List[SearchResult]:
        """
        Rank documents by cosine similarity to ``query_vector``.

        The metadata filter runs first, then the similarity threshold, then
        the result is cut to ``top_k``.
        """
        query = self._validated("<query>", query_vector).astype(np.float64)
        query_norm = np.linalg.norm(query)
        results: List[SearchResult] = []
        with self._lock:
            candidates = [d for d in self._documents.values() if filter is None or filter(d)]
            for doc in candidates:
                vector = self._load_vector(doc.id)
                if vector is None:
                    continue
                doc_norm = np.linalg.norm(vector)
                if query_norm == 0 or doc_norm == 0:
                    similarity = 0.0
                else:
                    similarity = float(np.dot(query, vector.astype(np.float64)) / (query_norm * doc_norm))
                if similarity < threshold:
                    continue
                results.append(SearchResult(
                    document=VectorDocument(id=doc.id, content=doc.content, metadata=dict(doc.metadata)),
                    similarity=similarity,
                ))
        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:max(top_k, 0)]

    def clear(self) -> None:
        with self._lock:
            self._documents.clear()
            self._vectors.clear()
            shutil.rmtree(self.embeddings_dir, ignore_errors=True)
            self._touch()


class VectorStore:
    """
    Owns every VectorIndex persisted under ``base_dir``.
    """

    def __init__(self, base_dir: Path, save_delay: float = 2.0):
        self.base_dir = Path(base_dir)
        self.indices_dir = self.base_dir / "indices"
        self.embeddings_root = self.base_dir / "embeddings"
        self.save_delay = save_delay
        self._indices: Dict[str, VectorIndex] = {}
        self._lock = threading.RLock()
        # Storage directory failures are fatal for the caller.
        self.indices_dir.mkdir(parents=True, exist_ok=True)
        self.embeddings_root.mkdir(parents=True, exist_ok=True)
        self._load_indices()

    def _load_indices(self) -> None:
        for index_file in sorted(self.indices_dir.glob("*.json")):
            data = load_json_state(index_file)
            if data is None:
                continue
            try:
                index = VectorIndex(
                    index_id=data["id"],
                    name=data["name"],
                    dimensions=int(data["dimensions"]),
                    index_path=index_file,
                    embeddings_dir=self.embeddings_root / data["id"],
                    metadata=data.get("metadata", {}),
                    save_delay=self.save_delay,
                )
                index.load_documents(data.get("documents", {}))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logging.warning(f"Index file {index_file} is malformed: {e}")
                backup_corrupt_file(index_file)
                continue
            self._indices[index.id] = index
        if self._indices:
            logging.info(f"Loaded {len(self._indices)} vector indices from {self.indices_dir}")

    @staticmethod
    def _new_index_id() -> str:
        suffix = "".join(random.choices("abcdefghijklmnopqrstuvwxyz0123456789", k=9))
        return f"idx_{int(time.time() * 1000)}_{suffix}"

    def create_index(self, name: str, dimensions: int, provider: str, model: str) -> VectorIndex:
        if dimensions <= 0:
            raise ValueError(f"Index dimensions must be positive, got {dimensions}")
        with self._lock:
            index_id = self._new_index_id()
            now = _now_iso()
            index = VectorIndex(
                index_id=index_id,
                name=name,
                dimensions=dimensions,
                index_path=self.indices_dir / f"{index_id}.json",
                embeddings_dir=self.embeddings_root / index_id,
                metadata={
                    "embedding_provider": provider,
                    "embedding_model": model,
                    "created_at": now,
                    "updated_at": now,
                },
                save_delay=self.save_delay,
            )
            index.save()
            self._indices[index_id] = index
            logging.info(f"Created vector index {index_id} ({name}, {provider}/{model}, {dimensions} dims)")
            return index

    def get_or_create(self, name: str, provider: str, model: str, dimensions: int) -> VectorIndex:
        """
        Existing index only when name, provider, model and dimensions all
        match; otherwise a new, distinct index.
        """
        with self._lock:
            for index in self._indices.values():
                if (
                    index.name == name
                    and index.embedding_provider == provider
                    and index.embedding_model == model
                    and index.dimensions == dimensions
                ):
                    return index
            return self.create_index(name, dimensions, provider, model)

    def get_index(self, index_id: str) -> Optional[VectorIndex]:
        with self._lock:
            return self._indices.get(index_id)

    def list_indices(self) -> List[VectorIndex]:
        with self._lock:
            return list(self._indices.values())

    def delete_index(self, index_id: str) -> bool:
        with self._lock:
            index = self._indices.pop(index_id, None)
            if index is None:
                return False
            index.discard_pending_save()
            try:
                index.index_path.unlink()
            except FileNotFoundError:
                pass
            shutil.rmtree(index.embeddings_dir, ignore_errors=True)
            logging.info(f"Deleted vector index {index_id}")
            return True

    def flush(self) -> None:
        for index in self.list_indices():
            index.flush()
