import json

import pytest

from code_index.core.models import VectorDocument
from code_index.core.vector_index import (
    DimensionMismatchError,
    VectorStore,
    cosine_similarity,
)


@pytest.fixture
def store(tmp_path):
    return VectorStore(tmp_path / "vectors", save_delay=0)


@pytest.fixture
def index(store):
    return store.create_index("code", 3, "fake", "fake-model")


def _doc(doc_id, embedding, **metadata):
    return VectorDocument(id=doc_id, content=f"content of {doc_id}", metadata=metadata, embedding=embedding)


class TestCosineSimilarity:
    def test_self_similarity_is_one(self):
        assert cosine_similarity([0.3, -1.2, 4.0], [0.3, -1.2, 4.0]) == pytest.approx(1.0)

    def test_zero_norm_is_zero(self):
        assert cosine_similarity([0.0, 0.0, 0.0], [1.0, 2.0, 3.0]) == 0.0

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)


class TestVectorIndex:
    def test_add_and_get_document(self, index):
        index.add_document(_doc("a", [1.0, 0.0, 0.0], language="python"))

        doc = index.get_document("a")
        assert doc.content == "content of a"
        assert doc.metadata["language"] == "python"
        assert doc.embedding == pytest.approx([1.0, 0.0, 0.0])
        assert len(index) == 1

    def test_dimension_mismatch_leaves_index_unchanged(self, index):
        index.add_document(_doc("a", [1.0, 0.0, 0.0]))

        with pytest.raises(DimensionMismatchError) as exc_info:
            index.add_document(_doc("b", [1.0, 0.0]))

        assert exc_info.value.expected == 3
        assert exc_info.value.actual == 2
        assert index.list_document_ids() == ["a"]

    def test_update_document_merges_metadata(self, index):
        index.add_document(_doc("a", [1.0, 0.0, 0.0], language="python", name="f"))

        assert index.update_document("a", metadata={"name": "g"}) is True

        doc = index.get_document("a")
        assert doc.metadata["language"] == "python"
        assert doc.metadata["name"] == "g"
        assert "updated_at" in doc.metadata

    def test_update_missing_document(self, index):
        assert index.update_document("missing", content="x") is False

    def test_update_rejects_wrong_dimensions(self, index):
        index.add_document(_doc("a", [1.0, 0.0, 0.0]))
        with pytest.raises(DimensionMismatchError):
            index.update_document("a", embedding=[1.0])
        assert index.get_document("a").embedding == pytest.approx([1.0, 0.0, 0.0])

    def test_delete_document(self, index):
        index.add_document(_doc("a", [1.0, 0.0, 0.0]))
        assert index.delete_document("a") is True
        assert index.delete_document("a") is False
        assert index.get_document("a") is None

    def test_search_orders_by_similarity(self, index):
        index.add_document(_doc("same", [1.0, 0.0, 0.0]))
        index.add_document(_doc("close", [1.0, 0.2, 0.0]))
        index.add_document(_doc("far", [0.0, 1.0, 0.0]))

        results = index.search_similar([1.0, 0.0, 0.0], top_k=10)

        assert [r.document.id for r in results] == ["same", "close", "far"]
        assert results[0].similarity == pytest.approx(1.0)

    def test_search_respects_threshold_and_top_k(self, index):
        index.add_document(_doc("same", [1.0, 0.0, 0.0]))
        index.add_document(_doc("close", [1.0, 0.2, 0.0]))
        index.add_document(_doc("far", [0.0, 1.0, 0.0]))

        results = index.search_similar([1.0, 0.0, 0.0], top_k=10, threshold=0.5)
        assert {r.document.id for r in results} == {"same", "close"}
        assert all(r.similarity >= 0.5 for r in results)

        assert len(index.search_similar([1.0, 0.0, 0.0], top_k=1)) == 1

    def test_search_filter_runs_before_ranking(self, index):
        index.add_document(_doc("py", [1.0, 0.0, 0.0], language="python"))
        index.add_document(_doc("ts", [1.0, 0.0, 0.0], language="typescript"))

        results = index.search_similar(
            [1.0, 0.0, 0.0], filter=lambda d: d.metadata.get("language") == "typescript"
        )
        assert [r.document.id for r in results] == ["ts"]

    def test_search_with_wrong_dimensions(self, index):
        with pytest.raises(DimensionMismatchError):
            index.search_similar([1.0, 0.0])


class TestVectorStore:
    def test_get_or_create_matches_provider_model_and_dimensions(self, store):
        first = store.get_or_create("code", "fake", "model-a", 3)
        assert store.get_or_create("code", "fake", "model-a", 3) is first
        assert store.get_or_create("code", "fake", "model-b", 3) is not first
        assert store.get_or_create("code", "fake", "model-a", 4) is not first
        assert len(store.list_indices()) == 3

    def test_create_index_rejects_non_positive_dimensions(self, store):
        with pytest.raises(ValueError):
            store.create_index("code", 0, "fake", "m")

    def test_persists_and_reloads_documents(self, tmp_path):
        store = VectorStore(tmp_path / "vectors", save_delay=0)
        index = store.create_index("code", 3, "fake", "m")
        index.add_document(_doc("a", [0.0, 1.0, 0.0], name="alpha"))
        store.flush()

        reloaded = VectorStore(tmp_path / "vectors", save_delay=0)
        again = reloaded.get_index(index.id)
        assert again is not None
        assert again.get_document("a").metadata["name"] == "alpha"
        # Vectors are loaded lazily from disk
        assert again.get_document("a").embedding == pytest.approx([0.0, 1.0, 0.0])

    def test_malformed_index_file_is_backed_up(self, tmp_path):
        indices = tmp_path / "vectors" / "indices"
        indices.mkdir(parents=True)
        (indices / "broken.json").write_text(json.dumps({"name": "no id"}), encoding="utf-8")

        store = VectorStore(tmp_path / "vectors", save_delay=0)

        assert store.list_indices() == []
        assert not (indices / "broken.json").exists()
        assert list(indices.glob("broken.json.corrupt-*"))

    def test_delete_index(self, store):
        index = store.create_index("code", 3, "fake", "m")
        index.add_document(_doc("a", [1.0, 0.0, 0.0]))

        assert store.delete_index(index.id) is True
        assert store.get_index(index.id) is None
        assert not index.index_path.exists()
        assert store.delete_index(index.id) is False
