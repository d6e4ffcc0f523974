import json
import threading
import time

import pytest

from code_index.core.parsing import ParseError
from code_index.core.vector_index import VectorStore
from code_index.core.vectorizer import CodeVectorizer, build_embedding_text, make_document_id
from code_index.core.models import CodeElement, ElementType, Language, Parameter
from tests.fakes import FakeEmbedder, block_parser, write_blocks


def make_vectorizer(project, tmp_path, embedder, parse_file=block_parser):
    store = VectorStore(tmp_path / "state" / "vectors", save_delay=0)
    return CodeVectorizer(
        project_root=project,
        store=store,
        embedder=embedder,
        state_path=tmp_path / "state" / "vectorization-state.json",
        parse_file=parse_file,
        save_delay=0,
    )


NAMES = [f"func{i}" for i in range(10)]


@pytest.mark.asyncio
async def test_vectorize_file_creates_one_document_per_element(project, tmp_path, fake_embedder):
    path = write_blocks(project / "src" / "mod.py", ["alpha", "beta", "gamma"])
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)

    docs = await vectorizer.vectorize_file(path)

    assert len(docs) == 3
    assert len(fake_embedder.calls) == 3
    assert {d.metadata["element_name"] for d in docs} == {"alpha", "beta", "gamma"}
    assert all(d.metadata["file_path"] == "src/mod.py" for d in docs)
    assert len(vectorizer.index) == 3


@pytest.mark.asyncio
async def test_second_run_on_unchanged_file_makes_no_embedding_calls(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", NAMES)
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)

    first = await vectorizer.vectorize_file(path)
    calls_after_first = len(fake_embedder.calls)
    second = await vectorizer.vectorize_file_detailed(path)

    assert len(fake_embedder.calls) == calls_after_first
    assert second.fast_path is True
    assert sorted(d.id for d in second.documents) == sorted(d.id for d in first)


@pytest.mark.asyncio
async def test_one_changed_element_is_the_only_one_re_embedded(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", NAMES)
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    first = await vectorizer.vectorize_file(path)
    fake_embedder.calls.clear()

    write_blocks(path, NAMES, bodies={"func4": "now does something else"})
    result = await vectorizer.vectorize_file_detailed(path)

    assert result.embedded == 1
    assert result.reused == 9
    assert len(fake_embedder.calls) == 1
    assert "func4" in fake_embedder.calls[0]
    assert sorted(d.id for d in result.documents) == sorted(d.id for d in first)
    changed = vectorizer.index.get_document(make_document_id("mod.py", block_parser(path)[4]))
    assert "now does something else" in changed.content


@pytest.mark.asyncio
async def test_removed_element_deletes_its_document(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", ["alpha", "beta", "gamma"])
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    await vectorizer.vectorize_file(path)

    # Keep line positions of the survivors stable
    path.write_text("alpha returns alpha\n\nbeta returns beta\n", encoding="utf-8")
    result = await vectorizer.vectorize_file_detailed(path)

    assert result.removed == 1
    assert len(vectorizer.index) == 2
    names = {d.metadata["element_name"] for d in vectorizer.index.iter_documents()}
    assert names == {"alpha", "beta"}


@pytest.mark.asyncio
async def test_empty_embedding_for_one_element_keeps_the_others(project, tmp_path, fake_embedder):
    names = ["a1", "a2", "a3", "a4", "a5"]
    path = write_blocks(project / "mod.py", names, bodies={"a3": "EMBED_FAIL here"})
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)

    result = await vectorizer.vectorize_file_detailed(path)

    assert result.embedded == 4
    assert result.failed == 1
    assert len(vectorizer.index) == 4
    # The failed element is retried on the next run
    assert vectorizer.get_file_state(path).file_hash == ""


@pytest.mark.asyncio
async def test_failed_re_embedding_keeps_previous_vector(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", ["alpha", "beta"])
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    await vectorizer.vectorize_file(path)

    write_blocks(path, ["alpha", "beta"], bodies={"beta": "EMBED_FAIL now"})
    result = await vectorizer.vectorize_file_detailed(path)

    assert result.failed == 1
    assert len(vectorizer.index) == 2
    beta = [d for d in vectorizer.index.iter_documents() if d.metadata["element_name"] == "beta"][0]
    assert beta.content == "beta returns beta"


@pytest.mark.asyncio
async def test_force_reindex_re_embeds_everything(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", ["alpha", "beta"])
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    await vectorizer.vectorize_file(path)
    fake_embedder.calls.clear()

    await vectorizer.vectorize_file(path, force_reindex=True)

    assert len(fake_embedder.calls) == 2
    assert len(vectorizer.index) == 2


@pytest.mark.asyncio
async def test_parse_failure_raises_parse_error(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", ["alpha"])

    def broken_parser(p):
        raise ValueError("unexpected token")

    vectorizer = make_vectorizer(project, tmp_path, fake_embedder, parse_file=broken_parser)
    with pytest.raises(ParseError):
        await vectorizer.vectorize_file(path)
    assert len(vectorizer.index) == 0


@pytest.mark.asyncio
async def test_delete_file_vectors(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", ["alpha", "beta"])
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    await vectorizer.vectorize_file(path)

    assert vectorizer.delete_file_vectors(path) == 2
    assert len(vectorizer.index) == 0
    assert vectorizer.get_file_state(path) is None


@pytest.mark.asyncio
async def test_state_survives_restart(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", ["alpha", "beta"])
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    await vectorizer.vectorize_file(path)
    vectorizer.shutdown()

    restarted_embedder = FakeEmbedder()
    restarted = make_vectorizer(project, tmp_path, restarted_embedder)
    result = await restarted.vectorize_file_detailed(path)

    assert result.fast_path is True
    assert restarted_embedder.calls == []


@pytest.mark.asyncio
async def test_state_for_other_index_is_discarded(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", ["alpha"])
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    await vectorizer.vectorize_file(path)
    vectorizer.shutdown()

    # A different model selects a different index; old element records must not be reused
    other = FakeEmbedder(model="other-model")
    restarted = make_vectorizer(project, tmp_path, other)
    await restarted.vectorize_file(path)

    assert len(other.calls) == 1
    assert restarted.index.id != vectorizer.index.id


@pytest.mark.asyncio
async def test_vectorize_project_isolates_failing_files(project, tmp_path, fake_embedder):
    write_blocks(project / "good.py", ["alpha"])
    write_blocks(project / "bad.py", ["beta"])
    write_blocks(project / "node_modules" / "dep.py", ["ignored"])

    def parser(p):
        if p.name == "bad.py":
            raise ParseError(str(p), "syntax error")
        return block_parser(p)

    seen = []
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder, parse_file=parser)
    result = await vectorizer.vectorize_project(
        concurrency=2, file_callback=lambda path, ok, error: seen.append((path, ok))
    )

    assert result.total_files == 2
    assert result.succeeded == 1
    assert result.failed == 1
    assert len(vectorizer.index) == 1
    assert sorted(ok for _, ok in seen) == [False, True]
    assert vectorizer.progress.files_processed == 2


@pytest.mark.asyncio
async def test_vectorize_project_drops_vanished_files(project, tmp_path, fake_embedder):
    keep = write_blocks(project / "keep.py", ["alpha"])
    gone = write_blocks(project / "gone.py", ["beta"])
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    await vectorizer.vectorize_project()
    gone.unlink()

    result = await vectorizer.vectorize_project()

    assert result.deleted_files == 1
    assert vectorizer.indexed_files() == [str(keep.resolve())]
    assert len(vectorizer.index) == 1


@pytest.mark.asyncio
async def test_search_code_filters_by_element_type(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", ["alpha", "beta"])
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    await vectorizer.vectorize_file(path)

    results = await vectorizer.search_code("anything", limit=5, element_type="class", min_similarity=-1.0)
    assert results == []

    results = await vectorizer.search_code("anything", limit=5, element_type="function", min_similarity=-1.0)
    assert len(results) == 2


@pytest.mark.asyncio
async def test_find_similar_code_finds_identical_text(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", ["alpha"])
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    docs = await vectorizer.vectorize_file(path)
    # The stored vector embeds the full element text
    stored_text = fake_embedder.calls[0]

    results = await vectorizer.find_similar_code(stored_text, limit=1)

    assert results[0].document.id == docs[0].id
    assert results[0].similarity == pytest.approx(1.0)


def test_build_embedding_text_includes_context():
    element = CodeElement(
        type=ElementType.FUNCTION,
        name="load",
        content="def load(path): ...",
        start_line=1,
        end_line=1,
        language=Language.PYTHON,
        parameters=[Parameter("path", "str")],
        return_type="dict",
        doc_comment="Load a file.",
    )

    text = build_embedding_text(element, "pkg/io.py", "Reads a file.")

    assert text.startswith("function: load")
    assert "File: pkg/io.py" in text
    assert "Documentation: Load a file." in text
    assert "Parameters: path: str" in text
    assert "Returns: dict" in text
    assert "Description: Reads a file." in text


def test_state_file_is_json_with_index_id(project, tmp_path, fake_embedder):
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    vectorizer.save_state()

    data = json.loads((tmp_path / "state" / "vectorization-state.json").read_text(encoding="utf-8"))
    assert data["index_id"] == vectorizer.index.id
    assert data["files"] == {}


@pytest.mark.asyncio
async def test_element_missing_from_index_is_re_embedded(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", ["alpha", "beta", "gamma"])
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    docs = await vectorizer.vectorize_file(path)
    lost = [d for d in docs if d.metadata["element_name"] == "beta"][0]
    vectorizer.index.delete_document(lost.id)
    fake_embedder.calls.clear()

    write_blocks(path, ["alpha", "beta", "gamma", "delta"])
    result = await vectorizer.vectorize_file_detailed(path)

    assert len(result.documents) == 4
    assert len(vectorizer.index) == 4
    assert vectorizer.index.has_document(lost.id)
    assert sorted(text.split()[1] for text in fake_embedder.calls) == ["beta", "delta"]


@pytest.mark.asyncio
async def test_unchanged_file_with_missing_document_converges(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", ["alpha", "beta"])
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    docs = await vectorizer.vectorize_file(path)
    vectorizer.index.delete_document(docs[0].id)

    result = await vectorizer.vectorize_file_detailed(path)
    again = await vectorizer.vectorize_file_detailed(path)

    assert result.fast_path is False
    assert result.embedded == 1
    assert len(vectorizer.index) == 2
    assert again.fast_path is True


@pytest.mark.asyncio
async def test_vectorize_project_bounds_files_in_flight(project, tmp_path, fake_embedder):
    for i in range(6):
        write_blocks(project / f"mod{i}.py", [f"func{i}"])
    lock = threading.Lock()
    in_flight = []
    peak = []

    def slow_parser(p):
        with lock:
            in_flight.append(p)
            peak.append(len(in_flight))
        time.sleep(0.05)
        with lock:
            in_flight.remove(p)
        return block_parser(p)

    vectorizer = make_vectorizer(project, tmp_path, fake_embedder, parse_file=slow_parser)
    result = await vectorizer.vectorize_project(concurrency=2)

    assert result.succeeded == 6
    assert max(peak) == 2
    assert len(vectorizer.index) == 6


@pytest.mark.asyncio
async def test_cancel_lets_in_flight_file_finish_and_starts_no_more(project, tmp_path, fake_embedder):
    for i in range(4):
        write_blocks(project / f"mod{i}.py", [f"func{i}"])
    calls = []

    def cancelling_parser(p):
        calls.append(p)
        # The first four calls come from the pre-scan
        if len(calls) == 5:
            vectorizer.cancel()
        return block_parser(p)

    vectorizer = make_vectorizer(project, tmp_path, fake_embedder, parse_file=cancelling_parser)
    result = await vectorizer.vectorize_project(concurrency=1)

    assert result.succeeded == 1
    assert result.skipped == 3
    assert len(vectorizer.index) == 1
    assert len(calls) == 5


@pytest.mark.asyncio
async def test_delete_file_vectors_drops_file_lock(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", ["alpha"])
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    await vectorizer.vectorize_file(path)
    assert str(path.resolve()) in vectorizer._file_locks

    vectorizer.delete_file_vectors(path)

    assert str(path.resolve()) not in vectorizer._file_locks


@pytest.mark.parametrize("content", ['{"files": []}', '{"files": "oops"}'])
def test_malformed_state_file_is_backed_up(project, tmp_path, fake_embedder, content):
    state_path = tmp_path / "state" / "vectorization-state.json"
    state_path.parent.mkdir(parents=True)
    state_path.write_text(content, encoding="utf-8")

    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)

    assert vectorizer.indexed_files() == []
    assert list(state_path.parent.glob("vectorization-state.json.corrupt-*"))


@pytest.mark.asyncio
async def test_lost_embedding_file_is_re_embedded_after_restart(project, tmp_path, fake_embedder):
    path = write_blocks(project / "mod.py", ["alpha", "beta"])
    vectorizer = make_vectorizer(project, tmp_path, fake_embedder)
    docs = await vectorizer.vectorize_file(path)
    vectorizer.shutdown()
    (vectorizer.index.embeddings_dir / f"{docs[0].id}.npy").unlink()

    restarted_embedder = FakeEmbedder()
    restarted = make_vectorizer(project, tmp_path, restarted_embedder)
    result = await restarted.vectorize_file_detailed(path)

    assert result.fast_path is False
    assert result.embedded == 1
    assert len(restarted_embedder.calls) == 1
    assert restarted.index.has_embedding(docs[0].id)
