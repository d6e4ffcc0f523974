import logging
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

import code_index.mcp_server.server as server_module
from code_index.core.watcher import ChangeNotifier
from code_index.mcp_server.orchestrator import IndexOrchestrator
from code_index.mcp_server.server import (
    MCPError,
    analyze_impact,
    dependency_stats,
    find_circular_dependencies,
    find_dependency_path,
    find_similar_code,
    format_search_results_as_markdown,
    get_file_dependencies,
    index_status,
    ping_tool,
    reindex_project,
    search_code,
)
from tests.fakes import block_parser


@pytest.fixture
def no_orchestrator(monkeypatch):
    monkeypatch.setattr(server_module.server, "orchestrator", None, raising=False)


@pytest_asyncio.fixture
async def orchestrator(project, fake_embedder, monkeypatch):
    # a.py -> b.py -> c.py
    (project / "a.py").write_text("from b import value\n", encoding="utf-8")
    (project / "b.py").write_text("from c import other\n", encoding="utf-8")
    (project / "c.py").write_text("other returns other\n\nhelper returns other\n", encoding="utf-8")

    orch = IndexOrchestrator(
        {"project_root": str(project), "watch_patterns": ["**/*.py"], "save_debounce_seconds": 0},
        embedder=fake_embedder,
        parse_file=block_parser,
        notifier=ChangeNotifier(observer_factory=MagicMock),
    )
    await orch.initialize()
    await orch.sync_project()
    monkeypatch.setattr(server_module.server, "orchestrator", orch, raising=False)
    yield orch
    orch.shutdown()


def test_server_name():
    assert server_module.server.name == "CodeIndexMCP"


@pytest.mark.asyncio
async def test_shutdown_stops_orchestrator(caplog, monkeypatch):
    mock_orchestrator = MagicMock()
    monkeypatch.setattr(server_module.server, "orchestrator", mock_orchestrator, raising=False)
    caplog.set_level(logging.INFO)

    await server_module.on_shutdown()

    assert "Server shutdown" in caplog.text
    mock_orchestrator.shutdown.assert_called_once()


class TestAvailability:
    @pytest.mark.asyncio
    async def test_ping_without_orchestrator(self, no_orchestrator):
        response = await ping_tool(message="hi")

        assert response.status == "ok"
        assert response.echoed == "hi"
        assert response.analysis_status is None
        assert response.indexed_documents is None

    @pytest.mark.asyncio
    async def test_queries_without_orchestrator(self, no_orchestrator):
        with pytest.raises(MCPError) as exc_info:
            await find_circular_dependencies()
        assert exc_info.value.code == 5001

        with pytest.raises(MCPError) as exc_info:
            await index_status()
        assert exc_info.value.code == 5001

    @pytest.mark.asyncio
    async def test_queries_before_ready(self, project, fake_embedder, monkeypatch):
        orch = IndexOrchestrator({"project_root": str(project)}, embedder=fake_embedder)
        monkeypatch.setattr(server_module.server, "orchestrator", orch, raising=False)

        with pytest.raises(MCPError) as exc_info:
            await search_code(query="parse config", limit=5, element_type=None, language=None,
                              min_similarity=None, format="json")

        assert exc_info.value.code == 5002
        assert exc_info.value.data["hint"]

        status = await index_status()
        assert status.status["initialized"] is False
        assert status.analysis_status == "not_started"


class TestSearchTools:
    @pytest.mark.asyncio
    async def test_ping_reports_document_count(self, orchestrator):
        response = await ping_tool(message="hi")
        assert response.indexed_documents == 4

    @pytest.mark.asyncio
    async def test_search_json(self, orchestrator):
        response = await search_code(query="other", limit=10, element_type="function", language="python",
                                     min_similarity=-1.0, format="json")

        assert isinstance(response.results, list)
        assert len(response.results) == 4
        first = response.results[0]
        assert {"id", "content", "metadata", "similarity"} <= set(first)
        assert first["metadata"]["language"] == "python"

    @pytest.mark.asyncio
    async def test_search_filters_by_type(self, orchestrator):
        response = await search_code(query="other", limit=10, element_type="class", language=None,
                                     min_similarity=-1.0, format="json")
        assert response.results == []

    @pytest.mark.asyncio
    async def test_search_markdown(self, orchestrator):
        response = await search_code(query="other", limit=1, element_type=None, language=None,
                                     min_similarity=-1.0, format="markdown")

        assert isinstance(response.results, str)
        assert response.results.startswith("# Code Search Results")
        assert "## Result 1" in response.results
        assert "## Result 2" not in response.results

    @pytest.mark.asyncio
    async def test_search_rejects_bad_limit(self, orchestrator):
        with pytest.raises(MCPError) as exc_info:
            await search_code(query="x", limit=0, element_type=None, language=None,
                              min_similarity=None, format="json")
        assert exc_info.value.code == 4001

    @pytest.mark.asyncio
    async def test_find_similar_code(self, orchestrator):
        response = await find_similar_code(code="other returns other", limit=2, min_similarity=-1.0, format="json")

        assert len(response.results) == 2

        with pytest.raises(MCPError):
            await find_similar_code(code="   ", limit=10, min_similarity=None, format="json")


class TestDependencyTools:
    @pytest.mark.asyncio
    async def test_file_dependencies_use_relative_paths(self, orchestrator):
        response = await get_file_dependencies(file_path="b.py")

        assert response.file == "b.py"
        assert response.dependencies == ["c.py"]
        assert response.dependents == ["a.py"]

    @pytest.mark.asyncio
    async def test_unknown_file(self, orchestrator):
        with pytest.raises(MCPError) as exc_info:
            await get_file_dependencies(file_path="missing.py")
        assert exc_info.value.code == 4001

    @pytest.mark.asyncio
    async def test_dependency_path(self, orchestrator):
        found = await find_dependency_path(from_file="a.py", to_file="c.py")
        assert found.found is True
        assert found.path == ["a.py", "b.py", "c.py"]

        missing = await find_dependency_path(from_file="c.py", to_file="a.py")
        assert missing.found is False
        assert missing.path == []

    @pytest.mark.asyncio
    async def test_analyze_impact(self, orchestrator):
        response = await analyze_impact(file_path="c.py", max_depth=None)

        assert sorted(response.impacted_files) == ["a.py", "b.py"]
        assert response.count == 2
        assert response.severity == "low"
        assert response.max_depth == 5

        shallow = await analyze_impact(file_path="c.py", max_depth=1)
        assert shallow.impacted_files == ["b.py"]

        with pytest.raises(MCPError):
            await analyze_impact(file_path="c.py", max_depth=0)

    @pytest.mark.asyncio
    async def test_cycles_and_stats(self, orchestrator, project):
        cycles = await find_circular_dependencies()
        assert cycles.cycles == []

        stats = await dependency_stats()
        assert stats.stats["total_files"] == 3
        assert stats.stats["total_dependencies"] == 2


class TestReindex:
    @pytest.mark.asyncio
    async def test_incremental_reindex_skips_unchanged(self, orchestrator):
        response = await reindex_project(force=False)

        assert response.succeeded == 3
        assert response.embedded_elements == 0
        assert response.errors == []

    @pytest.mark.asyncio
    async def test_forced_reindex(self, orchestrator, fake_embedder):
        calls = len(fake_embedder.calls)

        response = await reindex_project(force=True)

        assert response.embedded_elements == 4
        assert len(fake_embedder.calls) == calls + 4

    @pytest.mark.asyncio
    async def test_index_status(self, orchestrator):
        response = await index_status()

        assert response.status["initialized"] is True
        assert response.status["files_processed"] == 3
        assert response.status["stats"]["total_documents"] == 4


def test_markdown_without_results():
    assert format_search_results_as_markdown([]) == "No results found."
