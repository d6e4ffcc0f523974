from mcp.server.fastmcp import FastMCP
import logging
import sys
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
from code_index.core.vector_index import SearchResult
from code_index.mcp_server.orchestrator import IndexOrchestrator, IndexNotReadyError


class MCPError(Exception):
    """Custom MCP error with code and hint."""

    def __init__(self, code: int, message: str, hint: str = ""):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = {"hint": hint} if hint else {}


class PingResponse(BaseModel):
    status: str
    echoed: str
    analysis_status: Optional[str] = None
    indexed_documents: Optional[int] = None


class StatusResponse(BaseModel):
    status: dict
    analysis_status: Optional[str] = None


class SearchResponse(BaseModel):
    results: list[dict] | str
    analysis_status: Optional[str] = None


class DependencyResponse(BaseModel):
    file: str
    dependencies: List[str]
    dependents: List[str]
    analysis_status: Optional[str] = None


class PathResponse(BaseModel):
    found: bool
    path: List[str]
    analysis_status: Optional[str] = None


class ImpactResponse(BaseModel):
    file: str
    impacted_files: List[str]
    count: int
    severity: str
    max_depth: int
    analysis_status: Optional[str] = None


class CyclesResponse(BaseModel):
    cycles: List[List[str]]
    analysis_status: Optional[str] = None


class StatsResponse(BaseModel):
    stats: dict
    analysis_status: Optional[str] = None


class ReindexResponse(BaseModel):
    succeeded: int
    failed: int
    embedded_elements: int
    deleted_files: int
    errors: List[dict]
    analysis_status: Optional[str] = None


# Global logger for MCP
logger = logging.getLogger("mcp")
logger.addHandler(logging.StreamHandler(sys.stderr))
logger.setLevel(logging.INFO)


@dataclass
class AppContext:
    orchestrator: Optional[IndexOrchestrator] = None


async def on_shutdown():
    logger.info("Server shutdown")
    # Shutdown orchestrator (stops the file watcher and flushes state)
    if getattr(server, 'orchestrator', None):
        server.orchestrator.shutdown()


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    # Startup
    config = getattr(server, 'config', None)
    if config:
        server.orchestrator = IndexOrchestrator(config)
        # Index in background instead of blocking
        await server.orchestrator.start_indexing()
        logger.info("Server started, indexing running in background")
    else:
        server.orchestrator = None
        logger.warning("No config provided to server, skipping indexing")

    try:
        yield AppContext(orchestrator=server.orchestrator)
    finally:
        await on_shutdown()

server = FastMCP("CodeIndexMCP", lifespan=lifespan)


def _analysis_status() -> Optional[str]:
    orchestrator = getattr(server, 'orchestrator', None)
    return orchestrator.analysis_state.value if orchestrator else None


def _require_ready() -> IndexOrchestrator:
    orchestrator = getattr(server, 'orchestrator', None)
    if not orchestrator:
        raise MCPError(5001, "Indexer unavailable", "Start the server with a valid configuration")
    if not orchestrator.is_ready():
        raise MCPError(5002, "Index not ready", "Initial indexing is still running, retry shortly")
    return orchestrator


def _display_path(orchestrator: IndexOrchestrator, path: str) -> str:
    try:
        return Path(path).relative_to(orchestrator.project_root).as_posix()
    except ValueError:
        return path


def format_search_results_as_markdown(results: list[dict]) -> str:
    """
    Helper function to format search results as a markdown string optimized for LLM ingestion.
    """
    if not results:
        return "No results found."

    markdown = "# Code Search Results\n\n"
    for i, result in enumerate(results, 1):
        metadata = result.get('metadata', {})
        markdown += f"## Result {i}\n"
        markdown += f"- **Similarity**: {result.get('similarity', 0.0):.3f}\n"
        markdown += f"- **Name**: {metadata.get('element_name', 'N/A')}\n"
        markdown += f"- **Element Type**: {metadata.get('element_type', 'N/A')}\n"
        markdown += f"- **Language**: {metadata.get('language', 'N/A')}\n"
        markdown += f"- **File Path**: {metadata.get('file_path', 'N/A')}\n"
        markdown += f"- **Lines**: {metadata.get('start_line', '?')}-{metadata.get('end_line', '?')}\n"
        markdown += f"- **Complexity**: {metadata.get('complexity', 'N/A')}\n" if metadata.get('complexity') else ""
        markdown += f"- **Description**: {metadata.get('ai_description')}\n" if metadata.get('ai_description') else ""
        markdown += f"```\n{result.get('content', '')}\n```\n"
        markdown += "\n"
    return markdown


def _format_results(results: List[SearchResult], format: str) -> list[dict] | str:
    payload = [result.to_dict() for result in results]
    if format == "markdown":
        return format_search_results_as_markdown(payload)
    return payload


@server.tool(name="ping")
async def ping_tool(message: str = Field(description="Message to echo")) -> PingResponse:
    """
    Simple ping tool to echo a message and report indexing status.
    """
    indexed_documents = None
    orchestrator = getattr(server, 'orchestrator', None)
    if orchestrator and orchestrator.vectorizer:
        indexed_documents = len(orchestrator.vectorizer.index)

    return PingResponse(
        status="ok",
        echoed=message,
        analysis_status=_analysis_status(),
        indexed_documents=indexed_documents
    )


@server.tool(name="index_status")
async def index_status() -> StatusResponse:
    """
    Report indexing progress, current file, errors and the estimated time remaining.
    """
    orchestrator = getattr(server, 'orchestrator', None)
    if not orchestrator:
        raise MCPError(5001, "Indexer unavailable", "Start the server with a valid configuration")
    return StatusResponse(status=orchestrator.get_status(), analysis_status=_analysis_status())


@server.tool(name="search_code")
async def search_code(query: str = Field(description="Natural language or code search query"),
                      limit: int = Field(default=10, description="Maximum number of results"),
                      element_type: Optional[str] = Field(default=None, description="Only return elements of this type, e.g. 'function' or 'class'"),
                      language: Optional[str] = Field(default=None, description="Only return elements in this language"),
                      min_similarity: Optional[float] = Field(default=None, description="Minimum cosine similarity (default from config)"),
                      format: str = Field(default="markdown", description="Output format: 'markdown' or 'json'")
                      ) -> SearchResponse:
    """
    Semantic search over indexed code elements.
    """
    if limit < 1:
        raise MCPError(4001, "Invalid parameters", "limit must be positive")
    orchestrator = _require_ready()
    try:
        results = await orchestrator.search_code(query, limit, element_type, language, min_similarity)
    except IndexNotReadyError as e:
        raise MCPError(5002, str(e), "Initial indexing is still running, retry shortly") from e
    return SearchResponse(results=_format_results(results, format), analysis_status=_analysis_status())


@server.tool(name="find_similar_code")
async def find_similar_code(code: str = Field(description="Code snippet to compare against the index"),
                            limit: int = Field(default=10, description="Maximum number of results"),
                            min_similarity: Optional[float] = Field(default=None, description="Minimum cosine similarity (default from config)"),
                            format: str = Field(default="markdown", description="Output format: 'markdown' or 'json'")
                            ) -> SearchResponse:
    """
    Find indexed code that is similar to the given snippet.
    """
    if limit < 1:
        raise MCPError(4001, "Invalid parameters", "limit must be positive")
    if not code.strip():
        raise MCPError(4001, "Invalid parameters", "code must not be empty")
    orchestrator = _require_ready()
    results = await orchestrator.find_similar_code(code, limit, min_similarity)
    return SearchResponse(results=_format_results(results, format), analysis_status=_analysis_status())


@server.tool(name="get_file_dependencies")
async def get_file_dependencies(file_path: str = Field(description="File path, relative to the project root")) -> DependencyResponse:
    """
    List the files a file imports and the files importing it.
    """
    orchestrator = _require_ready()
    node = orchestrator.dependency_graph.get_node(file_path)
    if node is None:
        raise MCPError(4001, f"File not in dependency graph: {file_path}", "Check the path is relative to the project root")
    return DependencyResponse(
        file=_display_path(orchestrator, node.path),
        dependencies=[_display_path(orchestrator, p) for p in orchestrator.get_dependencies(file_path)],
        dependents=[_display_path(orchestrator, p) for p in orchestrator.get_dependents(file_path)],
        analysis_status=_analysis_status(),
    )


@server.tool(name="find_dependency_path")
async def find_dependency_path(from_file: str = Field(description="Importing file"),
                               to_file: str = Field(description="Imported file")) -> PathResponse:
    """
    Shortest import chain from one file to another.
    """
    orchestrator = _require_ready()
    path = orchestrator.find_dependency_path(from_file, to_file)
    return PathResponse(
        found=path is not None,
        path=[_display_path(orchestrator, p) for p in path or []],
        analysis_status=_analysis_status(),
    )


@server.tool(name="analyze_impact")
async def analyze_impact(file_path: str = Field(description="File whose change impact to analyze"),
                         max_depth: Optional[int] = Field(default=None, description="Maximum dependent depth to follow")) -> ImpactResponse:
    """
    Files transitively affected by a change to the given file, with a severity rating.
    """
    if max_depth is not None and max_depth < 1:
        raise MCPError(4001, "Invalid parameters", "max_depth must be positive")
    orchestrator = _require_ready()
    impact = orchestrator.get_impact(file_path, max_depth)
    return ImpactResponse(
        file=_display_path(orchestrator, impact.file),
        impacted_files=[_display_path(orchestrator, p) for p in impact.impacted_files],
        count=impact.count,
        severity=impact.severity.value,
        max_depth=impact.max_depth,
        analysis_status=_analysis_status(),
    )


@server.tool(name="find_circular_dependencies")
async def find_circular_dependencies() -> CyclesResponse:
    """
    Import cycles in the project, each closed with its first file.
    """
    orchestrator = _require_ready()
    cycles = [
        [_display_path(orchestrator, p) for p in cycle]
        for cycle in orchestrator.find_circular_dependencies()
    ]
    return CyclesResponse(cycles=cycles, analysis_status=_analysis_status())


@server.tool(name="dependency_stats")
async def dependency_stats() -> StatsResponse:
    orchestrator = _require_ready()
    stats: Dict[str, Any] = orchestrator.dependency_graph.get_stats()
    stats["circular_dependencies"] = [
        [_display_path(orchestrator, p) for p in cycle] for cycle in stats["circular_dependencies"]
    ]
    return StatsResponse(stats=stats, analysis_status=_analysis_status())


@server.tool(name="reindex_project")
async def reindex_project(force: bool = Field(default=False, description="Re-embed every element even if unchanged")) -> ReindexResponse:
    """
    Rescan the project. Unchanged files are skipped unless force is set.
    """
    orchestrator = _require_ready()
    try:
        if force:
            result = await orchestrator.force_reindex()
        else:
            result = await orchestrator.sync_project()
    except OSError as e:
        raise MCPError(5001, f"Reindex failed: {str(e)}", "Check server logs for details") from e
    return ReindexResponse(
        succeeded=result.succeeded,
        failed=result.failed,
        embedded_elements=result.embedded_elements,
        deleted_files=result.deleted_files,
        errors=[{"file": file, "error": error} for file, error in result.errors],
        analysis_status=_analysis_status(),
    )
