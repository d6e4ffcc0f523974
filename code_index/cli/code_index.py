"""
Command line entry point for indexing, searching and dependency queries.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List

from code_index.core.config import IndexerConfig, load_config
from code_index.core.dependency_graph import DEFAULT_DEPENDENCY_PATTERNS, DependencyGraph
from code_index.core.vector_index import SearchResult
from code_index.mcp_server.orchestrator import FileProcessedEvent, IndexOrchestrator


def _add_directory_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "directory",
        nargs='?',
        default=None,
        help="Path to the project. If not provided, uses 'project_root' from config or the current directory.",
    )


def _add_common_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="Path to configuration YAML file (default: codeindex.config.yaml)")
    parser.add_argument("--embedding-provider", choices=["sentence-transformers", "openai"],
                        help="Embedding provider (overrides config)")
    parser.add_argument("--embedding-model",
                        help="Embedding model to use. Shortcuts: 'fast' (all-MiniLM-L6-v2, 384-dim), "
                             "'medium' (all-MiniLM-L12-v2, 384-dim), or 'accurate' (all-mpnet-base-v2, 768-dim). "
                             "Default: 'fast'.")
    parser.add_argument("--verbose", action="store_true", help="Log progress to stderr")


def _resolve_config_and_root(args: argparse.Namespace):
    cli_overrides = {}
    if getattr(args, "directory", None):
        cli_overrides['project_root'] = str(Path(args.directory).resolve())
    if getattr(args, "embedding_provider", None):
        cli_overrides['embedding_provider'] = args.embedding_provider
    if getattr(args, "embedding_model", None):
        cli_overrides['embedding_model'] = args.embedding_model

    config = load_config(config_path=getattr(args, "config", None), cli_args=cli_overrides)
    if not config.project_root:
        config.project_root = str(Path.cwd())
    root_dir = config.require_project_root()
    return config, root_dir


def _load_dependency_graph(config: IndexerConfig, root_dir: Path) -> DependencyGraph:
    graph = DependencyGraph(root_dir, config.dependencies_dir(), save_delay=0)
    if not graph.load():
        print("🔗 No saved dependency graph, analyzing project...", file=sys.stderr)
        graph.analyze_project(DEFAULT_DEPENDENCY_PATTERNS)
    return graph


def _display(root_dir: Path, path: str) -> str:
    try:
        return Path(path).relative_to(root_dir).as_posix()
    except ValueError:
        return path


def _print_results(results: List[SearchResult]) -> None:
    if not results:
        print("   No matching code found. Try a different query or a lower --min-similarity.")
        return
    print(f"\n# Top {len(results)} results:")
    for i, result in enumerate(results, 1):
        meta = result.document.metadata
        print(f"{i}. {meta.get('element_name', 'unknown')} (Similarity: {result.similarity:.3f})")
        print(f"   Type: {meta.get('element_type', '?')} [{meta.get('language', '?')}]")
        print(f"   Location: {meta.get('file_path', 'unknown')}:L{meta.get('start_line', '?')}-{meta.get('end_line', '?')}")
        if meta.get('complexity'):
            print(f"   Complexity: {meta['complexity']}")
        if meta.get('ai_description'):
            print(f"   Description: {meta['ai_description']}")
    print("-" * 20)


def _on_file(event: FileProcessedEvent) -> None:
    mark = "✓" if event.success else "✗"
    suffix = f" ({event.error})" if event.error else ""
    print(f"   {mark} {event.file_path}{suffix}", file=sys.stderr)


async def _index_async(config: IndexerConfig, root_dir: Path, force: bool) -> int:
    orchestrator = IndexOrchestrator(config)
    await orchestrator.initialize(root_dir)
    orchestrator.add_listener(_on_file)
    try:
        print(f"🚀 Indexing {root_dir}")
        result = await (orchestrator.force_reindex() if force else orchestrator.sync_project())
    finally:
        orchestrator.shutdown()
    print(f"\n✅ Indexed {result.succeeded}/{result.total_files} files, "
          f"{result.embedded_elements} elements embedded, {result.deleted_files} removed")
    for file, error in result.errors:
        print(f"   ⚠️  {file}: {error}", file=sys.stderr)
    return 1 if result.failed else 0


def _run_index(args: argparse.Namespace) -> int:
    config, root_dir = _resolve_config_and_root(args)
    if not root_dir.is_dir():
        print(f"❌ Error: {root_dir} is not a valid directory for indexing.", file=sys.stderr)
        return 1
    if args.concurrency:
        config.concurrency = args.concurrency
    return asyncio.run(_index_async(config, root_dir, args.force))


async def _search_async(config: IndexerConfig, root_dir: Path, args: argparse.Namespace) -> int:
    orchestrator = IndexOrchestrator(config)
    await orchestrator.initialize(root_dir)
    try:
        if args.code_file:
            snippet = Path(args.code_file).read_text(encoding="utf-8")
            print(f"\n🔍 Finding code similar to {args.code_file}")
            results = await orchestrator.find_similar_code(snippet, args.limit, args.min_similarity)
        else:
            print(f"\n🔍 Running semantic search for: '{args.query}'")
            results = await orchestrator.search_code(
                args.query, args.limit, args.type, args.language, args.min_similarity
            )
    finally:
        orchestrator.shutdown()
    if args.json:
        print(json.dumps([r.to_dict() for r in results], indent=2, ensure_ascii=False))
    else:
        _print_results(results)
    return 0


def _run_search(args: argparse.Namespace) -> int:
    if not args.query and not args.code_file:
        print("❌ Error: provide --query or --code-file.", file=sys.stderr)
        return 1
    config, root_dir = _resolve_config_and_root(args)
    return asyncio.run(_search_async(config, root_dir, args))


def _run_deps(args: argparse.Namespace) -> int:
    config, root_dir = _resolve_config_and_root(args)
    graph = _load_dependency_graph(config, root_dir)
    node = graph.get_node(args.file)
    if node is None:
        print(f"❌ {args.file} is not in the dependency graph.", file=sys.stderr)
        return 1
    print(f"📦 {_display(root_dir, node.path)}")
    print(f"   Imports ({len(node.imports)}):")
    for path in graph.get_dependencies(args.file):
        print(f"     → {_display(root_dir, path)}")
    print(f"   Imported by ({len(node.dependents)}):")
    for path in graph.get_dependents(args.file):
        print(f"     ← {_display(root_dir, path)}")
    return 0


def _run_path(args: argparse.Namespace) -> int:
    config, root_dir = _resolve_config_and_root(args)
    graph = _load_dependency_graph(config, root_dir)
    path = graph.find_dependency_path(args.source, args.target)
    if path is None:
        print(f"No import path from {args.source} to {args.target}.")
        return 1
    print(" → ".join(_display(root_dir, p) for p in path))
    return 0


def _run_impact(args: argparse.Namespace) -> int:
    config, root_dir = _resolve_config_and_root(args)
    graph = _load_dependency_graph(config, root_dir)
    impact = graph.get_impact(args.file, args.max_depth or config.impact_max_depth)
    print(f"💥 Changing {_display(root_dir, impact.file)} impacts {impact.count} files "
          f"(severity: {impact.severity.value}, depth ≤ {impact.max_depth})")
    for path in impact.impacted_files:
        print(f"   - {_display(root_dir, path)}")
    return 0


def _run_cycles(args: argparse.Namespace) -> int:
    config, root_dir = _resolve_config_and_root(args)
    graph = _load_dependency_graph(config, root_dir)
    cycles = graph.find_circular_dependencies()
    if not cycles:
        print("✅ No circular dependencies found.")
        return 0
    print(f"⚠️  Found {len(cycles)} circular dependencies:")
    for i, cycle in enumerate(cycles, 1):
        print(f"{i}. " + " → ".join(_display(root_dir, p) for p in cycle))
    return 1


def _run_stats(args: argparse.Namespace) -> int:
    config, root_dir = _resolve_config_and_root(args)
    graph = _load_dependency_graph(config, root_dir)
    print(json.dumps(graph.get_stats(), indent=2, ensure_ascii=False))
    return 0


async def _watch_async(config: IndexerConfig, root_dir: Path) -> int:
    orchestrator = IndexOrchestrator(config)
    await orchestrator.initialize(root_dir)
    orchestrator.add_listener(_on_file)
    try:
        await orchestrator.sync_project()
        if not orchestrator.start_watching():
            print("❌ Could not start the file watcher.", file=sys.stderr)
            return 1
        print(f"👀 Watching {root_dir} (Ctrl+C to stop)")
        while True:
            await asyncio.sleep(1)
    finally:
        orchestrator.shutdown()


def _run_watch(args: argparse.Namespace) -> int:
    config, root_dir = _resolve_config_and_root(args)
    try:
        return asyncio.run(_watch_async(config, root_dir))
    except KeyboardInterrupt:
        print("\n👋 Stopped watching")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CodeIndex CLI: incremental indexing, semantic search and dependency analysis."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    index = subparsers.add_parser("index", help="Index (or incrementally update) a project")
    _add_directory_arg(index)
    _add_common_flags(index)
    index.add_argument("--force", action="store_true", help="Re-embed every element even if unchanged.")
    index.add_argument("--concurrency", type=int, help="Files vectorized in parallel (default: 4).")
    index.set_defaults(func=_run_index)

    search = subparsers.add_parser("search", help="Semantic search over the index")
    _add_directory_arg(search)
    _add_common_flags(search)
    search.add_argument("--query", help="Natural language or code query.")
    search.add_argument("--code-file", help="Find code similar to the contents of this file instead.")
    search.add_argument("--limit", type=int, default=10, help="Number of results to return.")
    search.add_argument("--min-similarity", type=float, default=None,
                        help="Minimum similarity threshold (0-1). Uses config defaults if omitted.")
    search.add_argument("--type", help="Only return elements of this type (function, class, ...).")
    search.add_argument("--language", help="Only return elements in this language.")
    search.add_argument("--json", action="store_true", help="Print raw JSON results.")
    search.set_defaults(func=_run_search)

    deps = subparsers.add_parser("deps", help="Show a file's imports and dependents")
    deps.add_argument("file", help="File path relative to the project root")
    _add_directory_arg(deps)
    _add_common_flags(deps)
    deps.set_defaults(func=_run_deps)

    path = subparsers.add_parser("path", help="Shortest import chain between two files")
    path.add_argument("source", help="Importing file")
    path.add_argument("target", help="Imported file")
    _add_directory_arg(path)
    _add_common_flags(path)
    path.set_defaults(func=_run_path)

    impact = subparsers.add_parser("impact", help="Files affected by changing a file")
    impact.add_argument("file", help="File path relative to the project root")
    _add_directory_arg(impact)
    _add_common_flags(impact)
    impact.add_argument("--max-depth", type=int, help="Maximum dependent depth (default: 5).")
    impact.set_defaults(func=_run_impact)

    cycles = subparsers.add_parser("cycles", help="List circular dependencies")
    _add_directory_arg(cycles)
    _add_common_flags(cycles)
    cycles.set_defaults(func=_run_cycles)

    stats = subparsers.add_parser("stats", help="Dependency graph statistics")
    _add_directory_arg(stats)
    _add_common_flags(stats)
    stats.set_defaults(func=_run_stats)

    watch = subparsers.add_parser("watch", help="Index, then keep the index current as files change")
    _add_directory_arg(watch)
    _add_common_flags(watch)
    watch.set_defaults(func=_run_watch)

    return parser


def main():
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING, stream=sys.stderr)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except Exception as e:
        print(f"\n❌ An unexpected error occurred: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc(file=sys.stderr)
        sys.exit(1)

if __name__ == "__main__":
    main()
