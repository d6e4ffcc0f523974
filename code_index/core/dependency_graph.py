"""
Static file-to-file dependency graph.

Imports are extracted with language-specific patterns and resolved to
absolute paths of project files; anything that does not resolve to an
existing file under the project root (packages, stdlib, typos) is dropped.
Every import edge A -> B is mirrored by A appearing in B's dependents.
"""

import logging
import re
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from code_index.core.models import (
    DependencyEdge,
    DependencyNode,
    EdgeType,
    ImpactAnalysis,
    ImpactSeverity,
    Language,
    language_for_path,
)
from code_index.core.utils import (
    DebouncedSaver,
    atomic_write_json,
    backup_corrupt_file,
    iter_project_files,
    load_json_state,
)

DEFAULT_DEPENDENCY_PATTERNS = [
    "**/*.ts",
    "**/*.tsx",
    "**/*.js",
    "**/*.jsx",
    "**/*.mjs",
    "**/*.cjs",
    "**/*.py",
]

_JS_IMPORT = re.compile(r"""import\s+(?:(?:\{[^}]*\}|\*\s+as\s+\w+|\w+)\s+from\s+)?['"]([^'"]+)['"]""")
_JS_REQUIRE = re.compile(r"""require\s*\(['"]([^'"]+)['"]\)""")
_JS_REEXPORT = re.compile(r"""export\s+(?:\*|\{[^}]*\})\s+from\s+['"]([^'"]+)['"]""")
_JS_NAMED_EXPORT = re.compile(r"export\s+(?:const|let|var|function|class|interface|type|enum)\s+(\w+)")
_JS_DEFAULT_EXPORT = re.compile(r"export\s+default\s+(?:class|function)?\s*(\w+)?")

_PY_FROM_IMPORT = re.compile(r"^\s*from\s+(\.*[\w.]*)\s+import\s+([^#\n]+)", re.MULTILINE)
_PY_IMPORT = re.compile(r"^\s*import\s+([^#\n]+)", re.MULTILINE)
_PY_CLASS = re.compile(r"^class\s+(\w+)", re.MULTILINE)
_PY_DEF = re.compile(r"^(?:async\s+)?def\s+(\w+)", re.MULTILINE)

_TS_EXTENSIONS = [".ts", ".tsx", ".js", ".jsx"]
_JS_EXTENSIONS = [".js", ".jsx", ".mjs", ".cjs"]
# Only these can become graph nodes; imports of anything else are dropped.
_ANALYZABLE_SUFFIXES = frozenset(p.rsplit("*", 1)[-1] for p in DEFAULT_DEPENDENCY_PATTERNS)


def impact_severity(count: int) -> ImpactSeverity:
    if count <= 3:
        return ImpactSeverity.LOW
    if count <= 10:
        return ImpactSeverity.MEDIUM
    if count <= 25:
        return ImpactSeverity.HIGH
    return ImpactSeverity.CRITICAL


class DependencyGraph:
    """
    Owns the dependency nodes and edges for one project.

    ``analyze_project`` rebuilds everything in two passes; ``update_file`` and
    ``delete_file`` keep the graph consistent incrementally.
    """

    def __init__(self, project_root: Path, storage_dir: Path, save_delay: float = 5.0):
        self.project_root = Path(project_root).resolve()
        self.storage_dir = Path(storage_dir)
        self.graph_path = self.storage_dir / "dependency-graph.json"
        self.stats_path = self.storage_dir / "dependency-stats.json"
        self.nodes: Dict[str, DependencyNode] = {}
        self.edges: Dict[Tuple[str, str], DependencyEdge] = {}
        self.timestamp: Optional[float] = None
        # Relative import specifiers that did not resolve yet, per file.
        self._unresolved: Dict[str, Set[str]] = {}
        # Files with an import target that is not a node (yet).
        self._orphaned: Set[str] = set()
        self._lock = threading.RLock()
        self._saver = DebouncedSaver(self.save, save_delay)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.load()

    # --- Persistence ---

    def load(self) -> bool:
        data = load_json_state(self.graph_path, mappings=("nodes",))
        if data is None:
            return False
        try:
            nodes = {path: DependencyNode.from_dict(raw) for path, raw in data.get("nodes", {}).items()}
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logging.warning(f"Dependency graph at {self.graph_path} is malformed: {e}")
            backup_corrupt_file(self.graph_path)
            return False
        with self._lock:
            self.nodes = nodes
            self.timestamp = data.get("timestamp")
            self._rebuild_reverse_edges()
        logging.info(f"Loaded dependency graph with {len(self.nodes)} files from {self.graph_path}")
        return True

    def save(self) -> None:
        with self._lock:
            payload = {
                "nodes": {path: node.to_dict() for path, node in self.nodes.items()},
                "edges": [edge.to_dict() for edge in self.edges.values()],
                "timestamp": self.timestamp,
            }
            atomic_write_json(self.graph_path, payload)

    def flush(self) -> None:
        self._saver.flush()

    def _save_stats(self) -> None:
        with self._lock:
            atomic_write_json(self.stats_path, self.get_stats())

    # --- Extraction ---

    def _key(self, file_path) -> str:
        path = Path(file_path)
        if not path.is_absolute():
            path = self.project_root / path
        return str(path.resolve())

    def _inside_project(self, path: Path) -> bool:
        try:
            path.relative_to(self.project_root)
        except ValueError:
            return False
        return True

    def _existing_file(self, candidate: Path) -> Optional[str]:
        if candidate.suffix.lower() not in _ANALYZABLE_SUFFIXES:
            return None
        if candidate.is_file() and self._inside_project(candidate.resolve()):
            return str(candidate.resolve())
        return None

    def _resolve_js(self, specifier: str, from_dir: Path, language: Language) -> Optional[str]:
        if not specifier.startswith((".", "/")):
            return None
        base = (from_dir / specifier) if specifier.startswith(".") else Path(specifier)
        extensions = _TS_EXTENSIONS if language == Language.TYPESCRIPT else _JS_EXTENSIONS
        found = self._existing_file(base)
        if found:
            return found
        for ext in extensions:
            found = self._existing_file(Path(f"{base}{ext}"))
            if found:
                return found
        for ext in extensions:
            found = self._existing_file(base / f"index{ext}")
            if found:
                return found
        return None

    def _resolve_python_module(self, module: str, from_dir: Path) -> Optional[str]:
        level = len(module) - len(module.lstrip("."))
        parts = [p for p in module.lstrip(".").split(".") if p]
        if level:
            base = from_dir
            for _ in range(level - 1):
                base = base.parent
        else:
            base = self.project_root
        target = base.joinpath(*parts) if parts else base
        if parts:
            found = self._existing_file(target.with_name(target.name + ".py"))
            if found:
                return found
        return self._existing_file(target / "__init__.py")

    def _extract_imports(self, content: str, file_path: Path, language: Language) -> Tuple[List[str], Set[str]]:
        from_dir = file_path.parent
        specifiers: List[str] = []
        resolved: List[str] = []
        unresolved: Set[str] = set()

        if language in (Language.TYPESCRIPT, Language.JAVASCRIPT):
            for regex in (_JS_IMPORT, _JS_REQUIRE, _JS_REEXPORT):
                specifiers.extend(m.group(1) for m in regex.finditer(content))
            for spec in specifiers:
                target = self._resolve_js(spec, from_dir, language)
                if target:
                    resolved.append(target)
                elif spec.startswith("."):
                    unresolved.add(spec)
        elif language == Language.PYTHON:
            for match in _PY_FROM_IMPORT.finditer(content):
                module = match.group(1)
                target = self._resolve_python_module(module, from_dir)
                if target and not target.endswith("__init__.py"):
                    resolved.append(target)
                    continue
                # "from . import x" / "from pkg import mod" may name submodules
                names = [n.strip().split(" as ")[0].strip("() ") for n in match.group(2).split(",")]
                sub_hits = []
                for name in names:
                    if not name or name == "*":
                        continue
                    sub = self._resolve_python_module(f"{module}.{name}" if module.rstrip(".") else f"{module}{name}", from_dir)
                    if sub:
                        sub_hits.append(sub)
                resolved.extend(sub_hits)
                if target and not sub_hits:
                    resolved.append(target)
                if not target and not sub_hits and module.startswith("."):
                    unresolved.add(module)
            for match in _PY_IMPORT.finditer(content):
                for name in match.group(1).split(","):
                    module = name.strip().split(" as ")[0].strip()
                    if not module:
                        continue
                    target = self._resolve_python_module(module, from_dir)
                    if target:
                        resolved.append(target)

        own = str(file_path)
        deduped: List[str] = []
        for target in resolved:
            if target != own and target not in deduped:
                deduped.append(target)
        return deduped, unresolved

    @staticmethod
    def _extract_exports(content: str, language: Language) -> List[str]:
        exports: List[str] = []
        if language in (Language.TYPESCRIPT, Language.JAVASCRIPT):
            exports.extend(m.group(1) for m in _JS_NAMED_EXPORT.finditer(content))
            exports.extend(m.group(1) or "default" for m in _JS_DEFAULT_EXPORT.finditer(content))
        elif language == Language.PYTHON:
            exports.extend(m.group(1) for m in _PY_CLASS.finditer(content))
            exports.extend(m.group(1) for m in _PY_DEF.finditer(content))
        return exports

    def _analyze_file(self, file_path: Path) -> Tuple[DependencyNode, Set[str]]:
        """Read and parse one file. Touches no shared state."""
        content = file_path.read_text(encoding="utf-8", errors="replace")
        language = language_for_path(str(file_path))
        imports, unresolved = self._extract_imports(content, file_path, language)
        node = DependencyNode(
            path=str(file_path),
            language=language,
            imports=imports,
            exports=self._extract_exports(content, language),
        )
        return node, unresolved

    def _record_unresolved(self, key: str, unresolved: Set[str]) -> None:
        # caller holds self._lock
        if unresolved:
            self._unresolved[key] = unresolved
        else:
            self._unresolved.pop(key, None)

    # --- Edge maintenance ---

    def _rebuild_reverse_edges(self) -> None:
        """
        Recompute every dependents list and the edge set from node imports.

        Imports of files that are not nodes are dropped so that every import
        has a matching dependent. The importer is remembered as orphaned and
        relinked if the target becomes a node later.
        """
        for node in self.nodes.values():
            node.dependents = []
        self.edges = {}
        for source, node in self.nodes.items():
            dangling = [target for target in node.imports if target not in self.nodes]
            if dangling:
                node.imports = [target for target in node.imports if target in self.nodes]
                self._orphaned.add(source)
            for target in node.imports:
                target_node = self.nodes[target]
                if source not in target_node.dependents:
                    target_node.dependents.append(source)
                self.edges.setdefault((source, target), DependencyEdge(source, target, EdgeType.IMPORT))

    def _touch(self) -> None:
        self.timestamp = time.time()
        self._saver.schedule()

    # --- Public operations ---

    def analyze_project(self, patterns: Optional[List[str]] = None) -> Dict[str, Any]:
        """Clear and rebuild the whole graph. Returns the resulting stats."""
        files = list(iter_project_files(self.project_root, patterns or DEFAULT_DEPENDENCY_PATTERNS))
        logging.info(f"Analyzing dependencies of {len(files)} files")
        with self._lock:
            self.nodes = {}
            self.edges = {}
            self._unresolved = {}
            self._orphaned = set()
            # First pass: nodes and resolved imports
            for path in files:
                try:
                    node, unresolved = self._analyze_file(path.resolve())
                except OSError as e:
                    logging.warning(f"Failed to analyze dependencies of {path}: {e}")
                    continue
                self.nodes[node.path] = node
                self._record_unresolved(node.path, unresolved)
            # Second pass: edges, once every node exists
            self._rebuild_reverse_edges()
            self.timestamp = time.time()
        stats = self.get_stats()
        self.save()
        self._save_stats()
        logging.info(f"Dependency analysis complete: {stats['total_files']} files, {stats['total_dependencies']} edges")
        return stats

    def update_file(self, file_path) -> Optional[DependencyNode]:
        """Re-analyze one file and reconcile edges. A vanished file is deleted."""
        key = self._key(file_path)
        path = Path(key)
        if not path.is_file():
            self.delete_file(key)
            return None
        try:
            node, unresolved = self._analyze_file(path)
        except OSError as e:
            logging.warning(f"Failed to analyze dependencies of {key}: {e}")
            return None
        with self._lock:
            is_new = key not in self.nodes
            self.nodes[key] = node
            self._record_unresolved(key, unresolved)
            if is_new:
                self._link_pending_importers(key)
            self._rebuild_reverse_edges()
            self._touch()
        return node

    def _link_pending_importers(self, new_path: str) -> None:
        """
        Files whose relative imports did not resolve, or whose target was
        deleted, may now point at ``new_path``.
        """
        for importer, specifiers in list(self._unresolved.items()):
            node = self.nodes.get(importer)
            if node is None:
                continue
            importer_path = Path(importer)
            for spec in list(specifiers):
                if node.language == Language.PYTHON:
                    target = self._resolve_python_module(spec, importer_path.parent)
                else:
                    target = self._resolve_js(spec, importer_path.parent, node.language)
                if target == new_path:
                    if target not in node.imports:
                        node.imports.append(target)
                    specifiers.discard(spec)
            if not specifiers:
                del self._unresolved[importer]
        for importer in list(self._orphaned):
            if importer == new_path or importer not in self.nodes:
                self._orphaned.discard(importer)
                continue
            try:
                refreshed, unresolved = self._analyze_file(Path(importer))
            except OSError:
                continue
            if new_path in refreshed.imports:
                self.nodes[importer] = refreshed
                self._record_unresolved(importer, unresolved)
                self._orphaned.discard(importer)

    def delete_file(self, file_path) -> bool:
        """Remove the node and every edge touching it, in both directions."""
        key = self._key(file_path)
        with self._lock:
            node = self.nodes.pop(key, None)
            if node is None:
                return False
            self._unresolved.pop(key, None)
            self._orphaned.discard(key)
            for other in self.nodes.values():
                if key in other.imports:
                    other.imports.remove(key)
                    self._orphaned.add(other.path)
                if key in other.dependents:
                    other.dependents.remove(key)
            self.edges = {pair: edge for pair, edge in self.edges.items() if key not in pair}
            self._touch()
        return True

    def get_node(self, file_path) -> Optional[DependencyNode]:
        with self._lock:
            return self.nodes.get(self._key(file_path))

    def get_dependents(self, file_path) -> List[str]:
        node = self.get_node(file_path)
        return list(node.dependents) if node else []

    def get_dependencies(self, file_path) -> List[str]:
        node = self.get_node(file_path)
        return list(node.imports) if node else []

    def find_dependency_path(self, from_path, to_path) -> Optional[List[str]]:
        """Shortest import chain from ``from_path`` to ``to_path`` (BFS), or None."""
        start = self._key(from_path)
        goal = self._key(to_path)
        with self._lock:
            if start not in self.nodes or goal not in self.nodes:
                return None
            if start == goal:
                return [start]
            previous: Dict[str, Optional[str]] = {start: None}
            queue = deque([start])
            while queue:
                current = queue.popleft()
                for target in self.nodes[current].imports:
                    if target in previous or target not in self.nodes:
                        continue
                    previous[target] = current
                    if target == goal:
                        chain = [goal]
                        while previous[chain[-1]] is not None:
                            chain.append(previous[chain[-1]])
                        return list(reversed(chain))
                    queue.append(target)
        return None

    def get_impact(self, file_path, max_depth: int = 5) -> ImpactAnalysis:
        """Files transitively depending on ``file_path``, up to ``max_depth`` levels."""
        key = self._key(file_path)
        impacted: List[str] = []
        with self._lock:
            seen = {key}
            frontier = [key]
            depth = 0
            while frontier and depth < max_depth:
                depth += 1
                next_frontier = []
                for current in frontier:
                    node = self.nodes.get(current)
                    if node is None:
                        continue
                    for dependent in node.dependents:
                        if dependent in seen:
                            continue
                        seen.add(dependent)
                        impacted.append(dependent)
                        next_frontier.append(dependent)
                frontier = next_frontier
        return ImpactAnalysis(
            file=key,
            impacted_files=impacted,
            severity=impact_severity(len(impacted)),
            max_depth=max_depth,
        )

    def find_circular_dependencies(self) -> List[List[str]]:
        """
        DFS from every unvisited node with a recursion stack. Each back-edge
        to a node still on the stack records the path from that node,
        closed with the node itself. Rotations of the same cycle found from
        different roots are not merged.
        """
        cycles: List[List[str]] = []
        visited: Set[str] = set()
        on_stack: Set[str] = set()

        with self._lock:
            imports = {path: list(node.imports) for path, node in self.nodes.items()}

        for root in imports:
            if root in visited:
                continue
            # Iterative DFS: (node, iterator over its imports)
            path: List[str] = [root]
            visited.add(root)
            on_stack.add(root)
            stack: List[Tuple[str, Iterable[str]]] = [(root, iter(imports[root]))]
            while stack:
                current, children = stack[-1]
                advanced = False
                for target in children:
                    if target not in imports:
                        continue
                    if target not in visited:
                        visited.add(target)
                        on_stack.add(target)
                        path.append(target)
                        stack.append((target, iter(imports[target])))
                        advanced = True
                        break
                    if target in on_stack:
                        start = path.index(target)
                        cycles.append(path[start:] + [target])
                if not advanced:
                    stack.pop()
                    path.pop()
                    on_stack.discard(current)
        return cycles

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            nodes = list(self.nodes.values())
            edge_count = len(self.edges)
        root = self.project_root

        def _display(path: str) -> str:
            try:
                return Path(path).relative_to(root).as_posix()
            except ValueError:
                return path

        most_dependent = sorted(
            ({"file": _display(n.path), "count": len(n.imports)} for n in nodes),
            key=lambda item: item["count"],
            reverse=True,
        )[:10]
        most_depended_on = sorted(
            ({"file": _display(n.path), "count": len(n.dependents)} for n in nodes),
            key=lambda item: item["count"],
            reverse=True,
        )[:10]
        return {
            "total_files": len(nodes),
            "total_dependencies": edge_count,
            "most_dependent": most_dependent,
            "most_depended_on": most_depended_on,
            "circular_dependencies": self.find_circular_dependencies(),
            "timestamp": self.timestamp,
        }
