"""
Core data models for the incremental code index.

Pure data structures: parsed code elements, vector documents, file tracking
entries and dependency graph records. Kinds that were open strings in older
designs are closed enumerations here.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class ElementType(str, Enum):
    FUNCTION = "function"
    METHOD = "method"
    CLASS = "class"
    INTERFACE = "interface"
    ENUM = "enum"
    IMPORT = "import"
    EXPORT = "export"
    VARIABLE = "variable"


class DocumentType(str, Enum):
    CODE_FUNCTION = "code-function"
    CODE_CLASS = "code-class"
    CODE_IMPORT = "code-import"
    CODE_BLOCK = "code-block"


class Language(str, Enum):
    TYPESCRIPT = "typescript"
    JAVASCRIPT = "javascript"
    PYTHON = "python"
    JAVA = "java"
    GO = "go"
    C = "c"
    CPP = "cpp"
    RUST = "rust"
    SWIFT = "swift"
    KOTLIN = "kotlin"
    RUBY = "ruby"
    PHP = "php"
    CSHARP = "csharp"
    UNKNOWN = "unknown"


class ChangeType(str, Enum):
    ADD = "add"
    CHANGE = "change"
    REMOVE = "remove"


class EdgeType(str, Enum):
    IMPORT = "import"
    EXPORT = "export"


class ImpactSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IndexPhase(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    SCANNING = "scanning"
    VECTORIZING = "vectorizing"
    WATCHING = "watching"


_DOCUMENT_TYPES: Dict[ElementType, DocumentType] = {
    ElementType.FUNCTION: DocumentType.CODE_FUNCTION,
    ElementType.METHOD: DocumentType.CODE_FUNCTION,
    ElementType.CLASS: DocumentType.CODE_CLASS,
    ElementType.INTERFACE: DocumentType.CODE_CLASS,
    ElementType.ENUM: DocumentType.CODE_CLASS,
    ElementType.IMPORT: DocumentType.CODE_IMPORT,
    ElementType.EXPORT: DocumentType.CODE_IMPORT,
    ElementType.VARIABLE: DocumentType.CODE_BLOCK,
}

_EXTENSION_LANGUAGES: Dict[str, Language] = {
    ".ts": Language.TYPESCRIPT,
    ".tsx": Language.TYPESCRIPT,
    ".js": Language.JAVASCRIPT,
    ".jsx": Language.JAVASCRIPT,
    ".mjs": Language.JAVASCRIPT,
    ".cjs": Language.JAVASCRIPT,
    ".py": Language.PYTHON,
    ".pyw": Language.PYTHON,
    ".java": Language.JAVA,
    ".go": Language.GO,
    ".c": Language.C,
    ".h": Language.C,
    ".cpp": Language.CPP,
    ".cc": Language.CPP,
    ".cxx": Language.CPP,
    ".hpp": Language.CPP,
    ".rs": Language.RUST,
    ".swift": Language.SWIFT,
    ".kt": Language.KOTLIN,
    ".rb": Language.RUBY,
    ".php": Language.PHP,
    ".cs": Language.CSHARP,
}


def document_type_for(element_type: ElementType) -> DocumentType:
    return _DOCUMENT_TYPES[element_type]


def language_for_path(file_path: str) -> Language:
    """Language of a file, decided by its extension alone."""
    return _EXTENSION_LANGUAGES.get(Path(file_path).suffix.lower(), Language.UNKNOWN)


@dataclass
class Parameter:
    name: str
    type: Optional[str] = None


@dataclass(frozen=True)
class CodeElement:
    """A structural unit of a source file as produced by the parser."""
    type: ElementType
    name: str
    content: str
    start_line: int
    end_line: int
    file_path: str = ""
    language: Language = Language.UNKNOWN
    parameters: List[Parameter] = field(default_factory=list)
    return_type: Optional[str] = None
    doc_comment: Optional[str] = None
    modifiers: List[str] = field(default_factory=list)
    imports: List[str] = field(default_factory=list)
    exports: List[str] = field(default_factory=list)
    complexity: Optional[int] = None

    @property
    def key(self) -> str:
        """Identity of the element within its file: ``type:name:startLine``."""
        return f"{self.type.value}:{self.name}:{self.start_line}"


@dataclass
class VectorDocument:
    id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: List[float] = field(default_factory=list)

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        data = {"id": self.id, "content": self.content, "metadata": self.metadata}
        if include_embedding:
            data["embedding"] = list(self.embedding)
        return data


@dataclass
class FileTrackingEntry:
    file_hash: str
    last_modified: float
    last_checked: float
    file_size: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileTrackingEntry":
        return cls(
            file_hash=data["file_hash"],
            last_modified=float(data["last_modified"]),
            last_checked=float(data["last_checked"]),
            file_size=int(data["file_size"]),
        )


@dataclass
class DependencyNode:
    path: str
    language: Language
    imports: List[str] = field(default_factory=list)
    exports: List[str] = field(default_factory=list)
    dependents: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "language": self.language.value,
            "imports": list(self.imports),
            "exports": list(self.exports),
            "dependents": list(self.dependents),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DependencyNode":
        return cls(
            path=data["path"],
            language=Language(data.get("language", Language.UNKNOWN.value)),
            imports=list(data.get("imports", [])),
            exports=list(data.get("exports", [])),
            dependents=list(data.get("dependents", [])),
        )


@dataclass(frozen=True)
class DependencyEdge:
    source: str
    target: str
    type: EdgeType = EdgeType.IMPORT

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "target": self.target, "type": self.type.value}


@dataclass
class ImpactAnalysis:
    file: str
    impacted_files: List[str]
    severity: ImpactSeverity
    max_depth: int

    @property
    def count(self) -> int:
        return len(self.impacted_files)


@dataclass
class FileChangeEvent:
    type: ChangeType
    path: str
    timestamp: float
