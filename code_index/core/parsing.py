"""
Source file parsing.

``parse_file`` turns a path into CodeElements, choosing the parser by file
extension: Tree-sitter adapters for Python and TypeScript/JavaScript, and
regex patterns for the other supported languages.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Pattern

from code_index.core.models import CodeElement, ElementType, Language, language_for_path
from code_index.core.treesitter import parse_source
from code_index.core.treesitter import python_adapter, typescript_adapter


class ParseError(Exception):
    """A single file could not be read or parsed."""

    def __init__(self, file_path: str, reason: str):
        super().__init__(f"Failed to parse {file_path}: {reason}")
        self.file_path = file_path
        self.reason = reason


@dataclass
class RegexPatterns:
    function: Optional[Pattern] = None
    klass: Optional[Pattern] = None
    imports: Optional[Pattern] = None


_REGEX_PATTERNS: Dict[Language, RegexPatterns] = {
    Language.RUBY: RegexPatterns(
        function=re.compile(r"def\s+(\w+)[\s\S]*?\bend\b"),
        klass=re.compile(r"class\s+(\w+)[\s\S]*?\bend\b"),
        imports=re.compile(r"require\s+['\"]([^'\"]+)['\"]"),
    ),
    Language.PHP: RegexPatterns(
        function=re.compile(r"function\s+(\w+)\s*\([^)]*\)\s*\{[^}]*\}"),
        klass=re.compile(r"class\s+(\w+)(?:\s+extends\s+\w+)?(?:\s+implements\s+[\w,\s]+)?\s*\{[\s\S]*?\n\}"),
        imports=re.compile(r"(?:use|require|include)\s+([^;]+);"),
    ),
    Language.CSHARP: RegexPatterns(
        function=re.compile(
            r"(?:public|private|protected|internal|static|virtual|override|async)\s+[\w<>\[\]]+\s+(\w+)\s*\([^)]*\)\s*\{"
        ),
        klass=re.compile(
            r"(?:public|private|protected|internal|abstract|sealed|static)\s+class\s+(\w+)(?:<[^>]+>)?(?:\s*:\s*[^{]+)?\s*\{"
        ),
        imports=re.compile(r"using\s+([^;]+);"),
    ),
    Language.RUST: RegexPatterns(
        function=re.compile(r"(?:pub\s+)?(?:async\s+)?fn\s+(\w+)\s*(?:<[^>]+>)?\s*\([^)]*\)(?:\s*->\s*[^{]+)?\s*\{"),
        klass=re.compile(r"(?:pub\s+)?struct\s+(\w+)(?:<[^>]+>)?\s*[{;(]"),
        imports=re.compile(r"use\s+([^;]+);"),
    ),
    Language.SWIFT: RegexPatterns(
        function=re.compile(r"func\s+(\w+)\s*(?:<[^>]+>)?\s*\([^)]*\)(?:\s*->\s*[^{]+)?\s*\{"),
        klass=re.compile(r"(?:public|private|internal|open|fileprivate)?\s*class\s+(\w+)(?:<[^>]+>)?(?:\s*:\s*[^{]+)?\s*\{"),
        imports=re.compile(r"import\s+(\w+)"),
    ),
    Language.KOTLIN: RegexPatterns(
        function=re.compile(r"fun\s+(\w+)\s*(?:<[^>]+>)?\s*\([^)]*\)(?:\s*:\s*[^{]+)?\s*[={]"),
        klass=re.compile(r"(?:data\s+)?class\s+(\w+)(?:<[^>]+>)?(?:\s*\([^)]*\))?(?:\s*:\s*[^{]+)?\s*\{"),
        imports=re.compile(r"import\s+([^;\n]+)"),
    ),
    Language.JAVA: RegexPatterns(
        function=re.compile(
            r"(?:public|private|protected|static|final|synchronized|abstract)\s+[\w<>\[\],\s]*?\s(\w+)\s*\([^)]*\)\s*(?:throws\s+[\w,\s]+)?\{"
        ),
        klass=re.compile(r"(?:public\s+|abstract\s+|final\s+)*(?:class|interface|enum)\s+(\w+)[^{]*\{"),
        imports=re.compile(r"import\s+(?:static\s+)?([\w.*]+);"),
    ),
    Language.GO: RegexPatterns(
        function=re.compile(r"func\s+(?:\([^)]*\)\s*)?(\w+)\s*\([^)]*\)[^{]*\{"),
        klass=re.compile(r"type\s+(\w+)\s+(?:struct|interface)\s*\{"),
        imports=re.compile(r"import\s+(?:\w+\s+)?\"([^\"]+)\""),
    ),
    Language.C: RegexPatterns(
        function=re.compile(r"^[\w\*\s]+?\b(\w+)\s*\([^;{)]*\)\s*\{", re.MULTILINE),
        klass=re.compile(r"struct\s+(\w+)\s*\{"),
        imports=re.compile(r"#include\s+[<\"]([^>\"]+)[>\"]"),
    ),
    Language.CPP: RegexPatterns(
        function=re.compile(r"^[\w\*&:<>\s]+?\b(\w+)\s*\([^;{)]*\)\s*(?:const\s*)?\{", re.MULTILINE),
        klass=re.compile(r"(?:class|struct)\s+(\w+)[^;{]*\{"),
        imports=re.compile(r"#include\s+[<\"]([^>\"]+)[>\"]"),
    ),
}

_CONTROL_FLOW = re.compile(r"\b(?:if|for|while|case|catch|and|or)\b|&&|\|\||\?\s*:")


def calculate_complexity(content: str) -> int:
    return 1 + len(_CONTROL_FLOW.findall(content))


def _line_number(content: str, offset: int) -> int:
    return content.count("\n", 0, offset) + 1


def parse_with_regex(content: str, file_path: str, language: Language) -> List[CodeElement]:
    patterns = _REGEX_PATTERNS.get(language)
    if patterns is None:
        return []
    elements: List[CodeElement] = []
    for element_type, pattern in (
        (ElementType.IMPORT, patterns.imports),
        (ElementType.FUNCTION, patterns.function),
        (ElementType.CLASS, patterns.klass),
    ):
        if pattern is None:
            continue
        for match in pattern.finditer(content):
            text = match.group(0)
            start_line = _line_number(content, match.start())
            elements.append(CodeElement(
                type=element_type,
                name=match.group(1).strip(),
                content=text,
                start_line=start_line,
                end_line=start_line + text.count("\n"),
                file_path=file_path,
                language=language,
                imports=[match.group(1).strip()] if element_type == ElementType.IMPORT else [],
                complexity=None if element_type == ElementType.IMPORT else calculate_complexity(text),
            ))
    return elements


def supports_file(file_path: str) -> bool:
    language = language_for_path(file_path)
    return language in {Language.PYTHON, Language.TYPESCRIPT, Language.JAVASCRIPT} or language in _REGEX_PATTERNS


def parse_file(file_path) -> List[CodeElement]:
    """
    Parse one file into CodeElements.

    Raises ParseError when the file cannot be read or decoded. Files in
    unsupported languages yield no elements.
    """
    path = Path(file_path)
    language = language_for_path(str(path))
    try:
        source = path.read_bytes()
    except OSError as e:
        raise ParseError(str(path), str(e)) from e

    if language == Language.PYTHON:
        tree = parse_source(source, "python")
        return python_adapter.extract_elements(tree, source, str(path))
    if language in {Language.TYPESCRIPT, Language.JAVASCRIPT}:
        grammar = "typescript" if path.suffix.lower() == ".ts" else "tsx"
        tree = parse_source(source, grammar)
        return typescript_adapter.extract_elements(tree, source, str(path), language)

    try:
        content = source.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(str(path), f"not valid UTF-8: {e}") from e
    if language not in _REGEX_PATTERNS:
        logging.debug(f"No parser for {path}, skipping")
    return parse_with_regex(content, str(path), language)
