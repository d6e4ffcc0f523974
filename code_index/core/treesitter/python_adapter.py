"""
Tree-sitter adapter for Python source.

Produces CodeElement objects (functions, methods, classes, imports) from
Tree-sitter nodes.
"""

from __future__ import annotations

from typing import List, Optional

from tree_sitter import Node, Tree

from ..models import CodeElement, ElementType, Language, Parameter
from .nodes import count_nodes, line_span, node_text

_BRANCH_NODES = {
    "if_statement",
    "elif_clause",
    "for_statement",
    "while_statement",
    "except_clause",
    "boolean_operator",
    "conditional_expression",
    "case_clause",
    "for_in_clause",
}


def extract_elements(tree: Tree, source: bytes, file_path: str) -> List[CodeElement]:
    elements: List[CodeElement] = []
    _walk_module(tree.root_node, source, file_path, elements, current_class=None)
    return elements


def _walk_module(
    node: Node,
    source: bytes,
    file_path: str,
    elements: List[CodeElement],
    current_class: Optional[str],
    decorators: Optional[List[str]] = None,
) -> None:
    for child in node.children:
        if child.type == "decorated_definition":
            names = [
                node_text(source, d).lstrip("@").split("(")[0].strip()
                for d in child.named_children if d.type == "decorator"
            ]
            _walk_module(child, source, file_path, elements, current_class, decorators=names)
        elif child.type == "function_definition":
            elements.append(_build_function(child, source, file_path, current_class, decorators or []))
            # Nested functions
            body = child.child_by_field_name("body")
            if body:
                _walk_module(body, source, file_path, elements, current_class=None)
        elif child.type == "class_definition":
            class_element = _build_class(child, source, file_path, decorators or [])
            elements.append(class_element)
            body = child.child_by_field_name("body")
            if body:
                _walk_module(body, source, file_path, elements, current_class=class_element.name)
        elif child.type in {"import_statement", "import_from_statement"} and current_class is None:
            elements.append(_build_import(child, source, file_path))
        elif child.type in {"block", "if_statement", "try_statement", "with_statement", "else_clause",
                            "except_clause", "finally_clause", "elif_clause"}:
            _walk_module(child, source, file_path, elements, current_class)


def _build_function(
    node: Node,
    source: bytes,
    file_path: str,
    class_name: Optional[str],
    decorators: List[str],
) -> CodeElement:
    name_node = node.child_by_field_name("name")
    name = node_text(source, name_node) or "<anonymous>"
    start_line, end_line = line_span(node)
    return_node = node.child_by_field_name("return_type")

    modifiers = [f"@{d}" for d in decorators]
    if any(c.type == "async" for c in node.children):
        modifiers.insert(0, "async")
    if "staticmethod" in decorators:
        modifiers.append("static")
    if name.startswith("_") and not name.startswith("__"):
        modifiers.append("private")

    return CodeElement(
        type=ElementType.METHOD if class_name else ElementType.FUNCTION,
        name=f"{class_name}.{name}" if class_name else name,
        content=node_text(source, node),
        start_line=start_line,
        end_line=end_line,
        file_path=file_path,
        language=Language.PYTHON,
        parameters=_extract_parameters(node, source),
        return_type=node_text(source, return_node) or None,
        doc_comment=_extract_docstring(node, source),
        modifiers=modifiers,
        complexity=1 + count_nodes(node, _BRANCH_NODES),
    )


def _build_class(node: Node, source: bytes, file_path: str, decorators: List[str]) -> CodeElement:
    name_node = node.child_by_field_name("name")
    name = node_text(source, name_node) or "<anonymous>"
    start_line, end_line = line_span(node)
    bases = node.child_by_field_name("superclasses")
    modifiers = [f"@{d}" for d in decorators]
    if bases:
        modifiers.extend(
            f"extends {node_text(source, b)}" for b in bases.named_children if b.type != "keyword_argument"
        )
    return CodeElement(
        type=ElementType.CLASS,
        name=name,
        content=node_text(source, node),
        start_line=start_line,
        end_line=end_line,
        file_path=file_path,
        language=Language.PYTHON,
        doc_comment=_extract_docstring(node, source),
        modifiers=modifiers,
        exports=[name] if not name.startswith("_") else [],
        complexity=1 + count_nodes(node, _BRANCH_NODES),
    )


def _build_import(node: Node, source: bytes, file_path: str) -> CodeElement:
    start_line, end_line = line_span(node)
    if node.type == "import_from_statement":
        module_node = node.child_by_field_name("module_name")
        modules = [node_text(source, module_node)]
    else:
        modules = []
        for child in node.named_children:
            if child.type == "aliased_import":
                child = child.child_by_field_name("name")
            modules.append(node_text(source, child))
    name = ", ".join(m for m in modules if m) or node_text(source, node)
    return CodeElement(
        type=ElementType.IMPORT,
        name=name,
        content=node_text(source, node),
        start_line=start_line,
        end_line=end_line,
        file_path=file_path,
        language=Language.PYTHON,
        imports=[m for m in modules if m],
    )


def _extract_parameters(node: Node, source: bytes) -> List[Parameter]:
    params_node = node.child_by_field_name("parameters")
    if not params_node:
        return []
    params: List[Parameter] = []
    for child in params_node.named_children:
        if child.type == "identifier":
            params.append(Parameter(name=node_text(source, child)))
        elif child.type in {"default_parameter", "typed_default_parameter"}:
            type_node = child.child_by_field_name("type")
            params.append(Parameter(
                name=node_text(source, child.child_by_field_name("name")),
                type=node_text(source, type_node) or None,
            ))
        elif child.type == "typed_parameter":
            type_node = child.child_by_field_name("type")
            name_node = next((c for c in child.named_children if c != type_node), None)
            params.append(Parameter(name=node_text(source, name_node), type=node_text(source, type_node) or None))
        elif child.type in {"list_splat_pattern", "dictionary_splat_pattern"}:
            params.append(Parameter(name=node_text(source, child)))
    return params


def _extract_docstring(node: Node, source: bytes) -> Optional[str]:
    body = node.child_by_field_name("body")
    if not body or not body.named_children:
        return None
    first = body.named_children[0]
    if first.type != "expression_statement" or not first.named_children:
        return None
    string_node = first.named_children[0]
    if string_node.type != "string":
        return None
    text = node_text(source, string_node)
    for quote in ('"""', "'''", '"', "'"):
        if text.startswith(quote) and text.endswith(quote) and len(text) >= 2 * len(quote):
            return text[len(quote):-len(quote)].strip()
    return text.strip()
