"""
Tree-sitter adapter for TypeScript / JavaScript source.

Produces CodeElement objects (functions, arrow functions bound to
variables, classes, methods, interfaces, enums, imports, exports and
top-level variables) from Tree-sitter nodes.
"""

from __future__ import annotations

from typing import List, Optional

from tree_sitter import Node, Tree

from ..models import CodeElement, ElementType, Language, Parameter
from .nodes import count_nodes, line_span, node_text, strip_quotes

_BRANCH_NODES = {
    "if_statement",
    "for_statement",
    "for_in_statement",
    "while_statement",
    "do_statement",
    "switch_case",
    "catch_clause",
    "ternary_expression",
    "&&",
    "||",
    "??",
}

_FUNCTION_VALUES = {"arrow_function", "function_expression", "function"}
_MODIFIER_TOKENS = {"static", "async", "readonly", "abstract", "override", "get", "set"}


def extract_elements(tree: Tree, source: bytes, file_path: str, language: Language) -> List[CodeElement]:
    elements: List[CodeElement] = []
    for child in tree.root_node.named_children:
        _visit_top_level(child, source, file_path, language, elements, exported=False, doc_node=child)
    return elements


def _visit_top_level(
    node: Node,
    source: bytes,
    file_path: str,
    language: Language,
    elements: List[CodeElement],
    exported: bool,
    doc_node: Node,
) -> None:
    if node.type == "import_statement":
        elements.append(_build_import(node, source, file_path, language))
    elif node.type == "export_statement":
        _visit_export(node, source, file_path, language, elements)
    elif node.type in {"function_declaration", "generator_function_declaration"}:
        elements.append(_build_function(node, source, file_path, language, exported, doc_node))
    elif node.type in {"class_declaration", "abstract_class_declaration", "class"}:
        _build_class(node, source, file_path, language, elements, exported, doc_node)
    elif node.type == "interface_declaration":
        elements.append(_build_named(node, ElementType.INTERFACE, source, file_path, language, exported, doc_node))
    elif node.type == "enum_declaration":
        elements.append(_build_named(node, ElementType.ENUM, source, file_path, language, exported, doc_node))
    elif node.type in {"lexical_declaration", "variable_declaration"}:
        _build_variables(node, source, file_path, language, elements, exported, doc_node)


def _visit_export(node: Node, source: bytes, file_path: str, language: Language, elements: List[CodeElement]) -> None:
    declaration = node.child_by_field_name("declaration")
    if declaration is not None:
        _visit_top_level(declaration, source, file_path, language, elements, exported=True, doc_node=node)
        return

    value = node.child_by_field_name("value")
    if value is not None and value.type in {"class", "function_expression", "function", "arrow_function"}:
        # export default class/function
        if value.type == "class":
            _build_class(value, source, file_path, language, elements, True, node, default_name="default")
        else:
            elements.append(_build_function(value, source, file_path, language, True, node, default_name="default"))
        return

    names: List[str] = []
    for child in node.named_children:
        if child.type == "export_clause":
            for spec in child.named_children:
                if spec.type == "export_specifier":
                    alias = spec.child_by_field_name("alias")
                    names.append(node_text(source, alias or spec.child_by_field_name("name")))
    if value is not None and not names:
        names.append("default")
    source_node = node.child_by_field_name("source")
    start_line, end_line = line_span(node)
    elements.append(CodeElement(
        type=ElementType.EXPORT,
        name=", ".join(names) or node_text(source, node),
        content=node_text(source, node),
        start_line=start_line,
        end_line=end_line,
        file_path=file_path,
        language=language,
        imports=[strip_quotes(node_text(source, source_node))] if source_node else [],
        exports=names,
    ))


def _build_import(node: Node, source: bytes, file_path: str, language: Language) -> CodeElement:
    source_node = node.child_by_field_name("source")
    module = strip_quotes(node_text(source, source_node))
    start_line, end_line = line_span(node)
    return CodeElement(
        type=ElementType.IMPORT,
        name=module or node_text(source, node),
        content=node_text(source, node),
        start_line=start_line,
        end_line=end_line,
        file_path=file_path,
        language=language,
        imports=[module] if module else [],
    )


def _build_function(
    node: Node,
    source: bytes,
    file_path: str,
    language: Language,
    exported: bool,
    doc_node: Node,
    name: Optional[str] = None,
    default_name: str = "<anonymous>",
    class_name: Optional[str] = None,
    content_node: Optional[Node] = None,
) -> CodeElement:
    if name is None:
        name_node = node.child_by_field_name("name")
        name = node_text(source, name_node) or default_name
    outer = content_node or node
    start_line, end_line = line_span(outer)
    modifiers = _extract_modifiers(outer, source)
    if node is not outer:
        modifiers.extend(m for m in _extract_modifiers(node, source) if m not in modifiers)
    if exported:
        modifiers.insert(0, "export")
    return CodeElement(
        type=ElementType.METHOD if class_name else ElementType.FUNCTION,
        name=f"{class_name}.{name}" if class_name else name,
        content=node_text(source, outer),
        start_line=start_line,
        end_line=end_line,
        file_path=file_path,
        language=language,
        parameters=_extract_parameters(node, source),
        return_type=_extract_return_type(node, source),
        doc_comment=_extract_jsdoc(doc_node, source),
        modifiers=modifiers,
        exports=[name] if exported and not class_name else [],
        complexity=1 + count_nodes(node, _BRANCH_NODES),
    )


def _build_class(
    node: Node,
    source: bytes,
    file_path: str,
    language: Language,
    elements: List[CodeElement],
    exported: bool,
    doc_node: Node,
    default_name: str = "<anonymous>",
) -> None:
    class_element = _build_named(node, ElementType.CLASS, source, file_path, language, exported, doc_node, default_name)
    elements.append(class_element)
    body = node.child_by_field_name("body")
    if not body:
        return
    for child in body.named_children:
        if child.type == "method_definition":
            elements.append(_build_function(
                child, source, file_path, language, False, child, class_name=class_element.name,
            ))
        elif child.type in {"public_field_definition", "field_definition"}:
            value = child.child_by_field_name("value")
            if value is not None and value.type in _FUNCTION_VALUES:
                name_node = child.child_by_field_name("name") or child.child_by_field_name("property")
                elements.append(_build_function(
                    value, source, file_path, language, False, child,
                    name=node_text(source, name_node), class_name=class_element.name, content_node=child,
                ))


def _build_named(
    node: Node,
    element_type: ElementType,
    source: bytes,
    file_path: str,
    language: Language,
    exported: bool,
    doc_node: Node,
    default_name: str = "<anonymous>",
) -> CodeElement:
    name_node = node.child_by_field_name("name")
    name = node_text(source, name_node) or default_name
    start_line, end_line = line_span(node)
    modifiers = _extract_modifiers(node, source)
    if node.type == "abstract_class_declaration":
        modifiers.append("abstract")
    if exported:
        modifiers.insert(0, "export")
    return CodeElement(
        type=element_type,
        name=name,
        content=node_text(source, node),
        start_line=start_line,
        end_line=end_line,
        file_path=file_path,
        language=language,
        doc_comment=_extract_jsdoc(doc_node, source),
        modifiers=modifiers,
        exports=[name] if exported else [],
        complexity=1 + count_nodes(node, _BRANCH_NODES) if element_type == ElementType.CLASS else None,
    )


def _build_variables(
    node: Node,
    source: bytes,
    file_path: str,
    language: Language,
    elements: List[CodeElement],
    exported: bool,
    doc_node: Node,
) -> None:
    for declarator in node.named_children:
        if declarator.type != "variable_declarator":
            continue
        name_node = declarator.child_by_field_name("name")
        value = declarator.child_by_field_name("value")
        name = node_text(source, name_node) or "<anonymous>"
        if value is not None and value.type in _FUNCTION_VALUES:
            elements.append(_build_function(
                value, source, file_path, language, exported, doc_node, name=name, content_node=declarator,
            ))
            continue
        start_line, end_line = line_span(declarator)
        modifiers = ["export"] if exported else []
        kind = node.children[0].type if node.children else ""
        if kind in {"const", "let", "var"}:
            modifiers.append(kind)
        type_node = declarator.child_by_field_name("type")
        elements.append(CodeElement(
            type=ElementType.VARIABLE,
            name=name,
            content=node_text(source, declarator),
            start_line=start_line,
            end_line=end_line,
            file_path=file_path,
            language=language,
            return_type=_strip_annotation(node_text(source, type_node)) or None,
            doc_comment=_extract_jsdoc(doc_node, source),
            modifiers=modifiers,
            exports=[name] if exported else [],
        ))


def _extract_parameters(node: Node, source: bytes) -> List[Parameter]:
    params_node = node.child_by_field_name("parameters")
    if not params_node:
        # Single bare parameter arrow function: x => x * 2
        single = node.child_by_field_name("parameter")
        return [Parameter(name=node_text(source, single))] if single else []
    params: List[Parameter] = []
    for child in params_node.named_children:
        if child.type in {"required_parameter", "optional_parameter"}:
            pattern = child.child_by_field_name("pattern")
            type_node = child.child_by_field_name("type")
            name = node_text(source, pattern)
            if child.type == "optional_parameter":
                name += "?"
            params.append(Parameter(name=name, type=_strip_annotation(node_text(source, type_node)) or None))
        elif child.type in {"identifier", "rest_pattern", "assignment_pattern", "object_pattern", "array_pattern"}:
            params.append(Parameter(name=node_text(source, child)))
    return params


def _extract_return_type(node: Node, source: bytes) -> Optional[str]:
    return_node = node.child_by_field_name("return_type")
    return _strip_annotation(node_text(source, return_node)) or None


def _strip_annotation(text: str) -> str:
    return text[1:].strip() if text.startswith(":") else text.strip()


def _extract_modifiers(node: Node, source: bytes) -> List[str]:
    modifiers: List[str] = []
    for child in node.children:
        if child.type == "accessibility_modifier":
            modifiers.append(node_text(source, child))
        elif child.type in _MODIFIER_TOKENS and not child.is_named:
            modifiers.append(child.type)
        elif child.type == "decorator":
            modifiers.append(node_text(source, child).split("(")[0])
    return modifiers


def _extract_jsdoc(node: Node, source: bytes) -> Optional[str]:
    prev = node.prev_named_sibling
    if prev and prev.type == "comment":
        text = node_text(source, prev)
        if text.startswith("/**"):
            return text
    return None
