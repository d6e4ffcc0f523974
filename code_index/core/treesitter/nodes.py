"""
Small helpers for walking Tree-sitter nodes.
"""

from typing import Iterator, Optional, Tuple

from tree_sitter import Node


def node_text(source: bytes, node: Optional[Node]) -> str:
    if not node:
        return ""
    return source[node.start_byte:node.end_byte].decode("utf-8", errors="replace")


def line_span(node: Node) -> Tuple[int, int]:
    return node.start_point[0] + 1, node.end_point[0] + 1


def walk(node: Node) -> Iterator[Node]:
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def count_nodes(node: Node, node_types) -> int:
    return sum(1 for child in walk(node) if child.type in node_types)


def strip_quotes(text: str) -> str:
    if len(text) >= 2 and text[0] in "\"'`" and text[-1] == text[0]:
        return text[1:-1]
    return text
