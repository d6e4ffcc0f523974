import pytest

from code_index.core.models import ElementType, Language
from code_index.core.parsing import ParseError, calculate_complexity, parse_file, supports_file

PYTHON_SOURCE = '''import os
from typing import List


class Base:
    pass


@dataclass
class User(Base):
    """A registered user."""

    def greet(self, name: str, loud=False) -> str:
        """Say hello."""
        if loud:
            return name.upper()
        return name

    async def _load(self):
        pass


@cache
def helper(x, *args, **kwargs):
    return x
'''

TYPESCRIPT_SOURCE = '''import { readFile } from 'fs';
import { Config } from './config';

/** Adds two numbers. */
export function add(a: number, b?: number): number {
  return b ? a + b : a;
}

export interface Shape {
  area(): number;
}

export enum Color { Red, Green }

export class Circle {
  constructor(radius: number) {}

  area(): number {
    return 1;
  }
}

const LIMIT: number = 5;
const double = (x: number) => x * 2;
export { double };
'''

GO_SOURCE = '''package main

import "fmt"

func Add(a int, b int) int {
	return a + b
}

type Point struct {
	X int
}
'''


def by_name(elements):
    return {e.name: e for e in elements}


@pytest.fixture
def python_elements(tmp_path):
    path = tmp_path / "users.py"
    path.write_text(PYTHON_SOURCE, encoding="utf-8")
    return by_name(parse_file(path))


@pytest.fixture
def typescript_elements(tmp_path):
    path = tmp_path / "shapes.ts"
    path.write_text(TYPESCRIPT_SOURCE, encoding="utf-8")
    return parse_file(path)


class TestPythonParsing:
    def test_imports(self, python_elements):
        assert python_elements["os"].type == ElementType.IMPORT
        assert python_elements["typing"].imports == ["typing"]

    def test_classes(self, python_elements):
        user = python_elements["User"]
        assert user.type == ElementType.CLASS
        assert user.doc_comment == "A registered user."
        assert user.modifiers == ["@dataclass", "extends Base"]
        assert user.exports == ["User"]
        assert user.language == Language.PYTHON

    def test_methods_are_qualified_by_class(self, python_elements):
        greet = python_elements["User.greet"]

        assert greet.type == ElementType.METHOD
        assert [p.name for p in greet.parameters] == ["self", "name", "loud"]
        assert greet.parameters[1].type == "str"
        assert greet.return_type == "str"
        assert greet.doc_comment == "Say hello."
        assert greet.complexity == 2
        assert greet.start_line == 13

    def test_async_private_method(self, python_elements):
        load = python_elements["User._load"]
        assert load.modifiers == ["async", "private"]

    def test_decorated_function(self, python_elements):
        helper = python_elements["helper"]

        assert helper.type == ElementType.FUNCTION
        assert helper.modifiers == ["@cache"]
        assert [p.name for p in helper.parameters] == ["x", "*args", "**kwargs"]
        assert helper.complexity == 1


class TestTypeScriptParsing:
    def test_imports(self, typescript_elements):
        imports = [e for e in typescript_elements if e.type == ElementType.IMPORT]
        assert [e.name for e in imports] == ["fs", "./config"]
        assert imports[1].imports == ["./config"]

    def test_exported_function(self, typescript_elements):
        add = by_name(typescript_elements)["add"]

        assert add.type == ElementType.FUNCTION
        assert add.language == Language.TYPESCRIPT
        assert add.modifiers == ["export"]
        assert add.exports == ["add"]
        assert add.doc_comment == "/** Adds two numbers. */"
        assert [(p.name, p.type) for p in add.parameters] == [("a", "number"), ("b?", "number")]
        assert add.return_type == "number"
        assert add.complexity == 2

    def test_interface_enum_and_class(self, typescript_elements):
        elements = by_name(typescript_elements)

        assert elements["Shape"].type == ElementType.INTERFACE
        assert elements["Color"].type == ElementType.ENUM
        assert elements["Circle"].type == ElementType.CLASS
        assert elements["Circle.area"].type == ElementType.METHOD
        assert elements["Circle.constructor"].type == ElementType.METHOD

    def test_variables_and_arrow_functions(self, typescript_elements):
        elements = by_name(typescript_elements)

        limit = elements["LIMIT"]
        assert limit.type == ElementType.VARIABLE
        assert limit.modifiers == ["const"]
        assert limit.return_type == "number"

        double = elements["double"]
        assert double.type == ElementType.FUNCTION
        assert [p.name for p in double.parameters] == ["x"]

    def test_export_clause(self, typescript_elements):
        exports = [e for e in typescript_elements if e.type == ElementType.EXPORT]
        assert len(exports) == 1
        assert exports[0].exports == ["double"]

    def test_javascript_uses_tsx_grammar(self, tmp_path):
        path = tmp_path / "view.jsx"
        path.write_text("export function View() {\n  return <div />;\n}\n", encoding="utf-8")

        elements = parse_file(path)

        assert [(e.type, e.name) for e in elements] == [(ElementType.FUNCTION, "View")]
        assert elements[0].language == Language.JAVASCRIPT


class TestRegexParsing:
    def test_go_elements(self, tmp_path):
        path = tmp_path / "main.go"
        path.write_text(GO_SOURCE, encoding="utf-8")

        elements = parse_file(path)

        assert [(e.type, e.name) for e in elements] == [
            (ElementType.IMPORT, "fmt"),
            (ElementType.FUNCTION, "Add"),
            (ElementType.CLASS, "Point"),
        ]
        assert elements[1].start_line == 5
        assert elements[1].language == Language.GO

    def test_unsupported_language_yields_nothing(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("def not_code():\n", encoding="utf-8")
        assert parse_file(path) == []

    def test_invalid_utf8_raises(self, tmp_path):
        path = tmp_path / "bad.go"
        path.write_bytes(b"func \xff\xfe() {}")
        with pytest.raises(ParseError):
            parse_file(path)


def test_missing_file_raises_parse_error(tmp_path):
    with pytest.raises(ParseError) as exc_info:
        parse_file(tmp_path / "missing.py")
    assert exc_info.value.file_path.endswith("missing.py")


@pytest.mark.parametrize("content,expected", [
    ("return x", 1),
    ("if a and b: pass", 3),
    ("a && b || c", 3),
    ("for x in y:\n    while z: pass", 3),
])
def test_calculate_complexity(content, expected):
    assert calculate_complexity(content) == expected


@pytest.mark.parametrize("path,expected", [
    ("a.py", True),
    ("a.tsx", True),
    ("a.go", True),
    ("a.rs", True),
    ("a.txt", False),
])
def test_supports_file(path, expected):
    assert supports_file(path) is expected
