import json

import pytest

from code_index.cli.code_index import build_parser


@pytest.fixture
def cycle_project(project, monkeypatch, tmp_path):
    # codeindex.config.yaml is looked up in the working directory
    monkeypatch.chdir(tmp_path)
    (project / "a.ts").write_text("import { b } from './b';\n", encoding="utf-8")
    (project / "b.ts").write_text("import { c } from './c';\nexport const b = 1;\n", encoding="utf-8")
    (project / "c.ts").write_text("import { b } from './b';\nexport const c = 2;\n", encoding="utf-8")
    return project


def run(*argv):
    args = build_parser().parse_args(list(argv))
    return args.func(args)


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_parser_options():
    args = build_parser().parse_args(["search", "/repo", "--query", "load config", "--limit", "3", "--json"])

    assert args.directory == "/repo"
    assert args.query == "load config"
    assert args.limit == 3
    assert args.json is True
    assert args.min_similarity is None


def test_deps(cycle_project, capsys):
    assert run("deps", "b.ts", str(cycle_project)) == 0

    out = capsys.readouterr().out
    assert "b.ts" in out
    assert "→ c.ts" in out
    assert "← a.ts" in out
    assert "← c.ts" in out
    assert (cycle_project / ".codeindex" / "dependencies" / "dependency-graph.json").exists()


def test_unknown_file_fails(cycle_project, capsys):
    assert run("deps", "missing.ts", str(cycle_project)) == 1
    assert "not in the dependency graph" in capsys.readouterr().err


def test_path(cycle_project, capsys):
    assert run("path", "a.ts", "c.ts", str(cycle_project)) == 0
    assert capsys.readouterr().out.strip() == "a.ts → b.ts → c.ts"

    assert run("path", "c.ts", "a.ts", str(cycle_project)) == 1


def test_impact(cycle_project, capsys):
    assert run("impact", "c.ts", str(cycle_project), "--max-depth", "1") == 0

    out = capsys.readouterr().out
    assert "impacts 1 files" in out
    assert "- b.ts" in out


def test_cycles_exit_code(cycle_project, capsys):
    assert run("cycles", str(cycle_project)) == 1
    assert "Found 1 circular dependencies" in capsys.readouterr().out


def test_stats(cycle_project, capsys):
    assert run("stats", str(cycle_project)) == 0

    stats = json.loads(capsys.readouterr().out)
    assert stats["total_files"] == 3
    assert stats["total_dependencies"] == 3
