# tests/test_export.py
"""
Tests for the output adapters.
"""

import json
import sys
import types

import pytest
import sexpdata

from taskgraph_static.ast_oracle import AstIndexOracle
from taskgraph_static.callgraph import build_callgraph
from taskgraph_static.export import EXPORTERS, export, render, to_cypher, to_dot, to_json, to_sexp
from taskgraph_static.registry import iter_source_files
from taskgraph_static.syntax import SyntaxCache
from tests.conftest import write_tree


@pytest.fixture
def graph(tmp_path):
    write_tree(tmp_path, {"jobs.py": '''
        @task
        def foo(x):
            return x

        @task
        def bar(items):
            for i in items:
                foo.delay(i)

        def helper():
            foo.delay(1)

        @task(on_retry=foo.s())
        def odd():
            pass
    '''})
    syntax = SyntaxCache()
    return build_callgraph(
        list(iter_source_files([tmp_path])), AstIndexOracle([tmp_path], syntax=syntax),
        syntax=syntax,
    )


class TestDot:

    def test_structure(self, graph):
        text = to_dot(graph, title="jobs")
        assert text.startswith("digraph TaskCallGraph {")
        assert text.rstrip().endswith("}")
        assert 'label="jobs";' in text

    def test_nodes_and_edges(self, graph):
        text = to_dot(graph)
        assert 'label="jobs.foo"' in text
        assert "shape=ellipse" in text
        assert 'label="0..*"' in text
        assert text.count(" -> ") == len(graph.edges)


class TestCypher:

    def test_one_statement_per_node_and_edge(self, graph):
        lines = to_cypher(graph).splitlines()
        assert len(lines) == len(graph.nodes) + len(graph.edges)
        assert sum(1 for ln in lines if ln.startswith("MERGE (n:Task")) == 3
        assert sum(1 for ln in lines if ln.startswith("MERGE (n:External")) == 2

    def test_relationship_properties(self, graph):
        text = to_cypher(graph)
        assert "MERGE (a)-[r:CALLS]->(b)" in text
        assert "r.multiplicity = '0..*'" in text
        assert "r.approximate = false" in text


class TestJson:

    def test_round_trips_through_json(self, graph):
        data = json.loads(to_json(graph))
        assert {n["name"] for n in data["nodes"] if n["kind"] == "task"} == {
            "jobs.foo", "jobs.bar", "jobs.odd",
        }
        assert data["statistics"]["total_edges"] == len(graph.edges)

    def test_sites_carry_paths(self, graph):
        data = json.loads(to_json(graph))
        bar_edge = next(e for e in data["edges"] if "#jobs.bar:" in e["caller"])
        assert bar_edge["sites"][0]["path"][0]["kind"] == "loop-body"


class TestSexp:

    def test_parses_back(self, graph):
        form = sexpdata.loads(to_sexp(graph))
        assert form[0] == sexpdata.Symbol("taskgraph")
        nodes = form[1]
        assert nodes[0] == sexpdata.Symbol("nodes")
        assert len(nodes) - 1 == len(graph.nodes)
        edges = form[2]
        assert len(edges) - 1 == len(graph.edges)


class TestRegistry:

    def test_every_format_produces_text(self, graph):
        for fmt in EXPORTERS:
            assert export(graph, fmt)

    def test_unknown_format(self, graph):
        with pytest.raises(ValueError):
            export(graph, "yaml")


# ── Rendering ────────────────────────────────────────────────────

class RecordingSource:
    """Stands in for ``graphviz.Source``; remembers what it was given."""

    instances = []

    def __init__(self, source):
        self.source = source
        self.render_calls = []
        RecordingSource.instances.append(self)

    def render(self, **kwargs):
        self.render_calls.append(kwargs)
        return f"{kwargs['directory']}/{kwargs['filename']}.{kwargs['format']}"


@pytest.fixture
def fake_graphviz(monkeypatch):
    RecordingSource.instances = []
    monkeypatch.setitem(sys.modules, "graphviz", types.SimpleNamespace(Source=RecordingSource))
    return RecordingSource


class TestRender:

    def test_renders_dot_through_graphviz(self, graph, tmp_path, fake_graphviz):
        written = render(graph, tmp_path / "out" / "tasks", fmt="png", title="jobs")
        source, = fake_graphviz.instances
        assert source.source == to_dot(graph, title="jobs")
        assert source.render_calls == [{
            "filename": "tasks",
            "directory": str(tmp_path / "out"),
            "format": "png",
            "cleanup": True,
        }]
        assert written == f"{tmp_path / 'out'}/tasks.png"

    def test_defaults_to_svg(self, graph, tmp_path, fake_graphviz):
        render(graph, tmp_path / "g")
        assert fake_graphviz.instances[0].render_calls[0]["format"] == "svg"

    def test_missing_graphviz_package(self, graph, tmp_path, monkeypatch):
        monkeypatch.setitem(sys.modules, "graphviz", None)
        with pytest.raises(RuntimeError, match=r"taskgraph-static\[viz\]"):
            render(graph, tmp_path / "g")
