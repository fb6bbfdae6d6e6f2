"""
taskgraph_static.export
=======================

Output adapters over the read-only :class:`~taskgraph_static.callgraph.CallGraph`
interface.  None of them touches the builder.

Formats
-------
``dot``
    Graphviz DOT text.  Edge labels carry the multiplicity notation,
    approximate edges are dashed, partial tasks are outlined in red,
    external callers are drawn as ellipses.
``cypher``
    Graph-database bulk-load statements: one ``MERGE`` per node (labelled
    ``:Task`` or ``:External``) and one ``CALLS`` relationship per edge.
``json``
    ``graph.to_dict()`` serialised.
``sexp``
    The same data as nested S-expressions, written with :mod:`sexpdata`.
``summary``
    :func:`~taskgraph_static.callgraph.callgraph_summary`.

:func:`render` turns DOT into an image through the ``graphviz`` package,
which is only needed for that one function (``pip install taskgraph-static[viz]``).
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import sexpdata
from sexpdata import Symbol

from .callgraph import CallGraph, NodeKind, callgraph_summary

logger = logging.getLogger(__name__)

__all__ = [
    "to_dot",
    "to_cypher",
    "to_json",
    "to_sexp",
    "render",
    "EXPORTERS",
    "export",
]


# ---------------------------------------------------------------------------
# DOT
# ---------------------------------------------------------------------------

def _dot_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def to_dot(graph: CallGraph, title: Optional[str] = None) -> str:
    """Return a Graphviz DOT representation."""
    lines = ["digraph TaskCallGraph {"]
    lines.append("  rankdir=LR;")
    if title:
        lines.append(f'  label="{_dot_escape(title)}";')
    lines.append('  node [shape=box, fontname="Helvetica", fontsize=10];')
    lines.append('  edge [fontname="Helvetica", fontsize=9];')

    kind_attrs = {
        NodeKind.TASK:     'style=filled, fillcolor="#ddeeff"',
        NodeKind.EXTERNAL: 'style=filled, fillcolor="#fff3cd", shape=ellipse',
        NodeKind.MODULE:   'style=filled, fillcolor="#eeeeee", shape=ellipse',
    }
    for n in graph.nodes:
        attrs = kind_attrs[n.kind]
        if n.partial:
            attrs += ', color=red, penwidth=2'
        label = _dot_escape(n.name + (" (partial)" if n.partial else ""))
        lines.append(f'  "{_dot_escape(n.node_id)}" [label="{label}", {attrs}];')

    for e in graph.edges:
        attrs = ", style=dashed" if e.approximate else ""
        label = e.multiplicity.value + ("~" if e.approximate else "")
        lines.append(
            f'  "{_dot_escape(e.caller_id)}" -> "{_dot_escape(e.callee_id)}" '
            f'[label="{label}"{attrs}];'
        )
    lines.append("}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Cypher
# ---------------------------------------------------------------------------

def _cypher_string(text: str) -> str:
    return "'" + text.replace("\\", "\\\\").replace("'", "\\'") + "'"


def to_cypher(graph: CallGraph) -> str:
    """Return ``MERGE`` statements that load the graph into a property graph."""
    statements: List[str] = []
    for n in graph.nodes:
        label = "Task" if n.is_task else "External"
        props = [
            f"n.name = {_cypher_string(n.name)}",
            f"n.kind = {_cypher_string(n.kind.value)}",
        ]
        if n.location is not None:
            props.append(f"n.path = {_cypher_string(n.location.path)}")
            props.append(f"n.line = {n.location.line}")
        if n.is_task:
            props.append(f"n.partial = {'true' if n.partial else 'false'}")
        statements.append(
            f"MERGE (n:{label} {{id: {_cypher_string(n.node_id)}}}) "
            f"SET {', '.join(props)};"
        )
    for e in graph.edges:
        statements.append(
            f"MATCH (a {{id: {_cypher_string(e.caller_id)}}}), "
            f"(b {{id: {_cypher_string(e.callee_id)}}}) "
            f"MERGE (a)-[r:CALLS]->(b) "
            f"SET r.multiplicity = {_cypher_string(e.multiplicity.value)}, "
            f"r.approximate = {'true' if e.approximate else 'false'}, "
            f"r.sites = {len(e.sites)};"
        )
    return "\n".join(statements)


# ---------------------------------------------------------------------------
# JSON / S-expression
# ---------------------------------------------------------------------------

def to_json(graph: CallGraph, indent: Optional[int] = 2) -> str:
    return json.dumps(graph.to_dict(), indent=indent, sort_keys=False)


def _sexp_node(n) -> list:
    form = [
        Symbol("node"),
        n.node_id,
        [Symbol("name"), n.name],
        [Symbol("kind"), Symbol(n.kind.value)],
    ]
    if n.location is not None:
        form.append([Symbol("at"), n.location.path, n.location.line, n.location.column])
    if n.symbol is not None and n.symbol.tags:
        form.append([Symbol("tags")] + [Symbol(t) for t in n.symbol.tags])
    if n.partial:
        form.append([Symbol("partial"), n.partial_reason])
    return form


def _sexp_edge(e) -> list:
    form = [
        Symbol("edge"),
        e.caller_id,
        e.callee_id,
        [Symbol("multiplicity"), e.multiplicity.value],
    ]
    if e.approximate:
        form.append([Symbol("approximate")])
    for site in e.sites:
        loc = site.location
        form.append([
            Symbol("site"), loc.path, loc.line, loc.column,
            [Symbol("path")] + [Symbol(f.kind.value) for f in site.path.frames],
        ])
    return form


def to_sexp(graph: CallGraph) -> str:
    """Return the graph as one ``(taskgraph ...)`` S-expression."""
    form: List[Any] = [Symbol("taskgraph")]
    form.append([Symbol("nodes")] + [_sexp_node(n) for n in graph.nodes])
    form.append([Symbol("edges")] + [_sexp_edge(e) for e in graph.edges])
    if graph.skipped_units:
        form.append([Symbol("skipped")] + list(graph.skipped_units))
    return sexpdata.dumps(form)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render(
    graph: CallGraph,
    output: Union[str, os.PathLike],
    fmt: str = "svg",
    title: Optional[str] = None,
) -> str:
    """Render the graph to an image file; returns the written path.

    Requires the ``graphviz`` Python package and the Graphviz ``dot``
    binary.  *output* is the target path without the format suffix.
    """
    try:
        import graphviz
    except ImportError as exc:
        raise RuntimeError(
            "rendering needs the graphviz package. "
            "Install with: pip install 'taskgraph-static[viz]'"
        ) from exc
    out = Path(output)
    source = graphviz.Source(to_dot(graph, title=title))
    written = source.render(
        filename=out.name, directory=str(out.parent), format=fmt, cleanup=True,
    )
    logger.info("rendered %s", written)
    return written


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

EXPORTERS: Dict[str, Callable[[CallGraph], str]] = {
    "summary": callgraph_summary,
    "dot": to_dot,
    "cypher": to_cypher,
    "json": to_json,
    "sexp": to_sexp,
}


def export(graph: CallGraph, fmt: str) -> str:
    try:
        writer = EXPORTERS[fmt]
    except KeyError:
        raise ValueError(
            f"unknown format {fmt!r}; choose from {', '.join(sorted(EXPORTERS))}"
        ) from None
    return writer(graph)
