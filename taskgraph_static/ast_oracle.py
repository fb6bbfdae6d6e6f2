"""
taskgraph_static.ast_oracle
===========================

An in-process oracle that indexes call references by parsing every unit
under the source roots with :mod:`ast`.

Resolution
----------
For each unit the oracle knows:

* the definitions it declares at module and class level;
* the names its ``import`` statements bind, with relative imports resolved
  against the unit's package (``from .tasks import send as s``);
* the class a method belongs to, so ``self.x(...)`` / ``cls.x(...)`` inside
  ``C`` resolve to ``module.C.x``.

A reference is recorded when a resolvable name is *called*, either directly
(``send(...)``, ``tasks.send(...)``) or through a dispatch attribute
(``send.delay(...)``, ``send.apply_async(...)``, ``send.s(...)``).  The
reference is attributed to the outermost module- or class-level function
containing it; a reference outside any function belongs to the module.

Resolution is name-based: rebinding, ``getattr`` and star imports are not
followed.  Imports inside function bodies are honoured but treated as if
they were module-wide.
"""

from __future__ import annotations

import ast
import logging
import os
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .errors import DiscoveryError, OracleUnavailable
from .oracle import AnalysisOracle
from .registry import iter_source_files
from .symbols import RawReference, SourceLocation, TaskSymbol
from .syntax import Definition, ParsedModule, SyntaxCache

logger = logging.getLogger(__name__)

__all__ = ["DEFAULT_DISPATCH_ATTRIBUTES", "AstIndexOracle", "ModuleScope"]

DEFAULT_DISPATCH_ATTRIBUTES: Tuple[str, ...] = (
    "delay", "apply_async", "apply", "s", "si", "signature", "map", "starmap",
    "chunks",
)

_FUNCTION_NODES = (ast.FunctionDef, ast.AsyncFunctionDef)


def _dotted_parts(expr: ast.expr) -> Optional[List[str]]:
    parts: List[str] = []
    while isinstance(expr, ast.Attribute):
        parts.append(expr.attr)
        expr = expr.value
    if not isinstance(expr, ast.Name):
        return None
    parts.append(expr.id)
    parts.reverse()
    return parts


# ---------------------------------------------------------------------------
# Per-module scope
# ---------------------------------------------------------------------------

class ModuleScope:
    """Names visible in one unit and what they resolve to."""

    __slots__ = ("module", "package", "aliases", "locals")

    def __init__(self, parsed: ParsedModule) -> None:
        self.module = parsed.module
        if Path(parsed.path).name == "__init__.py":
            self.package = parsed.module
        else:
            self.package = parsed.module.rpartition(".")[0]
        self.aliases: Dict[str, str] = {}
        self.locals: Dict[str, str] = {}
        for node in ast.walk(parsed.tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    if alias.asname:
                        self.aliases[alias.asname] = alias.name
                    else:
                        head = alias.name.split(".", 1)[0]
                        self.aliases[head] = head
            elif isinstance(node, ast.ImportFrom):
                base = self._resolve_from(node)
                if base is None:
                    continue
                for alias in node.names:
                    if alias.name == "*":
                        continue
                    target = f"{base}.{alias.name}" if base else alias.name
                    self.aliases[alias.asname or alias.name] = target
        for stmt in parsed.tree.body:
            if isinstance(stmt, _FUNCTION_NODES + (ast.ClassDef,)):
                self.locals[stmt.name] = f"{self.module}.{stmt.name}"

    def _resolve_from(self, node: ast.ImportFrom) -> Optional[str]:
        if not node.level:
            return node.module or ""
        parts = self.package.split(".") if self.package else []
        up = node.level - 1
        if up > len(parts):
            logger.debug("%s: relative import beyond top-level package", self.module)
            return None
        base = ".".join(parts[:len(parts) - up]) if up else ".".join(parts)
        if node.module:
            return f"{base}.{node.module}" if base else node.module
        return base

    def resolve(self, expr: ast.expr, current_class: Optional[str]) -> Optional[str]:
        """Fully qualified target of a name or attribute chain."""
        parts = _dotted_parts(expr)
        if not parts:
            return None
        head, rest = parts[0], parts[1:]
        if head in ("self", "cls") and current_class and rest:
            return ".".join([current_class] + rest)
        if head in self.locals:
            return ".".join([self.locals[head]] + rest)
        if head in self.aliases:
            return ".".join([self.aliases[head]] + rest)
        return None


# ---------------------------------------------------------------------------
# Reference collection
# ---------------------------------------------------------------------------

class _ReferenceCollector(ast.NodeVisitor):
    """Walks one unit and records every resolvable call reference."""

    def __init__(
        self,
        parsed: ParsedModule,
        scope: ModuleScope,
        dispatch: Sequence[str],
        sink: Dict[str, List[RawReference]],
    ) -> None:
        self.parsed = parsed
        self.scope = scope
        self.dispatch = frozenset(dispatch)
        self.sink = sink
        self._classes: List[str] = [parsed.module]
        self._outer: Optional[Definition] = None
        self._outer_class: Optional[str] = None

    # ----- scopes -----------------------------------------------------------

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        for deco in node.decorator_list:
            self.visit(deco)
        for base in node.bases:
            self.visit(base)
        for kw in node.keywords:
            self.visit(kw)
        if self._outer is not None:
            for stmt in node.body:
                self.visit(stmt)
            return
        self._classes.append(f"{self._classes[-1]}.{node.name}")
        try:
            for stmt in node.body:
                self.visit(stmt)
        finally:
            self._classes.pop()

    def _visit_function(self, node: Union[ast.FunctionDef, ast.AsyncFunctionDef]) -> None:
        for deco in node.decorator_list:
            self.visit(deco)
        self.visit(node.args)
        if node.returns is not None:
            self.visit(node.returns)
        if self._outer is not None:
            for stmt in node.body:
                self.visit(stmt)
            return
        self._outer = self.parsed.definition_of(node)
        self._outer_class = self._classes[-1] if len(self._classes) > 1 else None
        try:
            for stmt in node.body:
                self.visit(stmt)
        finally:
            self._outer = None
            self._outer_class = None

    visit_FunctionDef = _visit_function
    visit_AsyncFunctionDef = _visit_function

    # ----- calls ------------------------------------------------------------

    def visit_Call(self, node: ast.Call) -> None:
        func = node.func
        target = self._resolve(func)
        if target is not None:
            self._record(target, func)
        if isinstance(func, ast.Attribute) and func.attr in self.dispatch:
            # targets that are not functions are indexed too and never queried
            target = self._resolve(func.value)
            if target is not None:
                self._record(target, func.value)
        self.generic_visit(node)

    def _resolve(self, expr: ast.expr) -> Optional[str]:
        current_class = self._outer_class if self._outer is not None else None
        return self.scope.resolve(expr, current_class)

    def _record(self, target: str, expr: ast.expr) -> None:
        call_loc = self._name_location(expr)
        if self._outer is not None:
            ref = RawReference(call_loc, self._outer.location, self._outer.qualname)
        else:
            ref = RawReference(call_loc)
        self.sink[target].append(ref)

    def _name_location(self, expr: ast.expr) -> SourceLocation:
        """Location of the last name segment of *expr*."""
        if isinstance(expr, ast.Attribute):
            line = expr.end_lineno
            raw = self.parsed.line_text(line).encode("utf-8")
            byte_col = expr.end_col_offset - len(expr.attr.encode("utf-8"))
            col = len(raw[:byte_col].decode("utf-8", errors="replace"))
            return SourceLocation(self.parsed.path, line, col)
        return self.parsed.location_of(expr)


# ---------------------------------------------------------------------------
# AstIndexOracle
# ---------------------------------------------------------------------------

class AstIndexOracle(AnalysisOracle):
    """Reference oracle backed by a whole-tree :mod:`ast` index.

    The index is built once, on :meth:`open` (or on the first query), and
    is read-only afterwards.
    """

    name = "ast"

    def __init__(
        self,
        roots: Iterable[Union[str, os.PathLike]],
        syntax: Optional[SyntaxCache] = None,
        exclude: Sequence[str] = (),
        dispatch_attributes: Sequence[str] = DEFAULT_DISPATCH_ATTRIBUTES,
    ) -> None:
        self.roots = [Path(r) for r in roots]
        self.syntax = syntax if syntax is not None else SyntaxCache()
        self.exclude = tuple(exclude)
        self.dispatch_attributes = tuple(dispatch_attributes)
        self._lock = threading.Lock()
        self._index: Optional[Dict[str, Tuple[RawReference, ...]]] = None
        self.indexed_units = 0

    @property
    def max_concurrency(self) -> int:
        return os.cpu_count() or 1

    def open(self) -> None:
        with self._lock:
            if self._index is None:
                self._index = self._build_index()

    def close(self) -> None:
        with self._lock:
            self._index = None

    def _build_index(self) -> Dict[str, Tuple[RawReference, ...]]:
        if not any(r.exists() for r in self.roots):
            raise OracleUnavailable(
                "none of the source roots exist: "
                + ", ".join(str(r) for r in self.roots)
            )
        sink: Dict[str, List[RawReference]] = defaultdict(list)
        units = 0
        for path in iter_source_files(self.roots, self.exclude):
            try:
                parsed = self.syntax.get(path)
            except DiscoveryError as exc:
                logger.debug("not indexing %s: %s", path, exc.message)
                continue
            _ReferenceCollector(
                parsed, ModuleScope(parsed), self.dispatch_attributes, sink,
            ).visit(parsed.tree)
            units += 1
        self.indexed_units = units
        logger.info("indexed %d unit(s), %d distinct call target(s)", units, len(sink))
        return {
            target: tuple(sorted(refs, key=lambda r: r.call_location))
            for target, refs in sink.items()
        }

    def find_call_sites(self, symbol: TaskSymbol) -> Sequence[RawReference]:
        if self._index is None:
            self.open()
        index = self._index
        if index is None:
            raise OracleUnavailable("reference index was closed")
        return index.get(symbol.qualname, ())
