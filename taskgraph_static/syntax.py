"""
taskgraph_static.syntax
=======================

Parsed source units shared read-only by every stage of the pipeline.

``ast`` reports columns as UTF-8 byte offsets, language servers speak
UTF-16 code units, and the rest of the package uses character columns.
This module owns the conversions so that no other module has to care.

Public API
----------
    ParsedModule        - one parsed unit: tree, lines, parent map, lookups
    Definition          - a ``def`` found in a unit, with its qualname
    SyntaxCache         - thread-safe memo of ``ParsedModule`` by path
    module_name_for     - dotted module name of a file (package-aware)
    decorator_name      - dotted name of a decorator expression
    char_to_utf16 / utf16_to_char - column conversions for LSP positions

A ``ParsedModule`` is never mutated after construction, so worker threads
may share it freely; only :class:`SyntaxCache` holds a lock, and only while
it touches its memo table.
"""

from __future__ import annotations

import ast
import logging
import os
import threading
import tokenize
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .errors import DiscoveryError, ErrorCode
from .symbols import SourceLocation

logger = logging.getLogger(__name__)

__all__ = [
    "Definition",
    "ParsedModule",
    "SyntaxCache",
    "module_name_for",
    "decorator_name",
    "char_to_utf16",
    "utf16_to_char",
]

_FUNCTION_NODES = (ast.FunctionDef, ast.AsyncFunctionDef)

# (parent, field name, index within the field's list or None)
ParentLink = Tuple[ast.AST, str, Optional[int]]


# ---------------------------------------------------------------------------
# Naming helpers
# ---------------------------------------------------------------------------

def module_name_for(path: Union[str, os.PathLike]) -> str:
    """Return the dotted module name of *path*.

    Walks up through directories that contain an ``__init__.py``; a file
    outside any package is named after its stem.
    """
    p = Path(path).resolve()
    parts: List[str] = []
    if p.name != "__init__.py":
        parts.append(p.stem)
    parent = p.parent
    while (parent / "__init__.py").is_file():
        parts.append(parent.name)
        if parent.parent == parent:
            break
        parent = parent.parent
    if not parts:
        return p.parent.name
    return ".".join(reversed(parts))


def decorator_name(expr: ast.expr) -> Optional[str]:
    """Dotted name of a decorator, looking through a decorator call.

    ``@app.task(bind=True)`` → ``"app.task"``; anything that is not a
    name, attribute chain or call of one yields ``None``.
    """
    if isinstance(expr, ast.Call):
        return decorator_name(expr.func)
    if isinstance(expr, ast.Name):
        return expr.id
    if isinstance(expr, ast.Attribute):
        head = decorator_name(expr.value)
        if head is None:
            return None
        return f"{head}.{expr.attr}"
    return None


def char_to_utf16(text: str, column: int) -> int:
    return len(text[:column].encode("utf-16-le")) // 2


def utf16_to_char(text: str, column: int) -> int:
    units = 0
    for index, ch in enumerate(text):
        if units >= column:
            return index
        units += 2 if ord(ch) > 0xFFFF else 1
    return len(text)


# ---------------------------------------------------------------------------
# Definition
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Definition:
    """A function definition inside a parsed unit.

    ``qualname`` follows Python's ``__qualname__`` convention prefixed with
    the module name, so a closure reads ``pkg.mod.outer.<locals>.inner``.
    ``nested`` is true for any ``def`` whose body is inside another
    function; such definitions are closures, not catalogued symbols.
    """

    node: Union[ast.FunctionDef, ast.AsyncFunctionDef]
    qualname: str
    location: SourceLocation
    nested: bool
    outer: Optional["Definition"] = None

    @property
    def name(self) -> str:
        return self.node.name

    @property
    def outermost(self) -> "Definition":
        d = self
        while d.outer is not None:
            d = d.outer
        return d


# ---------------------------------------------------------------------------
# ParsedModule
# ---------------------------------------------------------------------------

class ParsedModule:
    """An immutable parsed source unit.

    Attributes
    ----------
    path : str
        Resolved path of the unit.
    module : str
        Dotted module name (see :func:`module_name_for`).
    source : str
        Decoded text with universal newlines.
    lines : list[str]
        ``source`` split on ``"\\n"``; ``lines[0]`` is line 1.
    tree : ast.Module
    """

    __slots__ = ("path", "module", "source", "lines", "tree",
                 "_parents", "_definitions", "_by_name_pos")

    def __init__(self, path: str, source: str, module: Optional[str] = None) -> None:
        self.path = path
        self.module = module if module is not None else module_name_for(path)
        self.source = source
        self.lines = source.split("\n")
        self.tree = ast.parse(source, filename=path)
        self._parents: Dict[int, ParentLink] = {}
        self._index_parents(self.tree)
        self._definitions: Tuple[Definition, ...] = tuple(self._collect_definitions())
        self._by_name_pos: Dict[Tuple[int, int], Definition] = {
            (d.location.line, d.location.column): d for d in self._definitions
        }

    @classmethod
    def from_file(cls, path: Union[str, os.PathLike]) -> "ParsedModule":
        resolved = str(Path(path).resolve())
        with tokenize.open(resolved) as fh:
            source = fh.read()
        return cls(resolved, source)

    # ----- columns ----------------------------------------------------------

    def line_text(self, line: int) -> str:
        if 1 <= line <= len(self.lines):
            return self.lines[line - 1]
        return ""

    def byte_to_char(self, line: int, byte_col: int) -> int:
        raw = self.line_text(line).encode("utf-8")
        return len(raw[:byte_col].decode("utf-8", errors="replace"))

    def char_to_byte(self, line: int, char_col: int) -> int:
        return len(self.line_text(line)[:char_col].encode("utf-8"))

    def location_of(self, node: ast.AST) -> SourceLocation:
        """Start of *node* as a character-column location."""
        line = node.lineno
        return SourceLocation(self.path, line, self.byte_to_char(line, node.col_offset))

    # ----- parent map -------------------------------------------------------

    def _index_parents(self, root: ast.AST) -> None:
        stack = [root]
        while stack:
            node = stack.pop()
            for field_name, value in ast.iter_fields(node):
                if isinstance(value, ast.AST):
                    self._parents[id(value)] = (node, field_name, None)
                    stack.append(value)
                elif isinstance(value, list):
                    for index, item in enumerate(value):
                        if isinstance(item, ast.AST):
                            self._parents[id(item)] = (node, field_name, index)
                            stack.append(item)

    def parent_of(self, node: ast.AST) -> Optional[ParentLink]:
        return self._parents.get(id(node))

    def ancestors(self, node: ast.AST) -> Iterator[Tuple[ast.AST, ParentLink]]:
        """Yield ``(child, (parent, field, index))`` pairs walking outward."""
        link = self.parent_of(node)
        while link is not None:
            yield node, link
            node = link[0]
            link = self.parent_of(node)

    # ----- position lookup --------------------------------------------------

    def node_at(self, line: int, column: int) -> Optional[ast.AST]:
        """Innermost positioned node covering a character position."""
        pos = (line, self.char_to_byte(line, column))
        best: Optional[ast.AST] = None
        node: Optional[ast.AST] = self.tree
        while node is not None:
            child = self._covering_child(node, pos)
            if child is not None:
                best = child
            node = child
        return best

    def _covering_child(self, node: ast.AST, pos: Tuple[int, int]) -> Optional[ast.AST]:
        for child in ast.iter_child_nodes(node):
            if _has_position(child):
                if _covers(child, pos):
                    return child
            else:
                inner = self._covering_child(child, pos)
                if inner is not None:
                    return inner
        return None

    # ----- definitions ------------------------------------------------------

    def _collect_definitions(self) -> Iterator[Definition]:
        def visit(node: ast.AST, prefix: str, outer: Optional[Definition]) -> Iterator[Definition]:
            for child in ast.iter_child_nodes(node):
                if isinstance(child, _FUNCTION_NODES):
                    d = Definition(
                        node=child,
                        qualname=f"{prefix}.{child.name}",
                        location=self._name_token(child),
                        nested=outer is not None,
                        outer=outer,
                    )
                    yield d
                    yield from visit(child, f"{d.qualname}.<locals>", d)
                elif isinstance(child, ast.ClassDef):
                    yield from visit(child, f"{prefix}.{child.name}", outer)
                else:
                    yield from visit(child, prefix, outer)

        yield from visit(self.tree, self.module, None)

    def _name_token(self, node: ast.AST) -> SourceLocation:
        """Location of the name after ``def`` / ``async def`` / ``class``."""
        line = node.lineno
        text = self.line_text(line)
        start = self.byte_to_char(line, node.col_offset)
        keyword = "class" if isinstance(node, ast.ClassDef) else "def"
        at = text.find(keyword, start)
        if at < 0:
            return SourceLocation(self.path, line, start)
        col = at + len(keyword)
        while col < len(text) and text[col] in " \t\\":
            col += 1
        return SourceLocation(self.path, line, col)

    @property
    def definitions(self) -> Tuple[Definition, ...]:
        return self._definitions

    def top_level_definitions(self) -> Iterator[Definition]:
        """Module-level and class-level (including nested class) defs."""
        return (d for d in self._definitions if not d.nested)

    def definition_at(self, line: int, column: Optional[int] = None) -> Optional[Definition]:
        """The ``def`` whose name token is at (*line*, *column*).

        Falls back to a ``def`` whose name token, or ``def`` keyword, is on
        *line* when there is no exact hit.
        """
        if column is not None:
            hit = self._by_name_pos.get((line, column))
            if hit is not None:
                return hit
        for d in self._definitions:
            if d.location.line == line or d.node.lineno == line:
                return d
        return None

    def definition_of(self, node: ast.AST) -> Optional[Definition]:
        loc = self._name_token(node)
        return self._by_name_pos.get((loc.line, loc.column))

    def __repr__(self) -> str:
        return f"ParsedModule({self.module!r}, lines={len(self.lines)})"


def _has_position(node: ast.AST) -> bool:
    return getattr(node, "lineno", None) is not None and \
        getattr(node, "end_lineno", None) is not None


def _covers(node: ast.AST, pos: Tuple[int, int]) -> bool:
    start = (node.lineno, node.col_offset)
    decorators = getattr(node, "decorator_list", None)
    if decorators:
        # decorators sit above the def/class keyword the node starts at
        first = decorators[0]
        start = min(start, (first.lineno, first.col_offset - 1))
    end = (node.end_lineno, node.end_col_offset)
    return start <= pos < end


# ---------------------------------------------------------------------------
# SyntaxCache
# ---------------------------------------------------------------------------

class SyntaxCache:
    """Memoising loader of :class:`ParsedModule` objects.

    Failures are memoised as well, so every caller asking for a broken unit
    sees the same :class:`~taskgraph_static.errors.DiscoveryError`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._modules: Dict[str, Union[ParsedModule, DiscoveryError]] = {}

    def get(self, path: Union[str, os.PathLike]) -> ParsedModule:
        key = str(Path(path).resolve())
        with self._lock:
            cached = self._modules.get(key)
        if cached is None:
            cached = self._load(key)
            with self._lock:
                cached = self._modules.setdefault(key, cached)
        if isinstance(cached, DiscoveryError):
            raise cached
        return cached

    def peek(self, path: Union[str, os.PathLike]) -> Optional[ParsedModule]:
        """Return the unit if it parses, ``None`` otherwise."""
        try:
            return self.get(path)
        except DiscoveryError:
            return None

    @staticmethod
    def _load(path: str) -> Union[ParsedModule, DiscoveryError]:
        try:
            module = ParsedModule.from_file(path)
        except (OSError, UnicodeDecodeError) as exc:
            return DiscoveryError(
                f"cannot read source unit: {exc}",
                path=path,
                code=ErrorCode.UNIT_UNREADABLE,
                cause=exc,
            )
        except (SyntaxError, ValueError) as exc:
            line = getattr(exc, "lineno", None) or 1
            return DiscoveryError(
                f"cannot parse source unit: {getattr(exc, 'msg', exc)}",
                path=path,
                code=ErrorCode.UNIT_SYNTAX,
                location=SourceLocation(path, line, 0),
                cause=exc,
            )
        logger.debug("parsed %s as %s", path, module.module)
        return module

    def __len__(self) -> int:
        with self._lock:
            return len(self._modules)
