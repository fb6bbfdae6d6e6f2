"""
taskgraph_static.symbols
========================

Value types shared by every stage of the analysis pipeline.

    ┌──────────────────────────────────────────────────────────────────┐
    │  SourceLocation   path + 1-based line + 0-based character column │
    │  TaskSymbol       a task-annotated function (registry output)    │
    │  RawReference     one oracle answer: call location + enclosing fn│
    │  CallSite         a RawReference after extraction/classification │
    └──────────────────────────────────────────────────────────────────┘

All records are frozen.  A ``TaskSymbol`` is created exactly once per
declaration during discovery and is never mutated afterwards; a
``CallSite`` owns its ``ControlContextPath`` by value.

Columns are *character* columns (not UTF-8 byte offsets as produced by
:mod:`ast`, and not UTF-16 code units as spoken by language servers);
:mod:`taskgraph_static.syntax` converts at the edges.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union, TYPE_CHECKING

if TYPE_CHECKING:
    from .multiplicity import ControlContextPath, Multiplicity

__all__ = [
    "SourceLocation",
    "TaskSymbol",
    "RawReference",
    "CallSite",
]


# ---------------------------------------------------------------------------
# SourceLocation
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True, order=True)
class SourceLocation:
    """A position in a source file.

    Attributes
    ----------
    path : str
        Absolute, symlink-resolved path of the source unit.
    line : int
        1-based line number.
    column : int
        0-based character column.
    """

    path: str
    line: int
    column: int = 0

    @classmethod
    def of(cls, path: Union[str, os.PathLike], line: int, column: int = 0) -> SourceLocation:
        """Build a location, resolving *path* to its canonical form."""
        return cls(str(Path(path).resolve()), int(line), int(column))

    def canonical(self) -> Tuple[str, int, int]:
        """Key used to deduplicate declarations reached via several paths."""
        return (os.path.normcase(self.path), self.line, self.column)

    def line_key(self) -> Tuple[str, int]:
        return (os.path.normcase(self.path), self.line)

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "line": self.line, "column": self.column}

    def __str__(self) -> str:
        return f"{self.path}:{self.line}:{self.column}"


# ---------------------------------------------------------------------------
# TaskSymbol
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class TaskSymbol:
    """A function carrying the task annotation.

    Attributes
    ----------
    qualname : str
        Dotted module path, enclosing class names and function name,
        e.g. ``"shop.orders.OrderService.settle"``.
    name : str
        The bare function name.
    location : SourceLocation
        Position of the function's *name token* (what a language server
        expects for ``prepareCallHierarchy``).
    tags : tuple[str, ...]
        Identifier arguments of the annotation, e.g. ``("bind",)`` for
        ``@app.task(bind=True)``.
    is_async : bool
        ``True`` for ``async def`` declarations.
    """

    qualname: str
    name: str
    location: SourceLocation
    tags: Tuple[str, ...] = ()
    is_async: bool = False

    @property
    def symbol_id(self) -> str:
        return f"{self.location.path}#{self.qualname}:{self.location.line}"

    @property
    def module(self) -> str:
        head, _, _ = self.qualname.rpartition(".")
        return head

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.symbol_id,
            "qualname": self.qualname,
            "name": self.name,
            "location": self.location.to_dict(),
            "tags": list(self.tags),
            "is_async": self.is_async,
        }

    def __str__(self) -> str:
        return self.qualname


# ---------------------------------------------------------------------------
# RawReference
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class RawReference:
    """One reference to a task as reported by the analysis oracle.

    ``enclosing_location`` is the name position of the function containing
    the call, or ``None`` when the call sits in module-level code.  The
    oracle does not interpret anything beyond this shape.
    """

    call_location: SourceLocation
    enclosing_location: Optional[SourceLocation] = None
    enclosing_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call": self.call_location.to_dict(),
            "enclosing": (
                self.enclosing_location.to_dict()
                if self.enclosing_location is not None else None
            ),
            "enclosing_name": self.enclosing_name,
        }


# ---------------------------------------------------------------------------
# CallSite
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class CallSite:
    """A classified reference from a caller scope to a task.

    Attributes
    ----------
    callee : TaskSymbol
        The task being invoked.
    reference : RawReference
        The oracle answer this site was derived from.
    caller_id : str
        Node id of the caller scope (a task, an external function or a
        module node).
    path : ControlContextPath
        Innermost-first control frames between the call and the caller's
        top level.  Empty for approximate sites.
    multiplicity : Multiplicity
        Fold of ``path`` (``ZERO_OR_MANY`` when approximate).
    approximate : bool
        The enclosing syntax could not be resolved.
    reason : str
        Why the site is approximate (empty otherwise).
    """

    callee: TaskSymbol
    reference: RawReference
    caller_id: str
    path: "ControlContextPath"
    multiplicity: "Multiplicity"
    approximate: bool = False
    reason: str = ""

    @property
    def location(self) -> SourceLocation:
        return self.reference.call_location

    def sort_key(self) -> Tuple[Any, ...]:
        return (self.caller_id, self.callee.symbol_id, self.location)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "caller": self.caller_id,
            "callee": self.callee.symbol_id,
            "location": self.location.to_dict(),
            "path": [frame.to_dict() for frame in self.path.frames],
            "multiplicity": self.multiplicity.value,
            "approximate": self.approximate,
            "reason": self.reason,
        }
