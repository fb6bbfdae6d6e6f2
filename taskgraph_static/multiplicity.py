"""
taskgraph_static.multiplicity
=============================

The multiplicity algebra: how many times a call edge may execute per
invocation of its caller.

Lattice
-------
::

            ZERO_OR_MANY   "0..*"   inside a loop, or repeatable
                 │
            ZERO_OR_ONE    "0..1"   conditionally executed, at most once
                 │
            EXACTLY_ONE    "1"      unconditional direct call
                 │
               ZERO        "0"      identity of the algebra only

There is no "exactly many": static analysis cannot bound how often a loop
iterates, so every loop collapses to ``ZERO_OR_MANY``.

Two operators
-------------
``fold``
    Sequential composition along one control-context path, innermost frame
    first.  Order-sensitive.
``join`` / ``join_sites``
    Merging independent call sites between the same caller and callee.
    Associative and commutative; the result depends only on the multiset
    of per-site classes.

Usage::

    path = ControlContextPath.of(FrameKind.CONDITIONAL_ARM, FrameKind.LOOP_BODY)
    fold(path)                                   # Multiplicity.ZERO_OR_MANY
    join_sites([Multiplicity.EXACTLY_ONE] * 2)   # Multiplicity.ZERO_OR_MANY
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from functools import reduce
from typing import Any, Dict, Iterable, Iterator, Tuple, Union

__all__ = [
    "Multiplicity",
    "FrameKind",
    "ControlFrame",
    "ControlContextPath",
    "SiteJoin",
    "apply_frame",
    "classify",
    "fold",
    "join",
    "join_sites",
]


# ---------------------------------------------------------------------------
# Multiplicity
# ---------------------------------------------------------------------------

class Multiplicity(enum.Enum):
    """Statically inferred bound on executions of a call edge."""

    ZERO         = "0"
    EXACTLY_ONE  = "1"
    ZERO_OR_ONE  = "0..1"
    ZERO_OR_MANY = "0..*"

    @property
    def rank(self) -> int:
        return _RANK[self]

    def __lt__(self, other: "Multiplicity") -> bool:
        if not isinstance(other, Multiplicity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "Multiplicity") -> bool:
        if not isinstance(other, Multiplicity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: "Multiplicity") -> bool:
        if not isinstance(other, Multiplicity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: "Multiplicity") -> bool:
        if not isinstance(other, Multiplicity):
            return NotImplemented
        return self.rank >= other.rank

    @property
    def may_repeat(self) -> bool:
        return self is Multiplicity.ZERO_OR_MANY

    @property
    def may_skip(self) -> bool:
        return self in (Multiplicity.ZERO, Multiplicity.ZERO_OR_ONE,
                        Multiplicity.ZERO_OR_MANY)

    @classmethod
    def parse(cls, text: str) -> "Multiplicity":
        """Accept either the notation (``"0..1"``) or the member name."""
        for member in cls:
            if text == member.value or text.upper() == member.name:
                return member
        raise ValueError(f"unknown multiplicity {text!r}")


_RANK = {
    Multiplicity.ZERO: 0,
    Multiplicity.EXACTLY_ONE: 1,
    Multiplicity.ZERO_OR_ONE: 2,
    Multiplicity.ZERO_OR_MANY: 3,
}


# ---------------------------------------------------------------------------
# Control frames
# ---------------------------------------------------------------------------

class FrameKind(enum.Enum):
    """The closed set of nesting levels a call can sit in.

    Any syntactic construct maps onto exactly one of these.
    """

    SEQUENTIAL       = "sequential"
    CONDITIONAL_ARM  = "conditional-arm"
    LOOP_BODY        = "loop-body"
    CLOSURE_BOUNDARY = "closure-boundary"


@dataclass(frozen=True, slots=True)
class ControlFrame:
    """One level of syntactic nesting between a call and its function.

    ``construct`` and ``line`` describe the syntax that was crossed and are
    informational only; classification looks at ``kind`` alone.
    """

    kind: FrameKind
    construct: str = ""
    line: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "construct": self.construct, "line": self.line}

    def __str__(self) -> str:
        if self.construct:
            return f"{self.kind.value}({self.construct}@{self.line})"
        return self.kind.value


@dataclass(frozen=True, slots=True)
class ControlContextPath:
    """Innermost-first sequence of frames for one call site.

    Empty only for a call at its function's unconditional top level.
    """

    frames: Tuple[ControlFrame, ...] = ()

    @classmethod
    def of(cls, *kinds: Union[FrameKind, ControlFrame]) -> "ControlContextPath":
        """Build a path from frame kinds or frames, innermost first."""
        return cls(tuple(
            k if isinstance(k, ControlFrame) else ControlFrame(k)
            for k in kinds
        ))

    def significant(self) -> Tuple[ControlFrame, ...]:
        """Frames with a control effect (``SEQUENTIAL`` filtered out)."""
        return tuple(f for f in self.frames if f.kind is not FrameKind.SEQUENTIAL)

    def kinds(self) -> Tuple[FrameKind, ...]:
        return tuple(f.kind for f in self.frames)

    def __iter__(self) -> Iterator[ControlFrame]:
        return iter(self.frames)

    def __len__(self) -> int:
        return len(self.frames)

    def __bool__(self) -> bool:
        return bool(self.frames)

    def __str__(self) -> str:
        if not self.frames:
            return "<top-level>"
        return " < ".join(str(f) for f in self.frames)


# ---------------------------------------------------------------------------
# Fold
# ---------------------------------------------------------------------------

def apply_frame(acc: Multiplicity, kind: FrameKind) -> Multiplicity:
    """Compose the accumulator with one enclosing frame.

    Loops dominate: a call that runs at most once inside a loop body that
    may itself run many times is ``ZERO_OR_MANY``.  Conditionals and closure
    boundaries only downgrade ``EXACTLY_ONE``; repeated conditionals
    collapse into the same ``ZERO_OR_ONE``.
    """
    if kind is FrameKind.LOOP_BODY:
        return Multiplicity.ZERO_OR_MANY
    if kind in (FrameKind.CONDITIONAL_ARM, FrameKind.CLOSURE_BOUNDARY):
        if acc is Multiplicity.EXACTLY_ONE:
            return Multiplicity.ZERO_OR_ONE
        return acc
    return acc


def fold(path: Union[ControlContextPath, Iterable[Union[FrameKind, ControlFrame]]]) -> Multiplicity:
    """Reduce a control-context path to a single multiplicity class.

    Starts from ``EXACTLY_ONE`` and applies frames innermost to outermost.
    Pure: the result depends on the path only.
    """
    if not isinstance(path, ControlContextPath):
        path = ControlContextPath.of(*path)
    acc = Multiplicity.EXACTLY_ONE
    for frame in path.significant():
        acc = apply_frame(acc, frame.kind)
    return acc


# ---------------------------------------------------------------------------
# Join
# ---------------------------------------------------------------------------

def join(a: Multiplicity, b: Multiplicity) -> Multiplicity:
    """Least upper bound in ``ZERO < EXACTLY_ONE < ZERO_OR_ONE < ZERO_OR_MANY``."""
    return a if a.rank >= b.rank else b


@dataclass(frozen=True, slots=True)
class SiteJoin:
    """Commutative monoid used to merge per-site classes of one edge.

    Tracks the least upper bound together with how many unconditional
    (``EXACTLY_ONE``) sites were seen, saturating at two: two distinct
    unconditional calls of the same callee mean it can run more than once.
    """

    bound: Multiplicity = Multiplicity.ZERO
    unconditional: int = 0

    @classmethod
    def unit(cls, m: Multiplicity) -> "SiteJoin":
        return cls(m, 1 if m is Multiplicity.EXACTLY_ONE else 0)

    def combine(self, other: "SiteJoin") -> "SiteJoin":
        return SiteJoin(
            join(self.bound, other.bound),
            min(self.unconditional + other.unconditional, 2),
        )

    def result(self) -> Multiplicity:
        if self.unconditional >= 2:
            return Multiplicity.ZERO_OR_MANY
        return self.bound


def join_sites(classes: Iterable[Multiplicity]) -> Multiplicity:
    """Merge the classes of independent call sites between one pair.

    ``ZERO`` for no sites; a lone site keeps its class; otherwise the least
    upper bound, raised to ``ZERO_OR_MANY`` when two or more of the sites
    are unconditional.
    """
    acc = reduce(
        SiteJoin.combine,
        (SiteJoin.unit(m) for m in classes),
        SiteJoin(),
    )
    return acc.result()


def classify(path: ControlContextPath) -> Multiplicity:
    """Multiplicity of one call site given its control-context path."""
    return fold(path)
