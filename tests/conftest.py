# tests/conftest.py
"""
Shared fixtures and fake collaborators for the taskgraph-static tests.

Source trees are written under ``tmp_path`` with :func:`write_tree`;
positions inside them are looked up by text with :func:`locate` so tests
never hard-code line or column numbers.
"""

from __future__ import annotations

import textwrap
import threading
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import pytest

from taskgraph_static.errors import Diagnostic, OracleUnavailable
from taskgraph_static.oracle import AnalysisOracle
from taskgraph_static.symbols import RawReference, SourceLocation, TaskSymbol
from taskgraph_static.syntax import SyntaxCache


# ── Source-tree helpers ──────────────────────────────────────────

def write_tree(root: Path, files: Dict[str, str]) -> Dict[str, str]:
    """Write ``{relative path: source}`` under *root*.

    Sources are dedented.  Returns ``{relative path: resolved path}``.
    """
    written = {}
    for rel, source in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(source).lstrip("\n"), encoding="utf-8")
        written[rel] = str(path.resolve())
    return written


def locate(path: str, needle: str, occurrence: int = 1) -> SourceLocation:
    """Location of the *occurrence*-th appearance of *needle* in *path*."""
    seen = 0
    text = Path(path).read_text(encoding="utf-8")
    for lineno, line in enumerate(text.split("\n"), start=1):
        start = 0
        while True:
            col = line.find(needle, start)
            if col < 0:
                break
            seen += 1
            if seen == occurrence:
                return SourceLocation(str(Path(path).resolve()), lineno, col)
            start = col + 1
    raise AssertionError(f"{needle!r} (#{occurrence}) not found in {path}")


def def_location(path: str, name: str) -> SourceLocation:
    """Name-token location of ``def <name>``."""
    loc = locate(path, f"def {name}(")
    return SourceLocation(loc.path, loc.line, loc.column + len("def "))


def ref(
    path: str,
    call: str,
    enclosing: Optional[str] = None,
    occurrence: int = 1,
) -> RawReference:
    """A raw reference at *call* inside function *enclosing* (or module)."""
    call_loc = locate(path, call, occurrence)
    if enclosing is None:
        return RawReference(call_loc)
    return RawReference(call_loc, def_location(path, enclosing), enclosing)


# ── Fake oracle ──────────────────────────────────────────────────

Answer = Union[Sequence[RawReference], BaseException, Callable[[TaskSymbol, int], Any]]


class FakeOracle(AnalysisOracle):
    """Scripted oracle keyed by task qualname.

    An answer is either a sequence of references, an exception instance
    raised on every attempt, or ``fn(symbol, attempt)`` returning
    references or raising.
    """

    name = "fake"

    def __init__(
        self,
        answers: Optional[Dict[str, Answer]] = None,
        concurrency: int = 4,
        unavailable: bool = False,
        on_query: Optional[Callable[[TaskSymbol], None]] = None,
        diagnostics: Sequence[Diagnostic] = (),
    ) -> None:
        self.answers: Dict[str, Answer] = dict(answers or {})
        self.concurrency = concurrency
        self.unavailable = unavailable
        self.on_query = on_query
        self.diagnostics = list(diagnostics)
        self.calls: Counter = Counter()
        self.opened = 0
        self.closed = 0
        self._lock = threading.Lock()

    @property
    def max_concurrency(self) -> int:
        return self.concurrency

    def open(self) -> None:
        if self.unavailable:
            raise OracleUnavailable("fake oracle is down")
        self.opened += 1

    def close(self) -> None:
        self.closed += 1

    def drain_diagnostics(self) -> List[Diagnostic]:
        drained, self.diagnostics = self.diagnostics, []
        return drained

    def find_call_sites(self, symbol: TaskSymbol) -> List[RawReference]:
        with self._lock:
            self.calls[symbol.qualname] += 1
            attempt = self.calls[symbol.qualname]
        if self.on_query is not None:
            self.on_query(symbol)
        answer = self.answers.get(symbol.qualname, ())
        if isinstance(answer, BaseException):
            raise answer
        if callable(answer):
            return list(answer(symbol, attempt))
        return list(answer)


# ── Fixtures ─────────────────────────────────────────────────────

@pytest.fixture
def syntax():
    return SyntaxCache()


class SleepRecorder(list):
    """Replacement for ``time.sleep`` that records instead of sleeping."""

    def __call__(self, seconds: float) -> None:
        self.append(seconds)


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def scenario_tree(tmp_path):
    """The five end-to-end scenarios, one module each."""
    return write_tree(tmp_path, {
        "scen_a.py": '''
            from celery import shared_task

            @shared_task
            def foo(x):
                return x

            @shared_task
            def bar(x):
                foo.delay(x)
        ''',
        "scen_b.py": '''
            from celery import shared_task

            @shared_task
            def foo(x):
                return x

            @shared_task
            def bar(x):
                if x:
                    foo.delay(x)
        ''',
        "scen_c.py": '''
            from celery import shared_task

            @shared_task
            def foo(x):
                return x

            @shared_task
            def bar(items, ready):
                if ready:
                    for item in items:
                        foo.delay(item)
        ''',
        "scen_d.py": '''
            from celery import shared_task

            @shared_task
            def foo(x):
                return x

            @shared_task
            def bar(x):
                foo.delay(x)
                foo.delay(x + 1)
        ''',
        "scen_e.py": '''
            from celery import shared_task

            @shared_task
            def foo(x):
                return x

            @shared_task
            def bar(x):
                foo.delay(x)
        ''',
    })
