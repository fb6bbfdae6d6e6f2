"""
taskgraph_static.registry
=========================

Task discovery: which functions in a source tree carry the task annotation.

    roots ──► iter_source_files ──► units ──► TaskRegistry.discover ──► DiscoveryResult
                                                 │
                                                 ├── symbols     (sorted, deduplicated)
                                                 ├── skipped     (units that failed to parse)
                                                 └── diagnostics (warnings for the report)

An annotation pattern matches a decorator whose dotted name equals the
pattern or ends with ``"." + pattern``, so ``task`` matches ``@task``,
``@app.task`` and ``@celery_app.task(bind=True)``, and
``turbo_tasks.function`` matches ``@turbo_tasks.function(fs)``.

Only module-level and class-level functions are catalogued.  A decorated
function nested inside another function is a closure and is ignored.

A cheap textual count of decorator lines is compared with the parsed count
for every unit; a disagreement is reported as a warning diagnostic since it
usually means a decorator was aliased or nested out of reach.
"""

from __future__ import annotations

import ast
import fnmatch
import logging
import os
import re
from pathlib import Path
from typing import (
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)

from pathspec import GitIgnoreSpec

from .errors import Diagnostic, DiscoveryError, ErrorCode, Severity
from .symbols import SourceLocation, TaskSymbol
from .syntax import Definition, ParsedModule, SyntaxCache, decorator_name

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_ANNOTATIONS",
    "iter_source_files",
    "DiscoveryResult",
    "TaskRegistry",
]

DEFAULT_ANNOTATIONS: Tuple[str, ...] = ("task", "shared_task")

_DECORATOR_LINE = re.compile(r"^\s*@\s*([\w.]+)")


# ---------------------------------------------------------------------------
# Source-unit enumeration
# ---------------------------------------------------------------------------

def _excluded(path: Path, patterns: Sequence[str]) -> bool:
    text = path.as_posix()
    return any(
        fnmatch.fnmatch(text, pat) or fnmatch.fnmatch(path.name, pat)
        for pat in patterns
    )


def _read_ignore_lines(path: Path) -> List[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as exc:
        logger.warning("cannot read %s: %s", path, exc)
        return []


def _gitignore_spec(base: Path) -> Optional[GitIgnoreSpec]:
    """Ignore rules of *base*: its ``.gitignore`` plus ``.git/info/exclude``."""
    lines: List[str] = []
    for candidate in (base / ".gitignore", base / ".git" / "info" / "exclude"):
        if candidate.is_file():
            lines.extend(_read_ignore_lines(candidate))
    if not lines:
        return None
    return GitIgnoreSpec.from_lines(lines)


def iter_source_files(
    roots: Iterable[Union[str, os.PathLike]],
    exclude: Sequence[str] = (),
) -> Iterator[str]:
    """Yield every Python source file under *roots* exactly once.

    A root may be a single file or a directory.  Directory roots skip
    hidden directories, *exclude* globs and whatever the root's
    ``.gitignore`` ignores.  Missing roots are logged and skipped.  Results
    are resolved paths, yielded in sorted order per root.
    """
    seen: Set[str] = set()
    for root in roots:
        base = Path(root)
        if not base.exists():
            logger.warning("source root does not exist: %s", base)
            continue
        if base.is_file():
            candidates: Iterable[Path] = [base]
        else:
            candidates = _walk(base, exclude, _gitignore_spec(base))
        for candidate in candidates:
            if candidate.suffix != ".py" or _excluded(candidate, exclude):
                continue
            resolved = str(candidate.resolve())
            key = os.path.normcase(resolved)
            if key in seen:
                continue
            seen.add(key)
            yield resolved


def _walk(base: Path, exclude: Sequence[str], ignore: Optional[GitIgnoreSpec]) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(base):
        here = Path(dirpath)
        rel = here.relative_to(base)
        kept = []
        for d in sorted(dirnames):
            if d.startswith(".") or _excluded(here / d, exclude):
                continue
            if ignore is not None and ignore.match_file((rel / d).as_posix() + "/"):
                logger.debug("ignored directory %s", here / d)
                continue
            kept.append(d)
        dirnames[:] = kept
        for name in sorted(filenames):
            if ignore is not None and ignore.match_file((rel / name).as_posix()):
                continue
            yield here / name


# ---------------------------------------------------------------------------
# DiscoveryResult
# ---------------------------------------------------------------------------

class DiscoveryResult:
    """Outcome of one discovery pass.

    Attributes
    ----------
    symbols : tuple[TaskSymbol, ...]
        Discovered tasks, sorted by ``symbol_id``.
    skipped : tuple[str, ...]
        Paths of units that could not be read or parsed.
    diagnostics : tuple[Diagnostic, ...]
    """

    __slots__ = ("symbols", "skipped", "diagnostics", "_by_id",
                 "_by_location", "_by_line")

    def __init__(
        self,
        symbols: Iterable[TaskSymbol],
        skipped: Iterable[str] = (),
        diagnostics: Iterable[Diagnostic] = (),
    ) -> None:
        self.symbols: Tuple[TaskSymbol, ...] = tuple(
            sorted(symbols, key=lambda s: s.symbol_id)
        )
        self.skipped: Tuple[str, ...] = tuple(skipped)
        self.diagnostics: Tuple[Diagnostic, ...] = tuple(diagnostics)
        self._by_id: Dict[str, TaskSymbol] = {s.symbol_id: s for s in self.symbols}
        self._by_location: Dict[Tuple[str, int, int], TaskSymbol] = {
            s.location.canonical(): s for s in self.symbols
        }
        self._by_line: Dict[Tuple[str, int], TaskSymbol] = {}
        for s in self.symbols:
            self._by_line.setdefault(s.location.line_key(), s)

    def by_id(self) -> Dict[str, TaskSymbol]:
        return dict(self._by_id)

    def get(self, symbol_id: str) -> Optional[TaskSymbol]:
        return self._by_id.get(symbol_id)

    def lookup_location(self, location: SourceLocation) -> Optional[TaskSymbol]:
        """The task declared at *location*, if any.

        An exact name-token match wins; otherwise any task declared on the
        same line of the same file.
        """
        hit = self._by_location.get(location.canonical())
        if hit is not None:
            return hit
        return self._by_line.get(location.line_key())

    def find(self, qualname: str) -> List[TaskSymbol]:
        """Tasks whose qualname equals or ends with ``"." + qualname``."""
        return [
            s for s in self.symbols
            if s.qualname == qualname or s.qualname.endswith("." + qualname)
        ]

    def __len__(self) -> int:
        return len(self.symbols)

    def __iter__(self) -> Iterator[TaskSymbol]:
        return iter(self.symbols)

    def __repr__(self) -> str:
        return (
            f"DiscoveryResult(symbols={len(self.symbols)}, "
            f"skipped={len(self.skipped)})"
        )


# ---------------------------------------------------------------------------
# TaskRegistry
# ---------------------------------------------------------------------------

class TaskRegistry:
    """Finds task-annotated functions in a set of source units."""

    def __init__(
        self,
        annotations: Sequence[str] = DEFAULT_ANNOTATIONS,
        syntax: Optional[SyntaxCache] = None,
    ) -> None:
        if not annotations:
            raise ValueError("at least one annotation pattern is required")
        self.annotations: Tuple[str, ...] = tuple(annotations)
        self.syntax = syntax if syntax is not None else SyntaxCache()

    # ----- matching ---------------------------------------------------------

    def matches(self, dotted: Optional[str]) -> bool:
        if not dotted:
            return False
        return any(
            dotted == pat or dotted.endswith("." + pat)
            for pat in self.annotations
        )

    def task_decorator(self, node: ast.AST) -> Optional[ast.expr]:
        for deco in getattr(node, "decorator_list", ()):
            if self.matches(decorator_name(deco)):
                return deco
        return None

    @staticmethod
    def decorator_tags(deco: ast.expr) -> Tuple[str, ...]:
        """Identifier arguments of a decorator call, in source order."""
        if not isinstance(deco, ast.Call):
            return ()
        tags: List[str] = []
        for arg in deco.args:
            name = decorator_name(arg)
            if name is not None:
                tags.append(name)
        for kw in deco.keywords:
            if kw.arg is not None:
                tags.append(kw.arg)
        return tuple(tags)

    # ----- discovery --------------------------------------------------------

    def discover(self, units: Iterable[Union[str, os.PathLike]]) -> DiscoveryResult:
        """Catalogue the tasks declared in *units*.

        Units that fail to load are skipped and reported.  A declaration
        reached twice (the same file listed under two names) is kept once.
        """
        found: Dict[Tuple[str, int, int], TaskSymbol] = {}
        skipped: List[str] = []
        diagnostics: List[Diagnostic] = []
        visited: Set[str] = set()

        for unit in units:
            key = os.path.normcase(str(Path(unit).resolve()))
            if key in visited:
                continue
            visited.add(key)
            try:
                module = self.syntax.get(unit)
            except DiscoveryError as exc:
                logger.warning("skipping %s: %s", exc.path or unit, exc.message)
                skipped.append(exc.path or str(unit))
                diagnostics.append(Diagnostic.from_error(exc, subject=exc.path or str(unit)))
                continue

            symbols = list(self._symbols_in(module))
            for symbol in symbols:
                canon = symbol.location.canonical()
                if canon in found:
                    logger.debug("duplicate declaration of %s ignored", symbol)
                    continue
                found[canon] = symbol

            expected = self._textual_count(module)
            if expected != len(symbols):
                msg = (
                    f"decorator heuristic found {expected} task annotation(s) "
                    f"but {len(symbols)} task(s) were catalogued"
                )
                logger.warning("%s: %s", module.path, msg)
                diagnostics.append(Diagnostic(
                    Severity.WARNING, ErrorCode.HEURISTIC_MISMATCH, msg,
                    subject=module.path,
                ))

        logger.info("discovered %d task(s) in %d unit(s), %d skipped",
                    len(found), len(visited), len(skipped))
        return DiscoveryResult(found.values(), skipped, diagnostics)

    def _symbols_in(self, module: ParsedModule) -> Iterator[TaskSymbol]:
        for definition in module.top_level_definitions():
            deco = self.task_decorator(definition.node)
            if deco is None:
                continue
            yield self._make_symbol(definition, deco)

    def _make_symbol(self, definition: Definition, deco: ast.expr) -> TaskSymbol:
        symbol = TaskSymbol(
            qualname=definition.qualname,
            name=definition.name,
            location=definition.location,
            tags=self.decorator_tags(deco),
            is_async=isinstance(definition.node, ast.AsyncFunctionDef),
        )
        logger.debug("task %s at %s", symbol.qualname, symbol.location)
        return symbol

    def _textual_count(self, module: ParsedModule) -> int:
        count = 0
        for line in module.lines:
            m = _DECORATOR_LINE.match(line)
            if m and self.matches(m.group(1)):
                count += 1
        return count
