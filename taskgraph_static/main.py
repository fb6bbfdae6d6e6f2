#!/usr/bin/env python3
"""taskgraph_static/main.py: CLI entry-point for taskgraph-static.

Usage examples
--------------
    # Build the task call graph of a source tree and print a summary
    python -m taskgraph_static analyze src/

    # Graphviz DOT for every ``@app.task`` / ``@shared_task`` in two packages
    python -m taskgraph_static analyze shop/ billing/ -f dot -o tasks.dot

    # Custom annotation, language-server oracle, rendered SVG
    python -m taskgraph_static analyze src/ -a turbo_tasks.function \\
        --oracle lsp --lsp-command "pylsp" --render svg -o build/tasks

    # List discovered tasks
    python -m taskgraph_static tasks src/

    # Every call site of one task, with its control path
    python -m taskgraph_static explain src/ --task orders.settle

Exit codes
----------
    0   Success.
    1   Results are incomplete and ``--strict`` was given (partial tasks,
        skipped units or approximate edges).
    2   Infrastructure failure (missing path, oracle unavailable, bad
        configuration).
    130 Interrupted.

The module doubles as ``python -m taskgraph_static`` via the companion
``taskgraph_static/__main__.py`` which simply calls :func:`main`.
"""

from __future__ import annotations

import argparse
import logging
import sys
import textwrap
import threading
import time
from pathlib import Path
from typing import List, Optional, Sequence, TextIO

from . import __version__, package_info
from .ast_oracle import AstIndexOracle
from .callgraph import CallGraph, CallGraphBuilder, build_callgraph
from .config import AnalysisConfig
from .context import ControlContextExtractor
from .errors import AnalysisCancelled, OracleUnavailable
from .export import EXPORTERS, export, render
from .lsp_oracle import LspOracle
from .oracle import AnalysisOracle
from .registry import TaskRegistry, iter_source_files
from .syntax import SyntaxCache

_log = logging.getLogger("taskgraph_static")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_INCOMPLETE: int = 1
EXIT_INFRA: int = 2
EXIT_INTERRUPTED: int = 130


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int) -> None:
    """Set up the package logger.

    Parameters
    ----------
    verbosity:
        0 → WARNING, 1 → INFO, 2+ → DEBUG.
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root = logging.getLogger("taskgraph_static")
    for old in list(root.handlers):
        root.removeHandler(old)
    root.setLevel(level)
    root.addHandler(handler)


def _resolve_path(raw: str, label: str = "file") -> Path:
    """Resolve *raw* to an absolute ``Path``, raising on missing files."""
    p = Path(raw).expanduser().resolve()
    if not p.exists():
        _log.error("%s not found: %s", label, p)
        raise SystemExit(EXIT_INFRA)
    return p


def _open_output(dest: Optional[str]) -> TextIO:
    """Return a writable text stream.

    *dest* ``None`` or ``"-"`` → ``sys.stdout``; otherwise open the path
    for writing (creating parent directories as needed).
    """
    if dest is None or dest == "-":
        return sys.stdout
    p = Path(dest).expanduser().resolve()
    p.parent.mkdir(parents=True, exist_ok=True)
    return open(p, "w", encoding="utf-8")


def _config_from_args(args: argparse.Namespace) -> AnalysisConfig:
    config = AnalysisConfig()
    overrides = {}
    if args.annotations:
        overrides["annotations"] = args.annotations
    if args.exclude:
        overrides["exclude"] = args.exclude
    for attr, key in (
        ("workers", "max_workers"),
        ("retries", "retry_attempts"),
        ("query_timeout", "query_timeout"),
        ("prepare_attempts", "prepare_attempts"),
    ):
        value = getattr(args, attr, None)
        if value is not None:
            overrides[key] = value
    if overrides:
        config = config.replace(**overrides)
    problems = config.validate()
    if problems:
        for problem in problems:
            _log.error("invalid configuration: %s", problem)
        raise SystemExit(EXIT_INFRA)
    return config


def _roots(args: argparse.Namespace) -> List[Path]:
    return [_resolve_path(r, "source root") for r in args.roots]


def _make_oracle(
    args: argparse.Namespace,
    roots: List[Path],
    config: AnalysisConfig,
    syntax: SyntaxCache,
) -> AnalysisOracle:
    if getattr(args, "oracle", "ast") == "lsp":
        if not args.lsp_command:
            _log.error("--oracle lsp needs --lsp-command")
            raise SystemExit(EXIT_INFRA)
        workspace = roots[0] if roots[0].is_dir() else roots[0].parent
        return LspOracle(
            args.lsp_command,
            workspace,
            request_timeout=config.query_timeout,
            prepare_attempts=config.prepare_attempts,
            syntax=syntax,
        )
    return AstIndexOracle(
        roots, syntax=syntax, exclude=config.exclude,
        dispatch_attributes=config.dispatch_attributes,
    )


# ===========================================================================
# Sub-command implementations
# ===========================================================================

def cmd_analyze(args: argparse.Namespace) -> int:
    """Build the task call graph and write it in the requested format."""
    roots = _roots(args)
    config = _config_from_args(args)
    syntax = SyntaxCache()
    units = list(iter_source_files(roots, config.exclude))
    _log.info("analysing %d source unit(s)", len(units))

    cancel = threading.Event()
    t0 = time.monotonic()
    try:
        with _make_oracle(args, roots, config, syntax) as oracle:
            graph = build_callgraph(units, oracle, config, syntax=syntax, cancel_event=cancel)
    except OracleUnavailable as exc:
        _log.error("oracle unavailable: %s", exc.message)
        return EXIT_INFRA
    except KeyboardInterrupt:
        cancel.set()
        raise
    _log.info("analysis finished in %.2fs", time.monotonic() - t0)

    if args.render:
        target = args.output or "taskgraph"
        try:
            render(graph, target, fmt=args.render, title=", ".join(str(r) for r in roots))
        except RuntimeError as exc:
            _log.error("%s", exc)
            return EXIT_INFRA
    else:
        out = _open_output(args.output)
        try:
            out.write(export(graph, args.format))
            out.write("\n")
        finally:
            if out is not sys.stdout:
                out.close()

    for diagnostic in graph.diagnostics:
        _log.info("%s", diagnostic)
    if args.strict and not graph.complete:
        _log.warning(
            "incomplete graph: %d partial task(s), %d skipped unit(s), %d approximate edge(s)",
            len(graph.partial_symbols), len(graph.skipped_units),
            sum(1 for e in graph.edges if e.approximate),
        )
        return EXIT_INCOMPLETE
    return EXIT_OK


def cmd_tasks(args: argparse.Namespace) -> int:
    """List discovered task functions."""
    roots = _roots(args)
    config = _config_from_args(args)
    registry = TaskRegistry(config.annotations)
    result = registry.discover(iter_source_files(roots, config.exclude))

    out = _open_output(getattr(args, "output", None))
    try:
        for symbol in result.symbols:
            tags = f"  [{', '.join(symbol.tags)}]" if symbol.tags else ""
            prefix = "async " if symbol.is_async else ""
            out.write(f"{prefix}{symbol.qualname}{tags}  {symbol.location}\n")
        for path in result.skipped:
            out.write(f"skipped: {path}\n")
    finally:
        if out is not sys.stdout:
            out.close()
    return EXIT_OK


def cmd_explain(args: argparse.Namespace) -> int:
    """Print every classified call site of one task."""
    roots = _roots(args)
    config = _config_from_args(args)
    syntax = SyntaxCache()
    units = list(iter_source_files(roots, config.exclude))
    extractor = ControlContextExtractor(syntax)

    try:
        with _make_oracle(args, roots, config, syntax) as oracle:
            builder = CallGraphBuilder(
                TaskRegistry(config.annotations, syntax), oracle, units, config,
                extractor=extractor,
            )
            graph: CallGraph = builder.build()
    except OracleUnavailable as exc:
        _log.error("oracle unavailable: %s", exc.message)
        return EXIT_INFRA

    matches = graph.find_tasks(args.task)
    if not matches:
        _log.error("no task named %s", args.task)
        return EXIT_INFRA

    out = _open_output(getattr(args, "output", None))
    try:
        for node in matches:
            flag = "  (partial: %s)" % node.partial_reason if node.partial else ""
            out.write(f"{node.name}  {node.location}{flag}\n")
            edges = graph.in_edges(node.node_id)
            if not edges:
                out.write("  no known callers\n")
            for edge in edges:
                caller = graph.node(edge.caller_id)
                approx = " approximate" if edge.approximate else ""
                out.write(
                    f"  from {caller.name} ({caller.kind.value}): "
                    f"{edge.multiplicity.value}{approx}\n"
                )
                for site in edge.sites:
                    text = syntax.peek(site.location.path)
                    line = text.line_text(site.location.line).strip() if text else ""
                    out.write(f"    {site.location}  {site.multiplicity.value}  {line}\n")
                    if site.approximate:
                        out.write(f"      unresolved: {site.reason}\n")
                    else:
                        out.write(f"      path: {site.path}\n")
    finally:
        if out is not sys.stdout:
            out.close()
    return EXIT_OK


# ===========================================================================
# Argument parser
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    """Construct the full CLI argument parser with subcommands."""

    # --- Top-level parser --------------------------------------------------
    parser = argparse.ArgumentParser(
        prog="taskgraph-static",
        description=(
            "Static call graph of task functions, with per-edge execution\n"
            "multiplicity derived from the enclosing control structure."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              taskgraph-static analyze src/ -f dot -o tasks.dot
              taskgraph-static analyze src/ --oracle lsp --lsp-command pylsp
              taskgraph-static tasks src/ -a turbo_tasks.function
              taskgraph-static explain src/ --task orders.settle
        """),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug).",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    # Shared argument groups (reusable) ------------------------------------

    def _add_source_args(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "roots",
            nargs="+",
            metavar="ROOT",
            help="Source files or directories to scan.",
        )
        p.add_argument(
            "-a", "--annotation",
            dest="annotations",
            action="append",
            default=None,
            metavar="NAME",
            help="Task decorator name, repeatable (default: task, shared_task).",
        )
        p.add_argument(
            "--exclude",
            action="append",
            default=None,
            metavar="GLOB",
            help="Skip files or directories matching GLOB, repeatable.",
        )
        p.add_argument(
            "-o", "--output",
            default=None,
            metavar="FILE",
            help='Output file ("-" or omit for stdout).',
        )

    def _add_oracle_args(p: argparse.ArgumentParser) -> None:
        g = p.add_argument_group("oracle")
        g.add_argument(
            "--oracle",
            choices=["ast", "lsp"],
            default="ast",
            help="Reference oracle (default: ast).",
        )
        g.add_argument(
            "--lsp-command",
            default=None,
            metavar="CMD",
            help='Language server command line, e.g. "pylsp".',
        )
        g.add_argument(
            "--workers",
            type=int,
            default=None,
            metavar="N",
            help="Maximum parallel oracle queries (default: 8).",
        )
        g.add_argument(
            "--retries",
            type=int,
            default=None,
            metavar="N",
            help="Attempts per timed-out query (default: 3).",
        )
        g.add_argument(
            "--query-timeout",
            type=float,
            default=None,
            metavar="S",
            help="Seconds per oracle request (default: 30).",
        )
        g.add_argument(
            "--prepare-attempts",
            type=int,
            default=None,
            metavar="N",
            help="Call-hierarchy preparation attempts per task (lsp only, default: 5).",
        )

    # --- analyze -----------------------------------------------------------
    p_analyze = subparsers.add_parser(
        "analyze",
        aliases=["analyse"],
        help="Build the task call graph.",
        description=(
            "Discover task functions, resolve their call sites through the "
            "oracle, classify every edge and write the graph."
        ),
    )
    _add_source_args(p_analyze)
    _add_oracle_args(p_analyze)
    p_analyze.add_argument(
        "-f", "--format",
        choices=sorted(EXPORTERS),
        default="summary",
        help="Output format (default: summary).",
    )
    p_analyze.add_argument(
        "--render",
        default=None,
        metavar="FMT",
        help="Render with Graphviz to FMT (svg, png, pdf…) at --output.",
    )
    p_analyze.add_argument(
        "--strict",
        action="store_true",
        help="Exit with 1 when any result is partial or approximate.",
    )
    p_analyze.set_defaults(func=cmd_analyze)

    # --- tasks -------------------------------------------------------------
    p_tasks = subparsers.add_parser(
        "tasks",
        help="List discovered task functions.",
    )
    _add_source_args(p_tasks)
    p_tasks.set_defaults(func=cmd_tasks)

    # --- explain -----------------------------------------------------------
    p_explain = subparsers.add_parser(
        "explain",
        help="Show every call site of one task with its control path.",
    )
    _add_source_args(p_explain)
    _add_oracle_args(p_explain)
    p_explain.add_argument(
        "--task",
        required=True,
        metavar="QUALNAME",
        help="Task qualname or a dotted suffix of it.",
    )
    p_explain.set_defaults(func=cmd_explain)

    return parser


# ===========================================================================
# Main entry point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the taskgraph-static CLI.

    Parameters
    ----------
    argv:
        Command-line arguments.  ``None`` → ``sys.argv[1:]``.

    Returns
    -------
    int
        Exit code (see module docstring for semantics).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)
    _log.debug("package info: %s", package_info())

    # No subcommand given → print help.
    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    try:
        return args.func(args)
    except (KeyboardInterrupt, AnalysisCancelled):
        _log.info("Interrupted by user.")
        return EXIT_INTERRUPTED
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else EXIT_INFRA
    except Exception as exc:
        _log.error("Unhandled exception: %s", exc, exc_info=True)
        return EXIT_INFRA


# ---------------------------------------------------------------------------
# Module execution support
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    raise SystemExit(main())
