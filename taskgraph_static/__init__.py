"""
taskgraph_static: Static Task Call Graphs with Execution Multiplicity
======================================================================

Recovers the call graph among task functions (``@app.task``,
``@shared_task``, or any configured decorator) of a Python code base and
labels every edge with how often the callee may run per invocation of the
caller: ``1``, ``0..1`` or ``0..*``.

Core modules
------------
symbols
    Value types: source locations, task symbols, raw references, call sites.
multiplicity
    The multiplicity lattice, control frames, fold and join.
syntax
    Shared parsed-source cache and column conversions.
registry
    Source-unit enumeration and task discovery.
context
    Control-context extraction for a call site.
oracle
    Reference-oracle interface and the retrying client.
ast_oracle
    In-process oracle backed by an ``ast`` reference index.
lsp_oracle
    Oracle backed by a language server's call hierarchy.
callgraph
    The builder and the immutable call graph.
config
    Analysis tuning knobs.
errors
    Error taxonomy and diagnostics.

Output adapters
---------------
export
    DOT, Cypher, JSON and S-expression writers, Graphviz rendering.

Quick start
-----------
>>> from taskgraph_static import AstIndexOracle, build_callgraph, iter_source_files
>>> units = list(iter_source_files(["src/"]))
>>> with AstIndexOracle(["src/"]) as oracle:
...     graph = build_callgraph(units, oracle)
>>> for caller, callee, mult in graph.edge_triples():
...     print(caller, "->", callee, mult.value)

Package layout
--------------
::

    taskgraph_static/
    ├── __init__.py            ← this file
    ├── __main__.py
    ├── main.py
    ├── errors.py
    ├── symbols.py
    ├── multiplicity.py
    ├── syntax.py
    ├── registry.py
    ├── context.py
    ├── oracle.py
    ├── ast_oracle.py
    ├── lsp_oracle.py
    ├── callgraph.py
    ├── config.py
    └── export.py
"""

from __future__ import annotations

import importlib
import logging
import sys
import warnings
from typing import TYPE_CHECKING, List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.1.0"
__all__: List[str] = []          # populated incrementally below

_log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Internal registry: (module_name, list_of_names_to_import)
#
#   CORE  - always imported; failure is fatal
#   ADDON - imported eagerly but failure only warns (package still usable)
# ---------------------------------------------------------------------------

_CORE_MODULES = {
    "errors": [
        "TaskGraphError",
        "DiscoveryError",
        "OracleError",
        "OracleUnavailable",
        "OracleTimeout",
        "OracleQueryError",
        "UnresolvedContext",
        "AnalysisCancelled",
        "Diagnostic",
    ],
    "symbols": [
        "SourceLocation",
        "TaskSymbol",
        "RawReference",
        "CallSite",
    ],
    "multiplicity": [
        "Multiplicity",
        "FrameKind",
        "ControlFrame",
        "ControlContextPath",
        "fold",
        "join",
        "join_sites",
        "classify",
    ],
    "syntax": [
        "SyntaxCache",
        "ParsedModule",
    ],
    "registry": [
        "TaskRegistry",
        "DiscoveryResult",
        "iter_source_files",
    ],
    "context": [
        "ControlContextExtractor",
    ],
    "oracle": [
        "AnalysisOracle",
        "OracleClient",
        "RetryPolicy",
        "QueryResult",
    ],
    "ast_oracle": [
        "AstIndexOracle",
    ],
    "lsp_oracle": [
        "LspOracle",
    ],
    "config": [
        "AnalysisConfig",
    ],
    "callgraph": [
        "CallGraph",
        "CallGraphNode",
        "CallEdge",
        "CallGraphBuilder",
        "NodeKind",
        "BuildStage",
        "build_callgraph",
        "callgraph_summary",
        "find_recursive_tasks",
    ],
}

_ADDON_MODULES = {
    "export": [
        "to_dot",
        "to_cypher",
        "to_json",
        "to_sexp",
        "render",
        "EXPORTERS",
    ],
}

# ---------------------------------------------------------------------------
# Lazy-import helper
# ---------------------------------------------------------------------------

def _import_names(
    module_rel_name: str,
    names: List[str],
    *,
    fatal: bool = True,
) -> None:
    """Import *names* from a submodule and bind them in the package namespace.

    Parameters
    ----------
    module_rel_name:
        Module name relative to this package (e.g. ``"callgraph"``).
    names:
        Public symbols to re-export.
    fatal:
        If ``True``, an ``ImportError`` propagates.  If ``False``, a warning
        is issued and the names are skipped (addon tier).
    """
    fq_name = f"{__name__}.{module_rel_name}"
    try:
        mod = importlib.import_module(fq_name)
    except ImportError as exc:
        if fatal:
            raise ImportError(
                f"taskgraph_static: required submodule '{module_rel_name}' "
                f"failed to import: {exc}"
            ) from exc
        warnings.warn(
            f"taskgraph_static: optional submodule '{module_rel_name}' "
            f"could not be imported ({exc}); related symbols will be unavailable.",
            ImportWarning,
            stacklevel=2,
        )
        _log.debug("Skipped optional module %s: %s", module_rel_name, exc)
        return

    current_module = sys.modules[__name__]
    for name in names:
        obj = getattr(mod, name, None)
        if obj is None:
            msg = f"taskgraph_static.{module_rel_name} does not export '{name}'"
            if fatal:
                raise AttributeError(msg)
            _log.warning(msg)
            continue
        setattr(current_module, name, obj)
        __all__.append(name)

    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)

# ---------------------------------------------------------------------------
# Eagerly import everything at package load time
# ---------------------------------------------------------------------------

for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names, fatal=True)

for _mod, _names in _ADDON_MODULES.items():
    _import_names(_mod, _names, fatal=False)

del _mod, _names

# ---------------------------------------------------------------------------
# Package-level utilities
# ---------------------------------------------------------------------------

def list_submodules() -> List[str]:
    """Return the names of all submodules in the package (core + addon)."""
    return sorted(set(list(_CORE_MODULES.keys()) + list(_ADDON_MODULES.keys())))


def package_info() -> dict:
    """Return a dict of metadata about the installed package.

    Useful in bug reports and ``-vv`` logs.
    """
    loaded = []
    missing = []
    for mod_name in list_submodules():
        fq = f"{__name__}.{mod_name}"
        if fq in sys.modules:
            loaded.append(mod_name)
        else:
            missing.append(mod_name)

    return {
        "package": __name__,
        "version": __version__,
        "python": sys.version,
        "loaded_submodules": loaded,
        "missing_submodules": missing,
    }


__all__ += ["list_submodules", "package_info", "__version__"]

# ---------------------------------------------------------------------------
# TYPE_CHECKING block: gives IDEs full visibility without runtime cost
# ---------------------------------------------------------------------------

if TYPE_CHECKING:
    from .errors import (
        TaskGraphError as TaskGraphError,
        DiscoveryError as DiscoveryError,
        OracleError as OracleError,
        OracleUnavailable as OracleUnavailable,
        OracleTimeout as OracleTimeout,
        OracleQueryError as OracleQueryError,
        UnresolvedContext as UnresolvedContext,
        AnalysisCancelled as AnalysisCancelled,
        Diagnostic as Diagnostic,
    )
    from .symbols import (
        SourceLocation as SourceLocation,
        TaskSymbol as TaskSymbol,
        RawReference as RawReference,
        CallSite as CallSite,
    )
    from .multiplicity import (
        Multiplicity as Multiplicity,
        FrameKind as FrameKind,
        ControlFrame as ControlFrame,
        ControlContextPath as ControlContextPath,
        fold as fold,
        join as join,
        join_sites as join_sites,
        classify as classify,
    )
    from .syntax import (
        SyntaxCache as SyntaxCache,
        ParsedModule as ParsedModule,
    )
    from .registry import (
        TaskRegistry as TaskRegistry,
        DiscoveryResult as DiscoveryResult,
        iter_source_files as iter_source_files,
    )
    from .context import ControlContextExtractor as ControlContextExtractor
    from .oracle import (
        AnalysisOracle as AnalysisOracle,
        OracleClient as OracleClient,
        RetryPolicy as RetryPolicy,
        QueryResult as QueryResult,
    )
    from .ast_oracle import AstIndexOracle as AstIndexOracle
    from .lsp_oracle import LspOracle as LspOracle
    from .config import AnalysisConfig as AnalysisConfig
    from .callgraph import (
        CallGraph as CallGraph,
        CallGraphNode as CallGraphNode,
        CallEdge as CallEdge,
        CallGraphBuilder as CallGraphBuilder,
        NodeKind as NodeKind,
        BuildStage as BuildStage,
        build_callgraph as build_callgraph,
        callgraph_summary as callgraph_summary,
        find_recursive_tasks as find_recursive_tasks,
    )
    from .export import (
        to_dot as to_dot,
        to_cypher as to_cypher,
        to_json as to_json,
        to_sexp as to_sexp,
        render as render,
        EXPORTERS as EXPORTERS,
    )
