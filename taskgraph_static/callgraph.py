"""
taskgraph_static.callgraph
==========================

Builds the task call graph and annotates every edge with a multiplicity.

The call graph is a directed graph where:

- **Nodes** are tasks (every discovered :class:`TaskSymbol`), plus
  *external* nodes for the non-task functions and module-level code that
  call tasks.  External nodes are part of the graph's boundary; they are
  never expanded further.
- **Edges** run from a caller scope to a task and carry the joined
  :class:`Multiplicity` of all call sites between the two, the sites
  themselves, and whether any of them is approximate.

Build stages
------------
::

    UNINITIALIZED ─► DISCOVERING ─► RESOLVING ─► CLASSIFYING ─► MERGED
                     registry       oracle        extractor +     join per
                                    (pooled)      fold (pooled)   (caller, callee)

No stage is skipped.  A symbol whose query failed after retries is kept
as a node marked *partial*.  ``OracleUnavailable`` aborts the run before
``MERGED``; so does a set ``cancel_event``, and nothing is merged then.

Worker threads only ever return values; the builder thread is the single
reducer that writes the merge map, one symbol's batch at a time.

Public API
----------
    NodeKind            - TASK / EXTERNAL / MODULE
    BuildStage          - builder state machine
    CallGraphNode       - a node (frozen)
    CallEdge            - a merged (caller, callee) edge (frozen)
    CallGraph           - immutable snapshot with index lookups
    CallGraphBuilder    - the orchestrator
    build_callgraph     - one-call convenience
    callgraph_summary   - human-readable multi-line summary
    find_recursive_tasks - recursive task cycles

Typical usage::

    from taskgraph_static.ast_oracle import AstIndexOracle
    from taskgraph_static.callgraph import build_callgraph
    from taskgraph_static.registry import iter_source_files

    units = list(iter_source_files(["src/"]))
    with AstIndexOracle(["src/"]) as oracle:
        graph = build_callgraph(units, oracle)
    for caller, callee, mult in graph.edge_triples():
        print(f"{caller} -> {callee} [{mult.value}]")
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from .config import AnalysisConfig
from .context import ControlContextExtractor
from .errors import (
    AnalysisCancelled,
    Diagnostic,
    ErrorCode,
    OracleUnavailable,
    Severity,
    TaskGraphError,
    UnresolvedContext,
)
from .multiplicity import ControlContextPath, Multiplicity, classify, join_sites
from .oracle import AnalysisOracle, OracleClient, QueryResult
from .registry import DiscoveryResult, TaskRegistry
from .symbols import CallSite, RawReference, SourceLocation, TaskSymbol
from .syntax import SyntaxCache

logger = logging.getLogger(__name__)

__all__ = [
    "NodeKind",
    "BuildStage",
    "CallGraphNode",
    "CallEdge",
    "CallGraph",
    "CallGraphBuilder",
    "build_callgraph",
    "callgraph_summary",
    "find_recursive_tasks",
]


# ---------------------------------------------------------------------------
# Node kinds / stages
# ---------------------------------------------------------------------------

class NodeKind(enum.Enum):
    """Classification of a call-graph node."""

    TASK      = "task"          # A discovered task
    EXTERNAL  = "external"      # A non-task function calling a task
    MODULE    = "module"        # Module-level code calling a task


class BuildStage(enum.Enum):
    """Builder state machine, in order."""

    UNINITIALIZED = "uninitialized"
    DISCOVERING   = "discovering"
    RESOLVING     = "resolving"
    CLASSIFYING   = "classifying"
    MERGED        = "merged"


_STAGE_ORDER = list(BuildStage)


# ---------------------------------------------------------------------------
# CallGraphNode / CallEdge
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class CallGraphNode:
    """A node in the task call graph.

    Attributes
    ----------
    node_id : str
        ``TaskSymbol.symbol_id`` for tasks, ``external:…`` / ``module:…``
        otherwise.
    name : str
        Qualified name for display.
    kind : NodeKind
    location : SourceLocation or None
    symbol : TaskSymbol or None
        Only set for tasks.
    partial : bool
        The task's call sites could not be fully resolved.
    partial_reason : str
    """

    node_id: str
    name: str
    kind: NodeKind
    location: Optional[SourceLocation] = None
    symbol: Optional[TaskSymbol] = None
    partial: bool = False
    partial_reason: str = ""

    @property
    def is_task(self) -> bool:
        return self.kind is NodeKind.TASK

    @property
    def is_external(self) -> bool:
        return self.kind is not NodeKind.TASK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.node_id,
            "name": self.name,
            "kind": self.kind.value,
            "external": self.is_external,
            "location": self.location.to_dict() if self.location else None,
            "tags": list(self.symbol.tags) if self.symbol else [],
            "partial": self.partial,
            "partial_reason": self.partial_reason,
        }

    def __repr__(self) -> str:
        return f"CallGraphNode({self.name!r}, kind={self.kind.value})"


@dataclass(frozen=True, slots=True)
class CallEdge:
    """All call sites from one caller to one task, joined."""

    caller_id: str
    callee_id: str
    multiplicity: Multiplicity
    approximate: bool = False
    sites: Tuple[CallSite, ...] = ()

    @property
    def key(self) -> Tuple[str, str]:
        return (self.caller_id, self.callee_id)

    def triple(self) -> Tuple[str, str, Multiplicity]:
        return (self.caller_id, self.callee_id, self.multiplicity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "caller": self.caller_id,
            "callee": self.callee_id,
            "multiplicity": self.multiplicity.value,
            "approximate": self.approximate,
            "sites": [site.to_dict() for site in self.sites],
        }

    def __repr__(self) -> str:
        flag = ", approximate" if self.approximate else ""
        return (
            f"CallEdge({self.caller_id} -> {self.callee_id}, "
            f"{self.multiplicity.value}{flag}, sites={len(self.sites)})"
        )


# ---------------------------------------------------------------------------
# CallGraph
# ---------------------------------------------------------------------------

class CallGraph:
    """Immutable task call graph.

    Nodes and edges are stored as two flat tuples sorted by id; every
    lookup goes through index maps built once at construction.

    Attributes
    ----------
    nodes : tuple[CallGraphNode, ...]
    edges : tuple[CallEdge, ...]
    partial_symbols : tuple[str, ...]
        Ids of tasks whose call sites are incomplete.
    skipped_units : tuple[str, ...]
        Source units that could not be parsed.
    diagnostics : tuple[Diagnostic, ...]
    """

    __slots__ = ("nodes", "edges", "partial_symbols", "skipped_units",
                 "diagnostics", "_node_index", "_edge_index", "_out", "_in")

    def __init__(
        self,
        nodes: Iterable[CallGraphNode],
        edges: Iterable[CallEdge],
        partial_symbols: Iterable[str] = (),
        skipped_units: Iterable[str] = (),
        diagnostics: Iterable[Diagnostic] = (),
    ) -> None:
        self.nodes: Tuple[CallGraphNode, ...] = tuple(
            sorted(nodes, key=lambda n: n.node_id)
        )
        self.edges: Tuple[CallEdge, ...] = tuple(sorted(edges, key=lambda e: e.key))
        self.partial_symbols: Tuple[str, ...] = tuple(sorted(partial_symbols))
        self.skipped_units: Tuple[str, ...] = tuple(sorted(skipped_units))
        self.diagnostics: Tuple[Diagnostic, ...] = tuple(diagnostics)

        self._node_index: Dict[str, CallGraphNode] = {n.node_id: n for n in self.nodes}
        self._edge_index: Dict[Tuple[str, str], CallEdge] = {e.key: e for e in self.edges}
        out: Dict[str, List[CallEdge]] = defaultdict(list)
        inc: Dict[str, List[CallEdge]] = defaultdict(list)
        for e in self.edges:
            if e.caller_id not in self._node_index or e.callee_id not in self._node_index:
                raise TaskGraphError(f"edge {e!r} references an unknown node")
            out[e.caller_id].append(e)
            inc[e.callee_id].append(e)
        self._out: Dict[str, Tuple[CallEdge, ...]] = {k: tuple(v) for k, v in out.items()}
        self._in: Dict[str, Tuple[CallEdge, ...]] = {k: tuple(v) for k, v in inc.items()}

    # ----- lookups ----------------------------------------------------------

    def node(self, node_id: str) -> CallGraphNode:
        return self._node_index[node_id]

    def get(self, node_id: str) -> Optional[CallGraphNode]:
        return self._node_index.get(node_id)

    def is_external(self, node_id: str) -> bool:
        return self._node_index[node_id].is_external

    def is_task(self, node_id: str) -> bool:
        return self._node_index[node_id].is_task

    def tasks(self) -> List[CallGraphNode]:
        return [n for n in self.nodes if n.is_task]

    def out_edges(self, node_id: str) -> Tuple[CallEdge, ...]:
        return self._out.get(node_id, ())

    def in_edges(self, node_id: str) -> Tuple[CallEdge, ...]:
        return self._in.get(node_id, ())

    def callees(self, node_id: str) -> List[CallGraphNode]:
        return [self._node_index[e.callee_id] for e in self.out_edges(node_id)]

    def callers(self, node_id: str) -> List[CallGraphNode]:
        return [self._node_index[e.caller_id] for e in self.in_edges(node_id)]

    def edge(self, caller_id: str, callee_id: str) -> Optional[CallEdge]:
        return self._edge_index.get((caller_id, callee_id))

    def edge_triples(self) -> Tuple[Tuple[str, str, Multiplicity], ...]:
        return tuple(e.triple() for e in self.edges)

    def find_tasks(self, qualname: str) -> List[CallGraphNode]:
        """Tasks whose qualname equals or ends with ``"." + qualname``."""
        return [
            n for n in self.tasks()
            if n.name == qualname or n.name.endswith("." + qualname)
        ]

    @property
    def roots(self) -> List[CallGraphNode]:
        """Nodes with no callers."""
        return [n for n in self.nodes if not self.in_edges(n.node_id)]

    @property
    def leaves(self) -> List[CallGraphNode]:
        """Nodes with no callees."""
        return [n for n in self.nodes if not self.out_edges(n.node_id)]

    @property
    def complete(self) -> bool:
        """No partial tasks, no skipped units and no approximate edges."""
        return not (
            self.partial_symbols
            or self.skipped_units
            or any(e.approximate for e in self.edges)
        )

    # ----- whole-graph queries ----------------------------------------------

    def is_self_recursive(self, node_id: str) -> bool:
        return (node_id, node_id) in self._edge_index

    def strongly_connected_components(self) -> List[List[CallGraphNode]]:
        """Compute SCCs using Tarjan's algorithm.

        Returns a list of SCCs in reverse topological order (callees before
        callers).  Each SCC with more than one node is a cycle of tasks
        enqueueing each other.
        """
        index_counter = [0]
        stack: List[str] = []
        lowlink: Dict[str, int] = {}
        index: Dict[str, int] = {}
        on_stack: Set[str] = set()
        result: List[List[CallGraphNode]] = []

        def strongconnect(v: str) -> None:
            index[v] = index_counter[0]
            lowlink[v] = index_counter[0]
            index_counter[0] += 1
            stack.append(v)
            on_stack.add(v)

            for e in self.out_edges(v):
                w = e.callee_id
                if w not in index:
                    strongconnect(w)
                    lowlink[v] = min(lowlink[v], lowlink[w])
                elif w in on_stack:
                    lowlink[v] = min(lowlink[v], index[w])

            if lowlink[v] == index[v]:
                scc: List[CallGraphNode] = []
                while True:
                    w = stack.pop()
                    on_stack.discard(w)
                    scc.append(self._node_index[w])
                    if w == v:
                        break
                result.append(scc)

        for n in self.nodes:
            if n.node_id not in index:
                strongconnect(n.node_id)

        return result

    # ----- statistics -------------------------------------------------------

    def statistics(self) -> Dict[str, Any]:
        """Return a dict with summary statistics."""
        by_kind = {k: 0 for k in NodeKind}
        for n in self.nodes:
            by_kind[n.kind] += 1
        by_mult = {m.value: 0 for m in Multiplicity if m is not Multiplicity.ZERO}
        for e in self.edges:
            by_mult[e.multiplicity.value] = by_mult.get(e.multiplicity.value, 0) + 1
        sccs = self.strongly_connected_components()
        return {
            "tasks": by_kind[NodeKind.TASK],
            "external_callers": by_kind[NodeKind.EXTERNAL],
            "module_callers": by_kind[NodeKind.MODULE],
            "total_nodes": len(self.nodes),
            "total_edges": len(self.edges),
            "exact_edges": sum(1 for e in self.edges if not e.approximate),
            "approximate_edges": sum(1 for e in self.edges if e.approximate),
            "call_sites": sum(len(e.sites) for e in self.edges),
            "edges_by_multiplicity": by_mult,
            "partial_tasks": len(self.partial_symbols),
            "skipped_units": len(self.skipped_units),
            "recursive_sccs": sum(1 for scc in sccs if len(scc) > 1),
            "self_recursive_tasks": sum(
                1 for n in self.nodes if self.is_self_recursive(n.node_id)
            ),
            "root_nodes": len(self.roots),
            "leaf_tasks": sum(1 for n in self.leaves if n.is_task),
        }

    # ----- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "partial_symbols": list(self.partial_symbols),
            "skipped_units": list(self.skipped_units),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "statistics": self.statistics(),
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CallGraph):
            return NotImplemented
        return (
            {n.node_id for n in self.nodes} == {n.node_id for n in other.nodes}
            and set(self.edge_triples()) == set(other.edge_triples())
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"CallGraph(nodes={len(self.nodes)}, edges={len(self.edges)})"


# ===========================================================================
# BUILDER
# ===========================================================================

@dataclass
class _SymbolBatch:
    """Everything classification produced for one task, committed at once."""

    symbol: TaskSymbol
    sites: List[CallSite]
    callers: Dict[str, CallGraphNode]
    diagnostics: List[Diagnostic]


class CallGraphBuilder:
    """Orchestrates discovery, resolution, classification and merge.

    Parameters
    ----------
    registry : TaskRegistry
    oracle : AnalysisOracle
        Opened by the builder if needed; closing it is the caller's job.
    units : iterable of paths
        Source units to discover tasks in.
    config : AnalysisConfig, optional
    extractor : ControlContextExtractor, optional
        Defaults to one sharing the registry's syntax cache.
    cancel_event : threading.Event, optional
        Checked between symbol-level units of work.
    sleep : callable
        Used for retry backoff.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        oracle: AnalysisOracle,
        units: Iterable[str],
        config: Optional[AnalysisConfig] = None,
        extractor: Optional[ControlContextExtractor] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self.oracle = oracle
        self.units = list(units)
        self.config = config if config is not None else AnalysisConfig()
        self.syntax: SyntaxCache = registry.syntax
        self.extractor = extractor if extractor is not None else ControlContextExtractor(self.syntax)
        self.cancel_event = cancel_event
        self._sleep = sleep
        self.stage = BuildStage.UNINITIALIZED
        self.discovery: Optional[DiscoveryResult] = None

    # ----- state machine ----------------------------------------------------

    def _advance(self, stage: BuildStage) -> None:
        current = _STAGE_ORDER.index(self.stage)
        if _STAGE_ORDER.index(stage) != current + 1:
            raise TaskGraphError(
                f"illegal stage transition {self.stage.value} -> {stage.value}",
                code=ErrorCode.INVALID_TRANSITION,
            )
        logger.info("stage %s -> %s", self.stage.value, stage.value)
        self.stage = stage

    def _check_cancel(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise AnalysisCancelled(f"analysis cancelled while {self.stage.value}")

    # ----- driver -----------------------------------------------------------

    def build(self) -> CallGraph:
        """Run the whole pipeline once and return the frozen graph."""
        self._advance(BuildStage.DISCOVERING)
        discovery = self.registry.discover(self.units)
        self.discovery = discovery
        self._check_cancel()

        self._advance(BuildStage.RESOLVING)
        results = self._resolve(discovery.symbols)

        self._advance(BuildStage.CLASSIFYING)
        batches = self._classify(discovery, results)
        self._check_cancel()

        graph = self._merge(discovery, results, batches)
        self._advance(BuildStage.MERGED)
        logger.info("call graph: %d node(s), %d edge(s)", len(graph.nodes), len(graph.edges))
        return graph

    def _fan_out(self, fn: Callable[[TaskSymbol], Any], symbols: Sequence[TaskSymbol],
                 workers: int, prefix: str) -> List[Any]:
        """Run *fn* per symbol on a pool; reduce on the calling thread."""
        results: List[Any] = []
        if not symbols:
            return results
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=prefix) as pool:
            futures = [pool.submit(fn, s) for s in symbols]
            try:
                for future in as_completed(futures):
                    self._check_cancel()
                    results.append(future.result())
            except BaseException:
                for future in futures:
                    future.cancel()
                raise
        return results

    # ----- Stage: resolving -------------------------------------------------

    def _resolve(self, symbols: Sequence[TaskSymbol]) -> Dict[str, QueryResult]:
        client = OracleClient(self.oracle, self.config.retry_policy(), sleep=self._sleep)
        workers = max(1, min(self.config.max_workers, self.oracle.max_concurrency))

        def query(symbol: TaskSymbol) -> QueryResult:
            self._check_cancel()
            return client.query(symbol)

        try:
            self.oracle.open()
            results = self._fan_out(query, symbols, workers, "oracle")
        except OracleUnavailable as exc:
            logger.error("oracle unavailable: %s", exc.message)
            raise
        logger.info("resolved %d task(s) on %d worker(s)", len(results), workers)
        return {r.symbol.symbol_id: r for r in results}

    # ----- Stage: classifying -----------------------------------------------

    def _classify(
        self,
        discovery: DiscoveryResult,
        results: Dict[str, QueryResult],
    ) -> Dict[str, _SymbolBatch]:
        pending = [s for s in discovery.symbols if results[s.symbol_id].references]

        def work(symbol: TaskSymbol) -> _SymbolBatch:
            self._check_cancel()
            return self._classify_symbol(discovery, symbol, results[symbol.symbol_id].references)

        batches = self._fan_out(work, pending, max(1, self.config.max_workers), "classify")
        return {b.symbol.symbol_id: b for b in batches}

    def _classify_symbol(
        self,
        discovery: DiscoveryResult,
        symbol: TaskSymbol,
        references: Sequence[RawReference],
    ) -> _SymbolBatch:
        batch = _SymbolBatch(symbol, [], {}, [])
        seen: Set[Tuple[str, int, int]] = set()
        for raw in references:
            key = raw.call_location.canonical()
            if key in seen:
                continue
            seen.add(key)
            ref = self._attribute(raw)
            caller = self._caller_node(discovery, ref)
            if caller.kind is not NodeKind.TASK:
                batch.callers.setdefault(caller.node_id, caller)
            try:
                path = self.extractor.extract(ref)
            except UnresolvedContext as exc:
                logger.warning("approximate call site of %s at %s: %s",
                               symbol.qualname, ref.call_location, exc.message)
                batch.diagnostics.append(Diagnostic.from_error(exc, subject=symbol.symbol_id))
                batch.sites.append(CallSite(
                    symbol, ref, caller.node_id, ControlContextPath(),
                    Multiplicity.ZERO_OR_MANY, approximate=True, reason=exc.message,
                ))
                continue
            multiplicity = classify(path)
            logger.debug("%s -> %s at %s: %s = %s", caller.node_id, symbol.qualname,
                         ref.call_location, path, multiplicity.value)
            batch.sites.append(CallSite(symbol, ref, caller.node_id, path, multiplicity))
        return batch

    def _attribute(self, ref: RawReference) -> RawReference:
        """Re-attribute a reference made from a closure to its outermost def."""
        enclosing = ref.enclosing_location
        if enclosing is None:
            return ref
        module = self.syntax.peek(enclosing.path)
        if module is None:
            return ref
        definition = module.definition_at(enclosing.line, enclosing.column)
        if definition is None or not definition.nested:
            return ref
        outer = definition.outermost
        return RawReference(ref.call_location, outer.location, outer.qualname)

    def _caller_node(self, discovery: DiscoveryResult, ref: RawReference) -> CallGraphNode:
        enclosing = ref.enclosing_location
        path = ref.call_location.path
        if enclosing is None:
            module = self.syntax.peek(path)
            name = module.module if module is not None else Path(path).stem
            return CallGraphNode(
                f"module:{path}", f"{name}.<module>", NodeKind.MODULE,
                SourceLocation(path, 1, 0),
            )
        task = discovery.lookup_location(enclosing)
        if task is not None:
            return CallGraphNode(task.symbol_id, task.qualname, NodeKind.TASK,
                                 task.location, task)
        name = ref.enclosing_name
        module = self.syntax.peek(enclosing.path)
        if module is not None:
            definition = module.definition_at(enclosing.line, enclosing.column)
            if definition is not None:
                name = definition.qualname
        name = name or "<function>"
        return CallGraphNode(
            f"external:{enclosing.path}#{name}:{enclosing.line}", name,
            NodeKind.EXTERNAL, enclosing,
        )

    # ----- Stage: merge -----------------------------------------------------

    def _merge(
        self,
        discovery: DiscoveryResult,
        results: Dict[str, QueryResult],
        batches: Dict[str, _SymbolBatch],
    ) -> CallGraph:
        nodes: Dict[str, CallGraphNode] = {}
        diagnostics: List[Diagnostic] = list(discovery.diagnostics)
        diagnostics.extend(self.oracle.drain_diagnostics())
        partial: List[str] = []

        for symbol in discovery.symbols:
            result = results[symbol.symbol_id]
            reason = ""
            if not result.complete:
                reason = result.error.message if result.error else "incomplete"
                partial.append(symbol.symbol_id)
                diagnostics.append(Diagnostic(
                    Severity.WARNING,
                    result.error.code if result.error else ErrorCode.ORACLE_BAD_RESPONSE,
                    f"call sites of {symbol.qualname} are incomplete: {reason}",
                    location=symbol.location,
                    subject=symbol.symbol_id,
                ))
            nodes[symbol.symbol_id] = CallGraphNode(
                symbol.symbol_id, symbol.qualname, NodeKind.TASK, symbol.location,
                symbol, partial=not result.complete, partial_reason=reason,
            )

        groups: Dict[Tuple[str, str], List[CallSite]] = defaultdict(list)
        for symbol_id in sorted(batches):
            batch = batches[symbol_id]
            for node_id, caller in batch.callers.items():
                nodes.setdefault(node_id, caller)
            for site in batch.sites:
                groups[(site.caller_id, symbol_id)].append(site)
            diagnostics.extend(batch.diagnostics)

        edges = []
        for (caller_id, callee_id), sites in groups.items():
            sites.sort(key=lambda s: s.sort_key())
            edges.append(CallEdge(
                caller_id,
                callee_id,
                join_sites(s.multiplicity for s in sites),
                approximate=any(s.approximate for s in sites),
                sites=tuple(sites),
            ))

        if partial:
            logger.warning("%d task(s) have incomplete call sites", len(partial))
        return CallGraph(nodes.values(), edges, partial, discovery.skipped, diagnostics)


# ===========================================================================
# PUBLIC API
# ===========================================================================

def build_callgraph(
    units: Iterable[str],
    oracle: AnalysisOracle,
    config: Optional[AnalysisConfig] = None,
    syntax: Optional[SyntaxCache] = None,
    cancel_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> CallGraph:
    """Build the task call graph of *units* using *oracle*.

    Parameters
    ----------
    units : iterable of str
        Source units (see :func:`~taskgraph_static.registry.iter_source_files`).
    oracle : AnalysisOracle
    config : AnalysisConfig, optional
    syntax : SyntaxCache, optional
        Share one with the oracle to parse every unit only once.
    cancel_event : threading.Event, optional
    sleep : callable, optional
        Backoff sleep, replaceable in tests.

    Raises
    ------
    OracleUnavailable
        The oracle could not be reached.
    AnalysisCancelled
        *cancel_event* was set during the run.
    """
    config = config if config is not None else AnalysisConfig()
    syntax = syntax if syntax is not None else SyntaxCache()
    registry = TaskRegistry(config.annotations, syntax)
    builder = CallGraphBuilder(
        registry, oracle, units, config,
        extractor=ControlContextExtractor(syntax),
        cancel_event=cancel_event,
        sleep=sleep,
    )
    return builder.build()


# ---------------------------------------------------------------------------
# Convenience utilities
# ---------------------------------------------------------------------------

def callgraph_summary(graph: CallGraph) -> str:
    """Return a human-readable multi-line summary."""
    stats = graph.statistics()
    mult = stats["edges_by_multiplicity"]
    lines = [
        "Task Call Graph Summary",
        f"  Tasks:                {stats['tasks']}",
        f"  External callers:     {stats['external_callers']}",
        f"  Module-level callers: {stats['module_callers']}",
        f"  Edges:                {stats['total_edges']}",
        f"    1:                  {mult.get('1', 0)}",
        f"    0..1:               {mult.get('0..1', 0)}",
        f"    0..*:               {mult.get('0..*', 0)}",
        f"  Approximate edges:    {stats['approximate_edges']}",
        f"  Call sites:           {stats['call_sites']}",
        f"  Recursive SCCs:       {stats['recursive_sccs']}",
        f"  Self-recursive tasks: {stats['self_recursive_tasks']}",
        f"  Partial tasks:        {stats['partial_tasks']}",
        f"  Skipped units:        {stats['skipped_units']}",
        "",
        "Tasks:",
    ]
    for node in graph.tasks():
        callees = [
            f"{graph.node(e.callee_id).name} [{e.multiplicity.value}"
            f"{'~' if e.approximate else ''}]"
            for e in graph.out_edges(node.node_id)
        ]
        callers = [graph.node(e.caller_id).name for e in graph.in_edges(node.node_id)]
        flag = " (partial)" if node.partial else ""
        lines.append(
            f"  {node.name}{flag}: "
            f"calls [{', '.join(callees)}], "
            f"called by [{', '.join(callers)}]"
        )
    if graph.partial_symbols:
        lines.append("")
        lines.append("Partial tasks:")
        for symbol_id in graph.partial_symbols:
            node = graph.node(symbol_id)
            lines.append(f"  {node.name}: {node.partial_reason}")
    if graph.skipped_units:
        lines.append("")
        lines.append("Skipped units:")
        lines.extend(f"  {path}" for path in graph.skipped_units)
    return "\n".join(lines)


def find_recursive_tasks(graph: CallGraph) -> List[Set[CallGraphNode]]:
    """Return a list of sets of tasks that (transitively) enqueue themselves.

    Singleton sets indicate direct self-recursion.  Sets with multiple
    elements indicate mutual recursion.
    """
    result: List[Set[CallGraphNode]] = []
    for scc in graph.strongly_connected_components():
        if len(scc) == 1:
            node = scc[0]
            if graph.is_self_recursive(node.node_id):
                result.append({node})
        else:
            result.append(set(scc))
    return result
