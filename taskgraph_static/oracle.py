"""
taskgraph_static.oracle
=======================

The narrow contract between the pipeline and whatever tool answers "who
references this function?".

    ┌──────────────┐   find_call_sites(symbol)   ┌──────────────────────┐
    │ OracleClient │ ──────────────────────────► │ AnalysisOracle (ABC) │
    │  retry/back- │ ◄────────────────────────── │  AstIndexOracle      │
    │  off policy  │   [RawReference, ...]       │  LspOracle           │
    └──────────────┘                             └──────────────────────┘

The oracle only enumerates references and the function enclosing each one.
It never decides what a reference means; the extractor and classifier do.

Failure contract
----------------
``OracleUnavailable``
    Fatal.  Propagates through the client and aborts the run.
``OracleTimeout``
    Per query.  Retried under :class:`RetryPolicy`; when retries run out the
    client returns an *incomplete* :class:`QueryResult`.
``OracleQueryError``
    Per query.  Not retried; the result is incomplete.
"""

from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from .errors import Diagnostic, OracleError, OracleQueryError, OracleTimeout, OracleUnavailable
from .symbols import RawReference, TaskSymbol

logger = logging.getLogger(__name__)

__all__ = [
    "AnalysisOracle",
    "RetryPolicy",
    "QueryResult",
    "OracleClient",
]


# ---------------------------------------------------------------------------
# AnalysisOracle
# ---------------------------------------------------------------------------

class AnalysisOracle(abc.ABC):
    """Abstract reference-finding backend.

    Subclasses must be safe to query from ``max_concurrency`` threads at
    once.  ``open()`` must be idempotent; the builder calls it before the
    first query and leaves ``close()`` to whoever created the oracle.
    """

    name: str = "oracle"

    @property
    def max_concurrency(self) -> int:
        """How many queries the backend accepts in parallel."""
        return 1

    def open(self) -> None:
        """Acquire backend resources.  No-op by default."""

    def close(self) -> None:
        """Release backend resources.  No-op by default."""

    @abc.abstractmethod
    def find_call_sites(self, symbol: TaskSymbol) -> Sequence[RawReference]:
        """Every reference to *symbol* together with its enclosing function."""

    def drain_diagnostics(self) -> List[Diagnostic]:
        """Hand over and forget the non-fatal conditions seen so far."""
        return []

    def __enter__(self) -> "AnalysisOracle":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff for timed-out queries.

    ``attempts`` counts the first try, so ``attempts=3`` means one query
    and at most two retries.
    """

    attempts: int = 3
    base_delay: float = 0.25
    max_delay: float = 4.0
    backoff: float = 2.0

    def delays(self) -> Iterator[float]:
        """Sleeps between consecutive attempts (``attempts - 1`` values)."""
        delay = self.base_delay
        for _ in range(max(self.attempts, 1) - 1):
            yield min(delay, self.max_delay)
            delay *= self.backoff


# ---------------------------------------------------------------------------
# QueryResult / OracleClient
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class QueryResult:
    """What one symbol's query produced.

    ``complete`` is false when retries were exhausted or the answer was
    unusable; ``references`` is then whatever could be salvaged (usually
    nothing) and ``error`` says why.
    """

    symbol: TaskSymbol
    references: Tuple[RawReference, ...] = ()
    complete: bool = True
    error: Optional[OracleError] = None
    attempts: int = 1


class OracleClient:
    """Retrying front end to an :class:`AnalysisOracle`."""

    def __init__(
        self,
        oracle: AnalysisOracle,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.oracle = oracle
        self.retry = retry if retry is not None else RetryPolicy()
        self._sleep = sleep

    def query(self, symbol: TaskSymbol) -> QueryResult:
        delays = self.retry.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                references = self.oracle.find_call_sites(symbol)
            except OracleUnavailable:
                raise
            except OracleTimeout as exc:
                delay = next(delays, None)
                if delay is None:
                    logger.warning(
                        "query for %s timed out after %d attempt(s); marking partial",
                        symbol.qualname, attempt,
                    )
                    return QueryResult(symbol, (), False, exc, attempt)
                logger.info("query for %s timed out (attempt %d), retrying in %.2fs",
                            symbol.qualname, attempt, delay)
                self._sleep(delay)
                continue
            except OracleError as exc:
                logger.warning("query for %s failed: %s; marking partial",
                               symbol.qualname, exc.message)
                if not isinstance(exc, OracleQueryError):
                    exc = OracleQueryError(exc.message, cause=exc)
                return QueryResult(symbol, (), False, exc, attempt)

            logger.debug("%s: %d reference(s)", symbol.qualname, len(references))
            return QueryResult(symbol, tuple(references), True, None, attempt)
