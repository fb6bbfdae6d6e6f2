"""
taskgraph_static.errors
=======================

Error types and diagnostic records for the task call-graph pipeline.

Error Hierarchy
───────────────
┌─────────────────────────────────────────────────────────────────────────┐
│  TaskGraphError (base)                                                  │
│  ├── DiscoveryError        - a source unit cannot be read or parsed     │
│  ├── OracleError           - the analysis oracle misbehaved             │
│  │   ├── OracleUnavailable - no connection / dead backend (fatal)       │
│  │   ├── OracleTimeout     - one query took too long (retryable)        │
│  │   └── OracleQueryError  - one query returned a malformed answer      │
│  ├── UnresolvedContext     - enclosing syntax of a call site unknown    │
│  └── AnalysisCancelled     - cooperative whole-run abort                │
└─────────────────────────────────────────────────────────────────────────┘

Propagation policy
──────────────────
Recoverable errors are absorbed at the smallest scope that keeps the run
moving (per unit, per symbol, per call site) and turned into
:class:`Diagnostic` records that travel with the finished graph.  Only
``OracleUnavailable`` (and ``AnalysisCancelled``) stop the pipeline.

Error Codes
───────────
    TG-1xxx  discovery
    TG-2xxx  oracle
    TG-3xxx  control-context extraction
    TG-9xxx  run control / internal
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, unique
from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .symbols import SourceLocation

__all__ = [
    "Severity",
    "ErrorCode",
    "TaskGraphError",
    "DiscoveryError",
    "OracleError",
    "OracleUnavailable",
    "OracleTimeout",
    "OracleQueryError",
    "UnresolvedContext",
    "AnalysisCancelled",
    "Diagnostic",
]


# ═══════════════════════════════════════════════════════════════════════════
# SEVERITY AND CODES
# ═══════════════════════════════════════════════════════════════════════════

@unique
class Severity(Enum):
    """Severity of a diagnostic attached to the finished graph."""

    ERROR   = "error"
    WARNING = "warning"
    INFO    = "info"

    def __lt__(self, other: "Severity") -> bool:
        order = [Severity.INFO, Severity.WARNING, Severity.ERROR]
        return order.index(self) < order.index(other)


@unique
class ErrorCode(Enum):
    """Stable identifiers for every absorbed or raised condition."""

    UNIT_UNREADABLE      = "TG-1001"
    UNIT_SYNTAX          = "TG-1002"
    HEURISTIC_MISMATCH   = "TG-1003"
    ORACLE_UNAVAILABLE   = "TG-2001"
    ORACLE_TIMEOUT       = "TG-2002"
    ORACLE_BAD_RESPONSE  = "TG-2003"
    ISOLATED_TASK        = "TG-2004"
    CONTEXT_UNRESOLVED   = "TG-3001"
    CANCELLED            = "TG-9001"
    INVALID_TRANSITION   = "TG-9002"
    INTERNAL             = "TG-9999"

    def __str__(self) -> str:
        return self.value


# ═══════════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════════

class TaskGraphError(Exception):
    """Base exception for all pipeline errors.

    Carries an :class:`ErrorCode` and, when known, the source location the
    error relates to.
    """

    default_code: ErrorCode = ErrorCode.INTERNAL

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        location: Optional["SourceLocation"] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.location = location
        self.cause = cause

    def __str__(self) -> str:
        if self.location is not None:
            return f"{self.location}: {self.message} [{self.code}]"
        return f"{self.message} [{self.code}]"


class DiscoveryError(TaskGraphError):
    """A targeted source unit could not be read or parsed.

    The unit is skipped and reported; the run continues.
    """

    default_code = ErrorCode.UNIT_SYNTAX

    def __init__(self, message: str, path: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.path = path


class OracleError(TaskGraphError):
    """Base class for failures of the analysis oracle."""

    default_code = ErrorCode.ORACLE_BAD_RESPONSE


class OracleUnavailable(OracleError):
    """The oracle cannot be reached at all.  Fatal for the whole run."""

    default_code = ErrorCode.ORACLE_UNAVAILABLE


class OracleTimeout(OracleError):
    """A single oracle query exceeded its timeout.

    Retried with bounded backoff; afterwards the queried symbol is marked
    partial instead of aborting the run.
    """

    default_code = ErrorCode.ORACLE_TIMEOUT

    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.timeout = timeout


class OracleQueryError(OracleError):
    """A single query produced an answer the client cannot use."""

    default_code = ErrorCode.ORACLE_BAD_RESPONSE


class UnresolvedContext(TaskGraphError):
    """The syntax enclosing a call site cannot be resolved.

    The site is kept with the conservative ``ZERO_OR_MANY`` class and
    flagged approximate, never dropped.
    """

    default_code = ErrorCode.CONTEXT_UNRESOLVED


class AnalysisCancelled(TaskGraphError):
    """The run was cancelled between two symbol-level units of work."""

    default_code = ErrorCode.CANCELLED


# ═══════════════════════════════════════════════════════════════════════════
# DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Diagnostic:
    """A recorded, non-fatal condition that accompanies the graph.

    Attributes
    ----------
    severity : Severity
    code : ErrorCode
    message : str
    location : SourceLocation or None
    subject : str
        What the diagnostic is about: a unit path, a symbol id, …
    """

    severity: Severity
    code: ErrorCode
    message: str
    location: Optional["SourceLocation"] = None
    subject: str = ""

    @classmethod
    def from_error(
        cls,
        error: TaskGraphError,
        severity: Severity = Severity.WARNING,
        subject: str = "",
    ) -> "Diagnostic":
        return cls(
            severity=severity,
            code=error.code,
            message=error.message,
            location=error.location,
            subject=subject,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "code": self.code.value,
            "message": self.message,
            "location": self.location.to_dict() if self.location else None,
            "subject": self.subject,
        }

    def __str__(self) -> str:
        where = f"{self.location}: " if self.location else ""
        about = f" ({self.subject})" if self.subject else ""
        return f"{where}{self.severity.value}: {self.message}{about} [{self.code}]"
