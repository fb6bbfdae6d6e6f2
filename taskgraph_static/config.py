"""
taskgraph_static.config
=======================

Tuning knobs for one analysis run.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, List, Tuple

from .ast_oracle import DEFAULT_DISPATCH_ATTRIBUTES
from .oracle import RetryPolicy
from .registry import DEFAULT_ANNOTATIONS

__all__ = ["AnalysisConfig"]


@dataclass(frozen=True)
class AnalysisConfig:
    """Tuning knobs for the analysis pipeline."""
    annotations: Tuple[str, ...] = DEFAULT_ANNOTATIONS
    exclude: Tuple[str, ...] = ()
    dispatch_attributes: Tuple[str, ...] = DEFAULT_DISPATCH_ATTRIBUTES
    max_workers: int = 8
    retry_attempts: int = 3
    retry_base_delay: float = 0.25
    retry_max_delay: float = 4.0
    query_timeout: float = 30.0
    prepare_attempts: int = 5

    def validate(self) -> List[str]:
        """Return a list of validation warnings (empty if valid)."""
        warnings: List[str] = []
        if not self.annotations:
            warnings.append("at least one annotation pattern is required")
        if any(not a or a.startswith(".") or a.endswith(".") for a in self.annotations):
            warnings.append("annotation patterns must be non-empty dotted names")
        if self.max_workers <= 0:
            warnings.append("max_workers must be positive")
        if self.retry_attempts <= 0:
            warnings.append("retry_attempts must be positive")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            warnings.append("retry delays must be non-negative")
        if self.retry_max_delay < self.retry_base_delay:
            warnings.append("retry_max_delay is below retry_base_delay")
        if self.query_timeout <= 0:
            warnings.append("query_timeout must be positive")
        if self.prepare_attempts <= 0:
            warnings.append("prepare_attempts must be positive")
        return warnings

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

    def replace(self, **overrides: Any) -> "AnalysisConfig":
        for key in ("annotations", "exclude", "dispatch_attributes"):
            if key in overrides and overrides[key] is not None:
                overrides[key] = tuple(overrides[key])
        return dataclasses.replace(self, **overrides)
