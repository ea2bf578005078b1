"""Run configuration for the analyzer."""

from dataclasses import dataclass
from typing import Optional

from raceguard.model import Confidence


@dataclass(frozen=True)
class AnalysisConfig:
    """Options for one analysis run.

    Attributes:
        strict_thread_context: when False (default) methods with no thread
            evidence are treated as possibly running on a background thread.
        per_method_budget: maximum lock-set transfer steps per method; None
            means unlimited. Methods over budget get a degraded summary.
        min_confidence: findings below this confidence are dropped.
        max_fixpoint_iterations: override for the per-component iteration cap;
            None derives the cap from the component's lattice height.
        workers: thread-pool size for per-method and per-component work;
            None lets the executor pick.
    """

    strict_thread_context: bool = False
    per_method_budget: Optional[int] = None
    min_confidence: Confidence = Confidence.LOW
    max_fixpoint_iterations: Optional[int] = None
    workers: Optional[int] = None

    def __post_init__(self):
        if self.per_method_budget is not None and self.per_method_budget < 0:
            raise ValueError("per_method_budget must be non-negative")
        if self.max_fixpoint_iterations is not None and self.max_fixpoint_iterations < 1:
            raise ValueError("max_fixpoint_iterations must be at least 1")
        if self.workers is not None and self.workers < 1:
            raise ValueError("workers must be at least 1")
