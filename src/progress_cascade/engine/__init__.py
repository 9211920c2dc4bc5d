"""Progress aggregation and consistency engine components."""

from progress_cascade.engine.cascade import CascadeTrigger
from progress_cascade.engine.progress import compute_progress, round_half_up
from progress_cascade.engine.sequence import SequenceGuard
from progress_cascade.engine.status import (
    apply_status_transition,
    normalise_completion,
    parse_status,
)

__all__ = [
    "CascadeTrigger",
    "SequenceGuard",
    "apply_status_transition",
    "compute_progress",
    "normalise_completion",
    "parse_status",
    "round_half_up",
]
