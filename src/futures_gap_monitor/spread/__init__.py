"""Spread layer - Leg alignment, gap computation and baselines."""

from futures_gap_monitor.spread.alignment import (
    AlignedPoint,
    AlignmentMode,
    AlignmentResult,
    LegAlignmentEngine,
    align_legs,
    find_closest,
)
from futures_gap_monitor.spread.baseline import BaselineCache, BaselineEntry
from futures_gap_monitor.spread.gaps import GapSnapshot, compute_gaps, time_slot_of

__all__ = [
    "AlignedPoint",
    "AlignmentMode",
    "AlignmentResult",
    "BaselineCache",
    "BaselineEntry",
    "GapSnapshot",
    "LegAlignmentEngine",
    "align_legs",
    "compute_gaps",
    "find_closest",
    "time_slot_of",
]
