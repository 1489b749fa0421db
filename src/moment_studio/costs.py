"""Static cost and time tables for planned sequences.

Every function in this module is pure: the same plan always yields the same
estimate, no matter how often or in which order it is evaluated. Callers
must re-run the estimate whenever a plan's sequence list changes.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:  # pragma: no cover
    from .sessions.models import Plan, Sequence

# USD per generated image, shared by the mock and Gemini generators.
IMAGE_COST_USD = 0.04
DEFAULT_FRAME_COUNT = 3

DIALOGUE_COST_USD = 0.16
DIALOGUE_REUSED_BACKGROUND_COST_USD = 0.12
ESTABLISHING_SHOT_COST_USD = IMAGE_COST_USD
IMPACT_COST_USD = 0.0

DIALOGUE_MINUTES = 1.5
DIALOGUE_REUSED_BACKGROUND_MINUTES = 1.0
FRAME_MINUTES = 0.5
ESTABLISHING_SHOT_MINUTES = 0.5
IMPACT_MINUTES = 0.1
EXPORT_MINUTES_PER_SEQUENCE = 1.0
FIXED_OVERHEAD_MINUTES = 1.0

_SPEAKING_TYPES = frozenset({"dialogue", "dm_description"})


def _reuses_background(sequence: "Sequence") -> bool:
    return bool(getattr(sequence, "reuse_background_from", None))


def _frame_count(sequence: "Sequence") -> int:
    return getattr(sequence, "frame_count", None) or DEFAULT_FRAME_COUNT


def sequence_cost(sequence: "Sequence") -> float:
    """Estimated spend for one sequence."""
    if sequence.type in _SPEAKING_TYPES:
        return DIALOGUE_REUSED_BACKGROUND_COST_USD if _reuses_background(sequence) else DIALOGUE_COST_USD
    if sequence.type == "close_up":
        return IMAGE_COST_USD * _frame_count(sequence)
    if sequence.type == "establishing_shot":
        return ESTABLISHING_SHOT_COST_USD
    return IMPACT_COST_USD


def sequence_minutes(sequence: "Sequence") -> float:
    """Estimated wall-clock generation minutes for one sequence, export excluded."""
    if sequence.type in _SPEAKING_TYPES:
        return DIALOGUE_REUSED_BACKGROUND_MINUTES if _reuses_background(sequence) else DIALOGUE_MINUTES
    if sequence.type == "close_up":
        return FRAME_MINUTES * _frame_count(sequence)
    if sequence.type == "establishing_shot":
        return ESTABLISHING_SHOT_MINUTES
    return IMPACT_MINUTES


def estimate_plan_cost(plan: "Plan") -> float:
    total = sum(sequence_cost(seq) for seq in plan.sequences)
    return round(total, 4)


def estimate_plan_duration(plan: "Plan") -> float:
    return float(sum(seq.duration_sec for seq in plan.sequences))


def estimate_minutes(plans: Iterable["Plan"]) -> int:
    """Whole-session time estimate across every planned moment."""
    minutes = 0.0
    for plan in plans:
        for seq in plan.sequences:
            minutes += sequence_minutes(seq) + EXPORT_MINUTES_PER_SEQUENCE
    return math.ceil(round(minutes + FIXED_OVERHEAD_MINUTES, 6))
