"""
Numeric helpers shared by the routing, forecasting and anomaly services:
hybrid routing scores, half-up rounding and threshold severity classification.
"""

import math
from typing import Mapping, Sequence

import numpy as np

from queue_engine.models import Severity


def normalized_loads(loads: Sequence[int], max_load: int) -> np.ndarray:
    """load / max(max_load, 1) for each load."""
    return np.asarray(loads, dtype=np.float64) / max(max_load, 1)


def hybrid_scores(
    proficiencies: Sequence[int],
    loads: Sequence[int],
    max_load: int,
    load_balance_weight: float,
) -> np.ndarray:
    """
    score = proficiency * (1 - normalized_load * load_balance_weight).
    Non-increasing in load for fixed proficiency and weight.
    """
    prof = np.asarray(proficiencies, dtype=np.float64)
    return prof * (1.0 - normalized_loads(loads, max_load) * load_balance_weight)


def round_half_up(value: float) -> int:
    """2.5 -> 3 (Python's round() would give 2)."""
    return int(math.floor(value + 0.5))


def classify_severity(
    value: float,
    thresholds: Mapping[str, float],
    lower_is_worse: bool = False,
) -> Severity:
    """
    Map a metric value to a severity tier using medium/high/critical cut-offs.
    Higher-is-worse metrics escalate at value >= cut-off; lower-is-worse at value <= cut-off.
    """
    if lower_is_worse:
        if value <= thresholds["critical"]:
            return Severity.CRITICAL
        if value <= thresholds["high"]:
            return Severity.HIGH
        if value <= thresholds["medium"]:
            return Severity.MEDIUM
        return Severity.LOW
    if value >= thresholds["critical"]:
        return Severity.CRITICAL
    if value >= thresholds["high"]:
        return Severity.HIGH
    if value >= thresholds["medium"]:
        return Severity.MEDIUM
    return Severity.LOW


def demand_label(predicted: int) -> str:
    if predicted <= 5:
        return "low demand"
    if predicted <= 15:
        return "moderate demand"
    if predicted <= 30:
        return "high demand"
    return "very high demand"
