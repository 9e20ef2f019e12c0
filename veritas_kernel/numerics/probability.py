"""
Probability numerics shared by every aggregation stage.

All probabilities are clamped into [eps, 1 - eps] before any log is taken,
so entropy and divergence are finite everywhere.
"""

import math
from typing import Dict, Tuple

from veritas_kernel.errors import ValidationError

EPSILON_PROBABILITY = 1e-10


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp_probability(p: float, eps: float = EPSILON_PROBABILITY) -> float:
    """Restrict a probability to [eps, 1 - eps]."""
    return clamp(p, eps, 1.0 - eps)


def binary_entropy(p: float, eps: float = EPSILON_PROBABILITY) -> float:
    """H(p) in bits. Zero at the clamped extremes."""
    if p <= eps or p >= 1.0 - eps:
        return 0.0
    return -(p * math.log2(p)) - ((1.0 - p) * math.log2(1.0 - p))


def binary_kl_divergence(p: float, q: float, eps: float = EPSILON_PROBABILITY) -> float:
    """KL(p || q) in nats for two Bernoulli distributions."""
    p = clamp_probability(p, eps)
    q = clamp_probability(q, eps)
    return p * math.log(p / q) + (1.0 - p) * math.log((1.0 - p) / (1.0 - q))


def disagreement(
    beliefs: Dict[str, float],
    weights: Dict[str, float],
    aggregate: float,
    eps: float = EPSILON_PROBABILITY,
) -> Tuple[float, float, float]:
    """
    Jensen-Shannon style disagreement of a weighted belief population.

    Returns (jensen_shannon, normalized, certainty) where
    jensen_shannon = max(0, H(aggregate) - sum_i w_i * H(b_i)),
    normalized = min(1, jensen_shannon) and certainty = 1 - normalized.
    """
    h_avg = sum(
        weights[agent_id] * binary_entropy(clamp_probability(b, eps), eps)
        for agent_id, b in beliefs.items()
    )
    h_agg = binary_entropy(aggregate, eps)
    jensen_shannon = max(0.0, h_agg - h_avg)
    normalized = min(1.0, jensen_shannon)
    return jensen_shannon, normalized, 1.0 - normalized


def validate_weights(weights: Dict[str, float], tolerance: float = EPSILON_PROBABILITY) -> None:
    """Weights must be finite, non-negative and sum to 1.0 within tolerance."""
    if not weights:
        raise ValidationError("weights must be non-empty")
    for agent_id, weight in weights.items():
        if not isinstance(weight, (int, float)) or not math.isfinite(weight):
            raise ValidationError(
                f"Weight for agent {agent_id} is not a finite number",
                {"agent_id": agent_id},
            )
        if weight < 0:
            raise ValidationError(
                f"Weight for agent {agent_id} is negative: {weight}",
                {"agent_id": agent_id, "weight": weight},
            )
    total = math.fsum(weights.values())
    if abs(total - 1.0) > tolerance:
        raise ValidationError(
            f"Weights must sum to 1.0, got {total}",
            {"weight_sum": total},
        )


def validate_probability(name: str, value: float) -> None:
    if not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0 or value > 1:
        raise ValidationError(f"{name} must be a number in [0,1], got {value}")
