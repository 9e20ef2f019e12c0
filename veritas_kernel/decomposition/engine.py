"""
Decomposition Engine: binary belief decomposition.

Treats every belief p as the distribution [p, 1-p] and every meta-prediction
m as [m, 1-m], then fits a two-state factor model:

  W      = (X^T X + eps_ridge * I)^-1 X^T Y        (2x2, closed form)
  prior  = c / (1 - a + c)                          a = W[0][0], c = W[1][0]
  U1     = prod(p_i) / prior^(n-1)
  U2     = prod(1 - p_i) / (1 - prior)^(n-1)
  result = U1 / (U1 + U2)

The posterior product is evaluated in log space. Quality blends how
well-conditioned W is with how well W reproduces the stated meta-predictions;
callers fall back to naive aggregation when quality is below threshold.
"""

import logging
import math
from typing import Dict, List, Optional, Tuple

from veritas_kernel.errors import ValidationError
from veritas_kernel.ledger.store import ProtocolStore
from veritas_kernel.models.config import ProtocolConfig
from veritas_kernel.models.stages import DecompositionResult, LocalExpectationsMatrix
from veritas_kernel.numerics.probability import (
    EPSILON_PROBABILITY,
    clamp,
    clamp_probability,
    disagreement,
    validate_weights,
)

logger = logging.getLogger(__name__)

Matrix = List[List[float]]

SINGULAR_TOLERANCE = 1e-12
ILL_CONDITIONED_RATIO = 1000.0
MATRIX_HEALTH_SHARE = 0.7
PREDICTION_ACCURACY_SHARE = 0.3


def estimate_local_expectations(
    beliefs: List[float],
    predictions: List[float],
    ridge_epsilon: float,
    eps: float = EPSILON_PROBABILITY,
) -> Matrix:
    """Ridge regression of meta-prediction distributions on belief distributions."""
    xtx = [[0.0, 0.0], [0.0, 0.0]]
    xty = [[0.0, 0.0], [0.0, 0.0]]
    for p, m in zip(beliefs, predictions):
        x = (clamp_probability(p, eps), clamp_probability(1.0 - p, eps))
        y = (clamp_probability(m, eps), clamp_probability(1.0 - m, eps))
        for j in range(2):
            for k in range(2):
                xtx[j][k] += x[j] * x[k]
                xty[j][k] += x[j] * y[k]

    r00 = xtx[0][0] + ridge_epsilon
    r01 = xtx[0][1]
    r10 = xtx[1][0]
    r11 = xtx[1][1] + ridge_epsilon
    det = r00 * r11 - r01 * r10
    if abs(det) < SINGULAR_TOLERANCE:
        logger.warning("Singular matrix in local expectations estimate, using identity")
        return [[1.0, 0.0], [0.0, 1.0]]

    inv = [[r11 / det, -r01 / det], [-r10 / det, r00 / det]]
    return [
        [
            inv[0][0] * xty[0][0] + inv[0][1] * xty[1][0],
            inv[0][0] * xty[0][1] + inv[0][1] * xty[1][1],
        ],
        [
            inv[1][0] * xty[0][0] + inv[1][1] * xty[1][0],
            inv[1][0] * xty[0][1] + inv[1][1] * xty[1][1],
        ],
    ]


def estimate_prior(w: Matrix, eps: float = EPSILON_PROBABILITY) -> float:
    """Left unit eigenvector of W: solves p*a + (1-p)*c = p."""
    a = w[0][0]
    c = w[1][0]
    denom = 1.0 - a + c
    if abs(denom) < SINGULAR_TOLERANCE:
        return 0.5
    return clamp_probability(c / denom, eps)


def full_information_posterior(
    beliefs: List[float], prior: float, eps: float = EPSILON_PROBABILITY
) -> float:
    n = len(beliefs)
    prior = clamp_probability(prior, eps)
    log_u1 = sum(math.log(clamp_probability(p, eps)) for p in beliefs)
    log_u2 = sum(math.log(clamp_probability(1.0 - p, eps)) for p in beliefs)
    log_u1 -= (n - 1) * math.log(prior)
    log_u2 -= (n - 1) * math.log(1.0 - prior)

    # Logistic of the log-odds, written to avoid overflow on either side
    d = log_u1 - log_u2
    if d >= 0:
        posterior = 1.0 / (1.0 + math.exp(-d))
    else:
        z = math.exp(d)
        posterior = z / (1.0 + z)
    return clamp_probability(posterior, eps)


def condition_ratio(w: Matrix) -> float:
    """Ratio of |largest| to |smallest| eigenvalue of W."""
    trace = w[0][0] + w[1][1]
    det = w[0][0] * w[1][1] - w[0][1] * w[1][0]
    disc = trace * trace / 4.0 - det
    if disc < 0:
        return ILL_CONDITIONED_RATIO
    root = math.sqrt(disc)
    magnitudes = sorted([abs(trace / 2.0 + root), abs(trace / 2.0 - root)])
    if magnitudes[0] < SINGULAR_TOLERANCE:
        return ILL_CONDITIONED_RATIO
    return magnitudes[1] / magnitudes[0]


def decomposition_quality(
    w: Matrix, beliefs: List[float], predictions: List[float]
) -> float:
    matrix_health = 1.0 / (1.0 + math.log10(max(1.0, condition_ratio(w))))
    a = w[0][0]
    c = w[1][0]
    errors = [abs((p * a + (1.0 - p) * c) - m) for p, m in zip(beliefs, predictions)]
    prediction_accuracy = 1.0 - (sum(errors) / len(errors)) if errors else 0.0
    quality = MATRIX_HEALTH_SHARE * matrix_health + PREDICTION_ACCURACY_SHARE * prediction_accuracy
    return clamp(quality, 0.0, 1.0)


def decompose_beliefs(
    beliefs: List[float],
    predictions: List[float],
    ridge_epsilon: float,
    eps: float = EPSILON_PROBABILITY,
) -> Tuple[float, float, Optional[Matrix], float]:
    """
    Run the factor model on parallel belief / meta-prediction lists.

    Returns (aggregate, prior, W, quality). Nobody: (0.5, 0.5, None, 0.0).
    One agent: their own belief with quality 1.0.
    """
    if not beliefs:
        return 0.5, 0.5, None, 0.0
    if len(beliefs) == 1:
        return clamp_probability(beliefs[0], eps), 0.5, None, 1.0

    w = estimate_local_expectations(beliefs, predictions, ridge_epsilon, eps)
    prior = estimate_prior(w, eps)
    posterior = full_information_posterior(beliefs, prior, eps)
    quality = decomposition_quality(w, beliefs, predictions)
    return posterior, prior, w, quality


class DecompositionEngine:
    """Aggregates a belief's current submissions with the factor model."""

    def __init__(self, store: ProtocolStore, config: Optional[ProtocolConfig] = None):
        self.store = store
        self.config = config or ProtocolConfig()

    def decompose(self, belief_id: str, weights: Dict[str, float], epoch: int) -> DecompositionResult:
        eps = self.config.epsilon_probability
        ridge = self.config.ridge_epsilon
        validate_weights(weights, eps)
        self.store.require_belief(belief_id)

        submissions = self.store.current_submissions(belief_id)
        missing = [agent_id for agent_id in submissions if agent_id not in weights]
        if missing:
            raise ValidationError("Missing weight for participant agent", {"agent_ids": missing})

        agent_ids = list(submissions)
        beliefs = [submissions[a].belief_value for a in agent_ids]
        predictions = [submissions[a].meta_prediction for a in agent_ids]

        aggregate, prior, w, quality = decompose_beliefs(beliefs, predictions, ridge, eps)

        if not agent_ids:
            return DecompositionResult(
                belief_id=belief_id,
                epoch=epoch,
                aggregate=aggregate,
                decomposition_quality=quality,
                common_prior=prior,
            )

        belief_map = dict(zip(agent_ids, beliefs))
        jensen_shannon, normalized, certainty = disagreement(belief_map, weights, aggregate, eps)

        loo_aggregates: Dict[str, float] = {}
        loo_metas: Dict[str, float] = {}
        for i, target in enumerate(agent_ids):
            rest_beliefs = beliefs[:i] + beliefs[i + 1:]
            rest_predictions = predictions[:i] + predictions[i + 1:]
            rest_ids = agent_ids[:i] + agent_ids[i + 1:]
            loo_aggregates[target] = decompose_beliefs(rest_beliefs, rest_predictions, ridge, eps)[0]

            remaining = sum(weights[a] for a in rest_ids)
            if remaining > eps:
                loo_metas[target] = clamp_probability(
                    sum(weights[a] * clamp_probability(m, eps)
                        for a, m in zip(rest_ids, rest_predictions)) / remaining,
                    eps,
                )
            else:
                loo_metas[target] = 0.5

        matrix = None
        if w is not None:
            matrix = LocalExpectationsMatrix(w11=w[0][0], w12=w[0][1], w21=w[1][0], w22=w[1][1])

        logger.info(
            "Belief %s epoch %d: decomposition aggregate %.6f, prior %.4f, quality %.3f",
            belief_id, epoch, aggregate, prior, quality,
        )
        return DecompositionResult(
            belief_id=belief_id,
            epoch=epoch,
            aggregate=aggregate,
            decomposition_quality=quality,
            common_prior=prior,
            local_expectations_matrix=matrix,
            jensen_shannon_disagreement_entropy=jensen_shannon,
            normalized_disagreement_entropy=normalized,
            certainty=certainty,
            leave_one_out_aggregates=loo_aggregates,
            leave_one_out_meta_aggregates=loo_metas,
        )
