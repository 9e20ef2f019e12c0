"""
BTS Scorer: Bayesian-Truth-Serum style information scores.

For agent i with post-update belief p_i, meta-prediction m_i and the
leave-one-out aggregates p_bar and m_bar computed without i:

    bts_i = KL(p_i || m_bar) - KL(p_i || p_bar) - KL(p_bar || m_i)

An agent scores well when its belief is surprisingly common relative to what
others predicted, and its own meta-prediction anticipated the crowd.
Information scores are bts clamped to [-1, 1].

Scores are not weighted here: weights are only validated, and stake enters
later through each agent's gross lock in the redistribution step.
"""

import logging
from typing import Dict, Optional

from veritas_kernel.errors import ValidationError
from veritas_kernel.models.config import ProtocolConfig
from veritas_kernel.models.stages import BTSResult
from veritas_kernel.numerics.probability import (
    binary_kl_divergence,
    clamp,
    validate_probability,
)

logger = logging.getLogger(__name__)


class BTSScorer:
    """Stateless scorer; every input arrives in the call."""

    def __init__(self, config: Optional[ProtocolConfig] = None):
        self.config = config or ProtocolConfig()

    def bts_score(
        self,
        belief_id: str,
        post_beliefs: Dict[str, float],
        leave_one_out_aggregates: Dict[str, float],
        leave_one_out_meta_aggregates: Dict[str, float],
        weights: Dict[str, float],
        meta_predictions: Dict[str, float],
    ) -> BTSResult:
        eps = self.config.epsilon_probability
        if not post_beliefs:
            raise ValidationError("post_beliefs must be non-empty")

        inputs = {
            "leave_one_out_aggregates": leave_one_out_aggregates,
            "leave_one_out_meta_aggregates": leave_one_out_meta_aggregates,
            "weights": weights,
            "meta_predictions": meta_predictions,
        }
        for agent_id, belief in post_beliefs.items():
            validate_probability(f"belief for agent {agent_id}", belief)
            for name, values in inputs.items():
                if agent_id not in values:
                    raise ValidationError(
                        f"Missing {name} entry for agent {agent_id}",
                        {"agent_id": agent_id, "field": name},
                    )
            if weights[agent_id] < 0:
                raise ValidationError(
                    f"Weight for agent {agent_id} is negative", {"agent_id": agent_id}
                )

        bts_scores: Dict[str, float] = {}
        information_scores: Dict[str, float] = {}
        for agent_id, p in post_beliefs.items():
            p_bar = leave_one_out_aggregates[agent_id]
            m_bar = leave_one_out_meta_aggregates[agent_id]
            m = meta_predictions[agent_id]
            score = (
                binary_kl_divergence(p, m_bar, eps)
                - binary_kl_divergence(p, p_bar, eps)
                - binary_kl_divergence(p_bar, m, eps)
            )
            bts_scores[agent_id] = score
            information_scores[agent_id] = clamp(score, -1.0, 1.0)
            logger.debug("Belief %s: agent %s bts %.6f", belief_id, agent_id, score)

        winners = [a for a, s in information_scores.items() if s > 0]
        losers = [a for a, s in information_scores.items() if s < 0]
        logger.info(
            "Belief %s: BTS scored %d agents (%d winners, %d losers)",
            belief_id, len(information_scores), len(winners), len(losers),
        )
        return BTSResult(
            belief_id=belief_id,
            information_scores=information_scores,
            bts_scores=bts_scores,
            winners=winners,
            losers=losers,
        )
