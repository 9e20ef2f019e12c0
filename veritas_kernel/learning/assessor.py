"""
Learning Assessor: decides whether the population learned this epoch.

Learning means disagreement fell relative to the last recorded epoch:

    reduction = max(0, previous - post)
    learning_occurred = reduction > eps and previous > eps
    economic_learning_rate = clamp(reduction / previous, 0, 1)

The assessment always closes the epoch for the belief: every submission is
deactivated and the post-update aggregate and disagreement become the new
baseline, whether or not learning occurred. When an epoch is given it is
recorded as the belief's last processed epoch in the same transaction.
"""

import logging
from typing import Optional

from veritas_kernel.ledger.store import ProtocolStore
from veritas_kernel.models.config import ProtocolConfig
from veritas_kernel.models.stages import LearningAssessmentResult
from veritas_kernel.numerics.probability import (
    clamp,
    clamp_probability,
    validate_probability,
)

logger = logging.getLogger(__name__)


class LearningAssessor:

    def __init__(self, store: ProtocolStore, config: Optional[ProtocolConfig] = None):
        self.store = store
        self.config = config or ProtocolConfig()

    def learning_assessment(
        self,
        belief_id: str,
        post_disagreement_entropy: float,
        post_aggregate: float,
        epoch: Optional[int] = None,
    ) -> LearningAssessmentResult:
        eps = self.config.epsilon_probability
        validate_probability("post_mirror_descent_disagreement_entropy", post_disagreement_entropy)
        validate_probability("post_mirror_descent_aggregate", post_aggregate)

        with self.store.transaction():
            belief = self.store.require_belief(belief_id)
            previous = belief.previous_disagreement_entropy

            reduction = max(0.0, previous - post_disagreement_entropy)
            learning_occurred = reduction > eps and previous > eps
            rate = clamp(reduction / previous, 0.0, 1.0) if previous > eps else 0.0

            deactivated = self.store.deactivate_submissions(belief_id)
            self.store.update_belief_history(
                belief_id,
                previous_aggregate=clamp_probability(post_aggregate, eps),
                previous_disagreement_entropy=post_disagreement_entropy,
                processed_epoch=epoch,
            )

        logger.info(
            "Belief %s: entropy %.6f -> %.6f, learning=%s, rate %.4f (%d submissions closed)",
            belief_id, previous, post_disagreement_entropy, learning_occurred, rate, deactivated,
        )
        return LearningAssessmentResult(
            belief_id=belief_id,
            learning_occurred=learning_occurred,
            disagreement_entropy_reduction=reduction,
            economic_learning_rate=rate,
        )
