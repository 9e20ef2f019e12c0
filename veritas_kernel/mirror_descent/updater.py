"""
Mirror Descent Updater: pulls passive agents toward the consensus.

Agents who did not resubmit this epoch are passive. Their beliefs move toward
the pre-update aggregate with step size lambda = certainty:

    new = (1 - lambda) * old + lambda * aggregate

Active agents keep their freshly submitted beliefs. The updated passive
beliefs are written back onto their current submissions.
"""

import logging
from typing import Dict, List, Optional

from veritas_kernel.aggregation.engine import weighted_aggregate
from veritas_kernel.errors import NotFoundError, ValidationError
from veritas_kernel.ledger.store import ProtocolStore
from veritas_kernel.models.config import ProtocolConfig
from veritas_kernel.models.stages import MirrorDescentResult
from veritas_kernel.numerics.probability import (
    disagreement,
    validate_probability,
    validate_weights,
)

logger = logging.getLogger(__name__)


class MirrorDescentUpdater:
    """Applies the certainty-scaled update to passive agents' beliefs."""

    def __init__(self, store: ProtocolStore, config: Optional[ProtocolConfig] = None):
        self.store = store
        self.config = config or ProtocolConfig()

    def mirror_descent(
        self,
        belief_id: str,
        pre_aggregate: float,
        certainty: float,
        active_agents: List[str],
        weights: Dict[str, float],
    ) -> MirrorDescentResult:
        eps = self.config.epsilon_probability
        validate_probability("pre_mirror_descent_aggregate", pre_aggregate)
        validate_probability("certainty", certainty)
        validate_weights(weights, eps)
        self.store.require_belief(belief_id)

        step = certainty
        active = set(active_agents)

        with self.store.transaction():
            submissions = self.store.current_submissions(belief_id)
            if not submissions:
                raise NotFoundError(
                    f"No submissions found for belief {belief_id}", {"belief_id": belief_id}
                )
            missing = [agent_id for agent_id in submissions if agent_id not in weights]
            if missing:
                raise ValidationError(
                    "Missing weight for participant agent", {"agent_ids": missing}
                )

            updated: Dict[str, float] = {}
            moved = 0
            for agent_id, submission in submissions.items():
                if agent_id in active:
                    updated[agent_id] = submission.belief_value
                    continue
                new_value = (1.0 - step) * submission.belief_value + step * pre_aggregate
                updated[agent_id] = new_value
                if new_value != submission.belief_value:
                    self.store.update_submission_belief(submission.id, new_value)
                    moved += 1
                logger.debug(
                    "Belief %s: passive agent %s %.6f -> %.6f",
                    belief_id, agent_id, submission.belief_value, new_value,
                )

        post_aggregate = weighted_aggregate(updated, weights, eps)
        _, post_normalized, _ = disagreement(updated, weights, post_aggregate, eps)

        logger.info(
            "Belief %s: mirror descent moved %d passive agents (lambda %.4f), "
            "post aggregate %.6f",
            belief_id, moved, step, post_aggregate,
        )
        return MirrorDescentResult(
            belief_id=belief_id,
            updated_beliefs=updated,
            post_aggregate=post_aggregate,
            post_disagreement_entropy=post_normalized,
        )
