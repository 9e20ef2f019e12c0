"""
Weight Calculator: turns agents' stakes into normalized influence weights.

An agent's stake is spread evenly over the beliefs it participates in:
effective_stake = total_stake / max(1, active_belief_count).
Weights are effective stakes normalized to sum to 1.0.
"""

import logging
import math
from typing import Dict, List, Optional

from veritas_kernel.errors import ValidationError
from veritas_kernel.ledger.store import ProtocolStore
from veritas_kernel.models.config import ProtocolConfig
from veritas_kernel.models.stages import WeightsResult
from veritas_kernel.numerics.probability import validate_weights

logger = logging.getLogger(__name__)


class WeightCalculator:
    """Computes per-belief agent weights from the protocol store."""

    def __init__(self, store: ProtocolStore, config: Optional[ProtocolConfig] = None):
        self.store = store
        self.config = config or ProtocolConfig()

    def calculate_weights(self, belief_id: str, participant_agents: List[str]) -> WeightsResult:
        if not participant_agents:
            raise ValidationError("participant_agents must be non-empty")

        self.store.require_belief(belief_id)

        # Collapse duplicates, keep first-seen order
        agent_ids = list(dict.fromkeys(participant_agents))

        effective_stakes: Dict[str, float] = {}
        for agent_id in agent_ids:
            agent = self.store.require_agent(agent_id)
            effective_stakes[agent_id] = agent.total_stake / max(1, agent.active_belief_count)

        weights = normalize_stakes(effective_stakes, self.config.epsilon_stakes)
        if all(s < self.config.epsilon_stakes for s in effective_stakes.values()):
            logger.warning(
                "Belief %s: all effective stakes below %g, using equal weights",
                belief_id, self.config.epsilon_stakes,
            )

        validate_weights(weights, self.config.epsilon_probability)
        logger.debug("Belief %s weights: %s", belief_id, weights)
        return WeightsResult(
            belief_id=belief_id,
            weights=weights,
            effective_stakes=effective_stakes,
        )


def normalize_stakes(effective_stakes: Dict[str, float], epsilon_stakes: float) -> Dict[str, float]:
    """Normalize stakes to weights; equal shares when every stake is negligible."""
    n = len(effective_stakes)
    if all(s < epsilon_stakes for s in effective_stakes.values()):
        return {agent_id: 1.0 / n for agent_id in effective_stakes}

    total = math.fsum(effective_stakes.values())
    weights = {agent_id: s / total for agent_id, s in effective_stakes.items()}

    # Push any floating residue onto the heaviest agent so the sum is exact
    residue = 1.0 - math.fsum(weights.values())
    if residue:
        heaviest = max(weights, key=weights.get)
        weights[heaviest] += residue
    return weights
