"""
Redistribution Engine: zero-sum stake transfer from losers to winners.

Behavioral Contract:
- raw_delta = information_score * gross_lock for every scored agent.
- Losers are slashed |raw_delta| (micro-units, capped at their balance).
- Winners share the slashed pot in proportion to raw_delta, i.e. receive
  raw_delta * lambda with lambda = losses / gains clamped to [0, 1].
- Integer shares use largest-remainder allocation, so sum(rewards) equals
  sum(slashes) exactly.
- When losses exceed gains the slashes are scaled down to the gains pot.
  Without winners or without losers nothing moves.
- Idempotency check, stake reads, stake writes and audit events happen in a
  single store transaction. A (belief, epoch) pair that already has events is
  skipped with reason "already_redistributed".
"""

import logging
import math
from datetime import datetime
from typing import Dict, Optional
from uuid import uuid4

from veritas_kernel.errors import ValidationError
from veritas_kernel.ledger.store import ProtocolStore
from veritas_kernel.models.config import ProtocolConfig
from veritas_kernel.models.redistribution import RedistributionEvent
from veritas_kernel.models.stages import RedistributionResult
from veritas_kernel.numerics.probability import clamp

logger = logging.getLogger(__name__)

ALREADY_REDISTRIBUTED = "already_redistributed"


def allocate_largest_remainder(total: int, shares: Dict[str, float]) -> Dict[str, int]:
    """
    Split an integer total proportionally to non-negative shares.
    Floors every quota, then hands the leftover units to the largest
    fractional remainders (ties broken by insertion order).
    """
    share_sum = math.fsum(shares.values())
    if total <= 0 or share_sum <= 0:
        return {key: 0 for key in shares}

    quotas = {key: total * share / share_sum for key, share in shares.items()}
    allocation = {key: int(math.floor(q)) for key, q in quotas.items()}
    leftover = total - sum(allocation.values())
    order = sorted(shares, key=lambda key: quotas[key] - allocation[key], reverse=True)
    for key in order[:leftover]:
        allocation[key] += 1
    return allocation


class RedistributionEngine:
    """Applies one epoch's information scores to agents' stakes."""

    def __init__(self, store: ProtocolStore, config: Optional[ProtocolConfig] = None):
        self.store = store
        self.config = config or ProtocolConfig()

    def redistribute(
        self,
        belief_id: str,
        current_epoch: int,
        information_scores: Dict[str, float],
    ) -> RedistributionResult:
        for agent_id, score in information_scores.items():
            if not isinstance(score, (int, float)) or not math.isfinite(score) or abs(score) > 1:
                raise ValidationError(
                    f"Information score for agent {agent_id} must be in [-1,1], got {score}",
                    {"agent_id": agent_id},
                )

        with self.store.transaction():
            self.store.require_belief(belief_id)
            if self.store.has_redistribution(belief_id, current_epoch):
                logger.info(
                    "Belief %s epoch %d already redistributed, skipping",
                    belief_id, current_epoch,
                )
                return RedistributionResult(
                    belief_id=belief_id,
                    epoch=current_epoch,
                    skipped=True,
                    reason=ALREADY_REDISTRIBUTED,
                )

            stakes: Dict[str, int] = {}
            locks: Dict[str, int] = {}
            raw: Dict[str, float] = {}
            for agent_id, score in information_scores.items():
                stakes[agent_id] = self.store.require_agent(agent_id).total_stake
                locks[agent_id] = self.store.gross_lock(agent_id, belief_id)
                raw[agent_id] = score * locks[agent_id]

            winners = {a: d for a, d in raw.items() if d > 0}
            losers = {a: d for a, d in raw.items() if d < 0}
            gains = math.fsum(winners.values())

            slashes: Dict[str, int] = {}
            for agent_id, delta in losers.items():
                slash = int(round(abs(delta)))
                if slash > stakes[agent_id]:
                    logger.warning(
                        "Belief %s: slash for agent %s capped at balance %d (wanted %d)",
                        belief_id, agent_id, stakes[agent_id], slash,
                    )
                    slash = stakes[agent_id]
                slashes[agent_id] = slash
            losses = sum(slashes.values())

            if not winners or losses == 0:
                logger.info(
                    "Belief %s epoch %d: no transfer (%d winners, %d losers)",
                    belief_id, current_epoch, len(winners), len(losers),
                )
                return RedistributionResult(belief_id=belief_id, epoch=current_epoch)

            lam = clamp(losses / gains, 0.0, 1.0)
            pot = losses
            if losses > gains:
                pot = int(math.floor(gains))
                logger.warning(
                    "Belief %s: losses %d exceed gains %.2f, scaling slashes to %d",
                    belief_id, losses, gains, pot,
                )
                slashes = allocate_largest_remainder(
                    pot, {a: float(s) for a, s in slashes.items()}
                )
            rewards = allocate_largest_remainder(pot, winners)

            deltas: Dict[str, int] = {}
            for agent_id, reward in rewards.items():
                if reward:
                    deltas[agent_id] = reward
            for agent_id, slash in slashes.items():
                if slash:
                    deltas[agent_id] = -slash

            total_lock = sum(locks.values())
            now = datetime.utcnow()
            for agent_id, delta in deltas.items():
                before = stakes[agent_id]
                after = before + delta
                self.store.set_agent_stake(agent_id, after)
                self.store.append_event(RedistributionEvent(
                    id=f"redist_{uuid4().hex[:12]}",
                    belief_id=belief_id,
                    epoch=current_epoch,
                    agent_id=agent_id,
                    information_score=information_scores[agent_id],
                    stake_delta=delta,
                    belief_weight=locks[agent_id],
                    normalized_weight=locks[agent_id] / total_lock if total_lock else 0.0,
                    stake_before=before,
                    stake_after=after,
                    processed_at=now,
                ))

        individual_rewards = {a: r for a, r in rewards.items() if r}
        individual_slashes = {a: s for a, s in slashes.items() if s}
        total_delta = sum(deltas.values())
        logger.info(
            "Belief %s epoch %d: redistributed %d micro-units (lambda %.4f, net %d)",
            belief_id, current_epoch, sum(individual_slashes.values()), lam, total_delta,
        )
        return RedistributionResult(
            belief_id=belief_id,
            epoch=current_epoch,
            lambda_=lam,
            individual_rewards=individual_rewards,
            individual_slashes=individual_slashes,
            redistribution_occurred=bool(deltas),
            total_delta_micro=total_delta,
        )
