"""
Participation Service: how agents enter the protocol.

Creates agents and beliefs, records submissions and market positions, and
keeps each agent's active_belief_count in step with the beliefs it holds.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

from veritas_kernel.errors import StateConflictError, ValidationError
from veritas_kernel.ledger.store import ProtocolStore
from veritas_kernel.models.agent import Agent
from veritas_kernel.models.belief import (
    Belief,
    BeliefStatus,
    Position,
    PositionSide,
    Submission,
)
from veritas_kernel.models.config import ProtocolConfig
from veritas_kernel.numerics.probability import clamp_probability, validate_probability

logger = logging.getLogger(__name__)


class ParticipationService:

    def __init__(self, store: ProtocolStore, config: Optional[ProtocolConfig] = None):
        self.store = store
        self.config = config or ProtocolConfig()

    # --- Agents ---

    def create_agent(self, initial_stake: Optional[int] = None, agent_id: Optional[str] = None) -> Agent:
        stake = self.config.initial_agent_stake if initial_stake is None else initial_stake
        if stake < 0:
            raise ValidationError(f"initial_stake must be non-negative, got {stake}")
        agent = Agent(
            id=agent_id or f"agent_{uuid4().hex[:12]}",
            total_stake=stake,
            active_belief_count=0,
            created_at=datetime.utcnow(),
        )
        self.store.insert_agent(agent)
        logger.info("Created agent %s with stake %d", agent.id, stake)
        return agent

    def validate_stake_allocation(self, agent_id: str) -> dict:
        """Effective stake now and after joining one more belief."""
        agent = self.store.require_agent(agent_id)
        current = agent.total_stake / max(1, agent.active_belief_count)
        projected = agent.total_stake / (agent.active_belief_count + 1)
        minimum = self.config.min_stake_per_belief
        return {
            "agent_id": agent_id,
            "total_stake": agent.total_stake,
            "active_belief_count": agent.active_belief_count,
            "current_effective_stake": current,
            "projected_effective_stake": projected,
            "min_stake_per_belief": minimum,
            "sufficient": projected >= minimum,
        }

    # --- Beliefs ---

    def create_belief(
        self,
        creator_agent_id: str,
        initial_belief: float,
        meta_prediction: Optional[float] = None,
        duration_epochs: Optional[int] = None,
        epoch: Optional[int] = None,
    ) -> Belief:
        """Open a belief and record the creator's first submission."""
        validate_probability("initial_belief", initial_belief)
        if meta_prediction is None:
            meta_prediction = initial_belief
        validate_probability("meta_prediction", meta_prediction)
        duration = duration_epochs or self.config.default_belief_duration_epochs
        if duration < 1:
            raise ValidationError(f"duration_epochs must be at least 1, got {duration}")

        self.store.require_agent(creator_agent_id)
        current_epoch = self.store.get_current_epoch() if epoch is None else epoch

        belief = Belief(
            id=f"belief_{uuid4().hex[:12]}",
            creator_agent_id=creator_agent_id,
            created_epoch=current_epoch,
            expiration_epoch=current_epoch + duration,
            previous_aggregate=clamp_probability(initial_belief, self.config.epsilon_probability),
            previous_disagreement_entropy=0.0,
            status=BeliefStatus.ACTIVE,
            created_at=datetime.utcnow(),
        )
        with self.store.transaction():
            self.store.insert_belief(belief)
            self.submit_belief(
                creator_agent_id, belief.id, initial_belief, meta_prediction, epoch=current_epoch
            )
        logger.info(
            "Created belief %s by %s, expires at epoch %d",
            belief.id, creator_agent_id, belief.expiration_epoch,
        )
        return belief

    def submit_belief(
        self,
        agent_id: str,
        belief_id: str,
        belief_value: float,
        meta_prediction: float,
        epoch: Optional[int] = None,
    ) -> Submission:
        validate_probability("belief_value", belief_value)
        validate_probability("meta_prediction", meta_prediction)

        with self.store.transaction():
            agent = self.store.require_agent(agent_id)
            belief = self.store.require_belief(belief_id)
            current_epoch = self.store.get_current_epoch() if epoch is None else epoch

            if belief.status != BeliefStatus.ACTIVE or belief.expiration_epoch <= current_epoch:
                raise StateConflictError(
                    f"Belief {belief_id} is not accepting submissions",
                    {"belief_id": belief_id, "status": belief.status.value},
                )

            first_submission = agent_id not in self.store.participant_ids(belief_id)
            if first_submission:
                projected = agent.total_stake / (agent.active_belief_count + 1)
                if projected < self.config.min_stake_per_belief:
                    raise ValidationError(
                        f"Insufficient stake: {projected:.0f} per belief, "
                        f"minimum {self.config.min_stake_per_belief}",
                        {"agent_id": agent_id},
                    )
                self.store.adjust_active_belief_count(agent_id, 1)

            now = datetime.utcnow()
            submission = Submission(
                id=f"sub_{uuid4().hex[:12]}",
                belief_id=belief_id,
                agent_id=agent_id,
                belief_value=belief_value,
                meta_prediction=meta_prediction,
                epoch=current_epoch,
                is_active=True,
                stake_allocated=self.store.gross_lock(agent_id, belief_id),
                created_at=now,
                updated_at=now,
            )
            self.store.insert_submission(submission)

        logger.debug(
            "Agent %s submitted %.4f (meta %.4f) on belief %s in epoch %d",
            agent_id, belief_value, meta_prediction, belief_id, current_epoch,
        )
        return submission

    # --- Positions ---

    def record_position(
        self,
        agent_id: str,
        belief_id: str,
        side: PositionSide,
        size: float,
        belief_lock: int,
    ) -> Position:
        if size < 0 or belief_lock < 0:
            raise ValidationError("Position size and belief_lock must be non-negative")
        self.store.require_agent(agent_id)
        self.store.require_belief(belief_id)
        position = Position(
            agent_id=agent_id,
            belief_id=belief_id,
            side=PositionSide(side),
            size=size,
            belief_lock=belief_lock,
            updated_at=datetime.utcnow(),
        )
        return self.store.upsert_position(position)
