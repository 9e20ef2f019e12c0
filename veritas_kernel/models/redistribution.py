"""Redistribution Event: append-only audit record of one stake transfer."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class RedistributionEvent(BaseModel):
    """
    One agent's reward or slash for one belief in one epoch.

    Existence of any event for a (belief, epoch) pair marks that epoch as
    redistributed. Events are hashed and chained like a ledger.
    """

    id: str
    belief_id: str
    epoch: int
    agent_id: str
    information_score: float = Field(ge=-1, le=1)
    stake_delta: int                        # Positive = reward, negative = slash
    belief_weight: int = Field(ge=0)        # Gross lock used
    normalized_weight: float = Field(ge=0, le=1, default=0.0)
    stake_before: int = Field(ge=0)
    stake_after: int = Field(ge=0)
    processed_at: datetime

    # INTEGRITY
    signature: str = ""
    prior_event_hash: Optional[str] = None
