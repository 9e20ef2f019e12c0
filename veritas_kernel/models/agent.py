"""Agent: a participant holding stake across beliefs."""

from datetime import datetime

from pydantic import BaseModel, Field


class Agent(BaseModel):
    """A staked participant. Never deleted; balance never negative."""

    id: str
    total_stake: int = Field(ge=0)          # Micro-units
    active_belief_count: int = Field(ge=0, default=0)
    created_at: datetime
