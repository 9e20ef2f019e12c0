"""Belief, Submission and Position: the per-question protocol state."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class BeliefStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"


class Belief(BaseModel):
    """A tracked binary proposition with a running consensus aggregate."""

    id: str
    creator_agent_id: str
    created_epoch: int = Field(ge=0)
    expiration_epoch: int = Field(ge=0)
    previous_aggregate: float = Field(gt=0, lt=1, default=0.5)
    previous_disagreement_entropy: float = Field(ge=0, le=1, default=0.0)
    status: BeliefStatus = BeliefStatus.ACTIVE
    last_processed_epoch: Optional[int] = None  # Guards against re-running an epoch
    created_at: datetime


class Submission(BaseModel):
    """One agent's stated probability and meta-prediction for a belief."""

    id: str
    belief_id: str
    agent_id: str
    belief_value: float = Field(ge=0, le=1)
    meta_prediction: float = Field(ge=0, le=1)  # Predicted population average
    epoch: int = Field(ge=0)
    is_active: bool = True                      # Submitted fresh this epoch
    stake_allocated: int = Field(ge=0, default=0)  # Gross lock at submission time
    created_at: datetime
    updated_at: datetime


class Position(BaseModel):
    """A locked market position backing an agent's stake on a belief."""

    agent_id: str
    belief_id: str
    side: PositionSide
    size: float = Field(ge=0)               # Token balance; zero means closed
    belief_lock: int = Field(ge=0)          # Micro-units locked by this position
    updated_at: datetime
