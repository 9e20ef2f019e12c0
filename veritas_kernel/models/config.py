"""Protocol configuration."""

from pydantic import BaseModel, Field


class ProtocolConfig(BaseModel):
    """Numerical constants and operating parameters for the epoch pipeline."""

    epsilon_probability: float = 1e-10
    epsilon_stakes: float = 1e-8
    ridge_epsilon: float = 1e-6
    min_participants: int = 2
    decomposition_quality_threshold: float = Field(ge=0, le=1, default=0.3)
    use_decomposition: bool = True
    initial_agent_stake: int = Field(ge=0, default=10_000_000)
    min_stake_per_belief: int = Field(ge=0, default=0)
    default_belief_duration_epochs: int = Field(ge=1, default=10)
    epoch_schedule: str = "0 * * * *"
    overdue_buffer_seconds: int = 5
    poll_interval_seconds: int = 30
    settlement_scale: int = Field(gt=0, default=1_000_000)
