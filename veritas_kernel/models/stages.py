"""Stage results: one explicit response schema per pipeline stage."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class WeightsResult(BaseModel):
    """Output of the Weight Calculator."""

    belief_id: str
    weights: Dict[str, float]               # Normalized, sums to 1.0
    effective_stakes: Dict[str, float]      # total_stake / max(1, active_belief_count)


class AggregationResult(BaseModel):
    """Output of the naive weighted Aggregation Engine."""

    belief_id: str
    epoch: int
    aggregate: float
    jensen_shannon_disagreement_entropy: float
    normalized_disagreement_entropy: float
    certainty: float
    leave_one_out_aggregates: Dict[str, float]
    leave_one_out_meta_aggregates: Dict[str, float]
    agent_meta_predictions: Dict[str, float]
    agent_beliefs: Dict[str, float] = {}
    active_agent_indicators: List[str] = []


class LocalExpectationsMatrix(BaseModel):
    """2x2 matrix mapping belief distributions to meta-prediction distributions."""

    w11: float
    w12: float
    w21: float
    w22: float


class DecompositionResult(BaseModel):
    """Output of the factor-model Decomposition Engine."""

    belief_id: str
    epoch: int
    aggregate: float
    decomposition_quality: float = Field(ge=0, le=1)
    common_prior: float = 0.5
    local_expectations_matrix: Optional[LocalExpectationsMatrix] = None
    jensen_shannon_disagreement_entropy: float = 0.0
    normalized_disagreement_entropy: float = 0.0
    certainty: float = 1.0
    leave_one_out_aggregates: Dict[str, float] = {}
    leave_one_out_meta_aggregates: Dict[str, float] = {}


class MirrorDescentResult(BaseModel):
    """Output of the Mirror Descent Updater."""

    belief_id: str
    updated_beliefs: Dict[str, float]
    post_aggregate: float
    post_disagreement_entropy: float


class LearningAssessmentResult(BaseModel):
    """Output of the Learning Assessor."""

    belief_id: str
    learning_occurred: bool
    disagreement_entropy_reduction: float
    economic_learning_rate: float = Field(ge=0, le=1)


class BTSResult(BaseModel):
    """Output of the BTS Scorer."""

    belief_id: str
    information_scores: Dict[str, float]    # Clamped to [-1, 1]
    bts_scores: Dict[str, float] = {}       # Unclamped divergence scores
    winners: List[str]
    losers: List[str]


class RedistributionResult(BaseModel):
    """Output of the Redistribution Engine."""

    belief_id: str
    epoch: int
    lambda_: float = Field(default=0.0, alias="lambda")
    individual_rewards: Dict[str, int] = {}
    individual_slashes: Dict[str, int] = {}
    redistribution_occurred: bool = False
    total_delta_micro: int = 0
    skipped: bool = False
    reason: Optional[str] = None

    model_config = {"populate_by_name": True}


class BeliefProcessingResult(BaseModel):
    """Everything the orchestrator learned about one belief in one epoch."""

    belief_id: str
    participant_count: int
    weights: Dict[str, float]
    effective_stakes: Dict[str, float]
    aggregation_method: str                 # "decomposition" | "naive"
    decomposition_quality: Optional[float] = None
    pre_mirror_descent_aggregate: float
    post_mirror_descent_aggregate: float
    jensen_shannon_disagreement_entropy: float
    post_mirror_descent_disagreement_entropy: float
    certainty: float
    active_agents: List[str] = []
    learning_occurred: bool
    disagreement_entropy_reduction: float = 0.0
    economic_learning_rate: float
    information_scores: Dict[str, float] = {}
    winners: List[str] = []
    losers: List[str] = []
    redistribution: Optional[RedistributionResult] = None


class EpochReport(BaseModel):
    """Structured report returned by one epoch processing run."""

    epoch: int
    processed_beliefs: List[BeliefProcessingResult] = []
    skipped_beliefs: List[str] = []
    expired_beliefs: List[str] = []
    next_epoch: int
    errors: List[str] = []
