"""Veritas Kernel data models."""

from veritas_kernel.models.agent import Agent
from veritas_kernel.models.belief import (
    Belief,
    BeliefStatus,
    Position,
    PositionSide,
    Submission,
)
from veritas_kernel.models.config import ProtocolConfig
from veritas_kernel.models.redistribution import RedistributionEvent
from veritas_kernel.models.stages import (
    AggregationResult,
    BeliefProcessingResult,
    BTSResult,
    DecompositionResult,
    EpochReport,
    LearningAssessmentResult,
    LocalExpectationsMatrix,
    MirrorDescentResult,
    RedistributionResult,
    WeightsResult,
)

__all__ = [
    "Agent",
    "AggregationResult",
    "Belief",
    "BeliefProcessingResult",
    "BeliefStatus",
    "BTSResult",
    "DecompositionResult",
    "EpochReport",
    "LearningAssessmentResult",
    "LocalExpectationsMatrix",
    "MirrorDescentResult",
    "Position",
    "PositionSide",
    "ProtocolConfig",
    "RedistributionEvent",
    "RedistributionResult",
    "Submission",
    "WeightsResult",
]
