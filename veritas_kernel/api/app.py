"""
Veritas Kernel API: FastAPI endpoints.

Exposes the protocol via a REST API for:
- Agent and belief participation
- Each pipeline stage on its own
- Epoch processing and cron control
- Redistribution audit queries
- Protocol configuration
"""

from typing import Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from veritas_kernel.config.settings import Settings, get_settings
from veritas_kernel.epoch.orchestrator import EpochOrchestrator
from veritas_kernel.epoch.scheduler import EpochScheduler
from veritas_kernel.errors import ProtocolError
from veritas_kernel.ledger.store import ProtocolStore
from veritas_kernel.logging_config import configure_logging
from veritas_kernel.models.belief import PositionSide
from veritas_kernel.models.config import ProtocolConfig
from veritas_kernel.participation.service import ParticipationService
from veritas_kernel.settlement.score import SettlementScorer


# --- Request Models ---

class AgentCreateRequest(BaseModel):
    initial_stake: Optional[int] = None
    agent_id: Optional[str] = None


class BeliefCreateRequest(BaseModel):
    creator_agent_id: str
    initial_belief: float
    meta_prediction: Optional[float] = None
    duration_epochs: Optional[int] = None
    epoch: Optional[int] = None


class SubmissionRequest(BaseModel):
    agent_id: str
    belief_value: float
    meta_prediction: float
    epoch: Optional[int] = None


class PositionRequest(BaseModel):
    agent_id: str
    side: PositionSide
    size: float
    belief_lock: int


class WeightsRequest(BaseModel):
    belief_id: str
    participant_agents: List[str]


class AggregateRequest(BaseModel):
    belief_id: str
    weights: Dict[str, float]
    epoch: int


class MirrorDescentRequest(BaseModel):
    belief_id: str
    pre_mirror_descent_aggregate: float
    certainty: float
    active_agent_indicators: List[str] = []
    weights: Dict[str, float]


class LearningAssessmentRequest(BaseModel):
    belief_id: str
    post_mirror_descent_disagreement_entropy: float
    post_mirror_descent_aggregate: float
    epoch: Optional[int] = None


class BTSRequest(BaseModel):
    belief_id: str
    agent_beliefs: Dict[str, float]
    leave_one_out_aggregates: Dict[str, float]
    leave_one_out_meta_aggregates: Dict[str, float]
    normalized_weights: Dict[str, float]
    agent_meta_predictions: Dict[str, float]


class RedistributeRequest(BaseModel):
    belief_id: str
    current_epoch: int
    information_scores: Dict[str, float]


class EpochProcessRequest(BaseModel):
    current_epoch: Optional[int] = None


class CronStartRequest(BaseModel):
    schedule: Optional[str] = None


# --- Application Factory ---

def _wire_components(app: FastAPI, store: ProtocolStore, config: ProtocolConfig) -> None:
    """Build every protocol component over one store and config."""
    orchestrator = EpochOrchestrator(store, config)
    app.state.config = config
    app.state.participation = ParticipationService(store, config)
    app.state.weights = orchestrator.weights
    app.state.aggregation = orchestrator.aggregation
    app.state.decomposition = orchestrator.decomposition
    app.state.mirror_descent = orchestrator.mirror_descent
    app.state.learning = orchestrator.learning
    app.state.scorer = orchestrator.scorer
    app.state.redistribution = orchestrator.redistribution
    app.state.orchestrator = orchestrator
    app.state.scheduler = EpochScheduler(store, orchestrator, config)
    app.state.settlement = SettlementScorer(store, config)


def create_app(
    store: Optional[ProtocolStore] = None,
    config: Optional[ProtocolConfig] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        description="Veritas belief aggregation and stake redistribution protocol",
        version="0.1.0",
    )

    ps = store or ProtocolStore(settings.db_path)
    app.state.store = ps
    _wire_components(app, ps, config or ProtocolConfig())

    @app.exception_handler(ProtocolError)
    async def handle_protocol_error(request: Request, exc: ProtocolError):
        return JSONResponse(status_code=exc.code, content=exc.to_dict())

    # === AGENTS ===

    @app.post("/agents")
    def create_agent(req: AgentCreateRequest):
        """Register a new agent with its opening stake."""
        agent = app.state.participation.create_agent(req.initial_stake, req.agent_id)
        return agent.model_dump(mode="json")

    @app.get("/agents/{agent_id}")
    def get_agent(agent_id: str):
        return ps.require_agent(agent_id).model_dump(mode="json")

    @app.get("/agents/{agent_id}/stake-allocation")
    def get_stake_allocation(agent_id: str):
        """Effective stake now and after joining one more belief."""
        return app.state.participation.validate_stake_allocation(agent_id)

    @app.get("/agents/{agent_id}/redistributions")
    def get_agent_redistributions(agent_id: str):
        """Every reward and slash an agent has received."""
        ps.require_agent(agent_id)
        return [e.model_dump(mode="json") for e in ps.events_for_agent(agent_id)]

    # === BELIEFS ===

    @app.post("/beliefs")
    def create_belief(req: BeliefCreateRequest):
        """Open a belief with the creator's first submission."""
        belief = app.state.participation.create_belief(
            creator_agent_id=req.creator_agent_id,
            initial_belief=req.initial_belief,
            meta_prediction=req.meta_prediction,
            duration_epochs=req.duration_epochs,
            epoch=req.epoch,
        )
        return belief.model_dump(mode="json")

    @app.get("/beliefs")
    def list_beliefs():
        return [b.model_dump(mode="json") for b in ps.list_beliefs()]

    @app.get("/beliefs/{belief_id}")
    def get_belief(belief_id: str):
        return ps.require_belief(belief_id).model_dump(mode="json")

    @app.get("/beliefs/{belief_id}/submissions")
    def get_submissions(belief_id: str):
        """Current submission per agent."""
        ps.require_belief(belief_id)
        return [s.model_dump(mode="json") for s in ps.current_submissions(belief_id).values()]

    @app.post("/beliefs/{belief_id}/submissions")
    def submit_belief(belief_id: str, req: SubmissionRequest):
        submission = app.state.participation.submit_belief(
            agent_id=req.agent_id,
            belief_id=belief_id,
            belief_value=req.belief_value,
            meta_prediction=req.meta_prediction,
            epoch=req.epoch,
        )
        return submission.model_dump(mode="json")

    @app.put("/beliefs/{belief_id}/positions")
    def record_position(belief_id: str, req: PositionRequest):
        position = app.state.participation.record_position(
            agent_id=req.agent_id,
            belief_id=belief_id,
            side=req.side,
            size=req.size,
            belief_lock=req.belief_lock,
        )
        return position.model_dump(mode="json")

    @app.get("/beliefs/{belief_id}/settlement-score")
    def get_settlement_score(belief_id: str, scale: Optional[int] = None):
        """Latest aggregate in fixed-point form."""
        return app.state.settlement.settlement_score(belief_id, scale)

    # === PROTOCOL STAGES ===

    @app.post("/protocol/weights")
    def calculate_weights(req: WeightsRequest):
        result = app.state.weights.calculate_weights(req.belief_id, req.participant_agents)
        return result.model_dump(mode="json")

    @app.post("/protocol/aggregate")
    def aggregate(req: AggregateRequest):
        result = app.state.aggregation.aggregate(req.belief_id, req.weights, req.epoch)
        return result.model_dump(mode="json")

    @app.post("/protocol/decompose")
    def decompose(req: AggregateRequest):
        result = app.state.decomposition.decompose(req.belief_id, req.weights, req.epoch)
        return result.model_dump(mode="json")

    @app.post("/protocol/mirror-descent")
    def mirror_descent(req: MirrorDescentRequest):
        result = app.state.mirror_descent.mirror_descent(
            req.belief_id,
            req.pre_mirror_descent_aggregate,
            req.certainty,
            req.active_agent_indicators,
            req.weights,
        )
        return result.model_dump(mode="json")

    @app.post("/protocol/learning-assessment")
    def learning_assessment(req: LearningAssessmentRequest):
        result = app.state.learning.learning_assessment(
            req.belief_id,
            req.post_mirror_descent_disagreement_entropy,
            req.post_mirror_descent_aggregate,
            req.epoch,
        )
        return result.model_dump(mode="json")

    @app.post("/protocol/bts-score")
    def bts_score(req: BTSRequest):
        result = app.state.scorer.bts_score(
            req.belief_id,
            req.agent_beliefs,
            req.leave_one_out_aggregates,
            req.leave_one_out_meta_aggregates,
            req.normalized_weights,
            req.agent_meta_predictions,
        )
        return result.model_dump(mode="json")

    @app.post("/protocol/redistribute")
    def redistribute(req: RedistributeRequest):
        result = app.state.redistribution.redistribute(
            req.belief_id, req.current_epoch, req.information_scores
        )
        return result.model_dump(mode="json", by_alias=True)

    # === EPOCHS ===

    @app.post("/epochs/process")
    def process_epoch(req: Optional[EpochProcessRequest] = None):
        """Run the full pipeline for one epoch and advance the counter."""
        epoch = req.current_epoch if req else None
        report = app.state.orchestrator.process_epoch(epoch)
        return report.model_dump(mode="json", by_alias=True)

    @app.get("/epochs/current")
    def current_epoch():
        return app.state.scheduler.status()

    @app.post("/epochs/cron/start")
    def start_cron(req: Optional[CronStartRequest] = None):
        return app.state.scheduler.start(req.schedule if req else None)

    @app.post("/epochs/cron/stop")
    def stop_cron():
        return app.state.scheduler.stop()

    @app.post("/epochs/cron/check-overdue")
    def check_overdue():
        """Fire the epoch if its deadline has passed."""
        return app.state.scheduler.check_overdue()

    # === REDISTRIBUTION AUDIT ===

    @app.get("/redistributions/verify")
    def verify_redistributions():
        """Verify audit chain integrity."""
        return {
            "integrity_valid": ps.verify_chain_integrity(),
            "total_events": ps.count_events(),
        }

    @app.get("/redistributions/{belief_id}/{epoch}")
    def get_redistribution_summary(belief_id: str, epoch: int):
        return ps.redistribution_summary(belief_id, epoch)

    # === CONFIG ===

    @app.get("/config")
    def get_config():
        """Current protocol configuration."""
        return app.state.config.model_dump()

    @app.put("/config")
    def update_config(config: ProtocolConfig):
        """Replace the protocol configuration for every component."""
        _wire_components(app, ps, config)
        return config.model_dump()

    return app


# Default application instance
app = create_app()
