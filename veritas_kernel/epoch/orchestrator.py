"""
Epoch Orchestrator: runs the full protocol pipeline once per epoch.

Per belief:
  weights -> aggregate -> decompose (preferred) -> mirror descent
          -> learning assessment -> (if learning) BTS -> redistribution

States per belief: ACTIVE -> (PROCESSED | SKIPPED | EXPIRED).

Each belief runs as one store transaction and remembers the last epoch it was
processed for, so retrying an epoch skips beliefs that already went through it.

A failure on one belief is logged and recorded in the report; the batch
continues. The global epoch counter advances only after every belief has
been attempted, and never moves backwards.
"""

import logging
from typing import List, Optional

from veritas_kernel.aggregation.engine import AggregationEngine
from veritas_kernel.decomposition.engine import DecompositionEngine
from veritas_kernel.errors import ProtocolError
from veritas_kernel.learning.assessor import LearningAssessor
from veritas_kernel.ledger.store import ProtocolStore
from veritas_kernel.mirror_descent.updater import MirrorDescentUpdater
from veritas_kernel.models.belief import Belief, BeliefStatus
from veritas_kernel.models.config import ProtocolConfig
from veritas_kernel.models.stages import BeliefProcessingResult, EpochReport
from veritas_kernel.redistribution.engine import RedistributionEngine
from veritas_kernel.scoring.bts import BTSScorer
from veritas_kernel.weights.calculator import WeightCalculator

logger = logging.getLogger(__name__)

AGGREGATION_DECOMPOSITION = "decomposition"
AGGREGATION_NAIVE = "naive"


class EpochOrchestrator:
    """Owns one instance of every pipeline stage over a shared store."""

    def __init__(self, store: ProtocolStore, config: Optional[ProtocolConfig] = None):
        self.store = store
        self.config = config or ProtocolConfig()

        self.weights = WeightCalculator(store, self.config)
        self.aggregation = AggregationEngine(store, self.config)
        self.decomposition = DecompositionEngine(store, self.config)
        self.mirror_descent = MirrorDescentUpdater(store, self.config)
        self.learning = LearningAssessor(store, self.config)
        self.scorer = BTSScorer(self.config)
        self.redistribution = RedistributionEngine(store, self.config)

    def process_epoch(self, current_epoch: Optional[int] = None) -> EpochReport:
        """Process every active belief for one epoch and advance the counter."""
        epoch = self.store.get_current_epoch() if current_epoch is None else current_epoch
        logger.info("Processing epoch %d", epoch)

        beliefs = self.store.list_beliefs(BeliefStatus.ACTIVE)
        expired = [b for b in beliefs if b.expiration_epoch <= epoch]
        remaining = [b for b in beliefs if b.expiration_epoch > epoch]

        errors: List[str] = []
        expired_ids: List[str] = []
        for belief in expired:
            try:
                self._expire_belief(belief)
                expired_ids.append(belief.id)
            except ProtocolError as exc:
                logger.error("Failed to expire belief %s: %s", belief.id, exc.message)
                errors.append(f"Failed to expire belief {belief.id}: {exc.message}")

        processed: List[BeliefProcessingResult] = []
        skipped: List[str] = []
        for belief in remaining:
            try:
                result = self.process_belief(belief.id, epoch)
            except ProtocolError as exc:
                logger.error("Failed to process belief %s: %s", belief.id, exc.message)
                errors.append(f"Failed to process belief {belief.id}: {exc.message}")
                continue
            except Exception as exc:
                logger.exception("Unexpected failure processing belief %s", belief.id)
                errors.append(f"Failed to process belief {belief.id}: {exc}")
                continue
            if result is None:
                skipped.append(belief.id)
            else:
                processed.append(result)

        next_epoch = self.store.advance_epoch(epoch)
        logger.info(
            "Epoch %d done: %d processed, %d skipped, %d expired, %d errors; next epoch %d",
            epoch, len(processed), len(skipped), len(expired_ids), len(errors), next_epoch,
        )
        return EpochReport(
            epoch=epoch,
            processed_beliefs=processed,
            skipped_beliefs=skipped,
            expired_beliefs=expired_ids,
            next_epoch=next_epoch,
            errors=errors,
        )

    def _expire_belief(self, belief: Belief) -> None:
        with self.store.transaction():
            for agent_id in self.store.participant_ids(belief.id):
                self.store.adjust_active_belief_count(agent_id, -1)
            self.store.delete_belief(belief.id)
        logger.info("Belief %s expired at epoch %d", belief.id, belief.expiration_epoch)

    def process_belief(self, belief_id: str, epoch: int) -> Optional[BeliefProcessingResult]:
        """
        Run the pipeline for one belief as a single store transaction.
        Returns None when the belief was already processed for this epoch,
        lacks participants or has no submission in this epoch.
        """
        with self.store.transaction():
            belief = self.store.require_belief(belief_id)
            if belief.last_processed_epoch is not None and belief.last_processed_epoch >= epoch:
                logger.info(
                    "Belief %s skipped: already processed for epoch %d",
                    belief_id, belief.last_processed_epoch,
                )
                return None
            return self._run_pipeline(belief_id, epoch)

    def _run_pipeline(self, belief_id: str, epoch: int) -> Optional[BeliefProcessingResult]:
        participants = self.store.participant_ids(belief_id)
        if len(participants) < self.config.min_participants:
            logger.debug("Belief %s skipped: %d participants", belief_id, len(participants))
            return None
        if self.store.count_epoch_submissions(belief_id, epoch) == 0:
            logger.debug("Belief %s skipped: no submissions in epoch %d", belief_id, epoch)
            return None

        weights_result = self.weights.calculate_weights(belief_id, participants)
        weights = weights_result.weights

        naive = self.aggregation.aggregate(belief_id, weights, epoch)
        method = AGGREGATION_NAIVE
        quality = None
        pre_aggregate = naive.aggregate
        jensen_shannon = naive.jensen_shannon_disagreement_entropy
        certainty = naive.certainty
        loo_aggregates = naive.leave_one_out_aggregates
        loo_metas = naive.leave_one_out_meta_aggregates

        if self.config.use_decomposition:
            try:
                decomposed = self.decomposition.decompose(belief_id, weights, epoch)
            except ProtocolError as exc:
                logger.warning(
                    "Belief %s: decomposition failed (%s), using naive aggregate",
                    belief_id, exc.message,
                )
            else:
                quality = decomposed.decomposition_quality
                if quality >= self.config.decomposition_quality_threshold:
                    method = AGGREGATION_DECOMPOSITION
                    pre_aggregate = decomposed.aggregate
                    jensen_shannon = decomposed.jensen_shannon_disagreement_entropy
                    certainty = decomposed.certainty
                    loo_aggregates = decomposed.leave_one_out_aggregates
                    loo_metas = decomposed.leave_one_out_meta_aggregates
                else:
                    logger.warning(
                        "Belief %s: decomposition quality %.3f below %.3f, using naive aggregate",
                        belief_id, quality, self.config.decomposition_quality_threshold,
                    )

        active_agents = naive.active_agent_indicators
        md = self.mirror_descent.mirror_descent(
            belief_id, pre_aggregate, certainty, active_agents, weights
        )
        assessment = self.learning.learning_assessment(
            belief_id, md.post_disagreement_entropy, md.post_aggregate, epoch
        )

        result = BeliefProcessingResult(
            belief_id=belief_id,
            participant_count=len(participants),
            weights=weights,
            effective_stakes=weights_result.effective_stakes,
            aggregation_method=method,
            decomposition_quality=quality,
            pre_mirror_descent_aggregate=pre_aggregate,
            post_mirror_descent_aggregate=md.post_aggregate,
            jensen_shannon_disagreement_entropy=jensen_shannon,
            post_mirror_descent_disagreement_entropy=md.post_disagreement_entropy,
            certainty=certainty,
            active_agents=active_agents,
            learning_occurred=assessment.learning_occurred,
            disagreement_entropy_reduction=assessment.disagreement_entropy_reduction,
            economic_learning_rate=assessment.economic_learning_rate,
        )

        if assessment.learning_occurred:
            bts = self.scorer.bts_score(
                belief_id,
                md.updated_beliefs,
                loo_aggregates,
                loo_metas,
                weights,
                naive.agent_meta_predictions,
            )
            result.information_scores = bts.information_scores
            result.winners = bts.winners
            result.losers = bts.losers
            result.redistribution = self.redistribution.redistribute(
                belief_id, epoch, bts.information_scores
            )

        logger.info(
            "Belief %s processed via %s: aggregate %.6f -> %.6f, learning=%s",
            belief_id, method, pre_aggregate, md.post_aggregate, assessment.learning_occurred,
        )
        return result
