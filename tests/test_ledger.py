"""Tests for the Protocol Store and the redistribution audit chain."""

from datetime import datetime

import pytest

from veritas_kernel.errors import InternalError
from veritas_kernel.ledger.store import ProtocolStore
from veritas_kernel.models.agent import Agent
from veritas_kernel.models.belief import Belief, Submission
from veritas_kernel.models.redistribution import RedistributionEvent


def _make_event(event_id: str, agent_id: str = "a", epoch: int = 1, delta: int = 100) -> RedistributionEvent:
    return RedistributionEvent(
        id=event_id,
        belief_id="belief_1",
        epoch=epoch,
        agent_id=agent_id,
        information_score=0.5 if delta > 0 else -0.5,
        stake_delta=delta,
        belief_weight=abs(delta) * 2,
        stake_before=1_000,
        stake_after=1_000 + delta,
        processed_at=datetime.utcnow(),
    )


def _make_submission(sub_id: str, agent_id: str, value: float, epoch: int = 0) -> Submission:
    now = datetime.utcnow()
    return Submission(
        id=sub_id,
        belief_id="belief_1",
        agent_id=agent_id,
        belief_value=value,
        meta_prediction=0.5,
        epoch=epoch,
        created_at=now,
        updated_at=now,
    )


class TestAuditChain:
    def setup_method(self):
        self.store = ProtocolStore(db_path=":memory:")

    def test_empty_chain_valid(self):
        assert self.store.verify_chain_integrity() is True

    def test_chaining(self):
        first = self.store.append_event(_make_event("e1"))
        second = self.store.append_event(_make_event("e2", agent_id="b", delta=-100))

        assert first.signature != ""
        assert first.prior_event_hash is None
        assert second.prior_event_hash == first.signature
        assert self.store.verify_chain_integrity() is True

    def test_tampering_detected(self):
        self.store.append_event(_make_event("e1"))
        self.store.append_event(_make_event("e2", agent_id="b", delta=-100))

        row = self.store._conn.execute(
            "SELECT event_json FROM redistribution_events WHERE id = 'e1'"
        ).fetchone()
        forged = row["event_json"].replace('"stake_delta": 100', '"stake_delta": 900')
        self.store._conn.execute(
            "UPDATE redistribution_events SET event_json = ? WHERE id = 'e1'", (forged,)
        )
        assert self.store.verify_chain_integrity() is False

    def test_duplicate_agent_event_rejected(self):
        self.store.append_event(_make_event("e1"))
        with pytest.raises(InternalError):
            self.store.append_event(_make_event("e2"))
        assert self.store.count_events() == 1

    def test_summary(self):
        self.store.append_event(_make_event("e1", agent_id="a", delta=100))
        self.store.append_event(_make_event("e2", agent_id="b", delta=-100))
        summary = self.store.redistribution_summary("belief_1", 1)
        assert summary["redistribution_occurred"] is True
        assert summary["total_rewards"] == 100
        assert summary["total_slashes"] == 100
        assert summary["net_delta"] == 0
        assert summary["participant_count"] == 2
        assert self.store.has_redistribution("belief_1", 1)
        assert not self.store.has_redistribution("belief_1", 2)

    def test_events_for_agent(self):
        self.store.append_event(_make_event("e1", agent_id="a", epoch=1))
        self.store.append_event(_make_event("e2", agent_id="a", epoch=2))
        self.store.append_event(_make_event("e3", agent_id="b", epoch=2))
        assert [e.id for e in self.store.events_for_agent("a")] == ["e1", "e2"]


class TestTransactions:
    def setup_method(self):
        self.store = ProtocolStore(db_path=":memory:")
        self.store.insert_agent(Agent(id="a", total_stake=500, created_at=datetime.utcnow()))

    def test_rollback_on_error(self):
        with pytest.raises(RuntimeError):
            with self.store.transaction():
                self.store.set_agent_stake("a", 0)
                raise RuntimeError("boom")
        assert self.store.get_agent("a").total_stake == 500

    def test_nested_transaction_joins_outer(self):
        with pytest.raises(RuntimeError):
            with self.store.transaction():
                with self.store.transaction():
                    self.store.set_agent_stake("a", 10)
                self.store.set_agent_stake("a", 20)
                raise RuntimeError("boom")
        assert self.store.get_agent("a").total_stake == 500

    def test_commit(self):
        with self.store.transaction():
            self.store.set_agent_stake("a", 700)
        assert self.store.get_agent("a").total_stake == 700

    def test_negative_stake_refused(self):
        with pytest.raises(InternalError):
            self.store.set_agent_stake("a", -1)

    def test_active_belief_count_floor(self):
        self.store.adjust_active_belief_count("a", -3)
        assert self.store.get_agent("a").active_belief_count == 0


class TestSubmissionsAndState:
    def setup_method(self):
        self.store = ProtocolStore(db_path=":memory:")
        self.store.insert_belief(Belief(
            id="belief_1",
            creator_agent_id="a",
            created_epoch=0,
            expiration_epoch=5,
            created_at=datetime.utcnow(),
        ))

    def test_current_submission_is_latest(self):
        self.store.insert_submission(_make_submission("s1", "a", 0.2))
        self.store.insert_submission(_make_submission("s2", "b", 0.4))
        self.store.insert_submission(_make_submission("s3", "a", 0.9, epoch=1))

        current = self.store.current_submissions("belief_1")
        assert current["a"].id == "s3"
        assert current["b"].id == "s2"
        assert self.store.participant_ids("belief_1") == ["a", "b"]
        assert self.store.count_epoch_submissions("belief_1", 1) == 1

    def test_deactivate(self):
        self.store.insert_submission(_make_submission("s1", "a", 0.2))
        self.store.insert_submission(_make_submission("s2", "b", 0.4))
        assert self.store.deactivate_submissions("belief_1") == 2
        assert all(not s.is_active for s in self.store.submission_history("belief_1"))

    def test_epoch_counter(self):
        assert self.store.get_current_epoch() == 0
        assert self.store.advance_epoch(0) == 1
        assert self.store.get_current_epoch() == 1

    def test_epoch_counter_never_rewinds(self):
        self.store.set_current_epoch(5)
        assert self.store.advance_epoch(0) == 5
        assert self.store.get_current_epoch() == 5
        assert self.store.advance_epoch(5) == 6

    def test_processed_epoch_round_trip(self):
        self.store.update_belief_history("belief_1", 0.4, 0.1, processed_epoch=2)
        belief = self.store.get_belief("belief_1")
        assert belief.last_processed_epoch == 2
        assert belief.previous_aggregate == 0.4

    def test_delete_belief(self):
        self.store.insert_submission(_make_submission("s1", "a", 0.2))
        self.store.delete_belief("belief_1")
        assert self.store.get_belief("belief_1") is None
        assert self.store.submission_history("belief_1") == []

    def test_persistent_file(self, tmp_path):
        path = str(tmp_path / "veritas.db")
        store = ProtocolStore(db_path=path)
        store.set_current_epoch(7)
        store.close()
        assert ProtocolStore(db_path=path).get_current_epoch() == 7
