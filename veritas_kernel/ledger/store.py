"""
Protocol Store: persistent state for agents, beliefs, submissions, positions
and the redistribution audit log.

Behavioral Contract:
- Submission history is retained. The most recent row per (belief, agent) is
  the current submission; older rows are never used in computation.
- Redistribution events are append-only. Each event is hashed and chained to
  the previous event (tamper-evident ledger), and is unique per
  (belief, epoch, agent).
- Stake and activity flags change only inside transaction(). A transaction
  holds a process-wide lock and a SQLite write lock (BEGIN IMMEDIATE) for its
  whole duration, so read-check-write sequences are atomic.
- Every sqlite3 failure surfaces as InternalError.
"""

import hashlib
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from veritas_kernel.errors import InternalError, NotFoundError
from veritas_kernel.models.agent import Agent
from veritas_kernel.models.belief import (
    Belief,
    BeliefStatus,
    Position,
    PositionSide,
    Submission,
)
from veritas_kernel.models.redistribution import RedistributionEvent

logger = logging.getLogger(__name__)

CURRENT_EPOCH_KEY = "current_epoch"
CRON_STATUS_KEY = "cron_status"
EPOCH_SCHEDULE_KEY = "epoch_schedule"
NEXT_DEADLINE_KEY = "next_epoch_deadline"


class ProtocolStore:
    """
    SQLite-backed protocol state.
    Use ":memory:" for tests; a file path for a persistent deployment.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        # Autocommit mode; multi-statement atomicity comes from transaction().
        self._conn = sqlite3.connect(
            db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._init_schema()

    def _init_schema(self) -> None:
        """Create protocol tables if they don't exist."""
        statements = [
            """
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                total_stake INTEGER NOT NULL CHECK (total_stake >= 0),
                active_belief_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS beliefs (
                id TEXT PRIMARY KEY,
                creator_agent_id TEXT NOT NULL,
                created_epoch INTEGER NOT NULL,
                expiration_epoch INTEGER NOT NULL,
                previous_aggregate REAL NOT NULL,
                previous_disagreement_entropy REAL NOT NULL,
                status TEXT NOT NULL,
                last_processed_epoch INTEGER,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS submissions (
                id TEXT PRIMARY KEY,
                belief_id TEXT NOT NULL,
                agent_id TEXT NOT NULL,
                belief_value REAL NOT NULL,
                meta_prediction REAL NOT NULL,
                epoch INTEGER NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                stake_allocated INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_submissions_belief_agent
            ON submissions(belief_id, agent_id)
            """,
            """
            CREATE TABLE IF NOT EXISTS positions (
                agent_id TEXT NOT NULL,
                belief_id TEXT NOT NULL,
                side TEXT NOT NULL,
                size REAL NOT NULL,
                belief_lock INTEGER NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (agent_id, belief_id, side)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS redistribution_events (
                id TEXT PRIMARY KEY,
                belief_id TEXT NOT NULL,
                epoch INTEGER NOT NULL,
                agent_id TEXT NOT NULL,
                stake_delta INTEGER NOT NULL,
                signature TEXT NOT NULL,
                prior_event_hash TEXT,
                event_json TEXT NOT NULL,
                UNIQUE (belief_id, epoch, agent_id)
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_events_agent
            ON redistribution_events(agent_id)
            """,
            """
            CREATE TABLE IF NOT EXISTS system_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """,
        ]
        with self.transaction():
            for statement in statements:
                self._conn.execute(statement)
            self._conn.execute(
                "INSERT OR IGNORE INTO system_state (key, value) VALUES (?, ?)",
                (CURRENT_EPOCH_KEY, "0"),
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO system_state (key, value) VALUES (?, ?)",
                (CRON_STATUS_KEY, "inactive"),
            )

    # --- Transactions ---

    @contextmanager
    def transaction(self) -> Iterator["ProtocolStore"]:
        """
        Run a block atomically. Nested calls join the outermost transaction.
        Any exception rolls the whole transaction back and is re-raised;
        sqlite3 errors are re-raised as InternalError.
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._run("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self
            except BaseException as exc:
                self._depth -= 1
                if outermost:
                    self._conn.rollback()
                if isinstance(exc, sqlite3.Error):
                    raise InternalError(f"Storage failure: {exc}") from exc
                raise
            else:
                self._depth -= 1
                if outermost:
                    self._run("COMMIT")

    def _run(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.Error as exc:
                logger.error("Storage failure on %s: %s", sql.split()[0], exc)
                raise InternalError(f"Storage failure: {exc}") from exc

    # --- System state ---

    def get_state(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self._run(
            "SELECT value FROM system_state WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else default

    def set_state(self, key: str, value: str) -> None:
        self._run(
            "INSERT INTO system_state (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )

    def get_current_epoch(self) -> int:
        return int(self.get_state(CURRENT_EPOCH_KEY, "0"))

    def set_current_epoch(self, epoch: int) -> None:
        self.set_state(CURRENT_EPOCH_KEY, str(epoch))

    def advance_epoch(self, processed_epoch: int) -> int:
        """
        Move the global counter past processed_epoch. The counter only moves
        forward: processing an older epoch leaves a later value in place.
        """
        with self.transaction():
            self._run(
                "UPDATE system_state "
                "SET value = CAST(MAX(CAST(value AS INTEGER), ?) AS TEXT) "
                "WHERE key = ?",
                (processed_epoch + 1, CURRENT_EPOCH_KEY),
            )
            return self.get_current_epoch()

    # --- Agents ---

    def _row_to_agent(self, row: sqlite3.Row) -> Agent:
        return Agent(
            id=row["id"],
            total_stake=row["total_stake"],
            active_belief_count=row["active_belief_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def insert_agent(self, agent: Agent) -> Agent:
        self._run(
            "INSERT INTO agents (id, total_stake, active_belief_count, created_at) "
            "VALUES (?, ?, ?, ?)",
            (agent.id, agent.total_stake, agent.active_belief_count,
             agent.created_at.isoformat()),
        )
        return agent

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        row = self._run("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return self._row_to_agent(row) if row else None

    def require_agent(self, agent_id: str) -> Agent:
        agent = self.get_agent(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}", {"agent_id": agent_id})
        return agent

    def list_agents(self) -> List[Agent]:
        rows = self._run("SELECT * FROM agents ORDER BY rowid").fetchall()
        return [self._row_to_agent(r) for r in rows]

    def set_agent_stake(self, agent_id: str, total_stake: int) -> None:
        self._run(
            "UPDATE agents SET total_stake = ? WHERE id = ?", (total_stake, agent_id)
        )

    def adjust_active_belief_count(self, agent_id: str, delta: int) -> None:
        """Shift an agent's active belief count, never below zero."""
        self._run(
            "UPDATE agents SET active_belief_count = MAX(0, active_belief_count + ?) "
            "WHERE id = ?",
            (delta, agent_id),
        )

    # --- Beliefs ---

    def _row_to_belief(self, row: sqlite3.Row) -> Belief:
        return Belief(
            id=row["id"],
            creator_agent_id=row["creator_agent_id"],
            created_epoch=row["created_epoch"],
            expiration_epoch=row["expiration_epoch"],
            previous_aggregate=row["previous_aggregate"],
            previous_disagreement_entropy=row["previous_disagreement_entropy"],
            status=BeliefStatus(row["status"]),
            last_processed_epoch=row["last_processed_epoch"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def insert_belief(self, belief: Belief) -> Belief:
        self._run(
            """
            INSERT INTO beliefs (
                id, creator_agent_id, created_epoch, expiration_epoch,
                previous_aggregate, previous_disagreement_entropy, status,
                last_processed_epoch, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                belief.id,
                belief.creator_agent_id,
                belief.created_epoch,
                belief.expiration_epoch,
                belief.previous_aggregate,
                belief.previous_disagreement_entropy,
                belief.status.value,
                belief.last_processed_epoch,
                belief.created_at.isoformat(),
            ),
        )
        return belief

    def get_belief(self, belief_id: str) -> Optional[Belief]:
        row = self._run("SELECT * FROM beliefs WHERE id = ?", (belief_id,)).fetchone()
        return self._row_to_belief(row) if row else None

    def require_belief(self, belief_id: str) -> Belief:
        belief = self.get_belief(belief_id)
        if belief is None:
            raise NotFoundError(f"Belief not found: {belief_id}", {"belief_id": belief_id})
        return belief

    def list_beliefs(self, status: Optional[BeliefStatus] = None) -> List[Belief]:
        if status is None:
            rows = self._run("SELECT * FROM beliefs ORDER BY rowid").fetchall()
        else:
            rows = self._run(
                "SELECT * FROM beliefs WHERE status = ? ORDER BY rowid", (status.value,)
            ).fetchall()
        return [self._row_to_belief(r) for r in rows]

    def update_belief_history(
        self,
        belief_id: str,
        previous_aggregate: float,
        previous_disagreement_entropy: float,
        processed_epoch: Optional[int] = None,
    ) -> None:
        self._run(
            "UPDATE beliefs SET previous_aggregate = ?, previous_disagreement_entropy = ?, "
            "last_processed_epoch = COALESCE(?, last_processed_epoch) "
            "WHERE id = ?",
            (previous_aggregate, previous_disagreement_entropy, processed_epoch, belief_id),
        )

    def delete_belief(self, belief_id: str) -> None:
        """Remove a belief together with its submissions and positions."""
        with self.transaction():
            self._run("DELETE FROM submissions WHERE belief_id = ?", (belief_id,))
            self._run("DELETE FROM positions WHERE belief_id = ?", (belief_id,))
            self._run("DELETE FROM beliefs WHERE id = ?", (belief_id,))

    # --- Submissions ---

    def _row_to_submission(self, row: sqlite3.Row) -> Submission:
        return Submission(
            id=row["id"],
            belief_id=row["belief_id"],
            agent_id=row["agent_id"],
            belief_value=row["belief_value"],
            meta_prediction=row["meta_prediction"],
            epoch=row["epoch"],
            is_active=bool(row["is_active"]),
            stake_allocated=row["stake_allocated"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def insert_submission(self, submission: Submission) -> Submission:
        self._run(
            """
            INSERT INTO submissions (
                id, belief_id, agent_id, belief_value, meta_prediction, epoch,
                is_active, stake_allocated, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                submission.id,
                submission.belief_id,
                submission.agent_id,
                submission.belief_value,
                submission.meta_prediction,
                submission.epoch,
                int(submission.is_active),
                submission.stake_allocated,
                submission.created_at.isoformat(),
                submission.updated_at.isoformat(),
            ),
        )
        return submission

    def current_submissions(self, belief_id: str) -> Dict[str, Submission]:
        """Most recent submission per agent for a belief, keyed by agent id."""
        rows = self._run(
            """
            SELECT s.* FROM submissions s
            JOIN (
                SELECT MAX(rowid) AS latest FROM submissions
                WHERE belief_id = ? GROUP BY agent_id
            ) m ON s.rowid = m.latest
            ORDER BY s.rowid
            """,
            (belief_id,),
        ).fetchall()
        return {r["agent_id"]: self._row_to_submission(r) for r in rows}

    def submission_history(self, belief_id: str) -> List[Submission]:
        rows = self._run(
            "SELECT * FROM submissions WHERE belief_id = ? ORDER BY rowid", (belief_id,)
        ).fetchall()
        return [self._row_to_submission(r) for r in rows]

    def participant_ids(self, belief_id: str) -> List[str]:
        """Distinct agents that ever submitted to a belief, in first-seen order."""
        rows = self._run(
            "SELECT agent_id, MIN(rowid) AS first_seen FROM submissions "
            "WHERE belief_id = ? GROUP BY agent_id ORDER BY first_seen",
            (belief_id,),
        ).fetchall()
        return [r["agent_id"] for r in rows]

    def count_epoch_submissions(self, belief_id: str, epoch: int) -> int:
        row = self._run(
            "SELECT COUNT(*) AS cnt FROM submissions WHERE belief_id = ? AND epoch = ?",
            (belief_id, epoch),
        ).fetchone()
        return row["cnt"]

    def update_submission_belief(self, submission_id: str, belief_value: float) -> None:
        self._run(
            "UPDATE submissions SET belief_value = ?, updated_at = ? WHERE id = ?",
            (belief_value, datetime.utcnow().isoformat(), submission_id),
        )

    def deactivate_submissions(self, belief_id: str) -> int:
        cursor = self._run(
            "UPDATE submissions SET is_active = 0, updated_at = ? "
            "WHERE belief_id = ? AND is_active = 1",
            (datetime.utcnow().isoformat(), belief_id),
        )
        return cursor.rowcount

    # --- Positions ---

    def upsert_position(self, position: Position) -> Position:
        self._run(
            """
            INSERT INTO positions (agent_id, belief_id, side, size, belief_lock, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(agent_id, belief_id, side) DO UPDATE SET
                size = excluded.size,
                belief_lock = excluded.belief_lock,
                updated_at = excluded.updated_at
            """,
            (
                position.agent_id,
                position.belief_id,
                position.side.value,
                position.size,
                position.belief_lock,
                position.updated_at.isoformat(),
            ),
        )
        return position

    def positions_for_belief(self, belief_id: str) -> List[Position]:
        rows = self._run(
            "SELECT * FROM positions WHERE belief_id = ? ORDER BY rowid", (belief_id,)
        ).fetchall()
        return [
            Position(
                agent_id=r["agent_id"],
                belief_id=r["belief_id"],
                side=PositionSide(r["side"]),
                size=r["size"],
                belief_lock=r["belief_lock"],
                updated_at=datetime.fromisoformat(r["updated_at"]),
            )
            for r in rows
        ]

    def gross_lock(self, agent_id: str, belief_id: str) -> int:
        """Sum of belief locks over the agent's open positions, both sides."""
        row = self._run(
            "SELECT COALESCE(SUM(belief_lock), 0) AS total FROM positions "
            "WHERE agent_id = ? AND belief_id = ? AND size > 0",
            (agent_id, belief_id),
        ).fetchone()
        return int(row["total"])

    # --- Redistribution audit log ---

    @staticmethod
    def _compute_signature(event: RedistributionEvent) -> str:
        event_dict = event.model_dump(mode="json")
        # Zero out signature before hashing (it's what we're computing)
        event_dict["signature"] = ""
        event_bytes = json.dumps(event_dict, sort_keys=True, default=str).encode()
        return hashlib.sha256(event_bytes).hexdigest()

    def _latest_event_hash(self) -> Optional[str]:
        row = self._run(
            "SELECT signature FROM redistribution_events ORDER BY rowid DESC LIMIT 1"
        ).fetchone()
        return row["signature"] if row else None

    def append_event(self, event: RedistributionEvent) -> RedistributionEvent:
        """Sign an event, chain it to the previous one and store it."""
        with self.transaction():
            event.prior_event_hash = self._latest_event_hash()
            event.signature = self._compute_signature(event)
            self._run(
                """
                INSERT INTO redistribution_events (
                    id, belief_id, epoch, agent_id, stake_delta,
                    signature, prior_event_hash, event_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.belief_id,
                    event.epoch,
                    event.agent_id,
                    event.stake_delta,
                    event.signature,
                    event.prior_event_hash,
                    json.dumps(event.model_dump(mode="json"), default=str),
                ),
            )
        return event

    def has_redistribution(self, belief_id: str, epoch: int) -> bool:
        row = self._run(
            "SELECT 1 FROM redistribution_events WHERE belief_id = ? AND epoch = ? LIMIT 1",
            (belief_id, epoch),
        ).fetchone()
        return row is not None

    def events_for(self, belief_id: str, epoch: int) -> List[RedistributionEvent]:
        rows = self._run(
            "SELECT event_json FROM redistribution_events "
            "WHERE belief_id = ? AND epoch = ? ORDER BY rowid",
            (belief_id, epoch),
        ).fetchall()
        return [RedistributionEvent.model_validate_json(r["event_json"]) for r in rows]

    def events_for_agent(self, agent_id: str) -> List[RedistributionEvent]:
        rows = self._run(
            "SELECT event_json FROM redistribution_events WHERE agent_id = ? ORDER BY rowid",
            (agent_id,),
        ).fetchall()
        return [RedistributionEvent.model_validate_json(r["event_json"]) for r in rows]

    def redistribution_summary(self, belief_id: str, epoch: int) -> dict:
        """Totals for one (belief, epoch) redistribution."""
        events = self.events_for(belief_id, epoch)
        rewards = sum(e.stake_delta for e in events if e.stake_delta > 0)
        slashes = -sum(e.stake_delta for e in events if e.stake_delta < 0)
        return {
            "belief_id": belief_id,
            "epoch": epoch,
            "redistribution_occurred": bool(events),
            "total_rewards": rewards,
            "total_slashes": slashes,
            "net_delta": rewards - slashes,
            "participant_count": len(events),
            "events": [e.model_dump(mode="json") for e in events],
        }

    def verify_chain_integrity(self) -> bool:
        """Verify no redistribution event has been tampered with."""
        rows = self._run(
            "SELECT event_json, signature FROM redistribution_events ORDER BY rowid"
        ).fetchall()

        prior_sig = None
        for row in rows:
            event = RedistributionEvent.model_validate_json(row["event_json"])
            if event.signature != row["signature"]:
                return False
            if self._compute_signature(event) != event.signature:
                return False
            if event.prior_event_hash != prior_sig:
                return False
            prior_sig = event.signature
        return True

    def count_events(self) -> int:
        row = self._run("SELECT COUNT(*) AS cnt FROM redistribution_events").fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
