"""
Epoch Scheduler: cron-driven epoch boundaries.

States: INACTIVE -> ACTIVE (waiting for deadline) -> TRIGGERED -> ACTIVE

The schedule and next deadline live in the store's system state, so any
process sharing the database sees the same cron status. An epoch fires once
the deadline plus a small buffer has passed.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from croniter import croniter

from veritas_kernel.epoch.orchestrator import EpochOrchestrator
from veritas_kernel.errors import ValidationError
from veritas_kernel.ledger.store import (
    CRON_STATUS_KEY,
    EPOCH_SCHEDULE_KEY,
    NEXT_DEADLINE_KEY,
    ProtocolStore,
)
from veritas_kernel.models.config import ProtocolConfig

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"


def next_deadline(schedule: str, after: datetime) -> datetime:
    """Next cron fire time strictly after `after`."""
    try:
        return croniter(schedule, after).get_next(datetime)
    except (ValueError, KeyError) as exc:
        raise ValidationError(f"Invalid cron schedule {schedule!r}: {exc}") from exc


class EpochScheduler:

    def __init__(
        self,
        store: ProtocolStore,
        orchestrator: EpochOrchestrator,
        config: Optional[ProtocolConfig] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.config = config or ProtocolConfig()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def status(self) -> dict:
        return {
            "current_epoch": self.store.get_current_epoch(),
            "cron_status": self.store.get_state(CRON_STATUS_KEY, STATUS_INACTIVE),
            "epoch_schedule": self.store.get_state(EPOCH_SCHEDULE_KEY),
            "next_epoch_deadline": self.store.get_state(NEXT_DEADLINE_KEY),
        }

    def start(self, schedule: Optional[str] = None, now: Optional[datetime] = None) -> dict:
        """Activate the schedule and compute the first deadline."""
        schedule = schedule or self.config.epoch_schedule
        now = now or datetime.utcnow()
        deadline = next_deadline(schedule, now)

        with self.store.transaction():
            self.store.set_state(EPOCH_SCHEDULE_KEY, schedule)
            self.store.set_state(NEXT_DEADLINE_KEY, deadline.isoformat())
            self.store.set_state(CRON_STATUS_KEY, STATUS_ACTIVE)
        logger.info("Epoch cron started with %r, next deadline %s", schedule, deadline.isoformat())
        return self.status()

    def stop(self) -> dict:
        self.store.set_state(CRON_STATUS_KEY, STATUS_INACTIVE)
        logger.info("Epoch cron stopped")
        return self.status()

    def check_overdue(self, now: Optional[datetime] = None) -> dict:
        """
        Fire the epoch if its deadline (plus buffer) has passed.
        Returns status "inactive", "waiting" or "triggered".

        The next deadline is claimed before the epoch runs, so an overlapping
        check sees the new deadline and keeps waiting.
        """
        now = now or datetime.utcnow()
        with self.store.transaction():
            state = self.status()
            if state["cron_status"] != STATUS_ACTIVE:
                return {"status": STATUS_INACTIVE}

            schedule = state["epoch_schedule"] or self.config.epoch_schedule
            if state["next_epoch_deadline"]:
                deadline = datetime.fromisoformat(state["next_epoch_deadline"])
            else:
                deadline = next_deadline(schedule, now)

            fire_at = deadline + timedelta(seconds=self.config.overdue_buffer_seconds)
            if now < fire_at:
                return {
                    "status": "waiting",
                    "next_epoch_deadline": deadline.isoformat(),
                    "seconds_until_deadline": (deadline - now).total_seconds(),
                }

            following = next_deadline(schedule, now)
            self.store.set_state(NEXT_DEADLINE_KEY, following.isoformat())

        logger.info("Epoch deadline %s passed, processing epoch", deadline.isoformat())
        report = self.orchestrator.process_epoch()
        return {
            "status": "triggered",
            "epoch": report.epoch,
            "next_epoch": report.next_epoch,
            "next_epoch_deadline": following.isoformat(),
            "report": report.model_dump(mode="json", by_alias=True),
        }

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Poll for overdue epochs until stopped."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                self.check_overdue()
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.config.poll_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False
