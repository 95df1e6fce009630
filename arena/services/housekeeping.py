"""
Housekeeping Service - Background Scheduler

Periodic sweeps that keep duels moving without a user action:
1. materialize matched lobby pairs into duels
2. begin waiting duels that have exactly two players
3. force-resolve rounds stuck past ROUND_TIMEOUT_SECONDS

Every sweep is safe to repeat: each step relies on the same compare-and-set
guards as the user-facing operations, so a sweep racing a user request
simply loses and moves on.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from arena.config import Config
from arena.database.models import utc_now
from arena.services.base import BaseService
from arena.utils.exceptions import DuelEngineError
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class HousekeepingReport:
    duels_materialized: int = 0
    duels_started: int = 0
    rounds_resolved: int = 0
    errors: int = 0


class HousekeepingService(BaseService):
    """Background maintenance for lobby pairs, ready duels and stalled rounds"""

    def __init__(
        self,
        database,
        duel_ops,
        round_ops,
        lobby_ops,
        interval_seconds: Optional[int] = None,
        round_timeout_seconds: Optional[int] = None
    ):
        super().__init__(database.session_factory)
        self.duel_ops = duel_ops
        self.round_ops = round_ops
        self.lobby_ops = lobby_ops
        self.interval_seconds = interval_seconds or Config.HOUSEKEEPING_INTERVAL_SECONDS
        self.round_timeout_seconds = round_timeout_seconds or Config.ROUND_TIMEOUT_SECONDS
        self._task: Optional[asyncio.Task] = None
        self.logger = logger

    async def run_once(self) -> HousekeepingReport:
        report = HousekeepingReport()

        for entry_id1, entry_id2 in await self.execute_with_retry(self.lobby_ops.list_matched_pairs):
            try:
                await self.lobby_ops.create_matched_duel(entry_id1, entry_id2)
                report.duels_materialized += 1
            except DuelEngineError as e:
                report.errors += 1
                self.logger.error(f"Could not materialize lobby pair {entry_id1}:{entry_id2}: {e.message}")

        for duel_id in await self.execute_with_retry(self.duel_ops.list_ready_duels):
            try:
                await self.round_ops.begin_duel(duel_id)
                report.duels_started += 1
            except DuelEngineError as e:
                report.errors += 1
                self.logger.error(f"Could not begin duel {duel_id}: {e.message}")

        cutoff = utc_now() - timedelta(seconds=self.round_timeout_seconds)
        stalled = await self.execute_with_retry(lambda: self.round_ops.list_stalled_rounds(cutoff))
        for duel_id, round_id in stalled:
            try:
                await self.round_ops.resolve_round(duel_id, round_id)
                report.rounds_resolved += 1
            except DuelEngineError as e:
                report.errors += 1
                self.logger.error(f"Could not resolve stalled round {round_id} of duel {duel_id}: {e.message}")

        if report.duels_materialized or report.duels_started or report.rounds_resolved:
            self.logger.info(
                f"Housekeeping: {report.duels_materialized} duels materialized, "
                f"{report.duels_started} started, {report.rounds_resolved} stalled rounds resolved"
            )
        return report

    async def _loop(self):
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Error in housekeeping sweep: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    def start(self):
        """Start the sweep loop on the running event loop"""
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop())
        self.logger.info(f"Housekeeping started (every {self.interval_seconds}s)")

    async def stop(self):
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.logger.info("Housekeeping stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()
