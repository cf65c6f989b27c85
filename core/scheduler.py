"""
Poll scheduler
Runs a review cycle over all open MRs at a fixed interval
"""
import asyncio
import logging
from datetime import datetime

from core.exceptions import ProviderUnavailable
from core.reviewer import MergeRequestReviewer

logger = logging.getLogger(__name__)


class PollScheduler:
    """Periodic driver of ``MergeRequestReviewer.process_merge_requests``"""

    def __init__(self, reviewer: MergeRequestReviewer, interval_seconds: int = 10):
        self.reviewer = reviewer
        self.interval_seconds = interval_seconds
        self.is_running = False
        self.is_processing = False
        self._stop_event = asyncio.Event()

    async def run_once(self) -> bool:
        """
        Run one cycle

        Returns:
            False when the previous cycle was still in progress and this one was skipped
        """
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        if self.is_processing:
            logger.info(f"⏭️  [{timestamp}] Previous cycle still running, skipping this check")
            return False

        self.is_processing = True
        logger.info(f"⏰ [{timestamp}] MR check started")
        try:
            await self.reviewer.process_merge_requests()
        except Exception as e:
            logger.error(f"MR check failed: {e}", exc_info=True)
        finally:
            self.is_processing = False
            logger.info(f"⏰ [{timestamp}] MR check finished")
        return True

    async def start(self) -> None:
        """
        Check the provider, run a cycle now and then every ``interval_seconds`` until ``stop()``

        Raises:
            ProviderUnavailable: the configured model cannot be used
        """
        if self.is_running:
            logger.warning("⚠️  Scheduler is already running")
            return

        logger.info(f"🚀 Scheduler starting (every {self.interval_seconds}s)")

        if not await self.reviewer.check_availability():
            raise ProviderUnavailable(
                f"{self.reviewer.provider.display_name} model {self.reviewer.model} is not available"
            )

        self.is_running = True
        self._stop_event.clear()
        logger.info("✓ Scheduler started, press Ctrl+C to stop")

        try:
            while not self._stop_event.is_set():
                await self.run_once()
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.is_running = False
            logger.info("🛑 Scheduler stopped")

    def stop(self) -> None:
        if not self.is_running:
            logger.warning("⚠️  Scheduler is not running")
        self._stop_event.set()
