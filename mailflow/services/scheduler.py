"""Repeating poll scheduler."""

import asyncio
from datetime import datetime
from typing import Optional, Set

import structlog

from mailflow.core.automation_store import AutomationStore
from mailflow.models.automation import utcnow
from mailflow.services.email_poller import EmailPoller

logger = structlog.get_logger(__name__)


class Scheduler:
    """Runs poll cycles on a fixed interval.

    Each instance owns its in-progress flag: a tick that arrives while a
    cycle is still running is dropped rather than queued.
    """

    def __init__(self, store: AutomationStore, poller: EmailPoller):
        self.store = store
        self.poller = poller
        self._cycle_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._cycle_tasks: Set[asyncio.Task] = set()
        self.interval_seconds: Optional[float] = None
        self.cycles_run = 0
        self.cycles_skipped = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_lock.locked()

    def start(self, interval_seconds: float) -> bool:
        """Start polling: one cycle now, then one every ``interval_seconds``.

        Returns False without side effects when already running.
        """
        if self.is_running:
            logger.warning("Email polling is already running", interval_seconds=self.interval_seconds)
            return False
        if interval_seconds <= 0:
            raise ValueError(f"Interval must be positive, got {interval_seconds}")

        self.interval_seconds = interval_seconds
        self._task = asyncio.get_running_loop().create_task(self._run(interval_seconds))
        logger.info("Email polling started", interval_seconds=interval_seconds)
        return True

    def stop(self) -> None:
        """Stop scheduling further cycles. A cycle already running finishes on its own."""
        if self._task is None:
            return
        self._task.cancel()
        self._task = None
        logger.info("Email polling stopped")

    async def wait_for_cycles(self) -> None:
        """Wait until cycles already started by the timer have finished."""
        if self._cycle_tasks:
            await asyncio.gather(*list(self._cycle_tasks))

    async def _run(self, interval_seconds: float) -> None:
        while True:
            # Cycles run detached from the timer so stop() never interrupts one
            task = asyncio.ensure_future(self.cycle())
            self._cycle_tasks.add(task)
            task.add_done_callback(self._cycle_tasks.discard)
            await asyncio.sleep(interval_seconds)

    async def cycle(self, now: Optional[datetime] = None) -> bool:
        """Poll every due mailbox once, sequentially.

        Returns:
            False if the tick was dropped because another cycle is running.
        """
        if self._cycle_lock.locked():
            self.cycles_skipped += 1
            logger.info("Skipping poll, previous cycle still running")
            return False

        async with self._cycle_lock:
            self.cycles_run += 1
            try:
                mailboxes = await self.store.get_mailboxes_due(now or utcnow())
            except Exception as e:
                logger.error("Error loading mailboxes to poll", error=str(e))
                return True

            if not mailboxes:
                logger.debug("No email agents to poll")
                return True

            logger.info("Polling email agents", count=len(mailboxes))
            for mailbox in mailboxes:
                try:
                    await self.poller.poll_agent(mailbox)
                except Exception as e:
                    logger.error(
                        "Error polling agent",
                        agent_id=mailbox.agent_id,
                        agent_name=mailbox.agent_name,
                        error=str(e)
                    )
            logger.info("Email polling completed", count=len(mailboxes))
            return True
