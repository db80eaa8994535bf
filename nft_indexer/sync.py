"""Catch-up, polling and reconnect for the event indexer.

States::

    STOPPED -> BOOTSTRAPPING -> POLLING <-> RECONNECTING -> STOPPED

Windows are applied strictly one after another; each is checkpointed for
every watched contract before the next one is fetched. At most one tick is
in flight: a tick that fires while the previous one is still running is
dropped, never queued.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from nft_indexer import config
from nft_indexer.chain import ChainReader
from nft_indexer.checkpoint import CheckpointStore
from nft_indexer.dispatcher import EventDispatcher, WindowReport
from nft_indexer.events import EventKind, merge_logs, window_ranges

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    STOPPED = "stopped"
    BOOTSTRAPPING = "bootstrapping"
    POLLING = "polling"
    RECONNECTING = "reconnecting"


class TickGuard:
    """Single slot for the in-flight tick."""

    def __init__(self):
        self._task: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def try_start(self, work: Callable[[], Awaitable[None]]) -> Optional[asyncio.Task]:
        """Start ``work`` unless the slot is taken; None means the tick was dropped."""
        if self.busy:
            return None
        self._task = asyncio.create_task(work())
        return self._task


class SyncLoop:
    def __init__(self, chain: ChainReader, checkpoints: CheckpointStore, dispatcher: EventDispatcher,
                 contracts: Sequence[str], *,
                 window_size: int = None, poll_interval: float = None,
                 reconnect_delay: float = None, max_reconnect_attempts: int = None):
        self.chain = chain
        self.checkpoints = checkpoints
        self.dispatcher = dispatcher
        self.contracts = [c.lower() for c in contracts]
        if not self.contracts:
            raise ValueError("at least one contract address is required")
        self.window_size = window_size or config.WINDOW_BLOCKS
        self.poll_interval = config.POLL_INTERVAL_S if poll_interval is None else poll_interval
        self.reconnect_delay = config.RECONNECT_DELAY_S if reconnect_delay is None else reconnect_delay
        self.max_reconnect_attempts = (config.MAX_RECONNECT_ATTEMPTS if max_reconnect_attempts is None
                                       else max_reconnect_attempts)

        self.state = SyncState.STOPPED
        self.last_processed_block = 0
        self.reconnect_attempts = 0
        self._guard = TickGuard()
        self._timer: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()
        self._stopped.set()
        self._stop_gen = 0
        self._stop_requested = asyncio.Event()

    @property
    def running(self) -> bool:
        return self.state is not SyncState.STOPPED

    # ---------- lifecycle ----------
    async def start(self):
        if self.running:
            logger.warning("[sync] already running")
            return
        self.state = SyncState.BOOTSTRAPPING
        self._stopped.clear()
        self._stop_requested.clear()
        self.reconnect_attempts = 0
        try:
            head = await self.chain.current_height()
            logger.info(f"[sync] current block: {head}")
            start_from = min(self.checkpoints.get_checkpoint(c) for c in self.contracts)
            if start_from < head:
                logger.info(f"[sync] syncing historical events from block {start_from + 1} to {head}")
                await self.sync_range(start_from + 1, head)
        except Exception:
            logger.exception("[sync] failed to start")
            await self.stop()
            raise
        if not self.running:
            return
        self.last_processed_block = head
        self.state = SyncState.POLLING
        self._timer = asyncio.create_task(self._run_timer())
        logger.info(f"[sync] started; polling every {self.poll_interval}s")

    async def stop(self):
        was_running = self.running
        self.state = SyncState.STOPPED
        self._stop_gen += 1
        self._stop_requested.set()
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        inflight = self._guard.task
        if self._guard.busy and inflight is not asyncio.current_task():
            # let the current window finish; _poll_once handles its own errors
            await inflight
        self._stopped.set()
        if was_running:
            logger.info("[sync] stopped")

    async def wait_stopped(self):
        await self._stopped.wait()

    async def _run_timer(self):
        while self.running:
            await asyncio.sleep(self.poll_interval)
            if self.running:
                self.tick()

    # ---------- polling ----------
    def tick(self) -> Optional[asyncio.Task]:
        """Fire one poll unless one is already in flight (or reconnecting)."""
        if not self.running:
            return None
        task = self._guard.try_start(self._poll_once)
        if task is None:
            logger.debug("[sync] skipping poll - already processing")
        return task

    async def _poll_once(self):
        try:
            head = await self.chain.current_height()
            if head > self.last_processed_block:
                logger.info(f"[sync] new blocks detected: {self.last_processed_block + 1} to {head}")
                await self.sync_range(self.last_processed_block + 1, head)
        except Exception as e:
            logger.error(f"[sync] error during polling: {e!r}")
            if self.running:
                await self._reconnect()

    async def _reconnect(self):
        self.state = SyncState.RECONNECTING
        while self.running:
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                logger.error(f"[sync] max reconnection attempts ({self.max_reconnect_attempts}) "
                             f"reached; stopping indexer")
                await self.stop()
                return
            self.reconnect_attempts += 1
            logger.info(f"[sync] attempting to reconnect "
                        f"({self.reconnect_attempts}/{self.max_reconnect_attempts})...")
            try:
                # stop() cuts the backoff short
                await asyncio.wait_for(self._stop_requested.wait(), self.reconnect_delay)
            except asyncio.TimeoutError:
                pass
            if not self.running:
                return
            try:
                head = await self.chain.current_height()
            except Exception as e:
                logger.error(f"[sync] reconnection failed: {e!r}")
                continue
            if head > self.last_processed_block + 1:
                # resumes at head; events in the gap are not fetched
                logger.warning(f"[sync] reconnected; blocks {self.last_processed_block + 1}-{head} "
                               f"will not be re-scanned")
            else:
                logger.info("[sync] reconnected")
            self.reconnect_attempts = 0
            self.last_processed_block = head
            if self.running:
                self.state = SyncState.POLLING
            return

    # ---------- windows ----------
    async def sync_range(self, from_block: int, to_block: int) -> List[WindowReport]:
        """Apply [from_block, to_block] window by window; transport errors propagate."""
        reports = []
        gen = self._stop_gen
        for lo, hi in window_ranges(from_block, to_block, self.window_size):
            # stop() lands between windows, never inside one
            if self._stop_gen != gen:
                break
            report = await self.sync_window(lo, hi)
            reports.append(report)
        return reports

    async def sync_window(self, from_block: int, to_block: int) -> WindowReport:
        kinds = list(EventKind)
        results = await asyncio.gather(*(self.chain.fetch_logs(k, from_block, to_block) for k in kinds))
        events = merge_logs(dict(zip(kinds, results)))
        report = await self.dispatcher.dispatch(events, from_block, to_block)
        if report.total:
            logger.info(f"[sync] {report.summary()}")
        for f in report.failed:
            logger.warning(f"[sync] lost effect of {f}")
        for c in self.contracts:
            self.checkpoints.set_checkpoint(c, to_block)
        self.last_processed_block = to_block
        return report
