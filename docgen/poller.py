"""Batch poller: claims queued items and drives them through the pipeline."""
import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from docgen import settings
from docgen.errors import wrap_error
from docgen.interfaces import RecordStore
from docgen.logging_conf import logger, new_correlation_id
from docgen.queue.backoff import failure_update
from docgen.queue.models import ItemStatus, PollerStats, ProcessingResult, QueuedItem, StatusUpdate


class Poller:
    """Polls the record store for eligible items.

    Exclusivity comes from the store's conditional claim, never from local
    state: several pollers may run against the same store. Claimed items are
    dispatched as tasks, at most ``concurrency`` at a time.
    """

    def __init__(
        self,
        store: RecordStore,
        processor,
        concurrency: Optional[int] = None,
        batch_size: Optional[int] = None,
        lock_ttl: Optional[float] = None,
        max_attempts: Optional[int] = None,
        poll_interval: Optional[float] = None,
        idle_interval: Optional[float] = None,
        failure_threshold: Optional[int] = None,
    ):
        self.store = store
        self.processor = processor
        self.concurrency = concurrency or settings.CONVERSION_MAX_CONCURRENT
        self.batch_size = batch_size or settings.BATCH_SIZE
        self.lock_ttl = lock_ttl or settings.LOCK_TTL
        self.max_attempts = max_attempts or settings.MAX_ATTEMPTS
        self.poll_interval = poll_interval or settings.POLL_INTERVAL
        self.idle_interval = idle_interval or settings.POLL_IDLE_INTERVAL
        self.failure_threshold = failure_threshold or settings.READINESS_FAILURE_THRESHOLD

        self.running = False
        self._stopping = False
        self._task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._started_at: Optional[float] = None
        self._in_flight = 0
        self._consecutive_failures = 0
        self._stats = PollerStats()

    async def start(self):
        """Start the poll loop as a background task."""
        if self.running:
            logger.warning("Poller is already running")
            return

        self.running = True
        self._stopping = False
        self._started_at = time.monotonic()
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"Poller started (interval: {self.poll_interval}s, idle: {self.idle_interval}s, "
            f"batch: {self.batch_size}, concurrency: {self.concurrency})"
        )

    async def stop(self):
        """Stop polling and wait for dispatched items to finish.

        Items claimed but not yet dispatched are left to their lock TTL.
        """
        if not self.running:
            return

        self._stopping = True
        self._wakeup.set()
        if self._task:
            await self._task
            self._task = None
        self.running = False
        logger.info("Poller stopped")

    @property
    def polling_interval(self) -> float:
        """Active interval while the last poll found work, idle interval otherwise."""
        if self._stats.current_queue_depth > 0:
            return self.poll_interval
        return self.idle_interval

    async def _run(self):
        while not self._stopping:
            try:
                await self.process_batch()
                self._consecutive_failures = 0
            except Exception as e:
                self._record_cycle_failure(e)

            if self._stopping:
                break
            try:
                await asyncio.wait_for(self._wakeup.wait(), self.polling_interval)
            except asyncio.TimeoutError:
                pass

    def _record_cycle_failure(self, error: Exception):
        self._consecutive_failures += 1
        self._stats.last_error = str(error)
        if self._consecutive_failures >= self.failure_threshold:
            logger.error(
                f"Poll cycle failed {self._consecutive_failures} times in a row, marking not ready: {error}",
                exc_info=True,
            )
        else:
            logger.warning(f"Poll cycle failed, retrying next tick: {error}")

    async def process_batch(self) -> List[ProcessingResult]:
        """Run one poll cycle: release lapsed claims, query, claim, dispatch.

        Store failures during release or query propagate to the caller.
        Item failures never do.
        """
        correlation_id = new_correlation_id("poll")
        log_extra = {"correlation_id": correlation_id}
        await asyncio.to_thread(self.store.release_expired_locks)
        items = await asyncio.to_thread(self.store.fetch_eligible, self.batch_size)
        self._stats.last_poll_time = datetime.now(timezone.utc).isoformat()
        self._stats.current_queue_depth = len(items)

        if not items:
            logger.debug("No eligible items", extra=log_extra)
            return []

        claimed = await self._claim_all(items, correlation_id)
        slots = asyncio.Semaphore(self.concurrency)
        logger.info(f"Claimed {len(claimed)} of {len(items)} eligible items", extra=log_extra)

        tasks = [asyncio.create_task(self._dispatch(item, slots, correlation_id)) for item in claimed]
        results = await asyncio.gather(*tasks)
        return [r for r in results if r is not None]

    async def _claim_all(self, items: List[QueuedItem], correlation_id: str) -> List[QueuedItem]:
        claimed = []
        for item in items:
            if self._stopping:
                break
            locked_until = datetime.now(timezone.utc) + timedelta(seconds=self.lock_ttl)
            try:
                won = await asyncio.to_thread(self.store.claim, item.id, locked_until)
            except Exception as e:
                logger.warning(f"Claim failed for {item.id}: {e}", extra={"correlation_id": correlation_id})
                continue
            if won:
                item.status = ItemStatus.PROCESSING
                item.locked_until = locked_until
                claimed.append(item)
        return claimed

    async def _dispatch(self, item: QueuedItem, slots: asyncio.Semaphore, cycle_id: str) -> Optional[ProcessingResult]:
        async with slots:
            if self._stopping:
                return None
            self._in_flight += 1
            try:
                return await self._process_item(item, item.correlation_id or cycle_id)
            finally:
                self._in_flight -= 1

    async def _process_item(self, item: QueuedItem, correlation_id: str) -> ProcessingResult:
        log_extra = {"correlation_id": correlation_id}
        logger.info(f"Processing item {item.id} (attempt {item.attempts + 1})", extra=log_extra)

        error = None
        try:
            update = await self.processor.process(item, correlation_id)
        except Exception as e:
            error = wrap_error(e, {"item_id": item.id, "correlation_id": correlation_id})
            update = failure_update(item.attempts, error, self.max_attempts)
            logger.warning(
                f"Item {item.id} failed ({error.code.value}, retryable={error.retryable}): {error.message}",
                extra=log_extra,
            )

        if not await self._write_update(item, update, correlation_id):
            return ProcessingResult(
                item_id=item.id,
                success=False,
                error=self._stats.last_error,
                retryable=True,
            )
        self._count(update)
        return ProcessingResult(
            item_id=item.id,
            success=update.status == ItemStatus.SUCCEEDED,
            output_file_id=update.output_file_id,
            error=error.message if error else None,
            retryable=error.retryable if error else False,
            retried=update.status == ItemStatus.QUEUED,
        )

    async def _write_update(self, item: QueuedItem, update: StatusUpdate, correlation_id: str) -> bool:
        try:
            await asyncio.to_thread(self.store.update_status, item.id, update)
        except Exception as e:
            # Left PROCESSING; the lapsed lock returns it to the queue
            self._stats.last_error = str(e)
            logger.error(f"Status update failed for {item.id}: {e}", extra={"correlation_id": correlation_id})
            return False
        return True

    def _count(self, update: StatusUpdate):
        self._stats.total_processed += 1
        if update.status == ItemStatus.SUCCEEDED:
            self._stats.total_succeeded += 1
        elif update.status == ItemStatus.FAILED:
            self._stats.total_failed += 1
        elif update.status == ItemStatus.QUEUED:
            self._stats.total_retries += 1

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def stats(self) -> PollerStats:
        self._stats.is_running = self.running
        if self._started_at is not None and self.running:
            self._stats.uptime_seconds = int(time.monotonic() - self._started_at)
        return PollerStats(**vars(self._stats))

    def health(self) -> Dict[str, Any]:
        ready = self._consecutive_failures < self.failure_threshold
        return {
            "ready": ready,
            "running": self.running,
            "consecutive_failures": self._consecutive_failures,
            "last_error": self._stats.last_error,
            "last_poll_time": self._stats.last_poll_time,
        }
