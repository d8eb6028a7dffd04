"""Delivery sweep: find due subscribers, deliver, advance their clocks.

A subscriber is due when now - lastSentTime >= notification interval.
After an accepted delivery lastSentTime becomes the tick's `now` (not
lastSentTime + interval), so the effective interval is at most
interval + sweep cadence and an outage never causes a catch-up burst.

Delivery is at least once: a failed call leaves the record untouched and
the subscriber is retried on the next tick. Write-back is conditional
(SubscriberStore.advance), so a stop or re-start that lands during a tick
is never overwritten.

Ticks never overlap: an in-process lock skips a tick while the previous
one runs, and a Redis SET NX lock keeps separate processes apart. The lock
is renewed every third of its TTL while a tick runs, and is released only
by the process that holds it.
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum
from uuid import uuid4

from app.channels.base import ChannelProtocol
from app.channels.line import get_line_channel
from app.config import Settings, get_settings
from app.core.subscribers import SubscriberStore, get_subscriber_store
from app.errors import DeliveryError, StoreError
from app.models import Subscription, SweepReport, utc_now
from app.storage.redis import RedisStorage, redis_storage

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "sweep:lock"
STOP_RETRY_SECONDS = 0.5


class Outcome(str, Enum):
    """Per-subscriber result of one tick."""

    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


class SweepScheduler:
    """Owns the recurring sweep task."""

    def __init__(
        self,
        store: SubscriberStore,
        channel: ChannelProtocol,
        storage: RedisStorage,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.channel = channel
        self.storage = storage
        self.settings = settings or get_settings()
        self.clock = clock
        self.interval = timedelta(seconds=self.settings.notification_interval_seconds)
        self._tick_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    # ------------------------------------------------------------------
    # One tick
    # ------------------------------------------------------------------

    async def run_once(self, now: datetime | None = None) -> SweepReport:
        """Run one sweep tick.

        Args:
            now: Tick instant (defaults to clock())

        Returns:
            SweepReport; ran=False if the tick was skipped

        Raises:
            StoreError: If the scan itself fails
        """
        if not self.settings.line_channel_access_token:
            logger.error("LINE_CHANNEL_ACCESS_TOKEN is not set; skipping sweep")
            return SweepReport(ran=False)

        if self._tick_lock.locked():
            logger.warning("Previous sweep still running; skipping tick")
            return SweepReport(ran=False)

        async with self._tick_lock:
            token = uuid4().hex
            acquired = await self.storage.setnx(
                SWEEP_LOCK_KEY, token, ex=self.settings.sweep_lock_ttl_seconds
            )
            if not acquired:
                logger.info("Sweep lock held by another process; skipping tick")
                return SweepReport(ran=False)
            keeper = asyncio.create_task(self._keep_lock(token), name="sweep-lock-keeper")
            try:
                return await self._sweep(now or self.clock())
            finally:
                keeper.cancel()
                await self._release_lock(token)

    async def _keep_lock(self, token: str) -> None:
        """Renew the sweep lock every third of its TTL while the tick runs."""
        ttl = self.settings.sweep_lock_ttl_seconds
        while True:
            await asyncio.sleep(ttl / 3)
            try:
                renewed = await self.storage.expire_if_value(SWEEP_LOCK_KEY, token, ttl)
            except Exception:
                logger.exception("Failed to renew sweep lock")
                continue
            if not renewed:
                logger.warning("Sweep lock lost during tick; another process may sweep concurrently")
                return

    async def _release_lock(self, token: str) -> None:
        try:
            await self.storage.delete_if_value(SWEEP_LOCK_KEY, token)
        except Exception:
            # Lock expires on its own after sweep_lock_ttl_seconds
            logger.exception("Failed to release sweep lock")

    async def _sweep(self, now: datetime) -> SweepReport:
        logger.info("Sweep started")
        report = SweepReport()

        due: list[tuple[str, Subscription]] = []
        async for subscriber_id, record in self.store.scan():
            report.scanned += 1
            if record.is_due(now, self.interval):
                due.append((subscriber_id, record))
        report.due = len(due)

        if not due:
            logger.info(f"No subscribers due ({report.scanned} scanned)")
            return report

        logger.info(f"Subscribers due: {len(due)} of {report.scanned}")

        if self.settings.sweep_delivery_mode == "multicast":
            outcomes = await self._deliver_multicast(due, now)
        else:
            outcomes = await self._deliver_push(due, now)

        for outcome in outcomes:
            if outcome is Outcome.DELIVERED:
                report.delivered += 1
            elif outcome is Outcome.SKIPPED:
                report.skipped += 1
            else:
                report.failed += 1

        logger.info(
            f"Sweep finished: delivered={report.delivered} failed={report.failed} skipped={report.skipped}"
        )
        return report

    async def _deliver_push(self, due: list[tuple[str, Subscription]], now: datetime) -> list[Outcome]:
        """One push per due subscriber, concurrent up to sweep_concurrency."""
        semaphore = asyncio.Semaphore(self.settings.sweep_concurrency)

        async def deliver(subscriber_id: str, record: Subscription) -> Outcome:
            async with semaphore:
                try:
                    async with asyncio.timeout(self.settings.delivery_timeout_seconds):
                        await self.channel.push(subscriber_id, self.settings.broadcast_message)
                except TimeoutError:
                    logger.error(f"Delivery to {subscriber_id} timed out; will retry next tick")
                    return Outcome.FAILED
                except DeliveryError as e:
                    logger.error(f"Delivery to {subscriber_id} failed: {e}; will retry next tick")
                    return Outcome.FAILED
            return await self._write_back(subscriber_id, record, now)

        results = await asyncio.gather(
            *(deliver(subscriber_id, record) for subscriber_id, record in due),
            return_exceptions=True,
        )

        outcomes = []
        for (subscriber_id, _), result in zip(due, results):
            if isinstance(result, BaseException):
                logger.error(f"Unexpected error delivering to {subscriber_id}: {type(result).__name__}: {result}")
                outcomes.append(Outcome.FAILED)
            else:
                outcomes.append(result)
        return outcomes

    async def _deliver_multicast(self, due: list[tuple[str, Subscription]], now: datetime) -> list[Outcome]:
        """One multicast per chunk; an accepted chunk advances all its members."""
        chunk_size = self.settings.multicast_chunk_size
        outcomes: list[Outcome] = []

        for start in range(0, len(due), chunk_size):
            chunk = due[start : start + chunk_size]
            try:
                async with asyncio.timeout(self.settings.delivery_timeout_seconds):
                    await self.channel.multicast(
                        [subscriber_id for subscriber_id, _ in chunk],
                        self.settings.broadcast_message,
                    )
            except (TimeoutError, DeliveryError) as e:
                logger.error(f"Multicast to {len(chunk)} subscribers failed: {e}; will retry next tick")
                outcomes.extend(Outcome.FAILED for _ in chunk)
                continue

            for subscriber_id, record in chunk:
                outcomes.append(await self._write_back(subscriber_id, record, now))

        return outcomes

    async def _write_back(self, subscriber_id: str, record: Subscription, now: datetime) -> Outcome:
        """Advance lastSentTime after an accepted delivery."""
        try:
            written = await self.store.advance(subscriber_id, record, now)
        except StoreError as e:
            # Delivered but not recorded: the subscriber stays due and gets a duplicate next tick
            logger.error(f"Failed to record delivery for {subscriber_id}: {e}")
            return Outcome.FAILED
        if not written:
            logger.info(f"Subscription {subscriber_id} changed during sweep; not advancing")
            return Outcome.SKIPPED
        return Outcome.DELIVERED

    # ------------------------------------------------------------------
    # Recurring task
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the recurring sweep task (no-op if already running)."""
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self.run_forever(), name="sweep-scheduler")

    async def stop(self) -> None:
        """Stop the recurring task and wait for it to finish.

        A cancel can be absorbed by a library call that completes at the same
        moment, so cancellation is repeated until the task is done. The stop
        flag ends the loop at the next tick boundary in that case.
        """
        self._stopping.set()
        task = self._task
        if task is None:
            return
        while not task.done():
            task.cancel()
            await asyncio.wait({task}, timeout=STOP_RETRY_SECONDS)
        with contextlib.suppress(asyncio.CancelledError):
            task.result()
        self._task = None
        logger.info("Sweep scheduler stopped")

    async def run_forever(self) -> None:
        """Run a tick every sweep_interval_seconds until stop() or cancellation."""
        cadence = self.settings.sweep_interval_seconds
        loop = asyncio.get_running_loop()
        logger.info(f"Sweep scheduler started (cadence={cadence}s, interval={self.interval})")

        while not self._stopping.is_set():
            started = loop.time()
            try:
                await self.run_once()
            except Exception:
                logger.exception("Sweep tick failed")
            delay = max(0.0, cadence - (loop.time() - started))
            with contextlib.suppress(TimeoutError):
                async with asyncio.timeout(delay):
                    await self._stopping.wait()


_sweep_scheduler: SweepScheduler | None = None


def get_sweep_scheduler() -> SweepScheduler:
    """Get sweep scheduler instance (lazy initialization)."""
    global _sweep_scheduler
    if _sweep_scheduler is None:
        _sweep_scheduler = SweepScheduler(
            store=get_subscriber_store(),
            channel=get_line_channel(),
            storage=redis_storage,
        )
    return _sweep_scheduler
