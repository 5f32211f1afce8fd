"""
Background Worker
Version: 1.0

Runs the scheduling jobs outside the API process:
1. Bokun cache sync every SYNC_INTERVAL_SECONDS
2. Guide auto-assignment every AUTO_ASSIGN_INTERVAL_SECONDS
3. Auto-assignment on `bookings.changed` events from the change feed

SIGTERM/SIGINT stop the timers; runs already in flight are given
SHUTDOWN_GRACE_SECONDS to finish before they are cancelled.
"""

import asyncio
import os
import signal
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional, Set

import redis.asyncio as aioredis

from services.logging_config import LogTimer, configure_logging, get_logger, job_context

configure_logging(log_level=os.getenv('LOG_LEVEL', 'INFO'))

from config import get_settings
from errors import RunInProgressError, SchedulingError

settings = get_settings()
logger = get_logger("worker")

SHUTDOWN_GRACE_SECONDS = 30.0
HEALTH_REPORT_SECONDS = 60


@dataclass
class JobStats:
    syncs_completed: int = 0
    syncs_failed: int = 0
    assign_runs: int = 0
    assign_skipped: int = 0
    guides_assigned: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def snapshot(self) -> dict:
        data = asdict(self)
        data["uptime_seconds"] = round((datetime.now(timezone.utc) - data.pop("started_at")).total_seconds())
        return data


class JobRunner:
    """Owns the stop signal and the set of job runs still in flight."""

    def __init__(self):
        self.stopping = asyncio.Event()
        self.in_flight: Set[asyncio.Task] = set()

    def stop(self):
        if not self.stopping.is_set():
            logger.info("Shutdown requested")
            self.stopping.set()

    @property
    def stopped(self) -> bool:
        return self.stopping.is_set()

    async def pause(self, seconds: float) -> bool:
        """Sleep for the interval or until stop. Returns True when stopping."""
        try:
            await asyncio.wait_for(self.stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self.stopped

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.in_flight.add(task)
        task.add_done_callback(self.in_flight.discard)
        return task

    async def drain(self, timeout: float):
        if not self.in_flight:
            return
        pending = list(self.in_flight)
        logger.info("Waiting for job runs to finish", runs=len(pending))
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled unfinished job runs", runs=len(still_running))


class Worker:
    """Scheduling background worker. Services are built once and shared by all jobs."""

    def __init__(self):
        self.redis: Optional[aioredis.Redis] = None
        self.runner = JobRunner()
        self.services = None
        self.stats = JobStats()

    async def start(self):
        logger.info("Worker starting")
        self._install_signal_handlers()

        await self._connect()
        logger.info("Worker ready")

        try:
            await asyncio.gather(
                self._sync_loop(),
                self._assign_loop(),
                self._change_listener(),
                self._health_reporter(),
            )
        finally:
            await self._shutdown()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.runner.stop)

    async def _connect(self):
        from database import AsyncSessionLocal, ping_db
        from services.readiness import redis_client, wait_until_ready
        from services.wiring import build_services

        self.redis = redis_client(settings.REDIS_URL, settings.REDIS_MAX_CONNECTIONS)
        if not await wait_until_ready("Redis", self.redis.ping, stop=self.runner.stopping):
            raise RuntimeError("Could not connect to Redis")
        if not await wait_until_ready("Database", ping_db, stop=self.runner.stopping):
            raise RuntimeError("Could not connect to database")

        self.services = build_services(AsyncSessionLocal, self.redis)

    async def _shutdown(self):
        await self.runner.drain(SHUTDOWN_GRACE_SECONDS)
        logger.info("Worker stats", **self.stats.snapshot())

        if self.services is not None:
            await self.services.close()
        if self.redis is not None:
            await self.redis.aclose()

        from database import close_db
        await close_db()
        logger.info("Worker stopped")

    # === JOBS ===

    async def run_sync(self):
        """One cache sync. Failures are logged and counted, never raised."""
        with job_context("cache_sync"):
            try:
                with LogTimer(logger, "Cache sync") as timer:
                    report = await self.services.cache_sync.sync_all()
                    timer.annotate(
                        products=report.products_processed,
                        cached=report.total_bookings_cached,
                        errors=len(report.errors),
                    )
            except SchedulingError as e:
                self.stats.syncs_failed += 1
                logger.error("Cache sync aborted", error_code=e.code, error=e.message)
                return
            except Exception:
                self.stats.syncs_failed += 1
                logger.exception("Cache sync crashed")
                return

            if report.errors:
                self.stats.syncs_failed += 1
                logger.warning("Cache sync had product errors", errors=report.errors)
            else:
                self.stats.syncs_completed += 1

    async def run_auto_assign(self, trigger: str):
        """One auto-assignment run. An overlapping run is skipped."""
        with job_context("auto_assign", trigger=trigger):
            try:
                with LogTimer(logger, "Auto-assign") as timer:
                    report = await self.services.engine.auto_assign()
                    timer.annotate(
                        assigned=report.assigned,
                        no_candidates=report.no_candidates,
                        failed=report.failed,
                    )
            except RunInProgressError:
                self.stats.assign_skipped += 1
                logger.info("Auto-assign already running, skipped")
                return
            except SchedulingError as e:
                logger.error("Auto-assign aborted", error_code=e.code, error=e.message)
                return
            except Exception:
                logger.exception("Auto-assign crashed")
                return

            self.stats.assign_runs += 1
            self.stats.guides_assigned += report.assigned

    async def _sync_loop(self):
        logger.info("Cache sync loop started", interval=settings.SYNC_INTERVAL_SECONDS)
        while not self.runner.stopped:
            await self.runner.spawn(self.run_sync())
            if await self.runner.pause(settings.SYNC_INTERVAL_SECONDS):
                return

    async def _assign_loop(self):
        logger.info("Auto-assign loop started", interval=settings.AUTO_ASSIGN_INTERVAL_SECONDS)
        while not await self.runner.pause(settings.AUTO_ASSIGN_INTERVAL_SECONDS):
            await self.runner.spawn(self.run_auto_assign("schedule"))

    async def _change_listener(self):
        """Start an auto-assign run for each `bookings.changed` event."""
        from services.change_feed import BOOKINGS_CHANGED_EVENT, BOOKINGS_CHANNEL

        feed = self.services.change_feed
        if feed is None:
            logger.warning("No change feed, event-triggered auto-assign disabled")
            return

        while not self.runner.stopped:
            try:
                async with feed.subscribe(BOOKINGS_CHANNEL) as subscription:
                    logger.info("Listening for booking changes", channel=BOOKINGS_CHANNEL)
                    while not self.runner.stopped:
                        event = await subscription.get(timeout=1.0)
                        if event is not None and event.event == BOOKINGS_CHANGED_EVENT:
                            logger.info("Booking change received", payload=event.payload)
                            self.runner.spawn(self.run_auto_assign(BOOKINGS_CHANGED_EVENT))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Change listener error, resubscribing", error=str(e))
                await self.runner.pause(2)

    async def _health_reporter(self):
        while not await self.runner.pause(HEALTH_REPORT_SECONDS):
            logger.info("Health", in_flight=len(self.runner.in_flight), **self.stats.snapshot())


async def main():
    worker = Worker()
    try:
        await worker.start()
    except asyncio.CancelledError:
        logger.info("Worker cancelled")
    except Exception:
        logger.exception("Worker fatal error")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
