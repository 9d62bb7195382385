"""
Repeating crawl scheduler.

Cycles target a fixed cadence: the next cycle starts ``interval - elapsed``
after the previous one finished. A crawl failure schedules a short retry; an
unreachable Catalog Store stops the scheduler for good.
"""

import asyncio
import logging
import signal
import sys
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Tuple

from .cli import build_settings, configure_logging, parse_args
from .errors import StoreConnectivityError

logger = logging.getLogger("stac_crawler.scheduler")

EXIT_STORE_FAILURE = 1


def format_duration(seconds: float) -> str:
    """Human readable duration, e.g. "2h 30m 15s" or "45s"."""
    total = int(max(0, seconds))
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def in_time_window(hour: int, start_hour: int, end_hour: int) -> bool:
    if start_hour > end_hour:
        # window spans midnight, e.g. 22:00 - 07:00
        return hour >= start_hour or hour < end_hour
    return start_hour <= hour < end_hour


def seconds_until_window(moment: datetime, start_hour: int, end_hour: int) -> float:
    """Seconds from ``moment`` until the allowed window next opens (0 if open)."""
    if in_time_window(moment.hour, start_hour, end_hour):
        return 0.0
    opening = moment.replace(hour=start_hour, minute=0, second=0, microsecond=0)
    if opening <= moment:
        opening += timedelta(days=1)
    return (opening - moment).total_seconds()


class RunScheduler:
    def __init__(
        self,
        run_cycle: Callable[[], Awaitable[object]],
        interval: float = 7 * 86400,
        retry_delay: float = 2 * 3600,
        run_on_startup: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        stop_event: Optional[asyncio.Event] = None,
        time_window: Optional[Tuple[int, int]] = None,
        now: Callable[[], datetime] = datetime.now,
        max_cycles: Optional[int] = None,
    ):
        self.run_cycle = run_cycle
        self.interval = interval
        self.retry_delay = retry_delay
        self.run_on_startup = run_on_startup
        self.sleep = sleep
        self.clock = clock
        self.stop_event = stop_event or asyncio.Event()
        self.time_window = time_window
        self.now = now
        self.max_cycles = max_cycles
        self.cycles_run = 0
        self.halted = False

    def next_delay(self, elapsed: float, failed: bool = False) -> float:
        delay = self.retry_delay if failed else max(0.0, self.interval - elapsed)
        return self.within_window(delay)

    def within_window(self, delay: float) -> float:
        """Push a delay forward so the run starts inside the allowed window."""
        if self.time_window is not None:
            start_hour, end_hour = self.time_window
            planned = self.now() + timedelta(seconds=delay)
            extra = seconds_until_window(planned, start_hour, end_hour)
            if extra > 0:
                logger.info(f"Next run moved into allowed window ({start_hour}:00 - {end_hour}:00)")
                delay += extra
        return delay

    async def _wait(self, delay: float) -> None:
        if delay <= 0:
            return
        logger.info(f"Next crawl scheduled for: {(self.now() + timedelta(seconds=delay)).isoformat(sep=' ')}")
        logger.info(f"   Wait time: {format_duration(delay)}")
        await self.sleep(delay)

    async def run_once(self) -> Tuple[bool, float]:
        """Run one cycle; returns (failed, elapsed seconds)."""
        started = self.clock()
        self.cycles_run += 1
        failed = False
        try:
            result = await self.run_cycle()
            failed = getattr(result, "success", True) is False
        except StoreConnectivityError:
            raise
        except Exception as e:
            logger.exception(f"Crawler encountered an error: {e}")
            failed = True
        return failed, self.clock() - started

    async def start(self) -> int:
        """Run cycles until stopped; returns the process exit code."""
        logger.info("=" * 80)
        logger.info("STAC Crawler Scheduler Started")
        logger.info(f"Interval: {format_duration(self.interval)}, retry delay: {format_duration(self.retry_delay)}")
        logger.info(f"Run on startup: {self.run_on_startup}")
        logger.info("=" * 80)

        await self._wait(self.within_window(0.0 if self.run_on_startup else self.interval))

        while not self.stop_event.is_set():
            try:
                failed, elapsed = await self.run_once()
            except StoreConnectivityError as e:
                logger.critical(f"DATABASE ERROR DETECTED - Scheduler stopped: {e}")
                logger.critical("Fix the database connection and restart the scheduler.")
                self.halted = True
                return EXIT_STORE_FAILURE

            if self.stop_event.is_set():
                break
            if self.max_cycles is not None and self.cycles_run >= self.max_cycles:
                break

            if failed:
                logger.warning("Crawl error detected but database is OK - scheduling retry...")
            else:
                logger.info(f"Crawl completed in {format_duration(elapsed)} - scheduling next run...")
            await self._wait(self.next_delay(elapsed, failed))

        logger.info("Scheduler stopped")
        return 0


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: stop_event.set())


async def _serve(settings) -> int:
    from .crawler import run_crawl_cycle
    from .store import SqlAlchemyCatalogStore

    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)
    store = SqlAlchemyCatalogStore.from_settings(settings)

    async def cycle():
        return await run_crawl_cycle(settings, store, stop_event=stop_event)

    window = (settings.allowed_start_hour, settings.allowed_end_hour) if settings.enforce_time_window else None
    scheduler = RunScheduler(
        cycle,
        interval=settings.schedule_interval_days * 86400,
        retry_delay=settings.retry_delay_hours * 3600,
        run_on_startup=settings.run_on_startup,
        sleep=lambda delay: _interruptible_sleep(delay, stop_event),
        stop_event=stop_event,
        time_window=window,
    )
    try:
        return await scheduler.start()
    finally:
        await store.close()


async def _interruptible_sleep(delay: float, stop_event: asyncio.Event) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass


def main(argv=None) -> None:
    args = parse_args(argv)
    settings = build_settings(args)
    configure_logging(settings.log_level)
    sys.exit(asyncio.run(_serve(settings)))


if __name__ == "__main__":
    main()
