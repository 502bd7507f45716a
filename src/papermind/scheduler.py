"""Scan scheduler: per-instance cron timers feeding the processing queue."""

import asyncio
import fcntl
import logging
import os
import signal
from datetime import datetime, timezone
from pathlib import Path

from . import db
from .config import Config, load_config
from .cron import ScheduleConfigError, calculate_next_scan_time
from .processor import process_all_pending, reset_stuck_items
from .scanner import scan_due_instances, scan_instance

logger = logging.getLogger("papermind.scheduler")


def _now() -> datetime:
    """Current UTC time. Wrapper for testability."""
    return datetime.now(timezone.utc)


class Scheduler:
    """
    Owns one one-shot timer per auto-processing instance.

    When a timer fires the instance is scanned, the processor is triggered if
    anything was queued, and the next timer is armed from the instance's
    current configuration. At most one scan per instance and one processor
    drain run at a time.
    """

    def __init__(self, config: Config, loop: asyncio.AbstractEventLoop | None = None):
        self.config = config
        self._loop = loop
        self._instance_timers: dict[int, asyncio.TimerHandle] = {}
        self._scanning: set[int] = set()
        self._running = False
        self._processor_running = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.info("Scheduler already running")
            return

        reset_count = reset_stuck_items(self.config)
        if reset_count:
            logger.info("Reset %d stuck processing item(s)", reset_count)

        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._running = True
        logger.info("Scheduler started")

        self._schedule_all_instances()

    def stop(self) -> None:
        """Cancel all timers. In-flight scans and drains finish but won't reschedule."""
        if not self._running:
            return

        for instance_id, handle in self._instance_timers.items():
            handle.cancel()
            logger.debug("Cleared timer for instance %d", instance_id)
        self._instance_timers.clear()

        self._running = False
        logger.info("Scheduler stopped")

    def _schedule_all_instances(self) -> None:
        with db.get_db(self.config.db_path) as conn:
            instances = db.get_auto_process_instances(conn)

        for instance in instances:
            try:
                self.schedule_instance(
                    instance.id,
                    instance.name,
                    instance.scan_cron_expression,
                    instance.next_scan_at,
                )
            except ScheduleConfigError as e:
                logger.error("Instance '%s' not scheduled: %s", instance.name, e)

        logger.info("Scheduled %d instance(s)", len(self._instance_timers))

    def schedule_instance(
        self,
        instance_id: int,
        instance_name: str,
        cron_expression: str,
        next_scan_at: datetime | None,
    ) -> None:
        """
        Arm the scan timer for an instance, replacing any existing one.

        A stored next_scan_at still in the future is kept; otherwise the next
        cron occurrence is used. Does nothing while the instance is scanning,
        since the scan reschedules itself when it finishes. Raises
        ScheduleConfigError for an invalid cron expression.
        """
        if instance_id in self._scanning:
            logger.debug(
                "Instance '%s' is scanning, will reschedule after", instance_name,
            )
            return

        existing = self._instance_timers.pop(instance_id, None)
        if existing is not None:
            existing.cancel()

        now = _now()
        if next_scan_at is not None and next_scan_at > now:
            target = next_scan_at
        else:
            target = calculate_next_scan_time(cron_expression, now)

        delay = max(0.0, (target - now).total_seconds())
        logger.info(
            "Instance '%s' scheduled in %ds (at %s)",
            instance_name, round(delay), target.isoformat(),
        )

        loop = self._loop or asyncio.get_running_loop()
        self._instance_timers[instance_id] = loop.call_later(delay, self._on_timer, instance_id)

    def unschedule_instance(self, instance_id: int) -> None:
        handle = self._instance_timers.pop(instance_id, None)
        if handle is not None:
            handle.cancel()
            logger.info("Unscheduled instance %d", instance_id)

    def _on_timer(self, instance_id: int) -> None:
        self._instance_timers.pop(instance_id, None)
        self._spawn(self._run_instance_scan(instance_id))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_instance_scan(self, instance_id: int) -> None:
        if instance_id in self._scanning:
            logger.info("Skipping duplicate scan for instance %d", instance_id)
            return

        self._scanning.add(instance_id)
        handle = self._instance_timers.pop(instance_id, None)
        if handle is not None:
            handle.cancel()

        try:
            result = await scan_instance(self.config, instance_id)
            if result.error:
                logger.info("%s: Error - %s", result.instance_name, result.error)
            elif result.documents_queued > 0:
                logger.info(
                    "%s: Queued %d new, %d processed, %d in queue",
                    result.instance_name,
                    result.documents_queued,
                    result.documents_already_processed,
                    result.documents_already_queued,
                )
                self.trigger_processor()
            else:
                logger.info(
                    "%s: No new documents (%d processed, %d in queue)",
                    result.instance_name,
                    result.documents_already_processed,
                    result.documents_already_queued,
                )
        except Exception:
            logger.exception("Error scanning instance %d", instance_id)
        finally:
            self._scanning.discard(instance_id)
            self._schedule_next_scan(instance_id)

    def _schedule_next_scan(self, instance_id: int) -> None:
        if not self._running:
            return

        try:
            with db.get_db(self.config.db_path) as conn:
                instance = db.get_instance(conn, instance_id)

            if instance is not None and instance.auto_process_enabled:
                self.schedule_instance(
                    instance.id,
                    instance.name,
                    instance.scan_cron_expression,
                    instance.next_scan_at,
                )
            else:
                logger.info("Instance %d no longer auto-processing, not rescheduled", instance_id)
        except Exception:
            logger.exception("Error scheduling next scan for instance %d", instance_id)

    def trigger_processor(self) -> None:
        """Start a queue drain unless one is already running."""
        if self._processor_running:
            logger.info("Processor already running, will process new items")
            return

        self._processor_running = True
        self._spawn(self._run_processor())

    async def _run_processor(self) -> None:
        logger.info("Processing pending items")
        try:
            results = await process_all_pending(self.config)

            success_count = 0
            fail_count = 0
            for result in results:
                if result.success:
                    success_count += 1
                else:
                    fail_count += 1
                    logger.info("Failed: document %s - %s", result.document_id, result.error)

            if results:
                logger.info("Processor finished: %d successful, %d failed", success_count, fail_count)
        except Exception:
            logger.exception("Processor error")
        finally:
            self._processor_running = False

    async def trigger_scan(self, instance_id: int) -> None:
        """Scan an instance now, as if its timer had fired."""
        await self._run_instance_scan(instance_id)

    async def wait_for_tasks(self) -> None:
        """Wait until spawned scans and drains have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "scheduled_instance_count": len(self._instance_timers),
            "processor_active": self._processor_running,
        }


async def run_once(config: Config) -> None:
    """Scan every due instance, then drain the queue."""
    results = await scan_due_instances(config)
    for result in results:
        if result.error:
            logger.info("%s: Error - %s", result.instance_name, result.error)
        else:
            logger.info("%s: Queued %d new", result.instance_name, result.documents_queued)

    processed = await process_all_pending(config)
    logger.info("Processed %d queue item(s)", len(processed))


async def _serve(config: Config) -> None:
    scheduler = Scheduler(config)
    stop_requested = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_requested.set)

    await scheduler.start()
    await stop_requested.wait()

    logger.info("Shutdown requested, waiting for in-flight work...")
    scheduler.stop()
    await scheduler.wait_for_tasks()


def run_daemon(config: Config) -> None:
    """
    Run the scheduler until SIGTERM/SIGINT.
    Only one daemon may run per database.
    """
    lock_path = Path(f"{config.db_path}.scheduler.lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_file = open(lock_path, "w")
    try:
        fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        logger.error("Another scheduler daemon is already running. Exiting.")
        lock_file.close()
        return

    lock_file.write(str(os.getpid()))
    lock_file.flush()

    logger.info("STARTUP Scheduler daemon starting (pid: %d)", os.getpid())
    logger.info("STARTUP Database: %s", config.db_path)
    logger.info("STARTUP Retry delay: %d min", config.scheduler.retry_delay_minutes)
    logger.info("STARTUP Stuck item threshold: %d min", config.scheduler.stuck_item_minutes)

    try:
        db.init_db(config.db_path)
        asyncio.run(_serve(config))
    finally:
        lock_file.close()
    logger.info("Shutdown complete.")


def main():
    """Entry point for scheduler script."""
    import argparse

    from .logging_setup import setup_logging

    parser = argparse.ArgumentParser(description="papermind scan scheduler")
    parser.add_argument("-c", "--config", help="Path to config file")
    parser.add_argument("--daemon", "-d", action="store_true", help="Run as daemon (cron timers per instance)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    config = load_config(Path(args.config) if args.config else None)
    setup_logging(config, verbose=args.verbose, daemon_mode=args.daemon)

    if args.daemon:
        run_daemon(config)
    else:
        db.init_db(config.db_path)
        asyncio.run(run_once(config))


if __name__ == "__main__":
    main()
