"""Processing queue worker: AI analysis with linear-backoff retries."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from . import db
from .analysis import AnalysisResponse, analyze_document
from .auto_apply import AutoApplySettings, apply_suggestions, has_auto_apply_enabled
from .config import Config
from .paperless_client import PaperlessClient

logger = logging.getLogger("papermind.processor")

MISSING_REFERENCE_ERROR = "Missing document or AI bot reference"

Analyzer = Callable[[Config, int, int, str], Awaitable[AnalysisResponse]]


@dataclass
class ProcessResult:
    queue_item_id: int
    document_id: int | None
    success: bool
    error: str | None = None


def _now() -> datetime:
    """Current UTC time. Wrapper for testability."""
    return datetime.now(timezone.utc)


def _create_client(instance: db.Instance, config: Config) -> PaperlessClient:
    return PaperlessClient.for_instance(instance, timeout=config.paperless.request_timeout)


async def _auto_apply(
    config: Config,
    instance: db.Instance,
    document: db.Document,
    response: AnalysisResponse,
) -> None:
    settings = AutoApplySettings.from_instance(instance)
    if not has_auto_apply_enabled(settings) or response.result is None:
        return

    client = _create_client(instance, config)
    apply_result = await apply_suggestions(
        config,
        client,
        remote_document_id=document.remote_id,
        local_document_id=document.id,
        suggestions=response.result,
        settings=settings,
    )
    if not apply_result.success:
        logger.warning(
            "Auto-apply failed for document %d: %s", document.id, apply_result.error,
        )


async def process_queue_item(
    config: Config,
    queue_item_id: int,
    analyzer: Analyzer | None = None,
) -> ProcessResult:
    """
    Process one queue entry.

    Only pending entries are claimed; completed, failed or in-flight entries
    are left untouched. The entry is marked processing and its document, bot
    and instance are loaded in the same transaction. Entries missing a document or bot fail
    immediately. Analysis failures are retried with a delay of
    retry_delay_minutes * attempts until max_attempts is reached.
    """
    if analyzer is None:
        analyzer = analyze_document

    with db.get_db(config.db_path) as conn:
        entry = db.mark_queue_entry_processing(conn, queue_item_id, _now())
        if entry is None:
            existing = db.get_queue_entry(conn, queue_item_id)
            if existing is not None:
                logger.info(
                    "Queue item %d is %s, not processing", queue_item_id, existing.status,
                )
            return ProcessResult(
                queue_item_id=queue_item_id,
                document_id=existing.document_id if existing else None,
                success=False,
                error="Queue item not pending" if existing else "Queue item not found",
            )
        document = db.get_document(conn, entry.document_id) if entry.document_id else None
        bot = db.get_ai_bot(conn, entry.ai_bot_id) if entry.ai_bot_id else None
        instance = db.get_instance(conn, entry.instance_id)

        if document is None or bot is None or instance is None:
            db.set_queue_entry_failed(conn, entry.id, MISSING_REFERENCE_ERROR, _now())
            logger.warning("Queue item %d failed: %s", entry.id, MISSING_REFERENCE_ERROR)
            return ProcessResult(
                queue_item_id=entry.id,
                document_id=entry.document_id,
                success=False,
                error=MISSING_REFERENCE_ERROR,
            )

    try:
        response = await analyzer(config, document.id, bot.id, instance.owner_id)
        await _auto_apply(config, instance, document, response)
    except Exception as e:
        error = str(e) or "Unknown error"
        attempts = entry.attempts + 1

        with db.get_db(config.db_path) as conn:
            if attempts >= entry.max_attempts:
                db.set_queue_entry_failed(conn, entry.id, error, _now(), attempts=attempts)
                logger.warning(
                    "Queue item %d failed permanently after %d attempts: %s",
                    entry.id, attempts, error,
                )
            else:
                delay = timedelta(minutes=config.scheduler.retry_delay_minutes * attempts)
                scheduled_for = _now() + delay
                db.set_queue_entry_pending_retry(conn, entry.id, attempts, error, scheduled_for)
                logger.info(
                    "Queue item %d attempt %d failed, retrying at %s: %s",
                    entry.id, attempts, db.format_ts(scheduled_for), error,
                )

        return ProcessResult(
            queue_item_id=entry.id, document_id=document.id, success=False, error=error,
        )

    with db.get_db(config.db_path) as conn:
        db.set_queue_entry_completed(conn, entry.id, _now())

    logger.debug("Queue item %d completed", entry.id)
    return ProcessResult(queue_item_id=entry.id, document_id=document.id, success=True)


async def process_all_pending(
    config: Config,
    analyzer: Analyzer | None = None,
) -> list[ProcessResult]:
    """Process due pending entries one at a time until none remain."""
    results = []
    while True:
        with db.get_db(config.db_path) as conn:
            entry_id = db.get_next_pending_entry_id(conn, _now())
        if entry_id is None:
            break
        results.append(await process_queue_item(config, entry_id, analyzer=analyzer))
    return results


def reset_stuck_items(config: Config) -> int:
    """Reset entries stuck in processing longer than stuck_item_minutes. Returns count reset."""
    cutoff = _now() - timedelta(minutes=config.scheduler.stuck_item_minutes)
    with db.get_db(config.db_path) as conn:
        count = db.reset_stuck_entries(conn, cutoff)
    if count:
        logger.info("Reset %d stuck queue item(s)", count)
    return count


def get_queue_stats(config: Config, instance_id: int | None = None) -> dict[str, int]:
    with db.get_db(config.db_path) as conn:
        return {
            status: db.count_queue_entries(conn, status, instance_id=instance_id)
            for status in db.QueueStatus.ALL
        }


def retry_failed_items(
    config: Config,
    instance_id: int,
    queue_item_id: int | None = None,
) -> int:
    """Re-open failed entries of an instance (or a single entry) for processing."""
    with db.get_db(config.db_path) as conn:
        count = db.retry_failed_entries(conn, instance_id, _now(), entry_id=queue_item_id)
    logger.info("Re-queued %d failed item(s) for instance %d", count, instance_id)
    return count
