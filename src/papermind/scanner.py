"""Scan Paperless instances for new documents and enqueue them for analysis."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from . import db
from .config import Config
from .cron import calculate_next_scan_time
from .paperless_client import PaperlessClient

logger = logging.getLogger("papermind.scanner")


@dataclass
class ScanResult:
    instance_id: int
    instance_name: str
    documents_queued: int = 0
    documents_already_processed: int = 0
    documents_already_queued: int = 0
    error: str | None = None


def _now() -> datetime:
    """Current UTC time. Wrapper for testability."""
    return datetime.now(timezone.utc)


def _create_client(instance: db.Instance, config: Config) -> PaperlessClient:
    return PaperlessClient.for_instance(instance, timeout=config.paperless.request_timeout)


async def fetch_all_documents(client: PaperlessClient, page_size: int = 100) -> list[dict]:
    """Fetch every document from an instance, following pages until there is no next page."""
    documents: list[dict] = []
    page = 1
    has_more = True
    while has_more:
        results, has_more = await client.fetch_page(page, page_size)
        documents.extend(results)
        page += 1
    return documents


def filter_by_tags(documents: list[dict], filter_tags: list[int] | None) -> list[dict]:
    """Keep documents carrying every tag in filter_tags. An empty filter keeps everything."""
    if not filter_tags:
        return documents
    required = set(filter_tags)
    return [doc for doc in documents if required.issubset(doc.get("tags") or [])]


def _normalize_remote_date(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).isoformat()
    except ValueError:
        return value


def _update_scan_times(config: Config, instance: db.Instance) -> None:
    now = _now()
    next_scan_at = calculate_next_scan_time(instance.scan_cron_expression, now)
    with db.get_db(config.db_path) as conn:
        db.update_instance_scan_times(conn, instance.id, now, next_scan_at)


def _enqueue_new_documents(config: Config, instance: db.Instance, documents: list[dict]) -> ScanResult:
    """Partition documents against stored results and the queue, then upsert and enqueue the new ones."""
    result = ScanResult(instance_id=instance.id, instance_name=instance.name)
    sched = config.scheduler

    with db.get_db(config.db_path) as conn:
        processed = db.get_processed_remote_ids(conn, instance.id)
        queued = db.get_queued_remote_ids(conn, instance.id)

        new_documents = []
        for doc in documents:
            if doc["id"] in processed:
                result.documents_already_processed += 1
            elif doc["id"] in queued:
                result.documents_already_queued += 1
            else:
                # pages can shift mid-scan and repeat a document
                queued.add(doc["id"])
                new_documents.append(doc)

        now = _now()
        for doc in new_documents:
            document_id = db.upsert_document(
                conn,
                instance_id=instance.id,
                remote_id=doc["id"],
                title=doc.get("title") or "",
                content=doc.get("content") or "",
                correspondent_id=doc.get("correspondent"),
                tag_ids=doc.get("tags") or [],
                document_date=_normalize_remote_date(doc.get("created")),
                remote_modified=_normalize_remote_date(doc.get("modified")),
            )
            db.create_queue_entry(
                conn,
                instance_id=instance.id,
                remote_document_id=doc["id"],
                document_id=document_id,
                ai_bot_id=instance.default_ai_bot_id,
                now=now,
                priority=sched.default_priority,
                max_attempts=sched.default_max_attempts,
            )
            result.documents_queued += 1

    return result


async def scan_instance(config: Config, instance_id: int) -> ScanResult:
    """
    Scan one instance and enqueue its new documents.

    Always advances last_scan_at/next_scan_at when the instance exists, even
    when the scan fails; failures are reported in ScanResult.error. An
    invalid cron expression raises ScheduleConfigError.
    """
    with db.get_db(config.db_path) as conn:
        instance = db.get_instance(conn, instance_id)

    if instance is None:
        return ScanResult(
            instance_id=instance_id, instance_name="Unknown", error="Instance not found",
        )

    if instance.default_ai_bot_id is None:
        _update_scan_times(config, instance)
        return ScanResult(
            instance_id=instance.id,
            instance_name=instance.name,
            error="No default AI bot configured",
        )

    try:
        client = _create_client(instance, config)
        documents = await fetch_all_documents(client, config.scheduler.page_size)
        documents = filter_by_tags(documents, instance.import_filter_tags)
        result = _enqueue_new_documents(config, instance, documents)
        _update_scan_times(config, instance)
        return result
    except Exception as e:
        logger.debug("Scan of instance %d failed", instance.id, exc_info=True)
        _update_scan_times(config, instance)
        return ScanResult(
            instance_id=instance.id,
            instance_name=instance.name,
            error=str(e) or "Unknown error",
        )


async def scan_due_instances(config: Config) -> list[ScanResult]:
    """Scan, one after another, every auto-processing instance whose next scan is due."""
    with db.get_db(config.db_path) as conn:
        due = db.get_due_instances(conn, _now())

    results = []
    for instance in due:
        results.append(await scan_instance(config, instance.id))
    return results
