"""Tests for papermind.scanner module."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from papermind import db
from papermind.cron import ScheduleConfigError
from papermind.paperless_client import PaperlessApiError
from papermind.scanner import (
    fetch_all_documents,
    filter_by_tags,
    scan_due_instances,
    scan_instance,
)

FROZEN_NOW = datetime(2026, 1, 1, 10, 0, 0, tzinfo=timezone.utc)


def _client_with_pages(*pages):
    """Mock client whose fetch_page returns the given pages in order; the last has no next."""
    client = MagicMock()
    side_effect = [(list(page), i < len(pages) - 1) for i, page in enumerate(pages)]
    client.fetch_page = AsyncMock(side_effect=side_effect)
    return client


@pytest.fixture(autouse=True)
def frozen_now():
    with patch("papermind.scanner._now", return_value=FROZEN_NOW):
        yield


@pytest.fixture
def bot_instance(make_bot, make_instance):
    bot_id = make_bot()
    return make_instance(default_ai_bot_id=bot_id)


def _instance(db_path, instance_id):
    with db.get_db(db_path) as conn:
        return db.get_instance(conn, instance_id)


class TestFetchAllDocuments:
    @pytest.mark.asyncio
    async def test_follows_pages(self, make_remote_doc):
        client = _client_with_pages(
            [make_remote_doc(1), make_remote_doc(2)],
            [make_remote_doc(3)],
        )
        docs = await fetch_all_documents(client, page_size=2)
        assert [d["id"] for d in docs] == [1, 2, 3]
        assert [c.args for c in client.fetch_page.call_args_list] == [(1, 2), (2, 2)]

    @pytest.mark.asyncio
    async def test_empty_repository(self):
        client = _client_with_pages([])
        assert await fetch_all_documents(client) == []


class TestFilterByTags:
    def test_empty_filter_keeps_all(self, make_remote_doc):
        docs = [make_remote_doc(1), make_remote_doc(2, tags=[5])]
        assert filter_by_tags(docs, []) == docs
        assert filter_by_tags(docs, None) == docs

    def test_and_semantics(self, make_remote_doc):
        docs = [
            make_remote_doc(1, tags=[1]),
            make_remote_doc(2, tags=[1, 2]),
            make_remote_doc(3, tags=[1, 2, 3]),
            make_remote_doc(4, tags=[2]),
        ]
        assert [d["id"] for d in filter_by_tags(docs, [1, 2])] == [2, 3]


class TestScanInstance:
    @pytest.mark.asyncio
    async def test_instance_not_found(self, config):
        with patch("papermind.scanner._create_client") as mock_create:
            result = await scan_instance(config, 999)
        assert result.error == "Instance not found"
        assert result.instance_name == "Unknown"
        mock_create.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_default_bot_advances_schedule(self, config, make_instance, db_path):
        instance_id = make_instance()
        with patch("papermind.scanner._create_client") as mock_create:
            result = await scan_instance(config, instance_id)

        assert result.error == "No default AI bot configured"
        assert result.documents_queued == 0
        mock_create.assert_not_called()
        instance = _instance(db_path, instance_id)
        assert instance.last_scan_at == FROZEN_NOW
        assert instance.next_scan_at == FROZEN_NOW + timedelta(minutes=30)
        with db.get_db(db_path) as conn:
            assert db.get_queued_remote_ids(conn, instance_id) == set()

    @pytest.mark.asyncio
    async def test_queues_new_documents(self, config, bot_instance, make_remote_doc, db_path):
        client = _client_with_pages([make_remote_doc(1), make_remote_doc(2)], [make_remote_doc(3)])
        with patch("papermind.scanner._create_client", return_value=client):
            result = await scan_instance(config, bot_instance)

        assert result.error is None
        assert result.instance_name == "Home"
        assert result.documents_queued == 3
        assert result.documents_already_processed == 0
        assert result.documents_already_queued == 0

        with db.get_db(db_path) as conn:
            entries = db.list_queue_entries(conn, instance_id=bot_instance)
            assert {e.remote_document_id for e in entries} == {1, 2, 3}
            for e in entries:
                assert e.status == db.QueueStatus.PENDING
                assert e.ai_bot_id == 1
                assert e.priority == 0
                assert e.max_attempts == 3
                assert e.scheduled_for == FROZEN_NOW
                doc = db.get_document(conn, e.document_id)
                assert doc.remote_id == e.remote_document_id
        instance = _instance(db_path, bot_instance)
        assert instance.last_scan_at == FROZEN_NOW
        assert instance.next_scan_at == FROZEN_NOW + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_mirrors_document_fields(self, config, bot_instance, make_remote_doc, db_path):
        remote = make_remote_doc(9, title="Lease", content="Lease text", tags=[4], correspondent=2)
        with patch("papermind.scanner._create_client", return_value=_client_with_pages([remote])):
            await scan_instance(config, bot_instance)

        with db.get_db(db_path) as conn:
            doc = db.get_document_by_remote_id(conn, bot_instance, 9)
        assert doc.title == "Lease"
        assert doc.content == "Lease text"
        assert doc.tag_ids == [4]
        assert doc.correspondent_id == 2
        assert doc.document_date == "2025-12-01T00:00:00+00:00"
        assert doc.remote_modified == "2025-12-02T08:30:00+00:00"

    @pytest.mark.asyncio
    async def test_null_dates_stay_null(self, config, bot_instance, make_remote_doc, db_path):
        remote = make_remote_doc(9, created=None, modified=None)
        with patch("papermind.scanner._create_client", return_value=_client_with_pages([remote])):
            await scan_instance(config, bot_instance)

        with db.get_db(db_path) as conn:
            doc = db.get_document_by_remote_id(conn, bot_instance, 9)
        assert doc.document_date is None
        assert doc.remote_modified is None

    @pytest.mark.asyncio
    async def test_skips_processed_and_queued(
        self, config, bot_instance, make_remote_doc, db_path,
    ):
        with db.get_db(db_path) as conn:
            processed = db.upsert_document(conn, bot_instance, 1, "T", "", None, [], None, None)
            db.create_processing_result(conn, processed, 1, {"title": "done"})
            failed = db.create_queue_entry(
                conn, bot_instance, 2, None, 1, now=FROZEN_NOW,
            )
            db.set_queue_entry_failed(conn, failed, "boom", FROZEN_NOW, attempts=3)

        docs = [make_remote_doc(1), make_remote_doc(2), make_remote_doc(3)]
        with patch("papermind.scanner._create_client", return_value=_client_with_pages(docs)):
            result = await scan_instance(config, bot_instance)

        assert result.documents_queued == 1
        assert result.documents_already_processed == 1
        assert result.documents_already_queued == 1
        with db.get_db(db_path) as conn:
            assert db.get_queued_remote_ids(conn, bot_instance) == {2, 3}
            assert db.get_queue_entry(conn, failed).status == db.QueueStatus.FAILED

    @pytest.mark.asyncio
    async def test_repeated_scans_never_duplicate(self, config, bot_instance, make_remote_doc, db_path):
        docs = [make_remote_doc(1), make_remote_doc(2)]
        with patch("papermind.scanner._create_client", side_effect=lambda *a: _client_with_pages(docs)):
            first = await scan_instance(config, bot_instance)
            second = await scan_instance(config, bot_instance)

        assert first.documents_queued == 2
        assert second.documents_queued == 0
        assert second.documents_already_queued == 2
        with db.get_db(db_path) as conn:
            assert db.count_queue_entries(conn, db.QueueStatus.PENDING) == 2

    @pytest.mark.asyncio
    async def test_document_repeated_across_pages_queued_once(
        self, config, bot_instance, make_remote_doc, db_path,
    ):
        client = _client_with_pages(
            [make_remote_doc(1), make_remote_doc(2)],
            [make_remote_doc(2), make_remote_doc(3)],
        )
        with patch("papermind.scanner._create_client", return_value=client):
            result = await scan_instance(config, bot_instance)

        assert result.error is None
        assert result.documents_queued == 3
        assert result.documents_already_queued == 1
        with db.get_db(db_path) as conn:
            assert db.get_queued_remote_ids(conn, bot_instance) == {1, 2, 3}

    @pytest.mark.asyncio
    async def test_tag_filter_applied(self, config, make_bot, make_instance, make_remote_doc, db_path):
        instance_id = make_instance(default_ai_bot_id=make_bot(), import_filter_tags=[1, 2])
        docs = [
            make_remote_doc(1, tags=[1, 2]),
            make_remote_doc(2, tags=[1]),
            make_remote_doc(3, tags=[2, 1, 5]),
        ]
        with patch("papermind.scanner._create_client", return_value=_client_with_pages(docs)):
            result = await scan_instance(config, instance_id)

        assert result.documents_queued == 2
        with db.get_db(db_path) as conn:
            assert db.get_queued_remote_ids(conn, instance_id) == {1, 3}

    @pytest.mark.asyncio
    async def test_fetch_error_reported_and_rescheduled(self, config, bot_instance, db_path):
        client = MagicMock()
        client.fetch_page = AsyncMock(side_effect=PaperlessApiError("API request failed: 502 Bad Gateway", 502))
        with patch("papermind.scanner._create_client", return_value=client):
            result = await scan_instance(config, bot_instance)

        assert result.error == "API request failed: 502 Bad Gateway"
        assert result.documents_queued == 0
        instance = _instance(db_path, bot_instance)
        assert instance.last_scan_at == FROZEN_NOW
        assert instance.next_scan_at == FROZEN_NOW + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_empty_error_message_is_unknown(self, config, bot_instance):
        client = MagicMock()
        client.fetch_page = AsyncMock(side_effect=RuntimeError())
        with patch("papermind.scanner._create_client", return_value=client):
            result = await scan_instance(config, bot_instance)
        assert result.error == "Unknown error"

    @pytest.mark.asyncio
    async def test_failure_mid_batch_rolls_back(self, config, bot_instance, make_remote_doc, db_path):
        docs = [make_remote_doc(1), make_remote_doc(2)]
        real_create = db.create_queue_entry
        calls = []

        def flaky_create(conn, **kwargs):
            calls.append(kwargs["remote_document_id"])
            if len(calls) == 2:
                raise RuntimeError("disk full")
            return real_create(conn, **kwargs)

        with patch("papermind.scanner._create_client", return_value=_client_with_pages(docs)), \
                patch("papermind.scanner.db.create_queue_entry", side_effect=flaky_create):
            result = await scan_instance(config, bot_instance)

        assert result.error == "disk full"
        with db.get_db(db_path) as conn:
            assert db.get_queued_remote_ids(conn, bot_instance) == set()
            assert db.get_document_by_remote_id(conn, bot_instance, 1) is None

    @pytest.mark.asyncio
    async def test_invalid_cron_raises(self, config, make_bot, make_instance):
        instance_id = make_instance(default_ai_bot_id=make_bot(), scan_cron_expression="bad")
        with patch("papermind.scanner._create_client", return_value=_client_with_pages([])):
            with pytest.raises(ScheduleConfigError):
                await scan_instance(config, instance_id)


class TestScanDueInstances:
    @pytest.mark.asyncio
    async def test_scans_only_due(self, config, make_bot, make_instance, db_path):
        bot_id = make_bot()
        never = make_instance(name="never", default_ai_bot_id=bot_id)
        overdue = make_instance(name="overdue", default_ai_bot_id=bot_id)
        later = make_instance(name="later", default_ai_bot_id=bot_id)
        make_instance(name="disabled", default_ai_bot_id=bot_id, auto_process_enabled=False)
        with db.get_db(db_path) as conn:
            db.update_instance_scan_times(conn, overdue, FROZEN_NOW, FROZEN_NOW - timedelta(minutes=5))
            db.update_instance_scan_times(conn, later, FROZEN_NOW, FROZEN_NOW + timedelta(minutes=5))

        with patch("papermind.scanner._create_client", side_effect=lambda *a: _client_with_pages([])):
            results = await scan_due_instances(config)

        assert [r.instance_id for r in results] == [never, overdue]
        assert all(r.error is None for r in results)
