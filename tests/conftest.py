"""Shared test fixtures for papermind tests."""

import pytest

from papermind import db
from papermind.config import Config


@pytest.fixture
def db_path(tmp_path):
    """Initialize a real SQLite database using schema.sql and return its path."""
    path = tmp_path / "test.db"
    db.init_db(path)
    return path


@pytest.fixture
def db_conn(db_path):
    """Yield a database connection with row factory set."""
    with db.get_db(db_path) as conn:
        yield conn


@pytest.fixture
def make_config(db_path):
    """Factory fixture that creates Config instances pointing at the test database."""
    def _make_config(**overrides):
        defaults = {"db_path": db_path}
        defaults.update(overrides)
        return Config(**defaults)
    return _make_config


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def make_bot(db_path):
    """Factory fixture that inserts an AI bot and returns its ID."""
    def _make_bot(**overrides):
        defaults = {
            "name": "Default bot",
            "model": "gpt-test",
            "api_url": "https://ai.test/v1",
            "api_key": "sk-test",
            "system_prompt": "You file documents.",
        }
        defaults.update(overrides)
        with db.get_db(db_path) as conn:
            return db.create_ai_bot(conn, **defaults)
    return _make_bot


@pytest.fixture
def make_instance(db_path):
    """Factory fixture that inserts a Paperless instance and returns its ID."""
    def _make_instance(**overrides):
        defaults = {
            "name": "Home",
            "api_url": "https://paperless.test",
            "api_token": "tok",
            "owner_id": "alice",
            "scan_cron_expression": "*/30 * * * *",
            "auto_process_enabled": True,
        }
        defaults.update(overrides)
        with db.get_db(db_path) as conn:
            return db.create_instance(conn, **defaults)
    return _make_instance


@pytest.fixture
def make_remote_doc():
    """Factory fixture for documents as returned by the Paperless API."""
    def _make_remote_doc(doc_id, **overrides):
        doc = {
            "id": doc_id,
            "title": f"Document {doc_id}",
            "content": f"Content of document {doc_id}",
            "tags": [],
            "correspondent": None,
            "created": "2025-12-01T00:00:00Z",
            "modified": "2025-12-02T08:30:00Z",
        }
        doc.update(overrides)
        return doc
    return _make_remote_doc
