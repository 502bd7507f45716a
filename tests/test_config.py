"""Configuration loading for papermind.config module."""

from pathlib import Path

import pytest

from papermind.config import (
    AnalysisConfig,
    Config,
    LoggingConfig,
    PaperlessConfig,
    SchedulerConfig,
    load_config,
)


@pytest.fixture(autouse=True)
def no_env_db_path(monkeypatch):
    monkeypatch.delenv("PAPERMIND_DB_PATH", raising=False)


class TestConfigDefaults:
    def test_default_db_path(self):
        cfg = Config()
        assert cfg.db_path == Path("data/papermind.db")

    def test_default_scheduler_config(self):
        cfg = Config()
        assert cfg.scheduler.retry_delay_minutes == 5
        assert cfg.scheduler.stuck_item_minutes == 10
        assert cfg.scheduler.page_size == 100
        assert cfg.scheduler.default_max_attempts == 3
        assert cfg.scheduler.default_priority == 0
        assert cfg.scheduler.default_scan_cron == "*/30 * * * *"

    def test_default_analysis_config(self):
        cfg = Config()
        assert cfg.analysis.request_timeout == 300.0
        assert cfg.analysis.max_content_chars == 20000

    def test_default_paperless_config(self):
        assert Config().paperless.request_timeout == 30.0

    def test_default_logging_config(self):
        cfg = Config()
        assert cfg.logging.level == "INFO"
        assert cfg.logging.output == "console"
        assert cfg.logging.file == ""
        assert cfg.logging.rotate is True
        assert cfg.logging.max_size_mb == 10
        assert cfg.logging.backup_count == 5
        assert cfg.logging.levels == {}

    def test_sections_not_shared_between_instances(self):
        a = Config()
        b = Config()
        a.scheduler.retry_delay_minutes = 99
        assert b.scheduler.retry_delay_minutes == 5


class TestLoadConfig:
    def test_missing_file_returns_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "nope.toml")
        assert cfg == Config()

    def test_no_candidates_returns_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        cfg = load_config()
        assert cfg.db_path == Path("data/papermind.db")

    def test_finds_local_candidate(self, tmp_path, monkeypatch):
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "config.toml").write_text('db_path = "/srv/pm.db"\n')
        monkeypatch.chdir(tmp_path)
        cfg = load_config()
        assert cfg.db_path == Path("/srv/pm.db")

    def test_load_db_path(self, tmp_path):
        p = tmp_path / "config.toml"
        p.write_text('db_path = "/var/lib/papermind/pm.db"\n')
        cfg = load_config(p)
        assert cfg.db_path == Path("/var/lib/papermind/pm.db")

    def test_load_scheduler_section(self, tmp_path):
        p = tmp_path / "config.toml"
        p.write_text(
            '[scheduler]\n'
            'retry_delay_minutes = 2\n'
            'stuck_item_minutes = 30\n'
            'page_size = 25\n'
            'default_max_attempts = 5\n'
            'default_priority = 1\n'
            'default_scan_cron = "0 * * * *"\n'
        )
        cfg = load_config(p)
        assert cfg.scheduler == SchedulerConfig(
            retry_delay_minutes=2,
            stuck_item_minutes=30,
            page_size=25,
            default_max_attempts=5,
            default_priority=1,
            default_scan_cron="0 * * * *",
        )

    def test_partial_section_keeps_defaults(self, tmp_path):
        p = tmp_path / "config.toml"
        p.write_text('[scheduler]\nretry_delay_minutes = 1\n')
        cfg = load_config(p)
        assert cfg.scheduler.retry_delay_minutes == 1
        assert cfg.scheduler.stuck_item_minutes == 10
        assert cfg.analysis == AnalysisConfig()

    def test_load_analysis_and_paperless(self, tmp_path):
        p = tmp_path / "config.toml"
        p.write_text(
            '[analysis]\n'
            'request_timeout = 60.0\n'
            'max_content_chars = 500\n'
            '[paperless]\n'
            'request_timeout = 5.0\n'
        )
        cfg = load_config(p)
        assert cfg.analysis == AnalysisConfig(request_timeout=60.0, max_content_chars=500)
        assert cfg.paperless == PaperlessConfig(request_timeout=5.0)

    def test_load_logging_section(self, tmp_path):
        p = tmp_path / "config.toml"
        p.write_text(
            '[logging]\n'
            'level = "DEBUG"\n'
            'output = "both"\n'
            'file = "/var/log/papermind.log"\n'
            'rotate = false\n'
            'max_size_mb = 50\n'
            'backup_count = 10\n'
            '[logging.levels]\n'
            'scanner = "DEBUG"\n'
        )
        cfg = load_config(p)
        assert cfg.logging == LoggingConfig(
            level="DEBUG",
            output="both",
            file="/var/log/papermind.log",
            rotate=False,
            max_size_mb=50,
            backup_count=10,
            levels={"scanner": "DEBUG"},
        )


class TestEnvOverrides:
    def test_env_overrides_file(self, tmp_path, monkeypatch):
        p = tmp_path / "config.toml"
        p.write_text('db_path = "/from/file.db"\n')
        monkeypatch.setenv("PAPERMIND_DB_PATH", "/from/env.db")
        assert load_config(p).db_path == Path("/from/env.db")

    def test_env_applies_without_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PAPERMIND_DB_PATH", "/from/env.db")
        assert load_config(tmp_path / "missing.toml").db_path == Path("/from/env.db")

    def test_empty_env_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PAPERMIND_DB_PATH", "")
        assert load_config(tmp_path / "missing.toml").db_path == Path("data/papermind.db")
