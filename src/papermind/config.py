"""Configuration loading for papermind."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import tomli

logger = logging.getLogger("papermind.config")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"           # INFO or DEBUG
    output: str = "console"       # console, file, or both
    file: str = ""                # log file path
    rotate: bool = True           # enable rotation
    max_size_mb: int = 10         # max file size before rotation
    backup_count: int = 5         # rotated files to keep
    levels: dict[str, str] = field(default_factory=dict)  # per-component overrides, e.g. scanner = "DEBUG"


@dataclass
class SchedulerConfig:
    retry_delay_minutes: int = 5  # linear backoff unit: delay = unit * attempts
    stuck_item_minutes: int = 10  # processing entries older than this are reset on start
    page_size: int = 100  # documents per page when fetching from Paperless
    default_max_attempts: int = 3
    default_priority: int = 0
    default_scan_cron: str = "*/30 * * * *"


@dataclass
class AnalysisConfig:
    """AI provider call settings."""
    request_timeout: float = 300.0
    max_content_chars: int = 20000  # document text truncated to this before sending


@dataclass
class PaperlessConfig:
    request_timeout: float = 30.0


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path("data/papermind.db"))
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    paperless: PaperlessConfig = field(default_factory=PaperlessConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file."""
    if config_path is None:
        candidates = [
            Path("config/config.toml"),
            Path.home() / ".config/papermind/config.toml",
            Path("/etc/papermind/config.toml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None or not config_path.exists():
        config = Config()
        _apply_env_overrides(config)
        return config

    with open(config_path, "rb") as f:
        data = tomli.load(f)

    config = Config()

    if "db_path" in data:
        config.db_path = Path(data["db_path"])

    if "scheduler" in data:
        sched = data["scheduler"]
        config.scheduler = SchedulerConfig(
            retry_delay_minutes=sched.get("retry_delay_minutes", 5),
            stuck_item_minutes=sched.get("stuck_item_minutes", 10),
            page_size=sched.get("page_size", 100),
            default_max_attempts=sched.get("default_max_attempts", 3),
            default_priority=sched.get("default_priority", 0),
            default_scan_cron=sched.get("default_scan_cron", "*/30 * * * *"),
        )

    if "analysis" in data:
        an = data["analysis"]
        config.analysis = AnalysisConfig(
            request_timeout=an.get("request_timeout", 300.0),
            max_content_chars=an.get("max_content_chars", 20000),
        )

    if "paperless" in data:
        pl = data["paperless"]
        config.paperless = PaperlessConfig(
            request_timeout=pl.get("request_timeout", 30.0),
        )

    if "logging" in data:
        log = data["logging"]
        config.logging = LoggingConfig(
            level=log.get("level", "INFO"),
            output=log.get("output", "console"),
            file=log.get("file", ""),
            rotate=log.get("rotate", True),
            max_size_mb=log.get("max_size_mb", 10),
            backup_count=log.get("backup_count", 5),
            levels=dict(log.get("levels", {})),
        )

    _apply_env_overrides(config)
    logger.debug("Loaded config from %s", config_path)
    return config


def _apply_env_overrides(config: Config) -> None:
    db_path = os.environ.get("PAPERMIND_DB_PATH")
    if db_path:
        config.db_path = Path(db_path)
