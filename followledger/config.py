"""Configuration helpers for the follow ledger."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_PATH = PROJECT_ROOT / ".env"

# Load environment variables early so downstream modules can rely on them.
load_dotenv(ENV_PATH, override=False)

DB_URL_ENV = "FOLLOWLEDGER_DB_URL"
FETCH_TIMEOUT_ENV = "FOLLOWLEDGER_FETCH_TIMEOUT"
STORAGE_MAX_ATTEMPTS_ENV = "FOLLOWLEDGER_STORAGE_MAX_ATTEMPTS"
STORAGE_RETRY_DELAY_ENV = "FOLLOWLEDGER_STORAGE_RETRY_DELAY"
INDEX_PAGE_SIZE_ENV = "FOLLOWLEDGER_INDEX_PAGE_SIZE"

DEFAULT_DB_PATH = PROJECT_ROOT / "data" / "followledger.db"
DEFAULT_FETCH_TIMEOUT_SECONDS = 600.0
DEFAULT_STORAGE_MAX_ATTEMPTS = 3
DEFAULT_STORAGE_RETRY_DELAY_SECONDS = 1.0
DEFAULT_INDEX_PAGE_SIZE = 1000

SQLITE_BUSY_TIMEOUT_MS = 30_000


@dataclass(frozen=True)
class LedgerSettings:
    """Runtime configuration for storage, fetching and index paging."""

    database_url: str
    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    storage_max_attempts: int = DEFAULT_STORAGE_MAX_ATTEMPTS
    storage_retry_delay_seconds: float = DEFAULT_STORAGE_RETRY_DELAY_SECONDS
    reverse_index_page_size: int = DEFAULT_INDEX_PAGE_SIZE

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _parse_number(name: str, raw: Optional[str], default, cast, minimum):
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError as exc:
        raise RuntimeError(
            f"{name} must be {'an integer' if cast is int else 'a number'}; received '{raw}'."
        ) from exc
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}; received '{raw}'.")
    return value


def get_ledger_settings() -> LedgerSettings:
    """Resolve ledger configuration from environment with sensible defaults."""

    database_url = _get_env(DB_URL_ENV, f"sqlite:///{DEFAULT_DB_PATH}")
    return LedgerSettings(
        database_url=database_url,
        fetch_timeout_seconds=_parse_number(
            FETCH_TIMEOUT_ENV,
            _get_env(FETCH_TIMEOUT_ENV),
            DEFAULT_FETCH_TIMEOUT_SECONDS,
            float,
            0.0,
        ),
        storage_max_attempts=_parse_number(
            STORAGE_MAX_ATTEMPTS_ENV,
            _get_env(STORAGE_MAX_ATTEMPTS_ENV),
            DEFAULT_STORAGE_MAX_ATTEMPTS,
            int,
            1,
        ),
        storage_retry_delay_seconds=_parse_number(
            STORAGE_RETRY_DELAY_ENV,
            _get_env(STORAGE_RETRY_DELAY_ENV),
            DEFAULT_STORAGE_RETRY_DELAY_SECONDS,
            float,
            0.0,
        ),
        reverse_index_page_size=_parse_number(
            INDEX_PAGE_SIZE_ENV,
            _get_env(INDEX_PAGE_SIZE_ENV),
            DEFAULT_INDEX_PAGE_SIZE,
            int,
            1,
        ),
    )


def create_ledger_engine(settings: Optional[LedgerSettings] = None) -> Engine:
    """Build the SQLAlchemy engine for the configured database.

    SQLite files get WAL journaling and a busy timeout so capture cycles for
    different accounts can run from separate threads.
    """

    settings = settings or get_ledger_settings()
    if settings.is_sqlite and ":memory:" not in settings.database_url:
        db_path = settings.database_url.split("///", 1)[-1]
        if db_path:
            Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(settings.database_url, future=True)

    if settings.is_sqlite:

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, _record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine
