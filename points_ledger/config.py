import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Union

from .sql_storage import SqlStorage
from .storage import InMemoryStorage


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    storage: str = field(default_factory=lambda: os.getenv("LEDGER_STORAGE", "memory").lower())
    database_url: Optional[str] = field(default_factory=lambda: os.getenv("LEDGER_DATABASE_URL"))
    lock_timeout: float = field(default_factory=lambda: float(os.getenv("LEDGER_LOCK_TIMEOUT", "5")))
    seed_demo_data: bool = field(default_factory=lambda: _env_bool("LEDGER_SEED_DEMO_DATA", True))
    log_level: str = field(default_factory=lambda: os.getenv("LEDGER_LOG_LEVEL", "INFO").upper())


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_storage(settings: Settings) -> Union[InMemoryStorage, SqlStorage]:
    if settings.storage == "memory":
        return InMemoryStorage(lock_timeout=settings.lock_timeout, seed=settings.seed_demo_data)
    if settings.storage == "sql":
        if not settings.database_url:
            raise ValueError("LEDGER_DATABASE_URL must be set when LEDGER_STORAGE=sql")
        return SqlStorage.from_url(settings.database_url, pool_timeout=settings.lock_timeout)
    raise ValueError(f"Unknown LEDGER_STORAGE backend: {settings.storage!r}")
