from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

try:
    from dotenv import load_dotenv

    load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")
except Exception:
    pass


BASE_DIR = Path(__file__).resolve().parents[1]


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    return float(raw)


@dataclass(frozen=True)
class AppConfig:
    database_url: str = ""
    sqlite_path: str = str(BASE_DIR / "clinic_queue.sqlite3")
    clinic_timezone: str = "Asia/Makassar"
    lock_timeout_seconds: float = 5.0
    allocation_retries: int = 3
    broadcast_url: str = ""
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    notification_ttl_days: int = 7

    @classmethod
    def from_env(cls) -> AppConfig:
        origins = [o.strip() for o in (os.getenv("CORS_ORIGINS") or "*").split(",") if o.strip()]
        return cls(
            database_url=(os.getenv("DATABASE_URL") or "").strip(),
            sqlite_path=(os.getenv("SQLITE_PATH") or "").strip() or str(BASE_DIR / "clinic_queue.sqlite3"),
            clinic_timezone=(os.getenv("CLINIC_TIMEZONE") or "Asia/Makassar").strip(),
            lock_timeout_seconds=_env_float("LOCK_TIMEOUT_SECONDS", 5.0),
            allocation_retries=_env_int("ALLOCATION_RETRIES", 3),
            broadcast_url=(os.getenv("BROADCAST_URL") or "").strip(),
            cors_origins=origins or ["*"],
            log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
            notification_ttl_days=_env_int("NOTIFICATION_TTL_DAYS", 7),
        )


@lru_cache
def get_config() -> AppConfig:
    return AppConfig.from_env()
