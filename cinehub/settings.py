from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from logging import handlers
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

_ENV_LOADED = False
_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def ensure_env_loaded(*, env_path: Optional[str | Path] = None, force: bool = False) -> None:
    global _ENV_LOADED
    if _ENV_LOADED and not force:
        return

    path = None
    if env_path is not None:
        path = Path(env_path)
    else:
        found = find_dotenv(usecwd=True)
        if found:
            path = Path(found)

    if path and path.exists():
        load_dotenv(dotenv_path=path, override=False)

    _ENV_LOADED = True

    configure_logging()


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if any(getattr(handler, "_cinehub", False) for handler in root_logger.handlers):
        return

    log_dir = Path(os.getenv("LOG_DIR", Path(__file__).resolve().parent / "log"))
    log_dir.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(_LOG_FORMAT)

    # Rotate at midnight, keep a week of files.
    file_handler = handlers.TimedRotatingFileHandler(
        log_dir / "cinehub.log", when="midnight", interval=1, backupCount=7, encoding="utf-8"
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(formatter)
    file_handler._cinehub = True  # type: ignore[attr-defined]

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(logging.INFO)
    stream_handler.setFormatter(formatter)
    stream_handler._cinehub = True  # type: ignore[attr-defined]

    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(stream_handler)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass(slots=True)
class AppSettings:
    image_cache_db_url: str = field(
        default_factory=lambda: os.getenv("IMAGE_CACHE_DB_URL", "sqlite:///cinehub/image_cache.db")
    )
    cache_max_concurrency: int = field(default_factory=lambda: int(os.getenv("CACHE_MAX_CONCURRENCY", "3")))
    cache_retry_limit: int = field(default_factory=lambda: int(os.getenv("CACHE_RETRY_LIMIT", "3")))
    cache_retry_base_delay_sec: float = field(
        default_factory=lambda: float(os.getenv("CACHE_RETRY_BASE_DELAY_SEC", "1.0"))
    )
    cache_job_timeout_sec: float = field(default_factory=lambda: float(os.getenv("CACHE_JOB_TIMEOUT_SEC", "60")))
    cache_max_queued: int = field(default_factory=lambda: int(os.getenv("CACHE_MAX_QUEUED", "10000")))
    cache_retention_sec: float = field(default_factory=lambda: float(os.getenv("CACHE_RETENTION_SEC", "3600")))
    cache_max_retained_jobs: int = field(
        default_factory=lambda: int(os.getenv("CACHE_MAX_RETAINED_JOBS", "1000"))
    )
    cache_record_max_age_sec: float = field(
        default_factory=lambda: float(os.getenv("CACHE_RECORD_MAX_AGE_SEC", "86400"))
    )
    cache_start_workers: bool = field(default_factory=lambda: _env_bool("CACHE_START_WORKERS", "true"))
    ws_path: str = field(default_factory=lambda: os.getenv("WS_PATH", "/ws/cache-status"))
    ws_heartbeat_sec: float = field(default_factory=lambda: float(os.getenv("WS_HEARTBEAT_SEC", "30")))
    ws_send_timeout_sec: float = field(default_factory=lambda: float(os.getenv("WS_SEND_TIMEOUT_SEC", "5")))
    tmdb_image_base_url: str = field(
        default_factory=lambda: os.getenv("TMDB_IMAGE_BASE_URL", "https://image.tmdb.org/t/p")
    )
    http_timeout_sec: float = field(default_factory=lambda: float(os.getenv("HTTP_TIMEOUT_SEC", "15")))
    max_image_bytes: int = field(default_factory=lambda: int(os.getenv("MAX_IMAGE_BYTES", str(10 * 1024 * 1024))))
    cloudinary_cloud_name: Optional[str] = field(default_factory=lambda: os.getenv("CLOUDINARY_CLOUD_NAME"))
    cloudinary_api_key: Optional[str] = field(default_factory=lambda: os.getenv("CLOUDINARY_API_KEY"))
    cloudinary_api_secret: Optional[str] = field(default_factory=lambda: os.getenv("CLOUDINARY_API_SECRET"))
    cdn_folder_prefix: str = field(default_factory=lambda: os.getenv("CDN_FOLDER_PREFIX", "cinehub"))
    cors_origins: list[str] = field(
        default_factory=lambda: _env_list(
            "CORS_ORIGINS",
            "http://localhost,http://localhost:3000,http://localhost:5000,http://localhost:5173",
        )
    )


_SETTINGS: Optional[AppSettings] = None


def get_settings() -> AppSettings:
    global _SETTINGS
    ensure_env_loaded()
    if _SETTINGS is None:
        _SETTINGS = AppSettings()
    return _SETTINGS
