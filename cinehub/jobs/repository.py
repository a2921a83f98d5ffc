from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .models import CacheKey, CacheRecord, ImageKind, MediaType

SQLITE_PREFIX = "sqlite:///"


def _sqlite_path(url: str) -> Path:
    if url == "sqlite:///:memory:":
        return Path(":memory:")
    if not url.startswith(SQLITE_PREFIX):
        raise ValueError(f"Unsupported URL for CacheRecordRepository: {url}")
    path = url[len(SQLITE_PREFIX) :]
    if path.startswith("/"):
        return Path(path)
    return Path(path).expanduser()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class CacheRecordRepository:
    """Key-value store mapping a media image to its mirrored CDN asset, built on SQLite."""

    def __init__(self, url: str, *, pragmas: Optional[dict[str, Any]] = None) -> None:
        self._path = _sqlite_path(url)
        in_memory = str(self._path) == ":memory:"
        if not in_memory:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            ":memory:" if in_memory else str(self._path),
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        if not in_memory:
            self._conn.execute("PRAGMA journal_mode = WAL")
        if pragmas:
            for key, value in pragmas.items():
                self._conn.execute(f"PRAGMA {key} = {value}")
        self._migrate()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Any:
        with self._lock:
            cursor = self._conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                yield cursor
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            finally:
                cursor.close()

    def _migrate(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS image_cache (
                    cache_key TEXT PRIMARY KEY,
                    media_type TEXT NOT NULL,
                    media_id INTEGER NOT NULL,
                    image_kind TEXT NOT NULL,
                    source_url TEXT NOT NULL,
                    delivery_url TEXT NOT NULL,
                    public_id TEXT NOT NULL,
                    width INTEGER,
                    height INTEGER,
                    bytes INTEGER,
                    format TEXT,
                    cached_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_image_cache_kind
                    ON image_cache (image_kind);

                CREATE INDEX IF NOT EXISTS idx_image_cache_cached_at
                    ON image_cache (cached_at);
                """
            )

    def get(self, key: CacheKey) -> Optional[CacheRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM image_cache WHERE cache_key = ?", (key.as_string(),)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def put(self, key: CacheKey, record: CacheRecord) -> CacheRecord:
        params = {
            "cache_key": key.as_string(),
            "media_type": key.media_type.value,
            "media_id": key.media_id,
            "image_kind": key.image_kind.value,
            "source_url": record.source_url,
            "delivery_url": record.delivery_url,
            "public_id": record.public_id,
            "width": record.width,
            "height": record.height,
            "bytes": record.bytes,
            "format": record.format,
            "cached_at": (record.cached_at or _utcnow()).isoformat(),
        }
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO image_cache (
                    cache_key, media_type, media_id, image_kind,
                    source_url, delivery_url, public_id,
                    width, height, bytes, format, cached_at
                )
                VALUES (
                    :cache_key, :media_type, :media_id, :image_kind,
                    :source_url, :delivery_url, :public_id,
                    :width, :height, :bytes, :format, :cached_at
                )
                ON CONFLICT (cache_key) DO UPDATE SET
                    source_url = excluded.source_url,
                    delivery_url = excluded.delivery_url,
                    public_id = excluded.public_id,
                    width = excluded.width,
                    height = excluded.height,
                    bytes = excluded.bytes,
                    format = excluded.format,
                    cached_at = excluded.cached_at
                """,
                params,
            )
        return record

    def delete(self, key: CacheKey) -> bool:
        with self._transaction() as cursor:
            deleted = cursor.execute(
                "DELETE FROM image_cache WHERE cache_key = ?", (key.as_string(),)
            )
            return deleted.rowcount > 0

    def list_records(
        self,
        *,
        image_kind: Optional[ImageKind] = None,
        cached_before: Optional[datetime] = None,
        limit: int = 500,
    ) -> list[tuple[CacheKey, CacheRecord]]:
        clauses: list[str] = []
        params: list[Any] = []
        if image_kind is not None:
            clauses.append("image_kind = ?")
            params.append(image_kind.value)
        if cached_before is not None:
            clauses.append("cached_at < ?")
            params.append(cached_before.isoformat())

        where_clause = ""
        if clauses:
            where_clause = "WHERE " + " AND ".join(clauses)

        query = f"""
            SELECT * FROM image_cache
             {where_clause}
             ORDER BY cached_at
             LIMIT ?
        """
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [(self._row_to_key(row), self._row_to_record(row)) for row in rows]

    def _row_to_key(self, row: sqlite3.Row) -> CacheKey:
        return CacheKey(MediaType(row["media_type"]), row["media_id"], ImageKind(row["image_kind"]))

    def _row_to_record(self, row: sqlite3.Row) -> CacheRecord:
        return CacheRecord(
            source_url=row["source_url"],
            delivery_url=row["delivery_url"],
            public_id=row["public_id"],
            cached_at=_parse_dt(row["cached_at"]),
            width=row["width"],
            height=row["height"],
            bytes=row["bytes"],
            format=row["format"],
        )
