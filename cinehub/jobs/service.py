from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from ..errors import ImageCacheError, QueueFullError
from ..integrations.cloudinary import ImageHost
from ..integrations.origin import ImageSource
from .models import CacheKey, CacheRecord, ImageKind, MediaType
from .queue import CacheQueue
from .repository import CacheRecordRepository

logger = logging.getLogger(__name__)

BATCH_SIZE = 5


@dataclass(frozen=True, slots=True)
class ImageRequest:
    media_type: MediaType
    media_id: int
    image_kind: ImageKind
    path: Optional[str]

    @property
    def key(self) -> CacheKey:
        return CacheKey(MediaType(self.media_type), int(self.media_id), ImageKind(self.image_kind))


@dataclass(frozen=True, slots=True)
class ImageResolution:
    url: str
    cached: bool
    job_id: Optional[str] = None


class ImageCacheService:
    """Domain service resolving media artwork to CDN URLs and scheduling mirrors on a miss."""

    def __init__(
        self,
        *,
        queue: CacheQueue,
        repository: CacheRecordRepository,
        origin: ImageSource,
        cdn: ImageHost,
        record_max_age: float = 86400.0,
    ) -> None:
        self.queue = queue
        self.repository = repository
        self.origin = origin
        self.cdn = cdn
        self.record_max_age = timedelta(seconds=record_max_age)

    async def resolve_image(
        self,
        media_type: MediaType | str,
        media_id: int,
        image_kind: ImageKind | str,
        path: Optional[str],
    ) -> Optional[ImageResolution]:
        key = CacheKey(MediaType(media_type), int(media_id), ImageKind(image_kind))
        source_url = self.origin.build_url(path, key.image_kind)
        if source_url is None:
            return None

        record = await asyncio.to_thread(self.repository.get, key)
        if record is not None and record.source_url == source_url and not self.is_stale(record):
            return ImageResolution(url=record.delivery_url, cached=True)

        # Serve the origin URL until the mirror lands.
        try:
            job_id = self.queue.enqueue(key.media_type, key.media_id, key.image_kind, source_url)
        except QueueFullError as exc:
            logger.warning("Not caching %s: %s", key.as_string(), exc)
            job_id = None
        return ImageResolution(url=source_url, cached=False, job_id=job_id)

    async def resolve_many(
        self, requests: Iterable[ImageRequest]
    ) -> dict[str, Optional[ImageResolution]]:
        pending = list(requests)
        results: dict[str, Optional[ImageResolution]] = {}
        for start in range(0, len(pending), BATCH_SIZE):
            batch = pending[start : start + BATCH_SIZE]
            resolved = await asyncio.gather(
                *(
                    self.resolve_image(item.media_type, item.media_id, item.image_kind, item.path)
                    for item in batch
                )
            )
            for item, resolution in zip(batch, resolved):
                results[item.key.as_string()] = resolution
        return results

    def is_stale(self, record: CacheRecord, *, now: Optional[datetime] = None) -> bool:
        cached_at = record.cached_at
        if cached_at is None:
            return True
        if cached_at.tzinfo is None:
            cached_at = cached_at.replace(tzinfo=timezone.utc)
        return (now or datetime.now(timezone.utc)) - cached_at > self.record_max_age

    async def purge_images(
        self,
        *,
        older_than: Optional[timedelta] = None,
        image_kind: Optional[ImageKind] = None,
        limit: int = 500,
    ) -> int:
        """Delete mirrored assets from the CDN together with their records."""
        cutoff = datetime.now(timezone.utc) - older_than if older_than is not None else None
        records = await asyncio.to_thread(
            self.repository.list_records,
            image_kind=image_kind,
            cached_before=cutoff,
            limit=limit,
        )
        deleted = 0
        for key, record in records:
            try:
                await self.cdn.delete(record.public_id)
            except ImageCacheError as exc:
                logger.warning("Keeping %s, CDN delete failed: %s", key.as_string(), exc)
                continue
            await asyncio.to_thread(self.repository.delete, key)
            deleted += 1
        logger.info("Purged %s cached image(s)", deleted)
        return deleted
