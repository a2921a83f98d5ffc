from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from cinehub.integrations.cloudinary import ImageHost, upload_options_for
from cinehub.integrations.origin import ImageSource
from cinehub.jobs.models import CacheJob, CacheRecord
from cinehub.jobs.queue import JobProcessor, ProgressReporter
from cinehub.jobs.repository import CacheRecordRepository

logger = logging.getLogger(__name__)


class ImageMirrorProcessor(JobProcessor):
    """Fetches the origin image, uploads it to the CDN and records the delivery URL."""

    def __init__(
        self,
        *,
        origin: ImageSource,
        cdn: ImageHost,
        repository: CacheRecordRepository,
        folder_prefix: str = "cinehub",
    ) -> None:
        self._origin = origin
        self._cdn = cdn
        self._repository = repository
        self._folder_prefix = folder_prefix

    async def run(self, job: CacheJob, reporter: ProgressReporter) -> CacheRecord:
        await reporter.report("fetching")
        image = await self._origin.fetch(job.source_url)

        await reporter.report("uploading")
        options = upload_options_for(job.image_kind, job.source_url, folder_prefix=self._folder_prefix)
        uploaded = await self._cdn.upload(image.content, options)

        return CacheRecord(
            source_url=job.source_url,
            delivery_url=uploaded.delivery_url,
            public_id=uploaded.public_id,
            cached_at=datetime.now(timezone.utc),
            width=uploaded.width,
            height=uploaded.height,
            bytes=uploaded.bytes,
            format=uploaded.format,
        )

    async def commit(self, job: CacheJob, record: CacheRecord, reporter: ProgressReporter) -> None:
        await reporter.report("persisting")
        await asyncio.to_thread(self._repository.put, job.key, record)
        logger.debug("Stored cache record for %s", job.key.as_string())
