from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import sys
import time
from typing import Optional

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cinehub.errors import CdnError, OriginFetchError
from cinehub.integrations.cloudinary import UploadOptions
from cinehub.integrations.origin import FetchedImage
from cinehub.jobs.models import CacheJob, CacheKey, CacheRecord, ImageKind, JobStatus, MediaType, UploadResult
from cinehub.jobs.queue import CacheQueue
from cinehub.jobs.repository import CacheRecordRepository
from cinehub.processors import ImageMirrorProcessor

SOURCE_URL = "https://image.tmdb.org/t/p/w1280/backdrop.jpg"


class FakeOrigin:
    def __init__(self, *, error: Optional[Exception] = None) -> None:
        self.error = error
        self.fetched: list[str] = []

    def build_url(self, path, image_kind):
        return path

    async def fetch(self, url: str) -> FetchedImage:
        self.fetched.append(url)
        if self.error is not None:
            raise self.error
        return FetchedImage(url=url, content=b"jpeg-bytes", content_type="image/jpeg")


class FakeCdn:
    def __init__(self, *, error: Optional[Exception] = None) -> None:
        self.error = error
        self.uploads: list[tuple[bytes | str, UploadOptions]] = []

    async def upload(self, file: bytes | str, options: UploadOptions) -> UploadResult:
        self.uploads.append((file, options))
        if self.error is not None:
            raise self.error
        return UploadResult(
            delivery_url=f"https://res.cloudinary.com/demo/{options.folder}/{options.public_id}.jpg",
            public_id=f"{options.folder}/{options.public_id}",
            width=1280,
            height=720,
            bytes=len(file),
            format="jpg",
        )

    async def delete(self, public_id: str) -> bool:
        return True


class StageRecorder:
    def __init__(self) -> None:
        self.stages: list[str] = []

    async def report(self, stage: str) -> None:
        self.stages.append(stage)


def make_job() -> CacheJob:
    return CacheJob(
        id="job-1",
        media_type=MediaType.MOVIE,
        media_id=603,
        image_kind=ImageKind.BACKDROP,
        source_url=SOURCE_URL,
        status=JobStatus.ACTIVE,
        enqueued_at=datetime.now(timezone.utc),
        attempts=1,
    )


@pytest.fixture
def repository() -> CacheRecordRepository:
    repo = CacheRecordRepository("sqlite:///:memory:")
    yield repo
    repo.close()


@pytest.mark.asyncio
async def test_mirror_uploads_and_persists_record(repository) -> None:
    origin = FakeOrigin()
    cdn = FakeCdn()
    processor = ImageMirrorProcessor(origin=origin, cdn=cdn, repository=repository, folder_prefix="cinehub")
    reporter = StageRecorder()
    job = make_job()

    record = await processor.run(job, reporter)
    assert repository.get(job.key) is None
    await processor.commit(job, record, reporter)

    assert origin.fetched == [SOURCE_URL]
    file, options = cdn.uploads[0]
    assert file == b"jpeg-bytes"
    assert options.folder == "cinehub/backdrops"
    assert options.public_id == "backdrop_jpg"
    assert reporter.stages == ["fetching", "uploading", "persisting"]

    assert record.delivery_url == "https://res.cloudinary.com/demo/cinehub/backdrops/backdrop_jpg.jpg"
    assert record.source_url == SOURCE_URL
    stored = repository.get(job.key)
    assert stored is not None
    assert stored.public_id == "cinehub/backdrops/backdrop_jpg"
    assert stored.width == 1280


@pytest.mark.asyncio
async def test_origin_failure_skips_upload(repository) -> None:
    cdn = FakeCdn()
    processor = ImageMirrorProcessor(
        origin=FakeOrigin(error=OriginFetchError(SOURCE_URL, "unexpected status 404", status_code=404)),
        cdn=cdn,
        repository=repository,
    )

    with pytest.raises(OriginFetchError):
        await processor.run(make_job(), StageRecorder())

    assert cdn.uploads == []


@pytest.mark.asyncio
async def test_upload_failure_leaves_no_record(repository) -> None:
    processor = ImageMirrorProcessor(
        origin=FakeOrigin(),
        cdn=FakeCdn(error=CdnError("Cloudinary upload failed (500): boom", status_code=500)),
        repository=repository,
    )
    job = make_job()

    with pytest.raises(CdnError):
        await processor.run(job, StageRecorder())

    assert repository.get(job.key) is None


class SlowRepository(CacheRecordRepository):
    def __init__(self, url: str, *, delay: float) -> None:
        super().__init__(url)
        self.delay = delay
        self.writes = 0

    def put(self, key: CacheKey, record: CacheRecord) -> CacheRecord:
        time.sleep(self.delay)
        self.writes += 1
        return super().put(key, record)


@pytest.mark.asyncio
async def test_slow_store_write_outliving_job_timeout_completes_once() -> None:
    repository = SlowRepository("sqlite:///:memory:", delay=0.3)
    queue = CacheQueue(
        processor=ImageMirrorProcessor(origin=FakeOrigin(), cdn=FakeCdn(), repository=repository),
        job_timeout=0.1,
        retry_limit=1,
    )
    queue.start()
    try:
        job_id = queue.enqueue("movie", 603, "backdrop", SOURCE_URL)
        job = await queue.wait_for(job_id, timeout=3.0)
    finally:
        await queue.shutdown(timeout=1.0)
        repository.close()

    assert job.status is JobStatus.COMPLETED
    assert job.error is None
    assert repository.writes == 1
