from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cinehub.errors import CdnError
from cinehub.integrations.origin import OriginImageSource
from cinehub.jobs.models import CacheKey, CacheRecord, ImageKind, JobStatus, MediaType
from cinehub.jobs.queue import CacheQueue
from cinehub.jobs.repository import CacheRecordRepository
from cinehub.jobs.service import ImageCacheService, ImageRequest

POSTER_URL = "https://image.tmdb.org/t/p/w500/abc.jpg"
FIGHT_CLUB = CacheKey(MediaType.MOVIE, 550, ImageKind.POSTER)


class IdleProcessor:
    async def run(self, job, reporter):  # pragma: no cover - queue is never started here
        raise AssertionError("queue should not run jobs in these tests")


class FakeCdn:
    def __init__(self, *, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.deleted: list[str] = []

    async def upload(self, file, options):  # pragma: no cover - not used by the service
        raise AssertionError("service never uploads directly")

    async def delete(self, public_id: str) -> bool:
        if public_id in self.failing:
            raise CdnError(f"Cloudinary destroy failed: {public_id}")
        self.deleted.append(public_id)
        return True


def make_record(source_url: str = POSTER_URL, *, age: timedelta = timedelta(minutes=5)) -> CacheRecord:
    return CacheRecord(
        source_url=source_url,
        delivery_url="https://res.cloudinary.com/demo/cinehub/posters/abc_jpg.jpg",
        public_id="cinehub/posters/abc_jpg",
        cached_at=datetime.now(timezone.utc) - age,
    )


@pytest.fixture
def repository() -> CacheRecordRepository:
    repo = CacheRecordRepository("sqlite:///:memory:")
    yield repo
    repo.close()


@pytest.fixture
def queue() -> CacheQueue:
    return CacheQueue(processor=IdleProcessor())


@pytest.fixture
def cdn() -> FakeCdn:
    return FakeCdn()


@pytest.fixture
def service(queue, repository, cdn) -> ImageCacheService:
    return ImageCacheService(
        queue=queue,
        repository=repository,
        origin=OriginImageSource(client=httpx.AsyncClient()),
        cdn=cdn,
        record_max_age=3600,
    )


@pytest.mark.asyncio
async def test_cached_record_is_served(service, repository, queue) -> None:
    repository.put(FIGHT_CLUB, make_record())

    resolution = await service.resolve_image("movie", 550, "poster", "/abc.jpg")

    assert resolution.cached is True
    assert resolution.url == "https://res.cloudinary.com/demo/cinehub/posters/abc_jpg.jpg"
    assert resolution.job_id is None
    assert queue.get_queue_stats().total == 0


@pytest.mark.asyncio
async def test_miss_schedules_mirror_and_serves_origin(service, queue) -> None:
    resolution = await service.resolve_image(MediaType.MOVIE, 550, ImageKind.POSTER, "/abc.jpg")

    assert resolution.cached is False
    assert resolution.url == POSTER_URL
    job = queue.get_status(resolution.job_id)
    assert job.status is JobStatus.QUEUED
    assert job.source_url == POSTER_URL

    again = await service.resolve_image("movie", 550, "poster", "/abc.jpg")
    assert again.job_id == resolution.job_id


@pytest.mark.asyncio
async def test_stale_or_changed_record_is_refreshed(service, repository, queue) -> None:
    repository.put(FIGHT_CLUB, make_record(age=timedelta(hours=3)))
    stale = await service.resolve_image("movie", 550, "poster", "/abc.jpg")
    assert stale.cached is False and stale.job_id is not None

    tv_key = CacheKey(MediaType.TV, 1399, ImageKind.POSTER)
    repository.put(tv_key, make_record("https://image.tmdb.org/t/p/w500/old.jpg"))
    changed = await service.resolve_image("tv", 1399, "poster", "/new.jpg")
    assert changed.cached is False
    assert changed.url == "https://image.tmdb.org/t/p/w500/new.jpg"
    assert queue.get_queue_stats().queued == 2


@pytest.mark.asyncio
async def test_unusable_path_resolves_to_nothing(service, queue) -> None:
    assert await service.resolve_image("movie", 550, "poster", None) is None
    assert await service.resolve_image("movie", 550, "poster", "abc.jpg") is None
    assert queue.get_queue_stats().total == 0


@pytest.mark.asyncio
async def test_full_queue_still_serves_origin(repository, cdn) -> None:
    queue = CacheQueue(processor=IdleProcessor(), max_queued=1)
    service = ImageCacheService(
        queue=queue, repository=repository, origin=OriginImageSource(client=httpx.AsyncClient()), cdn=cdn
    )
    await service.resolve_image("movie", 1, "poster", "/one.jpg")

    resolution = await service.resolve_image("movie", 2, "poster", "/two.jpg")

    assert resolution.url == "https://image.tmdb.org/t/p/w500/two.jpg"
    assert resolution.job_id is None


@pytest.mark.asyncio
async def test_resolve_many_keys_results_by_media(service, repository) -> None:
    repository.put(FIGHT_CLUB, make_record())
    requests = [ImageRequest(MediaType.MOVIE, 550, ImageKind.POSTER, "/abc.jpg")]
    requests += [ImageRequest(MediaType.MOVIE, media_id, ImageKind.BACKDROP, f"/{media_id}.jpg") for media_id in range(7)]
    requests.append(ImageRequest(MediaType.PERSON, 287, ImageKind.PROFILE, None))

    results = await service.resolve_many(requests)

    assert len(results) == 9
    assert results["movie:550:poster"].cached is True
    assert results["movie:3:backdrop"].url == "https://image.tmdb.org/t/p/w1280/3.jpg"
    assert results["person:287:profile"] is None


def test_is_stale(service) -> None:
    now = datetime(2024, 5, 1, 12, tzinfo=timezone.utc)

    assert service.is_stale(make_record(), now=datetime.now(timezone.utc)) is False
    old = CacheRecord(source_url=POSTER_URL, delivery_url="d", public_id="p", cached_at=now - timedelta(hours=2))
    assert service.is_stale(old, now=now) is True
    naive = CacheRecord(source_url=POSTER_URL, delivery_url="d", public_id="p", cached_at=datetime(2024, 5, 1, 11, 30))
    assert service.is_stale(naive, now=now) is False


@pytest.mark.asyncio
async def test_purge_removes_cdn_assets_and_records(repository) -> None:
    cdn = FakeCdn(failing={"cinehub/backdrops/keep_jpg"})
    service = ImageCacheService(
        queue=CacheQueue(processor=IdleProcessor()),
        repository=repository,
        origin=OriginImageSource(client=httpx.AsyncClient()),
        cdn=cdn,
    )
    backdrop = CacheKey(MediaType.MOVIE, 550, ImageKind.BACKDROP)
    fresh = CacheKey(MediaType.TV, 1399, ImageKind.POSTER)
    repository.put(FIGHT_CLUB, make_record(age=timedelta(days=10)))
    repository.put(
        backdrop,
        CacheRecord(
            source_url="https://o/keep.jpg",
            delivery_url="https://res.cloudinary.com/demo/keep.jpg",
            public_id="cinehub/backdrops/keep_jpg",
            cached_at=datetime.now(timezone.utc) - timedelta(days=10),
        ),
    )
    repository.put(fresh, make_record(age=timedelta(minutes=1)))

    purged = await service.purge_images(older_than=timedelta(days=7))

    assert purged == 1
    assert cdn.deleted == ["cinehub/posters/abc_jpg"]
    assert repository.get(FIGHT_CLUB) is None
    assert repository.get(backdrop) is not None
    assert repository.get(fresh) is not None
