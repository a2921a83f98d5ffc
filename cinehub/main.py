from __future__ import annotations

import logging
from typing import Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cinehub.api.cache import router as cache_router
from cinehub.broadcast.hub import CacheStatusBroadcaster
from cinehub.integrations.cloudinary import CloudinaryHost
from cinehub.integrations.origin import OriginImageSource
from cinehub.jobs.events import EventBus
from cinehub.jobs.queue import CacheQueue, JobProcessor
from cinehub.jobs.repository import CacheRecordRepository
from cinehub.jobs.service import ImageCacheService
from cinehub.processors import ImageMirrorProcessor
from cinehub.settings import AppSettings, ensure_env_loaded, get_settings

logger = logging.getLogger(__name__)

ensure_env_loaded()


def create_app(
    *,
    settings: AppSettings | None = None,
    processor: JobProcessor | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    repository = CacheRecordRepository(settings.image_cache_db_url)
    origin = OriginImageSource(
        base_url=settings.tmdb_image_base_url,
        timeout=settings.http_timeout_sec,
        max_bytes=settings.max_image_bytes,
    )
    cdn = CloudinaryHost(
        cloud_name=settings.cloudinary_cloud_name,
        api_key=settings.cloudinary_api_key,
        api_secret=settings.cloudinary_api_secret,
        timeout=settings.http_timeout_sec,
    )
    events = EventBus()
    queue = CacheQueue(
        processor=processor
        or ImageMirrorProcessor(
            origin=origin,
            cdn=cdn,
            repository=repository,
            folder_prefix=settings.cdn_folder_prefix,
        ),
        events=events,
        max_concurrency=settings.cache_max_concurrency,
        retry_limit=settings.cache_retry_limit,
        retry_base_delay=settings.cache_retry_base_delay_sec,
        job_timeout=settings.cache_job_timeout_sec,
        max_queued=settings.cache_max_queued,
        retention_seconds=settings.cache_retention_sec,
        max_retained=settings.cache_max_retained_jobs,
    )
    broadcaster = CacheStatusBroadcaster(
        events=events,
        stats_provider=queue.get_queue_stats,
        heartbeat_interval=settings.ws_heartbeat_sec,
        send_timeout=settings.ws_send_timeout_sec,
    )
    service = ImageCacheService(
        queue=queue,
        repository=repository,
        origin=origin,
        cdn=cdn,
        record_max_age=settings.cache_record_max_age_sec,
    )

    app = FastAPI()
    app.state.settings = settings
    app.state.record_repository = repository
    app.state.cache_queue = queue
    app.state.broadcaster = broadcaster
    app.state.image_service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(cache_router, prefix="/api", tags=["cache"])

    @app.on_event("startup")
    async def _startup() -> None:
        broadcaster.start(app, path=settings.ws_path)
        if settings.cache_start_workers:
            queue.start()
            logger.info("Cache queue started with %s worker slot(s)", settings.cache_max_concurrency)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await broadcaster.shutdown()
        await queue.shutdown(timeout=settings.cache_job_timeout_sec)
        await origin.aclose()
        repository.close()
        logger.info("Cache queue stopped and record store closed.")

    @app.get("/")
    def read_root() -> Dict[str, str]:
        return {"message": "CineHub image cache service"}

    return app


app = create_app()


__all__ = ["app", "create_app"]
