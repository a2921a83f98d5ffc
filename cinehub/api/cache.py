from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from cinehub.broadcast.hub import CacheStatusBroadcaster
from cinehub.errors import QueueFullError
from cinehub.jobs.models import CacheJob, ImageKind, JobStatus, MediaType
from cinehub.jobs.queue import CacheQueue
from cinehub.jobs.service import ImageCacheService

router = APIRouter()


def get_queue(request: Request) -> CacheQueue:
    queue: CacheQueue = request.app.state.cache_queue
    return queue


def get_broadcaster(request: Request) -> CacheStatusBroadcaster:
    broadcaster: CacheStatusBroadcaster = request.app.state.broadcaster
    return broadcaster


def get_image_service(request: Request) -> ImageCacheService:
    service: ImageCacheService = request.app.state.image_service
    return service


class EnqueueJobRequest(BaseModel):
    media_type: MediaType
    media_id: int
    image_kind: ImageKind
    source_url: str


class CacheJobSummary(BaseModel):
    job_id: str
    status: JobStatus
    media_type: MediaType
    media_id: int
    image_kind: ImageKind
    source_url: str
    progress: Optional[str]
    error: Optional[str]
    attempts: int
    enqueued_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    @classmethod
    def from_domain(cls, job: CacheJob) -> "CacheJobSummary":
        return cls(
            job_id=job.id,
            status=job.status,
            media_type=job.media_type,
            media_id=job.media_id,
            image_kind=job.image_kind,
            source_url=job.source_url,
            progress=job.progress,
            error=job.error,
            attempts=job.attempts,
            enqueued_at=job.enqueued_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class ImageResolutionResponse(BaseModel):
    url: str
    cached: bool
    job_id: Optional[str]


@router.post(
    "/cache/jobs",
    response_model=CacheJobSummary,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_job(
    request: EnqueueJobRequest,
    queue: CacheQueue = Depends(get_queue),
) -> CacheJobSummary:
    try:
        job_id = queue.enqueue(request.media_type, request.media_id, request.image_kind, request.source_url)
    except QueueFullError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    job = queue.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return CacheJobSummary.from_domain(job)


@router.get("/cache/jobs/{job_id}", response_model=CacheJobSummary)
async def get_job(job_id: str, queue: CacheQueue = Depends(get_queue)) -> CacheJobSummary:
    job = queue.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return CacheJobSummary.from_domain(job)


@router.get("/cache-status/{media_type}/{media_id}")
async def get_media_status(
    media_type: MediaType,
    media_id: int,
    image_kind: ImageKind = ImageKind.POSTER,
    queue: CacheQueue = Depends(get_queue),
) -> dict[str, Any]:
    job = queue.get_status_by_media(media_type, media_id, image_kind)
    if job is None:
        return {
            "job_id": None,
            "status": "not_found",
            "message": "No caching job found for this item",
        }
    return CacheJobSummary.from_domain(job).model_dump(mode="json")


@router.get("/cache-stats")
async def get_cache_stats(
    queue: CacheQueue = Depends(get_queue),
    broadcaster: CacheStatusBroadcaster = Depends(get_broadcaster),
) -> dict[str, Any]:
    return {
        "queue": queue.get_queue_stats().to_dict(),
        "websocket": broadcaster.get_stats(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/images/{media_type}/{media_id}/{image_kind}", response_model=ImageResolutionResponse)
async def resolve_image(
    media_type: MediaType,
    media_id: int,
    image_kind: ImageKind,
    path: str = Query(..., description="TMDB image path, e.g. /abc123.jpg"),
    service: ImageCacheService = Depends(get_image_service),
) -> ImageResolutionResponse:
    resolution = await service.resolve_image(media_type, media_id, image_kind, path)
    if resolution is None:
        raise HTTPException(status_code=404, detail=f"Unsupported image path: {path}")
    return ImageResolutionResponse(url=resolution.url, cached=resolution.cached, job_id=resolution.job_id)
