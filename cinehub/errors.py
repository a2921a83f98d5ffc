from __future__ import annotations

from typing import Optional


class ImageCacheError(Exception):
    """Base class for failures raised by the image cache pipeline."""


class OriginFetchError(ImageCacheError):
    def __init__(self, url: str, reason: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(f"Failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason
        self.status_code = status_code


class CdnError(ImageCacheError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CdnConfigurationError(CdnError):
    pass


class QueueFullError(ImageCacheError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"Cache queue is full ({limit} jobs waiting)")
        self.limit = limit
