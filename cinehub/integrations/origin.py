from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from ..errors import OriginFetchError
from ..jobs.models import ImageKind

logger = logging.getLogger(__name__)

# Widths requested from the TMDB image CDN per kind.
IMAGE_SIZES: dict[ImageKind, str] = {
    ImageKind.POSTER: "w500",
    ImageKind.BACKDROP: "w1280",
    ImageKind.PROFILE: "w185",
}


@dataclass(slots=True)
class FetchedImage:
    url: str
    content: bytes
    content_type: str


class ImageSource(Protocol):
    def build_url(self, path: Optional[str], image_kind: ImageKind) -> Optional[str]: ...

    async def fetch(self, url: str) -> FetchedImage: ...


class OriginImageSource:
    """Fetches original artwork from the TMDB image CDN."""

    def __init__(
        self,
        *,
        base_url: str = "https://image.tmdb.org/t/p",
        timeout: float = 15.0,
        max_bytes: int = 10 * 1024 * 1024,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_bytes = max_bytes
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(follow_redirects=True, timeout=timeout)

    def build_url(self, path: Optional[str], image_kind: ImageKind) -> Optional[str]:
        if not path:
            return None
        if path.startswith(("https://", "http://")):
            return path
        if not path.startswith("/"):
            return None
        return f"{self.base_url}/{IMAGE_SIZES[ImageKind(image_kind)]}{path}"

    async def fetch(self, url: str) -> FetchedImage:
        try:
            response = await self._client.get(url)
        except httpx.TimeoutException as exc:
            raise OriginFetchError(url, "timeout") from exc
        except httpx.HTTPError as exc:
            raise OriginFetchError(url, f"http error: {exc}") from exc

        if response.status_code != 200:
            raise OriginFetchError(
                url,
                f"unexpected status {response.status_code}",
                status_code=response.status_code,
            )

        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if not content_type.startswith("image/"):
            raise OriginFetchError(url, f"unexpected content type {content_type or 'missing'}")

        content = response.content
        if not content:
            raise OriginFetchError(url, "empty body")
        if len(content) > self.max_bytes:
            raise OriginFetchError(url, f"image exceeds {self.max_bytes} bytes")

        logger.debug("Fetched %s (%s bytes, %s)", url, len(content), content_type)
        return FetchedImage(url=url, content=content, content_type=content_type)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
