from __future__ import annotations

from pathlib import Path
import sys

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cinehub.errors import OriginFetchError
from cinehub.integrations.origin import OriginImageSource
from cinehub.jobs.models import ImageKind

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def make_source(handler, *, max_bytes: int = 1024) -> OriginImageSource:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OriginImageSource(base_url="https://image.tmdb.org/t/p/", max_bytes=max_bytes, client=client)


def test_build_url_uses_size_per_kind() -> None:
    source = OriginImageSource(client=httpx.AsyncClient())

    assert source.build_url("/abc.jpg", ImageKind.POSTER) == "https://image.tmdb.org/t/p/w500/abc.jpg"
    assert source.build_url("/abc.jpg", "backdrop") == "https://image.tmdb.org/t/p/w1280/abc.jpg"
    assert source.build_url("/abc.jpg", ImageKind.PROFILE) == "https://image.tmdb.org/t/p/w185/abc.jpg"


@pytest.mark.parametrize("path", [None, "", "abc.jpg"])
def test_build_url_rejects_unusable_paths(path) -> None:
    source = OriginImageSource(client=httpx.AsyncClient())
    assert source.build_url(path, ImageKind.POSTER) is None


def test_build_url_passes_absolute_urls_through() -> None:
    source = OriginImageSource(client=httpx.AsyncClient())
    assert source.build_url("https://o/img.jpg", ImageKind.POSTER) == "https://o/img.jpg"


@pytest.mark.asyncio
async def test_fetch_returns_image_bytes() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png; charset=binary"})

    source = make_source(handler)
    image = await source.fetch("https://image.tmdb.org/t/p/w500/abc.png")

    assert seen == ["https://image.tmdb.org/t/p/w500/abc.png"]
    assert image.content == PNG_BYTES
    assert image.content_type == "image/png"


@pytest.mark.asyncio
async def test_fetch_reports_http_status() -> None:
    source = make_source(lambda request: httpx.Response(404, text="missing"))

    with pytest.raises(OriginFetchError) as excinfo:
        await source.fetch("https://o/missing.jpg")

    assert excinfo.value.status_code == 404
    assert excinfo.value.url == "https://o/missing.jpg"


@pytest.mark.asyncio
async def test_fetch_rejects_non_image_content() -> None:
    source = make_source(lambda request: httpx.Response(200, text="<html></html>", headers={"content-type": "text/html"}))

    with pytest.raises(OriginFetchError, match="content type"):
        await source.fetch("https://o/page")


@pytest.mark.asyncio
async def test_fetch_rejects_oversized_body() -> None:
    source = make_source(
        lambda request: httpx.Response(200, content=b"x" * 2048, headers={"content-type": "image/jpeg"}),
        max_bytes=1024,
    )

    with pytest.raises(OriginFetchError, match="exceeds"):
        await source.fetch("https://o/huge.jpg")


@pytest.mark.asyncio
async def test_fetch_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    source = make_source(handler)

    with pytest.raises(OriginFetchError, match="timeout"):
        await source.fetch("https://o/slow.jpg")
