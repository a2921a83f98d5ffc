from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Optional, Protocol
from urllib.parse import urlparse

import cloudinary.exceptions
import cloudinary.uploader

from ..errors import CdnConfigurationError, CdnError
from ..jobs.models import ImageKind, UploadResult

logger = logging.getLogger(__name__)

# Incoming transformations applied at upload time; posters are stored narrower than backdrops.
KIND_TRANSFORMATIONS: dict[ImageKind, list[dict[str, Any]]] = {
    ImageKind.POSTER: [{"crop": "limit", "width": 500, "quality": "auto:good", "fetch_format": "auto"}],
    ImageKind.BACKDROP: [{"crop": "limit", "width": 1280, "quality": "auto:good", "fetch_format": "auto"}],
    ImageKind.PROFILE: [{"crop": "limit", "width": 185, "quality": "auto:good", "fetch_format": "auto"}],
}

_STATUS_BY_ERROR: dict[type, int] = {
    cloudinary.exceptions.BadRequest: 400,
    cloudinary.exceptions.AuthorizationRequired: 401,
    cloudinary.exceptions.NotAllowed: 403,
    cloudinary.exceptions.NotFound: 404,
    cloudinary.exceptions.AlreadyExists: 409,
    cloudinary.exceptions.RateLimited: 420,
    cloudinary.exceptions.GeneralError: 500,
}


@dataclass(frozen=True, slots=True)
class UploadOptions:
    public_id: str
    folder: str
    transformation: list[dict[str, Any]] = field(default_factory=list)
    overwrite: bool = False

    def to_params(self) -> dict[str, Any]:
        return {
            "public_id": self.public_id,
            "folder": self.folder,
            "transformation": [dict(step) for step in self.transformation],
            "overwrite": self.overwrite,
            "resource_type": "image",
        }


def upload_options_for(
    image_kind: ImageKind, source_url: str, *, folder_prefix: str = "cinehub"
) -> UploadOptions:
    kind = ImageKind(image_kind)
    name = PurePosixPath(urlparse(source_url).path).name or "image"
    return UploadOptions(
        public_id=name.replace(".", "_"),
        folder=f"{folder_prefix}/{kind.value}s",
        transformation=KIND_TRANSFORMATIONS[kind],
    )


class ImageHost(Protocol):
    async def upload(self, file: bytes | str, options: UploadOptions) -> UploadResult: ...

    async def delete(self, public_id: str) -> bool: ...


class CloudinaryHost:
    """Uploads images to Cloudinary with the official SDK.

    The SDK is synchronous, so every call runs in a worker thread. Credentials
    are passed per call instead of through the SDK's global config so several
    hosts (and tests) can coexist in one process.
    """

    def __init__(
        self,
        *,
        cloud_name: Optional[str],
        api_key: Optional[str],
        api_secret: Optional[str],
        timeout: float = 15.0,
    ) -> None:
        self.cloud_name = cloud_name
        self._api_key = api_key
        self._api_secret = api_secret
        self._timeout = timeout
        if not self.is_configured:
            logger.warning(
                "Cloudinary environment variables not set - image upload will be disabled "
                "(CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY, CLOUDINARY_API_SECRET)"
            )

    @property
    def is_configured(self) -> bool:
        return bool(self.cloud_name and self._api_key and self._api_secret)

    async def upload(self, file: bytes | str, options: UploadOptions) -> UploadResult:
        params = {**self._credentials(), **options.to_params()}
        payload = io.BytesIO(bytes(file)) if isinstance(file, (bytes, bytearray)) else file
        try:
            response = await asyncio.to_thread(cloudinary.uploader.upload, payload, **params)
        except cloudinary.exceptions.Error as exc:
            raise self._translate(exc, "upload") from exc

        try:
            result = UploadResult.from_payload(response)
        except KeyError as exc:
            raise CdnError(f"Cloudinary upload response is missing {exc}") from exc
        logger.info("Uploaded %s/%s -> %s", options.folder, options.public_id, result.delivery_url)
        return result

    async def delete(self, public_id: str) -> bool:
        params = {**self._credentials(), "invalidate": True, "resource_type": "image"}
        try:
            response = await asyncio.to_thread(cloudinary.uploader.destroy, public_id, **params)
        except cloudinary.exceptions.Error as exc:
            raise self._translate(exc, "destroy") from exc
        result = response.get("result")
        if result != "ok":
            logger.info("Cloudinary destroy for %s returned %r", public_id, result)
        return result == "ok"

    def _credentials(self) -> dict[str, Any]:
        if not self.is_configured:
            raise CdnConfigurationError("Cloudinary not configured - missing credentials")
        return {
            "cloud_name": self.cloud_name,
            "api_key": self._api_key,
            "api_secret": self._api_secret,
            "timeout": self._timeout,
        }

    @staticmethod
    def _translate(exc: cloudinary.exceptions.Error, action: str) -> CdnError:
        status_code = next(
            (code for error_type, code in _STATUS_BY_ERROR.items() if isinstance(exc, error_type)),
            None,
        )
        return CdnError(f"Cloudinary {action} failed: {exc}", status_code=status_code)
