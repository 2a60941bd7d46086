"""
uploader.py — Asset Uploader: onboarding photos → durable Cloudinary URLs.

Policy:
  - Each photo is decoded, sniffed with Pillow and uploaded independently.
  - A photo that fails any step is logged and dropped; the batch never aborts.
  - Uploads fan out concurrently, bounded by one semaphore shared by every
    request in the process; the returned URLs keep the input order of the
    photos that survived.
  - Empty or missing input → [].

The semaphore is created in the constructor, which main.py lifespan calls
inside the running event loop.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import io
import logging
from typing import Optional, Sequence

from PIL import Image, UnidentifiedImageError

from matchlens.assets.cloudinary_client import (
    CloudinaryClient,
    CloudinaryConfigError,
    CloudinaryUploadError,
)
from matchlens.intake.schemas import Photo, PhotoPayload

logger = logging.getLogger(__name__)

MAX_PHOTO_BYTES = 10 * 1024 * 1024  # 10 MB decoded, per photo
DEFAULT_MIME = "image/jpeg"


class InvalidPhotoError(ValueError):
    """Payload is not decodable base64 or not an image Pillow recognises."""


def decode_photo(photo: Photo) -> tuple[bytes, str]:
    """
    Accept any of the client's payload forms and return (raw bytes, declared mime):
      - PhotoPayload(data=<base64>, type='image/png')
      - 'data:image/png;base64,<base64>'
      - '<base64>'  (treated as JPEG, like the original checkout page)
    """
    if isinstance(photo, PhotoPayload):
        encoded, mime = photo.data, photo.type or DEFAULT_MIME
    elif photo.startswith("data:"):
        header, _, encoded = photo.partition(",")
        if ";base64" not in header:
            raise InvalidPhotoError("data URL is not base64 encoded")
        mime = header[len("data:"):].split(";", 1)[0] or DEFAULT_MIME
    else:
        encoded, mime = photo, DEFAULT_MIME

    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidPhotoError(f"invalid base64 payload: {exc}") from exc
    if not raw:
        raise InvalidPhotoError("empty photo payload")
    if len(raw) > MAX_PHOTO_BYTES:
        raise InvalidPhotoError(f"photo exceeds {MAX_PHOTO_BYTES // (1024 * 1024)} MB")
    return raw, mime


def sniff_image_mime(raw: bytes) -> str:
    """Detected MIME type from the bytes themselves, not the declared type."""
    try:
        with Image.open(io.BytesIO(raw)) as image:
            image_format = image.format
            image.verify()
    except Image.DecompressionBombError as exc:
        raise InvalidPhotoError(f"image dimensions too large: {exc}") from exc
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise InvalidPhotoError(f"payload is not a recognised image: {exc}") from exc
    mime = Image.MIME.get(image_format or "")
    if not mime:
        raise InvalidPhotoError(f"unsupported image format {image_format!r}")
    return mime


def to_data_uri(raw: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


class AssetUploader:
    """Uploads photo collections with bounded concurrency and per-photo failure isolation."""

    def __init__(self, client: CloudinaryClient, concurrency: int = 4):
        self._client = client
        self._semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _upload_one(self, index: int, photo: Photo, folder: str) -> Optional[str]:
        try:
            raw, declared = decode_photo(photo)
            mime = sniff_image_mime(raw)
            if mime != declared:
                logger.debug("Photo %d declared %s but sniffed %s", index, declared, mime)
            async with self._semaphore:
                url = await self._client.upload_image(to_data_uri(raw, mime), folder)
        except (InvalidPhotoError, CloudinaryUploadError) as exc:
            logger.warning("Photo upload dropped folder=%s index=%d: %s", folder, index, exc)
            return None
        except Exception:
            # One photo must never take the rest of the batch down with it
            logger.exception("Photo upload dropped folder=%s index=%d: unexpected error", folder, index)
            return None
        logger.info("Photo uploaded folder=%s index=%d", folder, index)
        return url

    async def upload_batch(self, photos: Optional[Sequence[Photo]], folder: str) -> list[str]:
        """
        Upload every photo in the collection; return surviving URLs in input order.

        Raises CloudinaryConfigError only when there is something to upload and
        the object store is not configured at all, a whole-collection failure
        the orchestrator degrades to [].
        """
        if not photos:
            return []
        if not self._client.configured:
            raise CloudinaryConfigError("Cloudinary credentials are not configured")

        results = await asyncio.gather(
            *(self._upload_one(index, photo, folder) for index, photo in enumerate(photos))
        )
        urls = [url for url in results if url is not None]
        if len(urls) < len(photos):
            logger.warning(
                "Photo batch degraded folder=%s uploaded=%d requested=%d",
                folder, len(urls), len(photos),
            )
        return urls
