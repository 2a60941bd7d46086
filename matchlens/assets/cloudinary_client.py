"""
cloudinary_client.py — Signed image uploads to Cloudinary.

Requests are signed with the Cloudinary SDK (cloudinary.utils.api_sign_request)
and posted with the shared httpx.AsyncClient, so uploads stay on the event loop
instead of the SDK's blocking uploader.

Every upload carries the same incoming transformation (fit within 800x800,
automatic good-quality compression) so Cloudinary, not this service, owns
resizing and format choice.
"""
from __future__ import annotations

import logging
import time

import httpx
from cloudinary.utils import api_sign_request

logger = logging.getLogger(__name__)

UPLOAD_TRANSFORMATION = "c_limit,w_800,h_800/q_auto:good"
CLOUDINARY_API_BASE = "https://api.cloudinary.com/v1_1"


class CloudinaryError(Exception):
    pass


class CloudinaryConfigError(CloudinaryError):
    pass


class CloudinaryUploadError(CloudinaryError):
    pass


class CloudinaryClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        api_base: str = CLOUDINARY_API_BASE,
    ):
        self._http = http
        self._cloud_name = cloud_name
        self._api_key = api_key
        self._api_secret = api_secret
        self._api_base = api_base.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self._cloud_name and self._api_key and self._api_secret)

    async def upload_image(self, data_uri: str, folder: str) -> str:
        """Upload one data-URI encoded image and return its secure_url."""
        if not self.configured:
            raise CloudinaryConfigError("Cloudinary credentials are not configured")

        params = {
            "folder": folder,
            "timestamp": int(time.time()),
            "transformation": UPLOAD_TRANSFORMATION,
        }
        form = {
            **params,
            "api_key": self._api_key,
            "signature": api_sign_request(params, self._api_secret),
            "file": data_uri,
        }
        url = f"{self._api_base}/{self._cloud_name}/image/upload"
        try:
            response = await self._http.post(url, data=form)
        except httpx.HTTPError as exc:
            raise CloudinaryUploadError(f"Cloudinary upload failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                error = response.json().get("error") or {}
                message = error.get("message", "")
            except (ValueError, AttributeError):
                message = response.text[:200]
            raise CloudinaryUploadError(
                f"Cloudinary rejected upload (HTTP {response.status_code}): {message}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise CloudinaryUploadError(
                f"Cloudinary returned a non-JSON body (HTTP {response.status_code})"
            ) from exc
        secure_url = body.get("secure_url") if isinstance(body, dict) else None
        if not secure_url:
            raise CloudinaryUploadError("Cloudinary response missing secure_url")
        return secure_url
