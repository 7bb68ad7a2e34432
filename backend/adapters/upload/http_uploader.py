"""
HTTP blob uploader.

POSTs the blob as multipart form field "file" and reads the stored
reference from the JSON reply:

    {"url": "https://..."}      or
    {"code": 0, "data": "https://..."}
"""

from __future__ import annotations

from uuid import uuid4

import httpx

from adapters.upload.base import BlobUploader
from observability.logger import log_event
from orchestrator.errors import ProtocolError


_EXTENSIONS = {
    "audio/wav": "wav",
    "audio/mpeg": "mp3",
}


class HttpBlobUploader(BlobUploader):
    """BlobUploader over a shared httpx.AsyncClient."""

    def __init__(self, client: httpx.AsyncClient, upload_url: str) -> None:
        self._client = client
        self._upload_url = upload_url

    async def upload(self, blob: bytes, *, content_type: str = "audio/wav") -> str:
        filename = f"{uuid4().hex}.{_EXTENSIONS.get(content_type, 'bin')}"
        response = await self._client.post(
            self._upload_url,
            files={"file": (filename, blob, content_type)},
        )

        if not response.is_success:
            raise ProtocolError(
                f"upload failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ProtocolError("upload reply is not JSON", status_code=response.status_code) from exc

        url = (body.get("url") or body.get("data")) if isinstance(body, dict) else None
        if not isinstance(url, str) or not url:
            raise ProtocolError("upload reply has no url", status_code=response.status_code)

        log_event({
            "event_type": "blob_uploaded",
            "bytes": len(blob),
            "content_type": content_type,
        })
        return url
