"""Uploaders that place one file in a Google Drive folder.

DriveUploader talks to the Drive API directly with a multipart/related
request. BackendUploader posts a form to the notes backend's /upload
endpoint, which holds the OAuth credentials and does the Drive call itself.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass

import httpx

from note_processor.sync.oauth import OAuthTokenProvider
from note_processor.utils.errors import UploadError

logger = logging.getLogger(__name__)

DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files?uploadType=multipart"


@dataclass
class UploadResponse:
    status_code: int
    remote_id: str | None = None
    body: str = ""


def _remote_id(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    return data.get("id") if isinstance(data, dict) else None


def build_related_body(metadata: dict, mime: str, data: bytes) -> tuple[bytes, str]:
    """Encode a Drive multipart/related body.

    Returns:
        (body bytes, Content-Type header value with the boundary).
    """
    boundary = f"boundary_{uuid.uuid4().hex}"
    meta_json = json.dumps(metadata, ensure_ascii=False).encode("utf-8")
    body = b"".join(
        [
            f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n".encode(),
            meta_json,
            f"\r\n--{boundary}\r\nContent-Type: {mime}\r\n\r\n".encode(),
            data,
            f"\r\n--{boundary}--\r\n".encode(),
        ]
    )
    return body, f"multipart/related; boundary={boundary}"


class DriveUploader:
    """Direct Drive upload with a freshly exchanged bearer token."""

    def __init__(
        self,
        token_provider: OAuthTokenProvider | None = None,
        upload_url: str = DRIVE_UPLOAD_URL,
    ) -> None:
        self.token_provider = token_provider or OAuthTokenProvider()
        self.upload_url = upload_url

    async def upload(
        self,
        client: httpx.AsyncClient,
        folder_id: str,
        name: str,
        mime: str,
        data: bytes,
    ) -> UploadResponse:
        """Create the file in the folder.

        Raises:
            AuthError: If no access token could be obtained.
            UploadError: On network failure or a non-2xx response.
        """
        token = await self.token_provider.access_token(client)
        metadata = {"name": name, "parents": [folder_id], "mimeType": mime}
        body, content_type = build_related_body(metadata, mime, data)
        headers = {"Authorization": f"Bearer {token}", "Content-Type": content_type}

        logger.info("Drive upload start name=%s mime=%s", name, mime)
        try:
            response = await client.post(self.upload_url, headers=headers, content=body)
        except httpx.RequestError as exc:
            raise UploadError(f"Drive upload failed: {exc}") from exc

        if not response.is_success:
            raise UploadError(
                f"Drive upload failed with status {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return UploadResponse(response.status_code, _remote_id(response), response.text)


class BackendUploader:
    """Upload through the notes backend."""

    def __init__(self, upload_url: str) -> None:
        self.upload_url = upload_url

    async def upload(
        self,
        client: httpx.AsyncClient,
        folder_id: str,
        name: str,
        mime: str,
        data: bytes,
    ) -> UploadResponse:
        """Post the file as a form to the backend.

        Raises:
            UploadError: On network failure or a non-2xx response.
        """
        form = {"folderId": folder_id, "name": name, "mime": mime}
        files = {"file": (name, data, mime)}
        try:
            response = await client.post(self.upload_url, data=form, files=files)
        except httpx.RequestError as exc:
            raise UploadError(f"Backend upload failed: {exc}") from exc

        if not response.is_success:
            raise UploadError(
                f"Backend upload failed with status {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return UploadResponse(response.status_code, _remote_id(response), response.text)
