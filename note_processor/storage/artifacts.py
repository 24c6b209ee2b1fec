"""Artifact access for audio, text and image references.

A reference is either a local path, a file:// URI, or an object URI of the
form s3://bucket/key or r2://bucket/key. Object storage goes through boto3
against an S3-compatible endpoint (Cloudflare R2 by default).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from note_processor.utils.errors import AudioNotFoundError, StorageError

logger = logging.getLogger(__name__)

OBJECT_SCHEMES = ("s3", "r2")
_MISSING_CODES = {"NoSuchKey", "NoSuchBucket", "404", "NotFound"}


class ArtifactStore:
    """Read and write artifacts by reference.

    Object storage is configured from environment variables on first use:
        R2_ENDPOINT, R2_ACCESS_KEY_ID, R2_SECRET_ACCESS_KEY

    Args:
        s3_client: Optional pre-configured boto3 S3 client.
        endpoint_url: S3-compatible endpoint; overrides R2_ENDPOINT.
    """

    def __init__(
        self,
        s3_client: Any = None,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        self._client = s3_client
        self.endpoint_url = endpoint_url or os.environ.get("R2_ENDPOINT", "")
        self.access_key_id = access_key_id or os.environ.get("R2_ACCESS_KEY_ID", "")
        self.secret_access_key = secret_access_key or os.environ.get(
            "R2_SECRET_ACCESS_KEY", ""
        )

    def _s3(self) -> Any:
        if self._client is None:
            if not self.endpoint_url:
                raise StorageError("R2_ENDPOINT is required", operation="init")
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                aws_access_key_id=self.access_key_id,
                aws_secret_access_key=self.secret_access_key,
                region_name="auto",
            )
        return self._client

    @staticmethod
    def _split(ref: str) -> tuple[str, str, str]:
        """Return (scheme, bucket, key-or-path) for a reference."""
        parsed = urlparse(ref)
        if parsed.scheme in OBJECT_SCHEMES:
            return parsed.scheme, parsed.netloc, parsed.path.lstrip("/")
        if parsed.scheme == "file":
            return "file", "", unquote(parsed.path)
        return "file", "", ref

    @staticmethod
    def extension(ref: str) -> str:
        """File extension of a reference, lower-cased and including the dot."""
        return Path(urlparse(ref).path or ref).suffix.lower()

    def fetch(self, ref: str) -> bytes:
        """Read an artifact's bytes.

        Raises:
            AudioNotFoundError: If the artifact does not exist.
            StorageError: On any other read failure (retryable).
        """
        if not ref:
            raise AudioNotFoundError("Empty artifact reference", ref=ref)
        scheme, bucket, key = self._split(ref)

        if scheme == "file":
            try:
                return Path(key).read_bytes()
            except FileNotFoundError as exc:
                raise AudioNotFoundError(f"Artifact missing: {key}", ref=ref) from exc
            except OSError as exc:
                raise StorageError(
                    f"Failed to read '{key}': {exc}", operation="fetch"
                ) from exc

        try:
            response = self._s3().get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "Unknown")
            if error_code in _MISSING_CODES:
                raise AudioNotFoundError(
                    f"Object '{key}' not found in '{bucket}'", ref=ref
                ) from exc
            raise StorageError(
                f"Failed to fetch object '{key}': {error_code}", operation="fetch"
            ) from exc
        except BotoCoreError as exc:
            raise StorageError(
                f"Failed to fetch object '{key}': {exc}", operation="fetch"
            ) from exc

    def put(self, ref: str, data: bytes, content_type: str = "") -> None:
        """Write an artifact.

        Raises:
            StorageError: If the artifact cannot be stored.
        """
        scheme, bucket, key = self._split(ref)

        if scheme == "file":
            try:
                path = Path(key)
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(data)
            except OSError as exc:
                raise StorageError(
                    f"Failed to write '{key}': {exc}", operation="put"
                ) from exc
            return

        try:
            kwargs: dict = {"Bucket": bucket, "Key": key, "Body": data}
            if content_type:
                kwargs["ContentType"] = content_type
            self._s3().put_object(**kwargs)
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "Unknown")
            raise StorageError(
                f"Failed to put object '{key}': {error_code}", operation="put"
            ) from exc
        except BotoCoreError as exc:
            raise StorageError(
                f"Failed to put object '{key}': {exc}", operation="put"
            ) from exc
