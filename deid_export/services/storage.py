"""Artifact store client: private bucket uploads behind signed URLs.

Talks to a Supabase-compatible storage REST API:
  POST {base}/storage/v1/object/{bucket}/{path}       upload (upsert)
  POST {base}/storage/v1/object/sign/{bucket}/{path}  mint signed URL

The bucket is private; the signed URL is the only access boundary, so
anyone holding it can read the artifact until it expires.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx
import structlog

from deid_export.config import settings
from deid_export.exceptions import ConfigurationError, StorageError
from deid_export.services.serializer import SerializedArtifact

logger = structlog.get_logger()


@dataclass(frozen=True)
class SignedArtifact:
    path: str
    url: str
    expires_at: datetime
    size_bytes: int


class ArtifactStore:
    """Uploads export artifacts and mints time-limited download URLs."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str,
        client: httpx.Client | None = None,
    ):
        if not base_url or not service_key:
            raise ConfigurationError("STORAGE_URL and STORAGE_SERVICE_KEY must be configured")
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.headers = {"Authorization": f"Bearer {service_key}"}
        # Only a client built here is closed by close()
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=60.0)

    @classmethod
    def from_settings(cls) -> ArtifactStore:
        return cls(settings.STORAGE_URL, settings.STORAGE_SERVICE_KEY, settings.STORAGE_BUCKET)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> ArtifactStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _post(self, url: str, **kwargs) -> httpx.Response:
        try:
            resp = self._client.post(url, **kwargs)
        except httpx.HTTPError as e:
            raise StorageError(f"Storage request failed: {e.__class__.__name__}") from e
        if resp.is_error:
            raise StorageError(f"Storage request failed ({resp.status_code})", status_code=resp.status_code)
        return resp

    def upload(self, path: str, payload: bytes, content_type: str) -> None:
        self._post(
            f"{self.base_url}/storage/v1/object/{self.bucket}/{path}",
            content=payload,
            headers={**self.headers, "Content-Type": content_type, "x-upsert": "true"},
        )

    def create_signed_url(self, path: str, expires_in: int) -> str:
        resp = self._post(
            f"{self.base_url}/storage/v1/object/sign/{self.bucket}/{path}",
            json={"expiresIn": expires_in},
            headers=self.headers,
        )
        signed = resp.json().get("signedURL")
        if not signed:
            raise StorageError("Storage sign response missing signedURL")
        return f"{self.base_url}/storage/v1{signed}"

    def publish(
        self,
        path: str,
        artifact: SerializedArtifact,
        expires_in: int,
        now: datetime,
    ) -> SignedArtifact:
        """Upload an artifact and return its signed URL.

        Args:
            path: Object path inside the bucket.
            artifact: Serialized payload.
            expires_in: Signed URL lifetime in seconds.
            now: Reference time for the returned expiry.
        """
        self.upload(path, artifact.payload, artifact.content_type)
        url = self.create_signed_url(path, expires_in)
        logger.info("artifact_published", path=path, size_bytes=artifact.size_bytes, expires_in=expires_in)
        return SignedArtifact(
            path=path,
            url=url,
            expires_at=now + timedelta(seconds=expires_in),
            size_bytes=artifact.size_bytes,
        )
