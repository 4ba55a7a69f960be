"""Object storage client for generated certificates and static assets.

Talks to the Supabase Storage REST API over a shared ``httpx.AsyncClient``.

SCALABILITY:
- Circuit breaker fails fast when storage is unavailable (5 failures -> 60s recovery)
- Retry with exponential backoff for transient failures (3 attempts)
- Connection pooling via shared httpx.AsyncClient

Uploads are upserts: writing to a path that already holds an object replaces
it, so regenerating a certificate never fails on "already exists".
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol
from urllib.parse import quote, unquote

import httpx
from circuitbreaker import circuit
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from core.config import Settings, get_settings

logger = logging.getLogger(__name__)

_http_client: httpx.AsyncClient | None = None
_http_client_lock = asyncio.Lock()


class StorageError(Exception):
    """Raised when the storage API rejects a request (non-retriable)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StorageServerError(StorageError):
    """Raised when the storage API returns a 5xx error or 429 (retriable)."""


# Exceptions that should trigger retry and circuit breaker
RETRIABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    httpx.RequestError,
    httpx.TimeoutException,
    StorageServerError,
)


class ObjectStore(Protocol):
    """Interface the certificate workflow needs from object storage."""

    async def upload(
        self, path: str, data: bytes, *, content_type: str = "application/pdf"
    ) -> str: ...

    def public_url(self, path: str) -> str: ...

    async def signed_url(self, path: str, expires_in: int | None = None) -> str: ...

    def asset_url(self, name: str) -> str: ...

    async def property_document_url(self, property_id: str) -> str | None: ...

    def object_path(self, stored: str) -> str: ...


async def get_http_client() -> httpx.AsyncClient:
    """Get or create a shared HTTP client for storage requests.

    Thread-safe via asyncio.Lock to prevent race conditions.
    """
    global _http_client

    if _http_client is not None and not _http_client.is_closed:
        return _http_client

    async with _http_client_lock:
        if _http_client is not None and not _http_client.is_closed:
            return _http_client

        settings = get_settings()
        _http_client = httpx.AsyncClient(
            timeout=settings.http_timeout,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
        return _http_client


async def close_http_client() -> None:
    """Close the shared storage HTTP client (called on shutdown)."""
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
    _http_client = None


@circuit(
    failure_threshold=5,
    recovery_timeout=60,
    expected_exception=RETRIABLE_EXCEPTIONS,
    name="storage_circuit",
)
@retry(
    retry=retry_if_exception_type(RETRIABLE_EXCEPTIONS),
    stop=stop_after_attempt(3),
    wait=wait_exponential_jitter(initial=0.5, max=4),
    reraise=True,
)
async def _send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    **kwargs,
) -> httpx.Response:
    """Internal: one storage API call with retry logic."""
    response = await client.request(method, url, **kwargs)

    if response.status_code >= 500 or response.status_code == 429:
        raise StorageServerError(
            f"Storage API returned {response.status_code}",
            status_code=response.status_code,
        )

    if response.status_code >= 400:
        raise StorageError(
            f"Storage API returned {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )

    return response


def _quote_path(path: str) -> str:
    return quote(path.lstrip("/"), safe="/")


class SupabaseStorage:
    """Supabase Storage implementation of ``ObjectStore``."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await get_http_client()

    @property
    def _headers(self) -> dict[str, str]:
        key = self.settings.storage_service_key
        return {"Authorization": f"Bearer {key}", "apikey": key}

    def _object_url(self, bucket: str, path: str) -> str:
        return f"{self.settings.storage_base_url}/object/{bucket}/{_quote_path(path)}"

    def _public_object_url(self, bucket: str, path: str) -> str:
        base = self.settings.storage_base_url
        return f"{base}/object/public/{bucket}/{_quote_path(path)}"

    async def upload(
        self, path: str, data: bytes, *, content_type: str = "application/pdf"
    ) -> str:
        """Upload (or overwrite) an object in the certificates bucket.

        Returns:
            The stored object path, relative to the bucket.
        """
        client = await self._get_client()
        bucket = self.settings.certificates_bucket
        await _send(
            client,
            "POST",
            self._object_url(bucket, path),
            content=data,
            headers={
                **self._headers,
                "Content-Type": content_type,
                "x-upsert": "true",
                "cache-control": "3600",
            },
        )
        logger.info(
            "storage.object.uploaded",
            extra={"bucket": bucket, "path": path, "size_bytes": len(data)},
        )
        return path

    def public_url(self, path: str) -> str:
        return self._public_object_url(self.settings.certificates_bucket, path)

    async def signed_url(self, path: str, expires_in: int | None = None) -> str:
        """Issue a time-bounded download link for a certificate object."""
        client = await self._get_client()
        bucket = self.settings.certificates_bucket
        ttl = expires_in or self.settings.signed_url_ttl_seconds
        base = self.settings.storage_base_url
        response = await _send(
            client,
            "POST",
            f"{base}/object/sign/{bucket}/{_quote_path(path)}",
            json={"expiresIn": ttl},
            headers=self._headers,
        )
        signed_path = response.json().get("signedURL")
        if not signed_path:
            raise StorageError(f"Storage API returned no signed URL for {path}")
        return f"{base}{signed_path}"

    def asset_url(self, name: str) -> str:
        return self._public_object_url(self.settings.assets_bucket, name)

    async def property_document_url(self, property_id: str) -> str | None:
        """Public URL of the property's ``{id}.pdf``, or None if it does not exist."""
        bucket = self.settings.property_documents_bucket
        path = f"{property_id}.pdf"
        client = await self._get_client()
        try:
            await _send(
                client, "HEAD", self._object_url(bucket, path), headers=self._headers
            )
        except StorageError as e:
            # Missing objects come back as 400 or 404 depending on server version
            if e.status_code in (400, 404):
                return None
            raise
        return self._public_object_url(bucket, path)

    def object_path(self, stored: str) -> str:
        """Normalize a stored certificate location to a bucket-relative path.

        Stored values are either absolute public URLs (current scheme) or
        bucket-relative paths (legacy scheme). Unrecognised URLs pass through.
        """
        if not stored.startswith(("http://", "https://")):
            return stored.lstrip("/")
        marker = f"/storage/v1/object/public/{self.settings.certificates_bucket}/"
        _, found, relative = stored.partition(marker)
        return unquote(relative) if found else stored
