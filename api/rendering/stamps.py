"""Regulator stamp images.

Stamps are fetched once per render and handed to every backend as bytes, so
no backend reaches out to the network on its own. A stamp that cannot be
fetched is omitted from the document; it never fails the render.
"""

import base64
import logging
from dataclasses import dataclass

import httpx

from core.config import Settings, get_settings
from schemas import CertificateData
from services.exceptions import StampFetchFailure

logger = logging.getLogger(__name__)

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
_JPEG_SIGNATURE = b"\xff\xd8\xff"


@dataclass(frozen=True)
class StampImages:
    """Raw image bytes for the two stamps, ``None`` where unavailable."""

    secp: bytes | None = None
    sbp: bytes | None = None

    def present(self) -> list[tuple[str, bytes]]:
        """Available stamps in print order (SECP, then SBP)."""
        pairs = (("secp", self.secp), ("sbp", self.sbp))
        return [(name, data) for name, data in pairs if data]


def image_extension(data: bytes) -> str | None:
    """File extension for a PNG or JPEG payload, ``None`` for anything else."""
    if data.startswith(_PNG_SIGNATURE):
        return "png"
    if data.startswith(_JPEG_SIGNATURE):
        return "jpg"
    return None


def image_data_uri(data: bytes) -> str:
    """Convert image bytes to a base64 data URI for embedding in HTML."""
    mime = "image/jpeg" if image_extension(data) == "jpg" else "image/png"
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime};base64,{encoded}"


async def fetch_stamp(client: httpx.AsyncClient, url: str) -> bytes:
    """Download one stamp image.

    Raises:
        StampFetchFailure: On a non-2xx response, too many redirects,
            or a transport error
    """
    try:
        response = await client.get(url)
    except httpx.HTTPError as e:
        raise StampFetchFailure(url, str(e) or type(e).__name__) from e

    if not response.is_success:
        raise StampFetchFailure(url, f"HTTP {response.status_code}")
    if not response.content:
        raise StampFetchFailure(url, "empty response body")
    return response.content


class StampFetcher:
    """Fetches the stamps referenced by a presentation model."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.http_timeout,
            follow_redirects=True,
            max_redirects=self.settings.stamp_max_redirects,
        )

    async def _fetch_optional(
        self, client: httpx.AsyncClient, url: str | None
    ) -> bytes | None:
        if not url:
            return None
        try:
            return await fetch_stamp(client, url)
        except StampFetchFailure as e:
            logger.warning(
                "certificate.stamp.fetch_failed",
                extra={"url": e.url, "reason": e.message},
            )
            return None

    async def fetch(self, model: CertificateData) -> StampImages:
        if self._client is not None:
            return await self._fetch_all(self._client, model)
        async with self._new_client() as client:
            return await self._fetch_all(client, model)

    async def _fetch_all(
        self, client: httpx.AsyncClient, model: CertificateData
    ) -> StampImages:
        return StampImages(
            secp=await self._fetch_optional(client, model.secp_stamp_url),
            sbp=await self._fetch_optional(client, model.sbp_stamp_url),
        )
