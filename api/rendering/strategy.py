"""Rendering strategy: ordered backends with fallback.

Stamps are fetched once per document and shared by every backend attempt.
A backend failure is logged and the next backend is tried; only when every
backend has failed does the caller see an error.

Default order (see ``build_rendering_strategy``):
    typesetting (when enabled and the compiler is on PATH)
    -> browser (when enabled)
    -> vector (always)
"""

import logging
import time
from collections.abc import Sequence
from typing import Protocol

from core.config import Settings, get_settings
from rendering.browser import BrowserRenderer
from rendering.markup import MarkupRenderer
from rendering.stamps import StampFetcher, StampImages
from rendering.typesetting import TypesettingRenderer
from rendering.vector import VectorRenderer
from schemas import CertificateData, CertificateKind, RenderedDocument
from services.exceptions import AllBackendsFailedError, RenderFailure

logger = logging.getLogger(__name__)


class CertificateRenderer(Protocol):
    """A backend that turns a presentation model into PDF bytes."""

    name: str

    async def render(
        self, kind: CertificateKind, model: CertificateData, stamps: StampImages
    ) -> bytes: ...


class RenderingStrategy:
    def __init__(
        self,
        backends: Sequence[CertificateRenderer],
        stamp_fetcher: StampFetcher | None = None,
    ) -> None:
        self.backends = tuple(backends)
        self.stamp_fetcher = stamp_fetcher or StampFetcher()

    @property
    def backend_names(self) -> list[str]:
        return [backend.name for backend in self.backends]

    async def render(
        self, kind: CertificateKind, model: CertificateData
    ) -> RenderedDocument:
        """Render ``model`` with the first backend that succeeds.

        Raises:
            ValueError: If ``model`` is not a ``kind`` presentation model
            AllBackendsFailedError: If every backend failed
        """
        if model.kind != kind:
            raise ValueError(f"Expected a {kind.value} model, got {model.kind.value}")

        stamps = await self.stamp_fetcher.fetch(model)
        failures: list[RenderFailure] = []

        for backend in self.backends:
            start = time.perf_counter()
            try:
                content = await backend.render(kind, model, stamps)
            except RenderFailure as e:
                failures.append(e)
                logger.warning(
                    "certificate.render.backend_failed",
                    extra={
                        "backend": backend.name,
                        "kind": kind.value,
                        "certificate_id": model.certificate_id,
                        "error": str(e),
                    },
                )
                continue

            if not content:
                failures.append(RenderFailure(backend.name, "empty document"))
                logger.warning(
                    "certificate.render.backend_failed",
                    extra={
                        "backend": backend.name,
                        "kind": kind.value,
                        "certificate_id": model.certificate_id,
                        "error": "empty document",
                    },
                )
                continue

            duration_ms = round((time.perf_counter() - start) * 1000, 1)
            logger.info(
                "certificate.rendered",
                extra={
                    "backend": backend.name,
                    "kind": kind.value,
                    "certificate_id": model.certificate_id,
                    "size_bytes": len(content),
                    "duration_ms": duration_ms,
                },
            )
            return RenderedDocument(content=content, backend=backend.name)

        raise AllBackendsFailedError(failures)


def build_rendering_strategy(settings: Settings | None = None) -> RenderingStrategy:
    """Assemble the default fallback chain from settings."""
    settings = settings or get_settings()
    markup = MarkupRenderer(settings.templates_path)
    backends: list[CertificateRenderer] = []

    if settings.enable_typesetting:
        typesetter = TypesettingRenderer(settings, markup)
        if typesetter.is_available():
            backends.append(typesetter)
        else:
            logger.info(
                "certificate.render.backend_unavailable",
                extra={"backend": typesetter.name, "command": settings.latex_command},
            )

    if settings.enable_browser_rendering:
        backends.append(BrowserRenderer(settings, markup))

    backends.append(VectorRenderer())

    return RenderingStrategy(backends, StampFetcher(settings))
