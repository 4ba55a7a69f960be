"""Rendering module for certificate documents.

This module handles all presentation/rendering logic:
- Layout primitives and the ReportLab vector renderer
- HTML and LaTeX markup for the browser and typesetting renderers
- Stamp image fetching
- Backend fallback (the rendering strategy)

Services hand it a frozen presentation model and get PDF bytes back.
"""

from rendering.browser import BrowserRenderer
from rendering.markup import MarkupRenderer, escape_latex
from rendering.stamps import StampFetcher, StampImages
from rendering.strategy import (
    CertificateRenderer,
    RenderingStrategy,
    build_rendering_strategy,
)
from rendering.typesetting import TypesettingRenderer
from rendering.vector import VectorRenderer, render_certificate_pdf

__all__ = [
    "BrowserRenderer",
    "CertificateRenderer",
    "MarkupRenderer",
    "RenderingStrategy",
    "StampFetcher",
    "StampImages",
    "TypesettingRenderer",
    "VectorRenderer",
    "build_rendering_strategy",
    "escape_latex",
    "render_certificate_pdf",
]
