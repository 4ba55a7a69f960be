"""Browser renderer: HTML templates printed to PDF by headless Chromium.

Every render launches its own browser with a throwaway profile directory,
so concurrent renders share no state. The browser is closed and the profile
removed on every exit path.
"""

import tempfile

from jinja2 import TemplateError
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from core.config import Settings, get_settings
from rendering.markup import MarkupRenderer
from rendering.stamps import StampImages
from schemas import CertificateData, CertificateKind
from services.exceptions import RenderFailure

PDF_MARGINS = {"top": "20mm", "bottom": "20mm", "left": "15mm", "right": "15mm"}


class BrowserRenderer:
    """Certificate renderer backed by Playwright's Chromium."""

    name = "browser"

    def __init__(
        self,
        settings: Settings | None = None,
        markup: MarkupRenderer | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.markup = markup or MarkupRenderer(self.settings.templates_path)

    async def render(
        self, kind: CertificateKind, model: CertificateData, stamps: StampImages
    ) -> bytes:
        try:
            html = self.markup.render_html(model, stamps)
        except TemplateError as e:
            raise RenderFailure(self.name, f"template error: {e}") from e

        try:
            return await self._print(html)
        except (PlaywrightError, OSError, TimeoutError) as e:
            raise RenderFailure(self.name, str(e) or type(e).__name__) from e

    async def _print(self, html: str) -> bytes:
        timeout_ms = self.settings.http_timeout * 1000 * 3
        with tempfile.TemporaryDirectory(prefix="certificate-chromium-") as profile:
            async with async_playwright() as p:
                context = await p.chromium.launch_persistent_context(
                    profile,
                    headless=True,
                    args=list(self.settings.chromium_args),
                )
                try:
                    page = await context.new_page()
                    await page.set_content(html, wait_until="load", timeout=timeout_ms)
                    return await page.pdf(
                        format="A4",
                        print_background=True,
                        margin=PDF_MARGINS,
                    )
                finally:
                    await context.close()
