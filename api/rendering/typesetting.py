"""Typesetting renderer: LaTeX source compiled with pdflatex.

Produces the highest-fidelity output when a TeX distribution is installed.
Each render works in its own temporary directory. Stamps are written there
as image files, and the compiler runs twice so references and long tables
settle. A compiler that overruns its timeout is killed.
"""

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path

from jinja2 import TemplateError

from core.config import Settings, get_settings
from rendering.markup import MarkupRenderer
from rendering.stamps import StampImages, image_extension
from schemas import CertificateData, CertificateKind
from services.exceptions import RenderFailure

logger = logging.getLogger(__name__)

_COMPILER_PASSES = 2
_SOURCE_NAME = "certificate.tex"


def _first_error_line(log: str) -> str:
    """The first ``! ...`` line of TeX output, which names the failure."""
    for line in log.splitlines():
        if line.startswith("!"):
            return line[1:].strip()
    return log.strip().splitlines()[-1] if log.strip() else "no output"


class TypesettingRenderer:
    """Certificate renderer backed by a LaTeX compiler."""

    name = "typesetting"

    def __init__(
        self,
        settings: Settings | None = None,
        markup: MarkupRenderer | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.markup = markup or MarkupRenderer(self.settings.templates_path)

    def is_available(self) -> bool:
        return shutil.which(self.settings.latex_command) is not None

    async def render(
        self, kind: CertificateKind, model: CertificateData, stamps: StampImages
    ) -> bytes:
        with tempfile.TemporaryDirectory(prefix="certificate-tex-") as tmp:
            workdir = Path(tmp)
            stamp_files = self._write_stamps(workdir, stamps)

            try:
                source = self.markup.render_latex(model, stamp_files)
            except TemplateError as e:
                raise RenderFailure(self.name, f"template error: {e}") from e
            (workdir / _SOURCE_NAME).write_text(source, encoding="utf-8")

            for _ in range(_COMPILER_PASSES):
                await self._compile(workdir)

            pdf_path = workdir / Path(_SOURCE_NAME).with_suffix(".pdf")
            if not pdf_path.is_file():
                raise RenderFailure(self.name, "compiler produced no PDF")
            return pdf_path.read_bytes()

    def _write_stamps(
        self, workdir: Path, stamps: StampImages
    ) -> list[tuple[str, str]]:
        files = []
        for name, data in stamps.present():
            extension = image_extension(data)
            if extension is None:
                logger.warning(
                    "certificate.stamp.unsupported_format",
                    extra={"stamp": name, "backend": self.name},
                )
                continue
            filename = f"{name}.{extension}"
            (workdir / filename).write_bytes(data)
            files.append((name, filename))
        return files

    async def _compile(self, workdir: Path) -> None:
        timeout = self.settings.latex_timeout_seconds
        try:
            process = await asyncio.create_subprocess_exec(
                self.settings.latex_command,
                "-interaction=nonstopmode",
                "-halt-on-error",
                "-no-shell-escape",
                f"-output-directory={workdir}",
                _SOURCE_NAME,
                cwd=workdir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise RenderFailure(self.name, f"could not start compiler: {e}") from e

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise RenderFailure(
                self.name, f"compiler timed out after {timeout:g}s"
            ) from e

        if process.returncode != 0:
            log = stdout.decode("utf-8", errors="replace")
            raise RenderFailure(
                self.name,
                f"compiler exited with {process.returncode}: {_first_error_line(log)}",
            )
