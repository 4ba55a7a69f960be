"""Jinja2 markup for the browser and typesetting backends.

Both backends render the same presentation model through templates under
``<templates_dir>/certificates/``:

- ``*.html.j2`` with HTML autoescaping, printed by headless Chromium
- ``*.tex.j2`` with LaTeX-friendly delimiters (``\\VAR{}``, ``\\BLOCK{}``),
  compiled by pdflatex. Jinja has no LaTeX autoescape, so every string in the
  context is escaped before rendering.
"""

import re
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from rendering.stamps import StampImages, image_data_uri
from schemas import CertificateData, CertificateKind, TransactionCertificateData

_TEMPLATE_STEMS: dict[CertificateKind, str] = {
    CertificateKind.TRANSACTION: "certificates/transaction_certificate",
    CertificateKind.PORTFOLIO: "certificates/portfolio_summary",
}

_LATEX_REPLACEMENTS = {
    "\\": r"\textbackslash{}",
    "{": r"\{",
    "}": r"\}",
    "$": r"\$",
    "&": r"\&",
    "%": r"\%",
    "#": r"\#",
    "^": r"\textasciicircum{}",
    "_": r"\_",
    "~": r"\textasciitilde{}",
    "<": r"$<$",
    ">": r"$>$",
}
_LATEX_PATTERN = re.compile("|".join(re.escape(ch) for ch in _LATEX_REPLACEMENTS))


def escape_latex(value: Any) -> str:
    """Escape LaTeX control characters in free text."""
    if value is None:
        return ""
    return _LATEX_PATTERN.sub(lambda m: _LATEX_REPLACEMENTS[m.group()], str(value))


def _escape_tree(value: Any) -> Any:
    if isinstance(value, str):
        return escape_latex(value)
    if isinstance(value, dict):
        return {key: _escape_tree(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_escape_tree(item) for item in value]
    return value


def _base_context(model: CertificateData) -> dict[str, Any]:
    context = model.model_dump()
    if isinstance(model, TransactionCertificateData):
        context["short_hash"] = model.short_hash
    return context


def html_context(model: CertificateData, stamps: StampImages) -> dict[str, Any]:
    context = _base_context(model)
    context["stamps"] = [
        {"name": name, "src": image_data_uri(data)} for name, data in stamps.present()
    ]
    return context


def latex_context(
    model: CertificateData, stamp_files: list[tuple[str, str]]
) -> dict[str, Any]:
    """Escaped context; ``stamp_files`` are (name, file name) pairs we wrote."""
    context = _escape_tree(_base_context(model))
    context["stamps"] = [{"name": name, "file": file} for name, file in stamp_files]
    return context


class MarkupRenderer:
    """Renders presentation models to HTML or LaTeX source."""

    def __init__(self, templates_path: Path) -> None:
        self.templates_path = Path(templates_path)
        loader = FileSystemLoader(self.templates_path)

        self.html_env = Environment(
            loader=loader,
            autoescape=select_autoescape(
                enabled_extensions=("html", "html.j2"), default_for_string=True
            ),
            undefined=StrictUndefined,
        )

        self.latex_env = Environment(
            loader=loader,
            block_start_string=r"\BLOCK{",
            block_end_string="}",
            variable_start_string=r"\VAR{",
            variable_end_string="}",
            comment_start_string=r"\#{",
            comment_end_string="}",
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
            undefined=StrictUndefined,
        )

    @staticmethod
    def template_name(kind: CertificateKind, extension: str) -> str:
        return f"{_TEMPLATE_STEMS[kind]}.{extension}.j2"

    def render_html(self, model: CertificateData, stamps: StampImages) -> str:
        template = self.html_env.get_template(self.template_name(model.kind, "html"))
        return template.render(html_context(model, stamps))

    def render_latex(
        self, model: CertificateData, stamp_files: list[tuple[str, str]]
    ) -> str:
        template = self.latex_env.get_template(self.template_name(model.kind, "tex"))
        return template.render(latex_context(model, stamp_files))
