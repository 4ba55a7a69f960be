"""Vector layout renderer: certificates drawn directly with ReportLab.

Needs no external binaries, which makes it the last link in the fallback
chain. Drawing is CPU-bound and runs in the default executor.
"""

import asyncio
from io import BytesIO

from reportlab.pdfgen.canvas import Canvas

from rendering.layout import (
    ACCENT_LIGHT,
    BOX_GAP,
    BOX_HEIGHT,
    FONT_MONO,
    MUTED,
    SUCCESS,
    TILE_HEIGHT,
    WARNING,
    Column,
    PageFrame,
    draw_banded_table,
    draw_box_row,
    draw_footer,
    draw_header,
    draw_highlight_box,
    draw_paragraph,
    draw_section_title,
    draw_stamps,
    draw_summary_grid,
    new_page,
)
from rendering.stamps import StampImages
from schemas import (
    CertificateData,
    CertificateKind,
    PortfolioSummaryData,
    TransactionCertificateData,
)
from services.exceptions import RenderFailure

_HISTORY_COLUMN_SHARES = (
    ("Date", 0.18),
    ("Transaction ID", 0.30),
    ("Tokens", 0.16),
    ("Amount (USDT)", 0.20),
    ("Status", 0.16),
)


def _status_color(status: str):
    return SUCCESS if status == "COMPLETED" else WARNING


def _draw_transaction(
    c: Canvas, frame: PageFrame, model: TransactionCertificateData, stamps: StampImages
) -> None:
    cursor = draw_header(
        c,
        frame,
        frame.top(),
        "TRANSACTION CERTIFICATE",
        f"Certificate ID: {model.certificate_id}",
    )

    cursor = draw_section_title(c, frame, cursor, "Investor Information")
    cursor = draw_box_row(
        c,
        frame,
        cursor,
        [("Investor Name", model.investor_name), ("Investor ID", model.investor_code)],
    )

    cursor = draw_section_title(c, frame, cursor, "Property Information")
    cursor = draw_box_row(
        c,
        frame,
        cursor,
        [
            ("Property Name", model.property_name),
            ("Property Code", model.property_display_code),
        ],
    )

    cursor = draw_section_title(c, frame, cursor, "Transaction Details")
    cursor = draw_box_row(
        c,
        frame,
        cursor,
        [
            ("Transaction ID", model.transaction_display_code),
            ("Date", model.transaction_date),
        ],
    )
    cursor = draw_box_row(
        c,
        frame,
        cursor,
        [
            ("Type", model.transaction_type),
            (
                "Status",
                model.transaction_status,
                _status_color(model.transaction_status),
            ),
        ],
    )

    content, cursor = draw_highlight_box(
        c, frame, cursor, "Investment Details", BOX_HEIGHT
    )
    draw_box_row(
        c,
        frame,
        content,
        [
            ("Tokens Purchased", model.tokens_purchased),
            ("Token Price (USDT)", model.token_price),
            ("Total Amount (USDT)", model.total_amount),
        ],
        x=frame.left + BOX_GAP,
        width=frame.content_width - 2 * BOX_GAP,
        fill=ACCENT_LIGHT,
    )

    if model.blockchain_hash:
        cursor = draw_section_title(c, frame, cursor, "Blockchain Verification")
        cursor = draw_paragraph(
            c, frame, cursor, f"Network: {model.blockchain_network or 'N/A'}"
        )
        cursor = draw_paragraph(
            c, frame, cursor, model.blockchain_hash, font=FONT_MONO, size=8
        )

    new_page(c, frame)
    draw_stamps(c, frame, stamps.present())
    draw_footer(
        c,
        frame,
        [
            f"Certificate ID: {model.certificate_id}",
            f"Generated: {model.generated_at}",
        ],
        [f"Document Hash: {model.short_hash}", "Verification: Valid"],
    )


def _history_columns(frame: PageFrame) -> list[Column]:
    return [
        Column(title, frame.content_width * share)
        for title, share in _HISTORY_COLUMN_SHARES
    ]


def _draw_portfolio(
    c: Canvas, frame: PageFrame, model: PortfolioSummaryData, stamps: StampImages
) -> None:
    cursor = draw_header(
        c,
        frame,
        frame.top(),
        "PORTFOLIO SUMMARY",
        f"Certificate ID: {model.certificate_id}",
    )

    cursor = draw_section_title(c, frame, cursor, "Investor Information")
    cursor = draw_box_row(
        c,
        frame,
        cursor,
        [("Investor Name", model.investor_name), ("Investor ID", model.investor_code)],
    )

    cursor = draw_section_title(c, frame, cursor, "Property Information")
    cursor = draw_box_row(
        c,
        frame,
        cursor,
        [
            ("Property Name", model.property_name),
            ("Property Code", model.property_display_code),
        ],
    )
    cursor = draw_box_row(
        c,
        frame,
        cursor,
        [
            ("Location", model.property_location),
            ("Expected ROI", f"{model.expected_roi}%"),
        ],
    )

    content, cursor = draw_highlight_box(
        c, frame, cursor, "Portfolio Summary", 2 * TILE_HEIGHT
    )
    draw_summary_grid(
        c,
        frame,
        content,
        frame.left,
        frame.content_width,
        [
            ("Total Tokens Owned", model.total_tokens),
            ("Total Invested (USDT)", model.total_invested),
            ("Average Price (USDT)", model.average_price),
            ("Ownership", f"{model.ownership_percentage}%"),
        ],
    )

    cursor = draw_section_title(c, frame, cursor, "Transaction History")
    if model.transactions:
        draw_banded_table(
            c,
            frame,
            cursor,
            _history_columns(frame),
            [
                (row.date, row.display_code, row.tokens, row.amount, row.status)
                for row in model.transactions
            ],
        )
    else:
        draw_paragraph(
            c, frame, cursor, "No completed transactions recorded.", color=MUTED
        )

    new_page(c, frame)
    draw_stamps(c, frame, stamps.present())
    draw_footer(
        c,
        frame,
        [
            f"Certificate ID: {model.certificate_id}",
            f"Generated: {model.generated_at}",
        ],
        [f"Property: {model.property_display_code}", "Verification: Valid"],
    )


def render_certificate_pdf(
    model: CertificateData,
    stamps: StampImages,
    frame: PageFrame | None = None,
) -> bytes:
    """Draw a certificate and return the finished PDF bytes."""
    frame = frame or PageFrame()
    buffer = BytesIO()
    c = Canvas(buffer, pagesize=(frame.width, frame.height))
    c.setTitle(model.certificate_id)

    if isinstance(model, TransactionCertificateData):
        _draw_transaction(c, frame, model, stamps)
    else:
        _draw_portfolio(c, frame, model, stamps)

    c.showPage()
    c.save()
    return buffer.getvalue()


class VectorRenderer:
    """Certificate renderer backed by ReportLab."""

    name = "vector"

    def __init__(self, frame: PageFrame | None = None) -> None:
        self.frame = frame or PageFrame()

    async def render(
        self, kind: CertificateKind, model: CertificateData, stamps: StampImages
    ) -> bytes:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, render_certificate_pdf, model, stamps, self.frame
            )
        except Exception as e:
            raise RenderFailure(self.name, str(e) or type(e).__name__) from e

