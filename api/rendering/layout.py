"""Coordinate-driven drawing primitives on a ReportLab canvas.

ReportLab measures y upward from the bottom edge. Primitives here take a
top-down ``Cursor`` instead (distance from the top edge of the page) and
return the cursor for whatever comes next, so a document reads as a straight
sequence of calls:

    cursor = draw_section_title(c, frame, cursor, "Investor Information")
    cursor = draw_box_row(c, frame, cursor, [("Name", name), ("ID", code)])
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from io import BytesIO

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen.canvas import Canvas

logger = logging.getLogger(__name__)

FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
FONT_MONO = "Courier"

ACCENT = colors.HexColor("#1e3a8a")
ACCENT_LIGHT = colors.HexColor("#eff6ff")
BAND = colors.HexColor("#f3f4f6")
BORDER = colors.HexColor("#d1d5db")
MUTED = colors.HexColor("#6b7280")
TEXT = colors.HexColor("#111827")
SUCCESS = colors.HexColor("#047857")
WARNING = colors.HexColor("#b45309")

BOX_INSET = 12
VALUE_OFFSET = 35
LABEL_SIZE = 8
VALUE_SIZE = 12
BOX_HEIGHT = 58
BOX_GAP = 10

TILE_HEIGHT = 56
TILE_LABEL_SIZE = 8
TILE_VALUE_SIZE = 16

ROW_HEIGHT = 20
CELL_PADDING = 6
TABLE_TEXT_SIZE = 9

STAMP_SIZE = 120
STAMP_GAP = 40

ELLIPSIS = "..."


@dataclass(frozen=True)
class Cursor:
    """Vertical position measured down from the top edge of the page."""

    y: float

    def advance(self, dy: float) -> "Cursor":
        return Cursor(self.y + dy)


@dataclass(frozen=True)
class PageFrame:
    """Page size and margins (A4, 20mm top/bottom, 15mm left/right)."""

    width: float = A4[0]
    height: float = A4[1]
    margin_top: float = 20 * mm
    margin_bottom: float = 20 * mm
    margin_x: float = 15 * mm

    @property
    def left(self) -> float:
        return self.margin_x

    @property
    def right(self) -> float:
        return self.width - self.margin_x

    @property
    def content_width(self) -> float:
        return self.width - 2 * self.margin_x

    @property
    def bottom_limit(self) -> float:
        """Lowest cursor position content may reach."""
        return self.height - self.margin_bottom

    def top(self) -> Cursor:
        return Cursor(self.margin_top)

    def canvas_y(self, y: float) -> float:
        return self.height - y

    def fits(self, cursor: Cursor, height: float) -> bool:
        return cursor.y + height <= self.bottom_limit


@dataclass(frozen=True)
class Column:
    title: str
    width: float


def clip_text(text: str, font: str, size: float, max_width: float) -> str:
    """Truncate ``text`` with an ellipsis so it renders within ``max_width``."""
    if stringWidth(text, font, size) <= max_width:
        return text
    if stringWidth(ELLIPSIS, font, size) > max_width:
        return ""
    lo, hi = 0, len(text)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if stringWidth(text[:mid] + ELLIPSIS, font, size) <= max_width:
            lo = mid
        else:
            hi = mid - 1
    return text[:lo].rstrip() + ELLIPSIS


def wrap_text(text: str, font: str, size: float, max_width: float) -> list[str]:
    """Greedy word wrap; words wider than a line are broken by character."""
    lines: list[str] = []
    current = ""
    for word in text.split():
        candidate = f"{current} {word}" if current else word
        if stringWidth(candidate, font, size) <= max_width:
            current = candidate
            continue
        if current:
            lines.append(current)
        current = ""
        for ch in word:
            if stringWidth(current + ch, font, size) > max_width and current:
                lines.append(current)
                current = ""
            current += ch
    if current:
        lines.append(current)
    return lines


def new_page(c: Canvas, frame: PageFrame) -> Cursor:
    c.showPage()
    return frame.top()


def draw_header(
    c: Canvas, frame: PageFrame, cursor: Cursor, title: str, subtitle: str
) -> Cursor:
    """Accent bar, centred title, and a muted subtitle line."""
    c.setFillColor(ACCENT)
    c.rect(
        frame.left,
        frame.canvas_y(cursor.y + 4),
        frame.content_width,
        4,
        stroke=0,
        fill=1,
    )

    c.setFont(FONT_BOLD, 20)
    c.setFillColor(ACCENT)
    c.drawCentredString(frame.width / 2, frame.canvas_y(cursor.y + 32), title)

    c.setFont(FONT, 10)
    c.setFillColor(MUTED)
    c.drawCentredString(frame.width / 2, frame.canvas_y(cursor.y + 50), subtitle)

    c.setStrokeColor(BORDER)
    c.setLineWidth(0.5)
    rule_y = frame.canvas_y(cursor.y + 62)
    c.line(frame.left, rule_y, frame.right, rule_y)
    return cursor.advance(76)


def draw_section_title(
    c: Canvas, frame: PageFrame, cursor: Cursor, title: str
) -> Cursor:
    c.setFont(FONT_BOLD, 11)
    c.setFillColor(ACCENT)
    c.drawString(frame.left, frame.canvas_y(cursor.y + 11), title.upper())
    return cursor.advance(20)


def draw_labeled_box(
    c: Canvas,
    frame: PageFrame,
    cursor: Cursor,
    x: float,
    width: float,
    label: str,
    value: str,
    *,
    height: float = BOX_HEIGHT,
    fill: colors.Color | None = None,
    value_color: colors.Color | None = None,
) -> Cursor:
    """Bordered box with a small label and a larger value below it.

    The label sits at a fixed inset from the box's top-left corner and the
    value at a fixed offset below the label, independent of box height.
    """
    c.setStrokeColor(BORDER)
    c.setLineWidth(0.75)
    if fill is not None:
        c.setFillColor(fill)
    c.rect(
        x,
        frame.canvas_y(cursor.y + height),
        width,
        height,
        stroke=1,
        fill=1 if fill is not None else 0,
    )

    label_top = cursor.y + BOX_INSET
    inner_width = width - 2 * BOX_INSET

    c.setFont(FONT, LABEL_SIZE)
    c.setFillColor(MUTED)
    c.drawString(
        x + BOX_INSET,
        frame.canvas_y(label_top + LABEL_SIZE),
        clip_text(label.upper(), FONT, LABEL_SIZE, inner_width),
    )

    c.setFont(FONT_BOLD, VALUE_SIZE)
    c.setFillColor(value_color or TEXT)
    c.drawString(
        x + BOX_INSET,
        frame.canvas_y(label_top + VALUE_OFFSET),
        clip_text(value, FONT_BOLD, VALUE_SIZE, inner_width),
    )
    return cursor.advance(height)


def draw_box_row(
    c: Canvas,
    frame: PageFrame,
    cursor: Cursor,
    cells: Sequence[tuple[str, str] | tuple[str, str, colors.Color]],
    *,
    x: float | None = None,
    width: float | None = None,
    fill: colors.Color | None = None,
) -> Cursor:
    """Labeled boxes side by side in equal-width columns."""
    if not cells:
        return cursor
    left = frame.left if x is None else x
    total = frame.content_width if width is None else width
    box_width = (total - BOX_GAP * (len(cells) - 1)) / len(cells)

    for i, cell in enumerate(cells):
        label, value = cell[0], cell[1]
        value_color = cell[2] if len(cell) > 2 else None
        draw_labeled_box(
            c,
            frame,
            cursor,
            left + i * (box_width + BOX_GAP),
            box_width,
            label,
            value,
            fill=fill,
            value_color=value_color,
        )
    return cursor.advance(BOX_HEIGHT + BOX_GAP)


def draw_summary_tile(
    c: Canvas,
    frame: PageFrame,
    cursor: Cursor,
    x: float,
    width: float,
    label: str,
    value: str,
) -> Cursor:
    """Centred label over a centred large bold value."""
    centre = x + width / 2
    inner_width = width - 2 * CELL_PADDING

    c.setFont(FONT, TILE_LABEL_SIZE)
    c.setFillColor(MUTED)
    c.drawCentredString(
        centre,
        frame.canvas_y(cursor.y + 14),
        clip_text(label.upper(), FONT, TILE_LABEL_SIZE, inner_width),
    )

    c.setFont(FONT_BOLD, TILE_VALUE_SIZE)
    c.setFillColor(ACCENT)
    c.drawCentredString(
        centre,
        frame.canvas_y(cursor.y + 40),
        clip_text(value, FONT_BOLD, TILE_VALUE_SIZE, inner_width),
    )
    return cursor.advance(TILE_HEIGHT)


def draw_summary_grid(
    c: Canvas,
    frame: PageFrame,
    cursor: Cursor,
    x: float,
    width: float,
    tiles: Sequence[tuple[str, str]],
) -> Cursor:
    """Tiles laid out two per row, filling rows top to bottom."""
    col_width = width / 2
    rows = (len(tiles) + 1) // 2
    for i, (label, value) in enumerate(tiles):
        row, col = divmod(i, 2)
        draw_summary_tile(
            c,
            frame,
            cursor.advance(row * TILE_HEIGHT),
            x + col * col_width,
            col_width,
            label,
            value,
        )
    return cursor.advance(rows * TILE_HEIGHT)


def draw_highlight_box(
    c: Canvas,
    frame: PageFrame,
    cursor: Cursor,
    title: str,
    content_height: float,
) -> tuple[Cursor, Cursor]:
    """Filled, accent-bordered box reserving room for known content.

    Returns:
        (content cursor, cursor below the box)
    """
    title_height = 26
    padding = 10
    height = title_height + content_height + padding

    c.setStrokeColor(ACCENT)
    c.setFillColor(ACCENT_LIGHT)
    c.setLineWidth(1.25)
    c.roundRect(
        frame.left,
        frame.canvas_y(cursor.y + height),
        frame.content_width,
        height,
        6,
        stroke=1,
        fill=1,
    )

    c.setFont(FONT_BOLD, 11)
    c.setFillColor(ACCENT)
    c.drawString(frame.left + BOX_INSET, frame.canvas_y(cursor.y + 18), title.upper())

    return cursor.advance(title_height), cursor.advance(height + BOX_GAP)


def _draw_row(
    c: Canvas,
    frame: PageFrame,
    cursor: Cursor,
    x: float,
    columns: Sequence[Column],
    cells: Sequence[str],
    *,
    font: str,
    text_color: colors.Color,
    fill: colors.Color | None,
) -> Cursor:
    if fill is not None:
        total = sum(col.width for col in columns)
        c.setFillColor(fill)
        c.rect(
            x,
            frame.canvas_y(cursor.y + ROW_HEIGHT),
            total,
            ROW_HEIGHT,
            stroke=0,
            fill=1,
        )

    c.setFont(font, TABLE_TEXT_SIZE)
    c.setFillColor(text_color)
    col_x = x
    for col, cell in zip(columns, cells, strict=False):
        max_width = col.width - 2 * CELL_PADDING
        c.drawString(
            col_x + CELL_PADDING,
            frame.canvas_y(cursor.y + 13),
            clip_text(str(cell), font, TABLE_TEXT_SIZE, max_width),
        )
        col_x += col.width
    return cursor.advance(ROW_HEIGHT)


def _draw_table_header(
    c: Canvas, frame: PageFrame, cursor: Cursor, x: float, columns: Sequence[Column]
) -> Cursor:
    return _draw_row(
        c,
        frame,
        cursor,
        x,
        columns,
        [col.title for col in columns],
        font=FONT_BOLD,
        text_color=colors.white,
        fill=ACCENT,
    )


def draw_banded_table(
    c: Canvas,
    frame: PageFrame,
    cursor: Cursor,
    columns: Sequence[Column],
    rows: Sequence[Sequence[str]],
    *,
    x: float | None = None,
) -> Cursor:
    """Fixed-width table with an accent header and shaded even rows.

    Rows that would cross the bottom margin continue on a new page, with the
    header repeated.
    """
    left = frame.left if x is None else x

    if not frame.fits(cursor, 2 * ROW_HEIGHT):
        cursor = new_page(c, frame)
    cursor = _draw_table_header(c, frame, cursor, left, columns)

    for index, row in enumerate(rows):
        if not frame.fits(cursor, ROW_HEIGHT):
            cursor = new_page(c, frame)
            cursor = _draw_table_header(c, frame, cursor, left, columns)
        cursor = _draw_row(
            c,
            frame,
            cursor,
            left,
            columns,
            row,
            font=FONT,
            text_color=TEXT,
            fill=BAND if index % 2 == 0 else None,
        )

    return cursor.advance(BOX_GAP)


def draw_paragraph(
    c: Canvas,
    frame: PageFrame,
    cursor: Cursor,
    text: str,
    *,
    font: str = FONT,
    size: float = 9,
    color: colors.Color = TEXT,
    leading: float | None = None,
) -> Cursor:
    leading = leading or size * 1.4
    c.setFont(font, size)
    c.setFillColor(color)
    for line in wrap_text(text, font, size, frame.content_width):
        cursor = cursor.advance(leading)
        c.drawString(frame.left, frame.canvas_y(cursor.y), line)
    return cursor.advance(leading / 2)


def _stamp_reader(name: str, data: bytes) -> ImageReader | None:
    try:
        reader = ImageReader(BytesIO(data))
        reader.getSize()
        return reader
    except Exception as e:
        logger.warning(
            "certificate.stamp.unreadable",
            extra={"stamp": name, "error": str(e)},
        )
        return None


def draw_stamps(
    c: Canvas,
    frame: PageFrame,
    stamps: Sequence[tuple[str, bytes]],
    *,
    title: str = "Regulatory Stamps",
) -> Cursor:
    """Stamps side by side, centred horizontally and on the page height.

    Each stamp is placed independently; an unreadable image leaves its slot
    out and the remaining stamps are re-centred.
    """
    readers = [
        (name, reader)
        for name, data in stamps
        if (reader := _stamp_reader(name, data)) is not None
    ]

    top = (frame.height - STAMP_SIZE) / 2
    c.setFont(FONT_BOLD, 11)
    c.setFillColor(ACCENT)
    c.drawCentredString(frame.width / 2, frame.canvas_y(top - 24), title.upper())

    if not readers:
        return Cursor(top + STAMP_SIZE)

    row_width = len(readers) * STAMP_SIZE + (len(readers) - 1) * STAMP_GAP
    x = (frame.width - row_width) / 2
    for _, reader in readers:
        c.drawImage(
            reader,
            x,
            frame.canvas_y(top + STAMP_SIZE),
            width=STAMP_SIZE,
            height=STAMP_SIZE,
            preserveAspectRatio=True,
            anchor="c",
            mask="auto",
        )
        x += STAMP_SIZE + STAMP_GAP
    return Cursor(top + STAMP_SIZE)


def draw_footer(
    c: Canvas,
    frame: PageFrame,
    left_lines: Sequence[str],
    right_lines: Sequence[str],
) -> None:
    """Two-column footer anchored on the bottom margin."""
    line_height = 12
    rows = max(len(left_lines), len(right_lines))
    top = frame.bottom_limit - rows * line_height

    c.setStrokeColor(BORDER)
    c.setLineWidth(0.5)
    c.line(frame.left, frame.canvas_y(top - 6), frame.right, frame.canvas_y(top - 6))

    c.setFont(FONT, 8)
    c.setFillColor(MUTED)
    half = frame.content_width / 2
    for i, line in enumerate(left_lines):
        c.drawString(
            frame.left,
            frame.canvas_y(top + (i + 1) * line_height),
            clip_text(line, FONT, 8, half - BOX_GAP),
        )
    for i, line in enumerate(right_lines):
        c.drawRightString(
            frame.right,
            frame.canvas_y(top + (i + 1) * line_height),
            clip_text(line, FONT, 8, half - BOX_GAP),
        )
