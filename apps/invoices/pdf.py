"""
Invoice PDF layout.

Draws an ``InvoiceDocument`` onto A4 pages with reportlab. Positions are kept in
millimetres measured from the top of the page and converted when drawing.
Text mixing Latin and CJK characters is split into runs so every run is drawn
and measured with a font that has its glyphs.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from functools import lru_cache
from io import BytesIO

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.cidfonts import UnicodeCIDFont
from reportlab.pdfgen import canvas

from apps.invoices.money import format_currency
from apps.invoices.presentation import format_date, split_paragraphs, strip_html, truncate_at_paragraph

logger = logging.getLogger(__name__)

LATIN_FONT = "Helvetica"
LATIN_BOLD_FONT = "Helvetica-Bold"
CJK_FONT = "STSong-Light"

PAGE_HEIGHT = A4[1] / mm
LEFT = 15
RIGHT = 195
CENTER = 105
TEXT_WIDTH = RIGHT - LEFT
TOP = 15
BOTTOM = 275
FOOTER_Y = 285

CONTRACT_TERMS_LIMIT = 50000

CJK_RANGES = "⺀-⿿　-ヿ㄀-ㇿ㐀-䶿一-鿿豈-﫿＀-￯"
CJK_RUN_RE = re.compile(f"([{CJK_RANGES}]+)")
TOKEN_RE = re.compile(f"[{CJK_RANGES}]|[^\\s{CJK_RANGES}]+\\s*|\\s+")

ITEM_COLUMNS = (
    ("Item", LEFT, "left"),
    ("Qty", 120, "left"),
    ("Rate", 140, "left"),
    ("Amount", RIGHT, "right"),
)
SCHEDULE_COLUMNS = (
    ("Description", LEFT, "left"),
    ("Due Date", 64, "left"),
    ("Percentage", 116, "right"),
    ("Amount", 148, "right"),
    ("Status", 154, "left"),
    ("Paid On", 174, "left"),
)


@lru_cache(maxsize=None)
def register_fonts():
    if CJK_FONT not in pdfmetrics.getRegisteredFontNames():
        pdfmetrics.registerFont(UnicodeCIDFont(CJK_FONT))


def text_runs(text):
    """Split ``text`` into ``(segment, is_cjk)`` pairs."""
    return [(segment, bool(index % 2)) for index, segment in enumerate(CJK_RUN_RE.split(text)) if segment]


def font_for(is_cjk, bold=False):
    if is_cjk:
        return CJK_FONT
    return LATIN_BOLD_FONT if bold else LATIN_FONT


def measure(text, size, bold=False):
    register_fonts()
    points = sum(pdfmetrics.stringWidth(segment, font_for(is_cjk, bold), size) for segment, is_cjk in text_runs(text))
    return points / mm


def wrap_text(text, max_width, size, bold=False):
    lines = []
    for paragraph in (text or "").split("\n"):
        current = ""
        for token in TOKEN_RE.findall(paragraph):
            if current and measure((current + token).rstrip(), size, bold) > max_width:
                lines.append(current.rstrip())
                current = token.lstrip()
            else:
                current += token
            while len(current) > 1 and measure(current.rstrip(), size, bold) > max_width:
                cut = len(current) - 1
                while cut > 1 and measure(current[:cut], size, bold) > max_width:
                    cut -= 1
                lines.append(current[:cut])
                current = current[cut:]
        lines.append(current.rstrip())
    return lines


def format_quantity(value):
    quantity = Decimal(str(value))
    return f"{quantity.normalize():f}" if quantity == quantity.to_integral() else f"{quantity:f}"


@dataclass
class InvoiceDocument:
    number: str
    date: date | None
    due_date: date | None
    currency: str
    total: Decimal
    items: list = field(default_factory=list)
    schedule_rows: list = field(default_factory=list)
    company: dict = field(default_factory=dict)
    client: dict = field(default_factory=dict)
    notes: str = ""
    contract_terms: str = ""
    invoice_accepted: bool = False
    contract_accepted: bool = False
    generated_on: date | None = None

    @property
    def acceptance_text(self):
        invoice = "Invoice accepted" if self.invoice_accepted else "Invoice not accepted"
        contract = "Contract terms accepted" if self.contract_accepted else "Contract terms not accepted"
        return f"{invoice} | {contract}"


class _FooterCanvas(canvas.Canvas):
    """Canvas that holds pages back until ``save`` so footers know the page count."""

    def __init__(self, *args, footer=None, **kwargs):
        super().__init__(*args, **kwargs)
        self._footer = footer
        self._saved_page_states = []

    def showPage(self):
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        page_count = len(self._saved_page_states)
        for state in self._saved_page_states:
            self.__dict__.update(state)
            if self._footer:
                self._footer(self, self._pageNumber, page_count)
            super().showPage()
        super().save()


class InvoicePdfRenderer:
    def __init__(self, document: InvoiceDocument):
        self.document = document
        self.canvas = None
        self.y = TOP
        self.page_count = 1

    def render(self) -> bytes:
        register_fonts()
        buffer = BytesIO()
        self.canvas = _FooterCanvas(buffer, pagesize=A4, footer=self._draw_footer)
        self.canvas.setTitle(f"Invoice {self.document.number}")

        self._draw_header()
        self._draw_parties()
        self._draw_items()
        self._draw_schedule()
        self._draw_text_section("PAYMENT METHODS", self.document.company.get("payment_methods", ""))
        self._draw_text_section("NOTES", self.document.notes)
        self._draw_contract_terms()

        self.canvas.showPage()
        self.canvas.save()
        logger.debug("Rendered invoice %s on %s page(s)", self.document.number, self.page_count)
        return buffer.getvalue()

    # -- primitives -----------------------------------------------------

    def draw(self, x, y, text, size=10, bold=False, align="left"):
        text = str(text or "")
        if align == "right":
            x -= measure(text, size, bold)
        elif align == "center":
            x -= measure(text, size, bold) / 2
        cursor = x * mm
        baseline = (PAGE_HEIGHT - y) * mm
        for segment, is_cjk in text_runs(text):
            font = font_for(is_cjk, bold)
            self.canvas.setFont(font, size)
            self.canvas.drawString(cursor, baseline, segment)
            cursor += pdfmetrics.stringWidth(segment, font, size)

    def rule(self, y):
        self.canvas.line(LEFT * mm, (PAGE_HEIGHT - y) * mm, RIGHT * mm, (PAGE_HEIGHT - y) * mm)

    def new_page(self):
        self.canvas.showPage()
        self.page_count += 1
        self.y = TOP

    def ensure_room(self, height):
        if self.y + height > BOTTOM:
            self.new_page()
            return True
        return False

    def write_lines(self, text, size=10, bold=False, line_height=5, width=TEXT_WIDTH):
        for line in wrap_text(text, width, size, bold):
            self.ensure_room(line_height)
            self.draw(LEFT, self.y, line, size=size, bold=bold)
            self.y += line_height

    def section_title(self, title, room=40):
        self.ensure_room(room)
        self.draw(LEFT, self.y, title, size=14, bold=True)
        self.y += 10

    def table_header(self, columns, size=10):
        for label, x, align in columns:
            self.draw(x, self.y, label, size=size, bold=True, align=align)
        self.y += 3
        self.rule(self.y)
        self.y += 6

    # -- sections -------------------------------------------------------

    def _draw_header(self):
        document = self.document
        self.draw(CENTER, 30, "INVOICE", size=24, bold=True, align="center")
        self.draw(LEFT, 45, f"Invoice #: {document.number or 'N/A'}", size=12)
        self.draw(LEFT, 53, f"Date: {format_date(document.date, 'N/A')}", size=12)
        self.draw(LEFT, 61, f"Due Date: {format_date(document.due_date, 'N/A')}", size=12)
        self.y = 75

    def _draw_parties(self):
        bottom = self.y
        for label, party, x in (("From:", self.document.company, LEFT), ("To:", self.document.client, CENTER)):
            if not party:
                continue
            y = self.y
            self.draw(x, y, label, size=12, bold=True)
            y += 7
            self.draw(x, y, party.get("name", ""), size=12)
            y += 7
            for line in wrap_text(party.get("address", ""), 85, 11):
                if line:
                    self.draw(x, y, line, size=11)
                    y += 6
            bottom = max(bottom, y)
        self.y = bottom + 10

    def _draw_items(self):
        self.section_title("INVOICE ITEMS")
        if not self.document.items:
            self.write_lines("No items.")
            self.y += 5
            return

        self.table_header(ITEM_COLUMNS)
        currency = self.document.currency
        for item in self.document.items:
            text = item.get("name") or "Unnamed Item"
            if item.get("description"):
                text += "\n" + strip_html(item["description"])
            lines = wrap_text(text, 100, 10)
            height = max(len(lines) * 4.5, 8)
            if self.ensure_room(height):
                self.table_header(ITEM_COLUMNS)
            for index, line in enumerate(lines):
                self.draw(LEFT, self.y + index * 4.5, line, size=10, bold=index == 0)
            self.draw(120, self.y, format_quantity(item.get("quantity", 1)))
            self.draw(140, self.y, format_currency(item.get("rate", 0), currency))
            self.draw(RIGHT, self.y, format_currency(item.get("amount", 0), currency), align="right")
            self.y += height + 2

        self.ensure_room(15)
        self.y += 2
        self.rule(self.y)
        self.y += 7
        self.draw(140, self.y, "TOTAL:", bold=True)
        self.draw(RIGHT, self.y, format_currency(self.document.total, currency), bold=True, align="right")
        self.y += 15

    def _draw_schedule(self):
        rows = self.document.schedule_rows
        if not rows:
            return
        self.section_title("PAYMENT SCHEDULE", room=60)
        self.table_header(SCHEDULE_COLUMNS, size=9)
        for row in rows:
            lines = wrap_text(row["description"], 46, 9)
            height = max(len(lines) * 4.5, 7)
            if self.ensure_room(height):
                self.table_header(SCHEDULE_COLUMNS, size=9)
            for index, line in enumerate(lines):
                self.draw(LEFT, self.y + index * 4.5, line, size=9)
            self.draw(64, self.y, row["due_date"], size=9)
            self.draw(116, self.y, row["percentage"], size=9, align="right")
            self.draw(148, self.y, row["amount"], size=9, align="right")
            self.draw(154, self.y, row["status"], size=9)
            self.draw(174, self.y, row["payment_date"], size=9)
            self.y += height + 1
        self.y += 10

    def _draw_text_section(self, title, content):
        text = strip_html(content)
        if not text:
            return
        self.section_title(title)
        self.write_lines(text, size=10, line_height=5)
        self.y += 10

    def _draw_contract_terms(self):
        text = strip_html(self.document.contract_terms)
        if not text:
            return
        if len(text) > 20000:
            logger.warning("Contract terms for invoice %s are very long: %s chars", self.document.number, len(text))
        text, truncated = truncate_at_paragraph(text, CONTRACT_TERMS_LIMIT)
        if truncated:
            logger.warning("Contract terms for invoice %s were truncated", self.document.number)

        self.section_title("CONTRACT TERMS", room=60)
        for paragraph, is_heading in split_paragraphs(text):
            if is_heading:
                self.write_lines(paragraph, size=10, bold=True, line_height=6)
                self.y += 2
            else:
                self.write_lines(paragraph, size=9, line_height=4)
                self.y += 5

    def _draw_footer(self, footer_canvas, page_number, page_count):
        generated_on = self.document.generated_on or date.today()
        baseline = (PAGE_HEIGHT - FOOTER_Y) * mm
        footer_canvas.setFont(LATIN_FONT, 8)
        footer_canvas.setFillGray(0.5)
        footer_canvas.drawString(LEFT * mm, baseline, f"Generated on {format_date(generated_on)}")
        footer_canvas.drawCentredString(CENTER * mm, baseline, self.document.acceptance_text)
        footer_canvas.drawRightString(RIGHT * mm, baseline, f"Page {page_number} of {page_count}")
        footer_canvas.setFillGray(0)


def render_invoice_pdf(document: InvoiceDocument) -> bytes:
    return InvoicePdfRenderer(document).render()
