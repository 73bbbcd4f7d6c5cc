import html as html_lib
import re
from datetime import date

from apps.invoices.money import format_currency, round_percentage

ORDINAL_RE = re.compile(r"(\d+)(?:st|nd|rd|th)", re.IGNORECASE)
UNORDERED_POSITION = 999

CONTINUATION_MARKER = "\n\n[Content continues in full contract...]"


def ordinal_position(description) -> int:
    match = ORDINAL_RE.search(description or "")
    if not match:
        return UNORDERED_POSITION
    return int(match.group(1))


def sort_schedules(schedules):
    return sorted(
        schedules,
        key=lambda s: (ordinal_position(s.description), s.due_date is None, s.due_date or date.min),
    )


def format_date(value, placeholder="Not set") -> str:
    if not value:
        return placeholder
    return f"{value:%b} {value.day}, {value.year}"


def schedule_row(schedule, currency="USD"):
    return {
        "id": str(schedule.id),
        "description": schedule.description or "Payment",
        "due_date": format_date(schedule.due_date),
        "percentage": f"{round_percentage(schedule.percentage)}%",
        "amount": format_currency(schedule.amount, currency),
        "status": str(schedule.status).upper(),
        "payment_date": format_date(schedule.payment_date, placeholder="-"),
    }


def build_schedule_rows(schedules, currency="USD"):
    return [schedule_row(schedule, currency) for schedule in sort_schedules(schedules)]


def strip_html(text) -> str:
    """Flatten rich-text HTML into plain text, keeping paragraphs and list bullets."""
    if not text:
        return ""
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(p|h[1-6])>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(div|li)>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<li[^>]*>", "• ", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]*>", "", text)
    text = html_lib.unescape(text).replace("\xa0", " ")

    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def truncate_at_paragraph(text, limit):
    """Cut long text at the last paragraph, sentence or word boundary before ``limit``.

    Returns ``(content, was_truncated)``.
    """
    if len(text) <= limit:
        return text, False

    window = text[:limit]
    paragraph_break = max(window.rfind("\n\n"), window.rfind("\n• "))
    if paragraph_break > limit * 0.7:
        return text[:paragraph_break].strip() + CONTINUATION_MARKER, True

    sentence_end = max(window.rfind(". "), window.rfind(".\n"))
    if sentence_end > limit * 0.8:
        return text[: sentence_end + 1].strip() + CONTINUATION_MARKER, True

    last_space = window.rfind(" ")
    cut = last_space if last_space > limit * 0.9 else limit
    return text[:cut].strip() + CONTINUATION_MARKER, True


def split_paragraphs(text):
    """Split plain text into ``(paragraph, is_heading)`` pairs."""
    paragraphs = []
    for chunk in text.split("\n\n"):
        paragraph = chunk.strip()
        if not paragraph:
            continue
        is_heading = len(paragraph) < 100 and (
            "**" in paragraph or re.fullmatch(r"[A-Z][^.]*", paragraph) is not None or paragraph.endswith(":")
        )
        paragraphs.append((paragraph.replace("**", ""), is_heading))
    return paragraphs
