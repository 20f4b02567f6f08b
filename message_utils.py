"""
HTML building blocks for order emails and admin alerts

Every value that can come from a customer or an admin (domain labels,
rejection notes, ticket messages) goes through escape_html before it is
placed in markup.
"""

import html
from typing import Iterable, Optional, Tuple

EMAIL_BODY_STYLE = "font-family: Arial, sans-serif; line-height: 1.5;"
EMAIL_FOOTER_STYLE = "color: #777; font-size: 12px;"


def escape_html(text) -> str:
    """Escape a value for HTML; None and empty values become an empty string"""
    if text is None or text == "":
        return ""
    return html.escape(str(text))


def format_bold(text: str) -> str:
    return f"<b>{escape_html(text)}</b>" if text else ""


def format_link(text: str, url: Optional[str]) -> str:
    """
    Anchor tag for a call to action (checkout, order status page)

    Falls back to the escaped text alone when no url is known.
    """
    if not url:
        return escape_html(text)
    return f'<a href="{escape_html(url)}">{escape_html(text)}</a>'


def format_detail_rows(rows: Iterable[Tuple[str, Optional[str]]]) -> str:
    """Render label/value pairs as an HTML table, skipping empty values"""
    cells = [
        f"<tr><td><b>{escape_html(label)}</b></td><td>{escape_html(value)}</td></tr>"
        for label, value in rows
        if value not in (None, "")
    ]
    if not cells:
        return ""
    return "<table>" + "".join(cells) + "</table>"


def _status_paragraph(icon: str, title: str, details: Optional[str]) -> str:
    paragraph = f"<p>{icon} {format_bold(title)}</p>"
    if details:
        paragraph += f"<p>{escape_html(details)}</p>"
    return paragraph


def create_success_message(title: str, details: Optional[str] = None) -> str:
    return _status_paragraph("✅", title, details)


def create_info_message(title: str, details: Optional[str] = None) -> str:
    return _status_paragraph("ℹ️", title, details)


def create_warning_message(title: str, details: Optional[str] = None) -> str:
    return _status_paragraph("⚠️", title, details)


def wrap_email_html(heading: str, body_html: str, footer: Optional[str] = None) -> str:
    """Wrap rendered body fragments in a minimal email document"""
    parts = [
        f"<!DOCTYPE html><html><body style=\"{EMAIL_BODY_STYLE}\">",
        f"<h2>{escape_html(heading)}</h2>",
        body_html,
    ]
    if footer:
        parts.append(f"<hr><p style=\"{EMAIL_FOOTER_STYLE}\">{escape_html(footer)}</p>")
    parts.append("</body></html>")
    return "".join(parts)
