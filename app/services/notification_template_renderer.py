"""Template rendering helpers for billing notifications."""

from __future__ import annotations

import html
import re
from collections.abc import Mapping

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")


def render_template_text(
    text: str | None,
    variables: Mapping[str, object] | None = None,
    *,
    escape: bool = False,
) -> str:
    """Render ``{{variable}}`` placeholders in text.

    Unknown placeholders are left unchanged. With ``escape=True`` values are
    HTML-escaped before substitution.
    """
    if not text:
        return ""
    values = {
        str(key): "" if value is None else str(value)
        for key, value in (variables or {}).items()
    }
    if escape:
        values = {key: html.escape(value) for key, value in values.items()}

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in values:
            return values[key]
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, text)


def format_cents(amount_cents: object) -> str:
    try:
        cents = int(amount_cents or 0)
    except (TypeError, ValueError):
        cents = 0
    return f"${cents / 100:.2f}"


def plural_days(days: object) -> str:
    return "day" if days == 1 else "days"
