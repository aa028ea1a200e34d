from app.services.notification_template_renderer import (
    format_cents,
    plural_days,
    render_template_text,
)


def test_render_template_text_substitutes_variables():
    rendered = render_template_text(
        "Hello {{company_name}}. Your trial ends in {{ days_remaining }} days.",
        {"company_name": "Acme", "days_remaining": 3},
    )
    assert rendered == "Hello Acme. Your trial ends in 3 days."


def test_render_template_text_keeps_unknown_variables():
    rendered = render_template_text("Hi {{known}} {{unknown}}", {"known": "x"})
    assert rendered == "Hi x {{unknown}}"


def test_render_template_text_escapes_html():
    rendered = render_template_text("<p>{{name}}</p>", {"name": "<b>Bob & Co</b>"}, escape=True)
    assert rendered == "<p>&lt;b&gt;Bob &amp; Co&lt;/b&gt;</p>"


def test_render_template_text_empty():
    assert render_template_text(None, {"a": 1}) == ""


def test_format_cents():
    assert format_cents(2900) == "$29.00"
    assert format_cents(None) == "$0.00"
    assert format_cents("bad") == "$0.00"


def test_plural_days():
    assert plural_days(1) == "day"
    assert plural_days(0) == "days"
