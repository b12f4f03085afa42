from __future__ import annotations

from django import template
from django.utils.html import conditional_escape
from django.utils.safestring import mark_safe

from ..formatting import format_money, format_percent

register = template.Library()


@register.filter
def money(value):
    """Render a number as a grouped currency amount."""
    try:
        return format_money(float(value))
    except (TypeError, ValueError):
        return ""


@register.filter
def percent(value):
    try:
        return format_percent(float(value))
    except (TypeError, ValueError):
        return ""


@register.filter(needs_autoescape=True)
def explanation_html(value, autoescape=True):
    """Escape an explanation and turn its newlines into <br> tags."""
    if value is None:
        return ""
    text = conditional_escape(value) if autoescape else str(value)
    return mark_safe("<br>".join(str(text).split("\n")))
