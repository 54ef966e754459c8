"""Locale utilities for market-specific copy."""

from typing import Union

# Locale keys used by localized copy in rules.json
LOCALE_AU = "au"
DEFAULT_LOCALE = "default"


def locale_for(is_australian: bool) -> str:
    """Pick the copy variant for a user."""
    return LOCALE_AU if is_australian else DEFAULT_LOCALE


def get_localized(
    obj: Union[dict, str, None],
    locale: str = DEFAULT_LOCALE,
    fallback: str = ""
) -> str:
    """
    Get a localized string from a {default: ..., au: ...} dictionary.

    Args:
        obj: Either a string (returned as-is) or a dict with locale keys
        locale: Target locale ("default" or "au")
        fallback: Value to return if key not found

    Returns:
        Localized string
    """
    if obj is None:
        return fallback

    if isinstance(obj, str):
        return obj

    if isinstance(obj, dict):
        # Try requested locale, fall back to default copy, then fallback value
        value = obj.get(locale)
        if value is None:
            value = obj.get(DEFAULT_LOCALE)
        return fallback if value is None else value

    return fallback

