"""Shared parsing helpers for request payloads.

parse_date_input:  strict date parsing (raises ValueError on bad input)
parse_id:          positive integer id or None
parse_id_list:     de-duplicated list of positive integer ids
"""
from datetime import date, datetime


def parse_date_input(value):
    """Parse a date string, raising ValueError on bad input.

    Supports: YYYY-MM-DD, YYYY-MM-DDTHH:MM:SS, DD.MM.YYYY, date objects.
    Empty input returns None.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    try:
        return datetime.strptime(text, "%d.%m.%Y").date()
    except ValueError as exc:
        raise ValueError(
            "Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY."
        ) from exc


def parse_id(value):
    """Return *value* as a positive int, None for empty input.

    Raises ValueError for anything else.
    """
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid id: {value!r}")
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid id: {value!r}") from exc
    if number <= 0:
        raise ValueError(f"Invalid id: {value!r}")
    return number


def parse_id_list(values):
    """Parse a list of ids, dropping duplicates while keeping order."""
    if values in (None, ""):
        return []
    if not isinstance(values, (list, tuple)):
        raise ValueError("Expected a list of ids")
    ids = []
    for value in values:
        number = parse_id(value)
        if number is not None and number not in ids:
            ids.append(number)
    return ids
