# helpers.py
# Request-body parsing shared by the blueprints.

from flask import request


def json_body():
    """The request's JSON object, or {} when the body is missing, malformed or not an object."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def text_field(data, key):
    """A stripped string field; anything that is not a string reads as empty."""
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ''


def optional_text(data, key):
    """Like text_field, but None for a missing or blank value. Raises TypeError for non-strings."""
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value.strip() or None
