"""String helpers for converting between schema keys, titles and category keys."""

from __future__ import annotations

import re

_WORD_SPLIT = re.compile(r"[_\s\-]+")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def key_to_title(key: str) -> str:
    """Convert a property key to a display title.

    ``client_name`` -> ``Client Name``, ``clientName`` -> ``Client Name``.
    """
    spaced = _CAMEL_BOUNDARY.sub(" ", key or "")
    words = [w for w in _WORD_SPLIT.split(spaced) if w]
    return " ".join(w[:1].upper() + w[1:] for w in words)


def snake_case(value: str) -> str:
    """Convert a title or camelCase string to snake_case.

    ``Patient Identification`` -> ``patient_identification``.
    """
    spaced = _CAMEL_BOUNDARY.sub("_", (value or "").strip())
    snake = re.sub(r"[^a-zA-Z0-9]+", "_", spaced)
    return re.sub(r"_+", "_", snake).strip("_").lower()


def truncate(value: str, limit: int = 255) -> str:
    return value if len(value) <= limit else value[:limit]
