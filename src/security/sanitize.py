"""Normalisation of client identifiers and filenames taken from requests."""

from __future__ import annotations

import re
from typing import Final

CLIENT_ID_RE: Final = re.compile(r"[^A-Za-z0-9_-]")
_INVALID_NAMES: Final = frozenset({"", ".", ".."})


def sanitize_client(value: str | None) -> str:
    """Drop every character outside ``[A-Za-z0-9_-]``."""
    if not value:
        return ""
    return CLIENT_ID_RE.sub("", value)


def sanitize_filename(value: str | None) -> str:
    """
    Reduce a filename to its final path component.

    Both ``/`` and ``\\`` count as separators so a Windows style path cannot
    smuggle a parent reference. Returns ``""`` when nothing usable is left.
    """
    if not value or "\x00" in value:
        return ""
    name = re.split(r"[/\\]", value.rstrip("/\\"))[-1]
    if name in _INVALID_NAMES:
        return ""
    return name
