"""Canonical folder naming for backed up recordings."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Recording

REPLACEMENT_CHAR = "-"

# Characters rejected in file names by Windows/SMB shares, plus control codes.
_ILLEGAL_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def sanitize(name: str) -> str:
    """Replace every character that is illegal in a path component with ``-``."""

    return _ILLEGAL_CHARS_RE.sub(REPLACEMENT_CHAR, str(name))


def _utc(epoch_seconds: int) -> datetime:
    return datetime.fromtimestamp(int(epoch_seconds), tz=timezone.utc)


def iso_date(epoch_seconds: int) -> str:
    return _utc(epoch_seconds).strftime("%Y-%m-%d")


def year_bucket(epoch_seconds: int) -> str:
    return _utc(epoch_seconds).strftime("%Y")


def canonical_folder_name(record: "Recording") -> str:
    return f"{iso_date(record.created_at)} {record.id} {sanitize(record.name)}"


def team_folder_name(team: str) -> str:
    return sanitize(team).strip() or REPLACEMENT_CHAR
