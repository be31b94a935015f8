"""Directory scans standing in for an index of existing backup folders.

Folders are identified purely by name: ``<YYYY-MM-DD> <number> <title>``.
Every lookup the reconciler performs goes through
:func:`list_candidate_folders`, so a real metadata index can replace the
name matching later without touching the reconciliation logic.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Collection

from .metadata import read_metadata

FOLDER_NAME_RE = re.compile(r"^(?P<date>\d{4}-\d{2}-\d{2})\s+(?P<token>\d+)\s+(?P<title>.*)$")


@dataclass(frozen=True)
class FolderInfo:
    path: Path
    name: str
    date: str | None
    token: str | None
    title: str | None
    mtime: float

    @property
    def token_id(self) -> int | None:
        if self.token is None:
            return None
        return int(self.token)


def list_candidate_folders(base: Path, pattern: re.Pattern[str]) -> list[FolderInfo]:
    """Return immediate subdirectories of ``base`` whose name matches ``pattern``.

    Named groups ``date``, ``token`` and ``title`` are picked up when the
    pattern defines them. The result is sorted by folder name.
    """

    try:
        entries = sorted(base.iterdir(), key=lambda p: p.name)
    except FileNotFoundError:
        return []

    found: list[FolderInfo] = []
    for entry in entries:
        if not entry.is_dir():
            continue
        match = pattern.match(entry.name)
        if not match:
            continue
        groups = match.groupdict()
        try:
            mtime = entry.stat().st_mtime
        except FileNotFoundError:
            continue
        found.append(
            FolderInfo(
                path=entry,
                name=entry.name,
                date=groups.get("date"),
                token=groups.get("token"),
                title=groups.get("title"),
                mtime=mtime,
            )
        )
    return found


def legacy_pattern(date: str, safe_name: str) -> re.Pattern[str]:
    return re.compile(
        rf"^(?P<date>{re.escape(date)})\s+(?P<token>\d+)\s+(?P<title>{re.escape(safe_name)})$"
    )


def find_legacy_folder(
    base: Path,
    date: str,
    safe_name: str,
    record_id: int,
    known_ids: Collection[int] = (),
) -> FolderInfo | None:
    """Find a folder from the old naming scheme for ``(date, safe_name)``.

    The old scheme put an unrelated number where the id now sits, so a
    numeric token other than the record's own id counts as legacy. Folders
    whose token is another recording of the same listing (``known_ids``),
    or whose ``metadata.json`` carries the token as its id, were written by
    this tool and are canonical for that other recording.
    """

    for info in list_candidate_folders(base, legacy_pattern(date, safe_name)):
        token_id = info.token_id
        if token_id == record_id or token_id in known_ids:
            continue
        stored = read_metadata(info.path)
        if stored is not None and stored.get("id") == token_id:
            continue
        return info
    return None


def folders_for_id(base: Path, record_id: int) -> list[FolderInfo]:
    return [
        info
        for info in list_candidate_folders(base, FOLDER_NAME_RE)
        if info.token_id == record_id
    ]
