"""Metadata sidecars stored next to backed up recordings."""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any, Iterable

METADATA_FILENAME = "metadata.json"


def write_json_atomic(path: Path, payload: Any) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2, sort_keys=True)
            handle.write("\n")
        os.replace(tmp_path, path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


def write_metadata_once(folder: str | os.PathLike[str], snapshot: dict[str, Any]) -> bool:
    """Write ``snapshot`` into ``folder`` unless a metadata file already exists.

    Returns ``True`` when the file was written.
    """

    destination = Path(folder) / METADATA_FILENAME
    if destination.exists():
        return False
    write_json_atomic(destination, snapshot)
    return True


def read_metadata(folder: str | os.PathLike[str]) -> dict[str, Any] | None:
    path = Path(folder) / METADATA_FILENAME
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recording metadata utilities")
    subparsers = parser.add_subparsers(dest="command", required=True)

    show = subparsers.add_parser("show", help="Print the metadata stored in a backup folder")
    show.add_argument("folder", help="Path to the recording folder")
    return parser


def _dispatch(args: argparse.Namespace) -> int:
    if args.command == "show":
        payload = read_metadata(args.folder)
        if payload is None:
            return 1
        print(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True))
        return 0
    return 1


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return _dispatch(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
