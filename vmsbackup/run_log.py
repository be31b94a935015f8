"""Console logging plus a per-run transcript file."""
from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

LOGGER_NAME = "vms_backup"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
TRANSCRIPT_PREFIX = "backup-"

_installed: list[logging.Handler] = []


def _prune_transcripts(log_dir: Path, keep: int) -> None:
    if keep <= 0:
        return
    transcripts = sorted(log_dir.glob(f"{TRANSCRIPT_PREFIX}*.log"))
    for stale in transcripts[:-keep]:
        try:
            stale.unlink()
        except OSError as exc:
            logging.getLogger(LOGGER_NAME).warning("could not prune transcript %s: %s", stale, exc)


def configure_logging(cfg: Mapping[str, Any], started_at: datetime | None = None) -> Path | None:
    """Attach console and transcript handlers; return the transcript path."""

    close_logging()
    log_cfg = cfg.get("logging", {}) or {}
    level = logging.DEBUG if log_cfg.get("dev_mode") else logging.INFO
    formatter = logging.Formatter(LOG_FORMAT)

    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(level)
    log.propagate = False

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    log.addHandler(console)
    _installed.append(console)

    log_dir_value = str(cfg.get("paths", {}).get("log_dir") or "").strip()
    if not log_cfg.get("transcript") or not log_dir_value:
        return None

    log_dir = Path(log_dir_value).expanduser()
    stamp = (started_at or datetime.now()).strftime("%Y%m%d-%H%M%S")
    transcript = log_dir / f"{TRANSCRIPT_PREFIX}{stamp}.log"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(transcript, encoding="utf-8")
    except OSError as exc:
        log.warning("transcript disabled, cannot write to %s: %s", log_dir, exc)
        return None
    handler.setFormatter(formatter)
    log.addHandler(handler)
    _installed.append(handler)

    _prune_transcripts(log_dir, int(log_cfg.get("keep_transcripts") or 0))
    return transcript


def close_logging() -> None:
    log = logging.getLogger(LOGGER_NAME)
    while _installed:
        handler = _installed.pop()
        handler.flush()
        log.removeHandler(handler)
        handler.close()
    log.propagate = True
