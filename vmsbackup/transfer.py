"""Decide whether a recording needs pulling and run rsync when it does."""
from __future__ import annotations

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Protocol

from .errors import BackupError, FilesystemError, TransferError

DEFAULT_FINAL_EXTENSIONS = (".mp4",)
DEFAULT_PLACEHOLDER_EXTENSIONS = (".pending",)
# rsync writes into ".<name>.XXXXXX" and renames on completion.
PARTIAL_SUFFIX_LENGTH = 6


def _normalize_exts(values: Iterable[str]) -> tuple[str, ...]:
    exts: list[str] = []
    for value in values:
        token = str(value).strip().lower()
        if not token:
            continue
        if not token.startswith("."):
            token = f".{token}"
        exts.append(token)
    return tuple(exts)


@dataclass(frozen=True)
class MediaCounts:
    final: int = 0
    placeholders: int = 0


def _id_prefix_re(record_id: int) -> re.Pattern[str]:
    return re.compile(rf"^{record_id}(?!\d)")


def count_media(
    folder: Path,
    record_id: int,
    final_exts: Iterable[str],
    placeholder_exts: Iterable[str],
) -> MediaCounts:
    finals = _normalize_exts(final_exts)
    placeholders = _normalize_exts(placeholder_exts)
    prefix = _id_prefix_re(record_id)

    final_count = 0
    placeholder_count = 0
    try:
        entries = list(folder.iterdir())
    except FileNotFoundError:
        return MediaCounts()
    for entry in entries:
        if not entry.is_file() or not prefix.match(entry.name):
            continue
        suffix = entry.suffix.lower()
        if suffix in finals:
            final_count += 1
        elif suffix in placeholders:
            placeholder_count += 1
    return MediaCounts(final=final_count, placeholders=placeholder_count)


def should_transfer(counts: MediaCounts, camera_count: int, *, metadata_only: bool = False) -> bool:
    """A transfer is due while media is missing and no placeholder is present.

    A placeholder means the appliance has not finalized the recording yet;
    pulling it now would only fetch an incomplete stream again next run.
    """

    if metadata_only:
        return False
    return counts.final < camera_count and counts.placeholders < 1


def remote_source_path(remote_root: str, record_id: int) -> str:
    return f"{remote_root.rstrip('/')}/{record_id}/"


def partial_artifact_re(media_exts: Iterable[str], suffix_length: int = PARTIAL_SUFFIX_LENGTH) -> re.Pattern[str]:
    exts = "|".join(re.escape(ext) for ext in _normalize_exts(media_exts))
    return re.compile(rf"^\..+(?:{exts})\.[A-Za-z0-9]{{{suffix_length}}}$", re.IGNORECASE)


def cleanup_partial_artifacts(
    folder: Path,
    media_exts: Iterable[str],
    *,
    suffix_length: int = PARTIAL_SUFFIX_LENGTH,
    logger: logging.Logger | None = None,
) -> list[Path]:
    """Delete leftovers of interrupted transfers from ``folder``."""

    log = logger or logging.getLogger("vms_backup")
    pattern = partial_artifact_re(media_exts, suffix_length)
    removed: list[Path] = []
    try:
        entries = sorted(folder.iterdir())
    except FileNotFoundError:
        return removed
    for entry in entries:
        if not entry.is_file() or not pattern.match(entry.name):
            continue
        entry.unlink()
        log.info("removed partial transfer artifact %s", entry)
        removed.append(entry)
    return removed


class TransferExecutor(Protocol):
    def transfer(self, remote_host: str, remote_path: str, local_path: Path, dry_run: bool) -> None:
        ...


@dataclass
class RsyncTransferExecutor:
    command: str = "rsync"
    options: Sequence[str] = ("-rt",)
    remote_user: str | None = None
    ssh_identity: str | None = None
    ssh_options: Sequence[str] = ()

    @classmethod
    def from_cfg(cls, transfer_cfg: Mapping[str, Any]) -> "RsyncTransferExecutor":
        options = transfer_cfg.get("options")
        if not isinstance(options, Sequence) or isinstance(options, str):
            options = ["-rt"]
        ssh_options = transfer_cfg.get("ssh_options")
        if not isinstance(ssh_options, Sequence) or isinstance(ssh_options, str):
            ssh_options = []
        return cls(
            command=str(transfer_cfg.get("command") or "rsync").strip() or "rsync",
            options=[str(opt) for opt in options] or ["-rt"],
            remote_user=str(transfer_cfg.get("remote_user") or "").strip() or None,
            ssh_identity=str(transfer_cfg.get("ssh_identity") or "").strip() or None,
            ssh_options=[str(opt) for opt in ssh_options],
        )

    def build_command(self, remote_host: str, remote_path: str, local_path: Path, dry_run: bool) -> list[str]:
        cmd = [self.command, *self.options]
        if dry_run:
            cmd.append("--dry-run")
        ssh_cmd = ["ssh", "-oBatchMode=yes"]
        if self.ssh_identity:
            ssh_cmd.extend(["-i", self.ssh_identity])
        ssh_cmd.extend(self.ssh_options)
        host = f"{self.remote_user}@{remote_host}" if self.remote_user else remote_host
        cmd.extend(["-e", shlex.join(ssh_cmd), "--", f"{host}:{remote_path}", f"{local_path}/"])
        return cmd

    def transfer(self, remote_host: str, remote_path: str, local_path: Path, dry_run: bool) -> None:
        cmd = self.build_command(remote_host, remote_path, local_path, dry_run)
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True)
        except FileNotFoundError as exc:
            raise TransferError(f"{self.command} not available") from exc
        except OSError as exc:
            raise TransferError(f"{self.command} could not be started: {exc}") from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or exc.stdout or "").strip()
            message = f"{self.command} failed ({exc.returncode}) for {remote_host}:{remote_path}"
            if detail:
                message = f"{message}: {detail.splitlines()[-1]}"
            raise TransferError(message) from exc


@dataclass
class TransferOutcome:
    fired: bool
    counts: MediaCounts
    removed: list[Path] = field(default_factory=list)
    errors: list[BackupError] = field(default_factory=list)


class TransferGate:
    """Count local media, invoke the executor if needed, then clean up."""

    def __init__(
        self,
        executor: TransferExecutor,
        *,
        remote_root: str,
        final_exts: Iterable[str] = DEFAULT_FINAL_EXTENSIONS,
        placeholder_exts: Iterable[str] = DEFAULT_PLACEHOLDER_EXTENSIONS,
        metadata_only: bool = False,
        dry_run: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self.executor = executor
        self.remote_root = remote_root
        self.final_exts = _normalize_exts(final_exts)
        self.placeholder_exts = _normalize_exts(placeholder_exts)
        self.metadata_only = metadata_only
        self.dry_run = dry_run
        self._logger = logger or logging.getLogger("vms_backup")

    def process(self, remote_host: str, record_id: int, camera_count: int, folder: Path) -> TransferOutcome:
        """Run the gate for one recording.

        A failed transfer and a failed cleanup are both reported on
        ``TransferOutcome.errors``, in that order; partial artifacts are
        removed either way. Only an unreadable folder raises.
        """

        try:
            counts = count_media(folder, record_id, self.final_exts, self.placeholder_exts)
        except OSError as exc:
            raise FilesystemError(f"{folder}: {exc}") from exc

        if not should_transfer(counts, camera_count, metadata_only=self.metadata_only):
            self._logger.debug(
                "recording %s: %d/%d media, %d placeholder(s); no transfer",
                record_id,
                counts.final,
                camera_count,
                counts.placeholders,
            )
            return TransferOutcome(fired=False, counts=counts)

        remote_path = remote_source_path(self.remote_root, record_id)
        self._logger.info(
            "%stransferring %s:%s -> %s",
            "[dry-run] " if self.dry_run else "",
            remote_host,
            remote_path,
            folder,
        )
        outcome = TransferOutcome(fired=True, counts=counts)
        try:
            self.executor.transfer(remote_host, remote_path, folder, self.dry_run)
        except TransferError as exc:
            outcome.errors.append(exc)

        try:
            outcome.removed = cleanup_partial_artifacts(folder, self.final_exts, logger=self._logger)
        except OSError as exc:
            outcome.errors.append(FilesystemError(f"cleanup of {folder} failed: {exc}"))
        return outcome
