"""Failure taxonomy for backup runs."""
from __future__ import annotations

from dataclasses import asdict, dataclass


class BackupError(Exception):
    """Base class for conditions that end up in a run's error list."""

    kind = "error"


class FetchError(BackupError):
    """Raised when a site's recordings or team lookup cannot be obtained."""

    kind = "fetch"


class FilesystemError(BackupError):
    """Raised when the local backup tree cannot be created or written."""

    kind = "filesystem"


class TransferError(BackupError):
    """Raised when the transfer executor fails for a recording."""

    kind = "transfer"


class InvariantViolation(BackupError):
    """More than one local folder claims the same recording id."""

    kind = "invariant"


class ConfigError(Exception):
    """Raised when the configuration cannot produce a usable site list."""


class ShareMountError(Exception):
    """Raised when the backup share cannot be mounted."""


@dataclass(frozen=True)
class RunError:
    kind: str
    message: str
    site: str | None = None
    record_id: int | None = None

    @classmethod
    def from_exception(
        cls,
        exc: BackupError,
        *,
        site: str | None = None,
        record_id: int | None = None,
    ) -> "RunError":
        return cls(kind=exc.kind, message=str(exc), site=site, record_id=record_id)

    def describe(self) -> str:
        where = self.site or "-"
        if self.record_id is not None:
            where = f"{where}#{self.record_id}"
        return f"[{self.kind}] {where}: {self.message}"

    def to_dict(self) -> dict[str, object]:
        return asdict(self)
