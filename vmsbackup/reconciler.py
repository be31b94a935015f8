"""Keep one canonical local folder per remote recording."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Collection

from .errors import FilesystemError, InvariantViolation
from .folder_index import FolderInfo, find_legacy_folder, folders_for_id
from .metadata import write_metadata_once
from .models import Recording
from .naming import canonical_folder_name, iso_date, sanitize, team_folder_name, year_bucket


@dataclass
class ReconcileOutcome:
    folder: Path | None
    legacy: Path | None = None
    created: bool = False
    renamed_from: Path | None = None
    metadata_written: bool = False
    violations: list[InvariantViolation] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.legacy is not None


class FolderReconciler:
    """Create, rename and annotate the folders of one site's backup tree."""

    def __init__(
        self,
        site_root: Path,
        *,
        legacy_detection: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self.site_root = Path(site_root)
        self.legacy_detection = legacy_detection
        self._logger = logger or logging.getLogger("vms_backup")

    def year_dir(self, record: Recording, team: str) -> Path:
        return self.site_root / team_folder_name(team) / year_bucket(record.created_at)

    def reconcile(self, record: Recording, team: str, known_ids: Collection[int] = ()) -> ReconcileOutcome:
        """Bring the folder of ``record`` into canonical shape.

        ``known_ids`` are the ids of every recording in the current listing;
        their folders are never mistaken for legacy ones.
        """

        year_dir = self.year_dir(record, team)
        canonical = year_dir / canonical_folder_name(record)

        try:
            if self.legacy_detection:
                legacy = find_legacy_folder(
                    year_dir,
                    iso_date(record.created_at),
                    sanitize(record.name),
                    record.id,
                    known_ids,
                )
                if legacy is not None:
                    self._logger.info(
                        "recording %s already covered by legacy folder %s; skipping",
                        record.id,
                        legacy.path,
                    )
                    return ReconcileOutcome(folder=None, legacy=legacy.path)

            year_dir.mkdir(parents=True, exist_ok=True)
            outcome = ReconcileOutcome(folder=canonical)
            self._rename_stale(record, canonical, outcome)

            if not canonical.is_dir():
                canonical.mkdir()
                outcome.created = True
                self._logger.info("created %s", canonical)

            outcome.metadata_written = write_metadata_once(canonical, record.snapshot())
            if outcome.metadata_written:
                self._logger.debug("wrote metadata for recording %s", record.id)
        except OSError as exc:
            raise FilesystemError(f"{canonical}: {exc}") from exc
        return outcome

    def _rename_stale(self, record: Recording, canonical: Path, outcome: ReconcileOutcome) -> None:
        matches = folders_for_id(canonical.parent, record.id)
        if not matches:
            return

        keep = self._pick_survivor(matches, canonical)
        for info in matches:
            if info is keep:
                continue
            violation = InvariantViolation(
                f"folder {info.path} also claims recording {record.id}; keeping {keep.path.name}"
            )
            self._logger.warning("%s", violation)
            outcome.violations.append(violation)

        if keep.name != canonical.name:
            self._logger.info("renaming %s -> %s", keep.path, canonical.name)
            keep.path.rename(canonical)
            outcome.renamed_from = keep.path

    @staticmethod
    def _pick_survivor(matches: list[FolderInfo], canonical: Path) -> FolderInfo:
        for info in matches:
            if info.name == canonical.name:
                return info
        # Most recently modified wins; name order breaks ties deterministically.
        return max(matches, key=lambda info: (info.mtime, info.name))
