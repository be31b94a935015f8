"""Sequential backup run over every configured site."""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, Sequence

from .errors import BackupError, FetchError, FilesystemError, RunError
from .models import Recording, Site, SiteListing
from .reconciler import FolderReconciler
from .transfer import TransferExecutor, TransferGate


class ListingSource(Protocol):
    def fetch_listing(self) -> SiteListing:
        ...


class RunState(enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


@dataclass
class RunBudget:
    """Wall-clock allowance for a whole run; ``0`` means unbounded."""

    max_seconds: float = 0.0
    clock: Callable[[], float] = time.monotonic
    started: float = field(init=False)

    def __post_init__(self) -> None:
        self.started = self.clock()

    def elapsed(self) -> float:
        return self.clock() - self.started

    def exceeded(self) -> bool:
        if self.max_seconds <= 0:
            return False
        return self.elapsed() > self.max_seconds


@dataclass
class RunOptions:
    remote_root: str
    final_exts: Sequence[str]
    placeholder_exts: Sequence[str]
    dry_run: bool = False
    metadata_only: bool = False
    legacy_detection: bool = True
    unassigned_team: str = "Unassigned"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunResult:
    state: RunState = RunState.RUNNING
    started_at: datetime = field(default_factory=_now)
    finished_at: datetime | None = None
    errors: list[RunError] = field(default_factory=list)
    sites_visited: int = 0
    records_seen: int = 0
    folders_created: int = 0
    folders_renamed: int = 0
    metadata_written: int = 0
    legacy_skipped: int = 0
    transfers: int = 0
    partials_removed: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors

    def record_error(self, exc: BackupError, *, site: str | None = None, record_id: int | None = None) -> RunError:
        entry = RunError.from_exception(exc, site=site, record_id=record_id)
        self.errors.append(entry)
        return entry

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "sites_visited": self.sites_visited,
            "records_seen": self.records_seen,
            "folders_created": self.folders_created,
            "folders_renamed": self.folders_renamed,
            "metadata_written": self.metadata_written,
            "legacy_skipped": self.legacy_skipped,
            "transfers": self.transfers,
            "partials_removed": self.partials_removed,
            "errors": [error.to_dict() for error in self.errors],
        }


class RunController:
    """Walk sites and their recordings, one at a time, within a time budget.

    Site failures and record failures are collected on the returned
    :class:`RunResult`; neither stops the run. Exhausting the budget moves
    the run to :attr:`RunState.TIMED_OUT` before the next site or record
    starts.
    """

    def __init__(
        self,
        sites: Sequence[Site],
        *,
        source_factory: Callable[[Site], ListingSource],
        executor: TransferExecutor,
        options: RunOptions,
        budget: RunBudget | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.sites = list(sites)
        self.source_factory = source_factory
        self.executor = executor
        self.options = options
        self.budget = budget or RunBudget()
        self._logger = logger or logging.getLogger("vms_backup")
        self.result = RunResult()

    def run(self) -> RunResult:
        self.result = result = RunResult()
        self._logger.info(
            "backup run started: %d site(s)%s%s",
            len(self.sites),
            ", dry run" if self.options.dry_run else "",
            ", metadata only" if self.options.metadata_only else "",
        )
        for site in self.sites:
            self._run_site(site)
            if result.state is RunState.TIMED_OUT:
                break
        if result.state is RunState.RUNNING:
            result.state = RunState.COMPLETED
        result.finished_at = _now()
        return result

    def _budget_allows(self) -> bool:
        if self.result.state is RunState.RUNNING and self.budget.exceeded():
            self.result.state = RunState.TIMED_OUT
            self._logger.warning(
                "run budget of %.0fs exhausted after %.0fs; stopping",
                self.budget.max_seconds,
                self.budget.elapsed(),
            )
        return self.result.state is RunState.RUNNING

    def _run_site(self, site: Site) -> None:
        result = self.result
        if not self._budget_allows():
            return
        self._logger.info("site %s -> %s", site.name, site.home_dir)
        try:
            listing = self.source_factory(site).fetch_listing()
        except FetchError as exc:
            self._logger.error("site %s skipped: %s", site.name, exc)
            result.record_error(exc, site=site.name)
            return

        try:
            site.home_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            error = FilesystemError(f"cannot create site home {site.home_dir}: {exc}")
            self._logger.error("site %s skipped: %s", site.name, error)
            result.record_error(error, site=site.name)
            return

        result.sites_visited += 1
        reconciler = FolderReconciler(
            site.home_dir,
            legacy_detection=self.options.legacy_detection,
            logger=self._logger,
        )
        gate = TransferGate(
            self.executor,
            remote_root=self.options.remote_root,
            final_exts=self.options.final_exts,
            placeholder_exts=self.options.placeholder_exts,
            metadata_only=self.options.metadata_only,
            dry_run=self.options.dry_run,
            logger=self._logger,
        )

        known_ids = frozenset(record.id for record in listing.recordings)
        for record in listing.recordings:
            if not self._budget_allows():
                return
            team = listing.team_for(record, self.options.unassigned_team)
            try:
                self._run_record(site, record, team, reconciler, gate, known_ids)
            except BackupError as exc:
                self._logger.error("site %s recording %s: %s", site.name, record.id, exc)
                result.record_error(exc, site=site.name, record_id=record.id)

    def _run_record(
        self,
        site: Site,
        record: Recording,
        team: str,
        reconciler: FolderReconciler,
        gate: TransferGate,
        known_ids: frozenset[int] = frozenset(),
    ) -> None:
        result = self.result
        result.records_seen += 1

        outcome = reconciler.reconcile(record, team, known_ids)
        for violation in outcome.violations:
            result.record_error(violation, site=site.name, record_id=record.id)
        if outcome.skipped or outcome.folder is None:
            result.legacy_skipped += 1
            return
        result.folders_created += int(outcome.created)
        result.folders_renamed += int(outcome.renamed_from is not None)
        result.metadata_written += int(outcome.metadata_written)

        transfer = gate.process(site.remote_host, record.id, record.camera_count, outcome.folder)
        result.transfers += int(transfer.fired)
        result.partials_removed += len(transfer.removed)
        for error in transfer.errors:
            self._logger.error("site %s recording %s: %s", site.name, record.id, error)
            result.record_error(error, site=site.name, record_id=record.id)
