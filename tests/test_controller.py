from __future__ import annotations

from pathlib import Path

import vmsbackup.transfer as transfer
from vmsbackup.controller import RunBudget, RunController, RunOptions, RunState
from vmsbackup.errors import FetchError, TransferError
from vmsbackup.metadata import METADATA_FILENAME
from vmsbackup.models import Recording, Site, SiteListing
from vmsbackup.transfer import RsyncTransferExecutor


def _record(record_id: int, name: str = "Review", author: int = 7, cameras: int = 1) -> Recording:
    return Recording.from_payload(
        {
            "id": record_id,
            "name": name,
            "createdAt": 1700000000,
            "authorId": author,
            "cameraCount": cameras,
        }
    )


def _site(tmp_path: Path, name: str) -> Site:
    return Site(name=name, endpoint=f"https://{name}.lan", remote_host=f"{name}.lan", home_dir=tmp_path / name)


class StaticSource:
    def __init__(self, listing=None, error=None):
        self.listing = listing
        self.error = error

    def fetch_listing(self):
        if self.error is not None:
            raise self.error
        return self.listing


class FakeExecutor:
    def __init__(self, fail_for=()):
        self.calls = []
        self.fail_for = set(fail_for)

    def transfer(self, remote_host, remote_path, local_path, dry_run):
        self.calls.append((remote_host, remote_path, Path(local_path).name, dry_run))
        if remote_path.rstrip("/").rsplit("/", 1)[-1] in self.fail_for:
            raise TransferError("boom")


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _options(**overrides) -> RunOptions:
    values = dict(remote_root="/data", final_exts=[".mp4"], placeholder_exts=[".pending"])
    values.update(overrides)
    return RunOptions(**values)


def _controller(sites, sources, executor, **kwargs) -> RunController:
    return RunController(
        sites,
        source_factory=lambda site: sources[site.name],
        executor=executor,
        options=kwargs.pop("options", _options()),
        **kwargs,
    )


def test_completed_run_builds_tree_and_transfers(tmp_path):
    site = _site(tmp_path, "north")
    listing = SiteListing(recordings=[_record(42, "Team A: Review?"), _record(43, author=99)], teams={7: "Coaches"})
    executor = FakeExecutor()

    result = _controller([site], {"north": StaticSource(listing)}, executor).run()

    assert result.state is RunState.COMPLETED
    assert result.ok
    assert result.finished_at is not None
    assert result.sites_visited == 1
    assert result.records_seen == 2
    assert result.folders_created == 2
    assert result.metadata_written == 2
    assert result.transfers == 2
    assert (site.home_dir / "Coaches" / "2023" / "2023-11-14 42 Team A- Review-" / METADATA_FILENAME).is_file()
    assert (site.home_dir / "Unassigned" / "2023" / "2023-11-14 43 Review").is_dir()
    assert executor.calls[0] == ("north.lan", "/data/42/", "2023-11-14 42 Team A- Review-", False)


def test_fetch_failure_skips_site_but_not_others(tmp_path):
    broken = _site(tmp_path, "broken")
    healthy = _site(tmp_path, "healthy")
    sources = {
        "broken": StaticSource(error=FetchError("HTTP 401")),
        "healthy": StaticSource(SiteListing(recordings=[_record(1)], teams={7: "Coaches"})),
    }

    result = _controller([broken, healthy], sources, FakeExecutor()).run()

    assert result.state is RunState.COMPLETED
    assert not result.ok
    assert [(e.kind, e.site) for e in result.errors] == [("fetch", "broken")]
    assert not broken.home_dir.exists()
    assert (healthy.home_dir / "Coaches" / "2023" / "2023-11-14 1 Review").is_dir()


def test_record_failures_are_collected(tmp_path):
    site = _site(tmp_path, "north")
    listing = SiteListing(recordings=[_record(1), _record(2), _record(3)], teams={7: "Coaches"})
    executor = FakeExecutor(fail_for={"2"})

    result = _controller([site], {"north": StaticSource(listing)}, executor).run()

    assert result.state is RunState.COMPLETED
    assert [(e.kind, e.record_id) for e in result.errors] == [("transfer", 2)]
    assert len(executor.calls) == 3


def test_legacy_folder_is_skipped(tmp_path):
    site = _site(tmp_path, "north")
    legacy = site.home_dir / "Coaches" / "2023" / "2023-11-14 900 Review"
    legacy.mkdir(parents=True)
    executor = FakeExecutor()
    listing = SiteListing(recordings=[_record(42)], teams={7: "Coaches"})

    result = _controller([site], {"north": StaticSource(listing)}, executor).run()

    assert result.legacy_skipped == 1
    assert result.folders_created == 0
    assert executor.calls == []
    assert [p.name for p in legacy.parent.iterdir()] == [legacy.name]


def test_metadata_only_never_transfers(tmp_path):
    site = _site(tmp_path, "north")
    listing = SiteListing(recordings=[_record(42)], teams={7: "Coaches"})
    executor = FakeExecutor()

    result = _controller(
        [site], {"north": StaticSource(listing)}, executor, options=_options(metadata_only=True)
    ).run()

    assert result.metadata_written == 1
    assert result.transfers == 0
    assert executor.calls == []


def test_budget_exhaustion_stops_before_next_record(tmp_path):
    clock = FakeClock()
    first = _site(tmp_path, "first")
    second = _site(tmp_path, "second")

    class SlowExecutor(FakeExecutor):
        def transfer(self, remote_host, remote_path, local_path, dry_run):
            super().transfer(remote_host, remote_path, local_path, dry_run)
            clock.now += 65 * 60  # one transfer overruns the hour

    sources = {
        "first": StaticSource(SiteListing(recordings=[_record(1), _record(2)], teams={7: "Coaches"})),
        "second": StaticSource(SiteListing(recordings=[_record(3)], teams={7: "Coaches"})),
    }
    executor = SlowExecutor()

    result = _controller(
        [first, second],
        sources,
        executor,
        budget=RunBudget(max_seconds=3600, clock=clock),
    ).run()

    assert result.state is RunState.TIMED_OUT
    assert result.ok
    assert result.records_seen == 1
    assert [call[1] for call in executor.calls] == ["/data/1/"]
    assert (first.home_dir / "Coaches" / "2023" / "2023-11-14 1 Review" / METADATA_FILENAME).is_file()
    assert not (first.home_dir / "Coaches" / "2023" / "2023-11-14 2 Review").exists()
    assert not second.home_dir.exists()
    assert result.to_dict()["state"] == "timed_out"


def test_unbounded_budget_never_expires():
    clock = FakeClock()
    budget = RunBudget(max_seconds=0, clock=clock)
    clock.now = 10 ** 9
    assert budget.exceeded() is False


def test_summary_lists_errors(tmp_path):
    site = _site(tmp_path, "north")
    result = _controller(
        [site], {"north": StaticSource(error=FetchError("bad schema"))}, FakeExecutor()
    ).run()

    summary = result.to_dict()
    assert summary["state"] == "completed"
    assert summary["errors"] == [
        {"kind": "fetch", "message": "bad schema", "site": "north", "record_id": None}
    ]
    assert summary["started_at"] <= summary["finished_at"]


def test_same_day_same_title_recordings_each_get_a_folder(tmp_path):
    site = _site(tmp_path, "north")
    listing = SiteListing(recordings=[_record(1), _record(2)], teams={7: "Coaches"})
    executor = FakeExecutor()
    sources = {"north": StaticSource(listing)}

    result = _controller([site], sources, executor).run()

    year_dir = site.home_dir / "Coaches" / "2023"
    assert sorted(p.name for p in year_dir.iterdir()) == ["2023-11-14 1 Review", "2023-11-14 2 Review"]
    assert result.legacy_skipped == 0
    assert result.folders_created == 2
    assert [call[1] for call in executor.calls] == ["/data/1/", "/data/2/"]

    # recording 1 has left the listing; its metadata still marks the folder as ours
    sources["north"] = StaticSource(SiteListing(recordings=[_record(3)], teams={7: "Coaches"}))
    again = _controller([site], sources, FakeExecutor()).run()

    assert again.legacy_skipped == 0
    assert (year_dir / "2023-11-14 3 Review").is_dir()


def test_rsync_os_error_is_collected_per_record(monkeypatch, tmp_path):
    site = _site(tmp_path, "north")
    listing = SiteListing(recordings=[_record(1, "First"), _record(2, "Second")], teams={7: "Coaches"})

    def fake_run(cmd, **kwargs):
        raise PermissionError(13, "Permission denied", cmd[0])

    monkeypatch.setattr(transfer.subprocess, "run", fake_run)

    result = _controller([site], {"north": StaticSource(listing)}, RsyncTransferExecutor()).run()

    assert result.state is RunState.COMPLETED
    assert [(e.kind, e.record_id) for e in result.errors] == [("transfer", 1), ("transfer", 2)]
    assert result.transfers == 2


def test_cleanup_failure_does_not_hide_transfer_failure(monkeypatch, tmp_path):
    site = _site(tmp_path, "north")
    listing = SiteListing(recordings=[_record(1)], teams={7: "Coaches"})

    def broken_cleanup(folder, media_exts, **kwargs):
        raise OSError("read-only file system")

    monkeypatch.setattr(transfer, "cleanup_partial_artifacts", broken_cleanup)

    result = _controller([site], {"north": StaticSource(listing)}, FakeExecutor(fail_for={"1"})).run()

    assert [(e.kind, e.record_id) for e in result.errors] == [("transfer", 1), ("filesystem", 1)]
    assert result.errors[0].message == "boom"


def test_budget_is_checked_before_next_site_is_fetched(tmp_path):
    clock = FakeClock()
    fetched = []

    class CountingSource(StaticSource):
        def __init__(self, name, listing):
            super().__init__(listing)
            self.name = name

        def fetch_listing(self):
            fetched.append(self.name)
            return super().fetch_listing()

    class SlowExecutor(FakeExecutor):
        def transfer(self, remote_host, remote_path, local_path, dry_run):
            super().transfer(remote_host, remote_path, local_path, dry_run)
            clock.now += 4000

    a = _site(tmp_path, "a")
    b = _site(tmp_path, "b")
    sources = {
        "a": CountingSource("a", SiteListing(recordings=[_record(1)], teams={7: "Coaches"})),
        "b": CountingSource("b", SiteListing(recordings=[_record(2)], teams={7: "Coaches"})),
    }

    result = _controller(
        [a, b], sources, SlowExecutor(), budget=RunBudget(max_seconds=3600, clock=clock)
    ).run()

    assert result.state is RunState.TIMED_OUT
    assert fetched == ["a"]
    assert result.sites_visited == 1
    assert not b.home_dir.exists()
