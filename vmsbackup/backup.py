#!/usr/bin/env python3
"""Back up appliance recordings for every configured site.

Exit status is 0 when the run recorded no errors, even if it timed out,
1 when any error was recorded, and 2 when the run could not start
because of configuration or share mount problems.
"""
from __future__ import annotations

import argparse
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from . import config as config_module
from .controller import RunBudget, RunController, RunOptions, RunResult, RunState
from .directory_client import client_factory
from .errors import ConfigError, ShareMountError
from .metadata import write_json_atomic
from .notifications import build_notifier
from .run_log import close_logging, configure_logging, LOGGER_NAME
from .share_mount import ensure_share_mounted
from .transfer import RsyncTransferExecutor

log = logging.getLogger(LOGGER_NAME)

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_SETUP = 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--config", type=Path, help="Config file (default: search path, env: VMS_BACKUP_CONFIG)")
    parser.add_argument("--site", action="append", default=[], metavar="NAME",
                        help="Only back up this site (may be repeated)")
    parser.add_argument("--dry-run", action="store_true",
                        help="Let rsync report what it would copy without writing media")
    parser.add_argument("--metadata-only", action="store_true",
                        help="Create folders and metadata but never start a transfer")
    parser.add_argument("--max-runtime", type=float, metavar="MINUTES",
                        help="Stop before the next recording once this many minutes have passed (0 = no limit)")
    parser.add_argument("--output-root", type=Path, help="Override paths.output_root")
    return parser


def _apply_args(cfg: Dict[str, Any], args: argparse.Namespace) -> None:
    run_cfg = cfg.setdefault("run", {})
    if args.dry_run:
        run_cfg["dry_run"] = True
    if args.metadata_only:
        run_cfg["metadata_only"] = True
    if args.max_runtime is not None:
        run_cfg["max_runtime_minutes"] = args.max_runtime
    if args.output_root is not None:
        cfg.setdefault("paths", {})["output_root"] = str(args.output_root)


def build_options(cfg: Dict[str, Any]) -> RunOptions:
    run_cfg = cfg.get("run", {})
    transfer_cfg = cfg.get("transfer", {})
    return RunOptions(
        remote_root=str(transfer_cfg.get("remote_root") or "/"),
        final_exts=list(transfer_cfg.get("final_extensions") or [".mp4"]),
        placeholder_exts=list(transfer_cfg.get("placeholder_extensions") or []),
        dry_run=bool(run_cfg.get("dry_run")),
        metadata_only=bool(run_cfg.get("metadata_only")),
        legacy_detection=bool(run_cfg.get("legacy_detection", True)),
        unassigned_team=str(cfg.get("paths", {}).get("unassigned_team") or "Unassigned"),
    )


def report(result: RunResult, cfg: Dict[str, Any]) -> Dict[str, Any]:
    summary = result.to_dict()
    level = logging.INFO if result.ok else logging.WARNING
    log.log(
        level,
        "run %s: %s -> %s, %d site(s), %d recording(s), %d transfer(s), %d error(s)",
        result.state.value,
        summary["started_at"],
        summary["finished_at"],
        result.sites_visited,
        result.records_seen,
        result.transfers,
        len(result.errors),
    )
    for error in result.errors:
        log.warning("  %s", error.describe())

    summary_file = str(cfg.get("paths", {}).get("summary_file") or "").strip()
    if summary_file:
        try:
            write_json_atomic(Path(summary_file).expanduser(), summary)
        except OSError as exc:
            log.error("could not write run summary %s: %s", summary_file, exc)

    notifier = build_notifier(cfg.get("notifications"))
    if notifier is not None:
        notifier.notify(summary)
    return summary


def run(cfg: Dict[str, Any], only_sites: list[str] | None = None) -> int:
    try:
        sites = config_module.load_sites(cfg, only=only_sites)
        max_minutes = config_module.number_setting(cfg, "run", "max_runtime_minutes", 0.0)
        directory_cfg = dict(cfg.get("directory") or {})
        directory_cfg["timeout_sec"] = config_module.number_setting(cfg, "directory", "timeout_sec", 30.0)
        ensure_share_mounted(cfg.get("share", {}), logger=log)
    except (ConfigError, ShareMountError) as exc:
        log.error("cannot start backup: %s", exc)
        return EXIT_SETUP

    controller = RunController(
        sites,
        source_factory=client_factory(directory_cfg),
        executor=RsyncTransferExecutor.from_cfg(cfg.get("transfer", {})),
        options=build_options(cfg),
        budget=RunBudget(max_seconds=max_minutes * 60),
        logger=log,
    )
    result = controller.run()
    report(result, cfg)
    if result.state is RunState.TIMED_OUT:
        log.warning("run timed out; remaining recordings will be handled next run")
    return EXIT_OK if result.ok else EXIT_ERRORS


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    if args.config is not None:
        os.environ["VMS_BACKUP_CONFIG"] = str(args.config)
    cfg = config_module.reload_cfg()
    _apply_args(cfg, args)

    transcript = configure_logging(cfg, datetime.now(timezone.utc).astimezone())
    try:
        if transcript is not None:
            log.info("transcript: %s", transcript)
        active = config_module.active_config_path()
        log.info("config: %s", active if active else "built-in defaults")
        return run(cfg, only_sites=args.site or None)
    finally:
        close_logging()


if __name__ == "__main__":
    raise SystemExit(main())
