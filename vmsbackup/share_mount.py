"""Mount the network share that holds the backup tree."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from .errors import ShareMountError


def build_mount_command(share_cfg: Mapping[str, Any]) -> list[str]:
    source = str(share_cfg.get("source") or "").strip()
    mount_point = str(share_cfg.get("mount_point") or "").strip()
    if not source or not mount_point:
        raise ShareMountError("share mounting requires share.source and share.mount_point")

    cmd = [str(share_cfg.get("mount_command") or "mount")]
    fs_type = str(share_cfg.get("fs_type") or "").strip()
    if fs_type:
        cmd.extend(["-t", fs_type])
    options = share_cfg.get("options")
    if isinstance(options, Sequence) and not isinstance(options, str):
        joined = ",".join(str(opt) for opt in options if str(opt).strip())
        if joined:
            cmd.extend(["-o", joined])
    cmd.extend([source, mount_point])
    return cmd


def ensure_share_mounted(share_cfg: Mapping[str, Any], logger: logging.Logger | None = None) -> Path | None:
    """Mount the configured share unless it is disabled or already mounted."""

    log = logger or logging.getLogger("vms_backup")
    if not share_cfg.get("enabled"):
        return None

    cmd = build_mount_command(share_cfg)
    mount_point = Path(cmd[-1])
    if os.path.ismount(mount_point):
        log.debug("share already mounted at %s", mount_point)
        return mount_point

    try:
        mount_point.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ShareMountError(f"cannot create mount point {mount_point}: {exc}") from exc

    try:
        subprocess.run(cmd, check=True, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise ShareMountError(f"{cmd[0]} not available") from exc
    except OSError as exc:
        raise ShareMountError(f"{cmd[0]} could not be started: {exc}") from exc
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or "").strip()
        raise ShareMountError(f"mounting {cmd[-2]} failed ({exc.returncode}): {detail}") from exc

    log.info("mounted %s at %s", cmd[-2], mount_point)
    return mount_point
