#!/usr/bin/env python3
"""
Backup snapshots of the Moltbot host state.

A snapshot is a timestamped directory under the backup root holding up to four
components: config/, logs/, install/ and the exported data volume as
moltbot-data.tar.gz. Snapshots are never removed automatically.
"""

import datetime
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from moltbot_hardening.errors import StepFailed, ValidationError, WarningLog
from moltbot_hardening.settings import Config
from moltbot_hardening.system import (
    CommandRunner,
    format_size,
    tree_size,
    volume_exists,
)

logger = logging.getLogger("moltbot_hardening")

CONFIG_COMPONENT: str = "config"
LOGS_COMPONENT: str = "logs"
INSTALL_COMPONENT: str = "install"


def volume_archive_name(config: Config) -> str:
    return f"{config.VOLUME_NAME}.tar.gz"


@dataclass
class Snapshot:
    path: Path
    has_config: bool
    has_install: bool
    has_logs: bool
    has_volume: bool

    @classmethod
    def inspect(cls, path: Path, config: Config) -> "Snapshot":
        return cls(
            path=path,
            has_config=(path / CONFIG_COMPONENT).is_dir(),
            has_install=(path / INSTALL_COMPONENT).is_dir(),
            has_logs=(path / LOGS_COMPONENT).is_dir(),
            has_volume=(path / volume_archive_name(config)).is_file(),
        )

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def is_valid(self) -> bool:
        return self.has_config or self.has_install

    def size(self) -> str:
        return format_size(tree_size(self.path))

    def components(self) -> List[str]:
        names = []
        if self.has_config:
            names.append(CONFIG_COMPONENT)
        if self.has_install:
            names.append(INSTALL_COMPONENT)
        if self.has_logs:
            names.append(LOGS_COMPONENT)
        if self.has_volume:
            names.append("volume")
        return names


# ----------------------------------------------------------------
# Listing and validation
# ----------------------------------------------------------------
def list_snapshots(config: Config, limit: Optional[int] = None) -> List[Snapshot]:
    """Return snapshots under the backup root, newest first."""
    root = config.backup_root
    if not root.is_dir():
        return []
    dirs = [p for p in root.iterdir() if p.is_dir()]
    dirs.sort(key=lambda p: (p.stat().st_mtime, p.name), reverse=True)
    if limit is not None:
        dirs = dirs[:limit]
    return [Snapshot.inspect(p, config) for p in dirs]


def load_snapshot(path: Path, config: Config) -> Snapshot:
    """Inspect a snapshot directory and reject it unless it is restorable."""
    if not path.is_dir():
        raise ValidationError(f"Backup directory not found: {path}")
    snapshot = Snapshot.inspect(path, config)
    if not snapshot.is_valid:
        raise ValidationError(
            f"Invalid backup {path}: it contains neither '{CONFIG_COMPONENT}' "
            f"nor '{INSTALL_COMPONENT}'"
        )
    return snapshot


# ----------------------------------------------------------------
# Creating snapshots
# ----------------------------------------------------------------
def new_snapshot_dir(config: Config, prefix: str) -> Path:
    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    base = config.backup_root / f"{prefix}_{timestamp}"
    candidate = base
    counter = 1
    while candidate.exists():
        candidate = base.with_name(f"{base.name}_{counter}")
        counter += 1
    config.backup_root.mkdir(parents=True, exist_ok=True)
    os.chmod(config.backup_root, 0o700)
    candidate.mkdir(mode=0o700)
    return candidate


def copy_component(source: Path, target: Path, warnings: WarningLog) -> bool:
    if not source.is_dir():
        logger.debug(f"Nothing to back up at {source}")
        return False
    try:
        shutil.copytree(source, target, symlinks=True)
    except (OSError, shutil.Error) as e:
        warnings.add(f"Failed to back up {source}: {e}")
        return False
    logger.info(f"Backed up {source} to {target}")
    return True


def export_volume(
    runner: CommandRunner, config: Config, target_dir: Path, warnings: WarningLog
) -> bool:
    """Archive the data volume into target_dir through a throwaway container."""
    if not runner.which("docker") or not volume_exists(runner, config.VOLUME_NAME):
        logger.debug(f"Volume {config.VOLUME_NAME} not present; skipping export")
        return False
    result = runner.run(
        [
            "docker", "run", "--rm",
            "-v", f"{config.VOLUME_NAME}:/data:ro",
            "-v", f"{target_dir}:/backup",
            config.HELPER_IMAGE,
            "tar", "czf", f"/backup/{volume_archive_name(config)}", "-C", "/data", ".",
        ],
        check=False,
        timeout=None,
    )
    if result.returncode != 0:
        warnings.add(
            f"Failed to export volume {config.VOLUME_NAME} (exit {result.returncode})"
        )
        return False
    logger.info(f"Exported volume {config.VOLUME_NAME}")
    return True


def import_volume(runner: CommandRunner, config: Config, snapshot: Snapshot) -> None:
    """Recreate the data volume and fill it from the snapshot archive."""
    runner.run(["docker", "volume", "rm", "-f", config.VOLUME_NAME], check=False)
    runner.run(["docker", "volume", "create", config.VOLUME_NAME])
    result = runner.run(
        [
            "docker", "run", "--rm",
            "-v", f"{config.VOLUME_NAME}:/data",
            "-v", f"{snapshot.path}:/backup:ro",
            config.HELPER_IMAGE,
            "tar", "xzf", f"/backup/{volume_archive_name(config)}", "-C", "/data",
        ],
        check=False,
        timeout=None,
    )
    if result.returncode != 0:
        raise StepFailed(
            f"Failed to restore volume {config.VOLUME_NAME} from {snapshot.path}",
            diagnostics=result.stderr,
        )


def create_snapshot(
    runner: CommandRunner, config: Config, prefix: str, warnings: WarningLog
) -> Snapshot:
    """
    Capture config, logs, install files and the data volume.

    A failed sub-copy is recorded as a warning and does not stop the snapshot;
    only failing to create the snapshot directory itself is fatal.
    """
    try:
        target = new_snapshot_dir(config, prefix)
    except OSError as e:
        raise StepFailed(f"Cannot create backup directory under {config.backup_root}: {e}")

    copy_component(config.config_dir, target / CONFIG_COMPONENT, warnings)
    copy_component(config.log_dir, target / LOGS_COMPONENT, warnings)
    copy_component(config.install_dir, target / INSTALL_COMPONENT, warnings)
    export_volume(runner, config, target, warnings)
    return Snapshot.inspect(target, config)
