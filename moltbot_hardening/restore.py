#!/usr/bin/env python3
"""
Moltbot Restore
--------------------------------------------------

Rolls a Moltbot host back to a backup snapshot. The chosen snapshot is
validated before anything is touched, and the current state is saved as a
pre_rollback_ snapshot before it is overwritten.

Usage:
  sudo moltbot-restore                      # choose from the newest backups
  sudo moltbot-restore /var/backups/moltbot/backup_20260101_120000
  sudo moltbot-restore backup_20260101_120000 --force
"""

import os
import shutil
import sys
import time
from pathlib import Path
from typing import Callable, List, Optional

import click
from rich import box
from rich.table import Table

from moltbot_hardening import VERSION
from moltbot_hardening.backups import (
    CONFIG_COMPONENT,
    INSTALL_COMPONENT,
    LOGS_COMPONENT,
    Snapshot,
    create_snapshot,
    import_volume,
    list_snapshots,
    load_snapshot,
)
from moltbot_hardening.errors import (
    HardeningError,
    SecurityViolation,
    StepFailed,
    ValidationError,
)
from moltbot_hardening.procedure import Procedure, report_failure, require_root
from moltbot_hardening.prompts import AssumeDefaults, Prompter, TerminalPrompter
from moltbot_hardening.render import ServiceUnit
from moltbot_hardening.settings import Config
from moltbot_hardening.system import (
    CommandRunner,
    PortBinding,
    ServiceState,
    chown,
    container_running,
    port_binding,
    read_unit_user,
    service_state,
    wait_for,
    write_file,
)
from moltbot_hardening.ui import (
    NordColors,
    console,
    create_header,
    display_panel,
    print_message,
    print_step,
    print_success,
    setup_logger,
)

CONFIRM_RESTORE = "Restore from this backup? The current state is backed up first."


class Restorer(Procedure):
    """Restores config, install files, data volume and optionally logs."""

    title = "Restore"

    def __init__(
        self,
        config: Config,
        runner: Optional[CommandRunner] = None,
        prompter: Optional[Prompter] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(config, runner)
        self.prompter = prompter or TerminalPrompter()
        self.sleep = sleep
        self.clock = clock
        self.safety_snapshot: Optional[Snapshot] = None
        self.user = config.BOT_USER

    # ----------------------------------------------------------------
    # Snapshot selection
    # ----------------------------------------------------------------
    def resolve(self, argument: str) -> Snapshot:
        path = Path(argument)
        if not path.is_absolute() and not path.exists():
            path = self.config.backup_root / argument
        return load_snapshot(path, self.config)

    def choose(self) -> Snapshot:
        snapshots = list_snapshots(self.config, limit=self.config.SNAPSHOT_LIST_LIMIT)
        if not snapshots:
            raise ValidationError(f"No backups found in {self.config.backup_root}")

        table = Table(title="Available Backups", style="banner", box=box.ROUNDED)
        table.add_column("#", style="header", justify="right")
        table.add_column("Backup", style="info")
        table.add_column("Contents", style="info")
        table.add_column("Size", style="info", justify="right")
        for index, snapshot in enumerate(snapshots, 1):
            table.add_row(
                str(index), snapshot.name, ", ".join(snapshot.components()), snapshot.size()
            )
        console.print(table)

        answer = self.prompter.ask(f"Select a backup (1-{len(snapshots)})").strip()
        try:
            index = int(answer)
        except ValueError:
            raise ValidationError(f"Invalid selection: {answer!r}")
        if not 1 <= index <= len(snapshots):
            raise ValidationError(f"Selection out of range: {index}")
        return load_snapshot(snapshots[index - 1].path, self.config)

    # ----------------------------------------------------------------
    # Restore sequence
    # ----------------------------------------------------------------
    def run(self, argument: Optional[str] = None) -> bool:
        """Restore a snapshot; returns False if the operator declined."""
        snapshot = self.resolve(argument) if argument else self.choose()
        print_step(
            f"Selected {snapshot.path} ({', '.join(snapshot.components())}, {snapshot.size()})"
        )
        if not self.prompter.confirm(CONFIRM_RESTORE, default=False):
            print_message("Restore cancelled; nothing was changed")
            return False

        self.user = read_unit_user(self.config.unit_file) or self.config.BOT_USER
        self.safety_snapshot = self.run_step(
            "safety_backup", "Backing up current state", self.backup_current
        )
        self.run_step("stop", "Stopping Moltbot service", self.stop_service)
        if snapshot.has_config:
            self.run_step("config", "Restoring configuration", lambda: self.restore_config(snapshot))
        if snapshot.has_install:
            self.run_step("install", "Restoring install files", lambda: self.restore_install(snapshot))
        if snapshot.has_volume:
            self.run_step(
                "volume",
                "Restoring data volume",
                lambda: import_volume(self.runner, self.config, snapshot),
            )
        if snapshot.has_logs and self.prompter.confirm("Also restore logs from the backup?"):
            self.run_step("logs", "Restoring logs", lambda: self.restore_logs(snapshot))
        self.run_step("start", "Starting Moltbot service", self.start_service)
        self.run_step("verify", "Verifying restored service", self.verify)

        self.print_summary(snapshot)
        return True

    def backup_current(self) -> Snapshot:
        return create_snapshot(self.runner, self.config, "pre_rollback", self.warnings)

    def stop_service(self) -> None:
        self.best_effort(f"Stop {self.config.unit_name}", ["systemctl", "stop", self.config.unit_name])

    def _replace(self, source: Path, target: Path) -> None:
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        elif target.exists() or target.is_symlink():
            target.unlink()
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, target, symlinks=True)

    def restore_config(self, snapshot: Snapshot) -> None:
        target = self.config.config_dir
        self._replace(snapshot.path / CONFIG_COMPONENT, target)
        chown(self.runner, target, "root", "root", recursive=True)
        os.chmod(target, 0o750)
        if self.config.config_file.exists():
            os.chmod(self.config.config_file, 0o600)

    def restore_install(self, snapshot: Snapshot) -> None:
        target = self.config.install_dir
        self._replace(snapshot.path / INSTALL_COMPONENT, target)
        chown(self.runner, target, self.user, recursive=True)
        os.chmod(target, 0o750)
        if self.config.compose_file.exists():
            os.chmod(self.config.compose_file, 0o640)

    def restore_logs(self, snapshot: Snapshot) -> None:
        target = self.config.log_dir
        self._replace(snapshot.path / LOGS_COMPONENT, target)
        chown(self.runner, target, self.user, recursive=True)

    def start_service(self) -> None:
        unit = self.config.unit_name
        if not self.config.unit_file.exists():
            self.logger.info(f"Unit {unit} missing; installing it again")
            write_file(
                self.config.unit_file,
                ServiceUnit.for_config(self.config, user=self.user).render(),
                0o644,
            )
            self.runner.run(["systemctl", "daemon-reload"])
            self.runner.run(["systemctl", "enable", unit])
        else:
            self.runner.run(["systemctl", "daemon-reload"])
        self.runner.run(["systemctl", "start", unit])
        wait_for(
            lambda: service_state(self.runner, unit) is ServiceState.ACTIVE,
            self.config.SETTLE_TIMEOUT,
            self.config.POLL_INTERVAL,
            sleep=self.sleep,
            clock=self.clock,
        )

    def post_restore_issues(self) -> List[str]:
        issues = []
        state = service_state(self.runner, self.config.unit_name)
        if state is not ServiceState.ACTIVE:
            issues.append(f"{self.config.unit_name} is {state.value}")
        if not container_running(self.runner, self.config.CONTAINER_NAME):
            issues.append(f"container {self.config.CONTAINER_NAME} is not running")
        if not self.config.config_file.is_file():
            issues.append(f"{self.config.config_file} is missing")
        return issues

    def verify(self) -> str:
        port = self.config.GATEWAY_PORT
        binding = port_binding(self.runner, port)
        if binding in (PortBinding.WILDCARD, PortBinding.EXTERNAL):
            raise SecurityViolation(f"Gateway port {port} is exposed on a {binding.value} address")

        issues = self.post_restore_issues()
        if issues:
            raise StepFailed(
                f"Post-restore check found {len(issues)} issue(s): " + "; ".join(issues)
            )
        return "Service active"

    def print_summary(self, snapshot: Snapshot) -> None:
        self.print_report()
        if self.warnings:
            display_panel(
                "\n".join(f"• {w}" for w in self.warnings),
                style=NordColors.YELLOW,
                title="Warnings",
            )
        print_success(f"Restored {snapshot.name} in {self.elapsed()}")
        hints = [
            f"Check health:    {self.config.doctor_script}",
            f"Follow logs:     journalctl -u {self.config.unit_name} -f",
        ]
        if self.safety_snapshot is not None:
            hints.append(f"Undo rollback:   moltbot-restore {self.safety_snapshot.path}")
        display_panel("\n".join(hints), style=NordColors.FROST_2, title="Next Steps")


@click.command()
@click.argument("snapshot", required=False)
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Do not prompt; requires SNAPSHOT and skips the optional log restore.",
)
@click.version_option(VERSION)
def main(snapshot: Optional[str], force: bool) -> None:
    """Restore Moltbot from a backup SNAPSHOT (path or directory name)."""
    config = Config.from_env()
    setup_logger(config.LOG_FILE)
    console.print(create_header("Moltbot Restore", "Rollback from backup"))

    prompter = AssumeDefaults(accept={CONFIRM_RESTORE}) if force else TerminalPrompter()
    restorer = Restorer(config, prompter=prompter)
    try:
        require_root()
        if force and not snapshot:
            raise ValidationError("--force requires a SNAPSHOT argument")
        restorer.run(snapshot)
    except HardeningError as e:
        restorer.print_report()
        report_failure(e)
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
