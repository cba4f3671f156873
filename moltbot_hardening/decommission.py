#!/usr/bin/env python3
"""
Moltbot Decommissioner
--------------------------------------------------

Removes the Moltbot deployment from this host after taking a full backup
snapshot. Host-level hardening (service account, firewall, fail2ban, docker,
tailscale) is only removed on explicit confirmation, and SSH access is never
touched. Removal commands are best-effort: failures are collected and shown in
the summary instead of aborting.

Usage:
  sudo moltbot-decommission [--force]
"""

import shutil
import sys
from pathlib import Path
from typing import Optional

import click

from moltbot_hardening import VERSION
from moltbot_hardening.backups import Snapshot, create_snapshot
from moltbot_hardening.errors import HardeningError
from moltbot_hardening.procedure import Procedure, report_failure, require_root
from moltbot_hardening.prompts import AssumeDefaults, Prompter, TerminalPrompter
from moltbot_hardening.settings import Config
from moltbot_hardening.system import (
    AccountStatus,
    CommandRunner,
    account_status,
    command_succeeds,
    read_unit_user,
    volume_exists,
)
from moltbot_hardening.ui import (
    NordColors,
    console,
    create_header,
    display_panel,
    print_message,
    print_section,
    print_success,
    setup_logger,
)

CONFIRM_REMOVE = "Remove Moltbot from this host? A backup will be created first."


class Decommissioner(Procedure):
    """Backs up and removes the Moltbot deployment."""

    title = "Decommission"

    def __init__(
        self,
        config: Config,
        runner: Optional[CommandRunner] = None,
        prompter: Optional[Prompter] = None,
    ):
        super().__init__(config, runner)
        self.prompter = prompter or TerminalPrompter()
        self.snapshot: Optional[Snapshot] = None
        self.user = config.BOT_USER

    def run(self) -> bool:
        """Run the full sequence; returns False if the operator declined."""
        if not self.prompter.confirm(CONFIRM_REMOVE, default=False):
            print_message("Decommission cancelled; nothing was changed")
            return False

        self.user = read_unit_user(self.config.unit_file) or self.config.BOT_USER
        self.snapshot = self.run_step("backup", "Creating backup snapshot", self.backup)
        self.run_step("service", "Stopping Moltbot service", self.stop_service)
        self.run_step("containers", "Removing containers and volumes", self.remove_containers)
        self.run_step("unit", "Removing systemd unit", self.remove_unit)
        self.run_step("files", "Removing Moltbot files", self.remove_files)

        print_section("Optional Cleanup")
        self.remove_account()
        self.clean_firewall()
        self.clean_fail2ban()
        self.remove_docker()
        self.clean_tailscale()

        self.print_summary()
        self.offer_backup_removal()
        return True

    # ----------------------------------------------------------------
    # Removal steps
    # ----------------------------------------------------------------
    def backup(self) -> Snapshot:
        snapshot = create_snapshot(self.runner, self.config, "backup", self.warnings)
        self.logger.info(f"Backup saved to {snapshot.path}")
        return snapshot

    def stop_service(self) -> None:
        unit = self.config.unit_name
        self.best_effort(f"Stop {unit}", ["systemctl", "stop", unit])
        self.best_effort(f"Disable {unit}", ["systemctl", "disable", unit])

    def remove_containers(self) -> Optional[str]:
        if not self.runner.which("docker"):
            return "already gone (docker not installed)"
        compose = self.config.compose_file
        if compose.is_file() and self.best_effort(
            "Compose down",
            ["docker", "compose", "-f", compose, "down", "--volumes", "--remove-orphans"],
        ):
            return None

        self.logger.info("Falling back to removing docker objects individually")
        self.best_effort(
            f"Remove container {self.config.CONTAINER_NAME}",
            ["docker", "rm", "-f", self.config.CONTAINER_NAME],
        )
        if volume_exists(self.runner, self.config.VOLUME_NAME):
            self.best_effort(
                f"Remove volume {self.config.VOLUME_NAME}",
                ["docker", "volume", "rm", self.config.VOLUME_NAME],
            )
        network = self.config.NETWORK_NAME
        if command_succeeds(self.runner, ["docker", "network", "inspect", network]):
            self.best_effort(f"Remove network {network}", ["docker", "network", "rm", network])
        return None

    def remove_unit(self) -> None:
        self._remove(self.config.unit_file)
        self.best_effort("systemd daemon-reload", ["systemctl", "daemon-reload"])

    def remove_files(self) -> None:
        for path in (
            self.config.install_dir,
            self.config.config_dir,
            self.config.log_dir,
            self.config.logrotate_file,
        ):
            self._remove(path)

    def _remove(self, path: Path) -> None:
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            elif path.exists() or path.is_symlink():
                path.unlink()
            else:
                return
        except OSError as e:
            self.warnings.add(f"Failed to remove {path}: {e}")
            return
        self.logger.info(f"Removed {path}")

    # ----------------------------------------------------------------
    # Optional cleanup
    # ----------------------------------------------------------------
    def remove_account(self) -> None:
        user = self.user
        if account_status(self.runner, user) is AccountStatus.ABSENT:
            return
        if self.prompter.confirm(f"Remove the service account '{user}' and its home?"):
            # pkill exits 1 when nothing matched
            self.runner.run(["pkill", "-u", user], check=False)
            self.best_effort(f"Remove account {user}", ["userdel", "-r", user])

    def clean_firewall(self) -> None:
        if not self.runner.which("ufw"):
            return
        rule = f"{self.config.TAILSCALE_PORT}/udp"
        if self.prompter.confirm(f"Remove the Tailscale firewall rule ({rule})?"):
            self.best_effort("Remove Tailscale firewall rule", ["ufw", "delete", "allow", rule])
        if self.prompter.confirm("Disable the ufw firewall entirely?"):
            self.best_effort("Disable ufw", ["ufw", "--force", "disable"])

    def clean_fail2ban(self) -> None:
        jail = self.config.jail_file
        if jail.exists() and self.prompter.confirm(f"Remove the fail2ban jail {jail}?"):
            self._remove(jail)
            self.best_effort("Restart fail2ban", ["systemctl", "restart", "fail2ban"])
        if self.runner.which("fail2ban-client") and self.prompter.confirm(
            "Uninstall the fail2ban package?"
        ):
            self.best_effort("Uninstall fail2ban", ["apt-get", "purge", "-y", "fail2ban"])

    def remove_docker(self) -> None:
        if self.runner.which("docker") and self.prompter.confirm(
            "Uninstall Docker packages? Other containers on this host will be lost."
        ):
            self.best_effort(
                "Uninstall docker",
                ["apt-get", "purge", "-y", "docker.io", "docker-compose-v2"],
            )

    def clean_tailscale(self) -> None:
        if not self.runner.which("tailscale"):
            return
        if self.prompter.confirm("Disconnect this host from the tailnet?"):
            self.best_effort("Tailscale down", ["tailscale", "down"])
            if self.prompter.confirm("Also uninstall Tailscale?"):
                self.best_effort("Uninstall tailscale", ["apt-get", "purge", "-y", "tailscale"])

    # ----------------------------------------------------------------
    # Summary
    # ----------------------------------------------------------------
    def print_summary(self) -> None:
        self.print_report()
        if self.warnings:
            display_panel(
                "\n".join(f"• {w}" for w in self.warnings),
                style=NordColors.YELLOW,
                title=f"{len(self.warnings)} Warning(s)",
            )
        print_success(f"Moltbot removed in {self.elapsed()}")
        if self.snapshot is not None:
            print_message(
                f"Backup: {self.snapshot.path} ({', '.join(self.snapshot.components()) or 'empty'})"
            )
            print_message(f"Restore with: moltbot-restore {self.snapshot.path}")
        print_message("SSH access was left unchanged")

    def offer_backup_removal(self) -> None:
        if self.snapshot is None:
            return
        if self.prompter.confirm(f"Delete the backup at {self.snapshot.path}?", default=False):
            self._remove(self.snapshot.path)
            self.snapshot = None


@click.command()
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Do not prompt; confirm removal and keep optional components.",
)
@click.version_option(VERSION)
def main(force: bool) -> None:
    """Back up and remove Moltbot from this host."""
    config = Config.from_env()
    setup_logger(config.LOG_FILE)
    console.print(create_header("Moltbot Decommission", "Backup and removal"))

    prompter = AssumeDefaults(accept={CONFIRM_REMOVE}) if force else TerminalPrompter()
    decommissioner = Decommissioner(config, prompter=prompter)
    try:
        require_root()
        decommissioner.run()
    except HardeningError as e:
        decommissioner.print_report()
        report_failure(e)
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
