#!/usr/bin/env python3
"""
Moltbot Provisioner
--------------------------------------------------

Turns a fresh Ubuntu/Debian host into a hardened Moltbot deployment:

  • System updates and required packages
  • Dedicated service account with docker access
  • Firewall (ufw), fail2ban, unattended security upgrades, logrotate
  • Tailscale mesh VPN
  • Host configuration, compose definition and systemd unit
  • Local image build, service start and loopback-only verification

Every step checks the current state before changing it, so running the
provisioner again on a provisioned host converges without damage.

Usage:
  sudo BOT_PASSWORD=... moltbot-provision
"""

import sys
import time
from typing import Callable, List, Optional, Tuple

import click

from moltbot_hardening import VERSION
from moltbot_hardening.doctor import Doctor, print_results
from moltbot_hardening.errors import HardeningError, SecurityViolation, StepFailed, ValidationError
from moltbot_hardening.procedure import Procedure, report_failure, require_root
from moltbot_hardening.render import (
    ComposeDefinition,
    HostConfig,
    JailConfig,
    LogrotatePolicy,
    ServiceUnit,
    render_auto_upgrades,
    render_doctor_script,
    render_unattended_upgrades,
)
from moltbot_hardening.settings import Config
from moltbot_hardening.system import (
    AccountStatus,
    CommandRunner,
    ContainerHealth,
    FirewallStatus,
    MeshStatus,
    PackageStatus,
    PortBinding,
    ServiceState,
    account_groups,
    account_status,
    chown,
    command_output,
    container_health,
    ensure_directory,
    env_noninteractive,
    firewall_status,
    mesh_status,
    package_status,
    port_binding,
    service_state,
    wait_for,
    write_file,
)
from moltbot_hardening.ui import (
    NordColors,
    console,
    create_header,
    display_panel,
    print_success,
    print_warning,
    setup_logger,
)

Step = Tuple[str, str, Callable[[], Optional[str]]]


class Provisioner(Procedure):
    """Runs the sixteen provisioning steps in order."""

    title = "Provisioning"

    def __init__(
        self,
        config: Config,
        runner: Optional[CommandRunner] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(config, runner)
        self.sleep = sleep
        self.clock = clock

    def steps(self) -> List[Step]:
        return [
            ("system_update", "Updating package index and system", self.update_system),
            ("packages", "Installing required packages", self.install_packages),
            ("service_account", "Configuring service account", self.ensure_account),
            ("directories", "Creating directories", self.create_directories),
            ("firewall", "Configuring firewall", self.configure_firewall),
            ("fail2ban", "Configuring fail2ban", self.configure_fail2ban),
            ("auto_updates", "Configuring unattended upgrades", self.configure_auto_updates),
            ("logrotate", "Configuring log rotation", self.configure_logrotate),
            ("tailscale", "Configuring Tailscale", self.configure_tailscale),
            ("host_config", "Writing host configuration", self.write_host_config),
            ("compose", "Writing compose definition", self.write_compose),
            ("service_unit", "Installing systemd unit", self.install_unit),
            ("doctor_script", "Installing doctor script", self.install_doctor_script),
            ("image", "Building Moltbot image", self.build_image),
            ("start", "Starting Moltbot service", self.start_service),
            ("port_check", "Verifying gateway port binding", self.verify_port),
        ]

    def run(self) -> None:
        self.config.validate_password()
        steps = self.steps()
        for key, _, _ in steps:
            self.set_status(key, "pending", "Waiting...")
        for key, description, func in steps:
            self.run_step(key, description, func)

    # ----------------------------------------------------------------
    # Host preparation
    # ----------------------------------------------------------------
    def update_system(self) -> Optional[str]:
        stamp = self.config.upgrade_stamp
        if stamp.exists():
            age = time.time() - stamp.stat().st_mtime
            if age < self.config.UPGRADE_STAMP_MAX_AGE:
                return f"already updated {int(age // 3600)}h ago"
        env = env_noninteractive()
        self.runner.run(["apt-get", "update"], env=env)
        self.runner.run(
            ["apt-get", "-y", "-o", "Dpkg::Options::=--force-confold", "upgrade"],
            env=env,
            timeout=None,
        )
        self.config.state_dir.mkdir(parents=True, exist_ok=True)
        stamp.touch()
        return None

    def install_packages(self) -> Optional[str]:
        missing = [
            pkg
            for pkg in self.config.REQUIRED_PACKAGES
            if package_status(self.runner, pkg) is PackageStatus.MISSING
        ]
        if not missing:
            return "already installed"
        for pkg in missing:
            self.logger.info(f"Installing {pkg}")
            self.runner.run(
                ["apt-get", "install", "-y", pkg], env=env_noninteractive(), timeout=None
            )
        return f"Installed {len(missing)} package(s)"

    def ensure_account(self) -> Optional[str]:
        user = self.config.BOT_USER
        changed = False
        if account_status(self.runner, user) is AccountStatus.ABSENT:
            self.runner.run(["useradd", "-m", "-s", "/bin/bash", user])
            self.logger.info(f"Created service account {user}")
            changed = True
        if "docker" not in account_groups(self.runner, user):
            self.runner.run(["usermod", "-aG", "docker", user])
            changed = True
        return None if changed else f"already configured ({user})"

    def create_directories(self) -> Optional[str]:
        user = self.config.BOT_USER
        ensure_directory(self.config.install_dir, 0o750)
        chown(self.runner, self.config.install_dir, user)
        ensure_directory(self.config.log_dir, 0o750)
        chown(self.runner, self.config.log_dir, user)
        ensure_directory(self.config.config_dir, 0o750)
        chown(self.runner, self.config.config_dir, "root", "root")
        ensure_directory(self.config.backup_root, 0o700)
        return None

    def configure_firewall(self) -> Optional[str]:
        if firewall_status(self.runner) is FirewallStatus.ACTIVE:
            return "already active"
        for cmd in (
            ["ufw", "--force", "reset"],
            ["ufw", "default", "deny", "incoming"],
            ["ufw", "default", "allow", "outgoing"],
            ["ufw", "allow", f"{self.config.SSH_PORT}/tcp"],
            ["ufw", "allow", f"{self.config.TAILSCALE_PORT}/udp"],
            ["ufw", "--force", "enable"],
        ):
            self.runner.run(cmd)
        return None

    def configure_fail2ban(self) -> Optional[str]:
        jail = self.config.jail_file
        if jail.exists():
            self.logger.info(f"Keeping existing {jail}")
        else:
            write_file(jail, JailConfig().render(), 0o644)
        self.runner.run(["systemctl", "enable", "fail2ban"])
        self.runner.run(["systemctl", "restart", "fail2ban"])
        return None

    def configure_auto_updates(self) -> Optional[str]:
        write_file(self.config.unattended_file, render_unattended_upgrades(), 0o644)
        write_file(self.config.auto_upgrades_file, render_auto_upgrades(), 0o644)
        self.best_effort(
            "Enable unattended-upgrades", ["systemctl", "enable", "--now", "unattended-upgrades"]
        )
        return None

    def configure_logrotate(self) -> Optional[str]:
        policy = LogrotatePolicy(
            log_dir=str(self.config.log_dir),
            owner=self.config.BOT_USER,
            unit_name=self.config.unit_name,
        )
        write_file(self.config.logrotate_file, policy.render(), 0o644)
        return None

    def configure_tailscale(self) -> Optional[str]:
        if not self.runner.which("tailscale"):
            self.runner.run(
                ["sh", "-c", f"curl -fsSL {self.config.TAILSCALE_INSTALL_URL} | sh"],
                timeout=None,
            )
        self.runner.run(["systemctl", "enable", "--now", "tailscaled"])

        if mesh_status(self.runner) is MeshStatus.JOINED:
            return "already joined"
        key = self.config.TAILSCALE_AUTH_KEY
        if not key:
            self.warnings.add(
                "TAILSCALE_AUTH_KEY not set; run 'tailscale up' manually to join the tailnet"
            )
            return "Manual join required"
        self.runner.run(["tailscale", "up", f"--authkey={key}"], redact=[key])
        return "Joined tailnet"

    # ----------------------------------------------------------------
    # Generated files
    # ----------------------------------------------------------------
    def write_host_config(self) -> Optional[str]:
        path = self.config.config_file
        write_file(path, HostConfig.for_config(self.config).render(), 0o600)
        chown(self.runner, path, "root", "root")
        return None

    def write_compose(self) -> Optional[str]:
        path = self.config.compose_file
        write_file(path, ComposeDefinition.for_config(self.config).render(), 0o640)
        chown(self.runner, path, self.config.BOT_USER)
        return None

    def install_unit(self) -> Optional[str]:
        write_file(self.config.unit_file, ServiceUnit.for_config(self.config).render(), 0o644)
        self.runner.run(["systemctl", "daemon-reload"])
        self.runner.run(["systemctl", "enable", self.config.unit_name])
        return None

    def install_doctor_script(self) -> Optional[str]:
        write_file(self.config.doctor_script, render_doctor_script(), 0o755)
        return None

    # ----------------------------------------------------------------
    # Build and start
    # ----------------------------------------------------------------
    def build_image(self) -> Optional[str]:
        source = self.config.source_dir
        if (source / ".git").is_dir():
            # the checkout is owned by the service account after the first build
            self.runner.run(
                ["git", "-c", f"safe.directory={source}", "-C", source, "pull", "--ff-only"],
                timeout=None,
            )
        else:
            self.runner.run(
                ["git", "clone", "--depth", "1", self.config.REPO_URL, source], timeout=None
            )
        chown(self.runner, source, self.config.BOT_USER, recursive=True)

        build_file = source / self.config.BUILD_FILE
        if not build_file.is_file():
            raise ValidationError(f"Build file not found: {build_file}")
        self.runner.run(
            ["docker", "build", "-t", self.config.IMAGE_TAG, "-f", build_file, source],
            timeout=None,
        )

        sandbox = source / self.config.SANDBOX_SCRIPT
        if sandbox.is_file():
            self.best_effort("Sandbox setup script", ["bash", sandbox])
        return f"Built {self.config.IMAGE_TAG}"

    def _wait(self, predicate: Callable[[], bool]) -> bool:
        return wait_for(
            predicate,
            self.config.SETTLE_TIMEOUT,
            self.config.POLL_INTERVAL,
            sleep=self.sleep,
            clock=self.clock,
        )

    def collect_diagnostics(self) -> str:
        sections = []
        for title, cmd in (
            ("systemctl status", ["systemctl", "status", self.config.unit_name, "--no-pager"]),
            ("docker logs", ["docker", "logs", "--tail", "50", self.config.CONTAINER_NAME]),
        ):
            result = self.runner.run(cmd, check=False)
            output = ((result.stdout or "") + (result.stderr or "")).strip()
            sections.append(f"$ {title}\n{output or '(no output)'}")
        return "\n\n".join(sections)

    def start_service(self) -> Optional[str]:
        unit = self.config.unit_name
        self.runner.run(["systemctl", "start", unit])
        active = self._wait(lambda: service_state(self.runner, unit) is ServiceState.ACTIVE)
        if not active:
            diagnostics = self.collect_diagnostics()
            self.logger.debug(diagnostics)
            raise StepFailed(
                f"{unit} did not become active within {self.config.SETTLE_TIMEOUT:.0f}s",
                diagnostics=diagnostics,
            )

        name = self.config.CONTAINER_NAME
        healthy = self._wait(
            lambda: container_health(self.runner, name) is ContainerHealth.HEALTHY
        )
        if not healthy:
            health = container_health(self.runner, name)
            self.warnings.add(f"Container {name} health is {health.value} after start")
        return None

    def verify_port(self) -> Optional[str]:
        port = self.config.GATEWAY_PORT
        binding = port_binding(self.runner, port)
        if binding in (PortBinding.WILDCARD, PortBinding.EXTERNAL):
            listeners = command_output(self.runner, ["ss", "-ltnp"]) or ""
            matching = [line for line in listeners.splitlines() if f":{port} " in line]
            raise SecurityViolation(
                "\n".join([f"Gateway port {port} is exposed on a {binding.value} address"] + matching)
            )
        if binding is PortBinding.UNKNOWN:
            self.warnings.add(f"Could not determine how port {port} is bound")
            return "Binding unknown"
        return "Loopback only"

    # ----------------------------------------------------------------
    # Summary
    # ----------------------------------------------------------------
    def print_summary(self) -> None:
        self.print_report()
        if self.warnings:
            display_panel(
                "\n".join(f"• {w}" for w in self.warnings),
                style=NordColors.YELLOW,
                title="Warnings",
            )
        print_success(f"Provisioning completed in {self.elapsed()}")
        display_panel(
            "\n".join(
                [
                    f"Gateway:  http://127.0.0.1:{self.config.GATEWAY_PORT} (tailnet only)",
                    f"Config:   {self.config.config_file}",
                    f"Logs:     journalctl -u {self.config.unit_name} -f",
                    f"Doctor:   {self.config.doctor_script}",
                ]
            ),
            style=NordColors.FROST_2,
            title="Next Steps",
        )


@click.command()
@click.version_option(VERSION)
def main() -> None:
    """Provision a hardened Moltbot host."""
    config = Config.from_env()
    console.print(create_header("Moltbot Provision", "Hardened host setup"))
    try:
        config.validate_password()
    except ValidationError as e:
        report_failure(e)
        sys.exit(1)
    setup_logger(config.LOG_FILE)

    provisioner = Provisioner(config)
    try:
        require_root()
        provisioner.run()
    except HardeningError as e:
        provisioner.print_report()
        report_failure(e)
        sys.exit(1)

    doctor = Doctor(config, provisioner.runner)
    print_results(doctor.run())
    if doctor.failed:
        print_warning("Doctor reported failures; review the checks above")
    provisioner.print_summary()
    sys.exit(0)


if __name__ == "__main__":
    main()
