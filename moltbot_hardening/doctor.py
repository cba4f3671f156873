#!/usr/bin/env python3
"""
Moltbot Doctor
--------------------------------------------------

A read-only health check for a provisioned Moltbot host. Each check prints one
line with a pass, warn or fail marker. The exit status is 1 only when at least
one check failed; warnings never change it.

Usage:
  moltbot-doctor
"""

import json
import os
import re
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import click
import yaml

from moltbot_hardening import VERSION
from moltbot_hardening.render import LOOPBACK_ADDRESS, SECURE_POLICY, compose_port_hosts, dig
from moltbot_hardening.settings import Config
from moltbot_hardening.system import (
    CommandRunner,
    ContainerHealth,
    FirewallStatus,
    MeshStatus,
    PortBinding,
    ServiceState,
    container_health,
    firewall_status,
    mesh_status,
    port_binding,
    service_state,
    ufw_status_text,
)
from moltbot_hardening.ui import console, create_header, print_section, setup_logger

LOOPBACK_HOSTS = (LOOPBACK_ADDRESS, "::1", "[::1]", "localhost")


class CheckLevel(Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass
class CheckResult:
    name: str
    level: CheckLevel
    detail: str = ""


MARKERS: Dict[CheckLevel, str] = {
    CheckLevel.PASS: "[success]✓[/success]",
    CheckLevel.WARN: "[warning]![/warning]",
    CheckLevel.FAIL: "[error]✗[/error]",
}


class Doctor:
    """Runs every host check and collects the results in order."""

    def __init__(
        self,
        config: Config,
        runner: Optional[CommandRunner] = None,
        euid: Optional[int] = None,
    ):
        self.config = config
        self.runner = runner or CommandRunner()
        self.euid = os.geteuid() if euid is None else euid
        self.results: List[CheckResult] = []

    def _add(self, name: str, level: CheckLevel, detail: str = "") -> None:
        self.results.append(CheckResult(name, level, detail))

    def run(self) -> List[CheckResult]:
        self.results = []
        checks: List[Callable[[], None]] = [
            self.check_privileges,
            self.check_docker,
            self.check_unit,
            self.check_container,
            self.check_firewall,
            self.check_fail2ban,
            self.check_mesh,
            self.check_config,
            self.check_logs,
            self.check_port,
            self.check_updates,
            self.check_compose,
        ]
        for check in checks:
            check()
        return self.results

    @property
    def failed(self) -> bool:
        return any(r.level is CheckLevel.FAIL for r in self.results)

    # ----------------------------------------------------------------
    # Individual checks
    # ----------------------------------------------------------------
    def check_privileges(self) -> None:
        if self.euid == 0:
            self._add("Running as root", CheckLevel.PASS)
        else:
            self._add(
                "Running as root", CheckLevel.WARN, "some checks may be incomplete without root"
            )

    def _service_check(self, name: str, unit: str, missing: CheckLevel) -> None:
        state = service_state(self.runner, unit)
        if state is ServiceState.ACTIVE:
            self._add(name, CheckLevel.PASS, unit)
        else:
            self._add(name, missing, f"{unit} is {state.value}")

    def check_docker(self) -> None:
        self._service_check("Docker daemon", "docker", CheckLevel.FAIL)

    def check_unit(self) -> None:
        self._service_check("Moltbot service", self.config.unit_name, CheckLevel.FAIL)

    def check_container(self) -> None:
        health = container_health(self.runner, self.config.CONTAINER_NAME)
        if health is ContainerHealth.HEALTHY:
            self._add("Container health", CheckLevel.PASS, health.value)
        elif health is ContainerHealth.UNHEALTHY:
            self._add("Container health", CheckLevel.FAIL, health.value)
        else:
            self._add("Container health", CheckLevel.WARN, health.value)

    def check_firewall(self) -> None:
        status = firewall_status(self.runner)
        if status is FirewallStatus.ACTIVE:
            self._add("Firewall (ufw)", CheckLevel.PASS, "active")
        elif status is FirewallStatus.INACTIVE:
            self._add("Firewall (ufw)", CheckLevel.FAIL, "inactive")
        else:
            self._add("Firewall (ufw)", CheckLevel.WARN, "status could not be determined")
            return

        rules = ufw_status_text(self.runner) or ""
        port = str(self.config.GATEWAY_PORT)
        if re.search(rf"(?<!\d){port}(?!\d)", rules):
            self._add("Gateway port firewall rule", CheckLevel.FAIL, f"port {port} is opened in ufw")
        else:
            self._add("Gateway port firewall rule", CheckLevel.PASS, f"port {port} not opened")

    def check_fail2ban(self) -> None:
        self._service_check("fail2ban", "fail2ban", CheckLevel.FAIL)

    def check_mesh(self) -> None:
        self._service_check("Tailscale daemon", "tailscaled", CheckLevel.WARN)
        status = mesh_status(self.runner)
        if status is MeshStatus.JOINED:
            self._add("Tailnet membership", CheckLevel.PASS, status.value)
        else:
            self._add("Tailnet membership", CheckLevel.WARN, status.value)

    def check_config(self) -> None:
        path = self.config.config_file
        try:
            if not path.is_file():
                self._add("Host configuration", CheckLevel.FAIL, f"{path} is missing")
                return
            mode = path.stat().st_mode & 0o777
        except PermissionError:
            self._add("Host configuration", CheckLevel.WARN, f"cannot inspect {path} without root")
            return
        if mode == 0o600:
            self._add("Configuration permissions", CheckLevel.PASS, "0600")
        else:
            self._add("Configuration permissions", CheckLevel.FAIL, f"{mode:04o}, expected 0600")

        try:
            document = json.loads(path.read_text())
        except PermissionError:
            self._add("Host configuration", CheckLevel.WARN, f"cannot read {path}")
            return
        except (OSError, ValueError) as e:
            self._add("Host configuration", CheckLevel.FAIL, f"unreadable: {e}")
            return

        for keys, expected in SECURE_POLICY.items():
            name = ".".join(keys[-2:])
            actual = dig(document, keys)
            if actual == expected:
                self._add(f"Policy {name}", CheckLevel.PASS, expected)
            else:
                self._add(f"Policy {name}", CheckLevel.FAIL, f"{actual!r}, expected {expected!r}")

    def check_logs(self) -> None:
        log_dir = self.config.log_dir
        try:
            present = log_dir.is_dir()
            empty = present and not any(log_dir.iterdir())
        except PermissionError:
            self._add("Log directory", CheckLevel.WARN, f"cannot inspect {log_dir} without root")
            return
        if not present:
            self._add("Log directory", CheckLevel.WARN, f"{log_dir} is missing")
        elif empty:
            self._add("Log directory", CheckLevel.WARN, f"{log_dir} is empty")
        else:
            self._add("Log directory", CheckLevel.PASS, str(log_dir))

    def check_port(self) -> None:
        binding = port_binding(self.runner, self.config.GATEWAY_PORT)
        name = f"Gateway port {self.config.GATEWAY_PORT}"
        if binding is PortBinding.LOOPBACK:
            self._add(name, CheckLevel.PASS, "bound to loopback only")
        elif binding is PortBinding.UNKNOWN:
            self._add(name, CheckLevel.WARN, "binding could not be determined")
        else:
            self._add(name, CheckLevel.FAIL, f"exposed on a {binding.value} address")

    def check_updates(self) -> None:
        try:
            text = self.config.auto_upgrades_file.read_text()
        except OSError:
            text = ""
        if re.search(r'APT::Periodic::Unattended-Upgrade\s+"1"', text):
            self._add("Unattended upgrades", CheckLevel.PASS, "enabled")
        else:
            self._add("Unattended upgrades", CheckLevel.WARN, "not enabled")

    def check_compose(self) -> None:
        path = self.config.compose_file
        try:
            document: Any = yaml.safe_load(path.read_text())
        except PermissionError:
            self._add("Compose definition", CheckLevel.WARN, f"cannot read {path} without root")
            return
        except OSError:
            self._add("Compose definition", CheckLevel.FAIL, f"{path} is missing")
            return
        except yaml.YAMLError as e:
            self._add("Compose definition", CheckLevel.FAIL, f"invalid YAML: {e}")
            return
        if not isinstance(document, dict):
            self._add("Compose definition", CheckLevel.FAIL, "not a mapping")
            return

        hosts = compose_port_hosts(document)
        exposed = [h or "0.0.0.0" for h in hosts if h not in LOOPBACK_HOSTS]
        if exposed:
            self._add("Compose port mapping", CheckLevel.FAIL, f"published on {', '.join(exposed)}")
        else:
            self._add("Compose port mapping", CheckLevel.PASS, "loopback only")

        service = dig(document, ("services", self.config.SERVICE_NAME)) or {}
        options = dig(service, ("logging", "options")) or {}
        if "max-size" in options and "max-file" in options:
            self._add("Container log rotation", CheckLevel.PASS)
        else:
            self._add("Container log rotation", CheckLevel.WARN, "json-file limits not set")

        if "ALL" in (service.get("cap_drop") or []):
            self._add("Capabilities dropped", CheckLevel.PASS)
        else:
            self._add("Capabilities dropped", CheckLevel.WARN, "cap_drop does not include ALL")


def print_results(results: List[CheckResult]) -> None:
    print_section("Moltbot Doctor")
    for result in results:
        detail = f" [dim]({result.detail})[/dim]" if result.detail else ""
        console.print(f"  {MARKERS[result.level]} {result.name}{detail}", highlight=False)

    counts = {level: 0 for level in CheckLevel}
    for result in results:
        counts[result.level] += 1
    console.print(
        f"\n  {counts[CheckLevel.PASS]} passed, "
        f"{counts[CheckLevel.WARN]} warnings, "
        f"{counts[CheckLevel.FAIL]} failed"
    )


@click.command()
@click.version_option(VERSION)
def main() -> None:
    """Check the health and hardening of this Moltbot host."""
    setup_logger()
    console.print(create_header("Moltbot Doctor", "Read-only host check"))
    doctor = Doctor(Config.from_env())
    print_results(doctor.run())
    sys.exit(1 if doctor.failed else 0)


if __name__ == "__main__":
    main()
