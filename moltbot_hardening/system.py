#!/usr/bin/env python3
"""
Command execution and host state queries.

All interaction with the host's tools goes through a CommandRunner so that the
procedures can be driven against a recording fake. The query functions below
answer one "is X already true?" question each and return an enumerated status
instead of leaving callers to match on command output.
"""

import ipaddress
import json
import logging
import os
import shutil
import subprocess
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

from moltbot_hardening.settings import OPERATION_TIMEOUT

logger = logging.getLogger("moltbot_hardening")

Command = Sequence[Union[str, Path]]


# ----------------------------------------------------------------
# Command Execution Utilities
# ----------------------------------------------------------------
class CommandRunner:
    """Runs host commands with logging, timeouts and secret redaction."""

    def run(
        self,
        cmd: Command,
        check: bool = True,
        capture_output: bool = True,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = OPERATION_TIMEOUT,
        redact: Sequence[str] = (),
    ) -> subprocess.CompletedProcess:
        args = [str(c) for c in cmd]
        cmd_str = redact_text(" ".join(args), redact)
        logger.debug(f"Executing: {cmd_str}")

        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        try:
            result = subprocess.run(
                args,
                check=check,
                capture_output=capture_output,
                text=True,
                env=full_env,
                cwd=str(cwd) if cwd else None,
                timeout=timeout,
            )
        except subprocess.CalledProcessError as e:
            logger.debug(f"Command failed: {cmd_str} with exit code {e.returncode}")
            if e.stderr:
                logger.debug(f"Error: {redact_text(e.stderr.strip(), redact)}")
            raise
        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out after {timeout} seconds: {cmd_str}")
            raise
        return result

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)


def redact_text(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "********")
    return text


def command_succeeds(runner: CommandRunner, cmd: Command) -> bool:
    """Run a query command and report whether it exited 0."""
    try:
        return runner.run(cmd, check=False).returncode == 0
    except (OSError, subprocess.SubprocessError):
        return False


def command_output(runner: CommandRunner, cmd: Command) -> Optional[str]:
    """Return stdout of a query command, or None if it failed."""
    try:
        result = runner.run(cmd, check=False)
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout or ""


# ----------------------------------------------------------------
# Typed Status Values
# ----------------------------------------------------------------
class PackageStatus(Enum):
    INSTALLED = "installed"
    MISSING = "missing"


class ServiceState(Enum):
    ACTIVE = "active"
    ACTIVATING = "activating"
    INACTIVE = "inactive"
    FAILED = "failed"
    UNKNOWN = "unknown"


class AccountStatus(Enum):
    PRESENT = "present"
    ABSENT = "absent"


class FirewallStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    UNAVAILABLE = "unavailable"


class MeshStatus(Enum):
    JOINED = "joined"
    NOT_JOINED = "not joined"
    NOT_INSTALLED = "not installed"
    UNKNOWN = "unknown"


class ContainerHealth(Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"
    UNKNOWN = "unknown"


class PortBinding(Enum):
    LOOPBACK = "loopback"
    WILDCARD = "wildcard"
    EXTERNAL = "external"
    UNKNOWN = "unknown"


# ----------------------------------------------------------------
# State Queries
# ----------------------------------------------------------------
def package_status(runner: CommandRunner, package: str) -> PackageStatus:
    out = command_output(runner, ["dpkg-query", "-W", "-f=${Status}", package])
    if out is not None and "install ok installed" in out:
        return PackageStatus.INSTALLED
    return PackageStatus.MISSING


def service_state(runner: CommandRunner, unit: str) -> ServiceState:
    try:
        result = runner.run(["systemctl", "is-active", unit], check=False)
    except (OSError, subprocess.SubprocessError):
        return ServiceState.UNKNOWN
    word = (result.stdout or "").strip().splitlines()
    try:
        return ServiceState(word[0]) if word else ServiceState.UNKNOWN
    except ValueError:
        return ServiceState.UNKNOWN


def account_status(runner: CommandRunner, name: str) -> AccountStatus:
    if command_succeeds(runner, ["id", "-u", name]):
        return AccountStatus.PRESENT
    return AccountStatus.ABSENT


def account_groups(runner: CommandRunner, name: str) -> List[str]:
    out = command_output(runner, ["id", "-nG", name])
    return out.split() if out else []


def ufw_status_text(runner: CommandRunner) -> Optional[str]:
    return command_output(runner, ["ufw", "status"])


def firewall_status(runner: CommandRunner) -> FirewallStatus:
    out = ufw_status_text(runner)
    if out is None:
        return FirewallStatus.UNAVAILABLE
    if "Status: active" in out:
        return FirewallStatus.ACTIVE
    return FirewallStatus.INACTIVE


def mesh_status(runner: CommandRunner) -> MeshStatus:
    if not runner.which("tailscale"):
        return MeshStatus.NOT_INSTALLED
    try:
        result = runner.run(["tailscale", "status", "--json"], check=False)
        state = json.loads(result.stdout or "{}").get("BackendState", "")
    except (OSError, subprocess.SubprocessError, ValueError, AttributeError):
        return MeshStatus.UNKNOWN
    if state == "Running":
        return MeshStatus.JOINED
    if state in ("NeedsLogin", "NeedsMachineAuth", "Stopped", "NoState"):
        return MeshStatus.NOT_JOINED
    return MeshStatus.UNKNOWN


def container_health(runner: CommandRunner, name: str) -> ContainerHealth:
    out = command_output(
        runner,
        ["docker", "inspect", "--format", "{{if .State.Health}}{{.State.Health.Status}}{{end}}", name],
    )
    try:
        return ContainerHealth((out or "").strip())
    except ValueError:
        return ContainerHealth.UNKNOWN


def container_running(runner: CommandRunner, name: str) -> bool:
    out = command_output(
        runner,
        ["docker", "ps", "--filter", f"name=^{name}$", "--format", "{{.Names}}"],
    )
    return bool(out) and name in out.split()


def volume_exists(runner: CommandRunner, name: str) -> bool:
    return command_succeeds(runner, ["docker", "volume", "inspect", name])


def classify_address(host: str) -> PortBinding:
    """Classify the host part of a listening socket address."""
    host = host.strip("[]")
    if host in ("*", ""):
        return PortBinding.WILDCARD
    try:
        address = ipaddress.ip_address(host.split("%")[0])
    except ValueError:
        return PortBinding.UNKNOWN
    if address.is_unspecified:
        return PortBinding.WILDCARD
    if address.is_loopback:
        return PortBinding.LOOPBACK
    return PortBinding.EXTERNAL


def port_binding(runner: CommandRunner, port: int) -> PortBinding:
    """Report how the given TCP port is bound on the host."""
    out = command_output(runner, ["ss", "-ltnH"])
    if out is None:
        return PortBinding.UNKNOWN

    found: List[PortBinding] = []
    for line in out.splitlines():
        fields = line.split()
        if len(fields) < 4:
            continue
        host, _, listen_port = fields[3].rpartition(":")
        if listen_port == str(port):
            found.append(classify_address(host))

    for worst in (PortBinding.WILDCARD, PortBinding.EXTERNAL, PortBinding.LOOPBACK):
        if worst in found:
            return worst
    return PortBinding.UNKNOWN


# ----------------------------------------------------------------
# Readiness Polling
# ----------------------------------------------------------------
def wait_for(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll predicate until it holds or the timeout budget is spent."""
    deadline = clock() + timeout
    while True:
        if predicate():
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(interval, remaining))


# ----------------------------------------------------------------
# Filesystem Helpers
# ----------------------------------------------------------------
def write_file(path: Path, content: str, mode: int = 0o644) -> None:
    """
    Write content atomically with the final mode applied from creation.

    The data goes to a sibling temp file opened with the target mode and is
    renamed over the destination, so readers never see a partial file and a
    restrictive mode is never preceded by a permissive one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    if tmp.exists():
        tmp.unlink()
    fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        os.fchmod(handle.fileno(), mode)
        handle.write(content)
    os.replace(tmp, path)


def ensure_directory(path: Path, mode: int) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, mode)


def chown(
    runner: CommandRunner,
    path: Path,
    owner: str,
    group: Optional[str] = None,
    recursive: bool = False,
) -> None:
    cmd: List[Union[str, Path]] = ["chown"]
    if recursive:
        cmd.append("-R")
    cmd += [f"{owner}:{group or owner}", path]
    runner.run(cmd)


def read_unit_user(unit_file: Path) -> Optional[str]:
    """Return the User= value of a systemd unit file, if any."""
    try:
        lines = unit_file.read_text().splitlines()
    except OSError:
        return None
    for line in lines:
        key, sep, value = line.partition("=")
        if sep and key.strip() == "User" and value.strip():
            return value.strip()
    return None


def tree_size(path: Path) -> int:
    total = 0
    for root, _, files in os.walk(path):
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total


def format_size(num_bytes: float) -> str:
    for unit in ("B", "K", "M", "G"):
        if num_bytes < 1024:
            return f"{num_bytes:.0f}{unit}" if unit == "B" else f"{num_bytes:.1f}{unit}"
        num_bytes /= 1024
    return f"{num_bytes:.1f}T"


def env_noninteractive() -> Dict[str, str]:
    return {"DEBIAN_FRONTEND": "noninteractive"}
