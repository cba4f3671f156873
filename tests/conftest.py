"""Shared fixtures: a recording command runner and a relocated Config."""

import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from moltbot_hardening.render import ComposeDefinition, HostConfig, render_auto_upgrades
from moltbot_hardening.settings import Config
from moltbot_hardening.system import CommandRunner

PASSWORD = "correct-horse-battery-staple"


class FakeRunner(CommandRunner):
    """
    Records every command instead of running it.

    Responses are registered per command prefix with on(); the most recently
    registered matching rule wins. Unmatched commands succeed with no output.
    """

    def __init__(self, installed: Sequence[str] = ()):
        self.rules: List[tuple] = []
        self.calls: List[List[str]] = []
        self.options: List[Dict] = []
        self.installed = set(installed)

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        effect: Optional[Callable[[List[str]], None]] = None,
    ) -> "FakeRunner":
        self.rules.append((list(prefix), returncode, stdout, stderr, effect))
        return self

    def run(self, cmd, check=True, capture_output=True, env=None, cwd=None, timeout=None, redact=()):
        args = [str(c) for c in cmd]
        self.calls.append(args)
        self.options.append({"env": env, "redact": list(redact), "check": check})

        returncode, stdout, stderr = 0, "", ""
        for prefix, rc, out, err, effect in reversed(self.rules):
            if args[: len(prefix)] == prefix:
                returncode, stdout, stderr = rc, out, err
                if effect is not None:
                    effect(args)
                break

        if check and returncode != 0:
            raise subprocess.CalledProcessError(returncode, args, output=stdout, stderr=stderr)
        return subprocess.CompletedProcess(args, returncode, stdout, stderr)

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.installed else None

    def ran(self, *prefix: str) -> bool:
        return any(call[: len(prefix)] == list(prefix) for call in self.calls)

    def commands(self, *prefix: str) -> List[List[str]]:
        return [call for call in self.calls if call[: len(prefix)] == list(prefix)]


@pytest.fixture
def config(tmp_path):
    return Config(
        ROOT=tmp_path,
        BOT_PASSWORD=PASSWORD,
        TAILSCALE_AUTH_KEY="tskey-auth-secret",
        SETTLE_TIMEOUT=0,
        POLL_INTERVAL=0,
    )


def _create_build_file(args: List[str]) -> None:
    source = Path(args[-1])
    source.mkdir(parents=True, exist_ok=True)
    (source / ".git").mkdir(exist_ok=True)
    (source / "Dockerfile").write_text("FROM node:22-alpine\n")


@pytest.fixture
def fresh_runner():
    """A bare host: nothing installed, no account, firewall off, tailnet not joined."""
    runner = FakeRunner(installed={"docker", "ufw"})
    runner.on("dpkg-query", returncode=1)
    runner.on("id", "-u", returncode=1)
    runner.on("id", "-nG", returncode=1)
    runner.on("ufw", "status", stdout="Status: inactive\n")
    runner.on("systemctl", "is-active", stdout="active\n")
    runner.on("docker", "inspect", stdout="healthy\n")
    runner.on("docker", "ps", stdout="moltbot\n")
    runner.on("docker", "volume", "inspect", returncode=1)
    runner.on("ss", "-ltnH", stdout="LISTEN 0 4096 127.0.0.1:18789 0.0.0.0:*\n")
    runner.on("git", "clone", effect=_create_build_file)
    return runner


@pytest.fixture
def healthy_runner():
    """A fully provisioned host where every query reports the hardened state."""
    runner = FakeRunner(installed={"docker", "ufw", "tailscale", "fail2ban-client"})
    runner.on("dpkg-query", stdout="install ok installed")
    runner.on("id", "-u", stdout="999\n")
    runner.on("id", "-nG", stdout="moltbot docker\n")
    runner.on(
        "ufw",
        "status",
        stdout=(
            "Status: active\n\n"
            "To                         Action      From\n"
            "--                         ------      ----\n"
            "22/tcp                     ALLOW       Anywhere\n"
            "41641/udp                  ALLOW       Anywhere\n"
        ),
    )
    runner.on("systemctl", "is-active", stdout="active\n")
    runner.on("tailscale", "status", stdout='{"BackendState": "Running"}')
    runner.on("docker", "inspect", stdout="healthy\n")
    runner.on("docker", "ps", stdout="moltbot\n")
    runner.on("ss", "-ltnH", stdout="LISTEN 0 4096 127.0.0.1:18789 0.0.0.0:*\n")
    return runner


@pytest.fixture
def deployed(config):
    """Lay down the files a successful provisioning run leaves behind."""
    config.config_dir.mkdir(parents=True)
    config.config_file.write_text(HostConfig.for_config(config).render())
    config.config_file.chmod(0o600)
    config.install_dir.mkdir(parents=True)
    config.compose_file.write_text(ComposeDefinition.for_config(config).render())
    config.log_dir.mkdir(parents=True)
    (config.log_dir / "gateway.log").write_text("started\n")
    config.auto_upgrades_file.parent.mkdir(parents=True)
    config.auto_upgrades_file.write_text(render_auto_upgrades())
    config.unit_file.parent.mkdir(parents=True)
    config.unit_file.write_text("[Service]\nUser=moltbot\n")
    return config
