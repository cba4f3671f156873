#!/usr/bin/env python3
"""
Typed definitions of every file the provisioner generates.

Each generated file is described by a dataclass and serialized by a dedicated
encoder (JSON, YAML, INI, apt.conf, logrotate), so no secret or path is ever
spliced into a text template by hand. Rendering is deterministic: the same
Config always produces byte-identical output.
"""

import json
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple, Union

import yaml

from moltbot_hardening.settings import Config

IniSection = Tuple[str, List[Tuple[str, str]]]
AptValue = Union[str, List[str]]

# Policy fields the doctor expects to find in config.json, as key paths.
SECURE_POLICY: Dict[Tuple[str, ...], str] = {
    ("gateway", "auth", "mode"): "password",
    ("channels", "dmPolicy"): "pairing",
    ("channels", "groupPolicy"): "allowlist",
}

LOOPBACK_ADDRESS: str = "127.0.0.1"


# ----------------------------------------------------------------
# Encoders
# ----------------------------------------------------------------
def render_ini(sections: Sequence[IniSection], separator: str = "=") -> str:
    """Serialize ordered sections; repeated keys are kept as separate lines."""
    blocks = []
    for name, entries in sections:
        lines = [f"[{name}]"]
        lines += [f"{key}{separator}{value}" for key, value in entries]
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + "\n"


def render_apt_conf(entries: Sequence[Tuple[str, AptValue]]) -> str:
    lines = []
    for key, value in entries:
        if isinstance(value, list):
            lines.append(f"{key} {{")
            lines += [f'    "{item}";' for item in value]
            lines.append("};")
        else:
            lines.append(f'{key} "{value}";')
    return "\n".join(lines) + "\n"


def dig(document: Any, keys: Sequence[str]) -> Any:
    for key in keys:
        if not isinstance(document, dict):
            return None
        document = document.get(key)
    return document


# ----------------------------------------------------------------
# Host Configuration (config.json)
# ----------------------------------------------------------------
@dataclass
class RateLimits:
    messages_per_minute: int = 20
    burst: int = 5
    max_concurrent_sessions: int = 4


@dataclass
class HostConfig:
    password: str = field(repr=False)
    port: int = 18789
    auth_mode: str = "password"
    dm_policy: str = "pairing"
    group_policy: str = "allowlist"
    tailnet_only: bool = True
    rate_limits: RateLimits = field(default_factory=RateLimits)

    @classmethod
    def for_config(cls, config: Config) -> "HostConfig":
        return cls(password=config.BOT_PASSWORD, port=config.GATEWAY_PORT)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gateway": {
                "mode": "local",
                "bind": "loopback",
                "port": self.port,
                "tailnetOnly": self.tailnet_only,
                "auth": {"mode": self.auth_mode, "password": self.password},
            },
            "channels": {
                "dmPolicy": self.dm_policy,
                "groupPolicy": self.group_policy,
            },
            "rateLimits": {
                "messagesPerMinute": self.rate_limits.messages_per_minute,
                "burst": self.rate_limits.burst,
                "maxConcurrentSessions": self.rate_limits.max_concurrent_sessions,
            },
        }

    def render(self) -> str:
        return json.dumps(self.to_dict(), indent=2) + "\n"


# ----------------------------------------------------------------
# Compose Definition (docker-compose.yml)
# ----------------------------------------------------------------
@dataclass
class ComposeDefinition:
    service: str
    container_name: str
    image: str
    build_context: str
    dockerfile: str
    port: int
    volume: str
    network: str
    config_file: str
    health_path: str
    bind_address: str = LOOPBACK_ADDRESS
    data_mount: str = "/home/node/.moltbot"
    config_mount: str = "/run/moltbot/config.json"
    cap_add: List[str] = field(default_factory=lambda: ["NET_BIND_SERVICE"])
    tmpfs: str = "/tmp:rw,noexec,nosuid,size=64m"

    @classmethod
    def for_config(cls, config: Config) -> "ComposeDefinition":
        return cls(
            service=config.SERVICE_NAME,
            container_name=config.CONTAINER_NAME,
            image=config.IMAGE_TAG,
            build_context=str(config.source_dir),
            dockerfile=config.BUILD_FILE,
            port=config.GATEWAY_PORT,
            volume=config.VOLUME_NAME,
            network=config.NETWORK_NAME,
            config_file=str(config.config_file),
            health_path=config.HEALTH_PATH,
        )

    @property
    def port_mapping(self) -> str:
        return f"{self.bind_address}:{self.port}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        probe = f"wget -q --spider http://127.0.0.1:{self.port}{self.health_path} || exit 1"
        return {
            "services": {
                self.service: {
                    "image": self.image,
                    "build": {"context": self.build_context, "dockerfile": self.dockerfile},
                    "container_name": self.container_name,
                    "restart": "unless-stopped",
                    "environment": {"MOLTBOT_CONFIG_PATH": self.config_mount},
                    "ports": [self.port_mapping],
                    "volumes": [
                        f"{self.volume}:{self.data_mount}",
                        f"{self.config_file}:{self.config_mount}:ro",
                    ],
                    "networks": [self.network],
                    "read_only": True,
                    "tmpfs": [self.tmpfs],
                    "cap_drop": ["ALL"],
                    "cap_add": list(self.cap_add),
                    "security_opt": ["no-new-privileges:true"],
                    "healthcheck": {
                        "test": ["CMD-SHELL", probe],
                        "interval": "30s",
                        "timeout": "5s",
                        "retries": 3,
                        "start_period": "20s",
                    },
                    "logging": {
                        "driver": "json-file",
                        "options": {"max-size": "10m", "max-file": "3"},
                    },
                }
            },
            "networks": {self.network: {"name": self.network, "driver": "bridge"}},
            "volumes": {self.volume: {"name": self.volume}},
        }

    def render(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)


def compose_port_hosts(document: Dict[str, Any]) -> List[str]:
    """Return the host address of every port mapping in a compose document."""
    hosts = []
    for service in (document.get("services") or {}).values():
        for mapping in service.get("ports") or []:
            if isinstance(mapping, dict):
                hosts.append(str(mapping.get("host_ip", "")))
                continue
            parts = str(mapping).split(":")
            # "port", "host:container" and "ip:host:container"
            hosts.append(":".join(parts[:-2]) if len(parts) >= 3 else "")
    return hosts


# ----------------------------------------------------------------
# Service Unit (moltbot.service)
# ----------------------------------------------------------------
@dataclass
class ServiceUnit:
    description: str
    user: str
    working_directory: str
    compose_file: str
    read_write_paths: List[str]
    docker: str = "/usr/bin/docker"
    restart_sec: int = 10

    @classmethod
    def for_config(cls, config: Config, user: str = "") -> "ServiceUnit":
        return cls(
            description="Moltbot gateway (docker compose)",
            user=user or config.BOT_USER,
            working_directory=str(config.install_dir),
            compose_file=str(config.compose_file),
            read_write_paths=[str(config.install_dir), str(config.log_dir)],
        )

    def sections(self) -> List[IniSection]:
        compose = f"{self.docker} compose -f {self.compose_file}"
        return [
            (
                "Unit",
                [
                    ("Description", self.description),
                    ("Requires", "docker.service"),
                    ("After", "docker.service network-online.target"),
                    ("Wants", "network-online.target"),
                ],
            ),
            (
                "Service",
                [
                    ("Type", "simple"),
                    ("User", self.user),
                    ("Group", self.user),
                    ("WorkingDirectory", self.working_directory),
                    ("Environment", f"DOCKER_CONFIG={self.working_directory}/.docker"),
                    ("ExecStartPre", f"-{compose} down --remove-orphans"),
                    ("ExecStart", f"{compose} up --remove-orphans"),
                    ("ExecStop", f"{compose} down"),
                    ("Restart", "on-failure"),
                    ("RestartSec", str(self.restart_sec)),
                    ("NoNewPrivileges", "true"),
                    ("PrivateTmp", "true"),
                    ("ProtectSystem", "strict"),
                    ("ProtectHome", "true"),
                    ("ReadWritePaths", " ".join(self.read_write_paths)),
                ],
            ),
            ("Install", [("WantedBy", "multi-user.target")]),
        ]

    def render(self) -> str:
        return render_ini(self.sections())


# ----------------------------------------------------------------
# Host hardening files
# ----------------------------------------------------------------
@dataclass
class JailConfig:
    port: str = "ssh"
    maxretry: int = 3
    findtime: int = 600
    bantime: int = 3600
    logpath: str = "/var/log/auth.log"

    def render(self) -> str:
        return render_ini(
            [
                (
                    "sshd",
                    [
                        ("enabled", "true"),
                        ("port", self.port),
                        ("filter", "sshd"),
                        ("logpath", self.logpath),
                        ("maxretry", str(self.maxretry)),
                        ("findtime", str(self.findtime)),
                        ("bantime", str(self.bantime)),
                    ],
                )
            ],
            separator=" = ",
        )


def render_unattended_upgrades() -> str:
    return render_apt_conf(
        [
            (
                "Unattended-Upgrade::Allowed-Origins",
                [
                    "${distro_id}:${distro_codename}",
                    "${distro_id}:${distro_codename}-security",
                    "${distro_id}ESMApps:${distro_codename}-apps-security",
                    "${distro_id}ESM:${distro_codename}-infra-security",
                ],
            ),
            ("Unattended-Upgrade::AutoFixInterruptedDpkg", "true"),
            ("Unattended-Upgrade::MinimalSteps", "true"),
            ("Unattended-Upgrade::Remove-Unused-Dependencies", "true"),
            ("Unattended-Upgrade::Automatic-Reboot", "false"),
        ]
    )


def render_auto_upgrades() -> str:
    return render_apt_conf(
        [
            ("APT::Periodic::Update-Package-Lists", "1"),
            ("APT::Periodic::Download-Upgradeable-Packages", "1"),
            ("APT::Periodic::AutocleanInterval", "7"),
            ("APT::Periodic::Unattended-Upgrade", "1"),
        ]
    )


@dataclass
class LogrotatePolicy:
    log_dir: str
    owner: str
    unit_name: str
    rotate: int = 14

    def render(self) -> str:
        directives = [
            "daily",
            f"rotate {self.rotate}",
            "compress",
            "delaycompress",
            "missingok",
            "notifempty",
            f"create 0640 {self.owner} {self.owner}",
            "sharedscripts",
        ]
        lines = [f"{self.log_dir}/*.log {{"]
        lines += [f"    {d}" for d in directives]
        lines += [
            "    postrotate",
            f"        systemctl try-restart {self.unit_name} >/dev/null 2>&1 || true",
            "    endscript",
            "}",
        ]
        return "\n".join(lines) + "\n"


def render_doctor_script(python: str = sys.executable) -> str:
    return "\n".join(
        [
            "#!/bin/sh",
            "# Read-only health check for this Moltbot host.",
            f'exec "{python}" -m moltbot_hardening.doctor "$@"',
            "",
        ]
    )
