#!/usr/bin/env python3
"""
Configuration for the Moltbot hardening procedures.

All procedures share one Config instance. Values come from the dataclass
defaults, optionally overridden by environment variables through
Config.from_env(). Managed paths are stored as absolute strings and resolved
against ROOT, so the whole layout can be relocated under a scratch directory.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from moltbot_hardening.errors import ValidationError


# ----------------------------------------------------------------
# Global Configuration
# ----------------------------------------------------------------
OPERATION_TIMEOUT: int = 300  # 5 minutes default timeout for commands
DEFAULT_LOG_FILE: str = "/var/log/moltbot-hardening.log"


@dataclass
class Config:
    """Configuration for provisioning, decommissioning and restoring Moltbot."""

    ROOT: Path = field(default_factory=lambda: Path("/"))

    # Inputs
    BOT_USER: str = "moltbot"
    BOT_PASSWORD: str = field(default="", repr=False)
    TAILSCALE_AUTH_KEY: str = field(default="", repr=False)
    MIN_PASSWORD_LENGTH: int = 16

    # Filesystem layout
    INSTALL_DIR: str = "/opt/moltbot"
    CONFIG_DIR: str = "/etc/moltbot"
    LOG_DIR: str = "/var/log/moltbot"
    BACKUP_ROOT: str = "/var/backups/moltbot"
    STATE_DIR: str = "/var/lib/moltbot-hardening"
    UNIT_FILE: str = "/etc/systemd/system/moltbot.service"
    LOGROTATE_FILE: str = "/etc/logrotate.d/moltbot"
    JAIL_FILE: str = "/etc/fail2ban/jail.local"
    AUTO_UPGRADES_FILE: str = "/etc/apt/apt.conf.d/20auto-upgrades"
    UNATTENDED_FILE: str = "/etc/apt/apt.conf.d/52moltbot-unattended-upgrades"
    LOG_FILE: str = DEFAULT_LOG_FILE

    # Application
    SERVICE_NAME: str = "moltbot"
    CONTAINER_NAME: str = "moltbot"
    VOLUME_NAME: str = "moltbot-data"
    NETWORK_NAME: str = "moltbot-net"
    IMAGE_TAG: str = "moltbot:local"
    REPO_URL: str = "https://github.com/moltbot/moltbot.git"
    SOURCE_SUBDIR: str = "src"
    BUILD_FILE: str = "Dockerfile"
    SANDBOX_SCRIPT: str = "scripts/sandbox-setup.sh"
    HELPER_IMAGE: str = "alpine:3.19"
    GATEWAY_PORT: int = 18789
    HEALTH_PATH: str = "/health"

    # Network
    SSH_PORT: int = 22
    TAILSCALE_PORT: int = 41641
    TAILSCALE_INSTALL_URL: str = "https://tailscale.com/install.sh"

    # Timing
    SETTLE_TIMEOUT: float = 60.0
    POLL_INTERVAL: float = 1.0
    UPGRADE_STAMP_MAX_AGE: int = 24 * 3600
    SNAPSHOT_LIST_LIMIT: int = 10

    REQUIRED_PACKAGES: List[str] = field(
        default_factory=lambda: [
            "docker.io",
            "docker-compose-v2",
            "ufw",
            "fail2ban",
            "unattended-upgrades",
            "logrotate",
            "git",
            "ca-certificates",
            "openssl",
            "curl",
        ]
    )

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any
    ) -> "Config":
        """Build a Config from environment variables plus explicit overrides."""
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {
            "BOT_PASSWORD": env.get("BOT_PASSWORD", ""),
            "TAILSCALE_AUTH_KEY": env.get("TAILSCALE_AUTH_KEY", ""),
        }
        if env.get("BOT_USER"):
            values["BOT_USER"] = env["BOT_USER"]
        if env.get("MOLTBOT_LOG_FILE"):
            values["LOG_FILE"] = env["MOLTBOT_LOG_FILE"]
        values.update(overrides)
        return cls(**values)

    def path(self, absolute: str) -> Path:
        """Resolve one of the absolute layout paths against ROOT."""
        return Path(self.ROOT) / absolute.lstrip("/")

    def validate_password(self) -> None:
        """Reject a missing or short secret before anything is touched."""
        if not self.BOT_PASSWORD:
            raise ValidationError("BOT_PASSWORD environment variable is required")
        if len(self.BOT_PASSWORD) < self.MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"BOT_PASSWORD must be at least {self.MIN_PASSWORD_LENGTH} characters "
                f"(got {len(self.BOT_PASSWORD)})"
            )

    # ----------------------------------------------------------------
    # Resolved paths
    # ----------------------------------------------------------------
    @property
    def install_dir(self) -> Path:
        return self.path(self.INSTALL_DIR)

    @property
    def config_dir(self) -> Path:
        return self.path(self.CONFIG_DIR)

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.json"

    @property
    def log_dir(self) -> Path:
        return self.path(self.LOG_DIR)

    @property
    def backup_root(self) -> Path:
        return self.path(self.BACKUP_ROOT)

    @property
    def state_dir(self) -> Path:
        return self.path(self.STATE_DIR)

    @property
    def upgrade_stamp(self) -> Path:
        return self.state_dir / "apt-upgrade.stamp"

    @property
    def compose_file(self) -> Path:
        return self.install_dir / "docker-compose.yml"

    @property
    def source_dir(self) -> Path:
        return self.install_dir / self.SOURCE_SUBDIR

    @property
    def doctor_script(self) -> Path:
        return self.install_dir / "moltbot-doctor.sh"

    @property
    def unit_file(self) -> Path:
        return self.path(self.UNIT_FILE)

    @property
    def unit_name(self) -> str:
        return f"{self.SERVICE_NAME}.service"

    @property
    def logrotate_file(self) -> Path:
        return self.path(self.LOGROTATE_FILE)

    @property
    def jail_file(self) -> Path:
        return self.path(self.JAIL_FILE)

    @property
    def auto_upgrades_file(self) -> Path:
        return self.path(self.AUTO_UPGRADES_FILE)

    @property
    def unattended_file(self) -> Path:
        return self.path(self.UNATTENDED_FILE)
