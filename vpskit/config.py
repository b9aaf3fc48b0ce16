"""
Global configuration. Defaults live here; environment variables override
them and CLI flags override both.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

# ----------------------------------------------------------------
# Global Constants
# ----------------------------------------------------------------
OPERATION_TIMEOUT: int = 300  # seconds
DEFAULT_TIMEZONE: str = "Asia/Shanghai"
DEFAULT_LOG_DIR: str = "/var/log"
TEMP_PREFIX: str = "vpskit_"

ENV_PREFIX: str = "VPSKIT_"

# Per-command log files, relative to the log directory. sync_time owns
# ntpdate-sync.log, so the timesync.sync logger writes elsewhere.
LOG_FILES: Dict[str, str] = {
    "init": "vps-init.log",
    "dnscrypt.install": "dnscrypt-install.log",
    "dnscrypt.quick": "dnscrypt-install.log",
    "dnscrypt.maint": "dnscrypt-maint.log",
    "fail2ban": "fail2ban-install.log",
    "timesync.install": "ntpdate-install.log",
    "timesync.sync": "ntpdate-sync-run.log",
    "panels": "panels-update.log",
    "docker.install": "docker-install.log",
    "docker.revert-iptables": "vps-revert-docker-iptables-{timestamp}.log",
}

_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Runtime settings for a vpskit invocation."""

    root: Path = field(default_factory=lambda: Path("/"))
    timezone: str = DEFAULT_TIMEZONE
    log_dir: Path = field(default_factory=lambda: Path(DEFAULT_LOG_DIR))
    dry_run: bool = False
    timeout: int = OPERATION_TIMEOUT
    verbose: bool = False
    log_file: Optional[Path] = None
    basic_packages: List[str] = field(
        default_factory=lambda: [
            "sudo",
            "curl",
            "wget",
            "unzip",
            "rsync",
            "htop",
            "git",
            "vim",
            "ca-certificates",
            "gnupg",
        ]
    )
    service_packages: List[str] = field(
        default_factory=lambda: ["rsyslog", "nftables"]
    )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from defaults overridden by VPSKIT_* variables."""
        env = os.environ if environ is None else environ
        settings = cls()

        if env.get(f"{ENV_PREFIX}ROOT"):
            settings.root = Path(env[f"{ENV_PREFIX}ROOT"])
        if env.get(f"{ENV_PREFIX}TIMEZONE"):
            settings.timezone = env[f"{ENV_PREFIX}TIMEZONE"]
        if env.get(f"{ENV_PREFIX}LOG_DIR"):
            settings.log_dir = Path(env[f"{ENV_PREFIX}LOG_DIR"])
        if env.get(f"{ENV_PREFIX}DRY_RUN"):
            settings.dry_run = env[f"{ENV_PREFIX}DRY_RUN"].lower() in _TRUE_VALUES
        if env.get(f"{ENV_PREFIX}TIMEOUT"):
            try:
                settings.timeout = int(env[f"{ENV_PREFIX}TIMEOUT"])
            except ValueError:
                raise ValueError(
                    f"{ENV_PREFIX}TIMEOUT must be an integer, "
                    f"got {env[f'{ENV_PREFIX}TIMEOUT']!r}"
                )
        return settings

    @property
    def is_live_root(self) -> bool:
        """True when managing the running system rather than a mounted tree."""
        return self.root.resolve() == Path("/")

    def log_path(self, command: str, timestamp: str = "") -> Path:
        """Return the log file for a command, honoring --log-file."""
        if self.log_file is not None:
            return self.log_file
        name = LOG_FILES.get(command, "vpskit.log").format(timestamp=timestamp)
        return self.log_dir / name
