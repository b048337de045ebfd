"""
Configuration loading for the setup flows and the monitors.

Values come from an optional KEY=VALUE env file (read with python-dotenv) and
the process environment, which wins. Credentials have no defaults and are
validated before use; everything else falls back to the defaults below.
"""

import datetime
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from dotenv import dotenv_values

from server_setup.errors import ConfigurationError

DEFAULT_USERNAME = "defaultuser"
SERVER_STEPS_FILE = "/tmp/server_setup_progress"
WORDPRESS_STEPS_FILE = "/tmp/wordpress_setup_progress"
STATE_DIR = "/var/lib/server-setup"
MONITORING_DIR = "/opt/monitoring"


# ----------------------------------------------------------------
# Environment Helpers
# ----------------------------------------------------------------
def load_environment(env_file: Optional[Union[str, Path]] = None) -> Dict[str, str]:
    """Merge an env file with os.environ; a named env file must exist."""
    values: Dict[str, str] = {}
    if env_file is not None:
        path = Path(env_file)
        if not path.is_file():
            raise ConfigurationError(f".env file not found: {path}")
        values.update({k: v for k, v in dotenv_values(path).items() if v is not None})
    values.update(os.environ)
    return values


def get_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key, "")
    if raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from None


def get_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key, "")
    if raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from None


def get_time(env: Mapping[str, str], key: str, default: str) -> datetime.time:
    """Parse an HH:MM time of day."""
    raw = env.get(key, "") or default
    try:
        return datetime.datetime.strptime(raw, "%H:%M").time()
    except ValueError:
        raise ConfigurationError(f"{key} must be HH:MM, got {raw!r}") from None


# ----------------------------------------------------------------
# Monitor Configuration
# ----------------------------------------------------------------
@dataclass
class NotifierSettings:
    """Delivery policy shared by both monitors."""

    MAX_RETRIES: int = 3
    RETRY_DELAY: float = 5.0
    TIMEOUT: float = 10.0

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "NotifierSettings":
        settings = cls(
            MAX_RETRIES=get_int(env, "NOTIFY_MAX_RETRIES", cls.MAX_RETRIES),
            RETRY_DELAY=get_float(env, "NOTIFY_RETRY_DELAY", cls.RETRY_DELAY),
            TIMEOUT=get_float(env, "NOTIFY_TIMEOUT", cls.TIMEOUT),
        )
        if settings.MAX_RETRIES < 1:
            raise ConfigurationError("NOTIFY_MAX_RETRIES must be at least 1")
        if settings.RETRY_DELAY < 0:
            raise ConfigurationError("NOTIFY_RETRY_DELAY cannot be negative")
        if settings.TIMEOUT <= 0:
            raise ConfigurationError("NOTIFY_TIMEOUT must be greater than 0")
        return settings


@dataclass
class MonitorConfig:
    """Configuration for the resource monitor."""

    WEBHOOK_URL: str = ""
    THRESHOLD_CPU: int = 80
    THRESHOLD_MEM: int = 80
    THRESHOLD_DISK: int = 85
    REPORT_TIME: datetime.time = datetime.time(9, 0)
    REPORT_STATE_FILE: Path = Path(STATE_DIR) / "server-report.date"
    NOTIFIER: NotifierSettings = field(default_factory=NotifierSettings)

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "MonitorConfig":
        return cls(
            WEBHOOK_URL=env.get("MONITORING_WEBHOOK_URL", ""),
            THRESHOLD_CPU=get_int(env, "ALERT_THRESHOLD_CPU", cls.THRESHOLD_CPU),
            THRESHOLD_MEM=get_int(env, "ALERT_THRESHOLD_MEM", cls.THRESHOLD_MEM),
            THRESHOLD_DISK=get_int(env, "ALERT_THRESHOLD_DISK", cls.THRESHOLD_DISK),
            REPORT_TIME=get_time(env, "DAILY_REPORT_TIME", "09:00"),
            REPORT_STATE_FILE=Path(
                env.get("SERVER_REPORT_STATE_FILE", "")
                or Path(env.get("MONITOR_STATE_DIR", "") or STATE_DIR) / "server-report.date"
            ),
            NOTIFIER=NotifierSettings.from_env(env),
        )


@dataclass
class SecurityMonitorConfig:
    """Configuration for the security monitor."""

    WEBHOOK_URL: str = ""
    CHECK_PERIOD: int = 3600
    AUTH_LOG: Path = Path("/var/log/auth.log")
    UFW_LOG: Path = Path("/var/log/ufw.log")
    AIDE_DB: Path = Path("/var/lib/aide/aide.db")
    SUID_BASELINE: Path = Path("/root/suid_baseline.txt")
    LARGE_FILE_DIR: Path = Path("/tmp")
    LARGE_FILE_MB: int = 100
    SUSPICIOUS_PROCESSES: List[str] = field(
        default_factory=lambda: ["cryptominer", "masscan", "nmap", "nikto"]
    )
    REPORT_TIME: datetime.time = datetime.time(0, 0)
    REPORT_STATE_FILE: Path = Path(STATE_DIR) / "security-report.date"
    NOTIFIER: NotifierSettings = field(default_factory=NotifierSettings)

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "SecurityMonitorConfig":
        return cls(
            WEBHOOK_URL=env.get("SECURITY_WEBHOOK_URL", ""),
            CHECK_PERIOD=get_int(env, "CHECK_PERIOD", cls.CHECK_PERIOD),
            AUTH_LOG=Path(env.get("AUTH_LOG", "") or cls.AUTH_LOG),
            UFW_LOG=Path(env.get("UFW_LOG", "") or cls.UFW_LOG),
            SUID_BASELINE=Path(env.get("SUID_BASELINE", "") or cls.SUID_BASELINE),
            REPORT_TIME=get_time(env, "SECURITY_REPORT_TIME", "00:00"),
            REPORT_STATE_FILE=Path(
                env.get("SECURITY_REPORT_STATE_FILE", "")
                or Path(env.get("MONITOR_STATE_DIR", "") or STATE_DIR) / "security-report.date"
            ),
            NOTIFIER=NotifierSettings.from_env(env),
        )


# ----------------------------------------------------------------
# Server Setup Configuration
# ----------------------------------------------------------------
@dataclass
class ServerConfig:
    """Configuration for the base server setup."""

    USERNAME: str = DEFAULT_USERNAME
    SSH_PORT: int = 22
    CLOUDFLARE_TOKEN: str = ""
    MONITORING_WEBHOOK_URL: str = ""
    SECURITY_WEBHOOK_URL: str = ""
    THRESHOLD_CPU: int = 80
    THRESHOLD_MEM: int = 80
    THRESHOLD_DISK: int = 85
    STEPS_FILE: Path = Path(SERVER_STEPS_FILE)
    MONITORING_DIR: Path = Path(MONITORING_DIR)
    CLOUDFLARED_URL: str = (
        "https://github.com/cloudflare/cloudflared/releases/latest/download/"
        "cloudflared-linux-amd64.deb"
    )
    ESSENTIAL_PACKAGES: List[str] = field(
        default_factory=lambda: [
            "curl",
            "wget",
            "git",
            "htop",
            "ufw",
            "fail2ban",
            "net-tools",
            "sudo",
            "unzip",
            "jq",
        ]
    )

    @property
    def USER_HOME(self) -> Path:
        return Path("/home") / self.USERNAME

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "ServerConfig":
        ssh_port = get_int(env, "SSH_PORT", 22)
        if not 0 < ssh_port < 65536:
            raise ConfigurationError(f"SSH_PORT out of range: {ssh_port}")
        return cls(
            USERNAME=env.get("SERVER_USERNAME", "") or DEFAULT_USERNAME,
            SSH_PORT=ssh_port,
            CLOUDFLARE_TOKEN=env.get("CLOUDFLARE_TOKEN", ""),
            MONITORING_WEBHOOK_URL=env.get("MONITORING_WEBHOOK_URL", ""),
            SECURITY_WEBHOOK_URL=env.get("SECURITY_WEBHOOK_URL", ""),
            THRESHOLD_CPU=get_int(env, "ALERT_THRESHOLD_CPU", 80),
            THRESHOLD_MEM=get_int(env, "ALERT_THRESHOLD_MEM", 80),
            THRESHOLD_DISK=get_int(env, "ALERT_THRESHOLD_DISK", 85),
            STEPS_FILE=Path(env.get("SERVER_SETUP_STEPS_FILE", "") or SERVER_STEPS_FILE),
            MONITORING_DIR=Path(env.get("MONITORING_DIR", "") or MONITORING_DIR),
        )
