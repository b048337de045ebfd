"""
Security posture check.

Looks at recent failed SSH logins, fail2ban bans, UFW blocks, AIDE integrity
results, oversized files in /tmp, SUID binaries missing from the baseline and
known-bad process names. Each probe degrades to "nothing found" with a warning
when its data source is unavailable.
"""

import datetime
import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

import psutil

from server_setup.config import SecurityMonitorConfig
from server_setup.monitoring import CheckResult, run_check
from server_setup.monitoring.report_gate import DailyReportGate
from server_setup.notifier import (
    COLOR_BLUE,
    DeliveryResult,
    DiscordNotifier,
    Notification,
    Severity,
)
from server_setup.system import SystemEnvironment

logger = logging.getLogger("server_setup.monitoring.security")

ALERT_TITLE = "Security Alert"
STATUS_TITLE = "Security Status Update"
TEST_TITLE = "🔧 Security Monitor Test"

SYSLOG_TIMESTAMP = re.compile(r"^([A-Z][a-z]{2})\s+(\d{1,2}) (\d{2}:\d{2}:\d{2})")
ISO_TIMESTAMP = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:[+-]\d{2}:\d{2}|Z)?)")
BANNED_PATTERN = re.compile(r"Currently banned:\s*(\d+)")


@dataclass
class SecurityFindings:
    """Everything one security check observed."""

    check_period: int = 3600
    failed_ssh: int = 0
    banned_ips: int = 0
    ufw_blocks: int = 0
    modified_files: bool = False
    large_files: int = 0
    new_suid: List[str] = field(default_factory=list)
    suspicious_processes: List[str] = field(default_factory=list)
    ufw_active: Optional[bool] = None
    fail2ban_active: Optional[bool] = None


# ----------------------------------------------------------------
# Log Parsing
# ----------------------------------------------------------------
def parse_log_timestamp(line: str, now: datetime.datetime) -> Optional[datetime.datetime]:
    """Parse a classic syslog or RFC 3339 timestamp at the start of a line."""
    match = ISO_TIMESTAMP.match(line)
    if match:
        raw = match.group(1).replace("Z", "+00:00")
        try:
            stamp = datetime.datetime.fromisoformat(raw)
        except ValueError:
            return None
        if stamp.tzinfo is not None:
            stamp = stamp.astimezone().replace(tzinfo=None)
        return stamp

    match = SYSLOG_TIMESTAMP.match(line)
    if not match:
        return None
    month, day, clock = match.groups()
    try:
        stamp = datetime.datetime.strptime(
            f"{now.year} {month} {day} {clock}", "%Y %b %d %H:%M:%S"
        )
    except ValueError:
        return None
    # Syslog omits the year; a date in the future belongs to last year.
    if stamp > now + datetime.timedelta(days=1):
        stamp = stamp.replace(year=now.year - 1)
    return stamp


def count_recent_lines(
    path: Path, needle: str, period: int, now: datetime.datetime
) -> int:
    """Count lines containing needle logged within the last period seconds."""
    cutoff = now - datetime.timedelta(seconds=period)
    count = 0
    try:
        with open(path, errors="replace") as f:
            for line in f:
                if needle not in line:
                    continue
                stamp = parse_log_timestamp(line, now)
                if stamp is not None and cutoff <= stamp <= now:
                    count += 1
    except FileNotFoundError:
        logger.warning(f"Log file not found: {path}")
    except OSError as e:
        logger.warning(f"Cannot read {path}: {e}")
    return count


# ----------------------------------------------------------------
# Probes
# ----------------------------------------------------------------
def _probe(system: SystemEnvironment, cmd: Sequence[str]) -> Optional[subprocess.CompletedProcess]:
    try:
        return system.run(cmd, check=False, capture_output=True)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Cannot run {' '.join(cmd)}: {e}")
        return None


def count_banned_ips(system: SystemEnvironment) -> int:
    result = _probe(system, ["fail2ban-client", "status", "sshd"])
    if result is None or result.returncode != 0:
        return 0
    match = BANNED_PATTERN.search(result.stdout or "")
    return int(match.group(1)) if match else 0


def aide_reports_changes(system: SystemEnvironment, aide_db: Path) -> bool:
    if not aide_db.exists():
        return False
    result = _probe(system, ["aide", "--check"])
    return result is not None and "found differences" in (result.stdout or "")


def count_large_files(directory: Path, min_mb: int) -> int:
    limit = min_mb * 1024 * 1024
    count = 0
    for root, _, files in os.walk(directory):
        for name in files:
            try:
                path = os.path.join(root, name)
                if not os.path.islink(path) and os.path.getsize(path) > limit:
                    count += 1
            except OSError:
                continue
    return count


def scan_suid_files(system: SystemEnvironment) -> List[str]:
    """List SUID files on the root filesystem."""
    result = _probe(system, ["find", "/", "-xdev", "-type", "f", "-perm", "-4000"])
    if result is None:
        return []
    return sorted(line for line in (result.stdout or "").splitlines() if line.strip())


def find_new_suid(system: SystemEnvironment, baseline: Path) -> List[str]:
    try:
        known = set(baseline.read_text().splitlines())
    except FileNotFoundError:
        logger.warning(f"SUID baseline not found: {baseline}")
        return []
    return [path for path in scan_suid_files(system) if path not in known]


def find_suspicious_processes(patterns: Iterable[str]) -> List[str]:
    regex = re.compile("|".join(re.escape(p) for p in patterns))
    own_pid = os.getpid()
    found = []
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        info = proc.info
        if info["pid"] == own_pid:
            continue
        cmdline = " ".join(info.get("cmdline") or [])
        if regex.search(info.get("name") or "") or regex.search(cmdline):
            found.append(f"{info['pid']} {info.get('name')} {cmdline}".strip())
    return found


def service_active(system: SystemEnvironment, name: str) -> Optional[bool]:
    result = _probe(system, ["systemctl", "is-active", name])
    if result is None:
        return None
    return (result.stdout or "").strip() == "active"


def ufw_active(system: SystemEnvironment) -> Optional[bool]:
    result = _probe(system, ["ufw", "status"])
    if result is None or result.returncode != 0:
        return None
    return "Status: active" in (result.stdout or "")


def collect_findings(
    config: SecurityMonitorConfig,
    system: SystemEnvironment,
    now: Optional[datetime.datetime] = None,
) -> SecurityFindings:
    now = now or datetime.datetime.now()
    return SecurityFindings(
        check_period=config.CHECK_PERIOD,
        failed_ssh=count_recent_lines(
            config.AUTH_LOG, "Failed password", config.CHECK_PERIOD, now
        ),
        banned_ips=count_banned_ips(system),
        ufw_blocks=count_recent_lines(
            config.UFW_LOG, "UFW BLOCK", config.CHECK_PERIOD, now
        ),
        modified_files=aide_reports_changes(system, config.AIDE_DB),
        large_files=count_large_files(config.LARGE_FILE_DIR, config.LARGE_FILE_MB),
        new_suid=find_new_suid(system, config.SUID_BASELINE),
        suspicious_processes=find_suspicious_processes(config.SUSPICIOUS_PROCESSES),
        ufw_active=ufw_active(system),
        fail2ban_active=service_active(system, "fail2ban"),
    )


# ----------------------------------------------------------------
# Message Building
# ----------------------------------------------------------------
def describe_period(seconds: int) -> str:
    if seconds == 3600:
        return "the last hour"
    if seconds % 3600 == 0:
        return f"the last {seconds // 3600} hours"
    return f"the last {max(seconds // 60, 1)} minutes"


def _status_word(active: Optional[bool]) -> str:
    if active is None:
        return "Unknown"
    return "Active" if active else "Inactive"


def build_status_report(findings: SecurityFindings, heading: str) -> str:
    return "\n".join(
        [
            heading,
            "",
            "- No security issues detected",
            f"- UFW Status: {_status_word(findings.ufw_active)}",
            f"- Fail2ban Status: {_status_word(findings.fail2ban_active)}",
        ]
    )


def evaluate(findings: SecurityFindings, report_due: bool = False) -> CheckResult:
    parts: List[str] = []

    if findings.failed_ssh > 0:
        parts.append(
            f"🔑 **Failed SSH Attempts:** {findings.failed_ssh} in "
            f"{describe_period(findings.check_period)}"
        )
    if findings.banned_ips > 0:
        parts.append(f"🚫 **Currently Banned IPs:** {findings.banned_ips}")
    if findings.ufw_blocks > 0:
        parts.append(f"🛡️ **UFW Blocked Connections:** {findings.ufw_blocks}")
    if findings.modified_files:
        parts.append("⚠️ **Modified System Files Detected!**")
    if findings.large_files > 0:
        parts.append(
            f"📁 **Large Files in /tmp:** {findings.large_files} files over 100MB"
        )
    if findings.new_suid:
        parts.append(
            "⚠️ **New SUID Files Detected:**\n```\n" + "\n".join(findings.new_suid) + "\n```"
        )
    if findings.suspicious_processes:
        parts.append(
            "⚠️ **Suspicious Processes Detected:**\n```\n"
            + "\n".join(findings.suspicious_processes)
            + "\n```"
        )

    if parts:
        return CheckResult(
            needs_alert=True,
            notification=Notification(ALERT_TITLE, "\n\n".join(parts), Severity.CRITICAL),
        )

    if report_due:
        body = build_status_report(findings, "✅ **Daily Security Report**")
        return CheckResult(
            needs_alert=False,
            notification=Notification(STATUS_TITLE, body, Severity.INFO),
            is_daily_report=True,
        )

    return CheckResult(needs_alert=False)


def build_test_report(findings: SecurityFindings) -> Notification:
    lines = [
        "🔍 **Test Security Report**",
        "",
        f"- Failed SSH Attempts: {findings.failed_ssh} in {describe_period(findings.check_period)}",
        f"- Currently Banned IPs: {findings.banned_ips}",
        f"- UFW Blocked Connections: {findings.ufw_blocks}",
        f"- UFW Status: {_status_word(findings.ufw_active)}",
        f"- Fail2ban Status: {_status_word(findings.fail2ban_active)}",
        "",
        "*This is a test message sent during setup/verification.*",
    ]
    return Notification(TEST_TITLE, "\n".join(lines), Severity.INFO, color=COLOR_BLUE)


# ----------------------------------------------------------------
# Entry Point
# ----------------------------------------------------------------
def run_security_check(
    config: SecurityMonitorConfig,
    notifier: DiscordNotifier,
    system: SystemEnvironment,
    force_test: bool = False,
    now: Optional[datetime.datetime] = None,
    collect: Callable[..., SecurityFindings] = collect_findings,
    gate: Optional[DailyReportGate] = None,
) -> Optional[DeliveryResult]:
    now = now or datetime.datetime.now()
    logger.info("Starting security monitoring check...")
    findings = collect(config, system, now)

    if force_test:
        logger.info("Running in test mode - sending immediate security report")
        return run_check(CheckResult(False, build_test_report(findings)), notifier)

    gate = gate or DailyReportGate(config.REPORT_STATE_FILE, config.REPORT_TIME)
    delivery = run_check(evaluate(findings, gate.is_due(now)), notifier, gate, now)
    logger.info("Security check completed")
    return delivery
