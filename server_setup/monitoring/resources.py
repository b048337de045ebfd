"""
Resource threshold check: CPU, memory and root disk usage.

Metrics are collected with psutil. Anything that cannot be read is reported as
N/A and never triggers an alert. A metric breaches its threshold only when it is
strictly greater.
"""

import datetime
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import psutil

from server_setup.config import MonitorConfig
from server_setup.monitoring import CheckResult, run_check
from server_setup.monitoring.report_gate import DailyReportGate
from server_setup.notifier import (
    COLOR_BLUE,
    DeliveryResult,
    DiscordNotifier,
    Notification,
    Severity,
)

logger = logging.getLogger("server_setup.monitoring.resources")

ALERT_TITLE = "⚠️ Resource Monitor Alert"
STATUS_TITLE = "📊 Server Status Update"
TEST_TITLE = "🔧 Server Monitor Test"


@dataclass
class SystemMetrics:
    """Data class to hold one snapshot of system resource usage."""

    cpu_percent: Optional[int] = None
    load_avg: Optional[Tuple[float, float, float]] = None
    mem_used_mb: Optional[int] = None
    mem_total_mb: Optional[int] = None
    mem_percent: Optional[int] = None
    disk_percent: Optional[int] = None
    disk_details: str = "N/A"
    process_count: Optional[int] = None
    uptime: str = "N/A"

    @property
    def load_avg_text(self) -> str:
        if self.load_avg is None:
            return "N/A"
        return " ".join(f"{value:.2f}" for value in self.load_avg)


@dataclass
class Thresholds:
    cpu: int = 80
    mem: int = 80
    disk: int = 85

    @classmethod
    def from_config(cls, config: MonitorConfig) -> "Thresholds":
        return cls(
            cpu=config.THRESHOLD_CPU, mem=config.THRESHOLD_MEM, disk=config.THRESHOLD_DISK
        )


# ----------------------------------------------------------------
# Metric Collection
# ----------------------------------------------------------------
def format_uptime(seconds: float) -> str:
    """Format seconds the way `uptime -p` does."""
    minutes_total = int(seconds // 60)
    days, rem = divmod(minutes_total, 1440)
    hours, minutes = divmod(rem, 60)
    parts: List[str] = []
    for value, unit in ((days, "day"), (hours, "hour"), (minutes, "minute")):
        if value:
            parts.append(f"{value} {unit}{'s' if value != 1 else ''}")
    return "up " + ", ".join(parts or ["0 minutes"])


def get_disk_details() -> str:
    """One "mountpoint: N%" line per mounted block device."""
    lines = []
    for partition in psutil.disk_partitions(all=False):
        if not partition.device.startswith("/dev/"):
            continue
        try:
            usage = psutil.disk_usage(partition.mountpoint)
        except (PermissionError, FileNotFoundError):
            continue
        lines.append(f"{partition.mountpoint}: {int(usage.percent)}%")
    return "\n".join(lines) or "N/A"


def collect_metrics(cpu_interval: float = 1.0) -> SystemMetrics:
    """Collect a metrics snapshot; failures degrade to N/A with a warning."""
    metrics = SystemMetrics()

    try:
        metrics.cpu_percent = int(psutil.cpu_percent(interval=cpu_interval))
    except (OSError, RuntimeError) as e:
        logger.warning(f"Failed to get CPU usage: {e}")

    try:
        metrics.load_avg = os.getloadavg()
    except OSError as e:
        logger.warning(f"Failed to get load average: {e}")

    try:
        mem = psutil.virtual_memory()
        metrics.mem_total_mb = int(mem.total // (1024 * 1024))
        metrics.mem_used_mb = int(mem.used // (1024 * 1024))
        if metrics.mem_total_mb:
            metrics.mem_percent = metrics.mem_used_mb * 100 // metrics.mem_total_mb
    except (OSError, RuntimeError) as e:
        logger.warning(f"Failed to get memory information: {e}")

    try:
        metrics.disk_percent = int(psutil.disk_usage("/").percent)
        metrics.disk_details = get_disk_details()
    except OSError as e:
        logger.warning(f"Failed to get disk information: {e}")

    try:
        metrics.process_count = len(psutil.pids())
        metrics.uptime = format_uptime(time.time() - psutil.boot_time())
    except (OSError, RuntimeError) as e:
        logger.warning(f"Failed to get process information: {e}")

    return metrics


# ----------------------------------------------------------------
# Message Building
# ----------------------------------------------------------------
def _value(value: Optional[int]) -> str:
    return "N/A" if value is None else str(value)


def _overview(metrics: SystemMetrics) -> List[str]:
    return [
        "**System Overview:**",
        f"- CPU Usage: {_value(metrics.cpu_percent)}%",
        f"- Load Average: {metrics.load_avg_text}",
        f"- Memory Usage: {_value(metrics.mem_percent)}% "
        f"({_value(metrics.mem_used_mb)}MB/{_value(metrics.mem_total_mb)}MB)",
        f"- Disk Usage: {_value(metrics.disk_percent)}%",
        f"- Process Count: {_value(metrics.process_count)}",
        f"- System Uptime: {metrics.uptime}",
        "",
        "**Disk Details:**",
        f"```\n{metrics.disk_details}\n```",
    ]


def build_status_report(metrics: SystemMetrics) -> Notification:
    body = "\n".join(["✅ **Daily Status Report**", ""] + _overview(metrics))
    return Notification(STATUS_TITLE, body, Severity.INFO)


def build_test_report(metrics: SystemMetrics) -> Notification:
    lines = ["🔍 **Test Status Report**", ""] + _overview(metrics)
    lines += ["", "*This is a test message sent during setup/verification.*"]
    return Notification(TEST_TITLE, "\n".join(lines), Severity.INFO, color=COLOR_BLUE)


def _breaches(value: Optional[int], threshold: int) -> bool:
    return value is not None and value > threshold


def evaluate(
    metrics: SystemMetrics, thresholds: Thresholds, report_due: bool = False
) -> CheckResult:
    """Decide between an alert, a daily status report, or nothing."""
    lines = ["🚨 **Resource Alert**", ""]
    needs_alert = False

    if _breaches(metrics.cpu_percent, thresholds.cpu):
        needs_alert = True
        lines.append(
            f"**CPU Usage:** {metrics.cpu_percent}% (Threshold: {thresholds.cpu}%)"
        )
        lines.append(f"**Load Average:** {metrics.load_avg_text}")

    if _breaches(metrics.mem_percent, thresholds.mem):
        needs_alert = True
        lines.append(
            f"**Memory Usage:** {metrics.mem_percent}% "
            f"({metrics.mem_used_mb}MB/{metrics.mem_total_mb}MB) "
            f"(Threshold: {thresholds.mem}%)"
        )

    if _breaches(metrics.disk_percent, thresholds.disk):
        needs_alert = True
        lines.append(
            f"**Disk Usage:** {metrics.disk_percent}% (Threshold: {thresholds.disk}%)"
        )
        lines.append(f"**Disk Details:**\n```\n{metrics.disk_details}\n```")

    if needs_alert:
        lines += [
            "",
            "**Additional Info:**",
            f"- Process Count: {_value(metrics.process_count)}",
            f"- System Uptime: {metrics.uptime}",
        ]
        return CheckResult(
            needs_alert=True,
            notification=Notification(ALERT_TITLE, "\n".join(lines), Severity.CRITICAL),
        )

    if report_due:
        return CheckResult(
            needs_alert=False,
            notification=build_status_report(metrics),
            is_daily_report=True,
        )

    return CheckResult(needs_alert=False)


# ----------------------------------------------------------------
# Entry Point
# ----------------------------------------------------------------
def run_resource_check(
    config: MonitorConfig,
    notifier: DiscordNotifier,
    force_test: bool = False,
    now: Optional[datetime.datetime] = None,
    collect: Callable[[], SystemMetrics] = collect_metrics,
    gate: Optional[DailyReportGate] = None,
) -> Optional[DeliveryResult]:
    """Collect metrics and send at most one message."""
    now = now or datetime.datetime.now()
    logger.info("Starting server monitoring check...")
    metrics = collect()

    if force_test:
        logger.info("Running in test mode - sending immediate status report")
        return run_check(CheckResult(False, build_test_report(metrics)), notifier)

    gate = gate or DailyReportGate(config.REPORT_STATE_FILE, config.REPORT_TIME)
    result = evaluate(metrics, Thresholds.from_config(config), gate.is_due(now))
    delivery = run_check(result, notifier, gate, now)
    logger.info("Monitoring check completed")
    return delivery
