"""Cron-driven checks that hand at most one message per run to the notifier."""

import datetime
import logging
from dataclasses import dataclass
from typing import Optional

from server_setup.monitoring.report_gate import DailyReportGate
from server_setup.notifier import DeliveryResult, DiscordNotifier, Notification

logger = logging.getLogger("server_setup.monitoring")


@dataclass
class CheckResult:
    """Outcome of one check: an alert, a daily report, or nothing."""

    needs_alert: bool
    notification: Optional[Notification] = None
    is_daily_report: bool = False


def run_check(
    result: CheckResult,
    notifier: DiscordNotifier,
    gate: Optional[DailyReportGate] = None,
    now: Optional[datetime.datetime] = None,
) -> Optional[DeliveryResult]:
    """Deliver the check's message, if any. Delivery failure is logged, never raised."""
    if result.notification is None:
        logger.info("No alert needed")
        return None

    delivery = notifier.deliver(result.notification)
    if not delivery.ok:
        logger.error(f"Notification '{result.notification.title}' was not delivered")
        return delivery

    if result.is_daily_report and gate is not None:
        gate.mark_sent(now or datetime.datetime.now())
    return delivery


__all__ = ["CheckResult", "DailyReportGate", "run_check"]
