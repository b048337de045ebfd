"""
Once-a-day report gate.

The date of the last delivered report is persisted in a one-line file. A report
is due once the configured time of day has passed and no report was sent today.
An invocation that misses the exact minute still sends the report later the same
day; a day that passes entirely without an invocation is not backfilled.
"""

import datetime
import logging
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger("server_setup.monitoring.report_gate")


class DailyReportGate:
    def __init__(self, state_file: Union[str, Path], report_time: datetime.time) -> None:
        self.state_file = Path(state_file)
        self.report_time = report_time

    def last_sent(self) -> Optional[datetime.date]:
        """Date of the last delivered report, or None if unknown."""
        try:
            raw = self.state_file.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Cannot read report state {self.state_file}: {e}")
            return None
        try:
            return datetime.date.fromisoformat(raw)
        except ValueError:
            logger.warning(f"Ignoring malformed report state in {self.state_file}: {raw!r}")
            return None

    def is_due(self, now: datetime.datetime) -> bool:
        if now.time() < self.report_time:
            return False
        return self.last_sent() != now.date()

    def mark_sent(self, now: datetime.datetime) -> None:
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            self.state_file.write_text(now.date().isoformat() + "\n")
        except OSError as e:
            # Worst case the report is sent again on the next tick.
            logger.warning(f"Cannot record report state in {self.state_file}: {e}")
