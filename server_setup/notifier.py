"""
Discord webhook delivery with bounded retry.

A notification is posted as a single embed. Delivery is attempted up to
max_retries times with a fixed delay between attempts; anything other than
HTTP 204 counts as a failed attempt. Exhausting the retries is reported as a
Failed result rather than an exception, so a monitoring run is never aborted
by an unavailable webhook.
"""

import datetime
import logging
import re
import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

import requests

from server_setup import __version__
from server_setup.errors import ConfigurationError

logger = logging.getLogger("server_setup.notifier")

WEBHOOK_PATTERN = re.compile(r"^https://(discord|discordapp)\.com/api/webhooks/\S+$")
SUCCESS_STATUS = 204
MAX_DESCRIPTION_LENGTH = 4096

# Discord embed colors (decimal)
COLOR_GREEN = 3066993
COLOR_ORANGE = 15105570
COLOR_RED = 15158332
COLOR_BLUE = 3447003


class Severity(str, Enum):
    INFO = "info"
    WARN = "warn"
    CRITICAL = "critical"

    @property
    def color(self) -> int:
        return {
            Severity.INFO: COLOR_GREEN,
            Severity.WARN: COLOR_ORANGE,
            Severity.CRITICAL: COLOR_RED,
        }[self]


@dataclass
class Notification:
    """A message ready for delivery."""

    title: str
    body: str
    severity: Severity = Severity.INFO
    color: Optional[int] = None

    @property
    def embed_color(self) -> int:
        return self.color if self.color is not None else self.severity.color


@dataclass
class Delivered:
    attempts: int
    status_code: int

    @property
    def ok(self) -> bool:
        return True


@dataclass
class Failed:
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return False


DeliveryResult = Union[Delivered, Failed]


def validate_webhook_url(url: str) -> None:
    """Raise ConfigurationError unless url looks like a Discord webhook."""
    if not url:
        raise ConfigurationError("Discord webhook URL not configured")
    if not WEBHOOK_PATTERN.match(url):
        raise ConfigurationError("Invalid Discord webhook URL format")


class DiscordNotifier:
    """Posts embeds to a Discord webhook with a fixed retry policy."""

    def __init__(
        self,
        webhook_url: str,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        hostname: Optional[str] = None,
        clock: Callable[[], datetime.datetime] = datetime.datetime.now,
    ) -> None:
        self.webhook_url = webhook_url
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.session = session or requests.Session()
        self.sleep = sleep
        self.hostname = hostname or socket.gethostname()
        self.clock = clock

    def validate(self) -> None:
        validate_webhook_url(self.webhook_url)

    def build_payload(self, notification: Notification) -> Dict[str, Any]:
        description = notification.body
        if len(description) > MAX_DESCRIPTION_LENGTH:
            description = description[: MAX_DESCRIPTION_LENGTH - 3] + "..."
        timestamp = self.clock().strftime("%Y-%m-%d %H:%M:%S")
        return {
            "embeds": [
                {
                    "title": notification.title,
                    "description": description,
                    "color": notification.embed_color,
                    "footer": {
                        "text": f"Server: {self.hostname} | {timestamp} | v{__version__}"
                    },
                }
            ]
        }

    def send(
        self, title: str, body: str, severity: Severity = Severity.INFO
    ) -> DeliveryResult:
        return self.deliver(Notification(title, body, severity))

    def deliver(self, notification: Notification) -> DeliveryResult:
        """Deliver a notification, retrying transient failures."""
        try:
            self.validate()
        except ConfigurationError as e:
            logger.error(str(e))
            return Failed(attempts=0, error=str(e))

        payload = self.build_payload(notification)
        status_code: Optional[int] = None
        error: Optional[str] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = self.session.post(
                    self.webhook_url, json=payload, timeout=self.timeout
                )
                status_code = response.status_code
                error = None
            except requests.RequestException as e:
                status_code = None
                error = str(e)

            if status_code == SUCCESS_STATUS:
                logger.info("Discord notification sent successfully")
                return Delivered(attempts=attempt, status_code=status_code)

            if attempt < self.max_retries:
                logger.warning(
                    f"Failed to send Discord notification "
                    f"(attempt {attempt}/{self.max_retries}). Retrying..."
                )
                self.sleep(self.retry_delay)

        logger.error(
            f"Failed to send Discord notification after {self.max_retries} attempts. "
            f"Status code: {status_code if status_code is not None else error}"
        )
        return Failed(attempts=self.max_retries, status_code=status_code, error=error)
