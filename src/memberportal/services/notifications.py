"""Deduplicated user-visible notifications.

A notification is keyed by an explicit id or, failing that, its message text.
Issuing a notification opens a ticket for the key; while the ticket is live,
further notifications with the same key are dropped. Tickets expire after a
fixed cooldown and are evicted lazily on the next access, so the deduplicator
owns no timers and needs no cancellation.

Example:
    notifier = NotificationDeduplicator(ToastSink(), cooldown=5.0)
    notifier.notify("Failed to sign out", Severity.ERROR, key="signout-error")
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 5.0


class Severity(str, Enum):
    """Severity of a user-visible notification."""

    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


@dataclass(frozen=True, slots=True)
class Notification:
    """A notification handed to the sink.

    Attributes:
        key: Deduplication key.
        message: Text shown to the user.
        severity: Notification severity.
        issued_at: Wall-clock time the notification was issued.
    """

    key: str
    message: str
    severity: Severity
    issued_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class NotificationTicket:
    """Suppression ticket for a key, live until ``expires_at`` (monotonic)."""

    key: str
    expires_at: float


class NotificationSink(Protocol):
    """Where notifications are displayed (toast layer, test recorder)."""

    def show(self, notification: Notification) -> None: ...


class LoggingNotificationSink:
    """Sink that writes notifications to the log. Used when no UI is attached."""

    def show(self, notification: Notification) -> None:
        level = logging.ERROR if notification.severity is Severity.ERROR else logging.INFO
        logger.log(level, "Notification [%s] %s", notification.key, notification.message)


class NotificationDeduplicator:
    """Suppresses repeated identical notifications within a cooldown window.

    One instance is created per process (or per UI session) and injected into
    every component that raises alerts.
    """

    def __init__(
        self,
        sink: NotificationSink | None = None,
        *,
        cooldown: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the deduplicator.

        Args:
            sink: Destination for notifications that pass deduplication.
            cooldown: Seconds a key stays suppressed after it fires.
            clock: Monotonic clock, injectable for tests.
        """
        if cooldown <= 0:
            msg = "cooldown must be positive"
            raise ValueError(msg)
        self._sink = sink or LoggingNotificationSink()
        self._cooldown = cooldown
        self._clock = clock
        self._tickets: dict[str, NotificationTicket] = {}

    @property
    def cooldown(self) -> float:
        return self._cooldown

    def notify(
        self,
        message: str,
        severity: Severity | str,
        key: str | None = None,
    ) -> bool:
        """Show a notification unless its key is still cooling down.

        Args:
            message: Text shown to the user.
            severity: Notification severity.
            key: Deduplication key; defaults to the message text.

        Returns:
            True if the notification was shown, False if suppressed.

        Raises:
            ValueError: If severity is not a known Severity value.
        """
        level = Severity(severity)
        dedup_key = key or message
        now = self._clock()
        self._evict_expired(now)

        if dedup_key in self._tickets:
            logger.debug("Suppressed duplicate notification: key=%s", dedup_key)
            return False

        self._tickets[dedup_key] = NotificationTicket(
            key=dedup_key,
            expires_at=now + self._cooldown,
        )
        self._sink.show(Notification(key=dedup_key, message=message, severity=level))
        return True

    def is_suppressed(self, key: str) -> bool:
        """Check whether a key currently has a live ticket."""
        self._evict_expired(self._clock())
        return key in self._tickets

    def active_tickets(self) -> list[NotificationTicket]:
        """Return the live tickets, soonest to expire first."""
        self._evict_expired(self._clock())
        return sorted(self._tickets.values(), key=lambda t: t.expires_at)

    def clear(self) -> None:
        """Drop all tickets (e.g., on sign-out)."""
        self._tickets.clear()

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, t in self._tickets.items() if t.expires_at <= now]
        for k in expired:
            del self._tickets[k]
