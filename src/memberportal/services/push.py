"""Push channel for row-change notifications.

Subscribers register a predicate and an async handler and receive a
Subscription handle. The handle must be released when the subscriber goes
away; it is an async context manager so acquisition can be scoped:

    async with channel.subscribe(lambda e: e.touches(me, them), on_change):
        ...

InProcessPushChannel is the in-process implementation: writers in the same
process (SqlMessageStore) publish ChangeEvents to it after commit.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from memberportal.services.errors import SubscriptionError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from types import TracebackType

    from memberportal.core.types import ChangeEvent

logger = logging.getLogger(__name__)


class Subscription:
    """Handle for an open subscription.

    ``release()`` is idempotent; leaving an ``async with`` block releases
    the subscription on every exit path.
    """

    def __init__(self, subscription_id: str, release: Callable[[str], None]) -> None:
        self.subscription_id = subscription_id
        self._release = release
        self._released = False

    @property
    def active(self) -> bool:
        return not self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._release(self.subscription_id)

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class PushChannel(Protocol):
    """Subscribe-by-predicate change feed."""

    def subscribe(
        self,
        predicate: Callable[[ChangeEvent], bool],
        handler: Callable[[ChangeEvent], Awaitable[Any]],
    ) -> Subscription:
        """Open a subscription; raise SubscriptionError if it cannot be established."""
        ...


@dataclass
class _Registration:
    predicate: Callable[[ChangeEvent], bool]
    handler: Callable[[ChangeEvent], Awaitable[Any]]


class InProcessPushChannel:
    """Push channel dispatching published events to matching subscribers.

    Handler errors are logged and do not affect other subscribers or the
    publisher.
    """

    def __init__(self) -> None:
        self._registrations: dict[str, _Registration] = {}
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._registrations)

    def subscribe(
        self,
        predicate: Callable[[ChangeEvent], bool],
        handler: Callable[[ChangeEvent], Awaitable[Any]],
    ) -> Subscription:
        if self._closed:
            msg = "Push channel is closed"
            raise SubscriptionError(msg, operation="subscribe")

        subscription_id = uuid.uuid4().hex[:12]
        self._registrations[subscription_id] = _Registration(predicate, handler)
        logger.debug("Subscription added: %s", subscription_id)
        return Subscription(subscription_id, self._unsubscribe)

    async def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to every subscriber whose predicate matches.

        Returns:
            Number of handlers invoked.
        """
        delivered = 0
        # Handlers may release subscriptions while we iterate.
        for subscription_id, registration in list(self._registrations.items()):
            if subscription_id not in self._registrations:
                continue
            try:
                if not registration.predicate(event):
                    continue
                await registration.handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Push handler failed: subscription=%s table=%s kind=%s",
                    subscription_id,
                    event.table,
                    event.kind.value,
                )
        return delivered

    def close(self) -> None:
        """Drop all subscriptions and refuse new ones."""
        self._closed = True
        self._registrations.clear()
        logger.info("Push channel closed")

    def _unsubscribe(self, subscription_id: str) -> None:
        if self._registrations.pop(subscription_id, None) is not None:
            logger.debug("Subscription released: %s", subscription_id)
