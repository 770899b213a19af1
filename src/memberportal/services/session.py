"""Per-user portal session.

A session ties the core components together for one signed-in user:

1. the role is taken from the SessionUser, resolved once at sign-in
2. members get an ApplicationStatusTracker; admins are not applicants
3. the counterpart is resolved and a MessageSyncEngine is activated for the
   pair when there is one

Closing the session stops polling and releases the push subscription.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from memberportal.services.application_status import ApplicationStatusTracker
from memberportal.services.counterparty import CounterpartyResolver
from memberportal.services.messaging import MessageSyncEngine
from memberportal.services.notifications import Severity

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from memberportal.bootstrap import PortalServices
    from memberportal.core.types import Attachment, ChatMessage, PublicIdentity, SessionUser
    from memberportal.services.application_status import (
        ApplicationState,
        RedirectSignal,
        StatusSnapshot,
    )

logger = logging.getLogger(__name__)

NO_COUNTERPART_KEY = "no-counterpart"
NO_COUNTERPART_MESSAGE = "There is no one to message yet."


class PortalSession:
    """Facade consumed by the UI for one signed-in user."""

    def __init__(
        self,
        user: SessionUser,
        services: PortalServices,
        *,
        on_redirect: Callable[[RedirectSignal], None] | None = None,
    ) -> None:
        self.user = user
        self._services = services
        self._on_redirect = on_redirect
        self._redirects: list[RedirectSignal] = []

        self._resolver = CounterpartyResolver(
            services.directory, admin_role=services.admin_role
        )
        self._tracker: ApplicationStatusTracker | None = None
        if not user.is_admin:
            self._tracker = ApplicationStatusTracker(
                user.user_id,
                services.directory,
                services.audit_log,
                services.notifier,
                poll_interval=services.sync.status_poll_interval,
                on_redirect=self._handle_redirect,
            )

        self._engine: MessageSyncEngine | None = None
        self._counterpart: PublicIdentity | None = None
        self._counterpart_resolved = False
        self._started = False

    @property
    def tracker(self) -> ApplicationStatusTracker | None:
        return self._tracker

    @property
    def engine(self) -> MessageSyncEngine | None:
        return self._engine

    @property
    def application_state(self) -> ApplicationState | None:
        """Tracker state for members; None for admins."""
        return self._tracker.state if self._tracker else None

    @property
    def rejection_reason(self) -> str | None:
        return self._tracker.rejection_reason if self._tracker else None

    @property
    def counterpart(self) -> PublicIdentity | None:
        return self._counterpart

    @property
    def counterpart_resolved(self) -> bool:
        return self._counterpart_resolved

    @property
    def messages(self) -> list[ChatMessage]:
        return self._engine.messages if self._engine else []

    @property
    def redirects(self) -> tuple[RedirectSignal, ...]:
        return tuple(self._redirects)

    def status_snapshot(self) -> StatusSnapshot | None:
        return self._tracker.snapshot() if self._tracker else None

    async def start(self) -> None:
        """Start status polling and open the conversation, if any."""
        if self._started:
            return
        self._started = True
        logger.info(
            "Session starting: user_id=%s role=%s",
            self.user.user_id,
            self.user.role.value,
        )
        try:
            if self._tracker is not None:
                await self._tracker.start()
            await self._open_conversation(refresh=False)
        except BaseException:
            await self.close()
            raise

    async def close(self) -> None:
        """Deactivate the engine and stop polling. Idempotent."""
        engine, self._engine = self._engine, None
        if engine is not None:
            await engine.deactivate()
        if self._tracker is not None:
            await self._tracker.stop()
        if self._started:
            logger.info("Session closed: user_id=%s", self.user.user_id)
        self._started = False

    async def __aenter__(self) -> PortalSession:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def reresolve(self) -> PublicIdentity | None:
        """Re-run counterpart resolution, swapping engines on a change."""
        return await self._open_conversation(refresh=True)

    async def refresh(self) -> None:
        """Reconcile status and messages now instead of waiting for a tick."""
        if self._tracker is not None:
            await self._tracker.reconcile()
        if self._engine is not None:
            await self._engine.refresh()

    async def send(
        self,
        content: str,
        attachment: Attachment | None = None,
    ) -> ChatMessage | None:
        """Send to the counterpart; returns None when there is none."""
        if self._engine is None:
            logger.warning("Send without counterpart: user_id=%s", self.user.user_id)
            self._services.notifier.notify(
                NO_COUNTERPART_MESSAGE, Severity.INFO, key=NO_COUNTERPART_KEY
            )
            return None
        return await self._engine.send(content, attachment)

    async def _open_conversation(self, *, refresh: bool) -> PublicIdentity | None:
        counterpart = await self._resolver.resolve(self.user, refresh=refresh)
        self._counterpart_resolved = True

        current = self._engine
        if (
            current is not None
            and counterpart is not None
            and current.counterpart_id == counterpart.user_id
        ):
            self._counterpart = counterpart
            return counterpart

        self._engine = None
        if current is not None:
            await current.deactivate()

        self._counterpart = counterpart
        if counterpart is None:
            return None

        engine = MessageSyncEngine(
            self.user.user_id,
            counterpart.user_id,
            self._services.message_store,
            self._services.push,
            self._services.notifier,
            object_store=self._services.object_store,
            fallback_interval=self._services.sync.pull_fallback_interval,
        )
        await engine.activate()
        self._engine = engine
        return counterpart

    def _handle_redirect(self, signal: RedirectSignal) -> None:
        self._redirects.append(signal)
        logger.info(
            "Redirecting user_id=%s to %s (%s)",
            self.user.user_id,
            signal.target,
            signal.reason,
        )
        if self._on_redirect is not None:
            self._on_redirect(signal)
