"""Application status reconciliation.

The tracker polls the application directory for a user's request and drives
a small state machine:

    loading --> no_request --> pending --> approved
       |             |            |
       |             +------------+--> rejected
       +---------------> pending | approved | rejected

approved and rejected are terminal: the tracker never leaves them and stops
polling once it reaches one. Entering approved from pending raises a one-shot
success notification. Entering rejected raises a one-shot failure
notification, loads the rejection reason from the audit log and emits a
single redirect signal away from the gated area.

Reconciliation is safe to run concurrently with itself. Every call takes a
sequence number; a result is applied only if nothing newer has been applied
and the tracker is still active.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, ClassVar

from memberportal.core.types import RequestStatus
from memberportal.services.errors import NotFoundError
from memberportal.services.notifications import Severity

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from memberportal.core.types import ApplicationRequest
    from memberportal.services.audit_log import AuditLog
    from memberportal.services.directory import ApplicationDirectory
    from memberportal.services.notifications import NotificationDeduplicator

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 30.0

APPROVED_KEY = "application-approved"
APPROVED_MESSAGE = "Your application has been approved!"
REJECTED_KEY = "application-rejected"
REJECTED_MESSAGE = "Your application has been rejected."
REJECTED_REDIRECT = "/"


class ApplicationState(str, Enum):
    """Tracker states."""

    LOADING = "loading"
    NO_REQUEST = "no_request"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


_STATE_FOR_STATUS = {
    RequestStatus.PENDING: ApplicationState.PENDING,
    RequestStatus.APPROVED: ApplicationState.APPROVED,
    RequestStatus.REJECTED: ApplicationState.REJECTED,
}


@dataclass(frozen=True, slots=True)
class StatusSnapshot:
    """Externally visible tracker state."""

    state: ApplicationState
    rejection_reason: str | None = None

    @property
    def has_request(self) -> bool:
        return self.state in (
            ApplicationState.PENDING,
            ApplicationState.APPROVED,
            ApplicationState.REJECTED,
        )


@dataclass(frozen=True, slots=True)
class RedirectSignal:
    """Request for the UI to navigate away."""

    target: str
    reason: str


class ApplicationStatusTracker:
    """Reconciles a user's application state against the directory.

    Example:
        tracker = ApplicationStatusTracker(
            user_id, directory, audit_log, notifier,
            on_redirect=lambda signal: navigate(signal.target),
        )
        async with tracker:
            ...  # polls every 30 seconds until terminal
    """

    VALID_TRANSITIONS: ClassVar[dict[ApplicationState, set[ApplicationState]]] = {
        ApplicationState.LOADING: {
            ApplicationState.NO_REQUEST,
            ApplicationState.PENDING,
            ApplicationState.APPROVED,
            ApplicationState.REJECTED,
        },
        # A user on the onboarding screen may submit an application.
        ApplicationState.NO_REQUEST: {
            ApplicationState.PENDING,
            ApplicationState.APPROVED,
            ApplicationState.REJECTED,
        },
        ApplicationState.PENDING: {
            ApplicationState.APPROVED,
            ApplicationState.REJECTED,
        },
        ApplicationState.APPROVED: set(),
        ApplicationState.REJECTED: set(),
    }

    def __init__(
        self,
        user_id: str,
        directory: ApplicationDirectory,
        audit_log: AuditLog,
        notifier: NotificationDeduplicator,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        on_redirect: Callable[[RedirectSignal], None] | None = None,
    ) -> None:
        """Initialize the tracker.

        Args:
            user_id: The applicant whose request is tracked.
            directory: Source of truth for application requests.
            audit_log: Source of rejection reasons.
            notifier: Shared notification deduplicator.
            poll_interval: Seconds between reconciliations.
            on_redirect: Called once when the user must leave the gated area.
        """
        self.user_id = user_id
        self._directory = directory
        self._audit_log = audit_log
        self._notifier = notifier
        self._poll_interval = poll_interval
        self._on_redirect = on_redirect

        self._state = ApplicationState.LOADING
        self._rejection_reason: str | None = None
        self._issued_seq = 0
        self._applied_seq = 0
        self._active = True
        self._redirected = False
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> ApplicationState:
        return self._state

    @property
    def rejection_reason(self) -> str | None:
        return self._rejection_reason

    @property
    def is_terminal(self) -> bool:
        return self.is_terminal_state(self._state)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def snapshot(self) -> StatusSnapshot:
        return StatusSnapshot(state=self._state, rejection_reason=self._rejection_reason)

    def is_valid_transition(self, from_state: ApplicationState, to_state: ApplicationState) -> bool:
        return to_state in self.VALID_TRANSITIONS.get(from_state, set())

    def is_terminal_state(self, state: ApplicationState) -> bool:
        return len(self.VALID_TRANSITIONS.get(state, set())) == 0

    async def reconcile(self) -> StatusSnapshot:
        """Fetch the user's request and apply the observed state.

        Backend errors are logged and swallowed; the previous state is kept
        and the next tick retries.

        Returns:
            The snapshot after this call (unchanged if the result was stale).
        """
        self._issued_seq += 1
        seq = self._issued_seq

        try:
            request = await self._directory.get_request_by_user(self.user_id)
        except NotFoundError:
            request = None
        except Exception as e:
            logger.warning(
                "Application status check failed: user_id=%s, error=%s",
                self.user_id,
                e,
            )
            return self.snapshot()

        observed = self._state_for(request)
        reason: str | None = None
        if observed is ApplicationState.REJECTED and self._needs_reason():
            reason = await self._load_rejection_reason()

        if not self._active:
            logger.debug("Discarding status result after stop: user_id=%s", self.user_id)
            return self.snapshot()
        if seq < self._applied_seq:
            logger.debug(
                "Discarding stale status result: user_id=%s seq=%d applied=%d",
                self.user_id,
                seq,
                self._applied_seq,
            )
            return self.snapshot()

        self._applied_seq = seq
        self._apply(observed, reason)
        return self.snapshot()

    async def start(self) -> None:
        """Reconcile now and keep polling until terminal or stopped."""
        if self.is_running:
            return
        self._active = True
        self._stop_event.clear()
        self._task = asyncio.create_task(
            self._poll_loop(), name=f"application-status-{self.user_id}"
        )
        logger.info(
            "Application status polling started: user_id=%s interval=%ss",
            self.user_id,
            self._poll_interval,
        )

    async def stop(self) -> None:
        """Stop polling. Results of in-flight calls are discarded."""
        self._active = False
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.debug("Application status polling stopped: user_id=%s", self.user_id)

    async def wait_until_idle(self) -> None:
        """Wait for the polling task to finish on its own (terminal state)."""
        if self._task is not None:
            await self._task

    async def __aenter__(self) -> ApplicationStatusTracker:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    async def _poll_loop(self) -> None:
        while self._active:
            await self.reconcile()
            if self.is_terminal:
                logger.info(
                    "Application reached terminal state %s, polling halted: user_id=%s",
                    self._state.value,
                    self.user_id,
                )
                return
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)

    def _state_for(self, request: ApplicationRequest | None) -> ApplicationState:
        if request is None:
            return ApplicationState.NO_REQUEST
        return _STATE_FOR_STATUS[RequestStatus(request.status)]

    def _needs_reason(self) -> bool:
        return self._state is not ApplicationState.REJECTED or self._rejection_reason is None

    async def _load_rejection_reason(self) -> str | None:
        try:
            return await self._audit_log.get_latest_access_reason(self.user_id)
        except Exception as e:
            logger.warning(
                "Failed to load rejection reason: user_id=%s, error=%s",
                self.user_id,
                e,
            )
            return None

    def _apply(self, observed: ApplicationState, reason: str | None) -> None:
        previous = self._state

        if observed is previous:
            if observed is ApplicationState.REJECTED and reason and not self._rejection_reason:
                self._rejection_reason = reason
            return

        if not self.is_valid_transition(previous, observed):
            logger.warning(
                "Ignoring invalid status transition %s -> %s: user_id=%s",
                previous.value,
                observed.value,
                self.user_id,
            )
            return

        self._state = observed
        logger.info(
            "Application status changed %s -> %s: user_id=%s",
            previous.value,
            observed.value,
            self.user_id,
        )

        if observed is ApplicationState.APPROVED and previous is ApplicationState.PENDING:
            self._notifier.notify(APPROVED_MESSAGE, Severity.SUCCESS, key=APPROVED_KEY)
        elif observed is ApplicationState.REJECTED:
            self._rejection_reason = reason
            self._notifier.notify(REJECTED_MESSAGE, Severity.ERROR, key=REJECTED_KEY)
            self._emit_redirect(RedirectSignal(target=REJECTED_REDIRECT, reason="rejected"))

    def _emit_redirect(self, signal: RedirectSignal) -> None:
        if self._redirected:
            return
        self._redirected = True
        if self._on_redirect is None:
            return
        try:
            self._on_redirect(signal)
        except Exception:
            logger.exception("Redirect handler failed: user_id=%s", self.user_id)
