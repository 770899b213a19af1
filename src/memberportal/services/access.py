"""Route guard for the gated area of the portal."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from memberportal.services.application_status import REJECTED_REDIRECT, ApplicationState
from memberportal.services.notifications import Severity

if TYPE_CHECKING:
    from memberportal.core.types import SessionUser
    from memberportal.services.application_status import StatusSnapshot
    from memberportal.services.notifications import NotificationDeduplicator

LOGIN_REDIRECT = "/login"
ACCESS_DENIED_KEY = "access-denied"
ACCESS_DENIED_MESSAGE = "Access denied. Please sign in to continue."


@dataclass(frozen=True, slots=True)
class AccessDecision:
    """Outcome of the route guard.

    Attributes:
        allowed: Whether the gated view may render.
        redirect_to: Where to navigate instead, when not allowed.
        show_onboarding: Whether to prompt the user to finish onboarding.
    """

    allowed: bool
    redirect_to: str | None = None
    show_onboarding: bool = False


def evaluate_access(
    user: SessionUser | None,
    snapshot: StatusSnapshot | None,
    notifier: NotificationDeduplicator,
) -> AccessDecision:
    """Decide whether the gated area may render for this user.

    Anonymous visitors go to the login page with a deduplicated alert, and
    rejected applicants go back to the landing page.
    """
    if user is None:
        notifier.notify(ACCESS_DENIED_MESSAGE, Severity.ERROR, key=ACCESS_DENIED_KEY)
        return AccessDecision(allowed=False, redirect_to=LOGIN_REDIRECT)

    if snapshot is not None and snapshot.state is ApplicationState.REJECTED:
        return AccessDecision(allowed=False, redirect_to=REJECTED_REDIRECT)

    return AccessDecision(
        allowed=True,
        show_onboarding=not user.identity.onboarding_complete,
    )
