"""Messaging counterpart resolution.

A member talks to the administrator. The administrator talks to one
representative applicant: the user with the most recently created request
that is still pending or already approved. That heuristic is deliberately
narrow; with several applicants under review at once it picks one of them
and does not attempt multi-conversation routing.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from memberportal.core.types import RequestStatus, Role
from memberportal.services.errors import NotFoundError

if TYPE_CHECKING:
    from memberportal.core.types import PublicIdentity, SessionUser
    from memberportal.services.directory import ApplicationDirectory

logger = logging.getLogger(__name__)

COUNTERPART_STATUSES = (RequestStatus.PENDING, RequestStatus.APPROVED)


class CounterpartyResolver:
    """Resolves and caches the messaging counterpart for a session user."""

    def __init__(self, directory: ApplicationDirectory, *, admin_role: str = "admin") -> None:
        self._directory = directory
        self._admin_role = admin_role
        self._cache: dict[str, PublicIdentity | None] = {}

    async def resolve(
        self,
        user: SessionUser,
        *,
        refresh: bool = False,
    ) -> PublicIdentity | None:
        """Return the counterpart for the user, or None if there is none.

        The result is cached per user for the session; pass ``refresh=True``
        to re-resolve. Directory errors are logged and yield None.
        """
        user_id, role = user.user_id, user.role
        if not refresh and user_id in self._cache:
            return self._cache[user_id]

        try:
            if role is Role.ADMIN:
                counterpart = await self._resolve_for_admin(user_id)
            else:
                counterpart = await self._resolve_for_member(user_id)
        except NotFoundError as e:
            logger.info("No counterpart available: user_id=%s, reason=%s", user_id, e)
            counterpart = None
        except Exception as e:
            logger.warning(
                "Counterpart lookup failed: user_id=%s, role=%s, error=%s",
                user_id,
                role.value,
                e,
            )
            # Not cached, so the next resolve retries.
            return None

        self._cache[user_id] = counterpart
        logger.info(
            "Counterpart resolved: user_id=%s role=%s counterpart=%s",
            user_id,
            role.value,
            counterpart.user_id if counterpart else None,
        )
        return counterpart

    def invalidate(self, user_id: str | None = None) -> None:
        """Forget cached results for one user, or for everyone."""
        if user_id is None:
            self._cache.clear()
        else:
            self._cache.pop(user_id, None)

    async def _resolve_for_admin(self, user_id: str) -> PublicIdentity | None:
        request = await self._directory.latest_request_with_status(COUNTERPART_STATUSES)
        if request is None or request.user_id == user_id:
            return None
        return await self._directory.get_user_by_id(request.user_id)

    async def _resolve_for_member(self, user_id: str) -> PublicIdentity | None:
        admins = await self._directory.list_users_by_role(self._admin_role)
        for admin in admins:
            if admin.user_id != user_id:
                return admin
        return None
