"""Admin access log reader.

Admin decisions about a user are appended to ``admin_access``; the most
recent record for a rejected applicant carries the rejection reason shown
to them.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from memberportal.db.models.audit import AdminAccess
from memberportal.services.directory import parse_user_id
from memberportal.services.errors import NotFoundError, TransientFetchError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class AuditLog(Protocol):
    """Read access to the admin access log."""

    async def get_latest_access_reason(self, user_id: str) -> str | None:
        """Reason on the most recent admin access record for the user."""
        ...


class SqlAuditLog:
    """AuditLog backed by the admin_access table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_latest_access_reason(self, user_id: str) -> str | None:
        """Return the reason on the newest record by ``accessed_at``.

        Returns:
            The reason text, or None when there is no record or it has no reason.

        Raises:
            TransientFetchError: If the query fails.
        """
        operation = "get_latest_access_reason"
        try:
            key = parse_user_id(user_id, operation=operation)
        except NotFoundError:
            return None

        stmt = (
            select(AdminAccess.access_reason)
            .where(AdminAccess.accessed_user_id == key)
            .order_by(AdminAccess.accessed_at.desc())
            .limit(1)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                reason = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise TransientFetchError(
                f"Failed to load access reason: {e}",
                user_id=user_id,
                operation=operation,
            ) from e

        logger.debug("Loaded access reason for user_id=%s (present=%s)", user_id, bool(reason))
        return reason or None
