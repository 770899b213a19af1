"""Application directory: users, roles and application requests.

The core depends on the ApplicationDirectory protocol; SqlApplicationDirectory
implements it over the portal's PostgreSQL tables.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from memberportal.core.types import ApplicationRequest, PublicIdentity, RequestStatus
from memberportal.db.models.base import RequestStatusColumn
from memberportal.db.models.requests import UserRequest
from memberportal.db.models.users import PortalUser
from memberportal.services.errors import NotFoundError, TransientFetchError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class ApplicationDirectory(Protocol):
    """Read access to users and their application requests."""

    async def get_request_by_user(self, user_id: str) -> ApplicationRequest | None:
        """Return the user's request, or None if they never applied."""
        ...

    async def get_user_by_id(self, user_id: str) -> PublicIdentity:
        """Return a user's public identity; raise NotFoundError if unknown."""
        ...

    async def list_users_by_role(self, role: str) -> list[PublicIdentity]:
        """Return users holding a role, oldest account first."""
        ...

    async def latest_request_with_status(
        self, statuses: Iterable[RequestStatus]
    ) -> ApplicationRequest | None:
        """Return the most recently created request in one of the statuses."""
        ...


def parse_user_id(user_id: str, *, operation: str) -> uuid.UUID:
    """Convert an opaque user id into the UUID used by the tables.

    Raises:
        NotFoundError: If the id cannot belong to any row.
    """
    try:
        return uuid.UUID(str(user_id))
    except ValueError as e:
        raise NotFoundError(
            f"Malformed user id: {user_id!r}",
            user_id=str(user_id),
            operation=operation,
        ) from e


def identity_from_row(row: PortalUser) -> PublicIdentity:
    return PublicIdentity(
        user_id=str(row.id),
        email=row.email,
        full_name=row.full_name,
        role=row.role,
        onboarding_complete=bool(row.onboarding_complete),
    )


def request_from_row(row: UserRequest) -> ApplicationRequest:
    return ApplicationRequest(
        user_id=str(row.user_id),
        status=RequestStatus(row.status.value),
        created_at=row.created_at,
    )


class SqlApplicationDirectory:
    """ApplicationDirectory backed by the portal_users and user_requests tables.

    Each call opens its own short-lived session so the directory can be shared
    by concurrent tasks.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_request_by_user(self, user_id: str) -> ApplicationRequest | None:
        operation = "get_request_by_user"
        try:
            key = parse_user_id(user_id, operation=operation)
        except NotFoundError:
            return None

        stmt = select(UserRequest).where(UserRequest.user_id == key).limit(1)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise TransientFetchError(
                f"Failed to load application request: {e}",
                user_id=user_id,
                operation=operation,
            ) from e

        return request_from_row(row) if row is not None else None

    async def get_user_by_id(self, user_id: str) -> PublicIdentity:
        operation = "get_user_by_id"
        key = parse_user_id(user_id, operation=operation)

        try:
            async with self._session_factory() as session:
                row = await session.get(PortalUser, key)
        except SQLAlchemyError as e:
            raise TransientFetchError(
                f"Failed to load user: {e}",
                user_id=user_id,
                operation=operation,
            ) from e

        if row is None:
            raise NotFoundError("User not found", user_id=user_id, operation=operation)
        return identity_from_row(row)

    async def list_users_by_role(self, role: str) -> list[PublicIdentity]:
        stmt = (
            select(PortalUser)
            .where(PortalUser.role == role)
            .order_by(PortalUser.created_at.asc(), PortalUser.id.asc())
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise TransientFetchError(
                f"Failed to list users with role {role}: {e}",
                operation="list_users_by_role",
            ) from e

        return [identity_from_row(row) for row in rows]

    async def latest_request_with_status(
        self, statuses: Iterable[RequestStatus]
    ) -> ApplicationRequest | None:
        wanted = [RequestStatusColumn(RequestStatus(s).value) for s in statuses]
        if not wanted:
            return None

        stmt = (
            select(UserRequest)
            .where(UserRequest.status.in_(wanted))
            .order_by(UserRequest.created_at.desc(), UserRequest.id.desc())
            .limit(1)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise TransientFetchError(
                f"Failed to query requests by status: {e}",
                operation="latest_request_with_status",
            ) from e

        return request_from_row(row) if row is not None else None
