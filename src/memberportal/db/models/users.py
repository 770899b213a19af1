"""Portal user directory."""

from __future__ import annotations

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from memberportal.db.models.base import (
    Base,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)


class PortalUser(Base):
    """A portal account with its public profile fields.

    ``role`` mirrors the identity provider's user metadata; the admin is the
    account whose role equals the configured admin role name.
    """

    __tablename__ = "portal_users"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    last_sign_in_at: Mapped[OptionalTimestampTZ]

    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    onboarding_complete: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )

    __table_args__ = (Index("ix_portal_users_role", "role"),)
