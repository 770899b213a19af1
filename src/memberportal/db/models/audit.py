"""Admin access log: records of admin decisions about a user."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import ForeignKey, Index, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from memberportal.db.models.base import Base, TimestampTZ, UUIDPrimaryKey


class AdminAccess(Base):
    """One admin action on a user's account.

    The most recent record for a rejected user carries the rejection reason.
    """

    __tablename__ = "admin_access"

    id: Mapped[UUIDPrimaryKey]
    accessed_at: Mapped[TimestampTZ]

    admin_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("portal_users.id", ondelete="SET NULL"),
        nullable=True,
    )
    accessed_user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("portal_users.id", ondelete="CASCADE"),
        nullable=False,
    )
    access_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_admin_access_user_accessed_at", "accessed_user_id", "accessed_at"),
    )
