"""Application requests submitted by users during onboarding."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from memberportal.db.models.base import (
    Base,
    RequestStatusColumn,
    TimestampTZ,
    UUIDPrimaryKey,
)


class UserRequest(Base):
    """A user's application. At most one per user."""

    __tablename__ = "user_requests"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("portal_users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    status: Mapped[RequestStatusColumn] = mapped_column(
        Enum(
            RequestStatusColumn,
            name="request_status",
            create_constraint=True,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=RequestStatusColumn.PENDING,
    )

    __table_args__ = (Index("ix_user_requests_status_created", "status", "created_at"),)
