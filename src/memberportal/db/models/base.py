"""Base model definitions and common column types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Reusable annotated column types
- Enum types stored in the database
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column

# Naming convention for constraints ensures consistent migration generation.
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

# UUID primary key with server-side default generation
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    ),
]

TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]


class Base(DeclarativeBase):
    """Declarative base for all portal models."""

    metadata = metadata


class RequestStatusColumn(enum.Enum):
    """Stored application request status.

    Values:
        PENDING: Submitted, awaiting admin review
        APPROVED: Accepted by an admin
        REJECTED: Declined by an admin (reason kept in admin_access)
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
