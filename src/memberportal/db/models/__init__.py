"""SQLAlchemy ORM models for the member portal.

- base: Common metadata and column types
- users: Portal user directory
- requests: Application requests
- audit: Admin access log
- messages: Direct messages
"""

from memberportal.db.models.audit import AdminAccess
from memberportal.db.models.base import Base, RequestStatusColumn, metadata
from memberportal.db.models.messages import Message
from memberportal.db.models.requests import UserRequest
from memberportal.db.models.users import PortalUser

__all__ = [
    "AdminAccess",
    "Base",
    "Message",
    "PortalUser",
    "RequestStatusColumn",
    "UserRequest",
    "metadata",
]
