"""Domain types shared by the status tracker, resolver and message engine.

These are plain frozen dataclasses; the database models in
memberportal.db.models are converted into them at the adapter boundary so the
core never holds ORM instances.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Session role, resolved once when the session starts."""

    ADMIN = "admin"
    MEMBER = "member"

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any] | None, admin_role: str = "admin") -> Role:
        """Derive the role from identity metadata (``{"role": "admin"}``)."""
        if metadata and metadata.get("role") == admin_role:
            return cls.ADMIN
        return cls.MEMBER


class RequestStatus(str, Enum):
    """Status of an application request as stored by the directory."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DeliveryState(str, Enum):
    """Local-only delivery state of a message.

    Values:
        PENDING: Optimistic entry, not yet persisted
        CONFIRMED: Durable copy returned by the message store
        FAILED: Upload or insert failed; kept for retry or dismissal
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ChangeKind(str, Enum):
    """Kind of row change reported by the push channel."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class ApplicationRequest:
    """A user's application, observed but never mutated by the core."""

    user_id: str
    status: RequestStatus
    created_at: datetime | None = None
    rejection_reason: str | None = None


@dataclass(frozen=True, slots=True)
class PublicIdentity:
    """Public view of a portal user."""

    user_id: str
    email: str | None = None
    full_name: str | None = None
    role: str | None = None
    onboarding_complete: bool = True

    @property
    def metadata(self) -> dict[str, Any]:
        return {"role": self.role, "full_name": self.full_name}

    @property
    def display_name(self) -> str:
        """Name shown next to messages from this user."""
        if self.full_name:
            return self.full_name
        return "Admin" if self.role == Role.ADMIN.value else "User"


@dataclass(frozen=True, slots=True)
class Attachment:
    """Binary content attached to an outgoing message."""

    filename: str
    data: bytes
    content_type: str = "application/octet-stream"

    @property
    def extension(self) -> str:
        _, dot, ext = self.filename.rpartition(".")
        return ext.lower() if dot and ext else "bin"


@dataclass(frozen=True, slots=True)
class MessageDraft:
    """Message record handed to the store for insertion."""

    sender_id: str
    receiver_id: str
    content: str
    attachment_url: str | None = None


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """A message in a conversation.

    Durable messages carry the store's id; optimistic ones carry a
    provisional ``local-`` id until the store confirms them.
    """

    id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: datetime
    attachment_url: str | None = None
    delivery_state: DeliveryState = DeliveryState.CONFIRMED
    attachment: Attachment | None = field(default=None, repr=False, compare=False)

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id)

    @property
    def is_local(self) -> bool:
        return self.delivery_state is not DeliveryState.CONFIRMED

    def with_state(self, state: DeliveryState) -> ChatMessage:
        return replace(self, delivery_state=state)

    def belongs_to(self, user_a: str, user_b: str) -> bool:
        """Whether this message belongs to the conversation of the pair."""
        return conversation_key(self.sender_id, self.receiver_id) == conversation_key(
            user_a, user_b
        )


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """Change notification from the push channel.

    Payload granularity is unspecified; consumers use it as a trigger only.
    """

    table: str
    kind: ChangeKind
    record: dict[str, Any] = field(default_factory=dict)

    def touches(self, user_a: str, user_b: str) -> bool:
        """Whether the changed row involves the conversation of the pair."""
        sender = self.record.get("sender_id")
        receiver = self.record.get("receiver_id")
        if sender is None or receiver is None:
            return False
        return conversation_key(str(sender), str(receiver)) == conversation_key(user_a, user_b)


def conversation_key(user_a: str, user_b: str) -> frozenset[str]:
    """Identity of a conversation: the unordered pair of participants."""
    return frozenset((user_a, user_b))


@dataclass(frozen=True, slots=True)
class SessionUser:
    """The signed-in user with a role resolved once at session start."""

    identity: PublicIdentity
    role: Role

    @classmethod
    def from_identity(cls, identity: PublicIdentity, admin_role: str = "admin") -> SessionUser:
        return cls(identity=identity, role=Role.from_metadata(identity.metadata, admin_role))

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN
