"""Pytest configuration and shared fixtures.

The core components talk to their collaborators through protocols; the fakes
below implement those protocols in memory so tests run without PostgreSQL or
S3. Adapter tests use mocked sessions and moto instead.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from memberportal.core.types import (
    ApplicationRequest,
    ChangeEvent,
    ChangeKind,
    ChatMessage,
    MessageDraft,
    PublicIdentity,
    RequestStatus,
    SessionUser,
)
from memberportal.services.errors import NotFoundError, SendError, UploadError
from memberportal.services.message_store import MESSAGES_TABLE
from memberportal.services.notifications import Notification, NotificationDeduplicator
from memberportal.services.push import InProcessPushChannel

ADMIN_ID = "00000000-0000-0000-0000-00000000a001"
MEMBER_ID = "00000000-0000-0000-0000-00000000b001"
OTHER_MEMBER_ID = "00000000-0000-0000-0000-00000000b002"

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSink:
    """Notification sink that remembers what it was shown."""

    def __init__(self) -> None:
        self.shown: list[Notification] = []

    def show(self, notification: Notification) -> None:
        self.shown.append(notification)

    @property
    def keys(self) -> list[str]:
        return [n.key for n in self.shown]

    @property
    def messages(self) -> list[str]:
        return [n.message for n in self.shown]


class FakeDirectory:
    """In-memory ApplicationDirectory."""

    def __init__(self) -> None:
        self.users: dict[str, PublicIdentity] = {}
        self.requests: dict[str, ApplicationRequest] = {}
        self.error: Exception | None = None
        self.request_calls = 0

    def add_user(
        self,
        user_id: str,
        *,
        role: str | None = None,
        full_name: str | None = None,
        onboarding_complete: bool = True,
    ) -> PublicIdentity:
        identity = PublicIdentity(
            user_id=user_id,
            email=f"{user_id[-4:]}@example.com",
            full_name=full_name,
            role=role,
            onboarding_complete=onboarding_complete,
        )
        self.users[user_id] = identity
        return identity

    def set_status(self, user_id: str, status: RequestStatus, *, minutes: int = 0) -> None:
        self.requests[user_id] = ApplicationRequest(
            user_id=user_id,
            status=status,
            created_at=BASE_TIME + timedelta(minutes=minutes),
        )

    def _raise_if_failing(self) -> None:
        if self.error is not None:
            raise self.error

    async def get_request_by_user(self, user_id: str) -> ApplicationRequest | None:
        self.request_calls += 1
        self._raise_if_failing()
        return self.requests.get(user_id)

    async def get_user_by_id(self, user_id: str) -> PublicIdentity:
        self._raise_if_failing()
        if user_id not in self.users:
            raise NotFoundError("User not found", user_id=user_id, operation="get_user_by_id")
        return self.users[user_id]

    async def list_users_by_role(self, role: str) -> list[PublicIdentity]:
        self._raise_if_failing()
        return [u for u in self.users.values() if u.role == role]

    async def latest_request_with_status(self, statuses):
        self._raise_if_failing()
        wanted = set(statuses)
        matching = [r for r in self.requests.values() if r.status in wanted]
        if not matching:
            return None
        return max(matching, key=lambda r: r.created_at)


class FakeAuditLog:
    """In-memory AuditLog."""

    def __init__(self) -> None:
        self.reasons: dict[str, str] = {}
        self.error: Exception | None = None
        self.calls = 0

    async def get_latest_access_reason(self, user_id: str) -> str | None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.reasons.get(user_id)


class FakeMessageStore:
    """In-memory MessageStore assigning sequential ids and timestamps.

    Publishes inserts to the push channel when one is attached, like
    SqlMessageStore does.
    """

    def __init__(self, push: InProcessPushChannel | None = None) -> None:
        self.rows: list[ChatMessage] = []
        self.push = push
        self.insert_error: Exception | None = None
        self.list_error: Exception | None = None
        self.list_calls = 0

    async def list_messages(self, user_a: str, user_b: str) -> list[ChatMessage]:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return [m for m in self.rows if m.belongs_to(user_a, user_b)]

    async def insert_message(self, draft: MessageDraft) -> ChatMessage:
        if self.insert_error is not None:
            raise self.insert_error
        n = len(self.rows) + 1
        message = ChatMessage(
            id=f"msg-{n:04d}",
            sender_id=draft.sender_id,
            receiver_id=draft.receiver_id,
            content=draft.content,
            attachment_url=draft.attachment_url,
            created_at=BASE_TIME + timedelta(seconds=n),
        )
        self.rows.append(message)
        if self.push is not None:
            await self.push.publish(
                ChangeEvent(
                    table=MESSAGES_TABLE,
                    kind=ChangeKind.INSERT,
                    record={
                        "id": message.id,
                        "sender_id": message.sender_id,
                        "receiver_id": message.receiver_id,
                    },
                )
            )
        return message

    def seed(self, sender_id: str, receiver_id: str, content: str, *, seconds: int) -> ChatMessage:
        """Insert a row directly with a chosen timestamp."""
        message = ChatMessage(
            id=f"seed-{len(self.rows) + 1:04d}",
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            created_at=BASE_TIME + timedelta(seconds=seconds),
        )
        self.rows.append(message)
        return message


class FakeObjectStore:
    """In-memory ObjectStore."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.error: Exception | None = None

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        if self.error is not None:
            raise self.error
        self.objects[path] = (data, content_type)
        return f"https://files.example.com/message-images/{path}"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def notifier(sink: RecordingSink, clock: FakeClock) -> NotificationDeduplicator:
    return NotificationDeduplicator(sink, cooldown=5.0, clock=clock)


@pytest.fixture
def directory() -> FakeDirectory:
    directory = FakeDirectory()
    directory.add_user(ADMIN_ID, role="admin", full_name="Portal Admin")
    directory.add_user(MEMBER_ID, full_name="Alice Applicant")
    return directory


@pytest.fixture
def audit_log() -> FakeAuditLog:
    return FakeAuditLog()


@pytest.fixture
def push() -> InProcessPushChannel:
    return InProcessPushChannel()


@pytest.fixture
def message_store(push: InProcessPushChannel) -> FakeMessageStore:
    return FakeMessageStore(push)


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def admin_user(directory: FakeDirectory) -> SessionUser:
    return SessionUser.from_identity(directory.users[ADMIN_ID])


@pytest.fixture
def member_user(directory: FakeDirectory) -> SessionUser:
    return SessionUser.from_identity(directory.users[MEMBER_ID])


@pytest.fixture
def send_error() -> SendError:
    return SendError("database unavailable", user_id=MEMBER_ID, operation="insert_message")


@pytest.fixture
def upload_error() -> UploadError:
    return UploadError("bucket unavailable", user_id=MEMBER_ID, operation="upload")
