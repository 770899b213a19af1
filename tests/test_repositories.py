"""Tests for the SQLAlchemy adapters.

Uses mocked AsyncSession objects; no database is required.
"""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from memberportal.core.types import ChangeKind, MessageDraft, RequestStatus
from memberportal.db.models import AdminAccess, Message, PortalUser, RequestStatusColumn, UserRequest
from memberportal.services.audit_log import SqlAuditLog
from memberportal.services.directory import SqlApplicationDirectory, parse_user_id
from memberportal.services.errors import NotFoundError, SendError, TransientFetchError
from memberportal.services.message_store import MESSAGES_TABLE, SqlMessageStore
from memberportal.services.push import InProcessPushChannel

USER_ID = uuid.UUID("00000000-0000-0000-0000-00000000b001")
ADMIN_ID = uuid.UUID("00000000-0000-0000-0000-00000000a001")
NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def mock_session():
    """Create a mock async database session."""
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def session_factory(mock_session):
    """async_sessionmaker stand-in yielding the mock session."""
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=mock_session)
    context.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=context)


def _result(*, one=None, many=()):
    result = MagicMock()
    result.scalar_one_or_none.return_value = one
    result.scalars.return_value.all.return_value = list(many)
    return result


def _db_error():
    return OperationalError("SELECT 1", {}, Exception("connection refused"))


def _user(user_id, role=None, full_name=None):
    return PortalUser(
        id=user_id,
        created_at=NOW,
        email="user@example.com",
        full_name=full_name,
        role=role,
        onboarding_complete=True,
    )


class TestParseUserId:
    """Tests for user id parsing."""

    def test_valid(self):
        assert parse_user_id(str(USER_ID), operation="op") == USER_ID

    def test_malformed(self):
        with pytest.raises(NotFoundError) as exc_info:
            parse_user_id("not-a-uuid", operation="op")
        assert exc_info.value.operation == "op"


class TestSqlApplicationDirectory:
    """Tests for SqlApplicationDirectory."""

    @pytest.mark.asyncio
    async def test_get_request_by_user(self, session_factory, mock_session):
        row = UserRequest(
            id=uuid.uuid4(), created_at=NOW, user_id=USER_ID, status=RequestStatusColumn.PENDING
        )
        mock_session.execute.return_value = _result(one=row)

        request = await SqlApplicationDirectory(session_factory).get_request_by_user(str(USER_ID))

        assert request.user_id == str(USER_ID)
        assert request.status is RequestStatus.PENDING
        assert request.created_at == NOW

    @pytest.mark.asyncio
    async def test_get_request_absent(self, session_factory, mock_session):
        mock_session.execute.return_value = _result(one=None)
        directory = SqlApplicationDirectory(session_factory)
        assert await directory.get_request_by_user(str(USER_ID)) is None

    @pytest.mark.asyncio
    async def test_get_request_malformed_id(self, session_factory, mock_session):
        directory = SqlApplicationDirectory(session_factory)
        assert await directory.get_request_by_user("anonymous") is None
        mock_session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_request_db_error(self, session_factory, mock_session):
        mock_session.execute.side_effect = _db_error()
        with pytest.raises(TransientFetchError) as exc_info:
            await SqlApplicationDirectory(session_factory).get_request_by_user(str(USER_ID))
        assert exc_info.value.user_id == str(USER_ID)
        assert exc_info.value.operation == "get_request_by_user"

    @pytest.mark.asyncio
    async def test_get_user_by_id(self, session_factory, mock_session):
        mock_session.get.return_value = _user(ADMIN_ID, role="admin", full_name="Ada")
        identity = await SqlApplicationDirectory(session_factory).get_user_by_id(str(ADMIN_ID))
        assert identity.user_id == str(ADMIN_ID)
        assert identity.display_name == "Ada"
        assert identity.metadata["role"] == "admin"

    @pytest.mark.asyncio
    async def test_get_user_missing(self, session_factory, mock_session):
        mock_session.get.return_value = None
        with pytest.raises(NotFoundError):
            await SqlApplicationDirectory(session_factory).get_user_by_id(str(USER_ID))

    @pytest.mark.asyncio
    async def test_list_users_by_role(self, session_factory, mock_session):
        mock_session.execute.return_value = _result(many=[_user(ADMIN_ID, role="admin")])
        users = await SqlApplicationDirectory(session_factory).list_users_by_role("admin")
        assert [u.user_id for u in users] == [str(ADMIN_ID)]

    @pytest.mark.asyncio
    async def test_latest_request_with_status(self, session_factory, mock_session):
        row = UserRequest(
            id=uuid.uuid4(), created_at=NOW, user_id=USER_ID, status=RequestStatusColumn.APPROVED
        )
        mock_session.execute.return_value = _result(one=row)

        request = await SqlApplicationDirectory(session_factory).latest_request_with_status(
            [RequestStatus.PENDING, RequestStatus.APPROVED]
        )

        assert request.status is RequestStatus.APPROVED
        stmt = mock_session.execute.call_args.args[0]
        assert "ORDER BY user_requests.created_at DESC" in str(stmt)

    @pytest.mark.asyncio
    async def test_latest_request_no_statuses(self, session_factory, mock_session):
        directory = SqlApplicationDirectory(session_factory)
        assert await directory.latest_request_with_status([]) is None
        mock_session.execute.assert_not_called()


class TestSqlAuditLog:
    """Tests for SqlAuditLog."""

    @pytest.mark.asyncio
    async def test_latest_reason(self, session_factory, mock_session):
        mock_session.execute.return_value = _result(one="incomplete profile")
        reason = await SqlAuditLog(session_factory).get_latest_access_reason(str(USER_ID))
        assert reason == "incomplete profile"
        stmt = str(mock_session.execute.call_args.args[0])
        assert "ORDER BY admin_access.accessed_at DESC" in stmt

    @pytest.mark.asyncio
    async def test_empty_reason_is_none(self, session_factory, mock_session):
        mock_session.execute.return_value = _result(one="")
        assert await SqlAuditLog(session_factory).get_latest_access_reason(str(USER_ID)) is None

    @pytest.mark.asyncio
    async def test_db_error(self, session_factory, mock_session):
        mock_session.execute.side_effect = _db_error()
        with pytest.raises(TransientFetchError):
            await SqlAuditLog(session_factory).get_latest_access_reason(str(USER_ID))

    def test_model_table(self):
        assert AdminAccess.__tablename__ == "admin_access"


class TestSqlMessageStore:
    """Tests for SqlMessageStore."""

    @pytest.mark.asyncio
    async def test_list_messages(self, session_factory, mock_session):
        rows = [
            Message(
                id=uuid.uuid4(),
                created_at=NOW,
                sender_id=USER_ID,
                receiver_id=ADMIN_ID,
                content="hello",
                image_url=None,
            ),
            Message(
                id=uuid.uuid4(),
                created_at=NOW,
                sender_id=ADMIN_ID,
                receiver_id=USER_ID,
                content=None,
                image_url="https://files.example.com/message-images/a.png",
            ),
        ]
        mock_session.execute.return_value = _result(many=rows)

        messages = await SqlMessageStore(session_factory).list_messages(
            str(USER_ID), str(ADMIN_ID)
        )

        assert [m.content for m in messages] == ["hello", ""]
        assert messages[1].attachment_url.endswith("a.png")
        assert all(not m.is_local for m in messages)

    @pytest.mark.asyncio
    async def test_list_messages_malformed_id(self, session_factory, mock_session):
        store = SqlMessageStore(session_factory)
        assert await store.list_messages("anonymous", str(ADMIN_ID)) == []
        mock_session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_list_messages_db_error(self, session_factory, mock_session):
        mock_session.execute.side_effect = _db_error()
        with pytest.raises(TransientFetchError):
            await SqlMessageStore(session_factory).list_messages(str(USER_ID), str(ADMIN_ID))

    @pytest.mark.asyncio
    async def test_insert_publishes_event(self, session_factory, mock_session):
        push = InProcessPushChannel()
        events = []

        async def handler(event):
            events.append(event)

        push.subscribe(lambda e: True, handler)
        store = SqlMessageStore(session_factory, push=push)

        message = await store.insert_message(
            MessageDraft(sender_id=str(USER_ID), receiver_id=str(ADMIN_ID), content="hi")
        )

        mock_session.add.assert_called_once()
        mock_session.commit.assert_awaited_once()
        assert message.content == "hi"
        assert message.created_at.tzinfo is not None
        uuid.UUID(message.id)
        (event,) = events
        assert event.table == MESSAGES_TABLE
        assert event.kind is ChangeKind.INSERT
        assert event.record["id"] == message.id
        assert event.touches(str(ADMIN_ID), str(USER_ID))

    @pytest.mark.asyncio
    async def test_insert_db_error(self, session_factory, mock_session):
        mock_session.commit.side_effect = _db_error()
        with pytest.raises(SendError) as exc_info:
            await SqlMessageStore(session_factory).insert_message(
                MessageDraft(sender_id=str(USER_ID), receiver_id=str(ADMIN_ID), content="hi")
            )
        assert exc_info.value.operation == "insert_message"

    @pytest.mark.asyncio
    async def test_insert_malformed_id(self, session_factory):
        with pytest.raises(SendError):
            await SqlMessageStore(session_factory).insert_message(
                MessageDraft(sender_id="anonymous", receiver_id=str(ADMIN_ID), content="hi")
            )
