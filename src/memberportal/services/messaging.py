"""Message synchronization for one conversation pair.

The engine merges two sources into a single ordered history:

- pull: ``refresh()`` replaces the durable history with the store's view
- push: change events touching the pair trigger a ``refresh()``; payloads are
  never patched in directly since the transport cannot tell partial or
  duplicate payloads apart

Outgoing messages appear immediately as optimistic ``pending`` entries with a
``local-`` id. Once the store confirms, the optimistic entry is dropped and
the durable copy takes its place. If the upload or insert fails, the entry
turns ``failed`` and stays until the user retries or dismisses it.

Display order is always ``(created_at, id)`` ascending.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from memberportal.core.types import ChatMessage, DeliveryState, MessageDraft
from memberportal.services.errors import SendError, SubscriptionError, UploadError
from memberportal.services.notifications import Severity

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from types import TracebackType

    from memberportal.core.types import Attachment, ChangeEvent
    from memberportal.services.message_store import MessageStore
    from memberportal.services.notifications import NotificationDeduplicator
    from memberportal.services.push import PushChannel, Subscription
    from memberportal.services.storage import ObjectStore

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_INTERVAL_SECONDS = 15.0
LOCAL_ID_PREFIX = "local-"

UPLOAD_ERROR_KEY = "message-upload-error"
UPLOAD_ERROR_MESSAGE = "Failed to upload attachment"
SEND_ERROR_KEY = "message-send-error"
SEND_ERROR_MESSAGE = "Failed to send message"


def order_messages(messages: Iterable[ChatMessage]) -> list[ChatMessage]:
    """Deduplicate by id (last wins) and sort by ``(created_at, id)``."""
    by_id = {m.id: m for m in messages}
    return sorted(by_id.values(), key=lambda m: m.sort_key)


class MessageSyncEngine:
    """Keeps the conversation between ``user_id`` and ``counterpart_id`` in sync.

    Example:
        engine = MessageSyncEngine(me, admin.user_id, store, push, notifier,
                                   object_store=attachments)
        async with engine:
            await engine.send("Hello")
            render(engine.messages)
    """

    def __init__(
        self,
        user_id: str,
        counterpart_id: str,
        store: MessageStore,
        push: PushChannel | None,
        notifier: NotificationDeduplicator,
        *,
        object_store: ObjectStore | None = None,
        fallback_interval: float = DEFAULT_FALLBACK_INTERVAL_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the engine (inactive until ``activate()``).

        Args:
            user_id: The local participant.
            counterpart_id: The other participant.
            store: Durable message store.
            push: Change feed; None runs the engine in pull-only mode.
            notifier: Shared notification deduplicator.
            object_store: Attachment storage; sends with attachments fail without it.
            fallback_interval: Refresh period when push is unavailable.
            clock: Source of optimistic timestamps, injectable for tests.
        """
        self.user_id = user_id
        self.counterpart_id = counterpart_id
        self._store = store
        self._push = push
        self._notifier = notifier
        self._object_store = object_store
        self._fallback_interval = fallback_interval
        self._clock = clock or (lambda: datetime.now(UTC))

        self._durable: list[ChatMessage] = []
        self._local: dict[str, ChatMessage] = {}
        self._issued_seq = 0
        self._applied_seq = 0
        self._sends_in_flight = 0
        self._active = False
        self._subscription: Subscription | None = None
        self._fallback_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def messages(self) -> list[ChatMessage]:
        """Durable and local messages in display order."""
        return sorted([*self._durable, *self._local.values()], key=lambda m: m.sort_key)

    @property
    def failed_messages(self) -> list[ChatMessage]:
        return [m for m in self.messages if m.delivery_state is DeliveryState.FAILED]

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def push_connected(self) -> bool:
        return self._subscription is not None and self._subscription.active

    @property
    def pull_fallback_running(self) -> bool:
        return self._fallback_task is not None and not self._fallback_task.done()

    async def activate(self) -> None:
        """Subscribe to the push channel and load the history.

        Anything acquired here is released again if activation fails.
        """
        if self._active:
            return
        self._active = True
        self._stop_event.clear()
        try:
            self._subscribe()
            await self.refresh()
        except BaseException:
            await self.deactivate()
            raise
        logger.info(
            "Message sync active: user_id=%s counterpart=%s push=%s",
            self.user_id,
            self.counterpart_id,
            self.push_connected,
        )

    async def deactivate(self) -> None:
        """Release the subscription and stop fallback polling. Idempotent."""
        self._active = False
        self._stop_event.set()

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.release()

        task, self._fallback_task = self._fallback_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        logger.debug(
            "Message sync inactive: user_id=%s counterpart=%s",
            self.user_id,
            self.counterpart_id,
        )

    async def __aenter__(self) -> MessageSyncEngine:
        await self.activate()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.deactivate()

    async def refresh(self) -> bool:
        """Replace the durable history with the store's current view.

        Returns:
            True if the fetched result was applied, False if the fetch failed
            or the result was stale.
        """
        self._issued_seq += 1
        seq = self._issued_seq

        try:
            fetched = await self._store.list_messages(self.user_id, self.counterpart_id)
        except Exception as e:
            logger.warning(
                "Message refresh failed: user_id=%s counterpart=%s, error=%s",
                self.user_id,
                self.counterpart_id,
                e,
            )
            return False

        if not self._active:
            logger.debug("Discarding message refresh after deactivation: user_id=%s", self.user_id)
            return False
        if seq < self._applied_seq:
            logger.debug(
                "Discarding stale message refresh: user_id=%s seq=%d applied=%d",
                self.user_id,
                seq,
                self._applied_seq,
            )
            return False

        self._applied_seq = seq
        self._durable = order_messages(
            m for m in fetched if m.belongs_to(self.user_id, self.counterpart_id)
        )
        return True

    async def on_remote_event(self, event: ChangeEvent) -> None:
        """Refresh when a change touches this conversation."""
        if not self._active or not event.touches(self.user_id, self.counterpart_id):
            return
        if self._sends_in_flight and str(event.record.get("sender_id")) == self.user_id:
            # _deliver merges and refreshes once the insert returns.
            logger.debug("Own insert while sending, skipping refresh: user_id=%s", self.user_id)
            return
        logger.debug(
            "Remote %s on %s, refreshing: user_id=%s",
            event.kind.value,
            event.table,
            self.user_id,
        )
        await self.refresh()

    async def send(self, content: str, attachment: Attachment | None = None) -> ChatMessage:
        """Send a message, showing it optimistically until confirmed.

        Returns:
            The durable message on success, or the failed optimistic entry.

        Raises:
            ValueError: If there is neither text nor an attachment.
        """
        text = content.strip()
        if not text and attachment is None:
            msg = "A message needs text or an attachment"
            raise ValueError(msg)

        optimistic = ChatMessage(
            id=f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}",
            sender_id=self.user_id,
            receiver_id=self.counterpart_id,
            content=text,
            created_at=self._clock(),
            delivery_state=DeliveryState.PENDING,
            attachment=attachment,
        )
        self._local[optimistic.id] = optimistic
        return await self._deliver(optimistic)

    async def retry(self, message_id: str) -> ChatMessage:
        """Re-send a failed message with its original content and attachment.

        Raises:
            KeyError: If no failed message has this id.
        """
        message = self._local.get(message_id)
        if message is None or message.delivery_state is not DeliveryState.FAILED:
            raise KeyError(message_id)
        pending = message.with_state(DeliveryState.PENDING)
        self._local[message_id] = pending
        return await self._deliver(pending)

    def dismiss(self, message_id: str) -> bool:
        """Discard a failed message. Returns False if there was none."""
        message = self._local.get(message_id)
        if message is None or message.delivery_state is not DeliveryState.FAILED:
            return False
        del self._local[message_id]
        return True

    async def _deliver(self, message: ChatMessage) -> ChatMessage:
        self._sends_in_flight += 1
        try:
            attachment_url = (
                await self._upload(message.attachment) if message.attachment else None
            )
            stored = await self._store.insert_message(
                MessageDraft(
                    sender_id=message.sender_id,
                    receiver_id=message.receiver_id,
                    content=message.content,
                    attachment_url=attachment_url,
                )
            )
        except UploadError as e:
            return self._fail(message, e, UPLOAD_ERROR_MESSAGE, UPLOAD_ERROR_KEY)
        except SendError as e:
            return self._fail(message, e, SEND_ERROR_MESSAGE, SEND_ERROR_KEY)
        except Exception as e:
            logger.exception("Unexpected error sending message: user_id=%s", self.user_id)
            return self._fail(message, e, SEND_ERROR_MESSAGE, SEND_ERROR_KEY)
        finally:
            self._sends_in_flight -= 1

        self._local.pop(message.id, None)
        if self._active:
            # The merge counts as an applied result: refreshes issued before
            # the insert returned are now stale.
            self._issued_seq += 1
            self._applied_seq = self._issued_seq
            self._durable = order_messages([*self._durable, stored])
        await self.refresh()
        return stored

    async def _upload(self, attachment: Attachment) -> str:
        if self._object_store is None:
            msg = "No object store configured for attachments"
            raise UploadError(msg, user_id=self.user_id, operation="upload")

        path = f"{self.user_id}/{uuid.uuid4().hex}.{attachment.extension}"
        try:
            return await self._object_store.upload(path, attachment.data, attachment.content_type)
        except UploadError:
            raise
        except Exception as e:
            raise UploadError(
                f"Attachment upload failed: {e}",
                user_id=self.user_id,
                operation="upload",
            ) from e

    def _fail(
        self,
        message: ChatMessage,
        error: Exception,
        notice: str,
        key: str,
    ) -> ChatMessage:
        failed = message.with_state(DeliveryState.FAILED)
        if message.id in self._local:
            self._local[message.id] = failed
        logger.error(
            "Message delivery failed: user_id=%s counterpart=%s message_id=%s, error=%s",
            self.user_id,
            self.counterpart_id,
            message.id,
            error,
        )
        self._notifier.notify(notice, Severity.ERROR, key=key)
        return failed

    def _subscribe(self) -> None:
        if self._push is None:
            logger.info("No push channel, using pull-only mode: user_id=%s", self.user_id)
            self._start_fallback()
            return
        try:
            self._subscription = self._push.subscribe(
                lambda event: event.touches(self.user_id, self.counterpart_id),
                self.on_remote_event,
            )
        except SubscriptionError as e:
            logger.warning(
                "Push subscription failed, falling back to polling every %ss: "
                "user_id=%s, error=%s",
                self._fallback_interval,
                self.user_id,
                e,
            )
            self._start_fallback()

    def _start_fallback(self) -> None:
        if self.pull_fallback_running:
            return
        self._fallback_task = asyncio.create_task(
            self._fallback_loop(), name=f"message-pull-{self.user_id}"
        )

    async def _fallback_loop(self) -> None:
        while self._active:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._fallback_interval)
            if not self._active:
                return
            await self.refresh()
