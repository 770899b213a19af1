"""Wiring of the portal core from settings.

PortalServices bundles the collaborators one process shares between portal
sessions: repositories on a single database engine, one push channel, one
attachment store and one notification deduplicator.

Example:
    services = PortalServices.from_settings(get_settings())
    try:
        user = SessionUser.from_identity(identity, services.admin_role)
        async with services.open_session(user) as session:
            await session.send("Hello")
    finally:
        await services.aclose()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from memberportal.core.config import SyncSettings
from memberportal.core.settings import configure_logging
from memberportal.db import create_session_factory
from memberportal.services.audit_log import SqlAuditLog
from memberportal.services.directory import SqlApplicationDirectory
from memberportal.services.message_store import SqlMessageStore
from memberportal.services.notifications import NotificationDeduplicator
from memberportal.services.push import InProcessPushChannel
from memberportal.services.session import PortalSession
from memberportal.services.storage import AttachmentStore, ObjectStoreClient

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncEngine

    from memberportal.core.config import Settings
    from memberportal.core.types import SessionUser
    from memberportal.services.application_status import RedirectSignal
    from memberportal.services.audit_log import AuditLog
    from memberportal.services.directory import ApplicationDirectory
    from memberportal.services.message_store import MessageStore
    from memberportal.services.notifications import NotificationSink
    from memberportal.services.push import PushChannel
    from memberportal.services.storage import ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class PortalServices:
    """Shared collaborators for portal sessions."""

    directory: ApplicationDirectory
    audit_log: AuditLog
    message_store: MessageStore
    notifier: NotificationDeduplicator
    push: PushChannel | None = None
    object_store: ObjectStore | None = None
    sync: SyncSettings = field(default_factory=SyncSettings)
    admin_role: str = "admin"
    db_engine: AsyncEngine | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        sink: NotificationSink | None = None,
        ensure_bucket: bool = False,
    ) -> PortalServices:
        """Build the SQL, S3 and in-process push adapters from settings.

        Args:
            settings: Loaded portal settings.
            sink: Where notifications are shown; defaults to the log.
            ensure_bucket: Create the attachment bucket if it is missing.
        """
        configure_logging(settings.log_level)

        engine, session_factory = create_session_factory(settings.database)
        push = InProcessPushChannel()

        client = ObjectStoreClient.from_settings(settings.s3)
        if ensure_bucket:
            client.ensure_bucket(settings.s3.bucket)

        services = cls(
            directory=SqlApplicationDirectory(session_factory),
            audit_log=SqlAuditLog(session_factory),
            message_store=SqlMessageStore(session_factory, push=push),
            notifier=NotificationDeduplicator(
                sink, cooldown=settings.sync.notification_cooldown
            ),
            push=push,
            object_store=AttachmentStore(
                client,
                bucket=settings.s3.bucket,
                public_base_url=settings.s3.public_url_base,
            ),
            sync=settings.sync,
            admin_role=settings.admin_role,
            db_engine=engine,
        )
        logger.info(
            "Portal services ready: environment=%s bucket=%s",
            settings.environment.value,
            settings.s3.bucket,
        )
        return services

    def open_session(
        self,
        user: SessionUser,
        *,
        on_redirect: Callable[[RedirectSignal], None] | None = None,
    ) -> PortalSession:
        """Create a session for a signed-in user (not yet started)."""
        return PortalSession(user, self, on_redirect=on_redirect)

    async def aclose(self) -> None:
        """Close the push channel and dispose of the database engine."""
        if isinstance(self.push, InProcessPushChannel):
            self.push.close()
        if self.db_engine is not None:
            await self.db_engine.dispose()
            self.db_engine = None
        logger.info("Portal services closed")
