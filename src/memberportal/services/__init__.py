"""Member portal service layer.

Core components and the adapters they talk to:
- NotificationDeduplicator: Cooldown-based suppression of repeated alerts
- ApplicationStatusTracker: Polling state machine for the approval workflow
- CounterpartyResolver: Who a user messages (admin <-> applicant)
- MessageSyncEngine: Push/pull merged, optimistically updated conversation
- PortalSession: Per-user facade over the components above
- evaluate_access: Route guard for the gated area
- SqlApplicationDirectory, SqlAuditLog, SqlMessageStore: SQLAlchemy adapters
- AttachmentStore: S3-compatible attachment uploads
- InProcessPushChannel: Change feed fed by the message store
"""

from memberportal.services.access import AccessDecision, evaluate_access
from memberportal.services.application_status import (
    ApplicationState,
    ApplicationStatusTracker,
    RedirectSignal,
    StatusSnapshot,
)
from memberportal.services.audit_log import SqlAuditLog
from memberportal.services.counterparty import CounterpartyResolver
from memberportal.services.directory import SqlApplicationDirectory
from memberportal.services.errors import (
    NotFoundError,
    PortalError,
    SendError,
    SubscriptionError,
    TransientFetchError,
    UploadError,
)
from memberportal.services.message_store import SqlMessageStore
from memberportal.services.messaging import MessageSyncEngine
from memberportal.services.notifications import (
    Notification,
    NotificationDeduplicator,
    Severity,
)
from memberportal.services.push import InProcessPushChannel, Subscription
from memberportal.services.session import PortalSession
from memberportal.services.storage import AttachmentStore, ObjectStoreClient

__all__ = [
    "AccessDecision",
    "ApplicationState",
    "ApplicationStatusTracker",
    "AttachmentStore",
    "CounterpartyResolver",
    "InProcessPushChannel",
    "MessageSyncEngine",
    "NotFoundError",
    "Notification",
    "NotificationDeduplicator",
    "ObjectStoreClient",
    "PortalError",
    "PortalSession",
    "RedirectSignal",
    "SendError",
    "Severity",
    "SqlApplicationDirectory",
    "SqlAuditLog",
    "SqlMessageStore",
    "StatusSnapshot",
    "Subscription",
    "SubscriptionError",
    "TransientFetchError",
    "UploadError",
    "evaluate_access",
]
