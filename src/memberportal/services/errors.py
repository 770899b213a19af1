"""Error taxonomy for the portal core.

None of these reach the rendering layer: each component catches them at its
boundary, logs them with the user id and operation, and degrades.

- TransientFetchError: backend hiccup, retried by the next scheduled tick
- NotFoundError: expected absence (no request, no counterpart)
- UploadError / SendError: surfaced via a deduplicated notification
- SubscriptionError: push channel unavailable, engine falls back to polling
"""

from __future__ import annotations


class PortalError(Exception):
    """Base exception for portal core operations.

    Attributes:
        message: Human-readable error description.
        user_id: The user the operation ran for (if applicable).
        operation: The operation that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        user_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.message = message
        self.user_id = user_id
        self.operation = operation
        super().__init__(message)

    def __str__(self) -> str:
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.user_id:
            context.append(f"user_id={self.user_id}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class TransientFetchError(PortalError):
    """Raised when a remote read fails in a way the next poll may not."""


class NotFoundError(PortalError):
    """Raised when an expected record is absent."""


class UploadError(PortalError):
    """Raised when an attachment cannot be stored."""


class SendError(PortalError):
    """Raised when a message record cannot be persisted."""


class SubscriptionError(PortalError):
    """Raised when the push channel cannot establish a subscription."""
