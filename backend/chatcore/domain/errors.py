"""Domain-level exceptions surfaced to chat clients."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base class for messaging core errors.

    ``code`` is the stable category clients branch on, ``reason`` narrows it
    (e.g. which privacy rule denied an action).
    """

    code: str = "error"
    reason: str = "unknown"

    def __init__(self, reason: str | None = None, message: str | None = None) -> None:
        super().__init__(message or reason or self.reason)
        if reason:
            self.reason = reason
        self.message = message or self.reason

    def to_payload(self, event: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "reason": self.reason, "message": self.message}
        if event is not None:
            payload["event"] = event
        return payload


class NotAuthenticated(ChatError):
    code = "not_authenticated"
    reason = "missing_identity"


class NotParticipant(ChatError):
    code = "not_participant"
    reason = "not_participant"


class PermissionDenied(ChatError):
    code = "permission_denied"
    reason = "forbidden"


class NotFound(ChatError):
    code = "not_found"
    reason = "not_found"


class ValidationError(ChatError):
    code = "validation_error"
    reason = "invalid"


class TransientError(ChatError):
    code = "transient"
    reason = "temporarily_unavailable"

    def __init__(self, reason: str | None = None) -> None:
        # never leak driver detail to clients
        super().__init__(reason, "Temporary failure, please retry")


class RateLimited(ChatError):
    code = "rate_limited"
    reason = "too_many_requests"


# PermissionDenied reasons
RECIPIENT_BLOCKS_MESSAGES = "RecipientBlocksMessages"
NOT_FRIENDS = "NotFriends"
NO_MUTUAL_FRIENDS = "NoMutualFriends"
UNKNOWN_PRIVACY_LEVEL = "UnknownPrivacyLevel"
FORWARDING_DISABLED = "ForwardingDisabled"
NOT_SENDER = "NotSender"
NOT_CHAT_ADMIN = "NotChatAdmin"
