from __future__ import annotations

from typing import Any


class AgencyBotsError(Exception):
    """Base error carrying a stable machine-readable code."""

    code = "SERVER_ERROR"
    message = "Server error"

    def __init__(self, message: str | None = None, **fields: Any) -> None:
        super().__init__(message or self.message)
        self.fields = fields

    def detail(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": str(self), "code": self.code}
        payload.update(self.fields)
        return payload


class InvalidRequest(AgencyBotsError):
    code = "INVALID_REQUEST"
    message = "Invalid request"


class Unauthenticated(AgencyBotsError):
    code = "UNAUTHENTICATED"
    message = "Unauthorized"


class ForbiddenNotActive(AgencyBotsError):
    code = "FORBIDDEN_NOT_ACTIVE"
    message = "Pending approval"


class ForbiddenNotOwner(AgencyBotsError):
    code = "FORBIDDEN_NOT_OWNER"
    message = "Owner only"


class ActorNotFound(AgencyBotsError):
    code = "USER_NOT_FOUND"
    message = "User not found"


class TenantNotFound(AgencyBotsError):
    code = "AGENCY_NOT_FOUND"
    message = "Agency not found"


class SelfLockout(AgencyBotsError):
    code = "SELF_LOCKOUT"
    message = "You cannot change your own access."


class InvalidMemberUpdate(AgencyBotsError):
    code = "INVALID_MEMBER_UPDATE"
    message = "Invalid role or status"


class BotNotFound(AgencyBotsError):
    code = "BOT_NOT_FOUND"
    message = "Bot not found"


class BotForbidden(AgencyBotsError):
    code = "FORBIDDEN_BOT"
    message = "Forbidden"


class IndexMissing(AgencyBotsError):
    code = "BOT_VECTOR_STORE_MISSING"
    message = "This bot can't accept uploads yet (knowledge index missing)."


class DailyLimitExceeded(AgencyBotsError):
    code = "DAILY_LIMIT_EXCEEDED"
    message = "Daily message limit reached"

    def __init__(self, *, used: int, cap: int, plan: str) -> None:
        super().__init__(used=used, cap=cap, plan=plan)
        self.used = used
        self.cap = cap
        self.plan = plan


class UploadLimitExceeded(AgencyBotsError):
    code = "UPLOAD_LIMIT_EXCEEDED"
    message = "Daily upload limit reached"

    def __init__(self, *, used: int, cap: int, plan: str) -> None:
        super().__init__(used=used, cap=cap, plan=plan)
        self.used = used
        self.cap = cap
        self.plan = plan


class UpgradeRequired(AgencyBotsError):
    code = "PLAN_REQUIRED"
    message = "Upgrade required"

    def __init__(self, *, plan: str, feature: str) -> None:
        super().__init__(plan=plan, feature=feature)
        self.plan = plan
        self.feature = feature


class SeatLimitExceeded(AgencyBotsError):
    code = "SEAT_LIMIT_EXCEEDED"
    message = "Seat limit reached for this plan"


class BotLimitExceeded(AgencyBotsError):
    code = "BOT_LIMIT_EXCEEDED"
    message = "Agency bot limit reached for this plan"


class ExternalCapabilityFailure(AgencyBotsError):
    """Knowledge-index provider call failed."""

    code = "EXTERNAL_CAPABILITY_FAILURE"
    message = "Knowledge index call failed"


class IndexingFailed(ExternalCapabilityFailure):
    code = "INDEXING_FAILED"
    message = "Indexing failed"


class IndexingTimeout(ExternalCapabilityFailure):
    code = "INDEXING_TIMEOUT"
    message = "Indexing timed out"


class ActorAlreadyExists(AgencyBotsError):
    code = "USER_EXISTS"
    message = "User already exists in this agency"


class InviteAlreadyOpen(AgencyBotsError):
    code = "INVITE_EXISTS"
    message = "An invite is already pending for this email"


class InviteNotFound(AgencyBotsError):
    code = "INVITE_NOT_FOUND"
    message = "Invite not found"


class InviteAlreadyAccepted(AgencyBotsError):
    code = "INVITE_ALREADY_ACCEPTED"
    message = "Invite already accepted"


class InvalidInvite(AgencyBotsError):
    code = "INVALID_INVITE"
    message = "Invalid or expired invite"


class DocumentNotFound(AgencyBotsError):
    code = "DOCUMENT_NOT_FOUND"
    message = "Document not found"
