from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

ActorRole = Literal["owner", "admin", "member"]
MembershipStatus = Literal["pending", "active", "blocked"]
PlanTier = Literal["free", "starter", "pro", "enterprise", "corporation"]
FeatureKey = Literal["schedule", "extraction", "multimedia", "email", "spreadsheets"]
MessageRole = Literal["user", "assistant"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Tenant(BaseModel):
    tenant_id: str
    name: str
    email: str
    plan: str = "free"
    created_at: datetime = Field(default_factory=utc_now)


class Actor(BaseModel):
    # role/status are stored loosely typed; normalize before trusting them.
    actor_id: str
    tenant_id: str
    email: str
    role: str | None = "member"
    status: str | None = "pending"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Invite(BaseModel):
    # Only the sha256 of the token is stored; the raw token is handed out once.
    invite_id: str
    tenant_id: str
    email: str
    token_hash: str
    expires_at: datetime
    accepted_at: datetime | None = None
    revoked_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    def is_open(self, now: datetime) -> bool:
        return self.accepted_at is None and self.revoked_at is None and self.expires_at > now


class Bot(BaseModel):
    bot_id: str
    tenant_id: str
    owner_actor_id: str | None = None
    name: str
    description: str | None = None
    index_handle: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_agency_bot(self) -> bool:
        return self.owner_actor_id is None


class Document(BaseModel):
    document_id: str
    tenant_id: str
    bot_id: str
    filename: str
    file_ref: str
    created_at: datetime = Field(default_factory=utc_now)


class Conversation(BaseModel):
    conversation_id: str
    tenant_id: str
    actor_id: str
    bot_id: str
    summary: str | None = None
    message_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ConversationMessage(BaseModel):
    message_id: str
    conversation_id: str
    role: MessageRole
    content: str
    created_at: datetime = Field(default_factory=utc_now)


class DailyUsage(BaseModel):
    messages_count: int = 0
    uploads_count: int = 0


class PlanLimits(BaseModel, frozen=True):
    daily_messages: int
    daily_uploads: int | None
    max_users: int | None
    max_agency_bots: int | None
    summarize_threshold: int
    features: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ActorCredential:
    tenant_id: str
    tenant_email: str
    actor_id: str | None = None


@dataclass(frozen=True)
class AuthedContext:
    tenant_id: str
    tenant_email: str
    actor_id: str
    role: ActorRole
    status: MembershipStatus
    plan: PlanTier


@dataclass(frozen=True)
class UploadPayload:
    filename: str
    content: bytes


@dataclass(frozen=True)
class IssuedInvite:
    invite: Invite
    token: str


class UsageSnapshot(BaseModel):
    plan: str
    day: str
    messages_used_today: int
    messages_cap_today: int
    uploads_used_today: int
    uploads_cap_today: int | None


class ChatReply(BaseModel):
    answer: str
    source: Literal["assistant", "fallback", "system"]
    remaining_quota: int | None = None


class ChatRequest(BaseModel):
    bot_id: str
    message: str


class ResetConversationRequest(BaseModel):
    bot_id: str


class CreateBotRequest(BaseModel):
    name: str
    description: str | None = None


class UpdateMemberRequest(BaseModel):
    user_id: str
    role: str
    status: str


class CreateInviteRequest(BaseModel):
    email: str


class AcceptInviteRequest(BaseModel):
    token: str


class PlanCallbackRequest(BaseModel):
    tenant_id: str
    plan: str | None = None
    cancelled: bool = False


class MeResponse(BaseModel):
    tenant_id: str
    actor_id: str
    email: str
    role: str
    status: str
    usage: UsageSnapshot
