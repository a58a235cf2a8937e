from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Sequence

from agency_bots.domain.models import (
    Actor,
    Bot,
    Conversation,
    ConversationMessage,
    DailyUsage,
    Document,
    Invite,
    MessageRole,
    Tenant,
)


class TenantCatalog(ABC):
    @abstractmethod
    async def upsert_tenant(self, tenant: Tenant) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        raise NotImplementedError

    @abstractmethod
    async def set_plan(self, tenant_id: str, plan: str) -> bool:
        raise NotImplementedError


class ActorDirectory(ABC):
    @abstractmethod
    async def get_actor(self, tenant_id: str, actor_id: str) -> Actor | None:
        raise NotImplementedError

    @abstractmethod
    async def get_actor_by_email(self, tenant_id: str, email: str) -> Actor | None:
        raise NotImplementedError

    @abstractmethod
    async def create_pending_actor(self, tenant_id: str, email: str) -> Actor:
        """Insert a member/pending actor, or return the row that won a concurrent insert."""
        raise NotImplementedError

    @abstractmethod
    async def bootstrap_owner(self, tenant_id: str, email: str) -> bool:
        """Insert an active owner only while the tenant has no actors. Returns True when a row was written."""
        raise NotImplementedError

    @abstractmethod
    async def list_actors(self, tenant_id: str) -> list[Actor]:
        raise NotImplementedError

    @abstractmethod
    async def update_actor(self, tenant_id: str, actor_id: str, role: str, status: str) -> Actor | None:
        raise NotImplementedError

    @abstractmethod
    async def count_billable_seats(self, tenant_id: str) -> int:
        raise NotImplementedError


class BotCatalog(ABC):
    @abstractmethod
    async def add_bot(self, bot: Bot) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_bot(self, bot_id: str) -> Bot | None:
        raise NotImplementedError

    @abstractmethod
    async def list_visible_bots(self, tenant_id: str, actor_id: str) -> list[Bot]:
        raise NotImplementedError

    @abstractmethod
    async def get_private_bot(self, tenant_id: str, actor_id: str) -> Bot | None:
        raise NotImplementedError

    @abstractmethod
    async def count_agency_bots(self, tenant_id: str) -> int:
        raise NotImplementedError

    @abstractmethod
    async def delete_bot(self, tenant_id: str, bot_id: str, owner_actor_id: str | None) -> bool:
        """Delete only when tenant and ownership (None = agency bot) both match."""
        raise NotImplementedError


class DocumentCatalog(ABC):
    @abstractmethod
    async def add_document(self, document: Document) -> None:
        raise NotImplementedError

    @abstractmethod
    async def list_documents(self, tenant_id: str, bot_id: str) -> list[Document]:
        """Newest first."""
        raise NotImplementedError

    @abstractmethod
    async def get_document(self, tenant_id: str, document_id: str) -> Document | None:
        raise NotImplementedError

    @abstractmethod
    async def delete_document(self, tenant_id: str, document_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def delete_for_bot(self, tenant_id: str, bot_id: str) -> int:
        raise NotImplementedError


class InviteStore(ABC):
    @abstractmethod
    async def add_invite(self, invite: Invite) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_invite(self, tenant_id: str, invite_id: str) -> Invite | None:
        raise NotImplementedError

    @abstractmethod
    async def get_by_token_hash(self, token_hash: str) -> Invite | None:
        raise NotImplementedError

    @abstractmethod
    async def find_open_invite(self, tenant_id: str, email: str, now: datetime) -> Invite | None:
        raise NotImplementedError

    @abstractmethod
    async def list_open_invites(self, tenant_id: str, now: datetime) -> list[Invite]:
        raise NotImplementedError

    @abstractmethod
    async def count_open_invites(self, tenant_id: str, now: datetime) -> int:
        raise NotImplementedError

    @abstractmethod
    async def mark_accepted(self, invite_id: str, now: datetime) -> bool:
        """Accept only an invite that is still open at `now`. Returns False when another caller got there first."""
        raise NotImplementedError

    @abstractmethod
    async def revoke(self, tenant_id: str, invite_id: str, now: datetime) -> bool:
        """Revoke an unaccepted invite. Returns False when it was already accepted."""
        raise NotImplementedError


class ConversationStore(ABC):
    @abstractmethod
    async def get_or_create(self, tenant_id: str, actor_id: str, bot_id: str) -> Conversation:
        raise NotImplementedError

    @abstractmethod
    async def get(self, conversation_id: str) -> Conversation | None:
        raise NotImplementedError

    @abstractmethod
    async def append_message(self, conversation_id: str, role: MessageRole, content: str) -> ConversationMessage:
        raise NotImplementedError

    @abstractmethod
    async def bump_message_count(self, conversation_id: str, delta: int) -> int:
        raise NotImplementedError

    @abstractmethod
    async def load_recent(self, conversation_id: str, limit: int) -> list[ConversationMessage]:
        """Newest `limit` messages, returned oldest-first."""
        raise NotImplementedError

    @abstractmethod
    async def apply_summary(self, conversation_id: str, summary: str, through_message_id: str | None) -> None:
        """Store summary, zero the count and drop messages up to and including `through_message_id`."""
        raise NotImplementedError

    @abstractmethod
    async def reset(self, conversation_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete_for_bot(self, tenant_id: str, bot_id: str) -> int:
        raise NotImplementedError


class QuotaLedger(ABC):
    @abstractmethod
    async def get_daily_usage(self, tenant_id: str, day: str) -> DailyUsage:
        raise NotImplementedError

    @abstractmethod
    async def increment_messages(self, tenant_id: str, day: str, by: int = 1) -> DailyUsage:
        raise NotImplementedError

    @abstractmethod
    async def increment_uploads(self, tenant_id: str, day: str, by: int = 1) -> DailyUsage:
        raise NotImplementedError


class KnowledgeIndex(ABC):
    @abstractmethod
    async def answer(self, instructions: str, context: str, index_handle: str | None) -> str:
        raise NotImplementedError

    @abstractmethod
    async def summarize(self, prior_summary: str | None, messages: Sequence[ConversationMessage]) -> str:
        raise NotImplementedError

    @abstractmethod
    async def create_index(self, name: str) -> str:
        raise NotImplementedError

    @abstractmethod
    async def delete_index(self, index_handle: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def add_file(self, index_handle: str, filename: str, content: bytes) -> str:
        raise NotImplementedError

    @abstractmethod
    async def file_status(self, index_handle: str, file_ref: str) -> str:
        """One of "in_progress", "completed", "failed"."""
        raise NotImplementedError

    @abstractmethod
    async def remove_file(self, index_handle: str, file_ref: str) -> None:
        """Detach a file from the index. A file that is already gone is not an error."""
        raise NotImplementedError
