from __future__ import annotations

from datetime import datetime
from itertools import count
from uuid import uuid4

from agency_bots.domain.interfaces import (
    ActorDirectory,
    BotCatalog,
    ConversationStore,
    DocumentCatalog,
    InviteStore,
    QuotaLedger,
    TenantCatalog,
)
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
    utc_now,
)

# Mutations below never await between read and write, so each one is atomic on the event loop.


class InMemoryTenantCatalog(TenantCatalog):
    def __init__(self) -> None:
        self._tenants: dict[str, Tenant] = {}

    async def upsert_tenant(self, tenant: Tenant) -> None:
        self._tenants[tenant.tenant_id] = tenant.model_copy()

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        tenant = self._tenants.get(tenant_id)
        return tenant.model_copy() if tenant else None

    async def set_plan(self, tenant_id: str, plan: str) -> bool:
        tenant = self._tenants.get(tenant_id)
        if tenant is None:
            return False
        tenant.plan = plan
        return True


class InMemoryActorDirectory(ActorDirectory):
    def __init__(self) -> None:
        self._actors: dict[str, Actor] = {}

    def put(self, actor: Actor) -> None:
        self._actors[actor.actor_id] = actor.model_copy()

    async def get_actor(self, tenant_id: str, actor_id: str) -> Actor | None:
        actor = self._actors.get(actor_id)
        if actor is None or actor.tenant_id != tenant_id:
            return None
        return actor.model_copy()

    async def get_actor_by_email(self, tenant_id: str, email: str) -> Actor | None:
        actor = self._find_by_email(tenant_id, email)
        return actor.model_copy() if actor else None

    async def create_pending_actor(self, tenant_id: str, email: str) -> Actor:
        existing = self._find_by_email(tenant_id, email)
        if existing is not None:
            return existing.model_copy()
        actor = Actor(actor_id=str(uuid4()), tenant_id=tenant_id, email=email, role="member", status="pending")
        self._actors[actor.actor_id] = actor
        return actor.model_copy()

    async def bootstrap_owner(self, tenant_id: str, email: str) -> bool:
        if any(actor.tenant_id == tenant_id for actor in self._actors.values()):
            return False
        actor = Actor(actor_id=str(uuid4()), tenant_id=tenant_id, email=email, role="owner", status="active")
        self._actors[actor.actor_id] = actor
        return True

    async def list_actors(self, tenant_id: str) -> list[Actor]:
        actors = [actor.model_copy() for actor in self._actors.values() if actor.tenant_id == tenant_id]
        return sorted(actors, key=lambda actor: actor.created_at)

    async def update_actor(self, tenant_id: str, actor_id: str, role: str, status: str) -> Actor | None:
        actor = self._actors.get(actor_id)
        if actor is None or actor.tenant_id != tenant_id:
            return None
        actor.role = role
        actor.status = status
        actor.updated_at = utc_now()
        return actor.model_copy()

    async def count_billable_seats(self, tenant_id: str) -> int:
        return sum(
            1
            for actor in self._actors.values()
            if actor.tenant_id == tenant_id
            and (actor.status or "pending") != "blocked"
            and (actor.role or "member") not in {"owner", "admin"}
        )

    def _find_by_email(self, tenant_id: str, email: str) -> Actor | None:
        wanted = email.strip().lower()
        for actor in self._actors.values():
            if actor.tenant_id == tenant_id and actor.email.lower() == wanted:
                return actor
        return None


class InMemoryBotCatalog(BotCatalog):
    def __init__(self) -> None:
        self._bots: dict[str, Bot] = {}

    async def add_bot(self, bot: Bot) -> None:
        self._bots[bot.bot_id] = bot.model_copy()

    async def get_bot(self, bot_id: str) -> Bot | None:
        bot = self._bots.get(bot_id)
        return bot.model_copy() if bot else None

    async def list_visible_bots(self, tenant_id: str, actor_id: str) -> list[Bot]:
        visible = [
            bot.model_copy()
            for bot in self._bots.values()
            if bot.tenant_id == tenant_id and bot.owner_actor_id in {None, actor_id}
        ]
        visible.sort(key=lambda bot: bot.created_at, reverse=True)
        visible.sort(key=lambda bot: 0 if bot.is_agency_bot else 1)
        return visible

    async def get_private_bot(self, tenant_id: str, actor_id: str) -> Bot | None:
        owned = [bot for bot in self._bots.values() if bot.tenant_id == tenant_id and bot.owner_actor_id == actor_id]
        if not owned:
            return None
        return max(owned, key=lambda bot: bot.created_at).model_copy()

    async def count_agency_bots(self, tenant_id: str) -> int:
        return sum(1 for bot in self._bots.values() if bot.tenant_id == tenant_id and bot.is_agency_bot)

    async def delete_bot(self, tenant_id: str, bot_id: str, owner_actor_id: str | None) -> bool:
        bot = self._bots.get(bot_id)
        if bot is None or bot.tenant_id != tenant_id or bot.owner_actor_id != owner_actor_id:
            return False
        del self._bots[bot_id]
        return True


class InMemoryDocumentCatalog(DocumentCatalog):
    def __init__(self) -> None:
        self._documents: dict[str, Document] = {}

    async def add_document(self, document: Document) -> None:
        self._documents[document.document_id] = document.model_copy()

    async def list_documents(self, tenant_id: str, bot_id: str) -> list[Document]:
        matching = [
            doc.model_copy()
            for doc in reversed(list(self._documents.values()))
            if doc.tenant_id == tenant_id and doc.bot_id == bot_id
        ]
        return sorted(matching, key=lambda doc: doc.created_at, reverse=True)

    async def get_document(self, tenant_id: str, document_id: str) -> Document | None:
        doc = self._documents.get(document_id)
        if doc is None or doc.tenant_id != tenant_id:
            return None
        return doc.model_copy()

    async def delete_document(self, tenant_id: str, document_id: str) -> bool:
        doc = self._documents.get(document_id)
        if doc is None or doc.tenant_id != tenant_id:
            return False
        del self._documents[document_id]
        return True

    async def delete_for_bot(self, tenant_id: str, bot_id: str) -> int:
        doomed = [
            doc_id for doc_id, doc in self._documents.items() if doc.tenant_id == tenant_id and doc.bot_id == bot_id
        ]
        for doc_id in doomed:
            del self._documents[doc_id]
        return len(doomed)


class InMemoryInviteStore(InviteStore):
    def __init__(self) -> None:
        self._invites: dict[str, Invite] = {}

    async def add_invite(self, invite: Invite) -> None:
        self._invites[invite.invite_id] = invite.model_copy()

    async def get_invite(self, tenant_id: str, invite_id: str) -> Invite | None:
        invite = self._invites.get(invite_id)
        if invite is None or invite.tenant_id != tenant_id:
            return None
        return invite.model_copy()

    async def get_by_token_hash(self, token_hash: str) -> Invite | None:
        for invite in self._invites.values():
            if invite.token_hash == token_hash:
                return invite.model_copy()
        return None

    async def find_open_invite(self, tenant_id: str, email: str, now: datetime) -> Invite | None:
        for invite in self._invites.values():
            if invite.tenant_id == tenant_id and invite.email == email and invite.is_open(now):
                return invite.model_copy()
        return None

    async def list_open_invites(self, tenant_id: str, now: datetime) -> list[Invite]:
        return [
            invite.model_copy()
            for invite in self._invites.values()
            if invite.tenant_id == tenant_id and invite.is_open(now)
        ]

    async def count_open_invites(self, tenant_id: str, now: datetime) -> int:
        return len(await self.list_open_invites(tenant_id, now))

    async def mark_accepted(self, invite_id: str, now: datetime) -> bool:
        invite = self._invites.get(invite_id)
        if invite is None or not invite.is_open(now):
            return False
        invite.accepted_at = now
        return True

    async def revoke(self, tenant_id: str, invite_id: str, now: datetime) -> bool:
        invite = self._invites.get(invite_id)
        if invite is None or invite.tenant_id != tenant_id or invite.accepted_at is not None:
            return False
        if invite.revoked_at is None:
            invite.revoked_at = now
        return True


class InMemoryConversationStore(ConversationStore):
    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._by_key: dict[tuple[str, str, str], str] = {}
        self._messages: dict[str, list[tuple[int, ConversationMessage]]] = {}
        self._seq = count(1)

    async def get_or_create(self, tenant_id: str, actor_id: str, bot_id: str) -> Conversation:
        key = (tenant_id, actor_id, bot_id)
        conversation_id = self._by_key.get(key)
        if conversation_id is None:
            conversation = Conversation(
                conversation_id=str(uuid4()),
                tenant_id=tenant_id,
                actor_id=actor_id,
                bot_id=bot_id,
            )
            self._conversations[conversation.conversation_id] = conversation
            self._by_key[key] = conversation.conversation_id
            self._messages[conversation.conversation_id] = []
            conversation_id = conversation.conversation_id
        return self._conversations[conversation_id].model_copy()

    async def get(self, conversation_id: str) -> Conversation | None:
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy() if conversation else None

    async def append_message(self, conversation_id: str, role: MessageRole, content: str) -> ConversationMessage:
        conversation = self._require(conversation_id)
        message = ConversationMessage(
            message_id=str(uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
        )
        self._messages[conversation_id].append((next(self._seq), message))
        conversation.updated_at = utc_now()
        return message.model_copy()

    async def bump_message_count(self, conversation_id: str, delta: int) -> int:
        conversation = self._require(conversation_id)
        conversation.message_count += delta
        conversation.updated_at = utc_now()
        return conversation.message_count

    async def load_recent(self, conversation_id: str, limit: int) -> list[ConversationMessage]:
        if limit <= 0:
            return []
        ordered = sorted(self._messages.get(conversation_id, []), key=lambda item: (item[1].created_at, item[0]))
        return [message.model_copy() for _, message in ordered[-limit:]]

    async def apply_summary(self, conversation_id: str, summary: str, through_message_id: str | None) -> None:
        conversation = self._require(conversation_id)
        messages = self._messages[conversation_id]
        if through_message_id is not None:
            cutoff = next((seq for seq, message in messages if message.message_id == through_message_id), None)
            if cutoff is not None:
                self._messages[conversation_id] = [(seq, message) for seq, message in messages if seq > cutoff]
        conversation.summary = summary
        conversation.message_count = 0
        conversation.updated_at = utc_now()

    async def reset(self, conversation_id: str) -> None:
        conversation = self._require(conversation_id)
        conversation.summary = None
        conversation.message_count = 0
        conversation.updated_at = utc_now()
        self._messages[conversation_id] = []

    async def delete_for_bot(self, tenant_id: str, bot_id: str) -> int:
        doomed = [
            key for key in self._by_key if key[0] == tenant_id and key[2] == bot_id
        ]
        for key in doomed:
            conversation_id = self._by_key.pop(key)
            self._conversations.pop(conversation_id, None)
            self._messages.pop(conversation_id, None)
        return len(doomed)

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise KeyError(f"conversation not found: {conversation_id}")
        return conversation


class InMemoryQuotaLedger(QuotaLedger):
    def __init__(self) -> None:
        self._rows: dict[tuple[str, str], DailyUsage] = {}

    async def get_daily_usage(self, tenant_id: str, day: str) -> DailyUsage:
        row = self._rows.get((tenant_id, day))
        return row.model_copy() if row else DailyUsage()

    async def increment_messages(self, tenant_id: str, day: str, by: int = 1) -> DailyUsage:
        row = self._rows.setdefault((tenant_id, day), DailyUsage())
        row.messages_count += max(by, 0)
        return row.model_copy()

    async def increment_uploads(self, tenant_id: str, day: str, by: int = 1) -> DailyUsage:
        row = self._rows.setdefault((tenant_id, day), DailyUsage())
        row.uploads_count += max(by, 0)
        return row.model_copy()
