from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from typing import Any, AsyncIterator
from uuid import uuid4

from sqlalchemy import (
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    delete,
    exists,
    func,
    literal,
    select,
    text,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

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
from agency_bots.policies.bot_access import CleanupStep

_logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class AgencyRow(Base):
    __tablename__ = "agencies"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    plan: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class UserRow(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),)

    actor_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class BotRow(Base):
    __tablename__ = "bots"

    bot_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    owner_actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    index_handle: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class DocumentRow(Base):
    __tablename__ = "documents"

    document_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    bot_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    filename: Mapped[str] = mapped_column(String(500), nullable=False)
    file_ref: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class InviteRow(Base):
    __tablename__ = "agency_invites"

    invite_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ConversationRow(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "actor_id", "bot_id", name="uq_conversations_tenant_actor_bot"),
    )

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    bot_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ConversationMessageRow(Base):
    __tablename__ = "conversation_messages"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class UsageDailyRow(Base):
    __tablename__ = "usage_daily"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    day: Mapped[str] = mapped_column(String(10), primary_key=True)
    messages_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    uploads_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class SchemaInitializer:
    """Process-wide, idempotent `create_all` latch."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._lock = asyncio.Lock()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    async def ensure(self) -> None:
        if self._done:
            return
        async with self._lock:
            if self._done:
                return
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self._done = True
            _logger.info("schema_ensured dialect=%s", self._engine.dialect.name)


class SqlSessionFactory:
    def __init__(self, dsn: str, engine: AsyncEngine | None = None) -> None:
        self.engine = engine or create_async_engine(dsn, pool_pre_ping=True)
        self.dialect_name = self.engine.dialect.name
        self.schema = SchemaInitializer(self.engine)
        self._sessionmaker = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        await self.schema.ensure()
        async with self._sessionmaker() as session:
            yield session

    def insert(self, table: Any) -> Any:
        # Both dialects expose on_conflict_do_update / on_conflict_do_nothing.
        if self.dialect_name == "postgresql":
            return postgresql.insert(table)
        if self.dialect_name == "sqlite":
            return sqlite.insert(table)
        raise RuntimeError(f"Unsupported database dialect for upserts: {self.dialect_name}")

    async def dispose(self) -> None:
        await self.engine.dispose()


def _tenant(row: AgencyRow) -> Tenant:
    return Tenant(tenant_id=row.tenant_id, name=row.name, email=row.email, plan=row.plan or "free", created_at=row.created_at)


def _actor(row: UserRow) -> Actor:
    return Actor(
        actor_id=row.actor_id,
        tenant_id=row.tenant_id,
        email=row.email,
        role=row.role,
        status=row.status,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _bot(row: BotRow) -> Bot:
    return Bot(
        bot_id=row.bot_id,
        tenant_id=row.tenant_id,
        owner_actor_id=row.owner_actor_id,
        name=row.name,
        description=row.description,
        index_handle=row.index_handle,
        created_at=row.created_at,
    )


def _document(row: DocumentRow) -> Document:
    return Document(
        document_id=row.document_id,
        tenant_id=row.tenant_id,
        bot_id=row.bot_id,
        filename=row.filename,
        file_ref=row.file_ref,
        created_at=row.created_at,
    )


def _invite(row: InviteRow) -> Invite:
    return Invite(
        invite_id=row.invite_id,
        tenant_id=row.tenant_id,
        email=row.email,
        token_hash=row.token_hash,
        expires_at=_aware(row.expires_at),
        accepted_at=_aware(row.accepted_at) if row.accepted_at else None,
        revoked_at=_aware(row.revoked_at) if row.revoked_at else None,
        created_by=row.created_by,
        created_at=row.created_at,
    )


def _aware(value: datetime) -> datetime:
    # sqlite hands back naive datetimes even for timezone-aware columns.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _conversation(row: ConversationRow) -> Conversation:
    return Conversation(
        conversation_id=row.conversation_id,
        tenant_id=row.tenant_id,
        actor_id=row.actor_id,
        bot_id=row.bot_id,
        summary=row.summary,
        message_count=row.message_count,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _message(row: ConversationMessageRow) -> ConversationMessage:
    role: MessageRole = "assistant" if row.role == "assistant" else "user"
    return ConversationMessage(
        message_id=row.message_id,
        conversation_id=row.conversation_id,
        role=role,
        content=row.content,
        created_at=row.created_at,
    )


class SqlTenantCatalog(TenantCatalog):
    def __init__(self, session_factory: SqlSessionFactory) -> None:
        self._sf = session_factory

    async def upsert_tenant(self, tenant: Tenant) -> None:
        async with self._sf.session() as session:
            row = await session.get(AgencyRow, tenant.tenant_id)
            if row is None:
                session.add(
                    AgencyRow(
                        tenant_id=tenant.tenant_id,
                        name=tenant.name,
                        email=tenant.email,
                        plan=tenant.plan,
                        created_at=tenant.created_at,
                    )
                )
            else:
                row.name = tenant.name
                row.email = tenant.email
                row.plan = tenant.plan
            await session.commit()

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        async with self._sf.session() as session:
            row = await session.get(AgencyRow, tenant_id)
            return _tenant(row) if row else None

    async def set_plan(self, tenant_id: str, plan: str) -> bool:
        async with self._sf.session() as session:
            result = await session.execute(update(AgencyRow).where(AgencyRow.tenant_id == tenant_id).values(plan=plan))
            await session.commit()
            return bool(result.rowcount)


class SqlActorDirectory(ActorDirectory):
    def __init__(self, session_factory: SqlSessionFactory) -> None:
        self._sf = session_factory

    async def get_actor(self, tenant_id: str, actor_id: str) -> Actor | None:
        async with self._sf.session() as session:
            stmt = select(UserRow).where(UserRow.tenant_id == tenant_id, UserRow.actor_id == actor_id)
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _actor(row) if row else None

    async def get_actor_by_email(self, tenant_id: str, email: str) -> Actor | None:
        async with self._sf.session() as session:
            return await self._by_email(session, tenant_id, email)

    async def create_pending_actor(self, tenant_id: str, email: str) -> Actor:
        now = utc_now()
        async with self._sf.session() as session:
            stmt = self._sf.insert(UserRow).values(
                actor_id=str(uuid4()),
                tenant_id=tenant_id,
                email=email,
                role="member",
                status="pending",
                created_at=now,
                updated_at=now,
            )
            # A concurrent insert for the same email wins; reload whichever row exists.
            await session.execute(stmt.on_conflict_do_nothing(index_elements=[UserRow.tenant_id, UserRow.email]))
            await session.commit()
            actor = await self._by_email(session, tenant_id, email)
            if actor is None:
                raise RuntimeError("actor insert failed unexpectedly")
            return actor

    async def bootstrap_owner(self, tenant_id: str, email: str) -> bool:
        now = utc_now()
        source = select(
            literal(str(uuid4()), String(64)),
            literal(tenant_id, String(64)),
            literal(email, String(320)),
            literal("owner", String(32)),
            literal("active", String(32)),
            literal(now, DateTime(timezone=True)),
            literal(now, DateTime(timezone=True)),
        ).where(~exists().where(UserRow.tenant_id == tenant_id))
        stmt = self._sf.insert(UserRow).from_select(
            ["actor_id", "tenant_id", "email", "role", "status", "created_at", "updated_at"],
            source,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=[UserRow.tenant_id, UserRow.email])
        async with self._sf.session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return bool(result.rowcount and result.rowcount > 0)

    async def list_actors(self, tenant_id: str) -> list[Actor]:
        async with self._sf.session() as session:
            stmt = select(UserRow).where(UserRow.tenant_id == tenant_id).order_by(UserRow.created_at)
            return [_actor(row) for row in (await session.execute(stmt)).scalars()]

    async def update_actor(self, tenant_id: str, actor_id: str, role: str, status: str) -> Actor | None:
        async with self._sf.session() as session:
            stmt = select(UserRow).where(UserRow.tenant_id == tenant_id, UserRow.actor_id == actor_id)
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            row.role = role
            row.status = status
            row.updated_at = utc_now()
            await session.commit()
            return _actor(row)

    async def count_billable_seats(self, tenant_id: str) -> int:
        async with self._sf.session() as session:
            stmt = select(func.count()).select_from(UserRow).where(
                UserRow.tenant_id == tenant_id,
                func.coalesce(UserRow.status, "pending") != "blocked",
                func.coalesce(UserRow.role, "member").not_in(["owner", "admin"]),
            )
            return int((await session.execute(stmt)).scalar_one())

    async def _by_email(self, session: AsyncSession, tenant_id: str, email: str) -> Actor | None:
        stmt = select(UserRow).where(UserRow.tenant_id == tenant_id, func.lower(UserRow.email) == email.strip().lower())
        row = (await session.execute(stmt.limit(1))).scalar_one_or_none()
        return _actor(row) if row else None


class SqlBotCatalog(BotCatalog):
    def __init__(self, session_factory: SqlSessionFactory) -> None:
        self._sf = session_factory

    async def add_bot(self, bot: Bot) -> None:
        async with self._sf.session() as session:
            session.add(
                BotRow(
                    bot_id=bot.bot_id,
                    tenant_id=bot.tenant_id,
                    owner_actor_id=bot.owner_actor_id,
                    name=bot.name,
                    description=bot.description,
                    index_handle=bot.index_handle,
                    created_at=bot.created_at,
                )
            )
            await session.commit()

    async def get_bot(self, bot_id: str) -> Bot | None:
        async with self._sf.session() as session:
            row = await session.get(BotRow, bot_id)
            return _bot(row) if row else None

    async def list_visible_bots(self, tenant_id: str, actor_id: str) -> list[Bot]:
        async with self._sf.session() as session:
            stmt = (
                select(BotRow)
                .where(
                    BotRow.tenant_id == tenant_id,
                    (BotRow.owner_actor_id.is_(None)) | (BotRow.owner_actor_id == actor_id),
                )
                .order_by(BotRow.owner_actor_id.is_not(None), BotRow.created_at.desc())
            )
            return [_bot(row) for row in (await session.execute(stmt)).scalars()]

    async def get_private_bot(self, tenant_id: str, actor_id: str) -> Bot | None:
        async with self._sf.session() as session:
            stmt = (
                select(BotRow)
                .where(BotRow.tenant_id == tenant_id, BotRow.owner_actor_id == actor_id)
                .order_by(BotRow.created_at.desc())
                .limit(1)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _bot(row) if row else None

    async def count_agency_bots(self, tenant_id: str) -> int:
        async with self._sf.session() as session:
            stmt = select(func.count()).select_from(BotRow).where(
                BotRow.tenant_id == tenant_id, BotRow.owner_actor_id.is_(None)
            )
            return int((await session.execute(stmt)).scalar_one())

    async def delete_bot(self, tenant_id: str, bot_id: str, owner_actor_id: str | None) -> bool:
        ownership = BotRow.owner_actor_id.is_(None) if owner_actor_id is None else BotRow.owner_actor_id == owner_actor_id
        async with self._sf.session() as session:
            result = await session.execute(
                delete(BotRow).where(BotRow.bot_id == bot_id, BotRow.tenant_id == tenant_id, ownership)
            )
            await session.commit()
            return bool(result.rowcount)


class SqlDocumentCatalog(DocumentCatalog):
    def __init__(self, session_factory: SqlSessionFactory) -> None:
        self._sf = session_factory

    async def add_document(self, document: Document) -> None:
        async with self._sf.session() as session:
            session.add(
                DocumentRow(
                    document_id=document.document_id,
                    tenant_id=document.tenant_id,
                    bot_id=document.bot_id,
                    filename=document.filename,
                    file_ref=document.file_ref,
                    created_at=document.created_at,
                )
            )
            await session.commit()

    async def list_documents(self, tenant_id: str, bot_id: str) -> list[Document]:
        async with self._sf.session() as session:
            stmt = (
                select(DocumentRow)
                .where(DocumentRow.tenant_id == tenant_id, DocumentRow.bot_id == bot_id)
                .order_by(DocumentRow.created_at.desc())
            )
            return [_document(row) for row in (await session.execute(stmt)).scalars()]

    async def get_document(self, tenant_id: str, document_id: str) -> Document | None:
        async with self._sf.session() as session:
            stmt = select(DocumentRow).where(
                DocumentRow.tenant_id == tenant_id, DocumentRow.document_id == document_id
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _document(row) if row else None

    async def delete_document(self, tenant_id: str, document_id: str) -> bool:
        async with self._sf.session() as session:
            result = await session.execute(
                delete(DocumentRow).where(DocumentRow.tenant_id == tenant_id, DocumentRow.document_id == document_id)
            )
            await session.commit()
            return bool(result.rowcount)

    async def delete_for_bot(self, tenant_id: str, bot_id: str) -> int:
        async with self._sf.session() as session:
            result = await session.execute(
                delete(DocumentRow).where(DocumentRow.tenant_id == tenant_id, DocumentRow.bot_id == bot_id)
            )
            await session.commit()
            return int(result.rowcount or 0)


class SqlInviteStore(InviteStore):
    def __init__(self, session_factory: SqlSessionFactory) -> None:
        self._sf = session_factory

    async def add_invite(self, invite: Invite) -> None:
        async with self._sf.session() as session:
            session.add(
                InviteRow(
                    invite_id=invite.invite_id,
                    tenant_id=invite.tenant_id,
                    email=invite.email,
                    token_hash=invite.token_hash,
                    expires_at=invite.expires_at,
                    accepted_at=invite.accepted_at,
                    revoked_at=invite.revoked_at,
                    created_by=invite.created_by,
                    created_at=invite.created_at,
                )
            )
            await session.commit()

    async def get_invite(self, tenant_id: str, invite_id: str) -> Invite | None:
        async with self._sf.session() as session:
            stmt = select(InviteRow).where(InviteRow.tenant_id == tenant_id, InviteRow.invite_id == invite_id)
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _invite(row) if row else None

    async def get_by_token_hash(self, token_hash: str) -> Invite | None:
        async with self._sf.session() as session:
            row = (await session.execute(select(InviteRow).where(InviteRow.token_hash == token_hash))).scalar_one_or_none()
            return _invite(row) if row else None

    async def find_open_invite(self, tenant_id: str, email: str, now: datetime) -> Invite | None:
        async with self._sf.session() as session:
            stmt = self._open(tenant_id, now).where(InviteRow.email == email).limit(1)
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _invite(row) if row else None

    async def list_open_invites(self, tenant_id: str, now: datetime) -> list[Invite]:
        async with self._sf.session() as session:
            stmt = self._open(tenant_id, now).order_by(InviteRow.created_at.desc())
            return [_invite(row) for row in (await session.execute(stmt)).scalars()]

    async def count_open_invites(self, tenant_id: str, now: datetime) -> int:
        async with self._sf.session() as session:
            stmt = select(func.count()).select_from(self._open(tenant_id, now).subquery())
            return int((await session.execute(stmt)).scalar_one())

    async def mark_accepted(self, invite_id: str, now: datetime) -> bool:
        async with self._sf.session() as session:
            result = await session.execute(
                update(InviteRow)
                .where(
                    InviteRow.invite_id == invite_id,
                    InviteRow.accepted_at.is_(None),
                    InviteRow.revoked_at.is_(None),
                    InviteRow.expires_at > now,
                )
                .values(accepted_at=now)
            )
            await session.commit()
            return bool(result.rowcount)

    async def revoke(self, tenant_id: str, invite_id: str, now: datetime) -> bool:
        async with self._sf.session() as session:
            result = await session.execute(
                update(InviteRow)
                .where(
                    InviteRow.tenant_id == tenant_id,
                    InviteRow.invite_id == invite_id,
                    InviteRow.accepted_at.is_(None),
                )
                .values(revoked_at=func.coalesce(InviteRow.revoked_at, now))
            )
            await session.commit()
            return bool(result.rowcount)

    @staticmethod
    def _open(tenant_id: str, now: datetime) -> Any:
        return select(InviteRow).where(
            InviteRow.tenant_id == tenant_id,
            InviteRow.accepted_at.is_(None),
            InviteRow.revoked_at.is_(None),
            InviteRow.expires_at > now,
        )


class SqlConversationStore(ConversationStore):
    def __init__(self, session_factory: SqlSessionFactory) -> None:
        self._sf = session_factory

    async def get_or_create(self, tenant_id: str, actor_id: str, bot_id: str) -> Conversation:
        now = utc_now()
        stmt = self._sf.insert(ConversationRow).values(
            conversation_id=str(uuid4()),
            tenant_id=tenant_id,
            actor_id=actor_id,
            bot_id=bot_id,
            summary=None,
            message_count=0,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(
            index_elements=[ConversationRow.tenant_id, ConversationRow.actor_id, ConversationRow.bot_id]
        )
        async with self._sf.session() as session:
            await session.execute(stmt)
            await session.commit()
            row = (
                await session.execute(
                    select(ConversationRow).where(
                        ConversationRow.tenant_id == tenant_id,
                        ConversationRow.actor_id == actor_id,
                        ConversationRow.bot_id == bot_id,
                    )
                )
            ).scalar_one()
            return _conversation(row)

    async def get(self, conversation_id: str) -> Conversation | None:
        async with self._sf.session() as session:
            row = await session.get(ConversationRow, conversation_id)
            return _conversation(row) if row else None

    async def append_message(self, conversation_id: str, role: MessageRole, content: str) -> ConversationMessage:
        now = utc_now()
        row = ConversationMessageRow(
            message_id=str(uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=now,
        )
        async with self._sf.session() as session:
            session.add(row)
            await session.execute(
                update(ConversationRow)
                .where(ConversationRow.conversation_id == conversation_id)
                .values(updated_at=now)
            )
            await session.commit()
            return _message(row)

    async def bump_message_count(self, conversation_id: str, delta: int) -> int:
        async with self._sf.session() as session:
            result = await session.execute(
                update(ConversationRow)
                .where(ConversationRow.conversation_id == conversation_id)
                .values(message_count=ConversationRow.message_count + delta, updated_at=utc_now())
                .returning(ConversationRow.message_count)
            )
            value = result.scalar_one()
            await session.commit()
            return int(value)

    async def load_recent(self, conversation_id: str, limit: int) -> list[ConversationMessage]:
        if limit <= 0:
            return []
        async with self._sf.session() as session:
            stmt = (
                select(ConversationMessageRow)
                .where(ConversationMessageRow.conversation_id == conversation_id)
                .order_by(ConversationMessageRow.created_at.desc(), ConversationMessageRow.seq.desc())
                .limit(limit)
            )
            rows = list((await session.execute(stmt)).scalars())
        rows.reverse()
        return [_message(row) for row in rows]

    async def apply_summary(self, conversation_id: str, summary: str, through_message_id: str | None) -> None:
        async with self._sf.session() as session:
            async with session.begin():
                if through_message_id is not None:
                    cutoff = (
                        await session.execute(
                            select(ConversationMessageRow.seq).where(
                                ConversationMessageRow.message_id == through_message_id
                            )
                        )
                    ).scalar_one_or_none()
                    if cutoff is not None:
                        await session.execute(
                            delete(ConversationMessageRow).where(
                                ConversationMessageRow.conversation_id == conversation_id,
                                ConversationMessageRow.seq <= cutoff,
                            )
                        )
                await session.execute(
                    update(ConversationRow)
                    .where(ConversationRow.conversation_id == conversation_id)
                    .values(summary=summary, message_count=0, updated_at=utc_now())
                )

    async def reset(self, conversation_id: str) -> None:
        async with self._sf.session() as session:
            async with session.begin():
                await session.execute(
                    update(ConversationRow)
                    .where(ConversationRow.conversation_id == conversation_id)
                    .values(summary=None, message_count=0, updated_at=utc_now())
                )
                await session.execute(
                    delete(ConversationMessageRow).where(ConversationMessageRow.conversation_id == conversation_id)
                )

    async def delete_for_bot(self, tenant_id: str, bot_id: str) -> int:
        owned = select(ConversationRow.conversation_id).where(
            ConversationRow.tenant_id == tenant_id, ConversationRow.bot_id == bot_id
        )
        async with self._sf.session() as session:
            async with session.begin():
                await session.execute(
                    delete(ConversationMessageRow).where(ConversationMessageRow.conversation_id.in_(owned))
                )
                result = await session.execute(
                    delete(ConversationRow).where(
                        ConversationRow.tenant_id == tenant_id, ConversationRow.bot_id == bot_id
                    )
                )
            return int(result.rowcount or 0)


class SqlQuotaLedger(QuotaLedger):
    def __init__(self, session_factory: SqlSessionFactory) -> None:
        self._sf = session_factory

    async def get_daily_usage(self, tenant_id: str, day: str) -> DailyUsage:
        async with self._sf.session() as session:
            row = await session.get(UsageDailyRow, (tenant_id, day))
            if row is None:
                return DailyUsage()
            return DailyUsage(messages_count=row.messages_count, uploads_count=row.uploads_count)

    async def increment_messages(self, tenant_id: str, day: str, by: int = 1) -> DailyUsage:
        return await self._upsert_add(tenant_id, day, messages=max(by, 0), uploads=0)

    async def increment_uploads(self, tenant_id: str, day: str, by: int = 1) -> DailyUsage:
        return await self._upsert_add(tenant_id, day, messages=0, uploads=max(by, 0))

    async def _upsert_add(self, tenant_id: str, day: str, *, messages: int, uploads: int) -> DailyUsage:
        stmt = self._sf.insert(UsageDailyRow).values(
            tenant_id=tenant_id,
            day=day,
            messages_count=messages,
            uploads_count=uploads,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UsageDailyRow.tenant_id, UsageDailyRow.day],
            set_={
                "messages_count": UsageDailyRow.messages_count + messages,
                "uploads_count": UsageDailyRow.uploads_count + uploads,
            },
        ).returning(UsageDailyRow.messages_count, UsageDailyRow.uploads_count)
        async with self._sf.session() as session:
            row = (await session.execute(stmt)).one()
            await session.commit()
            return DailyUsage(messages_count=int(row[0]), uploads_count=int(row[1]))


RELATED_BOT_TABLES = ("schedule_events", "schedule_tasks", "extractions")
RELATED_DOCUMENT_TABLES = (
    ("schedule_events", "source_document_id"),
    ("schedule_tasks", "source_document_id"),
    ("extractions", "document_id"),
)


def _delete_step(session_factory: SqlSessionFactory, table: str, key_column: str) -> CleanupStep:
    async def _run(tenant_id: str, key: str) -> int:
        async with session_factory.session() as session:
            result = await session.execute(
                text(f"DELETE FROM {table} WHERE tenant_id = :tenant_id AND {key_column} = :key"),
                {"tenant_id": tenant_id, "key": key},
            )
            await session.commit()
            return int(result.rowcount or 0)

    return table, _run


def related_table_cleanups(session_factory: SqlSessionFactory, tables: tuple[str, ...] = RELATED_BOT_TABLES) -> list[CleanupStep]:
    """Deletes for tables owned by neighbouring features; a missing table just fails its own step."""
    return [_delete_step(session_factory, table, "bot_id") for table in tables]


def related_document_cleanups(
    session_factory: SqlSessionFactory,
    tables: tuple[tuple[str, str], ...] = RELATED_DOCUMENT_TABLES,
) -> list[CleanupStep]:
    """Same as related_table_cleanups, keyed by a document id instead of a bot id."""
    return [_delete_step(session_factory, table, key_column) for table, key_column in tables]
