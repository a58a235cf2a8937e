from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from agency_bots.adapters.postgres import (
    SqlActorDirectory,
    SqlBotCatalog,
    SqlConversationStore,
    SqlDocumentCatalog,
    SqlInviteStore,
    SqlQuotaLedger,
    SqlSessionFactory,
    SqlTenantCatalog,
    related_document_cleanups,
    related_table_cleanups,
)
from agency_bots.domain.models import Bot, Document, Invite, Tenant


@pytest.fixture
async def session_factory(tmp_path):
    sf = SqlSessionFactory(f"sqlite+aiosqlite:///{tmp_path / 'agency.db'}")
    yield sf
    await sf.dispose()


async def test_schema_is_created_once_under_concurrency(session_factory) -> None:
    tenants = SqlTenantCatalog(session_factory)
    await asyncio.gather(*(tenants.get_tenant("t1") for _ in range(5)))
    assert session_factory.schema.done


async def test_tenant_plan_updates(session_factory) -> None:
    tenants = SqlTenantCatalog(session_factory)
    await tenants.upsert_tenant(Tenant(tenant_id="t1", name="Acme", email="boss@acme.test"))

    assert await tenants.set_plan("t1", "pro")
    assert (await tenants.get_tenant("t1")).plan == "pro"
    assert not await tenants.set_plan("ghost", "pro")


async def test_concurrent_quota_increments_are_atomic(session_factory) -> None:
    ledger = SqlQuotaLedger(session_factory)

    await asyncio.gather(*(ledger.increment_messages("t1", "2026-05-01") for _ in range(20)))
    await ledger.increment_uploads("t1", "2026-05-01", 3)

    usage = await ledger.get_daily_usage("t1", "2026-05-01")
    assert usage.messages_count == 20
    assert usage.uploads_count == 3
    assert (await ledger.get_daily_usage("t1", "2026-05-02")).messages_count == 0


async def test_bootstrap_owner_only_for_empty_tenant(session_factory) -> None:
    actors = SqlActorDirectory(session_factory)

    assert await actors.bootstrap_owner("t1", "boss@acme.test")
    assert not await actors.bootstrap_owner("t1", "boss@acme.test")
    assert not await actors.bootstrap_owner("t1", "other@acme.test")

    listed = await actors.list_actors("t1")
    assert [(actor.email, actor.role, actor.status) for actor in listed] == [("boss@acme.test", "owner", "active")]


async def test_pending_actor_creation_is_idempotent(session_factory) -> None:
    actors = SqlActorDirectory(session_factory)

    created = await asyncio.gather(*(actors.create_pending_actor("t1", "new@acme.test") for _ in range(5)))

    assert len({actor.actor_id for actor in created}) == 1
    assert created[0].status == "pending"
    assert (await actors.get_actor_by_email("t1", "NEW@acme.test")).actor_id == created[0].actor_id
    assert await actors.count_billable_seats("t1") == 1


async def test_conversation_get_or_create_is_unique(session_factory) -> None:
    conversations = SqlConversationStore(session_factory)

    results = await asyncio.gather(*(conversations.get_or_create("t1", "a1", "b1") for _ in range(5)))

    assert len({conversation.conversation_id for conversation in results}) == 1


async def test_summary_and_reset_round_trip(session_factory) -> None:
    conversations = SqlConversationStore(session_factory)
    cid = (await conversations.get_or_create("t1", "a1", "b1")).conversation_id
    await conversations.append_message(cid, "user", "q1")
    folded = await conversations.append_message(cid, "assistant", "a1")
    assert await conversations.bump_message_count(cid, 2) == 2
    late = await conversations.append_message(cid, "user", "q2")

    await conversations.apply_summary(cid, "- asked q1", through_message_id=folded.message_id)

    current = await conversations.get(cid)
    assert (current.summary, current.message_count) == ("- asked q1", 0)
    assert [message.message_id for message in await conversations.load_recent(cid, 20)] == [late.message_id]

    await conversations.reset(cid)
    current = await conversations.get(cid)
    assert (current.summary, current.message_count) == (None, 0)
    assert await conversations.load_recent(cid, 20) == []


async def test_bot_delete_is_scoped_and_cascades(session_factory) -> None:
    bots = SqlBotCatalog(session_factory)
    documents = SqlDocumentCatalog(session_factory)
    conversations = SqlConversationStore(session_factory)
    await bots.add_bot(Bot(bot_id="b1", tenant_id="t1", name="Agency Bot"))
    await bots.add_bot(Bot(bot_id="p1", tenant_id="t1", owner_actor_id="a1", name="Private"))
    await documents.add_document(Document(document_id="d1", tenant_id="t1", bot_id="b1", filename="a.pdf", file_ref="f1"))
    cid = (await conversations.get_or_create("t1", "a1", "b1")).conversation_id
    await conversations.append_message(cid, "user", "hello")

    assert [bot.bot_id for bot in await bots.list_visible_bots("t1", "a1")] == ["b1", "p1"]
    assert [bot.bot_id for bot in await bots.list_visible_bots("t1", "a2")] == ["b1"]
    assert await bots.count_agency_bots("t1") == 1

    assert not await bots.delete_bot("t2", "b1", None)
    assert not await bots.delete_bot("t1", "p1", "a2")

    assert await documents.delete_for_bot("t1", "b1") == 1
    assert await conversations.delete_for_bot("t1", "b1") == 1
    assert await bots.delete_bot("t1", "b1", None)
    assert await conversations.get(cid) is None
    assert await conversations.load_recent(cid, 10) == []


async def test_related_table_cleanup_fails_only_its_own_step(session_factory) -> None:
    steps = dict(related_table_cleanups(session_factory))
    assert set(steps) == {"schedule_events", "schedule_tasks", "extractions"}
    with pytest.raises(Exception):
        await steps["schedule_events"]("t1", "b1")


async def test_document_lookup_and_delete_are_tenant_scoped(session_factory) -> None:
    documents = SqlDocumentCatalog(session_factory)
    older = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)
    await documents.add_document(
        Document(document_id="d1", tenant_id="t1", bot_id="b1", filename="a.pdf", file_ref="f1", created_at=older)
    )
    await documents.add_document(
        Document(document_id="d2", tenant_id="t1", bot_id="b1", filename="b.pdf", file_ref="f2", created_at=older + timedelta(hours=1))
    )

    assert [doc.document_id for doc in await documents.list_documents("t1", "b1")] == ["d2", "d1"]
    assert (await documents.get_document("t1", "d1")).file_ref == "f1"
    assert await documents.get_document("t2", "d1") is None
    assert not await documents.delete_document("t2", "d1")
    assert await documents.delete_document("t1", "d1")
    assert [doc.document_id for doc in await documents.list_documents("t1", "b1")] == ["d2"]


async def test_invite_lifecycle(session_factory) -> None:
    invites = SqlInviteStore(session_factory)
    now = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)
    await invites.add_invite(
        Invite(invite_id="i1", tenant_id="t1", email="ana@acme.test", token_hash="h1", expires_at=now + timedelta(days=7))
    )
    await invites.add_invite(
        Invite(invite_id="i2", tenant_id="t1", email="old@acme.test", token_hash="h2", expires_at=now - timedelta(minutes=1))
    )

    assert await invites.count_open_invites("t1", now) == 1
    assert (await invites.find_open_invite("t1", "ana@acme.test", now)).invite_id == "i1"
    assert await invites.find_open_invite("t1", "old@acme.test", now) is None
    assert (await invites.get_by_token_hash("h1")).expires_at == now + timedelta(days=7)

    accepted = await asyncio.gather(*(invites.mark_accepted("i1", now) for _ in range(3)))
    assert sorted(accepted) == [False, False, True]
    assert await invites.count_open_invites("t1", now) == 0
    assert not await invites.revoke("t1", "i1", now)
    assert not await invites.mark_accepted("i2", now)


async def test_revoked_invite_is_closed(session_factory) -> None:
    invites = SqlInviteStore(session_factory)
    now = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)
    await invites.add_invite(
        Invite(invite_id="i1", tenant_id="t1", email="ana@acme.test", token_hash="h1", expires_at=now + timedelta(days=7))
    )

    assert not await invites.revoke("t2", "i1", now)
    assert await invites.revoke("t1", "i1", now)
    assert (await invites.get_invite("t1", "i1")).revoked_at is not None
    assert await invites.list_open_invites("t1", now) == []
    assert not await invites.mark_accepted("i1", now)


async def test_related_document_cleanup_is_keyed_by_document(session_factory) -> None:
    steps = dict(related_document_cleanups(session_factory))
    assert set(steps) == {"schedule_events", "schedule_tasks", "extractions"}
    with pytest.raises(Exception):
        await steps["extractions"]("t1", "d1")
