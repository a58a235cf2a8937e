from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from agency_bots.adapters.storage import InMemoryBotCatalog, InMemoryConversationStore, InMemoryDocumentCatalog
from agency_bots.domain.errors import BotForbidden, BotNotFound, ForbiddenNotOwner
from agency_bots.domain.models import AuthedContext, Bot, Document
from agency_bots.policies.bot_access import BotAccessGuard


@dataclass
class _FakeKnowledge:
    deleted: list[str] = field(default_factory=list)
    fail_delete: bool = False

    async def delete_index(self, index_handle: str) -> None:
        if self.fail_delete:
            raise RuntimeError("provider down")
        self.deleted.append(index_handle)


def _ctx(actor_id: str = "a-owner", role: str = "owner", tenant_id: str = "t1") -> AuthedContext:
    return AuthedContext(
        tenant_id=tenant_id,
        tenant_email="boss@acme.test",
        actor_id=actor_id,
        role=role,
        status="active",
        plan="pro",
    )


async def _guard(**kwargs) -> tuple[BotAccessGuard, InMemoryBotCatalog, InMemoryDocumentCatalog, InMemoryConversationStore, _FakeKnowledge]:
    bots = InMemoryBotCatalog()
    documents = InMemoryDocumentCatalog()
    conversations = InMemoryConversationStore()
    knowledge = _FakeKnowledge()
    await bots.add_bot(Bot(bot_id="agency", tenant_id="t1", name="Agency Bot", index_handle="vs_agency"))
    await bots.add_bot(Bot(bot_id="private-sam", tenant_id="t1", owner_actor_id="a-sam", name="Sam's", index_handle="vs_sam"))
    await bots.add_bot(Bot(bot_id="foreign", tenant_id="t2", name="Other Agency Bot"))
    guard = BotAccessGuard(bots, documents, conversations, knowledge, **kwargs)
    return guard, bots, documents, conversations, knowledge


async def test_foreign_bot_is_indistinguishable_from_missing() -> None:
    guard, *_ = await _guard()

    with pytest.raises(BotNotFound) as foreign:
        await guard.resolve("foreign", "t1", "a-owner")
    with pytest.raises(BotNotFound) as missing:
        await guard.resolve("nope", "t1", "a-owner")
    assert foreign.value.detail() == missing.value.detail()


async def test_private_bot_access() -> None:
    guard, *_ = await _guard()

    assert (await guard.resolve("private-sam", "t1", "a-sam")).bot_id == "private-sam"
    with pytest.raises(BotForbidden):
        await guard.resolve("private-sam", "t1", "a-owner")
    with pytest.raises(BotNotFound):
        await guard.resolve_visible("private-sam", "t1", "a-owner")


async def test_agency_bot_visible_to_every_member() -> None:
    guard, *_ = await _guard()
    bot = await guard.resolve_visible("agency", "t1", "a-anyone")
    assert bot.is_agency_bot


async def test_agency_bot_delete_requires_owner() -> None:
    guard, bots, *_ = await _guard()
    with pytest.raises(ForbiddenNotOwner):
        await guard.delete(_ctx(actor_id="a-sam", role="member"), "agency")
    assert await bots.get_bot("agency") is not None


async def test_private_bot_delete_requires_its_owner_even_for_tenant_owner() -> None:
    guard, bots, *_ = await _guard()
    with pytest.raises(BotForbidden):
        await guard.delete(_ctx(), "private-sam")

    await guard.delete(_ctx(actor_id="a-sam", role="member"), "private-sam")
    assert await bots.get_bot("private-sam") is None


async def test_delete_cascades_dependents_and_index() -> None:
    guard, bots, documents, conversations, knowledge = await _guard()
    await documents.add_document(Document(document_id="d1", tenant_id="t1", bot_id="agency", filename="a.pdf", file_ref="f1"))
    conversation = await conversations.get_or_create("t1", "a-owner", "agency")
    await conversations.append_message(conversation.conversation_id, "user", "hello")

    await guard.delete(_ctx(), "agency")

    assert await bots.get_bot("agency") is None
    assert await documents.list_documents("t1", "agency") == []
    assert await conversations.get(conversation.conversation_id) is None
    assert knowledge.deleted == ["vs_agency"]


async def test_cleanup_failures_do_not_block_deletion() -> None:
    ran: list[str] = []

    async def _broken(tenant_id: str, bot_id: str) -> int:
        raise RuntimeError("relation does not exist")

    async def _tasks(tenant_id: str, bot_id: str) -> int:
        ran.append(bot_id)
        return 1

    guard, bots, _, _, knowledge = await _guard(related_cleanups=[("schedule_events", _broken), ("schedule_tasks", _tasks)])
    knowledge.fail_delete = True

    deleted = await guard.delete(_ctx(), "agency")

    assert deleted.bot_id == "agency"
    assert ran == ["agency"]
    assert await bots.get_bot("agency") is None


async def test_cannot_delete_another_tenants_bot() -> None:
    guard, bots, *_ = await _guard()
    with pytest.raises(BotNotFound):
        await guard.delete(_ctx(), "foreign")
    assert await bots.get_bot("foreign") is not None
