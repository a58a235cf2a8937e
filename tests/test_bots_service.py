from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from agency_bots.adapters.storage import (
    InMemoryActorDirectory,
    InMemoryBotCatalog,
    InMemoryConversationStore,
    InMemoryDocumentCatalog,
    InMemoryTenantCatalog,
)
from agency_bots.domain.errors import BotLimitExceeded, ForbiddenNotOwner, InvalidRequest
from agency_bots.domain.models import Actor, ActorCredential, Tenant
from agency_bots.policies.auth import TenantAuthorizer
from agency_bots.policies.bot_access import BotAccessGuard
from agency_bots.services.bots import BotService

OWNER = ActorCredential(tenant_id="t1", tenant_email="boss@acme.test", actor_id="a-owner")
SAM = ActorCredential(tenant_id="t1", tenant_email="sam@acme.test", actor_id="a-sam")


@dataclass
class _FakeKnowledge:
    fail_create: bool = False
    created: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    async def create_index(self, name: str) -> str:
        if self.fail_create:
            raise RuntimeError("quota exceeded at provider")
        self.created.append(name)
        return f"vs_{len(self.created)}"

    async def delete_index(self, index_handle: str) -> None:
        self.deleted.append(index_handle)


async def _service(plan: str = "free") -> tuple[BotService, InMemoryBotCatalog, _FakeKnowledge, InMemoryTenantCatalog]:
    tenants = InMemoryTenantCatalog()
    actors = InMemoryActorDirectory()
    bots = InMemoryBotCatalog()
    knowledge = _FakeKnowledge()
    await tenants.upsert_tenant(Tenant(tenant_id="t1", name="Acme", email="boss@acme.test", plan=plan))
    actors.put(Actor(actor_id="a-owner", tenant_id="t1", email="boss@acme.test", role="owner", status="active"))
    actors.put(Actor(actor_id="a-sam", tenant_id="t1", email="sam@acme.test", role="member", status="active"))
    guard = BotAccessGuard(bots, InMemoryDocumentCatalog(), InMemoryConversationStore(), knowledge)
    return BotService(TenantAuthorizer(tenants, actors), bots, guard, knowledge), bots, knowledge, tenants


async def test_listing_creates_the_default_agency_bot_once() -> None:
    service, bots, knowledge, _ = await _service()

    first = await service.list_bots(SAM)
    second = await service.list_bots(OWNER)

    assert [bot.name for bot in first] == ["Agency Bot"]
    assert [bot.bot_id for bot in second] == [bot.bot_id for bot in first]
    assert first[0].index_handle == "vs_1"
    assert await bots.count_agency_bots("t1") == 1


async def test_private_bot_is_created_once_and_only_visible_to_its_owner() -> None:
    service, _, _, _ = await _service()

    mine = await service.get_or_create_private_bot(SAM)
    again = await service.get_or_create_private_bot(SAM)

    assert mine.bot_id == again.bot_id
    assert mine.owner_actor_id == "a-sam"
    assert mine.bot_id in {bot.bot_id for bot in await service.list_bots(SAM)}
    assert mine.bot_id not in {bot.bot_id for bot in await service.list_bots(OWNER)}


async def test_agency_bot_creation_is_owner_only_and_capped() -> None:
    service, _, _, tenants = await _service(plan="free")
    await service.list_bots(OWNER)

    with pytest.raises(ForbiddenNotOwner):
        await service.create_agency_bot(SAM, "Sales", None)
    with pytest.raises(BotLimitExceeded) as exc:
        await service.create_agency_bot(OWNER, "Sales", None)
    assert exc.value.detail()["limit"] == 1

    await tenants.set_plan("t1", "pro")
    created = await service.create_agency_bot(OWNER, "  Sales ", " Sales playbooks ")
    assert created.name == "Sales"
    assert created.description == "Sales playbooks"


async def test_agency_bot_needs_a_name() -> None:
    service, _, _, _ = await _service(plan="pro")
    with pytest.raises(InvalidRequest):
        await service.create_agency_bot(OWNER, "  ", None)


async def test_index_creation_failure_still_creates_the_bot() -> None:
    service, _, knowledge, _ = await _service()
    knowledge.fail_create = True

    bot = await service.get_or_create_private_bot(SAM)
    assert bot.index_handle is None


async def test_delete_removes_bot_and_index() -> None:
    service, bots, knowledge, _ = await _service()
    bot = await service.get_or_create_private_bot(SAM)

    await service.delete_bot(SAM, bot.bot_id)

    assert await bots.get_bot(bot.bot_id) is None
    assert knowledge.deleted == [bot.index_handle]
