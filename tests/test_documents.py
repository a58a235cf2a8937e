from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest

from agency_bots.adapters.storage import (
    InMemoryActorDirectory,
    InMemoryBotCatalog,
    InMemoryConversationStore,
    InMemoryDocumentCatalog,
    InMemoryTenantCatalog,
)
from agency_bots.domain.errors import BotNotFound, DocumentNotFound, ExternalCapabilityFailure, ForbiddenNotActive
from agency_bots.domain.models import Actor, ActorCredential, Bot, Document, Tenant
from agency_bots.policies.auth import TenantAuthorizer
from agency_bots.policies.bot_access import BotAccessGuard
from agency_bots.services.documents import DocumentService

OWNER = ActorCredential(tenant_id="t1", tenant_email="boss@acme.test", actor_id="a-owner")
SAM = ActorCredential(tenant_id="t1", tenant_email="sam@acme.test", actor_id="a-sam")
PENDING = ActorCredential(tenant_id="t1", tenant_email="new@acme.test", actor_id="a-pending")
UPLOADED = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@dataclass
class _FakeKnowledge:
    removed: list[tuple[str, str]] = field(default_factory=list)
    fail_remove: bool = False

    async def remove_file(self, index_handle: str, file_ref: str) -> None:
        if self.fail_remove:
            raise ExternalCapabilityFailure("Failed to delete file from knowledge index")
        self.removed.append((index_handle, file_ref))


@dataclass
class _Harness:
    service: DocumentService
    documents: InMemoryDocumentCatalog
    knowledge: _FakeKnowledge
    cleaned: list[tuple[str, str, str]]


async def _harness(cleanup_fails: bool = False) -> _Harness:
    tenants = InMemoryTenantCatalog()
    actors = InMemoryActorDirectory()
    bots = InMemoryBotCatalog()
    documents = InMemoryDocumentCatalog()
    knowledge = _FakeKnowledge()
    cleaned: list[tuple[str, str, str]] = []

    await tenants.upsert_tenant(Tenant(tenant_id="t1", name="Acme", email="boss@acme.test", plan="starter"))
    actors.put(Actor(actor_id="a-owner", tenant_id="t1", email="boss@acme.test", role="owner", status="active"))
    actors.put(Actor(actor_id="a-sam", tenant_id="t1", email="sam@acme.test", role="member", status="active"))
    actors.put(Actor(actor_id="a-pending", tenant_id="t1", email="new@acme.test", role="member", status="pending"))
    await bots.add_bot(Bot(bot_id="agency", tenant_id="t1", name="Agency Bot", index_handle="vs_agency"))
    await bots.add_bot(Bot(bot_id="private-sam", tenant_id="t1", owner_actor_id="a-sam", name="Sam's", index_handle="vs_sam"))
    for offset, (doc_id, bot_id) in enumerate((("d1", "agency"), ("d2", "agency"), ("d3", "private-sam"))):
        await documents.add_document(
            Document(
                document_id=doc_id,
                tenant_id="t1",
                bot_id=bot_id,
                filename=f"{doc_id}.pdf",
                file_ref=f"file-{doc_id}",
                created_at=UPLOADED + timedelta(minutes=offset),
            )
        )
    await documents.add_document(
        Document(document_id="d9", tenant_id="t2", bot_id="agency", filename="x.pdf", file_ref="file-x")
    )

    async def _cleanup(tenant_id: str, document_id: str) -> int:
        if cleanup_fails:
            raise RuntimeError("no such table: extractions")
        cleaned.append(("extractions", tenant_id, document_id))
        return 1

    guard = BotAccessGuard(bots, documents, InMemoryConversationStore(), knowledge)
    service = DocumentService(
        authorizer=TenantAuthorizer(tenants, actors),
        guard=guard,
        documents=documents,
        knowledge=knowledge,
        related_cleanups=[("extractions", _cleanup)],
    )
    return _Harness(service, documents, knowledge, cleaned)


async def test_listing_is_newest_first_and_bot_scoped() -> None:
    h = await _harness()

    listed = await h.service.list_documents(OWNER, "agency")

    assert [doc.document_id for doc in listed] == ["d2", "d1"]
    assert [doc.document_id for doc in await h.service.list_documents(SAM, "private-sam")] == ["d3"]


async def test_listing_hides_other_actors_private_bots() -> None:
    h = await _harness()
    with pytest.raises(BotNotFound):
        await h.service.list_documents(OWNER, "private-sam")
    with pytest.raises(ForbiddenNotActive):
        await h.service.list_documents(PENDING, "agency")


async def test_delete_removes_index_file_related_rows_and_record() -> None:
    h = await _harness()

    deleted = await h.service.delete_document(OWNER, "d1")

    assert deleted.document_id == "d1"
    assert h.knowledge.removed == [("vs_agency", "file-d1")]
    assert h.cleaned == [("extractions", "t1", "d1")]
    assert await h.documents.get_document("t1", "d1") is None


async def test_delete_of_foreign_or_hidden_documents_is_not_found() -> None:
    h = await _harness()

    with pytest.raises(DocumentNotFound):
        await h.service.delete_document(OWNER, "d9")
    with pytest.raises(DocumentNotFound):
        await h.service.delete_document(OWNER, "missing")
    with pytest.raises(BotNotFound):
        await h.service.delete_document(OWNER, "d3")
    assert h.knowledge.removed == []
    assert await h.documents.get_document("t1", "d3") is not None


async def test_index_failure_keeps_the_record() -> None:
    h = await _harness()
    h.knowledge.fail_remove = True

    with pytest.raises(ExternalCapabilityFailure):
        await h.service.delete_document(OWNER, "d1")
    assert await h.documents.get_document("t1", "d1") is not None


async def test_related_cleanup_failure_does_not_block_delete() -> None:
    h = await _harness(cleanup_fails=True)

    await h.service.delete_document(SAM, "d3")

    assert h.knowledge.removed == [("vs_sam", "file-d3")]
    assert await h.documents.get_document("t1", "d3") is None
