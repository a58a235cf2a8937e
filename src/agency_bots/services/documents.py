from __future__ import annotations

import logging
from typing import Sequence

from agency_bots.domain.errors import DocumentNotFound, InvalidRequest
from agency_bots.domain.interfaces import DocumentCatalog, KnowledgeIndex
from agency_bots.domain.models import ActorCredential, Document
from agency_bots.policies.auth import TenantAuthorizer
from agency_bots.policies.bot_access import BotAccessGuard, CleanupStep

_logger = logging.getLogger(__name__)


class DocumentService:
    def __init__(
        self,
        *,
        authorizer: TenantAuthorizer,
        guard: BotAccessGuard,
        documents: DocumentCatalog,
        knowledge: KnowledgeIndex,
        related_cleanups: Sequence[CleanupStep] = (),
    ) -> None:
        self.authorizer = authorizer
        self.guard = guard
        self.documents = documents
        self.knowledge = knowledge
        self.related_cleanups = tuple(related_cleanups)

    async def list_documents(self, credential: ActorCredential | None, bot_id: str) -> list[Document]:
        bot_id = (bot_id or "").strip()
        if not bot_id:
            raise InvalidRequest("Missing bot_id")
        ctx = await self.authorizer.require_active_member(credential)
        bot = await self.guard.resolve_visible(bot_id, ctx.tenant_id, ctx.actor_id)
        return await self.documents.list_documents(ctx.tenant_id, bot.bot_id)

    async def delete_document(self, credential: ActorCredential | None, document_id: str) -> Document:
        document_id = (document_id or "").strip()
        if not document_id:
            raise InvalidRequest("Missing id")
        ctx = await self.authorizer.require_active_member(credential)

        document = await self.documents.get_document(ctx.tenant_id, document_id)
        if document is None:
            raise DocumentNotFound()
        bot = await self.guard.resolve_visible(document.bot_id, ctx.tenant_id, ctx.actor_id)

        # Index removal failures abort the delete; a file already gone from the index does not.
        if bot.index_handle and document.file_ref:
            await self.knowledge.remove_file(bot.index_handle, document.file_ref)

        for name, step in self.related_cleanups:
            try:
                await step(ctx.tenant_id, document.document_id)
            except Exception as err:
                _logger.warning("document_cleanup_step_failed step=%s document=%s err=%s", name, document_id, err)

        if not await self.documents.delete_document(ctx.tenant_id, document.document_id):
            raise DocumentNotFound()
        _logger.info("document_deleted tenant=%s bot=%s document=%s by=%s", ctx.tenant_id, bot.bot_id, document_id, ctx.actor_id)
        return document
