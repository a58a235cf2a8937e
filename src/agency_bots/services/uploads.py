from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Sequence
from uuid import uuid4

from agency_bots.domain.errors import IndexingFailed, IndexingTimeout, IndexMissing, InvalidRequest
from agency_bots.domain.interfaces import DocumentCatalog, KnowledgeIndex
from agency_bots.domain.models import ActorCredential, Document, UploadPayload
from agency_bots.policies.auth import TenantAuthorizer
from agency_bots.policies.bot_access import BotAccessGuard
from agency_bots.policies.quota import QuotaService

_logger = logging.getLogger(__name__)


class UploadService:
    def __init__(
        self,
        *,
        authorizer: TenantAuthorizer,
        quota: QuotaService,
        guard: BotAccessGuard,
        documents: DocumentCatalog,
        knowledge: KnowledgeIndex,
        poll_interval_seconds: float = 1.5,
        timeout_seconds: float = 120.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.authorizer = authorizer
        self.quota = quota
        self.guard = guard
        self.documents = documents
        self.knowledge = knowledge
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._monotonic = monotonic

    async def upload_documents(
        self,
        credential: ActorCredential | None,
        bot_id: str,
        files: Sequence[UploadPayload],
    ) -> list[Document]:
        if not files:
            raise InvalidRequest("No files uploaded")

        ctx = await self.authorizer.require_active_member(credential)
        await self.quota.enforce_upload_limit(ctx.tenant_id, ctx.plan, incoming=len(files))
        bot = await self.guard.resolve_visible(bot_id, ctx.tenant_id, ctx.actor_id)
        if not bot.index_handle:
            raise IndexMissing(bot_id=bot.bot_id)

        stored: list[Document] = []
        for payload in files:
            file_ref = await self.knowledge.add_file(bot.index_handle, payload.filename, payload.content)
            await self._wait_until_indexed(bot.index_handle, file_ref, payload.filename)

            document = Document(
                document_id=str(uuid4()),
                tenant_id=ctx.tenant_id,
                bot_id=bot.bot_id,
                filename=payload.filename,
                file_ref=file_ref,
            )
            await self.documents.add_document(document)
            # Charged per file, only once that file is indexed and recorded.
            await self.quota.record_uploads(ctx.tenant_id, 1)
            stored.append(document)

        _logger.info("documents_uploaded tenant=%s bot=%s count=%s", ctx.tenant_id, bot.bot_id, len(stored))
        return stored

    async def _wait_until_indexed(self, index_handle: str, file_ref: str, filename: str) -> None:
        deadline = self._monotonic() + self.timeout_seconds
        while True:
            status = await self.knowledge.file_status(index_handle, file_ref)
            if status == "completed":
                return
            if status == "failed":
                raise IndexingFailed(f"Indexing failed for {filename}", filename=filename)
            if self._monotonic() >= deadline:
                raise IndexingTimeout(f"Indexing timed out for {filename}", filename=filename)
            await self._sleep(self.poll_interval_seconds)
