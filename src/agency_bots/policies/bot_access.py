from __future__ import annotations

import logging
from typing import Awaitable, Callable, Sequence

from agency_bots.domain.errors import BotForbidden, BotNotFound, ForbiddenNotOwner
from agency_bots.domain.interfaces import BotCatalog, ConversationStore, DocumentCatalog, KnowledgeIndex
from agency_bots.domain.models import AuthedContext, Bot

_logger = logging.getLogger(__name__)

CleanupStep = tuple[str, Callable[[str, str], Awaitable[object]]]


class BotAccessGuard:
    def __init__(
        self,
        bots: BotCatalog,
        documents: DocumentCatalog,
        conversations: ConversationStore,
        knowledge: KnowledgeIndex,
        related_cleanups: Sequence[CleanupStep] = (),
    ) -> None:
        self.bots = bots
        self.documents = documents
        self.conversations = conversations
        self.knowledge = knowledge
        self.related_cleanups = tuple(related_cleanups)

    async def resolve(self, bot_id: str, tenant_id: str, actor_id: str) -> Bot:
        bot = await self._tenant_bot(bot_id, tenant_id)
        if bot.owner_actor_id is not None and bot.owner_actor_id != actor_id:
            raise BotForbidden()
        return bot

    async def resolve_visible(self, bot_id: str, tenant_id: str, actor_id: str) -> Bot:
        """Like resolve, but another actor's private bot is also reported as BotNotFound."""
        try:
            return await self.resolve(bot_id, tenant_id, actor_id)
        except BotForbidden as err:
            raise BotNotFound() from err

    async def delete(self, ctx: AuthedContext, bot_id: str) -> Bot:
        bot = await self._tenant_bot(bot_id, ctx.tenant_id)
        if bot.is_agency_bot:
            if ctx.role != "owner":
                raise ForbiddenNotOwner()
        elif bot.owner_actor_id != ctx.actor_id:
            raise BotForbidden()

        steps: list[CleanupStep] = [("documents", self.documents.delete_for_bot)]
        steps.extend(self.related_cleanups)
        steps.append(("conversations", self.conversations.delete_for_bot))
        for name, step in steps:
            try:
                await step(ctx.tenant_id, bot.bot_id)
            except Exception as err:
                _logger.warning("bot_cleanup_step_failed step=%s bot=%s err=%s", name, bot.bot_id, err)

        deleted = await self.bots.delete_bot(ctx.tenant_id, bot.bot_id, bot.owner_actor_id)
        if not deleted:
            raise BotNotFound()

        if bot.index_handle:
            try:
                await self.knowledge.delete_index(bot.index_handle)
            except Exception as err:
                _logger.warning("knowledge_index_delete_failed bot=%s err=%s", bot.bot_id, err)
        return bot

    async def _tenant_bot(self, bot_id: str, tenant_id: str) -> Bot:
        bot = await self.bots.get_bot(bot_id)
        # Foreign-tenant bots are reported exactly like missing ones.
        if bot is None or bot.tenant_id != tenant_id:
            raise BotNotFound()
        return bot
