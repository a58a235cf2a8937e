from __future__ import annotations

import logging
from uuid import uuid4

from agency_bots.domain.errors import BotLimitExceeded, InvalidRequest
from agency_bots.domain.interfaces import BotCatalog, KnowledgeIndex
from agency_bots.domain.models import ActorCredential, Bot
from agency_bots.policies.auth import TenantAuthorizer
from agency_bots.policies.bot_access import BotAccessGuard
from agency_bots.policies.plans import limits_for

_logger = logging.getLogger(__name__)

DEFAULT_AGENCY_BOT_NAME = "Agency Bot"
PRIVATE_BOT_NAME = "My Private Bot"
PRIVATE_BOT_DESCRIPTION = "Private, user-scoped bot. Only your uploads are visible here."


class BotService:
    def __init__(
        self,
        authorizer: TenantAuthorizer,
        bots: BotCatalog,
        guard: BotAccessGuard,
        knowledge: KnowledgeIndex,
    ) -> None:
        self.authorizer = authorizer
        self.bots = bots
        self.guard = guard
        self.knowledge = knowledge

    async def list_bots(self, credential: ActorCredential | None) -> list[Bot]:
        ctx = await self.authorizer.require_active_member(credential)
        await self.ensure_default_agency_bot(ctx.tenant_id)
        return await self.bots.list_visible_bots(ctx.tenant_id, ctx.actor_id)

    async def ensure_default_agency_bot(self, tenant_id: str) -> Bot | None:
        if await self.bots.count_agency_bots(tenant_id) > 0:
            return None
        bot = Bot(
            bot_id=f"bot_{uuid4()}",
            tenant_id=tenant_id,
            name=DEFAULT_AGENCY_BOT_NAME,
            description="Shared agency bot",
            index_handle=await self._try_create_index(f"Agency Bot • {DEFAULT_AGENCY_BOT_NAME} • {tenant_id}"),
        )
        await self.bots.add_bot(bot)
        return bot

    async def create_agency_bot(self, credential: ActorCredential | None, name: str, description: str | None) -> Bot:
        ctx = await self.authorizer.require_owner(credential)
        name = (name or "").strip()
        if not name:
            raise InvalidRequest("Missing name")

        cap = limits_for(ctx.plan).max_agency_bots
        if cap is not None:
            used = await self.bots.count_agency_bots(ctx.tenant_id)
            if used >= cap:
                raise BotLimitExceeded(plan=ctx.plan, kind="agency_bot", used=used, limit=cap)

        bot = Bot(
            bot_id=f"bot_{uuid4()}",
            tenant_id=ctx.tenant_id,
            name=name,
            description=(description or "").strip() or None,
            index_handle=await self._try_create_index(f"Agency Bot • {name} • {ctx.tenant_id}"),
        )
        await self.bots.add_bot(bot)
        return bot

    async def get_or_create_private_bot(self, credential: ActorCredential | None) -> Bot:
        ctx = await self.authorizer.require_active_member(credential)
        existing = await self.bots.get_private_bot(ctx.tenant_id, ctx.actor_id)
        if existing is not None:
            return existing
        bot = Bot(
            bot_id=f"bot_{uuid4()}",
            tenant_id=ctx.tenant_id,
            owner_actor_id=ctx.actor_id,
            name=PRIVATE_BOT_NAME,
            description=PRIVATE_BOT_DESCRIPTION,
            index_handle=await self._try_create_index(f"Private Bot • {ctx.actor_id} • {ctx.tenant_id}"),
        )
        await self.bots.add_bot(bot)
        return bot

    async def delete_bot(self, credential: ActorCredential | None, bot_id: str) -> Bot:
        ctx = await self.authorizer.require_active_member(credential)
        bot = await self.guard.delete(ctx, bot_id)
        _logger.info("bot_deleted tenant=%s bot=%s by=%s", ctx.tenant_id, bot.bot_id, ctx.actor_id)
        return bot

    async def _try_create_index(self, name: str) -> str | None:
        # A bot without an index still chats; it just cannot take uploads.
        try:
            return await self.knowledge.create_index(name)
        except Exception as err:
            _logger.warning("knowledge_index_create_failed name=%s err=%s", name, err)
            return None
