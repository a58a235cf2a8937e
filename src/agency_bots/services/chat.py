from __future__ import annotations

from datetime import datetime, timezone
import logging
from time import perf_counter
from typing import Callable, Sequence
from zoneinfo import ZoneInfo

from agency_bots.domain.errors import AgencyBotsError, InvalidRequest
from agency_bots.domain.interfaces import ConversationStore, KnowledgeIndex
from agency_bots.domain.models import ActorCredential, ChatReply, ConversationMessage
from agency_bots.policies.auth import TenantAuthorizer
from agency_bots.policies.bot_access import BotAccessGuard
from agency_bots.policies.quota import QuotaService, remaining_messages
from agency_bots.services.summarizer import ConversationSummarizer
from agency_bots.telemetry import span_record_error, span_set_attributes, start_span, telemetry_tags

_logger = logging.getLogger(__name__)

FALLBACK_ANSWER = "I don’t have that information in the docs yet."
RECENT_WINDOW = 20

ASSISTANT_INSTRUCTIONS = f"""
You are the agency's document assistant.

Rules:
- Docs are prioritized, not exclusive.
- Always answer general questions normally.
- For internal agency questions, consult file_search.
- If no relevant evidence is found for internal business questions, reply exactly:
{FALLBACK_ANSWER}
Never fabricate internal details.
""".strip()


def looks_like_time_question(text: str) -> bool:
    normalized = text.strip().lower().rstrip("?!. ")
    return normalized == "what time is it" or "current time" in normalized or "time is it" in normalized


def time_answer(now: datetime, time_zone: str) -> str:
    local = now.astimezone(ZoneInfo(time_zone))
    hour = local.hour % 12 or 12
    place = time_zone.rsplit("/", 1)[-1].replace("_", " ")
    return (
        f"It’s {hour}:{local:%M} {local:%p} in {place} "
        f"({local:%A}, {local:%B} {local.day}, {local.year})."
    )


def compose_context(
    summary: str | None,
    recent: Sequence[ConversationMessage],
    current: ConversationMessage,
) -> str:
    turns = list(recent)
    # Concurrent turns can push the current question out of the recent window.
    if not any(message.message_id == current.message_id for message in turns):
        turns.append(current)
    preamble = f"Conversation memory:\n{summary}\n\n" if summary else ""
    return preamble + "\n".join(f"{message.role.upper()}: {message.content}" for message in turns)


class ChatOrchestrator:
    def __init__(
        self,
        *,
        authorizer: TenantAuthorizer,
        quota: QuotaService,
        guard: BotAccessGuard,
        conversations: ConversationStore,
        summarizer: ConversationSummarizer,
        knowledge: KnowledgeIndex,
        time_zone: str = "America/Chicago",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.authorizer = authorizer
        self.quota = quota
        self.guard = guard
        self.conversations = conversations
        self.summarizer = summarizer
        self.knowledge = knowledge
        self.time_zone = time_zone
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def send_message(self, credential: ActorCredential | None, bot_id: str, text: str) -> ChatReply:
        bot_id = (bot_id or "").strip()
        message = (text or "").strip()
        if not bot_id:
            raise InvalidRequest("Missing bot_id")
        if not message:
            raise InvalidRequest("Missing message")

        with start_span("chat.send_message", {"bot_id": bot_id}) as span:
            started = perf_counter()
            try:
                ctx = await self.authorizer.require_active_member(credential)
                span_set_attributes(span, telemetry_tags(tenant_id=ctx.tenant_id, actor_id=ctx.actor_id, plan=ctx.plan))

                if looks_like_time_question(message):
                    return ChatReply(answer=time_answer(self._clock(), self.time_zone), source="system")

                await self.quota.enforce_daily_limit(ctx.tenant_id, ctx.plan)
                bot = await self.guard.resolve_visible(bot_id, ctx.tenant_id, ctx.actor_id)

                conversation = await self.conversations.get_or_create(ctx.tenant_id, ctx.actor_id, bot.bot_id)
                user_message = await self.conversations.append_message(conversation.conversation_id, "user", message)
                await self.conversations.bump_message_count(conversation.conversation_id, 1)

                current = await self.conversations.get(conversation.conversation_id)
                recent = await self.conversations.load_recent(conversation.conversation_id, RECENT_WINDOW)
                context = compose_context(current.summary if current else None, recent, user_message)

                source = "assistant"
                try:
                    answer = (await self.knowledge.answer(ASSISTANT_INSTRUCTIONS, context, bot.index_handle)).strip()
                    if not answer:
                        answer, source = FALLBACK_ANSWER, "fallback"
                except Exception as err:
                    _logger.warning("answer_degraded_to_fallback bot=%s err=%s", bot.bot_id, err)
                    answer, source = FALLBACK_ANSWER, "fallback"

                await self.conversations.append_message(conversation.conversation_id, "assistant", answer)
                await self.conversations.bump_message_count(conversation.conversation_id, 1)

                # Best-effort; folds through the stored reply.
                try:
                    await self.summarizer.maybe_summarize(conversation.conversation_id, ctx.plan)
                except Exception as err:
                    _logger.warning("summarize_failed conversation=%s err=%s", conversation.conversation_id, err)

                # Quota is committed only once an answer exists for the user.
                usage = await self.quota.record_message(ctx.tenant_id)

                span_set_attributes(
                    span,
                    telemetry_tags(
                        bot_id=bot.bot_id,
                        conversation_id=conversation.conversation_id,
                        latency_ms=int((perf_counter() - started) * 1000),
                        failure_type="answer_fallback" if source == "fallback" else None,
                    ),
                )
                return ChatReply(answer=answer, source=source, remaining_quota=remaining_messages(ctx.plan, usage))
            except AgencyBotsError as err:
                span_set_attributes(span, telemetry_tags(failure_type=err.code.lower()))
                raise
            except Exception as err:
                span_record_error(span, err, failure_type=err.__class__.__name__)
                raise

    async def reset_conversation(self, credential: ActorCredential | None, bot_id: str) -> str:
        bot_id = (bot_id or "").strip()
        if not bot_id:
            raise InvalidRequest("Missing bot_id")
        ctx = await self.authorizer.require_active_member(credential)
        bot = await self.guard.resolve_visible(bot_id, ctx.tenant_id, ctx.actor_id)
        conversation = await self.conversations.get_or_create(ctx.tenant_id, ctx.actor_id, bot.bot_id)
        await self.conversations.reset(conversation.conversation_id)
        _logger.info("conversation_reset conversation=%s bot=%s", conversation.conversation_id, bot.bot_id)
        return conversation.conversation_id
