from __future__ import annotations

import logging

from agency_bots.domain.interfaces import ConversationStore, KnowledgeIndex
from agency_bots.domain.models import Conversation
from agency_bots.policies.plans import summarize_threshold

_logger = logging.getLogger(__name__)

SUMMARY_WINDOW = 40
SUMMARY_MAX_CHARS = 4000


def is_due(conversation: Conversation, plan: object) -> bool:
    return conversation.message_count >= summarize_threshold(plan)


class ConversationSummarizer:
    """Folds a due conversation's recent log into its rolling summary.

    Nothing is written until the external summary has come back, so a failed attempt
    leaves the summary, the count and the raw log untouched and the conversation stays due.
    """

    def __init__(self, conversations: ConversationStore, knowledge: KnowledgeIndex, window: int = SUMMARY_WINDOW) -> None:
        self.conversations = conversations
        self.knowledge = knowledge
        self.window = window

    async def maybe_summarize(self, conversation_id: str, plan: object) -> bool:
        conversation = await self.conversations.get(conversation_id)
        if conversation is None or not is_due(conversation, plan):
            return False

        messages = await self.conversations.load_recent(conversation_id, self.window)
        if not messages:
            return False

        try:
            summary = await self.knowledge.summarize(conversation.summary, messages)
        except Exception as err:
            _logger.warning("summarize_skipped conversation=%s err=%s", conversation_id, err)
            return False

        summary = (summary or "").strip()[:SUMMARY_MAX_CHARS]
        if not summary:
            _logger.warning("summarize_empty conversation=%s", conversation_id)
            return False

        await self.conversations.apply_summary(conversation_id, summary, through_message_id=messages[-1].message_id)
        _logger.info(
            "conversation_summarized conversation=%s folded=%s",
            conversation_id,
            len(messages),
        )
        return True
