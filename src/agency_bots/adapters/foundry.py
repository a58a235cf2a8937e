from __future__ import annotations

import io
import logging
from typing import Any, Callable, Sequence
from uuid import uuid4

from agency_bots.config import Settings
from agency_bots.domain.errors import ExternalCapabilityFailure
from agency_bots.domain.interfaces import KnowledgeIndex
from agency_bots.domain.models import ConversationMessage
from agency_bots.services.summarizer import SUMMARY_MAX_CHARS

_logger = logging.getLogger(__name__)

SUMMARY_INSTRUCTIONS = """
Summarize the conversation as compact memory for future turns.

Rules:
- Summarize ONLY what is explicitly stated.
- Do NOT add new facts, infer or guess.
- Preserve decisions, constraints, preferences, and open questions.
- Write in concise bullet points.
""".strip()


def render_transcript(prior_summary: str | None, messages: Sequence[ConversationMessage]) -> str:
    lines: list[str] = []
    if prior_summary:
        lines.append(f"Conversation memory:\n{prior_summary}\n")
    lines.extend(f"{message.role.upper()}: {message.content}" for message in messages)
    return "\n".join(lines)


class FoundryKnowledgeIndex(KnowledgeIndex):
    """Azure AI Foundry agents + vector stores behind the KnowledgeIndex seam.

    Each answer/summary runs a transient agent on a transient thread; both are removed afterwards.
    """

    def __init__(
        self,
        settings: Settings,
        project_client_factory: Callable[[Settings], Any] | None = None,
    ) -> None:
        self._settings = settings
        self._project_client_factory = project_client_factory or _default_project_client_factory
        self._project_client: Any | None = None

    @property
    def configured(self) -> bool:
        return bool(self._settings.azure_ai_project_endpoint.strip())

    async def answer(self, instructions: str, context: str, index_handle: str | None) -> str:
        if not self.configured:
            # Keep local/dev chat usable without Foundry provisioning.
            return f"[index={index_handle or 'none'}] knowledge endpoint not configured; local placeholder answer."

        from azure.ai.agents.models import FileSearchTool

        tools: list[Any] = []
        tool_resources: Any = None
        if index_handle:
            file_search = FileSearchTool(vector_store_ids=[index_handle])
            tools = file_search.definitions
            tool_resources = file_search.resources
        return await self._run_transient_agent(
            operation="answer",
            instructions=instructions,
            content=context,
            tools=tools,
            tool_resources=tool_resources,
        )

    async def summarize(self, prior_summary: str | None, messages: Sequence[ConversationMessage]) -> str:
        transcript = render_transcript(prior_summary, messages)
        if not self.configured:
            return transcript[-SUMMARY_MAX_CHARS:]

        text = await self._run_transient_agent(
            operation="summarize",
            instructions=SUMMARY_INSTRUCTIONS,
            content=transcript,
            tools=[],
            tool_resources=None,
        )
        return text[:SUMMARY_MAX_CHARS]

    async def create_index(self, name: str) -> str:
        agents = self._require_agents("create_index")
        try:
            store = await agents.vector_stores.create(name=name)
        except Exception as err:
            _logger.exception("vector_store_create_failed name=%s", name)
            raise ExternalCapabilityFailure("Knowledge index creation failed") from err
        return str(store.id)

    async def delete_index(self, index_handle: str) -> None:
        agents = self._require_agents("delete_index")
        try:
            await agents.vector_stores.delete(index_handle)
        except Exception as err:
            raise ExternalCapabilityFailure("Knowledge index deletion failed") from err

    async def add_file(self, index_handle: str, filename: str, content: bytes) -> str:
        from azure.ai.agents.models import FilePurpose

        agents = self._require_agents("add_file")
        try:
            uploaded = await agents.files.upload(
                file=io.BytesIO(content),
                filename=filename,
                purpose=FilePurpose.AGENTS,
            )
            await agents.vector_store_files.create(vector_store_id=index_handle, file_id=uploaded.id)
        except Exception as err:
            _logger.exception("index_file_add_failed index=%s filename=%s", index_handle, filename)
            raise ExternalCapabilityFailure(f"Upload failed for {filename}") from err
        return str(uploaded.id)

    async def file_status(self, index_handle: str, file_ref: str) -> str:
        agents = self._require_agents("file_status")
        try:
            current = await agents.vector_store_files.get(vector_store_id=index_handle, file_id=file_ref)
        except Exception as err:
            raise ExternalCapabilityFailure("Indexing status unavailable") from err
        raw_status = getattr(current, "status", "")
        status = str(getattr(raw_status, "value", raw_status) or "").lower()
        if status == "completed":
            return "completed"
        if status in {"failed", "cancelled"}:
            return "failed"
        return "in_progress"

    async def remove_file(self, index_handle: str, file_ref: str) -> None:
        from azure.core.exceptions import ResourceNotFoundError

        agents = self._require_agents("remove_file")
        try:
            await agents.vector_store_files.delete(vector_store_id=index_handle, file_id=file_ref)
        except ResourceNotFoundError:
            _logger.info("index_file_already_removed index=%s file=%s", index_handle, file_ref)
        except Exception as err:
            _logger.exception("index_file_remove_failed index=%s file=%s", index_handle, file_ref)
            raise ExternalCapabilityFailure("Failed to delete file from knowledge index") from err

    async def _run_transient_agent(
        self,
        *,
        operation: str,
        instructions: str,
        content: str,
        tools: list[Any],
        tool_resources: Any,
    ) -> str:
        from azure.ai.agents.models import MessageRole, RunStatus

        agents = self._require_agents(operation)
        agent_id = ""
        thread_id = ""
        try:
            agent = await agents.create_agent(
                model=self._settings.knowledge_model_deployment,
                name=f"agency-bots-{operation}-{uuid4().hex[:8]}",
                instructions=instructions,
                tools=tools,
                tool_resources=tool_resources,
            )
            agent_id = str(getattr(agent, "id", "") or "")
            thread = await agents.threads.create()
            thread_id = str(getattr(thread, "id", "") or "")
            if not agent_id or not thread_id:
                raise RuntimeError("Foundry did not return agent/thread ids")

            await agents.messages.create(thread_id=thread_id, role=MessageRole.USER, content=content)
            run = await agents.runs.create_and_process(
                thread_id=thread_id,
                agent_id=agent_id,
                polling_interval=max(int(self._settings.index_poll_interval_seconds), 1),
            )

            run_status = getattr(run, "status", "")
            status = str(getattr(run_status, "value", run_status) or "").lower()
            if status != RunStatus.COMPLETED.value:
                raise RuntimeError(f"Foundry run failed with status={status}, error={getattr(run, 'last_error', None)}")

            message_text = await agents.messages.get_last_message_text_by_role(
                thread_id=thread_id,
                role=MessageRole.AGENT,
            )
            text_details = getattr(message_text, "text", None)
            text_value = str(getattr(text_details, "value", "") or "").strip()
            if not text_value:
                raise RuntimeError("Foundry run completed but returned empty agent text")
            return text_value
        except Exception as err:
            _logger.exception("foundry_%s_failed agent=%s thread=%s", operation, agent_id, thread_id)
            raise ExternalCapabilityFailure(f"Knowledge index {operation} failed") from err
        finally:
            if thread_id:
                try:
                    await agents.threads.delete(thread_id)
                except Exception:
                    _logger.warning("foundry_thread_delete_failed thread_id=%s", thread_id)
            if agent_id:
                try:
                    await agents.delete_agent(agent_id)
                except Exception:
                    _logger.warning("foundry_agent_delete_failed agent_id=%s", agent_id)

    def _require_agents(self, operation: str) -> Any:
        if not self.configured:
            raise ExternalCapabilityFailure(f"Knowledge endpoint not configured for {operation}")
        if self._project_client is None:
            self._project_client = self._project_client_factory(self._settings)
        agents = getattr(self._project_client, "agents", None)
        if agents is None:
            raise RuntimeError("Foundry project client did not expose an agents client")
        return agents


def _default_project_client_factory(settings: Settings) -> Any:
    if not settings.azure_use_managed_identity:
        raise RuntimeError("Foundry project client requires managed identity mode")

    from azure.ai.projects.aio import AIProjectClient
    from azure.identity.aio import DefaultAzureCredential

    client_id = settings.azure_managed_identity_client_id.strip() or None
    credential = DefaultAzureCredential(managed_identity_client_id=client_id)
    return AIProjectClient(endpoint=settings.azure_ai_project_endpoint.strip(), credential=credential)
