from __future__ import annotations

from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any

import pytest
from azure.core.exceptions import ResourceNotFoundError

from agency_bots.adapters.foundry import FoundryKnowledgeIndex, render_transcript
from agency_bots.config import Settings
from agency_bots.domain.errors import ExternalCapabilityFailure
from agency_bots.domain.models import ConversationMessage
from agency_bots.services.summarizer import SUMMARY_MAX_CHARS


def _settings(**overrides) -> Settings:
    base = Settings(
        app_env="dev",
        database_dsn="",
        session_jwt_secret="",
        session_jwt_algorithm="HS256",
        session_cookie_name="agency_session",
        billing_webhook_secret="",
        azure_ai_project_endpoint="https://example.services.ai.azure.com/api/projects/agency",
        azure_use_managed_identity=True,
        azure_managed_identity_client_id="",
        knowledge_model_deployment="gpt-4.1-mini",
        index_poll_interval_seconds=1.5,
        index_timeout_seconds=120.0,
        time_zone="America/Chicago",
    )
    return Settings(**{**base.__dict__, **overrides})


@dataclass
class _FakeThreads:
    created: int = 0
    deleted: list[str] = field(default_factory=list)

    async def create(self) -> Any:
        self.created += 1
        return SimpleNamespace(id=f"thread-{self.created}")

    async def delete(self, thread_id: str) -> None:
        self.deleted.append(thread_id)


@dataclass
class _FakeMessages:
    reply: str = "Onboarding takes three days."
    posted: list[dict[str, Any]] = field(default_factory=list)

    async def create(self, **kwargs) -> Any:
        self.posted.append(kwargs)
        return SimpleNamespace(id="msg-1")

    async def get_last_message_text_by_role(self, **kwargs) -> Any:
        return SimpleNamespace(text=SimpleNamespace(value=self.reply))


@dataclass
class _FakeRuns:
    status: str = "completed"
    fail: bool = False

    async def create_and_process(self, **kwargs) -> Any:
        if self.fail:
            raise RuntimeError("service unavailable")
        return SimpleNamespace(status=self.status, last_error=None)


@dataclass
class _FakeVectorStores:
    deleted: list[str] = field(default_factory=list)

    async def create(self, **kwargs) -> Any:
        return SimpleNamespace(id="vs_123")

    async def delete(self, vector_store_id: str) -> None:
        self.deleted.append(vector_store_id)


@dataclass
class _FakeVectorStoreFiles:
    status: str = "in_progress"
    attached: list[tuple[str, str]] = field(default_factory=list)
    removed: list[tuple[str, str]] = field(default_factory=list)
    delete_error: Exception | None = None

    async def create(self, *, vector_store_id: str, file_id: str) -> Any:
        self.attached.append((vector_store_id, file_id))
        return SimpleNamespace(id=file_id)

    async def get(self, *, vector_store_id: str, file_id: str) -> Any:
        return SimpleNamespace(status=self.status)

    async def delete(self, *, vector_store_id: str, file_id: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.removed.append((vector_store_id, file_id))


@dataclass
class _FakeFiles:
    uploaded: list[str] = field(default_factory=list)

    async def upload(self, *, file, filename: str, purpose) -> Any:
        self.uploaded.append(filename)
        return SimpleNamespace(id="assistant-file-1")


@dataclass
class _FakeAgentsClient:
    threads: _FakeThreads = field(default_factory=_FakeThreads)
    messages: _FakeMessages = field(default_factory=_FakeMessages)
    runs: _FakeRuns = field(default_factory=_FakeRuns)
    vector_stores: _FakeVectorStores = field(default_factory=_FakeVectorStores)
    vector_store_files: _FakeVectorStoreFiles = field(default_factory=_FakeVectorStoreFiles)
    files: _FakeFiles = field(default_factory=_FakeFiles)
    agents_created: list[dict[str, Any]] = field(default_factory=list)
    agents_deleted: list[str] = field(default_factory=list)

    async def create_agent(self, **kwargs) -> Any:
        self.agents_created.append(kwargs)
        return SimpleNamespace(id="agent-1")

    async def delete_agent(self, agent_id: str) -> None:
        self.agents_deleted.append(agent_id)


def _index(agents: _FakeAgentsClient, **overrides) -> FoundryKnowledgeIndex:
    return FoundryKnowledgeIndex(_settings(**overrides), project_client_factory=lambda _: SimpleNamespace(agents=agents))


async def test_answer_runs_a_transient_agent_with_file_search() -> None:
    agents = _FakeAgentsClient()

    answer = await _index(agents).answer("be helpful", "USER: how long is onboarding?", "vs_agency")

    assert answer == "Onboarding takes three days."
    assert agents.agents_created[0]["instructions"] == "be helpful"
    assert agents.agents_created[0]["tools"]
    assert agents.messages.posted[0]["content"] == "USER: how long is onboarding?"
    assert agents.threads.deleted == ["thread-1"]
    assert agents.agents_deleted == ["agent-1"]


async def test_failed_run_raises_and_still_cleans_up() -> None:
    agents = _FakeAgentsClient()
    agents.runs.fail = True

    with pytest.raises(ExternalCapabilityFailure):
        await _index(agents).answer("be helpful", "USER: hi", None)

    assert agents.threads.deleted == ["thread-1"]
    assert agents.agents_deleted == ["agent-1"]


async def test_non_completed_run_status_is_a_failure() -> None:
    agents = _FakeAgentsClient()
    agents.runs.status = "failed"
    with pytest.raises(ExternalCapabilityFailure):
        await _index(agents).answer("be helpful", "USER: hi", "vs_agency")


async def test_summary_is_capped() -> None:
    agents = _FakeAgentsClient()
    agents.messages.reply = "y" * (SUMMARY_MAX_CHARS + 500)
    messages = [ConversationMessage(message_id="m1", conversation_id="c1", role="user", content="hello")]

    summary = await _index(agents).summarize("- earlier", messages)

    assert len(summary) == SUMMARY_MAX_CHARS
    assert agents.messages.posted[0]["content"] == render_transcript("- earlier", messages)


async def test_index_lifecycle_calls() -> None:
    agents = _FakeAgentsClient()
    index = _index(agents)

    handle = await index.create_index("Agency Bot • Sales • t1")
    file_ref = await index.add_file(handle, "handbook.pdf", b"%PDF")
    assert await index.file_status(handle, file_ref) == "in_progress"
    agents.vector_store_files.status = "completed"
    assert await index.file_status(handle, file_ref) == "completed"
    agents.vector_store_files.status = "cancelled"
    assert await index.file_status(handle, file_ref) == "failed"
    await index.delete_index(handle)

    assert handle == "vs_123"
    assert agents.files.uploaded == ["handbook.pdf"]
    assert agents.vector_store_files.attached == [("vs_123", "assistant-file-1")]
    assert agents.vector_stores.deleted == ["vs_123"]


async def test_unconfigured_index_degrades_locally() -> None:
    index = _index(_FakeAgentsClient(), azure_ai_project_endpoint="")
    messages = [ConversationMessage(message_id="m1", conversation_id="c1", role="user", content="hello")]

    assert "not configured" in await index.answer("x", "USER: hi", None)
    assert await index.summarize(None, messages) == "USER: hello"
    with pytest.raises(ExternalCapabilityFailure):
        await index.create_index("Agency Bot")


async def test_remove_file_detaches_from_the_vector_store() -> None:
    agents = _FakeAgentsClient()

    await _index(agents).remove_file("vs_agency", "assistant-file-1")

    assert agents.vector_store_files.removed == [("vs_agency", "assistant-file-1")]


async def test_remove_file_tolerates_an_already_missing_file() -> None:
    agents = _FakeAgentsClient()
    agents.vector_store_files.delete_error = ResourceNotFoundError("No file found")

    await _index(agents).remove_file("vs_agency", "assistant-file-1")


async def test_remove_file_failure_is_an_external_failure() -> None:
    agents = _FakeAgentsClient()
    agents.vector_store_files.delete_error = RuntimeError("service unavailable")

    with pytest.raises(ExternalCapabilityFailure):
        await _index(agents).remove_file("vs_agency", "assistant-file-1")
