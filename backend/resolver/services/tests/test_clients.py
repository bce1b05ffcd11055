"""Tests for retrieval, generation, tenant config and audit collaborators."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from resolver.schemas.conversations import Message, MessageRole
from resolver.schemas.resolution import Completion, GenerationContext, RetrievedChunk
from resolver.services import audit, generation, retrieval, tenant_store


# ── retrieval ────────────────────────────────────────────────────────


class TestVectorSearch:
    @pytest.mark.asyncio
    async def test_maps_rows_to_chunks(self, mock_supabase):
        mock_supabase.rpc.return_value.execute.return_value.data = [
            {"id": "c2", "content": "second", "similarity": 0.5, "source_id": "s2"},
            {"id": "c1", "content": "first", "similarity": 0.9, "source_id": "s1"},
        ]
        with (
            patch("resolver.services.retrieval.get_supabase_client", return_value=mock_supabase),
            patch("resolver.services.retrieval.Embedder") as mock_embedder,
        ):
            mock_embedder.return_value.embed = AsyncMock(return_value=[0.1, 0.2])
            chunks = await retrieval.vector_search("tenant-1", "reset password", 5)

        assert [c.id for c in chunks] == ["c1", "c2"]
        assert chunks[0].source_id == "s1"
        name, params = mock_supabase.rpc.call_args[0]
        assert name == "match_knowledge_chunks"
        assert params["p_tenant_id"] == "tenant-1"
        assert params["p_top_k"] == 5
        assert params["query_embedding"] == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_clamps_scores(self, mock_supabase):
        mock_supabase.rpc.return_value.execute.return_value.data = [
            {"id": "c1", "content": "x", "similarity": 1.0000002, "source_id": "s1"},
        ]
        with (
            patch("resolver.services.retrieval.get_supabase_client", return_value=mock_supabase),
            patch("resolver.services.retrieval.Embedder") as mock_embedder,
        ):
            mock_embedder.return_value.embed = AsyncMock(return_value=[0.0])
            chunks = await retrieval.vector_search("tenant-1", "q", 5)

        assert chunks[0].score == 1.0


# ── generation ───────────────────────────────────────────────────────


class TestBuildMessages:
    def test_context_history_and_query(self):
        context = GenerationContext(
            query="How do I reset my password?",
            chunks=[RetrievedChunk(id="c1", score=0.92, text="Go to Settings > Security.", source_id="s1")],
            history=[
                Message(id="m1", conversation_id="conv-1", role=MessageRole.USER, content="Hi"),
                Message(id="m2", conversation_id="conv-1", role=MessageRole.ASSISTANT, content="Hello!"),
            ],
            system_prompt_prefix="You work for Acme.",
        )
        messages = generation.build_messages(context)

        system = messages[0]["content"]
        assert messages[0]["role"] == "system"
        assert system.startswith("You work for Acme.\n\n")
        assert "[Source 1] (relevance: 92.0%)\nGo to Settings > Security." in system
        assert [m["role"] for m in messages[1:]] == ["user", "assistant", "user"]
        assert messages[-1]["content"] == "How do I reset my password?"

    def test_sources_separated(self):
        context = GenerationContext(
            query="q",
            chunks=[
                RetrievedChunk(id="a", score=0.5, text="A", source_id="s"),
                RetrievedChunk(id="b", score=0.5, text="B", source_id="s"),
            ],
        )
        assert "A\n\n---\n\n[Source 2]" in generation.build_messages(context)[0]["content"]


class TestGenerateCompletion:
    @pytest.mark.asyncio
    @patch("resolver.services.generation.LLM")
    async def test_returns_completion(self, mock_llm_cls):
        llm = mock_llm_cls.return_value
        llm.chat = AsyncMock(return_value="Answer")
        llm.last_usage = SimpleNamespace(total=150, model="gpt-4o")
        llm.last_finish_reason = "stop"

        completion = await generation.generate_completion(GenerationContext(query="q", model="gpt-4o-mini"))

        mock_llm_cls.assert_called_once_with(model="gpt-4o-mini")
        assert completion.content == "Answer"
        assert completion.tokens_used == 150
        assert completion.finish_reason == "stop"

    @pytest.mark.asyncio
    @patch("resolver.services.generation.LLM")
    async def test_stream_yields_deltas(self, mock_llm_cls):
        async def _stream(messages):
            for part in ["To reset", " your password"]:
                yield part

        llm = mock_llm_cls.return_value
        llm.stream = _stream
        llm.last_usage = SimpleNamespace(total=42, model="gpt-4o")
        llm.last_finish_reason = "stop"

        items = [d async for d in generation.generate_completion_stream(GenerationContext(query="q"))]

        assert items[:-1] == ["To reset", " your password"]
        summary = items[-1]
        assert isinstance(summary, Completion)
        assert summary.content == "To reset your password"
        assert summary.tokens_used == 42
        assert summary.finish_reason == "stop"


# ── tenant config ────────────────────────────────────────────────────


class TestLoadTenantConfig:
    @pytest.mark.asyncio
    async def test_camel_case_keys(self, mock_supabase):
        mock_supabase.table("tenants").execute.return_value.data = [
            {"config": {"confidenceThreshold": 0.8, "customSystemPrompt": "Be brief.", "cacheTtlSeconds": 60, "theme": "dark"}}
        ]
        with patch("resolver.services.tenant_store.get_supabase_client", return_value=mock_supabase):
            config = await tenant_store.load_tenant_config("tenant-1")

        assert config.confidence_threshold == 0.8
        assert config.custom_system_prompt == "Be brief."
        assert config.cache_ttl_seconds == 60
        assert config.max_history_messages is None

    @pytest.mark.asyncio
    async def test_snake_and_camel_keys_mixed(self, mock_supabase):
        mock_supabase.table("tenants").execute.return_value.data = [
            {"config": {"max_history_messages": 4, "cacheTtlSeconds": 90, "model": "gpt-4o-mini"}}
        ]
        with patch("resolver.services.tenant_store.get_supabase_client", return_value=mock_supabase):
            config = await tenant_store.load_tenant_config("tenant-1")

        assert config.max_history_messages == 4
        assert config.cache_ttl_seconds == 90
        assert config.model == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_json_string(self, mock_supabase):
        mock_supabase.table("tenants").execute.return_value.data = [{"config": '{"model": "gpt-4o-mini"}'}]
        with patch("resolver.services.tenant_store.get_supabase_client", return_value=mock_supabase):
            config = await tenant_store.load_tenant_config("tenant-1")
        assert config.model == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_missing_tenant(self, mock_supabase):
        with patch("resolver.services.tenant_store.get_supabase_client", return_value=mock_supabase):
            config = await tenant_store.load_tenant_config("nobody")
        assert config.confidence_threshold is None


# ── audit ────────────────────────────────────────────────────────────


class TestAuditEmit:
    @pytest.mark.asyncio
    async def test_writes_in_background(self, mock_supabase):
        with patch("resolver.services.audit.get_supabase_client", return_value=mock_supabase):
            audit.emit("tenant-1", audit.AuditEvent.CACHE_HIT, {"conversation_id": "conv-1"})
            await asyncio.gather(*audit._pending)

        row = mock_supabase._tables["audit_events"].insert.call_args[0][0]
        assert row["event_type"] == "cache.hit"
        assert row["tenant_id"] == "tenant-1"
        assert row["payload"] == {"conversation_id": "conv-1"}

    @pytest.mark.asyncio
    async def test_write_failure_swallowed(self):
        failing = MagicMock(side_effect=RuntimeError("db down"))
        with patch("resolver.services.audit.get_supabase_client", failing):
            audit.emit("tenant-1", "message.sent")
            await asyncio.gather(*audit._pending)

        assert not audit._pending

    def test_without_loop_is_dropped(self):
        audit.emit("tenant-1", "message.sent")
        assert not audit._pending
