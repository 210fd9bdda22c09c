"""Tests for the generation orchestrator."""
import pytest

from bonsai.core.errors import NoSelectionError, NotFoundError, UnrecoverableGenerationError
from bonsai.core.tree_store import TreeStore
from bonsai.services.generation_service import GenerationOrchestrator
from conftest import FakeLLMClient, fake_analyzer, missing_analyzer


class TestGenerationOrchestrator:
    """Test sequential multi-version generation."""

    @pytest.mark.asyncio
    async def test_generates_siblings_under_selection(self, store):
        llm = FakeLLMClient(outputs=["v1", "v2"])
        orchestrator = GenerationOrchestrator(store, llm, analyzer=fake_analyzer)

        nodes = await orchestrator.generate(1, "refactor it", "a", activity="refactor", version_count=2)

        assert [n.id for n in nodes] == [2, 3]
        assert [n.code for n in nodes] == ["v1", "v2"]
        assert all(n.parent_id == 1 for n in nodes)
        assert all(n.activity == "refactor" for n in nodes)
        assert all(n.is_leaf for n in nodes)
        assert nodes[0].metrics["filename"] == "node-2.txt"
        assert store.find_node(1).is_leaf is False
        assert llm.calls == [("refactor it", "a"), ("refactor it", "a")]

    @pytest.mark.asyncio
    async def test_records_tokens_reasoning_and_duration(self, store):
        orchestrator = GenerationOrchestrator(store, FakeLLMClient(), analyzer=fake_analyzer)
        node = (await orchestrator.generate(1, "p", "a"))[0]
        assert node.tokens.total == 15
        assert node.reasoning == "reasoning 1"
        assert node.duration_ms >= 0
        assert node.activity == "custom"

    @pytest.mark.asyncio
    async def test_progress_messages(self, store):
        seen = []

        async def progress(text):
            seen.append(text)

        orchestrator = GenerationOrchestrator(store, FakeLLMClient(), analyzer=fake_analyzer)
        await orchestrator.generate(1, "p", "a", version_count=3, progress=progress)
        assert seen == [
            "Generating branch 1 of 3...",
            "Generating branch 2 of 3...",
            "Generating branch 3 of 3...",
        ]

    @pytest.mark.asyncio
    async def test_no_selection(self, store):
        orchestrator = GenerationOrchestrator(store, FakeLLMClient(), analyzer=fake_analyzer)
        with pytest.raises(NoSelectionError) as exc_info:
            await orchestrator.generate(None, "p", "a")
        assert exc_info.value.message == "Please SELECT A NODE before applying an activity"
        assert len(store.history()) == 1

    @pytest.mark.asyncio
    async def test_unknown_parent(self, store):
        orchestrator = GenerationOrchestrator(store, FakeLLMClient(), analyzer=fake_analyzer)
        with pytest.raises(NotFoundError):
            await orchestrator.generate(99, "p", "a")

    @pytest.mark.asyncio
    async def test_unrecoverable_error_keeps_earlier_siblings(self, store):
        llm = FakeLLMClient(outputs=["v1", UnrecoverableGenerationError("gave up"), "v3"])
        orchestrator = GenerationOrchestrator(store, llm, analyzer=fake_analyzer)

        with pytest.raises(UnrecoverableGenerationError):
            await orchestrator.generate(1, "p", "a", version_count=3)

        assert [n["id"] for n in store.history()] == [1, 2]
        assert store.find_node(1).is_leaf is False
        assert len(llm.calls) == 2

    @pytest.mark.asyncio
    async def test_missing_analyzer_does_not_abort(self, store):
        orchestrator = GenerationOrchestrator(store, FakeLLMClient(), analyzer=missing_analyzer)
        nodes = await orchestrator.generate(1, "p", "a", version_count=2)
        assert len(nodes) == 2
        assert all(n.metrics is None for n in nodes)
        assert "metrics" not in store.history()[1]

    @pytest.mark.asyncio
    async def test_persists_after_batch(self, store, db_factory):
        orchestrator = GenerationOrchestrator(store, FakeLLMClient(), analyzer=fake_analyzer)
        await orchestrator.generate(1, "p", "a", version_count=2)

        restored = TreeStore(db_session_factory=db_factory, session_id=store.session_id)
        assert restored.restore() is True
        assert [n["id"] for n in restored.history()] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_generate_from_leaf_child(self, store):
        orchestrator = GenerationOrchestrator(store, FakeLLMClient(), analyzer=fake_analyzer)
        await orchestrator.generate(1, "p", "a")
        nodes = await orchestrator.generate(2, "p", "generated 1")
        assert nodes[0].id == 3
        assert nodes[0].parent_id == 2
        assert store.find_node(2).is_leaf is False

    @pytest.mark.asyncio
    async def test_language_picks_analyzer_extension(self, store):
        orchestrator = GenerationOrchestrator(store, FakeLLMClient(), analyzer=fake_analyzer)
        nodes = await orchestrator.generate(1, "p", "a", language="python")
        assert nodes[0].metrics["filename"] == "node-2.py"

        nodes = await orchestrator.generate(1, "p", "a", language="cobol")
        assert nodes[0].metrics["filename"] == "node-3.txt"

    @pytest.mark.asyncio
    async def test_unwritable_code_skips_metrics_with_real_analyzer(self, store):
        llm = FakeLLMClient(outputs=["x = '\ud800'", "def f(x):\n    return x\n"])
        orchestrator = GenerationOrchestrator(store, llm)

        nodes = await orchestrator.generate(1, "p", "a", version_count=2, language="python")

        assert [n.id for n in nodes] == [2, 3]
        assert nodes[0].metrics is None
        assert nodes[1].metrics["function_count"] == 1
        assert [n["id"] for n in store.history()] == [1, 2, 3]
