"""Tests for the Bonsai session command dispatcher."""
import json

import pytest

from bonsai.core.errors import TransientUpstreamError, UnrecoverableGenerationError
from bonsai.core.tree_store import SNAPSHOT_SCHEMA
from conftest import commands, drain


def last(messages, command):
    return [m for m in messages if m["command"] == command][-1]


class TestGenerateAndSelect:
    """Test the main generate/select flow."""

    @pytest.mark.asyncio
    async def test_generate_two_refactors_then_select(self, session):
        queue = session.broadcaster.subscribe()

        await session.dispatch({"command": "selectNode", "id": 1})
        await session.dispatch({
            "command": "generate",
            "prompt": "refactor",
            "code": "a",
            "versionCount": 2,
            "activity": "refactor",
        })
        messages = drain(queue)
        assert commands(messages)[-2:] == ["historyUpdate", "renderGraph"]
        history = last(messages, "historyUpdate")["history"]
        assert [n["id"] for n in history] == [1, 2, 3]
        assert [n["activity"] for n in history[1:]] == ["refactor", "refactor"]
        assert history[0]["isLeaf"] is False

        await session.dispatch({"command": "selectNode", "id": 2})
        messages = drain(queue)
        assert last(messages, "setActivityFlow")["initialDone"] is True
        similarity = last(messages, "leafSimilarities")
        assert similarity["node"]["id"] == 2
        assert len(similarity["similarities"]) == 1
        assert similarity["similarities"][0]["id"] == 3

    @pytest.mark.asyncio
    async def test_generate_without_selection(self, session):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "generate", "prompt": "p", "code": "a"})
        messages = drain(queue)
        assert messages == [{"command": "loading", "text": "Please SELECT A NODE before applying an activity"}]
        assert len(session.store.history()) == 1

    @pytest.mark.asyncio
    async def test_generate_progress_messages(self, session):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "selectNode", "id": 1})
        drain(queue)
        await session.dispatch({"command": "generate", "prompt": "p", "code": "a", "versionCount": 2})
        loading = [m["text"] for m in drain(queue) if m["command"] == "loading"]
        assert loading == ["Generating...", "Generating branch 1 of 2...", "Generating branch 2 of 2..."]

    @pytest.mark.asyncio
    async def test_generate_from_activity_template(self, session, llm):
        await session.dispatch({"command": "selectNode", "id": 1})
        await session.dispatch({"command": "generate", "code": "a", "activity": "gen_tests"})
        assert "APPEND unit tests" in llm.calls[0][0]

    @pytest.mark.asyncio
    async def test_fix_with_context_requires_problem(self, session, llm):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "selectNode", "id": 1})
        await session.dispatch({"command": "generate", "code": "a", "activity": "fix_with_context"})
        assert last(drain(queue), "loading")["text"] == "ERROR!: Please provide a problem description."
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_generation_failure_reports_and_keeps_siblings(self, session, llm):
        llm.outputs = ["ok", UnrecoverableGenerationError("LLM request failed after 3 attempts")]
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "selectNode", "id": 1})
        await session.dispatch({"command": "generate", "prompt": "p", "code": "a", "versionCount": 3})
        messages = drain(queue)
        assert last(messages, "loading")["text"] == "ERROR!: LLM request failed after 3 attempts"
        assert [n["id"] for n in last(messages, "historyUpdate")["history"]] == [1, 2]

    @pytest.mark.asyncio
    async def test_unexpected_failure_still_renders_stored_siblings(self, session, llm):
        llm.outputs = ["ok", RuntimeError("boom")]
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "selectNode", "id": 1})
        await session.dispatch({"command": "generate", "prompt": "p", "code": "a", "versionCount": 2})
        messages = drain(queue)
        assert [n["id"] for n in session.store.history()] == [1, 2]
        assert [n["id"] for n in last(messages, "historyUpdate")["history"]] == [1, 2]
        assert [n["data"]["id"] for n in last(messages, "renderGraph")["graph"]["nodes"]] == ["n1", "n2"]
        assert last(messages, "loading")["text"] == "ERROR!: boom"

    @pytest.mark.asyncio
    async def test_generate_rejects_malformed_endpoint(self, session, llm):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "selectNode", "id": 1})
        await session.dispatch({
            "command": "generate", "prompt": "p", "code": "a", "baseUrl": "http://bad host"
        })
        assert last(drain(queue), "loading")["text"].startswith("ERROR!: Invalid URL format")
        assert session.store.base_url == "localhost:1234/v1"
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_generate_updates_endpoint(self, session, llm):
        await session.dispatch({"command": "selectNode", "id": 1})
        await session.dispatch({
            "command": "generate", "prompt": "p", "code": "a",
            "baseUrl": "gpu-box:1234/v1", "model": "coder-7b"
        })
        assert session.store.base_url == "gpu-box:1234/v1"
        assert llm.base_url == "gpu-box:1234/v1"
        assert llm.model == "coder-7b"

    @pytest.mark.asyncio
    async def test_select_root(self, session):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "selectNode", "id": 1})
        messages = drain(queue)
        assert last(messages, "setActivityFlow")["initialDone"] is False
        assert last(messages, "leafSimilarities")["similarities"] == []

    @pytest.mark.asyncio
    async def test_select_internal_node_has_no_similarities(self, session):
        await session.dispatch({"command": "selectNode", "id": 1})
        await session.dispatch({"command": "generate", "prompt": "p", "code": "a", "versionCount": 2})
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "selectNode", "id": 1})
        assert last(drain(queue), "leafSimilarities")["similarities"] == []

    @pytest.mark.asyncio
    async def test_select_unknown_is_silent(self, session):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "selectNode", "id": 77})
        assert drain(queue) == []
        assert session.store.selected_node_id == 77

    @pytest.mark.asyncio
    async def test_unselect(self, session):
        await session.dispatch({"command": "selectNode", "id": 1})
        await session.dispatch({"command": "unselectNode"})
        assert session.store.selected_node_id is None


class TestTrim:
    """Test the trim command."""

    @pytest.mark.asyncio
    async def test_trim_selected_subtree(self, session):
        await session.dispatch({"command": "selectNode", "id": 1})
        await session.dispatch({"command": "generate", "prompt": "p", "code": "a", "versionCount": 2})
        await session.dispatch({"command": "selectNode", "id": 2})
        queue = session.broadcaster.subscribe()

        await session.dispatch({"command": "trim", "id": 2})
        messages = drain(queue)
        assert commands(messages) == ["leafSimilarities", "renderGraph", "historyUpdate"]
        assert messages[0] == {"command": "leafSimilarities", "node": None, "similarities": []}
        assert [n["id"] for n in messages[2]["history"]] == [1, 3]

    @pytest.mark.asyncio
    async def test_trim_unknown_is_silent(self, session):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "trim", "id": 50})
        assert drain(queue) == []


class TestSnapshots:
    """Test import and export commands."""

    @pytest.mark.asyncio
    async def test_export_only_root(self, session):
        queue = session.broadcaster.subscribe()
        assert await session.dispatch({"command": "exportJSON"}) is None
        assert last(drain(queue), "loading")["text"] == "Cannot export: Bonsai only has the initial node."

    @pytest.mark.asyncio
    async def test_export_returns_snapshot(self, session):
        await session.dispatch({"command": "selectNode", "id": 1})
        await session.dispatch({"command": "generate", "prompt": "p", "code": "a"})
        snapshot = await session.dispatch({"command": "exportJSON"})
        assert snapshot["schema"] == SNAPSHOT_SCHEMA
        assert len(snapshot["branches"][0]["nodes"]) == 2

    @pytest.mark.asyncio
    async def test_import_json_text(self, session):
        queue = session.broadcaster.subscribe()
        content = json.dumps({
            "schema": SNAPSHOT_SCHEMA,
            "activeBranchId": "main",
            "branches": [{"id": "main", "name": "Main", "nodes": [
                {"id": 1, "code": "first", "parentId": None},
                {"id": 5, "code": "fifth", "parentId": 1},
            ]}],
        })
        await session.dispatch({"command": "importJSON", "content": content})
        messages = drain(queue)
        assert commands(messages) == [
            "renderGraph", "historyUpdate", "urlmodelUpdate", "setInitialCode", "setActivityFlow"
        ]
        assert messages[3]["code"] == "first"
        assert messages[4]["initialDone"] is True
        assert session.store.current_id == 5

    @pytest.mark.asyncio
    async def test_import_bad_schema(self, session):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "importJSON", "content": json.dumps({"schema": "x"})})
        assert drain(queue) == [
            {"command": "loading", "text": 'Import failed: Invalid schema. Expected "bonsai.v1".'}
        ]
        assert len(session.store.history()) == 1

    @pytest.mark.asyncio
    async def test_import_invalid_json(self, session):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "importJSON", "content": "{oops"})
        assert last(drain(queue), "loading")["text"].startswith("Import failed: Invalid JSON")


class TestConfigAndConnection:
    """Test endpoint configuration and LLM probing."""

    @pytest.mark.asyncio
    async def test_update_config(self, session, llm):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "updateConfig", "baseUrl": "host:9/v1", "model": "m"})
        assert drain(queue) == [{"command": "urlmodelUpdate", "baseUrl": "host:9/v1", "model": "m"}]
        assert llm.model == "m"

    @pytest.mark.asyncio
    async def test_connection_model_available(self, session):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "testConnection"})
        messages = drain(queue)
        assert messages[0] == {"command": "loading", "text": "Testing connection..."}
        result = messages[1]
        assert result["success"] is True
        assert 'Model "qwen/qwen2.5-coder-3b-instruct" is available.' in result["message"]

    @pytest.mark.asyncio
    async def test_connection_model_missing(self, session):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "testConnection", "model": "other"})
        result = last(drain(queue), "connectionTestResult")
        assert result["success"] is True
        assert 'Model "other" not found' in result["message"]

    @pytest.mark.asyncio
    async def test_connection_failure(self, session, llm):
        llm.models = TransientUpstreamError("Server not reachable: HTTP 503 Service Unavailable")
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "testConnection"})
        result = last(drain(queue), "connectionTestResult")
        assert result["success"] is False
        assert result["message"].startswith("✗ Connection failed: Server not reachable")

    @pytest.mark.asyncio
    async def test_process_agent_md(self, session):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "processAgentMd", "content": "# Task\nPrint a greeting"})
        messages = drain(queue)
        assert [m["text"] for m in messages if m["command"] == "loading"] == [
            "Verifying LLM connection...", "Processing Agent.md..."
        ]
        result = last(messages, "agentMdProcessResult")
        assert result == {
            "command": "agentMdProcessResult",
            "success": True,
            "code": "print('from doc')",
            "reasoning": "doc",
        }
        assert len(session.store.history()) == 1

    @pytest.mark.asyncio
    async def test_process_agent_md_failure(self, session, llm):
        llm.document_result = UnrecoverableGenerationError("No <code> block found")
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "processAgentMd", "content": "# Agent guide"})
        result = last(drain(queue), "agentMdProcessResult")
        assert result["success"] is False
        assert result["message"] == "No <code> block found"

    @pytest.mark.asyncio
    async def test_process_agent_md_malformed_endpoint(self, session, llm):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "processAgentMd", "content": "# Task", "baseUrl": "not a url"})
        result = last(drain(queue), "agentMdProcessResult")
        assert result["success"] is False
        assert result["message"].startswith("Invalid URL format")
        assert llm.base_url == "localhost:1234/v1"


class TestDispatch:
    """Test command validation and the greeting sequence."""

    @pytest.mark.asyncio
    async def test_unknown_command_ignored(self, session):
        queue = session.broadcaster.subscribe()
        assert await session.dispatch({"command": "dance"}) is None
        assert drain(queue) == []

    @pytest.mark.asyncio
    async def test_invalid_fields_reported(self, session):
        queue = session.broadcaster.subscribe()
        await session.dispatch({"command": "trim", "id": "not-a-number"})
        text = last(drain(queue), "loading")["text"]
        assert text.startswith("ERROR!: Invalid trim command")

    def test_initial_messages(self, session):
        messages = session.initial_messages()
        assert commands(messages) == [
            "renderGraph", "historyUpdate", "urlmodelUpdate", "setInitialCode", "setActivityFlow"
        ]
        assert messages[3]["code"] == "a"
        assert messages[4]["initialDone"] is False

    @pytest.mark.asyncio
    async def test_startup_restores_same_session(self, session):
        await session.dispatch({"command": "selectNode", "id": 1})
        await session.dispatch({"command": "generate", "prompt": "p", "code": "a"})
        session.store.create_root("wiped")
        assert await session.startup() is True
        assert len(session.store.history()) == 2
