"""Bonsai session: routes inbound commands and pushes notifications."""
import json
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from bonsai.core.activities import build_activity_prompt
from bonsai.core.bonsai_types import Activity
from bonsai.core.config import settings
from bonsai.core.errors import (
    BonsaiError,
    ExportPreconditionError,
    NoSelectionError,
    ValidationError,
)
from bonsai.core.llm_client import LLMClient, validate_base_url
from bonsai.core.projector import project_graph
from bonsai.core.similarity import compute_leaf_similarities
from bonsai.core.tree_store import TreeStore
from bonsai.schemas.commands import (
    ConnectionTestCommand,
    GenerateCommand,
    ImportCommand,
    ProcessAgentMdCommand,
    SelectNodeCommand,
    TrimCommand,
    UpdateConfigCommand,
    parse_command,
)
from bonsai.services.event_service import EventBroadcaster, create_message
from bonsai.services.generation_service import SELECT_NODE_FIRST, GenerationOrchestrator

logger = logging.getLogger(__name__)

IMPORTED_PLACEHOLDER_CODE = "// Imported Bonsai"


class BonsaiSession:
    """
    Facade over the tree store for one running process.

    Every mutating command runs under the store lock, so two structural
    mutations never interleave. Read-only queries (``state()``,
    ``initial_messages()``) do not take the lock.
    """

    def __init__(
        self,
        store: Optional[TreeStore] = None,
        llm_client: Optional[LLMClient] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        orchestrator: Optional[GenerationOrchestrator] = None,
        db_session_factory: Optional[Callable[[], Session]] = None
    ):
        """
        Initialize the session.

        Args:
            store: Tree store; created from db_session_factory when omitted
            llm_client: LLM client; created from settings when omitted
            broadcaster: Notification fan-out
            orchestrator: Generation orchestrator bound to store and client
            db_session_factory: Factory for the persisted-state database session
        """
        self.store = store or TreeStore(db_session_factory=db_session_factory)
        self.llm_client = llm_client or LLMClient(base_url=self.store.base_url, model=self.store.model)
        self.broadcaster = broadcaster or EventBroadcaster()
        self.orchestrator = orchestrator or GenerationOrchestrator(self.store, self.llm_client)
        self.started = False

        self._handlers = {
            "trim": self._handle_trim,
            "exportJSON": self._handle_export,
            "importJSON": self._handle_import,
            "selectNode": self._handle_select,
            "unselectNode": self._handle_unselect,
            "generate": self._handle_generate,
            "updateConfig": self._handle_update_config,
            "testConnection": self._handle_test_connection,
            "processAgentMd": self._handle_process_agent_md,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def startup(self, seed_code: Optional[str] = None) -> bool:
        """
        Restore the persisted tree or plant a fresh root.

        Returns:
            True if persisted state was restored
        """
        async with self.store.lock:
            restored = self.store.restore()
            if not restored:
                self.store.create_root(settings.seed_code if seed_code is None else seed_code)
                self.store.persist()
            self.llm_client.configure(self.store.base_url, self.store.model)
            self.started = True
        return restored

    # ------------------------------------------------------------------
    # Outbound messages
    # ------------------------------------------------------------------

    async def emit(self, command: str, **fields: Any) -> None:
        await self.broadcaster.publish(create_message(command, **fields))

    def _graph_message(self) -> Dict[str, Any]:
        return create_message("renderGraph", graph=project_graph(self.store.display_branch()))

    def _history_message(self) -> Dict[str, Any]:
        return create_message("historyUpdate", history=self.store.history())

    def _endpoint_message(self) -> Dict[str, Any]:
        return create_message("urlmodelUpdate", baseUrl=self.store.base_url, model=self.store.model)

    async def _emit_tree(self) -> None:
        await self.broadcaster.publish(self._history_message())
        await self.broadcaster.publish(self._graph_message())

    def initial_messages(self) -> List[Dict[str, Any]]:
        """Greeting sequence for a newly attached transport."""
        branch = self.store.display_branch()
        nodes = branch.nodes if branch else []
        return [
            self._graph_message(),
            self._history_message(),
            self._endpoint_message(),
            create_message("setInitialCode", code=nodes[-1].code if nodes else ""),
            create_message("setActivityFlow", initialDone=any(not node.is_root for node in nodes)),
        ]

    def state(self) -> Dict[str, Any]:
        """Read-only view of the active branch for polling clients."""
        return {
            "sessionId": self.store.session_id,
            "activeBranchId": self.store.active_branch_id,
            "currentId": self.store.current_id,
            "selectedNodeId": self.store.selected_node_id,
            "baseUrl": self.store.base_url,
            "model": self.store.model,
            "graph": project_graph(self.store.display_branch()),
            "history": self.store.history(),
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, message: Any) -> Optional[Dict[str, Any]]:
        """
        Validate and route one inbound command.

        Failures are reported as notifications, never raised.

        Returns:
            The snapshot for exportJSON commands, otherwise None
        """
        try:
            command = parse_command(message)
        except ValidationError as e:
            logger.warning(f"Rejected command: {e.message}")
            await self.emit("loading", text=f"ERROR!: {e.message}")
            return None

        if command is None:
            logger.debug(f"Ignoring unknown command: {message.get('command')!r}")
            return None

        try:
            return await self._handlers[command.command](command)
        except Exception as e:
            logger.error(f"Command {command.command} failed: {e}", exc_info=True)
            await self.emit("loading", text=f"ERROR!: {e}")
            return None

    async def _handle_trim(self, command: TrimCommand) -> None:
        async with self.store.lock:
            had_selection = self.store.selected_node_id is not None
            removed = self.store.trim(command.id)
            if not removed:
                return
            self.store.persist()
            if had_selection and self.store.selected_node_id is None:
                await self.emit("leafSimilarities", node=None, similarities=[])
            await self.broadcaster.publish(self._graph_message())
            await self.broadcaster.publish(self._history_message())

    async def _handle_export(self, command) -> Optional[Dict[str, Any]]:
        try:
            return await self.export_snapshot()
        except ExportPreconditionError as e:
            await self.emit("loading", text=e.message)
            return None

    async def _handle_import(self, command: ImportCommand) -> None:
        try:
            try:
                payload = json.loads(command.content)
            except ValueError as e:
                raise ValidationError(f"Invalid JSON: {e}") from e
            await self.import_snapshot(payload)
        except ValidationError as e:
            await self.emit("loading", text=f"Import failed: {e.message}")

    async def _handle_select(self, command: SelectNodeCommand) -> None:
        async with self.store.lock:
            node = self.store.select(command.id)
            self.store.log("Node selected:", command.id)
            if node is None:
                return

            await self.emit("setActivityFlow", initialDone=not node.is_root)
            if node.is_leaf:
                similarities = [
                    score.to_dict()
                    for score in compute_leaf_similarities(self.store.active_branch, node)
                ]
            else:
                similarities = []
            await self.emit("leafSimilarities", node=node.to_dict(), similarities=similarities)

    async def _handle_unselect(self, command) -> None:
        async with self.store.lock:
            self.store.unselect()

    async def _handle_generate(self, command: GenerateCommand) -> None:
        async with self.store.lock:
            self._apply_endpoint(command.base_url, command.model)

            selected = self.store.selected_node_id
            if selected is None:
                await self.emit("loading", text=SELECT_NODE_FIRST)
                return

            activity = command.activity or Activity.CUSTOM.value
            try:
                prompt = command.prompt or build_activity_prompt(activity, command.problem)
            except ValidationError as e:
                await self.emit("loading", text=f"ERROR!: {e.message}")
                return

            await self.emit("loading", text="Generating...")

            async def progress(text: str) -> None:
                await self.emit("loading", text=text)

            try:
                await self.orchestrator.generate(
                    selected,
                    prompt,
                    command.code,
                    activity=activity,
                    version_count=command.version_count,
                    progress=progress,
                    language=command.language
                )
            except NoSelectionError as e:
                await self.emit("loading", text=e.message)
                return
            except BonsaiError as e:
                await self.emit("loading", text=f"ERROR!: {e.message}")
            finally:
                # Siblings created before any failure are already stored
                await self._emit_tree()

    async def _handle_update_config(self, command: UpdateConfigCommand) -> None:
        async with self.store.lock:
            self._apply_endpoint(command.base_url, command.model)
            self.store.log("Config updated, baseUrl:", self.store.base_url, "model:", self.store.model)
            self.store.persist()
            await self.broadcaster.publish(self._endpoint_message())

    async def _handle_test_connection(self, command: ConnectionTestCommand) -> None:
        await self.emit("loading", text="Testing connection...")
        success, message = await self.test_connection(command.base_url, command.model)
        await self.emit("connectionTestResult", success=success, message=message)

    async def _handle_process_agent_md(self, command: ProcessAgentMdCommand) -> None:
        result = await self.process_agent_md(command.content, command.base_url, command.model)
        await self.broadcaster.publish(create_message("agentMdProcessResult", **result))

    # ------------------------------------------------------------------
    # Operations shared by commands and HTTP routes
    # ------------------------------------------------------------------

    def _apply_endpoint(self, base_url: Optional[str], model: Optional[str]) -> None:
        """
        Adopt an endpoint override as the session default.

        Raises:
            ValidationError: If base_url is malformed; nothing is changed
        """
        if base_url:
            self.store.base_url = validate_base_url(base_url)
        if model:
            self.store.model = model
        self.llm_client.configure(self.store.base_url, self.store.model)

    async def export_snapshot(self) -> Dict[str, Any]:
        """
        Snapshot every branch for download.

        Raises:
            ExportPreconditionError: If only the root node exists
        """
        async with self.store.lock:
            return self.store.export_snapshot()

    async def import_snapshot(self, payload: Any) -> None:
        """
        Replace the tree with a snapshot and notify every transport.

        Raises:
            ValidationError: If the payload is rejected; the tree is unchanged
        """
        async with self.store.lock:
            self.store.import_snapshot(payload)
            self.store.persist()

            branch = self.store.display_branch()
            first_code = branch.nodes[0].code if branch and branch.nodes else IMPORTED_PLACEHOLDER_CODE
            await self.broadcaster.publish(self._graph_message())
            await self.broadcaster.publish(self._history_message())
            await self.broadcaster.publish(self._endpoint_message())
            await self.emit("setInitialCode", code=first_code)
            await self.emit("setActivityFlow", initialDone=True)

    async def test_connection(self, base_url: Optional[str] = None, model: Optional[str] = None) -> tuple:
        """
        Probe the model-listing API of an endpoint.

        Does not change the configured endpoint.

        Returns:
            (success, human-readable message)
        """
        test_url = base_url or self.store.base_url
        test_model = model or self.store.model
        logger.info(f"Testing connection to {test_url} with model {test_model}")

        try:
            available = await self.llm_client.list_models(base_url=test_url)
        except BonsaiError as e:
            logger.info(f"Connection test failed: {e.message}")
            return False, f"✗ Connection failed: {e.message}"

        if not available:
            status = f'Warning: No models reported by server. Make sure "{test_model}" is loaded.'
        elif test_model in available:
            status = f'Model "{test_model}" is available.'
        else:
            status = f'Warning: Model "{test_model}" not found. Available: {", ".join(available)}'
        logger.info(f"Connection test successful. {status}")
        return True, f"✓ Connected to LLM server! {status}"

    async def process_agent_md(
        self,
        content: str,
        base_url: Optional[str] = None,
        model: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Verify the endpoint, then synthesize code from an Agent.md document.

        The result is never added to the tree.

        Returns:
            {"success": True, "code", "reasoning"} or {"success": False, "message"}
        """
        async with self.store.lock:
            try:
                self._apply_endpoint(base_url, model)
            except ValidationError as e:
                return {"success": False, "message": e.message}
            self.store.persist()

        logger.info(f"Processing Agent.md content, length: {len(content)}")
        await self.emit("loading", text="Verifying LLM connection...")
        try:
            if not content.strip():
                raise ValidationError("Agent.md content is empty")
            available = await self.llm_client.list_models()
            logger.info(f"Connection verified. Available models: {len(available)}")

            await self.emit("loading", text="Processing Agent.md...")
            result = await self.llm_client.synthesize_from_document(content)
        except BonsaiError as e:
            logger.warning(f"Agent.md processing failed: {e.message}")
            return {"success": False, "message": e.message or "Processing failed"}

        return {"success": True, "code": result.content, "reasoning": result.reasoning}


# Global singleton instance
_session_instance: Optional[BonsaiSession] = None


def get_bonsai_session(db_session_factory: Optional[Callable[[], Session]] = None) -> BonsaiSession:
    """
    Returns the singleton BonsaiSession instance.

    Args:
        db_session_factory: Optional factory function that returns a database session.
                          If None and instance doesn't exist, uses SessionLocal from bonsai.core.db.

    Returns:
        BonsaiSession instance
    """
    global _session_instance
    if _session_instance is None:
        if db_session_factory is None:
            from bonsai.core.db import SessionLocal
            db_session_factory = SessionLocal

        _session_instance = BonsaiSession(db_session_factory=db_session_factory)
    return _session_instance
