"""Generation orchestrator: turns LLM completions into sibling nodes."""
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from bonsai.core.analyzer import analyze_code, extension_for_language
from bonsai.core.bonsai_types import Activity, Node
from bonsai.core.config import settings
from bonsai.core.errors import (
    AnalysisUnavailableError,
    NoSelectionError,
    NotFoundError,
    UnrecoverableGenerationError,
)
from bonsai.core.llm_client import LLMClient
from bonsai.core.metrics import MetricsCollector
from bonsai.core.structured_logging import GenerationStepLogger, get_logger
from bonsai.core.tree_store import TreeStore

logger = logging.getLogger(__name__)
struct_logger = get_logger(__name__)

ProgressCallback = Callable[[str], Awaitable[None]]
Analyzer = Callable[[str, str, str], Awaitable[Dict[str, Any]]]

SELECT_NODE_FIRST = "Please SELECT A NODE before applying an activity"


class GenerationOrchestrator:
    """
    Drives N sequential LLM calls and attaches the results under one parent.

    Callers must hold the store lock for the whole run.
    """

    def __init__(
        self,
        store: TreeStore,
        llm_client: LLMClient,
        analyzer: Optional[Analyzer] = None,
        file_extension: Optional[str] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Tree store receiving the new nodes
            llm_client: Client used for every version
            analyzer: Awaitable (code, name_hint, extension) -> metrics report
            file_extension: Analyzer temp file extension when no language is given
        """
        self.store = store
        self.llm_client = llm_client
        self.analyzer = analyzer or analyze_code
        self.file_extension = file_extension or settings.seed_extension

    async def _analyze(self, code: str, name_hint: str, extension: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.analyzer(code, name_hint, extension)
        except AnalysisUnavailableError as e:
            logger.info(f"Metrics unavailable for {name_hint}: {e.message}")
            return None

    async def generate(
        self,
        selected_node_id: Optional[int],
        prompt: str,
        base_code: str,
        activity: Optional[str] = None,
        version_count: int = 1,
        progress: Optional[ProgressCallback] = None,
        language: Optional[str] = None
    ) -> List[Node]:
        """
        Generate ``version_count`` sibling versions under the selected node.

        Each version is requested, timed and analyzed one after another. The
        parent loses its leaf flag as soon as the first child exists. New nodes
        are appended to the active branch and persisted once after the loop,
        also when the loop stops early on an unrecoverable error.

        Args:
            selected_node_id: Parent node id
            prompt: Instruction text
            base_code: Code sent alongside the instruction
            activity: Activity tag for every new node (default "custom")
            version_count: Number of siblings to generate
            progress: Optional awaitable receiving user-facing progress text
            language: Editor language id picking the analyzer file extension

        Returns:
            The new nodes in creation order

        Raises:
            NoSelectionError: If no node is selected
            NotFoundError: If the selected node is not in the active branch
            UnrecoverableGenerationError: If the LLM client gives up
        """
        if selected_node_id is None:
            raise NoSelectionError(SELECT_NODE_FIRST)
        if self.store.find_node(selected_node_id) is None:
            raise NotFoundError(f"Node #{selected_node_id} no longer exists")

        activity = activity or Activity.CUSTOM.value
        version_count = max(1, int(version_count or 1))
        extension = extension_for_language(language) or self.file_extension

        async def report(text: str) -> None:
            if progress is not None:
                await progress(text)

        self.store.log("Generating branches from #", selected_node_id, "num branches:", version_count)
        new_nodes: List[Node] = []
        try:
            for version in range(1, version_count + 1):
                await report(f"Generating branch {version} of {version_count}...")

                async def on_retry(attempt: int, reason: str, version=version) -> None:
                    await report(
                        f"Generating branch {version} of {version_count}... (retry {attempt}: {reason})"
                    )

                with GenerationStepLogger(
                    struct_logger,
                    parent_id=selected_node_id,
                    version=version,
                    version_count=version_count,
                    activity=activity
                ) as step:
                    start = time.perf_counter()
                    result = await self.llm_client.generate(prompt, base_code, on_retry=on_retry)
                    duration_ms = (time.perf_counter() - start) * 1000
                    self.store.log(f"Version {version} generated in {duration_ms:.2f} ms")

                    metrics = await self._analyze(result.content, f"node-{self.store.current_id + 1}", extension)

                    node = Node(
                        id=self.store.allocate_id(),
                        prompt=prompt,
                        code=result.content,
                        parent_id=selected_node_id,
                        activity=activity,
                        duration_ms=round(duration_ms),
                        tokens=result.tokens,
                        reasoning=result.reasoning,
                        metrics=metrics,
                        is_leaf=True,
                    )
                    new_nodes.append(node)
                    self.store.mark_internal(selected_node_id)
                    step.set_result(node.id, result.tokens.total)

                MetricsCollector.record_node_generated(
                    activity,
                    duration_ms / 1000,
                    result.tokens.prompt,
                    result.tokens.completion
                )
                self.store.log(
                    f"Node #{node.id} created (parent #{selected_node_id}), activity: {activity}"
                )
        except UnrecoverableGenerationError as e:
            MetricsCollector.record_generation_failure()
            self.store.log(
                f"Generation halted after {len(new_nodes)} of {version_count} versions: {e.message}"
            )
            raise
        finally:
            self.store.append_nodes(new_nodes)
            self.store.persist()

        return new_nodes
