"""Version tree store: branches, id allocation, leaf flags, trim, snapshots."""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from bonsai.core import db_utils
from bonsai.core.bonsai_types import Activity, Branch, Node, ROOT_PROMPT, TokenUsage
from bonsai.core.config import settings
from bonsai.core.errors import ExportPreconditionError, SchemaError
from bonsai.core.metrics import MetricsCollector

logger = logging.getLogger(__name__)

SNAPSHOT_SCHEMA = "bonsai.v1"
DEFAULT_BRANCH_ID = "main"
DEFAULT_BRANCH_NAME = "Main"


def recompute_leaf_flags(branch: Branch) -> None:
    """Set is_leaf on every node from a single child-count pass."""
    child_count: Dict[int, int] = {node.id: 0 for node in branch.nodes}
    for node in branch.nodes:
        if node.parent_id is not None and node.parent_id in child_count:
            child_count[node.parent_id] += 1
    for node in branch.nodes:
        node.is_leaf = child_count[node.id] == 0


def collect_subtree(branch: Branch, node_id: int) -> set:
    """Ids of a node and all its transitive children."""
    children: Dict[int, List[int]] = defaultdict(list)
    for node in branch.nodes:
        if node.parent_id is not None:
            children[node.parent_id].append(node.id)

    collected = {node_id}
    stack = [node_id]
    while stack:
        for child_id in children.get(stack.pop(), []):
            if child_id not in collected:
                collected.add(child_id)
                stack.append(child_id)
    return collected


def coerce_branches(raw_branches: List[Any]) -> List[Branch]:
    """
    Build branches from untrusted snapshot data.

    Missing fields are defaulted. Nodes whose id cannot be parsed as a number
    are dropped with a warning instead of failing the whole document.
    """
    branches = []
    for raw in raw_branches:
        if not isinstance(raw, dict):
            raw = {}
        nodes = []
        raw_nodes = raw.get("nodes")
        for raw_node in raw_nodes if isinstance(raw_nodes, list) else []:
            if not isinstance(raw_node, dict):
                logger.warning(f"Skipping non-object node entry: {raw_node!r}")
                continue
            try:
                nodes.append(Node.from_dict(raw_node))
            except ValueError as e:
                logger.warning(f"Skipping node with unusable id: {e}")
        branches.append(Branch(
            id=str(raw.get("id") if raw.get("id") is not None else DEFAULT_BRANCH_ID),
            name=str(raw.get("name") if raw.get("name") is not None else DEFAULT_BRANCH_NAME),
            nodes=nodes,
        ))
    return branches


def _max_node_id(branches: List[Branch]) -> int:
    return max((node.id for branch in branches for node in branch.nodes), default=0)


class TreeStore:
    """
    Single owner of the Bonsai version tree.

    Holds every branch, the active branch, the global id counter, the UI
    selection and the session log. Mutating entry points are expected to run
    under ``lock``; the store itself performs no awaiting.
    """

    def __init__(
        self,
        db_session_factory: Optional[Callable[[], Session]] = None,
        session_id: Optional[str] = None,
        storage_key: str = db_utils.STORAGE_KEY
    ):
        """
        Initialize an empty store.

        Args:
            db_session_factory: Optional factory returning a database session.
                              If None, persist()/restore() are no-ops.
            session_id: Runtime session tag for persisted blobs
            storage_key: Key of the persisted blob
        """
        self.branches: List[Branch] = []
        self.active_branch_id: Optional[str] = None
        self.current_id: int = 0
        self.selected_node_id: Optional[int] = None
        self.logs: List[str] = []
        self.base_url: str = settings.llm_base_url
        self.model: str = settings.llm_model

        self._db_session_factory = db_session_factory
        self._session_id = session_id or settings.session_id
        self._storage_key = storage_key
        # Created lazily (can't create in __init__ without event loop)
        self._lock: Optional[asyncio.Lock] = None

    @property
    def lock(self) -> asyncio.Lock:
        """Mutex serialising every structural mutation."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def session_id(self) -> str:
        return self._session_id

    # ------------------------------------------------------------------
    # Session log
    # ------------------------------------------------------------------

    def log(self, *parts: Any) -> str:
        """Append a timestamped line to the session log."""
        message = " ".join(str(part) for part in parts)
        line = f"[{datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')}] {message}"
        self.logs.append(line)
        logger.info(message)
        return line

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def active_branch(self) -> Optional[Branch]:
        for branch in self.branches:
            if branch.id == self.active_branch_id:
                return branch
        return None

    def display_branch(self) -> Optional[Branch]:
        """Active branch, falling back to the first branch."""
        return self.active_branch or (self.branches[0] if self.branches else None)

    def find_node(self, node_id: Optional[int]) -> Optional[Node]:
        branch = self.active_branch
        return branch.find(node_id) if branch else None

    def history(self) -> List[Dict[str, Any]]:
        branch = self.display_branch()
        return [node.to_dict() for node in branch.nodes] if branch else []

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def allocate_id(self) -> int:
        """Return a fresh node id; ids are never reused."""
        self.current_id += 1
        return self.current_id

    def create_root(self, seed_code: str) -> Node:
        """
        Replace the store with a single branch holding one root node.

        Args:
            seed_code: Code of the root node

        Returns:
            The root node (id 1)
        """
        self.current_id = 0
        self.logs = []
        root = Node(
            id=self.allocate_id(),
            prompt=ROOT_PROMPT,
            code=seed_code,
            parent_id=None,
            activity=Activity.INITIAL.value,
            duration_ms=0,
            tokens=TokenUsage(),
            is_leaf=True,
        )
        self.branches = [Branch(id=DEFAULT_BRANCH_ID, name=DEFAULT_BRANCH_NAME, nodes=[root])]
        self.active_branch_id = DEFAULT_BRANCH_ID
        self.selected_node_id = None
        self.log("Initialised fresh Bonsai with root node #", root.id)
        return root

    def trim(self, node_id: int) -> int:
        """
        Delete a node and its whole descendant subtree from the active branch.

        Args:
            node_id: Root of the subtree to delete

        Returns:
            Number of nodes removed; 0 if the node does not exist
        """
        branch = self.active_branch
        if branch is None or branch.find(node_id) is None:
            logger.debug(f"Trim ignored: node {node_id} not found")
            return 0

        doomed = collect_subtree(branch, node_id)
        branch.nodes = [node for node in branch.nodes if node.id not in doomed]
        if self.selected_node_id is not None and self.selected_node_id in doomed:
            self.selected_node_id = None
        recompute_leaf_flags(branch)

        MetricsCollector.record_trim(len(doomed))
        self.log(f"Trimmed {len(doomed)} nodes starting from #{node_id}")
        return len(doomed)

    def mark_internal(self, node_id: int) -> None:
        """Flag a node as having children."""
        node = self.find_node(node_id)
        if node is not None:
            node.is_leaf = False

    def append_nodes(self, nodes: List[Node]) -> None:
        """Append generated nodes to the active branch in creation order."""
        branch = self.active_branch
        if branch is None:
            logger.warning(f"No active branch; dropping {len(nodes)} generated nodes")
            return
        branch.nodes.extend(nodes)

    def select(self, node_id: Optional[int]) -> Optional[Node]:
        """Move the UI cursor; returns the node if it exists in the active branch."""
        self.selected_node_id = node_id
        return self.find_node(node_id)

    def unselect(self) -> None:
        self.selected_node_id = None

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def import_snapshot(self, payload: Any) -> List[Branch]:
        """
        Replace the whole store with a bonsai.v1 snapshot.

        Either everything is swapped in or, on a SchemaError, nothing changes.

        Args:
            payload: Parsed JSON document

        Returns:
            The imported branches

        Raises:
            SchemaError: If the schema tag is wrong or branches is not a list
        """
        if not isinstance(payload, dict) or payload.get("schema") != SNAPSHOT_SCHEMA:
            MetricsCollector.record_snapshot("import", "rejected")
            raise SchemaError(f'Invalid schema. Expected "{SNAPSHOT_SCHEMA}".')
        if not isinstance(payload.get("branches"), list):
            MetricsCollector.record_snapshot("import", "rejected")
            raise SchemaError('Invalid file: "branches" must be an array.')

        branches = coerce_branches(payload["branches"])
        for branch in branches:
            recompute_leaf_flags(branch)

        active_id = payload.get("activeBranchId")
        if not isinstance(active_id, str) or not any(b.id == active_id for b in branches):
            active_id = branches[0].id if branches else None

        self.branches = branches
        self.active_branch_id = active_id
        self.current_id = _max_node_id(branches)
        self.selected_node_id = None

        MetricsCollector.record_snapshot("import", "ok")
        self.log("Bonsai imported successfully")
        return branches

    def export_snapshot(self) -> Dict[str, Any]:
        """
        Build a bonsai.v1 snapshot of every branch plus the session log.

        Raises:
            ExportPreconditionError: If the active branch has only its root
        """
        branch = self.active_branch
        if branch is None or len(branch.nodes) <= 1:
            MetricsCollector.record_snapshot("export", "rejected")
            raise ExportPreconditionError("Cannot export: Bonsai only has the initial node.")

        payload = {
            "schema": SNAPSHOT_SCHEMA,
            "exportedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "activeBranchId": self.active_branch_id,
            "branches": [b.to_dict() for b in self.branches],
            "logs": list(self.logs),
        }
        MetricsCollector.record_snapshot("export", "ok")
        self.log("Bonsai exported")
        return payload

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_state(self) -> Dict[str, Any]:
        return {
            "branches": [b.to_dict() for b in self.branches],
            "activeBranchId": self.active_branch_id,
            "currentId": self.current_id,
            "baseUrl": self.base_url,
            "model": self.model,
            "logs": list(self.logs),
        }

    def persist(self) -> bool:
        """Write the whole store, tagged with this runtime session."""
        if self._db_session_factory is None:
            return False
        return db_utils.save_state_blob(
            self._db_session_factory,
            session_id=self._session_id,
            payload=self.to_state(),
            key=self._storage_key
        )

    def restore(self) -> bool:
        """
        Load the persisted store if it was written by this runtime session.

        Blobs from another session are discarded.

        Returns:
            True if state was restored, False if a cold start is needed
        """
        if self._db_session_factory is None:
            return False

        loaded = db_utils.load_state_blob(self._db_session_factory, key=self._storage_key)
        if loaded is None:
            return False

        stored_session, state = loaded
        if stored_session != self._session_id:
            logger.info(f"Discarding persisted state from session {stored_session}")
            db_utils.clear_state_blob(self._db_session_factory, key=self._storage_key)
            return False

        raw_branches = state.get("branches")
        if not isinstance(raw_branches, list) or not raw_branches:
            return False

        branches = coerce_branches(raw_branches)
        for branch in branches:
            recompute_leaf_flags(branch)

        active_id = state.get("activeBranchId")
        if not isinstance(active_id, str) or not any(b.id == active_id for b in branches):
            active_id = branches[0].id

        stored_current = state.get("currentId")
        if isinstance(stored_current, bool) or not isinstance(stored_current, int):
            stored_current = 0

        self.branches = branches
        self.active_branch_id = active_id
        self.current_id = max(stored_current, _max_node_id(branches))
        self.selected_node_id = None
        if isinstance(state.get("baseUrl"), str):
            self.base_url = state["baseUrl"]
        if isinstance(state.get("model"), str):
            self.model = state["model"]
        logs = state.get("logs")
        self.logs = [str(line) for line in logs] if isinstance(logs, list) else []

        logger.info(f"Restored Bonsai state: {len(branches)} branches, current id {self.current_id}")
        return True
