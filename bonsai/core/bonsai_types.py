"""Data types for the Bonsai version tree."""
import math
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
from enum import Enum


ROOT_PROMPT = "Initial code"


class Activity(str, Enum):
    """Transformation that produced a node."""
    INITIAL = "initial"
    FIX_WITH_CONTEXT = "fix_with_context"
    FIX_WITHOUT_CONTEXT = "fix_without_context"
    GEN_TESTS = "gen_tests"
    REFACTOR = "refactor"
    EXCEPTIONS = "exceptions"
    CUSTOM = "custom"
    OTHER = "other"


@dataclass
class TokenUsage:
    """Token counts reported for one LLM completion."""
    prompt: int = 0
    completion: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"prompt": self.prompt, "completion": self.completion, "total": self.total}

    @classmethod
    def from_raw(cls, raw: Any) -> "TokenUsage":
        """Build from an untrusted mapping, defaulting anything unusable to 0."""
        if not isinstance(raw, dict):
            return cls()
        return cls(
            prompt=_as_int(raw.get("prompt")),
            completion=_as_int(raw.get("completion")),
            total=_as_int(raw.get("total")),
        )


@dataclass
class Node:
    """One generated (or initial) code artifact."""
    id: int
    prompt: str
    code: str
    parent_id: Optional[int]
    activity: str = Activity.CUSTOM.value
    duration_ms: int = 0
    tokens: TokenUsage = field(default_factory=TokenUsage)
    reasoning: Optional[str] = None
    # Opaque report owned by the external analyzer
    metrics: Optional[Dict[str, Any]] = None
    is_leaf: bool = True

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase shape used by snapshots and notifications."""
        data: Dict[str, Any] = {
            "id": self.id,
            "prompt": self.prompt,
            "code": self.code,
            "parentId": self.parent_id,
            "durationMs": self.duration_ms,
            "tokens": self.tokens.to_dict(),
            "isLeaf": self.is_leaf,
            "activity": self.activity,
        }
        if self.reasoning is not None:
            data["reasoning"] = self.reasoning
        if self.metrics is not None:
            data["metrics"] = self.metrics
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Node":
        """
        Build a node from an untrusted mapping.

        Missing or malformed optional fields are defaulted; this never raises
        for an incomplete node except when the id itself is unusable.

        Raises:
            ValueError: If the id cannot be read as a number
        """
        reasoning = raw.get("reasoning")
        # Older snapshots store the analyzer report under "lizard"
        metrics = raw.get("metrics", raw.get("lizard"))
        return cls(
            id=_as_id(raw.get("id")),
            prompt=str(raw.get("prompt") if raw.get("prompt") is not None else ""),
            code=str(raw.get("code") if raw.get("code") is not None else ""),
            parent_id=_as_parent_id(raw.get("parentId")),
            activity=str(raw.get("activity") if raw.get("activity") is not None else Activity.OTHER.value),
            duration_ms=_as_int(raw.get("durationMs")),
            tokens=TokenUsage.from_raw(raw.get("tokens")),
            reasoning=reasoning if isinstance(reasoning, str) else None,
            metrics=metrics if isinstance(metrics, dict) else None,
            is_leaf=bool(raw.get("isLeaf", True)),
        )


@dataclass
class Branch:
    """Named forest of nodes; list order is creation order."""
    id: str
    name: str
    nodes: List[Node] = field(default_factory=list)

    def find(self, node_id: Optional[int]) -> Optional[Node]:
        if node_id is None:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "nodes": [node.to_dict() for node in self.nodes],
        }


@dataclass
class SimilarityScore:
    """Cosine similarity of another leaf against the selected one."""
    id: int
    similarity: float

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "similarity": self.similarity}


@dataclass
class LLMResult:
    """Parsed output of one successful LLM completion."""
    content: str
    reasoning: str
    tokens: TokenUsage = field(default_factory=TokenUsage)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return 0


def _as_id(value: Any) -> int:
    """Numeric parse of an id, accepting numbers and numeric strings."""
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Invalid node id: {value!r}")
    if isinstance(value, int):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid node id: {value!r}")
    if not math.isfinite(number):
        raise ValueError(f"Invalid node id: {value!r}")
    return int(number)


def _as_parent_id(value: Any) -> Optional[int]:
    """Parent link or None; an unreadable link makes the node a root."""
    try:
        return None if value is None else _as_id(value)
    except ValueError:
        return None
