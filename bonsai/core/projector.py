"""Render-ready graph projection of a branch."""
from typing import Any, Dict, List, Optional

from bonsai.core.bonsai_types import Activity, Branch

MIN_NODE_SIZE = 40
MAX_NODE_SIZE = 120
NEUTRAL_NODE_SIZE = 80

NEUTRAL_ACTIVITY_COLOR = "#777777"

ACTIVITY_COLORS: Dict[str, str] = {
    Activity.FIX_WITH_CONTEXT.value: "#834632",
    Activity.FIX_WITHOUT_CONTEXT.value: "#83675e",
    Activity.GEN_TESTS.value: "#970071",
    Activity.REFACTOR.value: "#006d18",
    Activity.EXCEPTIONS.value: "#00b0b6",
}


def activity_color(activity: Optional[str]) -> str:
    """Categorical color for an activity tag; unknown tags are gray."""
    return ACTIVITY_COLORS.get(activity or "", NEUTRAL_ACTIVITY_COLOR)


def time_color(t: float) -> str:
    """Blue (t=0) to red (t=1) gradient."""
    return f"rgb({round(255 * t)},0,{round(255 * (1 - t))})"


def _fraction(value: float, low: float, high: float) -> float:
    return min(1.0, max(0.0, (value - low) / (high - low)))


def project_graph(branch: Optional[Branch]) -> Dict[str, List[Dict[str, Any]]]:
    """
    Map a branch to nodes and edges with visual encodings.

    Size follows completion tokens and the time color follows duration. Both
    ranges are taken over non-root nodes only; roots are scaled with the same
    range, which puts them at the minimum extreme (smallest size, bluest
    color). Values outside the range are clamped to it.

    Args:
        branch: Branch to project, or None

    Returns:
        {"nodes": [...], "edges": [...]}
    """
    if branch is None:
        return {"nodes": [], "edges": []}

    metric_nodes = [node for node in branch.nodes if not node.is_root]
    completions = [node.tokens.completion for node in metric_nodes]
    durations = [node.duration_ms for node in metric_nodes]
    min_tokens, max_tokens = (min(completions), max(completions)) if completions else (0, 0)
    min_duration, max_duration = (min(durations), max(durations)) if durations else (0, 0)

    nodes = []
    for node in branch.nodes:
        if min_tokens == max_tokens:
            size = NEUTRAL_NODE_SIZE
        else:
            u = _fraction(node.tokens.completion, min_tokens, max_tokens)
            size = MIN_NODE_SIZE + u * (MAX_NODE_SIZE - MIN_NODE_SIZE)

        duration = node.duration_ms
        t = 0.0 if min_duration == max_duration else _fraction(duration, min_duration, max_duration)

        nodes.append({
            "data": {
                "id": f"n{node.id}",
                "label": f"#{node.id}",
                "code": node.code,
                "prompt": node.prompt,
                "activity": node.activity,
                "reasoning": node.reasoning,
                "size": round(size),
                "activityColor": activity_color(node.activity),
                "timeColor": time_color(t),
                "duration": duration,
                "durationNorm": t,
            }
        })

    edges = [
        {"data": {"source": f"n{node.parent_id}", "target": f"n{node.id}"}}
        for node in branch.nodes
        if not node.is_root
    ]
    return {"nodes": nodes, "edges": edges}
