"""Prometheus metrics for system observability."""
from prometheus_client import Counter, Histogram, generate_latest, REGISTRY


# Generation metrics
nodes_generated_total = Counter(
    'bonsai_nodes_generated_total',
    'Total number of code versions generated',
    ['activity']
)

generation_failures_total = Counter(
    'bonsai_generation_failures_total',
    'Total number of generation batches halted by an unrecoverable error'
)

generation_duration_seconds = Histogram(
    'bonsai_generation_duration_seconds',
    'Wall-clock duration of one generated version in seconds',
    ['activity'],
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120, 300]
)

generation_tokens_total = Counter(
    'bonsai_generation_tokens_total',
    'Total tokens consumed by generation',
    ['kind']  # kind: prompt, completion
)

# LLM metrics
llm_calls_total = Counter(
    'bonsai_llm_calls_total',
    'Total number of LLM API calls',
    ['status']  # status: success, retry, error
)

# Tree metrics
trims_total = Counter(
    'bonsai_trims_total',
    'Total number of trim operations'
)

nodes_trimmed_total = Counter(
    'bonsai_nodes_trimmed_total',
    'Total number of nodes removed by trims'
)

snapshots_total = Counter(
    'bonsai_snapshots_total',
    'Snapshot import/export operations',
    ['operation', 'outcome']  # operation: import, export; outcome: ok, rejected
)

# Analyzer metrics
analysis_total = Counter(
    'bonsai_analysis_total',
    'Code metrics analyzer invocations',
    ['outcome']  # outcome: ok, unavailable
)


class MetricsCollector:
    """Helper class for collecting and updating metrics."""

    @staticmethod
    def record_node_generated(activity: str, duration: float, prompt_tokens: int, completion_tokens: int) -> None:
        """Record a generated version."""
        nodes_generated_total.labels(activity=activity).inc()
        generation_duration_seconds.labels(activity=activity).observe(duration)
        generation_tokens_total.labels(kind="prompt").inc(max(prompt_tokens, 0))
        generation_tokens_total.labels(kind="completion").inc(max(completion_tokens, 0))

    @staticmethod
    def record_generation_failure() -> None:
        """Record a halted generation batch."""
        generation_failures_total.inc()

    @staticmethod
    def record_llm_call(status: str = "success") -> None:
        """Record an LLM API call."""
        llm_calls_total.labels(status=status).inc()

    @staticmethod
    def record_trim(removed: int) -> None:
        """Record a trim and the size of the removed subtree."""
        trims_total.inc()
        nodes_trimmed_total.inc(removed)

    @staticmethod
    def record_snapshot(operation: str, outcome: str) -> None:
        """Record an import or export attempt."""
        snapshots_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def record_analysis(outcome: str) -> None:
        """Record an analyzer invocation."""
        analysis_total.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """
    Get Prometheus metrics in text format.

    Returns:
        Metrics in Prometheus text format
    """
    return generate_latest(REGISTRY)
