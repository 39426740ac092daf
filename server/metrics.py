"""
Prometheus collectors for hivemind

One process-wide HivemindMetrics instance covers:
- Vote outcomes by result code
- Round close outcomes and results generated
- Aggregation duration
- Store retries on transient failures
- API requests and latency
- Errors by component

Usage:
    from server.metrics import metrics
    metrics.votes_cast.labels(outcome="OK").inc()
    with metrics.aggregation_duration.time():
        aggregate()
"""

from prometheus_client import Counter, Histogram, generate_latest, REGISTRY


class HivemindMetrics:
    """Centralized metrics for hivemind (implements decision.protocols.MetricsCollector)"""

    def __init__(self):
        # Ledger metrics
        self.votes_cast = Counter(
            'hivemind_votes_cast_total',
            'Vote cast attempts by outcome code',
            ['outcome']  # OK / BUDGET_EXCEEDED / NEGATIVE_VOTES / ...
        )

        # Round lifecycle metrics
        self.round_closes = Counter(
            'hivemind_round_closes_total',
            'Round close calls by outcome',
            ['outcome']  # won / lost_race / already_closed / recovered
        )

        self.results_generated = Counter(
            'hivemind_results_generated_total',
            'Result snapshots persisted'
        )

        self.aggregation_duration = Histogram(
            'hivemind_aggregation_duration_seconds',
            'Time to tally, rank and analyze a round',
            buckets=[0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30, 60]
        )

        # Store metrics
        self.store_retries = Counter(
            'hivemind_store_retries_total',
            'Retries of atomic store operations after transient failures',
            ['operation']
        )

        # API metrics
        self.api_requests = Counter(
            'hivemind_api_requests_total',
            'HTTP requests by normalized endpoint and status',
            ['endpoint', 'method', 'status_code']
        )

        self.api_request_duration = Histogram(
            'hivemind_api_request_duration_seconds',
            'HTTP request latency',
            ['endpoint', 'method'],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
        )

        # Error metrics
        self.errors = Counter(
            'hivemind_errors_total',
            'Errors recorded by component and exception type',
            ['component', 'error_type']
        )

    def record_error(self, component: str, error: Exception):
        """component is one of api, decision_analysis, database"""
        self.errors.labels(component=component, error_type=type(error).__name__).inc()


metrics = HivemindMetrics()


def get_metrics_text() -> str:
    """Text exposition of the default registry, served at /metrics"""
    return generate_latest(REGISTRY).decode("utf-8")
