"""
Metrics Collection for the CodexAI RAG core

Tracks search latency, ingestion volume, degraded searches, skipped
candidates and access denials for monitoring.
"""

import time
import logging
from dataclasses import dataclass, field
from collections import defaultdict
from typing import Optional
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

PUBLIC_TENANT = "public"


@dataclass
class SearchMetrics:
    """Metrics for a single search."""
    search_id: str
    tenant_id: str
    query_text: str
    start_time: float
    end_time: float = 0
    latency_ms: float = 0
    results_count: int = 0
    candidates_count: int = 0
    degraded: bool = False
    used_index: bool = False
    error: Optional[str] = None


@dataclass
class SystemMetrics:
    """Aggregated system metrics."""
    # Search metrics
    total_searches: int = 0
    successful_searches: int = 0
    failed_searches: int = 0
    empty_searches: int = 0
    degraded_searches: int = 0
    indexed_searches: int = 0

    # Latency tracking (in ms)
    total_latency_ms: float = 0
    min_latency_ms: float = float('inf')
    max_latency_ms: float = 0
    latencies: list = field(default_factory=list)

    # Ingestion metrics
    documents_ingested: int = 0
    chunks_created: int = 0
    failed_ingestions: int = 0
    total_ingestion_time_ms: float = 0

    # Ranking and access control
    skipped_candidates: int = 0
    access_denials: int = 0

    # Error tracking
    errors_by_type: dict = field(default_factory=lambda: defaultdict(int))

    # Per-tenant tracking
    searches_by_tenant: dict = field(default_factory=lambda: defaultdict(int))
    documents_by_tenant: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_latency_ms(self) -> float:
        """Calculate average search latency."""
        if self.total_searches == 0:
            return 0
        return self.total_latency_ms / self.total_searches

    def _percentile(self, fraction: float) -> float:
        if not self.latencies:
            return 0
        sorted_latencies = sorted(self.latencies)
        index = int(len(sorted_latencies) * fraction)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def p95_latency_ms(self) -> float:
        """Calculate 95th percentile latency."""
        return self._percentile(0.95)

    @property
    def p99_latency_ms(self) -> float:
        """Calculate 99th percentile latency."""
        return self._percentile(0.99)

    @property
    def error_rate(self) -> float:
        """Calculate search error rate."""
        if self.total_searches == 0:
            return 0
        return self.failed_searches / self.total_searches

    @property
    def empty_rate(self) -> float:
        """Share of searches that returned no citation."""
        if self.total_searches == 0:
            return 0
        return self.empty_searches / self.total_searches

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "searches": {
                "total": self.total_searches,
                "successful": self.successful_searches,
                "failed": self.failed_searches,
                "empty": self.empty_searches,
                "degraded": self.degraded_searches,
                "indexed": self.indexed_searches,
                "error_rate": f"{self.error_rate:.2%}",
                "empty_rate": f"{self.empty_rate:.2%}",
            },
            "latency_ms": {
                "avg": round(self.avg_latency_ms, 2),
                "min": round(self.min_latency_ms, 2) if self.min_latency_ms != float('inf') else 0,
                "max": round(self.max_latency_ms, 2),
                "p95": round(self.p95_latency_ms, 2),
                "p99": round(self.p99_latency_ms, 2),
            },
            "ingestion": {
                "documents": self.documents_ingested,
                "chunks": self.chunks_created,
                "failed": self.failed_ingestions,
                "avg_time_ms": round(
                    self.total_ingestion_time_ms / max(self.documents_ingested, 1), 2
                ),
            },
            "ranking": {
                "skipped_candidates": self.skipped_candidates,
            },
            "security": {
                "access_denials": self.access_denials,
            },
            "errors": dict(self.errors_by_type),
        }


class MetricsCollector:
    """
    Collects and aggregates system metrics.

    Usage:
        collector = get_metrics_collector()

        with collector.track_search(tenant_id, query_text) as tracker:
            context = await pipeline.search(query_text)
            tracker.set_results(len(context.citations))

        metrics = collector.get_metrics()
    """

    _instance = None

    def __new__(cls):
        """Singleton pattern for global metrics collection."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.metrics = SystemMetrics()
        self._search_history: list[SearchMetrics] = []
        self._max_history = 1000
        self._start_time = datetime.now()
        self._initialized = True

    def reset(self):
        """Reset all metrics (for testing)."""
        self.metrics = SystemMetrics()
        self._search_history = []
        self._start_time = datetime.now()

    class SearchTracker:
        """Context manager for tracking search metrics."""

        def __init__(self, collector: 'MetricsCollector', tenant_id: Optional[str], query_text: str):
            self.collector = collector
            self.search = SearchMetrics(
                search_id=f"s_{int(time.time() * 1000)}",
                tenant_id=tenant_id or PUBLIC_TENANT,
                query_text=query_text[:200],
                start_time=time.time(),
            )

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            self.search.end_time = time.time()
            self.search.latency_ms = (self.search.end_time - self.search.start_time) * 1000

            if exc_type:
                self.search.error = str(exc_val)
                self.collector._record_error(exc_type.__name__)

            self.collector._record_search(self.search)
            return False

        def set_results(
            self,
            count: int,
            candidates: int = 0,
            degraded: bool = False,
            used_index: bool = False,
        ):
            """Set search result metadata."""
            self.search.results_count = count
            self.search.candidates_count = candidates
            self.search.degraded = degraded
            self.search.used_index = used_index

    def track_search(self, tenant_id: Optional[str], query_text: str) -> SearchTracker:
        """Create a search tracker context manager."""
        return self.SearchTracker(self, tenant_id, query_text)

    def _record_search(self, search: SearchMetrics):
        """Record completed search metrics."""
        self.metrics.total_searches += 1

        if search.error:
            self.metrics.failed_searches += 1
        else:
            self.metrics.successful_searches += 1
            if search.results_count == 0:
                self.metrics.empty_searches += 1

        if search.degraded:
            self.metrics.degraded_searches += 1
        if search.used_index:
            self.metrics.indexed_searches += 1

        self.metrics.total_latency_ms += search.latency_ms
        self.metrics.min_latency_ms = min(self.metrics.min_latency_ms, search.latency_ms)
        self.metrics.max_latency_ms = max(self.metrics.max_latency_ms, search.latency_ms)
        self.metrics.latencies.append(search.latency_ms)

        if len(self.metrics.latencies) > self._max_history:
            self.metrics.latencies = self.metrics.latencies[-self._max_history:]

        self.metrics.searches_by_tenant[search.tenant_id] += 1

        self._search_history.append(search)
        if len(self._search_history) > self._max_history:
            self._search_history = self._search_history[-self._max_history:]

    def _record_error(self, error_type: str):
        """Record an error by type."""
        self.metrics.errors_by_type[error_type] += 1

    def record_ingestion(
        self,
        tenant_id: Optional[str],
        document_id: str,
        chunks_count: int,
        duration_ms: float,
    ):
        """Record a completed document ingestion."""
        self.metrics.documents_ingested += 1
        self.metrics.chunks_created += chunks_count
        self.metrics.total_ingestion_time_ms += duration_ms
        self.metrics.documents_by_tenant[tenant_id or PUBLIC_TENANT] += 1

    def record_ingestion_failure(self, error_type: str):
        """Record a failed or timed-out ingestion."""
        self.metrics.failed_ingestions += 1
        self._record_error(error_type)

    def record_skipped_candidates(self, count: int = 1):
        """Record candidates dropped from ranking for a dimension mismatch."""
        self.metrics.skipped_candidates += count

    def record_access_denied(self):
        """Record a rejected tenant-scope request."""
        self.metrics.access_denials += 1

    def get_metrics(self) -> SystemMetrics:
        """Get current metrics."""
        return self.metrics

    def get_metrics_dict(self) -> dict:
        """Get metrics as a dictionary."""
        return self.metrics.to_dict()

    def get_recent_searches(self, limit: int = 10) -> list[SearchMetrics]:
        """Get most recent searches."""
        return self._search_history[-limit:]

    def get_uptime(self) -> timedelta:
        """Get system uptime."""
        return datetime.now() - self._start_time

    def get_tenant_summary(self) -> dict:
        """Get per-tenant summary."""
        return {
            "searches_by_tenant": dict(self.metrics.searches_by_tenant),
            "documents_by_tenant": dict(self.metrics.documents_by_tenant),
        }


# Global metrics collector instance
_collector = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
