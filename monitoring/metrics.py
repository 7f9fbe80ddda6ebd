# =============================================================================
# ISSUE TRIAGE SYSTEM - METRICS COLLECTION
# =============================================================================
"""
Metrics Collection Module

Prometheus metrics for the triage integration layer.

Each MetricsCollector owns its own CollectorRegistry so that several
collectors (one per test, one per embedded instance) never clash on
metric names in the global default registry.

Metric Categories:
    - HTTP metrics: Requests per downstream, retries, circuit breaker state
    - Cache metrics: Hits and misses per resource kind
    - AI metrics: Calls, token usage, latency per provider
    - GitHub metrics: Remaining rate limit per resource
    - Triage metrics: Outcomes and errors
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

logger = logging.getLogger(__name__)

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


# =============================================================================
# METRICS COLLECTOR
# =============================================================================


class MetricsCollector:
    """
    Central metrics collector for the triage system.

    Usage::

        metrics = MetricsCollector()
        metrics.record_http_request("github", "GET", 200)
        metrics.record_llm_call("gemini", "gemini-3-flash-preview", 1500, 300, 2.1)
        metrics.snapshot()["cache"]
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize all metric collectors.

        Args:
            config: Optional ``metrics`` configuration section.
        """
        self.config = config or {}
        self.namespace = self.config.get("namespace", "issue_triage")
        self.registry = CollectorRegistry()
        self._start_time = time.monotonic()
        ns = self.namespace

        # HTTP / resilience
        self.http_requests = Counter(
            "http_requests_total",
            "Outbound HTTP requests",
            ["service", "method", "status"],
            namespace=ns, registry=self.registry,
        )
        self.retries = Counter(
            "retries_total",
            "Retries scheduled by the resilience layer",
            ["service", "error_type"],
            namespace=ns, registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit state (0=closed, 1=half_open, 2=open)",
            ["service"],
            namespace=ns, registry=self.registry,
        )
        self.circuit_transitions = Counter(
            "circuit_transitions_total",
            "Circuit breaker state transitions",
            ["service", "from_state", "to_state"],
            namespace=ns, registry=self.registry,
        )
        self.circuit_rejections = Counter(
            "circuit_rejections_total",
            "Calls rejected while a circuit was open",
            ["service"],
            namespace=ns, registry=self.registry,
        )

        # Cache
        self.cache_lookups = Counter(
            "cache_lookups_total",
            "Cache lookups by outcome",
            ["kind", "result"],
            namespace=ns, registry=self.registry,
        )

        # AI
        self.llm_requests = Counter(
            "llm_requests_total",
            "Completion requests",
            ["provider", "model"],
            namespace=ns, registry=self.registry,
        )
        self.llm_errors = Counter(
            "llm_errors_total",
            "Failed completion requests",
            ["provider", "error_type"],
            namespace=ns, registry=self.registry,
        )
        self.llm_tokens = Counter(
            "llm_tokens_total",
            "Tokens consumed",
            ["provider", "token_type"],
            namespace=ns, registry=self.registry,
        )
        self.llm_latency = Histogram(
            "llm_latency_seconds",
            "Completion latency",
            ["provider"],
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60),
            namespace=ns, registry=self.registry,
        )

        # GitHub
        self.github_rate_limit = Gauge(
            "github_rate_limit_remaining",
            "Remaining GitHub API requests",
            ["resource"],
            namespace=ns, registry=self.registry,
        )

        # Triage
        self.triage_outcomes = Counter(
            "triage_outcomes_total",
            "Triage runs by outcome",
            ["outcome"],
            namespace=ns, registry=self.registry,
        )
        self.errors_total = Counter(
            "errors_total",
            "Errors by component",
            ["component", "error_type"],
            namespace=ns, registry=self.registry,
        )

    # =====================================================================
    # RECORDING API
    # =====================================================================

    # -- HTTP / resilience -------------------------------------------------

    def record_http_request(self, service: str, method: str, status: int) -> None:
        """Record an outbound HTTP request."""
        self.http_requests.labels(
            service=service, method=method, status=str(status)
        ).inc()

    def record_retry(self, service: str, error_type: str) -> None:
        self.retries.labels(service=service, error_type=error_type).inc()

    def record_circuit_transition(
        self, service: str, from_state: str, to_state: str
    ) -> None:
        """Record a circuit breaker transition and update the state gauge."""
        self.circuit_transitions.labels(
            service=service, from_state=from_state, to_state=to_state
        ).inc()
        self.circuit_state.labels(service=service).set(
            _CIRCUIT_STATE_VALUES.get(to_state, 0)
        )

    def record_circuit_rejection(self, service: str) -> None:
        self.circuit_rejections.labels(service=service).inc()

    # -- Cache -------------------------------------------------------------

    def record_cache_lookup(self, kind: str, result: str) -> None:
        """Record a cache hit or miss."""
        self.cache_lookups.labels(kind=kind, result=result).inc()

    # -- AI ------------------------------------------------------------------

    def record_llm_call(
        self,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        duration: float,
    ) -> None:
        """Record a completion call with token counts and latency."""
        self.llm_requests.labels(provider=provider, model=model).inc()
        self.llm_tokens.labels(provider=provider, token_type="input").inc(input_tokens)
        self.llm_tokens.labels(provider=provider, token_type="output").inc(output_tokens)
        self.llm_latency.labels(provider=provider).observe(duration)

    def record_llm_error(self, provider: str, error_type: str) -> None:
        self.llm_errors.labels(provider=provider, error_type=error_type).inc()

    # -- GitHub ------------------------------------------------------------

    def set_github_rate_limit(self, resource: str, remaining: int) -> None:
        """Update the remaining GitHub API rate limit for one resource."""
        self.github_rate_limit.labels(resource=resource).set(remaining)

    # -- Triage ------------------------------------------------------------

    def record_triage_outcome(self, outcome: str) -> None:
        self.triage_outcomes.labels(outcome=outcome).inc()

    def record_error(self, component: str, error_type: str) -> None:
        """Record an error occurrence."""
        self.errors_total.labels(component=component, error_type=error_type).inc()

    def get_uptime(self) -> float:
        """Return seconds since this collector was created."""
        return time.monotonic() - self._start_time

    # =====================================================================
    # EXPORT / SNAPSHOT
    # =====================================================================

    def start_http_server(self, port: int = 9108) -> None:
        """Start an HTTP server exposing this collector's registry."""
        start_http_server(port, registry=self.registry)
        logger.info(f"Metrics HTTP server started on port {port}")

    def export(self) -> bytes:
        """Prometheus text exposition of all metrics."""
        return generate_latest(self.registry)

    def get_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """
        Current value of one sample, 0.0 when it has not been recorded.

        Args:
            name: Sample name without namespace (e.g. "retries_total")
            labels: Exact label set of the sample
        """
        value = self.registry.get_sample_value(f"{self.namespace}_{name}", labels or {})
        return value if value is not None else 0.0

    def snapshot(self) -> Dict[str, Any]:
        """
        Return a plain dict snapshot of all metrics.

        Keys are metric family names without the namespace prefix; values
        map a label tuple to the sample value.
        """
        result: Dict[str, Any] = {"uptime_seconds": round(self.get_uptime(), 2)}
        prefix = f"{self.namespace}_"
        for family in self.registry.collect():
            samples: Dict[tuple, float] = {}
            for sample in family.samples:
                if sample.name.endswith("_created"):
                    continue
                key = (sample.name[len(prefix):],) + tuple(sorted(sample.labels.items()))
                samples[key] = sample.value
            result[family.name[len(prefix):]] = samples
        return result


# =============================================================================
# FACTORY
# =============================================================================


def create_metrics_collector(
    config: Optional[Dict[str, Any]] = None,
    start_server: bool = False,
) -> MetricsCollector:
    """
    Create a MetricsCollector, optionally starting the exposition server.

    Args:
        config: ``metrics`` configuration section (``port``, ``namespace``).
        start_server: Start the HTTP exposition server.
    """
    collector = MetricsCollector(config)
    if start_server:
        collector.start_http_server(int((config or {}).get("port", 9108)))
    return collector


__all__ = [
    "MetricsCollector",
    "create_metrics_collector",
]
