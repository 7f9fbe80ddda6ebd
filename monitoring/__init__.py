# =============================================================================
# ISSUE TRIAGE SYSTEM - MONITORING PACKAGE
# =============================================================================
"""
Monitoring Package

Logging, metrics and audit infrastructure for the triage system.

Components:
    - Logger: structlog-rendered logging with sensitive data masking
    - Metrics: Prometheus metrics on a per-collector registry
    - Audit: JSONL trail of side effects (comments, labels, logins)

Usage:
    from monitoring import setup_logging, MetricsCollector, AuditLogger

    setup_logging(level="INFO", fmt="json")

    metrics = MetricsCollector()
    metrics.record_cache_lookup("issues", "hit")

    audit = AuditLogger("./logs/audit.jsonl")
    audit.log_comment_posted("octocat/hello-world", 42, "https://github.com/...")
"""

# Logger
from monitoring.logger import (
    setup_logging,
    AuditLogger,
    LogContext,
    log_context,
    mask_sensitive_data,
    mask_dict,
)

# Metrics
from monitoring.metrics import (
    MetricsCollector,
    create_metrics_collector,
)


__all__ = [
    # Logger
    "setup_logging",
    "AuditLogger",
    "LogContext",
    "log_context",
    "mask_sensitive_data",
    "mask_dict",
    # Metrics
    "MetricsCollector",
    "create_metrics_collector",
]
