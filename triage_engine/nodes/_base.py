# =============================================================================
# ISSUE TRIAGE SYSTEM - NODE BASE MODULE
# =============================================================================
"""
Shared context for the triage workflow.

Every workflow step receives one TriageContext holding the services built
once per process: the GitHub client, the completion client, the
validator, and the shared lock-guarded state (cache and circuits) behind
them. Nothing here is a module-level singleton, so tests build isolated
contexts.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from monitoring.logger import AuditLogger
from monitoring.metrics import MetricsCollector
from triage_engine.config import AppConfig, data_dir
from triage_engine.engine.cache import TTLCache, default_cache_dir
from triage_engine.engine.errors import ConfigurationError, TriageError
from triage_engine.engine.resilience import CircuitRegistry, ResilienceDecorator, RetryPolicy
from triage_engine.engine.transport import HttpTransport
from triage_engine.github.auth import Credential, CredentialResolver
from triage_engine.github.client import GitHubClient
from triage_engine.llm.providers import CompletionClient, create_completion_client
from triage_engine.llm.validator import ResponseValidator

logger = logging.getLogger(__name__)


# =============================================================================
# NODE CONTEXT
# =============================================================================


@dataclass
class TriageContext:
    """
    Shared context passed to every triage step.

    Provides access to all services.
    """
    config: AppConfig
    github: GitHubClient
    validator: ResponseValidator
    transport: HttpTransport
    resilience: ResilienceDecorator
    completion: Optional[CompletionClient] = None
    cache: Optional[TTLCache] = None
    metrics: Optional[MetricsCollector] = None
    audit: Optional[AuditLogger] = None
    resolver: Optional[CredentialResolver] = field(default=None, repr=False)

    @property
    def confirm_before_post(self) -> bool:
        return self.config.ui.confirm_before_post

    @property
    def concurrency(self) -> int:
        return self.config.triage.concurrency

    def require_completion(self) -> CompletionClient:
        if self.completion is None:
            raise ConfigurationError("No AI provider configured for this command")
        return self.completion

    async def close(self) -> None:
        await self.transport.close()
        if self.audit is not None:
            self.audit.close()


# =============================================================================
# FACTORIES
# =============================================================================


def create_resilience(
    config: AppConfig,
    metrics: Optional[MetricsCollector] = None,
) -> ResilienceDecorator:
    """Retry policy and circuit registry from configuration."""
    policy = RetryPolicy.from_dict(asdict(config.retry))
    circuits = CircuitRegistry(
        failure_threshold=config.retry.circuit_breaker_threshold,
        reset_timeout=config.retry.circuit_breaker_reset_seconds,
        metrics=metrics,
        overrides={
            "ai:": (config.ai.circuit_breaker_threshold, config.ai.circuit_breaker_reset_seconds),
        },
    )
    return ResilienceDecorator(policy, circuits, metrics=metrics)


def create_cache(
    config: AppConfig,
    metrics: Optional[MetricsCollector] = None,
) -> TTLCache:
    cache_dir = Path(config.cache.cache_dir).expanduser() if config.cache.cache_dir else default_cache_dir()
    return TTLCache(
        cache_dir=cache_dir,
        ttls=config.cache.ttls(),
        enabled=config.cache.enabled,
        metrics=metrics,
    )


def create_audit_logger(config: AppConfig) -> AuditLogger:
    path = config.logging.audit_file or str(data_dir() / "audit.jsonl")
    return AuditLogger(path)


async def create_triage_context(
    config: AppConfig,
    credential: Optional[Credential] = None,
    resolver: Optional[CredentialResolver] = None,
    env: Optional[Mapping[str, str]] = None,
    metrics: Optional[MetricsCollector] = None,
    audit: Optional[AuditLogger] = None,
    with_ai: bool = True,
) -> TriageContext:
    """
    Build every service for a triage run.

    With with_ai=False no completion client is built, so read-only GitHub
    commands work without a provider key.

    Raises:
        NotAuthenticatedError: No GitHub credential available
        AuthFailedError: AI provider key missing
        ConfigurationError: Unknown provider
    """
    env = os.environ if env is None else env
    metrics = metrics or MetricsCollector({"namespace": config.metrics.namespace})
    resolver = resolver or CredentialResolver(env=env)
    if credential is None:
        credential = await resolver.resolve()
    owns_audit = audit is None and bool(config.logging.audit_file)
    if owns_audit:
        audit = create_audit_logger(config)

    transport = HttpTransport(
        connect_timeout=config.github.connect_timeout_seconds,
        total_timeout=max(config.ai.timeout_seconds, config.github.api_timeout_seconds),
    )
    resilience = create_resilience(config, metrics)
    cache = create_cache(config, metrics)

    completion = None
    if with_ai:
        try:
            completion = create_completion_client(
                config.ai, transport, resilience, task="triage", env=env,
                metrics=metrics, audit=audit,
            )
        except TriageError:
            await transport.close()
            if owns_audit:
                audit.close()
            raise

    github = GitHubClient(
        credential,
        transport,
        resilience,
        cache=cache,
        base_url=config.github.api_url,
        timeout=config.github.api_timeout_seconds,
        metrics=metrics,
    )
    logger.debug("Triage context ready")
    return TriageContext(
        config=config,
        github=github,
        completion=completion,
        validator=ResponseValidator.from_config(config.triage),
        transport=transport,
        resilience=resilience,
        cache=cache,
        metrics=metrics,
        audit=audit,
        resolver=resolver,
    )


__all__ = [
    "TriageContext",
    "create_triage_context",
    "create_resilience",
    "create_cache",
    "create_audit_logger",
]
