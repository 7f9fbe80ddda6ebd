# =============================================================================
# ISSUE TRIAGE SYSTEM - ENGINE PACKAGE
# =============================================================================
"""
Engine Package

Building blocks shared by every remote integration:

1. errors: Error taxonomy and user-facing messages
2. transport: Async HTTP with timeouts and status classification
3. resilience: Retry with backoff plus per-service circuit breakers
4. cache: File-backed TTL cache with single-flight fetches

Usage:
    from triage_engine.engine import (
        HttpTransport,
        CircuitRegistry,
        ResilienceDecorator,
        RetryPolicy,
    )

    transport = HttpTransport()
    resilience = ResilienceDecorator(RetryPolicy(), CircuitRegistry())
    data = await resilience.execute(fetch, circuit="github")
"""

from triage_engine.engine.errors import (
    # Base
    TriageError,
    IntegrationError,
    # Retryable
    NetworkError,
    RequestTimeoutError,
    RateLimitedError,
    ServerError,
    # Terminal
    AuthFailedError,
    ClientRequestError,
    NotFoundError,
    ValidationError,
    InvalidResponseError,
    CircuitOpenError,
    # Local
    NotAuthenticatedError,
    InvalidAIResponseError,
    ConfigurationError,
    CredentialStoreError,
    DeviceFlowError,
    InvalidTransitionError,
    format_user_error,
)

from triage_engine.engine.transport import (
    HttpResponse,
    HttpTransport,
    classify_response,
    parse_retry_after,
)

from triage_engine.engine.resilience import (
    RetryPolicy,
    CircuitState,
    CircuitBreaker,
    CircuitRegistry,
    ResilienceDecorator,
)

from triage_engine.engine.cache import (
    CacheKey,
    CacheEntry,
    TTLCache,
    DEFAULT_TTLS,
    default_cache_dir,
)

__all__ = [
    # Errors
    "TriageError",
    "IntegrationError",
    "NetworkError",
    "RequestTimeoutError",
    "RateLimitedError",
    "ServerError",
    "AuthFailedError",
    "ClientRequestError",
    "NotFoundError",
    "ValidationError",
    "InvalidResponseError",
    "CircuitOpenError",
    "NotAuthenticatedError",
    "InvalidAIResponseError",
    "ConfigurationError",
    "CredentialStoreError",
    "DeviceFlowError",
    "InvalidTransitionError",
    "format_user_error",
    # Transport
    "HttpResponse",
    "HttpTransport",
    "classify_response",
    "parse_retry_after",
    # Resilience
    "RetryPolicy",
    "CircuitState",
    "CircuitBreaker",
    "CircuitRegistry",
    "ResilienceDecorator",
    # Cache
    "CacheKey",
    "CacheEntry",
    "TTLCache",
    "DEFAULT_TTLS",
    "default_cache_dir",
]
