# =============================================================================
# ISSUE TRIAGE SYSTEM - ERROR TAXONOMY
# =============================================================================
"""
Error Taxonomy

Shared exception hierarchy for every outbound integration (GitHub REST,
GitHub GraphQL, device authorization, completion providers).

Every failure that crosses a component boundary is classified into one of
these types so that the resilience layer can decide between retrying and
failing fast without knowing which backend produced it.

Hierarchy:
    TriageError
    ├── IntegrationError              (remote call failed)
    │   ├── NetworkError              retryable
    │   ├── RequestTimeoutError       retryable
    │   ├── RateLimitedError          retryable, honors retry_after
    │   ├── ServerError               retryable (5xx)
    │   ├── AuthFailedError           terminal
    │   ├── ClientRequestError        terminal (4xx)
    │   │   ├── NotFoundError
    │   │   └── ValidationError
    │   ├── InvalidResponseError      terminal
    │   └── CircuitOpenError          terminal, no call attempted
    ├── NotAuthenticatedError
    ├── InvalidAIResponseError
    ├── ConfigurationError
    ├── CredentialStoreError
    ├── DeviceFlowError
    └── InvalidTransitionError
"""

from typing import Optional


# =============================================================================
# BASE EXCEPTIONS
# =============================================================================

class TriageError(Exception):
    """Base exception for the triage system."""


class IntegrationError(TriageError):
    """
    Base exception for failed calls to a remote service.

    Attributes:
        status_code: HTTP status, when the server answered
        service: Downstream name (e.g. "github", "ai:gemini")
        retry_after: Server-supplied delay hint in seconds
    """

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: int = None,
        service: str = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.service = service
        self.retry_after = retry_after

    def __str__(self):
        if self.status_code:
            return f"[{self.status_code}] {super().__str__()}"
        return super().__str__()


# =============================================================================
# RETRYABLE
# =============================================================================

class NetworkError(IntegrationError):
    """Connection refused, reset, DNS failure and similar transport faults."""

    retryable = True


class RequestTimeoutError(IntegrationError):
    """The request exceeded its connect or total timeout."""

    retryable = True


class RateLimitedError(IntegrationError):
    """Raised when the server throttles us (HTTP 429 or exhausted quota)."""

    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        status_code: int = 429,
        service: str = None,
    ):
        super().__init__(
            message, status_code=status_code, service=service, retry_after=retry_after
        )


class ServerError(IntegrationError):
    """5xx response from the remote service."""

    retryable = True


# =============================================================================
# TERMINAL
# =============================================================================

class AuthFailedError(IntegrationError):
    """Credentials were rejected. The user must re-authenticate."""


class ClientRequestError(IntegrationError):
    """4xx response other than 401/403/429. Retrying will not help."""


class NotFoundError(ClientRequestError):
    """Raised when a resource is not found."""

    def __init__(self, message: str, service: str = None):
        super().__init__(message, status_code=404, service=service)


class ValidationError(ClientRequestError):
    """Raised when request validation fails (HTTP 422)."""

    def __init__(self, message: str, errors: list = None, service: str = None):
        super().__init__(message, status_code=422, service=service)
        self.errors = errors or []


class InvalidResponseError(IntegrationError):
    """The server answered but the payload could not be interpreted."""


class CircuitOpenError(IntegrationError):
    """The circuit for this downstream is open; no call was attempted."""

    def __init__(self, service: str, retry_after: Optional[float] = None):
        super().__init__(
            f"Circuit open for {service}, failing fast",
            service=service,
            retry_after=retry_after,
        )


# =============================================================================
# NON-INTEGRATION ERRORS
# =============================================================================

class NotAuthenticatedError(TriageError):
    """No credential source produced a GitHub token."""


class InvalidAIResponseError(TriageError):
    """Provider output could not be parsed into the triage schema."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class ConfigurationError(TriageError):
    """Invalid or incomplete configuration."""


class CredentialStoreError(TriageError):
    """The OS credential store could not be written."""


class DeviceFlowError(TriageError):
    """Unexpected response from the device authorization endpoints."""


class InvalidTransitionError(DeviceFlowError):
    """A state machine was asked to move backwards or out of a terminal state."""


# =============================================================================
# USER-FACING MESSAGES
# =============================================================================

def format_user_error(exc: BaseException) -> str:
    """
    Map an exception to an actionable message for the presentation layer.

    Internal diagnostics (response bodies, stack traces) are not included.
    """
    if isinstance(exc, NotAuthenticatedError):
        return "Not authenticated with GitHub. Run `issue-triage login` or set GH_TOKEN."
    if isinstance(exc, AuthFailedError):
        if exc.service and exc.service.startswith("ai:"):
            provider = exc.service.split(":", 1)[1]
            return f"The {provider} API key was rejected. Check the key and try again."
        return "GitHub rejected the credential. Run `issue-triage login` to re-authenticate."
    if isinstance(exc, CircuitOpenError):
        return (
            f"{exc.service} is failing repeatedly; requests are paused. "
            "Try again in a minute."
        )
    if isinstance(exc, RateLimitedError):
        if exc.retry_after:
            return f"Rate limited by {exc.service or 'remote service'}. Retry in {int(exc.retry_after)}s."
        return f"Rate limited by {exc.service or 'remote service'}. Try again later."
    if isinstance(exc, (NetworkError, RequestTimeoutError)):
        return f"Could not reach {exc.service or 'remote service'}. Check your connection and retry."
    if isinstance(exc, ServerError):
        return f"{exc.service or 'Remote service'} is having problems. Try again later."
    if isinstance(exc, NotFoundError):
        return "Issue or repository not found. Check the reference and your access."
    if isinstance(exc, InvalidAIResponseError):
        return (
            "The AI provider returned an unusable response. "
            "Retry with a different provider or triage manually."
        )
    if isinstance(exc, ConfigurationError):
        return f"Configuration error: {exc}"
    if isinstance(exc, IntegrationError):
        return f"Request to {exc.service or 'remote service'} failed."
    if isinstance(exc, TriageError):
        return str(exc)
    return "Unexpected error. Re-run with --debug for details."


__all__ = [
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
]
