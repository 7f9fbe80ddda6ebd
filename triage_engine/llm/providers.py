# =============================================================================
# ISSUE TRIAGE SYSTEM - COMPLETION PROVIDERS
# =============================================================================
"""
Completion Provider Abstraction

One client over a closed set of OpenAI-compatible chat completion backends.

Each provider is a member of the CompletionProvider enum with a fixed
ProviderSpec (endpoint, API-key variable, headers, error body shape). The
client builds each provider's request, routes it through the resilience
decorator on the provider's own circuit (``ai:<provider>``), and
normalizes every failure to the shared error taxonomy.

Supported Providers:
    - Gemini (Google, OpenAI-compatible endpoint)
    - OpenRouter
    - Groq
    - Cerebras
    - ZenMux
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, TYPE_CHECKING

from triage_engine.engine.errors import (
    AuthFailedError,
    ConfigurationError,
    IntegrationError,
    InvalidResponseError,
    RateLimitedError,
)
from triage_engine.engine.resilience import ResilienceDecorator
from triage_engine.engine.transport import HttpResponse, HttpTransport, classify_response

if TYPE_CHECKING:
    from monitoring.logger import AuditLogger
    from monitoring.metrics import MetricsCollector
    from triage_engine.config import AIConfig


logger = logging.getLogger(__name__)


# =============================================================================
# ENUMS AND DATA STRUCTURES
# =============================================================================

class CompletionProvider(Enum):
    """Supported completion providers."""
    GEMINI = "gemini"
    OPENROUTER = "openrouter"
    GROQ = "groq"
    CEREBRAS = "cerebras"
    ZENMUX = "zenmux"

    @property
    def spec(self) -> "ProviderSpec":
        return PROVIDER_SPECS[self]

    @property
    def circuit_name(self) -> str:
        return f"ai:{self.value}"

    @classmethod
    def parse(cls, name: str) -> "CompletionProvider":
        try:
            return cls(name.strip().lower())
        except ValueError:
            supported = ", ".join(p.value for p in cls)
            raise ConfigurationError(
                f"Unknown AI provider '{name}'. Supported: {supported}"
            ) from None


@dataclass(frozen=True)
class ProviderSpec:
    """Wire details of one provider."""
    display_name: str
    api_url: str
    api_key_env: str
    default_model: str
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    # Gemini's OpenAI-compatible endpoint wraps error bodies in a list
    list_wrapped_errors: bool = False
    # OpenRouter reports upstream failures inside HTTP 200 bodies
    errors_in_success_body: bool = False


PROVIDER_SPECS: Dict[CompletionProvider, ProviderSpec] = {
    CompletionProvider.GEMINI: ProviderSpec(
        display_name="Gemini",
        api_url="https://generativelanguage.googleapis.com/v1beta/openai/chat/completions",
        api_key_env="GEMINI_API_KEY",
        default_model="gemini-3-flash-preview",
        list_wrapped_errors=True,
    ),
    CompletionProvider.OPENROUTER: ProviderSpec(
        display_name="OpenRouter",
        api_url="https://openrouter.ai/api/v1/chat/completions",
        api_key_env="OPENROUTER_API_KEY",
        default_model="mistralai/devstral-2512:free",
        extra_headers={
            "HTTP-Referer": "https://github.com/issue-triage/issue-triage",
            "X-Title": "issue-triage",
        },
        errors_in_success_body=True,
    ),
    CompletionProvider.GROQ: ProviderSpec(
        display_name="Groq",
        api_url="https://api.groq.com/openai/v1/chat/completions",
        api_key_env="GROQ_API_KEY",
        default_model="llama-3.3-70b-versatile",
    ),
    CompletionProvider.CEREBRAS: ProviderSpec(
        display_name="Cerebras",
        api_url="https://api.cerebras.ai/v1/chat/completions",
        api_key_env="CEREBRAS_API_KEY",
        default_model="llama-3.3-70b",
    ),
    CompletionProvider.ZENMUX: ProviderSpec(
        display_name="ZenMux",
        api_url="https://zenmux.ai/api/v1/chat/completions",
        api_key_env="ZENMUX_API_KEY",
        default_model="x-ai/grok-code-fast-1",
    ),
}


@dataclass
class CompletionRequest:
    """Prompt content plus sampling parameters."""
    system_prompt: str
    user_prompt: str
    model: Optional[str] = None
    temperature: float = 0.3
    max_tokens: int = 4096
    json_mode: bool = True


@dataclass
class CompletionResponse:
    """Raw completion text and usage."""
    content: str
    model: str
    provider: CompletionProvider
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0


# =============================================================================
# API KEYS
# =============================================================================

def resolve_api_key(
    provider: CompletionProvider, env: Optional[Mapping[str, str]] = None
) -> str:
    """
    Read the provider's API key from the environment.

    Raises:
        AuthFailedError: Key not set
    """
    env = os.environ if env is None else env
    spec = provider.spec
    key = (env.get(spec.api_key_env) or "").strip()
    if not key:
        raise AuthFailedError(
            f"{spec.display_name} API key not set. Export {spec.api_key_env}.",
            service=provider.circuit_name,
        )
    return key


# =============================================================================
# CLIENT
# =============================================================================

class CompletionClient:
    """
    Chat completion client for one provider.

    Usage:
        client = CompletionClient(CompletionProvider.GROQ, api_key, transport, resilience)
        response = await client.complete(CompletionRequest(system, user))
    """

    def __init__(
        self,
        provider: CompletionProvider,
        api_key: str,
        transport: HttpTransport,
        resilience: ResilienceDecorator,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        metrics: Optional["MetricsCollector"] = None,
        audit: Optional["AuditLogger"] = None,
    ):
        self.provider = provider
        self.spec = provider.spec
        self.model = model or self.spec.default_model
        self.transport = transport
        self.resilience = resilience
        self.timeout = timeout
        self._api_key = api_key
        self._metrics = metrics
        self._audit = audit

    def get_model_name(self) -> str:
        return self.model

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        headers.update(self.spec.extra_headers)
        return headers

    def _build_body(self, request: CompletionRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": request.model or self.model,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.json_mode:
            body["response_format"] = {"type": "json_object"}
        return body

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """
        Send one completion request.

        Raises:
            AuthFailedError: API key rejected
            RateLimitedError: Still throttled after retries
            InvalidResponseError: Unusable response shape
            NetworkError, RequestTimeoutError: Retries exhausted
            CircuitOpenError: Provider circuit open
        """
        body = self._build_body(request)
        start_time = time.monotonic()
        try:
            data = await self.resilience.execute(
                lambda: self._send(body),
                circuit=self.provider.circuit_name,
            )
        except IntegrationError as e:
            if self._metrics:
                self._metrics.record_llm_error(self.provider.value, e.__class__.__name__)
            raise

        response = self._parse_response(data, body["model"])
        duration = time.monotonic() - start_time
        response.latency_ms = duration * 1000

        logger.info(
            f"{self.spec.display_name} completion: {response.input_tokens} in / "
            f"{response.output_tokens} out tokens in {duration:.2f}s"
        )
        if self._metrics:
            self._metrics.record_llm_call(
                self.provider.value, response.model,
                response.input_tokens, response.output_tokens, duration,
            )
        if self._audit:
            self._audit.log_llm_call(
                self.provider.value, response.model,
                response.input_tokens, response.output_tokens, duration,
            )
        return response

    async def _send(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """One HTTP attempt, errors mapped to the shared taxonomy."""
        service = self.provider.circuit_name
        response = await self.transport.request(
            "POST",
            self.spec.api_url,
            headers=self._headers(),
            json=body,
            service=service,
            timeout=self.timeout,
        )
        if self._metrics:
            self._metrics.record_http_request(service, "POST", response.status)
        if not response.ok:
            raise self._map_error(response)

        data = response.json(service=service)
        if isinstance(data, list) and self.spec.list_wrapped_errors and data:
            data = data[0]
        if not isinstance(data, dict):
            raise InvalidResponseError(
                f"{self.spec.display_name} returned a non-object response", service=service
            )
        if self.spec.errors_in_success_body and isinstance(data.get("error"), dict):
            raise self._map_embedded_error(data["error"])
        return data

    def _map_error(self, response: HttpResponse) -> IntegrationError:
        service = self.provider.circuit_name
        if response.status in (401, 403):
            return AuthFailedError(
                f"Invalid {self.spec.display_name} API key",
                status_code=response.status,
                service=service,
            )
        error = classify_response(response, service, self.resilience.policy.retryable_statuses)
        if isinstance(error, RateLimitedError) and error.retry_after is None:
            error.retry_after = 0
        return error

    def _map_embedded_error(self, error: Dict[str, Any]) -> IntegrationError:
        """Errors OpenRouter reports with HTTP 200."""
        code = error.get("code")
        try:
            status = int(code)
        except (TypeError, ValueError):
            status = 502
        message = str(error.get("message") or "upstream provider error")
        return classify_response(
            HttpResponse(status=status, text=json.dumps({"error": {"message": message}})),
            self.provider.circuit_name,
            self.resilience.policy.retryable_statuses,
        )

    def _parse_response(self, data: Dict[str, Any], requested_model: str) -> CompletionResponse:
        service = self.provider.circuit_name
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise InvalidResponseError(
                f"{self.spec.display_name} returned no choices", service=service
            )
        message = choices[0].get("message") or {}
        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            raise InvalidResponseError(
                f"{self.spec.display_name} returned empty content", service=service
            )
        usage = data.get("usage") or {}
        return CompletionResponse(
            content=content,
            model=data.get("model") or requested_model,
            provider=self.provider,
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
        )


# =============================================================================
# FACTORY
# =============================================================================

def create_completion_client(
    config: "AIConfig",
    transport: HttpTransport,
    resilience: ResilienceDecorator,
    task: str = "triage",
    env: Optional[Mapping[str, str]] = None,
    metrics: Optional["MetricsCollector"] = None,
    audit: Optional["AuditLogger"] = None,
) -> CompletionClient:
    """
    Build the completion client for a task, honoring per-task overrides.

    Raises:
        ConfigurationError: Unknown provider
        AuthFailedError: Provider API key missing
    """
    effective = config.for_task(task)
    provider = CompletionProvider.parse(effective.provider)
    api_key = resolve_api_key(provider, env)
    model = effective.model or provider.spec.default_model
    logger.info(f"Using {provider.spec.display_name} ({model}) for {task}")
    return CompletionClient(
        provider,
        api_key,
        transport,
        resilience,
        model=model,
        timeout=config.timeout_seconds,
        metrics=metrics,
        audit=audit,
    )


__all__ = [
    "CompletionProvider",
    "ProviderSpec",
    "PROVIDER_SPECS",
    "CompletionRequest",
    "CompletionResponse",
    "CompletionClient",
    "resolve_api_key",
    "create_completion_client",
]
