# =============================================================================
# ISSUE TRIAGE SYSTEM - LLM PACKAGE
# =============================================================================
"""
LLM Package

Completion providers, triage prompts and the response validator.

Usage:
    from triage_engine.llm import build_triage_request, ResponseValidator

    request = build_triage_request(issue, config.triage, config.ai)
    response = await completion.complete(request)
    result = ResponseValidator.from_config(config.triage).validate(response.content)
"""

from triage_engine.llm.providers import (
    CompletionProvider,
    ProviderSpec,
    PROVIDER_SPECS,
    CompletionRequest,
    CompletionResponse,
    CompletionClient,
    resolve_api_key,
    create_completion_client,
)

from triage_engine.llm.prompts import (
    TRIAGE_SYSTEM_PROMPT,
    build_triage_request,
    render_issue_content,
)

from triage_engine.llm.validator import (
    TriageResult,
    ResponseValidator,
    parse_json_object,
)

__all__ = [
    # Providers
    "CompletionProvider",
    "ProviderSpec",
    "PROVIDER_SPECS",
    "CompletionRequest",
    "CompletionResponse",
    "CompletionClient",
    "resolve_api_key",
    "create_completion_client",
    # Prompts
    "TRIAGE_SYSTEM_PROMPT",
    "build_triage_request",
    "render_issue_content",
    # Validator
    "TriageResult",
    "ResponseValidator",
    "parse_json_object",
]
