# =============================================================================
# ISSUE TRIAGE SYSTEM - GITHUB INTEGRATION PACKAGE
# =============================================================================
"""
GitHub Integration Package

Components:
    - GitHubClient: REST and GraphQL client (cached reads, unretried writes)
    - CredentialResolver: Token lookup in priority order
    - DeviceAuthorizationFlow: OAuth device flow login

Authentication order:
    GH_TOKEN / GITHUB_TOKEN, then `gh auth token`, then the OS keyring.

Usage:
    from triage_engine.github import CredentialResolver, GitHubClient

    credential = await CredentialResolver().resolve()
    client = GitHubClient(credential, transport, resilience, cache=cache)
    issue = await client.get_issue("octocat", "hello-world", 42)
"""

from triage_engine.github.auth import (
    Credential,
    CredentialSource,
    CredentialResolver,
    KeyringStore,
    GhCliSession,
)

from triage_engine.github.client import (
    GitHubClient,
    RateLimitStatus,
    IssueDetails,
    IssueComment,
    RelatedIssue,
    parse_issue_reference,
)

from triage_engine.github.device_flow import (
    DeviceFlowState,
    DeviceAuthorizationSession,
    DeviceAuthorizationFlow,
)

__all__ = [
    # Auth
    "Credential",
    "CredentialSource",
    "CredentialResolver",
    "KeyringStore",
    "GhCliSession",
    # Client
    "GitHubClient",
    "RateLimitStatus",
    "IssueDetails",
    "IssueComment",
    "RelatedIssue",
    "parse_issue_reference",
    # Device flow
    "DeviceFlowState",
    "DeviceAuthorizationSession",
    "DeviceAuthorizationFlow",
]
