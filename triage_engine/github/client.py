# =============================================================================
# ISSUE TRIAGE SYSTEM - GITHUB API CLIENT
# =============================================================================
"""
GitHub API Client

Async client for the GitHub REST and GraphQL APIs.

Every call goes through the resilience decorator on the ``github`` circuit.
Reads are idempotent and retried; writes (comments, labels) are attempted
once. Reads of issues, comments, search results and repository metadata
are fronted by the TTL cache, and each write invalidates the cache entries
of the resource it touched.

Features:
    - Bearer authentication with a resolved Credential
    - Rate limit tracking per resource (core, search, graphql)
    - Primary rate limit exhaustion reported as RateLimitedError
    - Issue reference parsing (URL, owner/repo#N, bare number)

Usage:
    client = GitHubClient(credential, transport, resilience, cache)
    issue = await client.get_issue("octocat", "hello-world", 42)
    await client.add_comment("octocat", "hello-world", 42, "Thanks!")
"""

import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from triage_engine.engine.cache import CacheKey, TTLCache
from triage_engine.engine.errors import (
    ClientRequestError,
    InvalidResponseError,
    NotFoundError,
    RateLimitedError,
)
from triage_engine.engine.resilience import ResilienceDecorator
from triage_engine.engine.transport import HttpResponse, HttpTransport, classify_response
from triage_engine.github.auth import Credential

if TYPE_CHECKING:
    from monitoring.metrics import MetricsCollector


logger = logging.getLogger(__name__)

# Rate-limit waits longer than this are surfaced instead of slept through
MAX_RATE_LIMIT_WAIT = 60.0

# 30 pages of 100 comments
MAX_COMMENT_PAGES = 30


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class RateLimitStatus:
    """Rate limit state of one GitHub API resource."""
    resource: str
    limit: int
    remaining: int
    reset: int  # epoch seconds

    LOW_THRESHOLD = 100

    @property
    def is_low(self) -> bool:
        return self.remaining < self.LOW_THRESHOLD

    def reset_in(self, now: Optional[float] = None) -> float:
        current = now if now is not None else time.time()
        return max(0.0, self.reset - current)

    def message(self) -> str:
        return f"{self.resource}: {self.remaining}/{self.limit} remaining"


@dataclass
class IssueComment:
    id: int
    author: str
    body: str
    created_at: str = ""
    url: str = ""


@dataclass
class RelatedIssue:
    number: int
    title: str
    state: str = "open"
    url: str = ""


@dataclass
class IssueDetails:
    """Everything the triage workflow knows about one issue."""
    owner: str
    repo: str
    number: int
    title: str
    body: str = ""
    url: str = ""
    state: str = "open"
    author: str = ""
    labels: List[str] = field(default_factory=list)
    milestone: Optional[str] = None
    comments: List[IssueComment] = field(default_factory=list)
    available_labels: List[str] = field(default_factory=list)
    available_milestones: List[str] = field(default_factory=list)
    related_issues: List[RelatedIssue] = field(default_factory=list)

    @property
    def full_repo(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def reference(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"


# =============================================================================
# ISSUE REFERENCES
# =============================================================================

_URL_RE = re.compile(
    r"^https?://github\.com/(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+)/issues/(?P<number>\d+)/?(?:[#?].*)?$"
)
_PULL_URL_RE = re.compile(r"^https?://github\.com/[\w.-]+/[\w.-]+/pulls?/\d+")
_SHORT_RE = re.compile(r"^(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+)#(?P<number>\d+)$")
_REPO_RE = re.compile(r"^(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+)$")


def parse_issue_reference(
    reference: str, repo_context: Optional[str] = None
) -> Tuple[str, str, int]:
    """
    Parse an issue reference into (owner, repo, number).

    Accepts:
        https://github.com/owner/repo/issues/123
        owner/repo#123
        123 or #123 (requires repo_context "owner/repo")

    Raises:
        ValueError: Unrecognized reference, pull request URL, or missing
            repo context
    """
    reference = reference.strip()
    if _PULL_URL_RE.match(reference):
        raise ValueError(
            f"{reference} is a pull request. Only issues can be triaged"
        )
    for pattern in (_URL_RE, _SHORT_RE):
        match = pattern.match(reference)
        if match:
            return match["owner"], match["repo"], int(match["number"])

    bare = reference.lstrip("#")
    if bare.isdigit():
        if not repo_context:
            raise ValueError(
                f"Bare issue number '{reference}' needs a repository (owner/repo)"
            )
        match = _REPO_RE.match(repo_context.strip())
        if not match:
            raise ValueError(
                f"Invalid repository format: {repo_context}. Expected format: owner/repo"
            )
        return match["owner"], match["repo"], int(bare)

    raise ValueError(
        f"Invalid issue reference: {reference}. "
        "Expected a GitHub issue URL, owner/repo#number, or a number"
    )


# =============================================================================
# GITHUB CLIENT CLASS
# =============================================================================

class GitHubClient:
    """
    Async GitHub API client.

    Attributes:
        credential: Resolved bearer credential
        base_url: GitHub API base URL
        rate_limits: Last seen rate limit per resource
    """

    DEFAULT_BASE_URL = "https://api.github.com"
    API_VERSION = "2022-11-28"
    SERVICE = "github"

    def __init__(
        self,
        credential: Credential,
        transport: HttpTransport,
        resilience: ResilienceDecorator,
        cache: Optional[TTLCache] = None,
        base_url: str = None,
        timeout: Optional[float] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.credential = credential
        self.transport = transport
        self.resilience = resilience
        self.cache = cache
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._metrics = metrics
        self.rate_limits: Dict[str, RateLimitStatus] = {}

        logger.info(f"GitHubClient initialized ({credential.source.value} credential)")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": self.credential.authorization_header,
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": self.API_VERSION,
        }

    # =========================================================================
    # HTTP METHODS
    # =========================================================================

    async def _send(
        self,
        method: str,
        endpoint: str,
        data: Any = None,
        params: Dict[str, Any] = None,
    ) -> Any:
        """One authenticated request, classified but not retried."""
        url = f"{self.base_url}{endpoint}"
        response = await self.transport.request(
            method,
            url,
            headers=self._headers(),
            json=data,
            params=params,
            service=self.SERVICE,
            timeout=self.timeout,
        )
        self._update_rate_limit(response)
        if self._metrics:
            self._metrics.record_http_request(self.SERVICE, method, response.status)

        if not response.ok:
            raise self._handle_error(response)
        if response.status == 204:
            return {}
        return response.json(service=self.SERVICE)

    async def _read(self, endpoint: str, params: Dict[str, Any] = None) -> Any:
        return await self.resilience.execute(
            lambda: self._send("GET", endpoint, params=params),
            circuit=self.SERVICE,
        )

    async def _read_pages(
        self,
        endpoint: str,
        params: Dict[str, Any] = None,
        per_page: int = 100,
        max_pages: int = MAX_COMMENT_PAGES,
    ) -> List[dict]:
        """Follow ``page=N`` until a short page; each page is retried on its own."""
        items: List[dict] = []
        for page in range(1, max_pages + 1):
            page_params = dict(params or {}, per_page=per_page, page=page)
            batch = await self._read(endpoint, params=page_params) or []
            items.extend(batch)
            if len(batch) < per_page:
                return items
        logger.warning(f"Stopped paging {endpoint} after {max_pages} pages")
        return items

    async def _write(self, method: str, endpoint: str, data: Any = None) -> Any:
        return await self.resilience.execute(
            lambda: self._send(method, endpoint, data=data),
            circuit=self.SERVICE,
            idempotent=False,
        )

    async def _cached_read(
        self, key: CacheKey, endpoint: str, params: Dict[str, Any] = None
    ) -> Any:
        if self.cache is None:
            return await self._read(endpoint, params)
        return await self.cache.get_or_fetch(key, lambda: self._read(endpoint, params))

    def _handle_error(self, response: HttpResponse) -> Exception:
        """Map an error response to the shared taxonomy."""
        if response.status in (403, 429) and response.header("X-RateLimit-Remaining") == "0":
            reset = response.header("X-RateLimit-Reset")
            wait = max(0.0, float(reset) - time.time()) if reset and reset.isdigit() else None
            error = RateLimitedError(
                "GitHub API rate limit exceeded",
                retry_after=wait,
                status_code=response.status,
                service=self.SERVICE,
            )
            if wait is None or wait > MAX_RATE_LIMIT_WAIT:
                error.retryable = False
            logger.warning(f"GitHub rate limit exhausted; resets in {wait or 0:.0f}s")
            return error

        if response.status == 403 and response.header("Retry-After"):
            # Secondary rate limit
            return classify_response(
                HttpResponse(429, response.headers, response.text, response.url),
                self.SERVICE,
                self.resilience.policy.retryable_statuses,
            )

        error = classify_response(response, self.SERVICE, self.resilience.policy.retryable_statuses)
        logger.error(f"GitHub API error: {error}")
        return error

    def _update_rate_limit(self, response: HttpResponse):
        """Update rate limit info from response headers."""
        remaining = response.header("X-RateLimit-Remaining")
        if remaining is None:
            return
        resource = response.header("X-RateLimit-Resource", "core")
        try:
            status = RateLimitStatus(
                resource=resource,
                limit=int(response.header("X-RateLimit-Limit", "0")),
                remaining=int(remaining),
                reset=int(response.header("X-RateLimit-Reset", "0")),
            )
        except (TypeError, ValueError):
            return
        self.rate_limits[resource] = status
        if self._metrics:
            self._metrics.set_github_rate_limit(resource, status.remaining)
        if status.is_low:
            logger.warning(f"GitHub rate limit low: {status.message()}")

    # =========================================================================
    # ISSUE OPERATIONS
    # =========================================================================

    async def get_issue(self, owner: str, repo: str, number: int) -> dict:
        """
        Get issue by number.

        Raises:
            NotFoundError: If issue doesn't exist
        """
        key = CacheKey("issues", owner, repo, str(number))
        return await self._cached_read(key, f"/repos/{owner}/{repo}/issues/{number}")

    async def list_comments(
        self, owner: str, repo: str, number: int, per_page: int = 100
    ) -> List[dict]:
        """All comments on an issue, oldest first."""
        key = CacheKey("comments", owner, repo, str(number))
        endpoint = f"/repos/{owner}/{repo}/issues/{number}/comments"

        async def fetch():
            return await self._read_pages(endpoint, per_page=min(per_page, 100))

        if self.cache is None:
            return await fetch()
        return await self.cache.get_or_fetch(key, fetch)

    async def list_open_issues(
        self,
        owner: str,
        repo: str,
        since: Optional[str] = None,
        per_page: int = 100,
    ) -> List[dict]:
        """
        Open issues of a repository, excluding pull requests.

        Args:
            since: Only issues updated after this ISO 8601 timestamp
        """
        params: Dict[str, Any] = {
            "state": "open",
            "sort": "created",
            "direction": "desc",
            "per_page": min(per_page, 100),
        }
        if since:
            params["since"] = since
        issues = await self._read(f"/repos/{owner}/{repo}/issues", params=params)
        return [issue for issue in issues or [] if "pull_request" not in issue]

    async def search_issues(
        self, owner: str, repo: str, terms: str, limit: int = 10
    ) -> List[dict]:
        """Search issues in one repository. Uses the ``search`` rate limit."""
        query = f"repo:{owner}/{repo} is:issue {terms}".strip()
        digest = hashlib.sha1(query.encode("utf-8")).hexdigest()[:12]
        key = CacheKey("search", owner, repo, digest)
        result = await self._cached_read(
            key, "/search/issues", params={"q": query, "per_page": min(limit, 100)}
        )
        return (result or {}).get("items", [])[:limit]

    # =========================================================================
    # REPOSITORY METADATA
    # =========================================================================

    async def list_repo_labels(self, owner: str, repo: str) -> List[str]:
        """Label names defined in the repository."""
        key = CacheKey("repo_metadata", owner, repo, "labels")
        labels = await self._cached_read(
            key, f"/repos/{owner}/{repo}/labels", params={"per_page": 100}
        )
        return [label["name"] for label in labels or [] if label.get("name")]

    async def list_milestones(self, owner: str, repo: str) -> List[str]:
        """Titles of open milestones."""
        key = CacheKey("repo_metadata", owner, repo, "milestones")
        milestones = await self._cached_read(
            key,
            f"/repos/{owner}/{repo}/milestones",
            params={"state": "open", "per_page": 100},
        )
        return [m["title"] for m in milestones or [] if m.get("title")]

    # =========================================================================
    # WRITE OPERATIONS (never retried)
    # =========================================================================

    async def add_comment(self, owner: str, repo: str, number: int, body: str) -> dict:
        """
        Add a comment to an issue.

        Returns:
            Created comment data (``html_url`` is the comment link)
        """
        try:
            return await self._write(
                "POST", f"/repos/{owner}/{repo}/issues/{number}/comments", data={"body": body}
            )
        finally:
            # Invalidate even on failure: the write may have landed before the error
            await self._invalidate_issue(owner, repo, number)

    async def add_labels(
        self, owner: str, repo: str, number: int, labels: List[str]
    ) -> List[str]:
        """
        Add labels to an issue (existing labels are kept).

        Returns:
            All label names now on the issue
        """
        try:
            result = await self._write(
                "POST", f"/repos/{owner}/{repo}/issues/{number}/labels", data={"labels": labels}
            )
        finally:
            await self._invalidate_issue(owner, repo, number)
        return [label["name"] for label in result or [] if isinstance(label, dict)]

    async def _invalidate_issue(self, owner: str, repo: str, number: int):
        if self.cache is None:
            return
        await self.cache.invalidate(CacheKey("issues", owner, repo, str(number)))
        await self.cache.invalidate(CacheKey("comments", owner, repo, str(number)))

    # =========================================================================
    # GRAPHQL
    # =========================================================================

    async def graphql(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        mutation: bool = False,
    ) -> Dict[str, Any]:
        """
        Execute a GraphQL document.

        The document text is opaque here. Queries are retried like other
        reads; mutations are attempted once.

        Raises:
            ClientRequestError: The response carried GraphQL errors
        """
        payload = {"query": query, "variables": variables or {}}
        if mutation:
            result = await self._write("POST", "/graphql", data=payload)
        else:
            result = await self.resilience.execute(
                lambda: self._send("POST", "/graphql", data=payload),
                circuit=self.SERVICE,
            )
        if not isinstance(result, dict):
            raise InvalidResponseError("GraphQL response was not an object", service=self.SERVICE)
        errors = result.get("errors")
        if errors:
            messages = "; ".join(str(e.get("message", e)) for e in errors if isinstance(e, dict))
            if any(isinstance(e, dict) and e.get("type") == "NOT_FOUND" for e in errors):
                raise NotFoundError(messages or "GraphQL resource not found", service=self.SERVICE)
            raise ClientRequestError(f"GraphQL error: {messages}", service=self.SERVICE)
        return result.get("data") or {}

    # =========================================================================
    # RATE LIMIT
    # =========================================================================

    async def get_rate_limit(self) -> Dict[str, RateLimitStatus]:
        """
        Current rate limit status of every resource.

        Calling /rate_limit does not count against the limit.
        """
        data = await self._read("/rate_limit")
        statuses: Dict[str, RateLimitStatus] = {}
        for resource, values in ((data or {}).get("resources") or {}).items():
            try:
                statuses[resource] = RateLimitStatus(
                    resource=resource,
                    limit=int(values["limit"]),
                    remaining=int(values["remaining"]),
                    reset=int(values["reset"]),
                )
            except (KeyError, TypeError, ValueError):
                continue
        self.rate_limits.update(statuses)
        return statuses


__all__ = [
    "GitHubClient",
    "RateLimitStatus",
    "IssueDetails",
    "IssueComment",
    "RelatedIssue",
    "parse_issue_reference",
    "MAX_RATE_LIMIT_WAIT",
]
