# =============================================================================
# ISSUE TRIAGE SYSTEM - TRIAGE NODE
# =============================================================================
"""
Triage Node Implementation

Entry point for triaging one issue. Fetches the issue with its repository
context, asks the completion provider for an analysis, validates it, and
(after confirmation) writes the result back to GitHub.

Workflow:
    FETCH --> ALREADY TRIAGED? --yes--> SKIPPED
                   |no (or force)
                   v
               ANALYZE --> VALIDATE --> dry run? --yes--> DRY_RUN
                                           |no
                                           v
                                       CONFIRM --no--> DECLINED
                                           |yes
                                           v
                                    POST COMMENT / APPLY LABELS --> TRIAGED

Nothing is written until the analysis has validated and the user (or the
configuration) has approved the write.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from monitoring.logger import log_context
from triage_engine.engine.errors import (
    AuthFailedError,
    ClientRequestError,
    IntegrationError,
    InvalidAIResponseError,
    TriageError,
    format_user_error,
)
from triage_engine.github.client import (
    IssueComment,
    IssueDetails,
    RelatedIssue,
    parse_issue_reference,
)
from triage_engine.llm.prompts import build_triage_request
from triage_engine.llm.validator import TriageResult
from triage_engine.nodes._base import TriageContext

logger = logging.getLogger(__name__)


# =============================================================================
# NODE CONFIGURATION
# =============================================================================

TRIAGE_MARKER = "<!-- issue-triage:report -->"
TRIAGE_SIGNATURE = "*Triaged with [issue-triage](https://github.com/issue-triage/issue-triage)*"

# p1, P2, priority: high, priority/low ...
PRIORITY_LABEL_RE = re.compile(r"^(p[0-9]|priority[\s:/_-].*)$", re.IGNORECASE)

SEARCH_KEYWORD_LIMIT = 5
_WORD_RE = re.compile(r"[A-Za-z][A-Za-z0-9_.-]{3,}")
_STOPWORDS = frozenset({
    "about", "after", "again", "also", "because", "been", "before", "being",
    "both", "could", "does", "doesn't", "error", "from", "have", "issue",
    "into", "just", "like", "make", "more", "only", "should", "some", "that",
    "then", "there", "they", "this", "when", "where", "which", "while",
    "will", "with", "without", "would", "your",
})

ConfirmCallback = Callable[[IssueDetails, TriageResult, str], Union[bool, Awaitable[bool]]]


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class OutcomeStatus(Enum):
    """Final status of one triage run."""
    TRIAGED = "triaged"
    SKIPPED = "skipped"
    DECLINED = "declined"
    DRY_RUN = "dry_run"
    FAILED = "failed"


@dataclass
class TriageStatus:
    """Whether an issue already carries a triage."""
    marker_comment_url: Optional[str] = None
    has_labels: bool = False
    has_milestone: bool = False

    @property
    def is_triaged(self) -> bool:
        return self.marker_comment_url is not None or (self.has_labels and self.has_milestone)

    @property
    def reason(self) -> str:
        if self.marker_comment_url is not None:
            return f"triage comment already posted ({self.marker_comment_url})"
        if self.has_labels and self.has_milestone:
            return "issue already has labels and a milestone"
        return "not triaged"


@dataclass
class ApplyResult:
    applied_labels: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class TriageOutcome:
    """Result of triage_node for one reference."""
    reference: str
    status: OutcomeStatus
    issue: Optional[IssueDetails] = None
    result: Optional[TriageResult] = None
    triage_status: Optional[TriageStatus] = None
    markdown: Optional[str] = None
    comment_url: Optional[str] = None
    apply_result: Optional[ApplyResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
            "comment_url": self.comment_url,
            "applied_labels": self.apply_result.applied_labels if self.apply_result else [],
            "warnings": self.apply_result.warnings if self.apply_result else [],
            "error": self.error,
        }


# =============================================================================
# FETCH
# =============================================================================

def extract_search_terms(title: str, limit: int = SEARCH_KEYWORD_LIMIT) -> List[str]:
    """Distinct significant words of an issue title, in order."""
    terms: List[str] = []
    for word in _WORD_RE.findall(title or ""):
        lowered = word.lower().strip(".-")
        if lowered in _STOPWORDS or lowered in terms or len(lowered) < 4:
            continue
        terms.append(lowered)
        if len(terms) >= limit:
            break
    return terms


def _parse_comment(data: Dict[str, Any]) -> IssueComment:
    return IssueComment(
        id=data.get("id", 0),
        author=(data.get("user") or {}).get("login", ""),
        body=data.get("body") or "",
        created_at=data.get("created_at", ""),
        url=data.get("html_url", ""),
    )


async def _find_related_issues(
    ctx: TriageContext, owner: str, repo: str, number: int, title: str
) -> List[RelatedIssue]:
    terms = extract_search_terms(title)
    if not terms:
        return []
    limit = ctx.config.triage.max_related_issues
    try:
        items = await ctx.github.search_issues(owner, repo, " ".join(terms), limit=limit + 1)
    except IntegrationError as e:
        # Search has its own small rate limit; triage proceeds without candidates
        logger.warning(f"Related issue search failed for {owner}/{repo}#{number}: {e}")
        return []
    related = [
        RelatedIssue(
            number=item["number"],
            title=item.get("title", ""),
            state=item.get("state", "open"),
            url=item.get("html_url", ""),
        )
        for item in items
        if item.get("number") != number
    ]
    return related[:limit]


async def fetch_issue(
    ctx: TriageContext,
    reference: str,
    repo_context: Optional[str] = None,
) -> IssueDetails:
    """
    Fetch an issue with everything the analysis needs.

    Args:
        ctx: Triage context
        reference: URL, ``owner/repo#N``, or ``N`` with repo_context
        repo_context: ``owner/repo`` for bare numbers

    Raises:
        ValueError: Unparseable reference, or the number is a pull request
        NotFoundError: Issue or repository missing
    """
    owner, repo, number = parse_issue_reference(reference, repo_context)
    gh = ctx.github

    data, comments = await asyncio.gather(
        gh.get_issue(owner, repo, number),
        gh.list_comments(owner, repo, number),
    )
    if "pull_request" in data:
        raise ValueError(f"{owner}/{repo}#{number} is a pull request. Only issues can be triaged")
    labels, milestones = await asyncio.gather(
        gh.list_repo_labels(owner, repo),
        gh.list_milestones(owner, repo),
    )
    related = await _find_related_issues(ctx, owner, repo, number, data.get("title", ""))

    milestone = data.get("milestone") or {}
    issue = IssueDetails(
        owner=owner,
        repo=repo,
        number=number,
        title=data.get("title", ""),
        body=data.get("body") or "",
        url=data.get("html_url", ""),
        state=data.get("state", "open"),
        author=(data.get("user") or {}).get("login", ""),
        labels=[label["name"] for label in data.get("labels", []) if isinstance(label, dict)],
        milestone=milestone.get("title"),
        comments=[_parse_comment(c) for c in comments or []],
        available_labels=labels,
        available_milestones=milestones,
        related_issues=related,
    )
    logger.info(
        f"Fetched {issue.reference}: {len(issue.comments)} comments, "
        f"{len(related)} related issues"
    )
    return issue


# =============================================================================
# ALREADY-TRIAGED CHECK
# =============================================================================

def check_already_triaged(issue: IssueDetails) -> TriageStatus:
    """Detect a previous triage comment or a fully labeled issue."""
    marker_url = None
    for comment in issue.comments:
        if TRIAGE_MARKER in (comment.body or ""):
            marker_url = comment.url or f"comment {comment.id}"
            break
    return TriageStatus(
        marker_comment_url=marker_url,
        has_labels=bool(issue.labels),
        has_milestone=issue.milestone is not None,
    )


# =============================================================================
# ANALYSIS
# =============================================================================

async def analyze_issue(ctx: TriageContext, issue: IssueDetails) -> TriageResult:
    """
    Ask the completion provider for a triage and validate it.

    Raises:
        InvalidAIResponseError: Output failed validation (do not retry)
        IntegrationError: Provider call failed after retries
    """
    request = build_triage_request(
        issue,
        ctx.config.triage,
        ctx.config.ai,
        related_issues=issue.related_issues,
        available_labels=issue.available_labels,
    )
    response = await ctx.require_completion().complete(request)
    try:
        result = ctx.validator.validate(response.content)
    except InvalidAIResponseError as e:
        logger.warning(
            f"Rejected {response.provider.value} output for {issue.reference}: "
            f"{e} ({len(response.content)} chars)"
        )
        if ctx.metrics:
            ctx.metrics.record_error("validator", "InvalidAIResponseError")
        raise
    logger.info(
        f"Analysis for {issue.reference}: {len(result.suggested_labels)} labels, "
        f"{len(result.clarifying_questions)} questions"
    )
    return result


def render_triage_markdown(result: TriageResult) -> str:
    """Render a triage result as a GitHub comment."""
    summary = result.summary.replace(TRIAGE_MARKER, "")
    lines = [TRIAGE_MARKER, "## Triage Summary", "", summary, ""]

    if result.suggested_labels:
        lines += ["### Suggested Labels", ""]
        lines += [f"- `{label}`" for label in result.suggested_labels]
        lines.append("")

    if result.clarifying_questions:
        lines += ["### Clarifying Questions", ""]
        lines += [f"{i}. {q}" for i, q in enumerate(result.clarifying_questions, 1)]
        lines.append("")

    if result.potential_duplicates:
        lines += ["### Potential Duplicates", ""]
        lines += [f"- {dup}" for dup in result.potential_duplicates]
        lines.append("")

    lines += ["---", TRIAGE_SIGNATURE]
    return "\n".join(lines)


# =============================================================================
# WRITES
# =============================================================================

async def post_triage_comment(
    ctx: TriageContext,
    issue: IssueDetails,
    result: TriageResult,
    markdown: Optional[str] = None,
) -> str:
    """
    Post the triage comment. Not retried.

    Returns:
        URL of the created comment
    """
    body = markdown or render_triage_markdown(result)
    comment = await ctx.github.add_comment(issue.owner, issue.repo, issue.number, body)
    url = comment.get("html_url", "")
    logger.info(f"Posted triage comment on {issue.reference}")
    if ctx.audit:
        ctx.audit.log_comment_posted(issue.full_repo, issue.number, url)
    return url


def is_priority_label(label: str) -> bool:
    return bool(PRIORITY_LABEL_RE.match(label.strip()))


async def apply_triage_labels(
    ctx: TriageContext,
    issue: IssueDetails,
    result: TriageResult,
) -> ApplyResult:
    """
    Add suggested labels that exist in the repository.

    Labels already on the issue are left alone. A maintainer-set priority
    label wins over any suggested priority.
    """
    outcome = ApplyResult()
    repo_labels = {label.lower(): label for label in issue.available_labels}
    current = {label.lower() for label in issue.labels}
    has_priority = any(is_priority_label(label) for label in issue.labels)

    to_apply: List[str] = []
    for label in result.suggested_labels:
        key = label.lower()
        if key in current:
            continue
        if has_priority and is_priority_label(label):
            outcome.warnings.append(f"Kept existing priority label; skipped '{label}'")
            continue
        name = repo_labels.get(key)
        if name is None:
            outcome.warnings.append(f"Label '{label}' does not exist in {issue.full_repo}")
            continue
        if name not in to_apply:
            to_apply.append(name)

    if not to_apply:
        return outcome

    try:
        await ctx.github.add_labels(issue.owner, issue.repo, issue.number, to_apply)
    except (AuthFailedError, ClientRequestError) as e:
        # Typically missing triage permission; the comment may already be posted
        logger.warning(f"Could not apply labels to {issue.reference}: {e}")
        outcome.warnings.append(f"Could not apply labels: {format_user_error(e)}")
        return outcome

    outcome.applied_labels = to_apply
    issue.labels = issue.labels + to_apply
    logger.info(f"Applied labels to {issue.reference}: {to_apply}")
    if ctx.audit:
        ctx.audit.log_labels_applied(issue.full_repo, issue.number, to_apply, outcome.warnings)
    return outcome


async def _confirmed(
    confirm: Optional[ConfirmCallback],
    issue: IssueDetails,
    result: TriageResult,
    markdown: str,
) -> bool:
    if confirm is None:
        return False
    answer = confirm(issue, result, markdown)
    if inspect.isawaitable(answer):
        answer = await answer
    return bool(answer)


# =============================================================================
# NODE IMPLEMENTATION
# =============================================================================

async def triage_node(
    ctx: TriageContext,
    reference: str,
    repo_context: Optional[str] = None,
    *,
    force: bool = False,
    dry_run: bool = False,
    post_comment: bool = True,
    apply_labels: bool = False,
    confirm: Optional[ConfirmCallback] = None,
) -> TriageOutcome:
    """
    Triage one issue end to end.

    Args:
        ctx: Triage context
        reference: Issue reference
        repo_context: ``owner/repo`` for bare numbers
        force: Triage even if the issue was triaged before
        dry_run: Analyze and render only
        post_comment: Post the triage comment
        apply_labels: Add suggested labels
        confirm: Called with (issue, result, markdown) before any write when
            confirmation is required; no callback means no write

    Returns:
        TriageOutcome

    Raises:
        TriageError: Any failure before the writes complete
    """
    with log_context(issue=reference):
        issue = await fetch_issue(ctx, reference, repo_context)
        outcome = TriageOutcome(reference=issue.reference, status=OutcomeStatus.TRIAGED, issue=issue)

        status = check_already_triaged(issue)
        outcome.triage_status = status
        if status.is_triaged and not force:
            logger.info(f"Skipping {issue.reference}: {status.reason}")
            return _finish(ctx, outcome, OutcomeStatus.SKIPPED)

        result = await analyze_issue(ctx, issue)
        outcome.result = result
        outcome.markdown = render_triage_markdown(result)

        if dry_run or not (post_comment or apply_labels):
            return _finish(ctx, outcome, OutcomeStatus.DRY_RUN)

        if ctx.confirm_before_post and not await _confirmed(confirm, issue, result, outcome.markdown):
            logger.info(f"Write declined for {issue.reference}")
            return _finish(ctx, outcome, OutcomeStatus.DECLINED)

        if post_comment:
            outcome.comment_url = await post_triage_comment(ctx, issue, result, outcome.markdown)
        if apply_labels:
            outcome.apply_result = await apply_triage_labels(ctx, issue, result)

        return _finish(ctx, outcome, OutcomeStatus.TRIAGED)


def _finish(ctx: TriageContext, outcome: TriageOutcome, status: OutcomeStatus) -> TriageOutcome:
    outcome.status = status
    if ctx.metrics:
        ctx.metrics.record_triage_outcome(status.value)
    return outcome


async def triage_many(
    ctx: TriageContext,
    references: Iterable[str],
    repo_context: Optional[str] = None,
    concurrency: Optional[int] = None,
    **options: Any,
) -> List[TriageOutcome]:
    """
    Triage several issues concurrently.

    A failing issue yields a FAILED outcome; the others continue.
    Outcomes are returned in input order.
    """
    semaphore = asyncio.Semaphore(concurrency or ctx.concurrency)

    async def run_one(reference: str) -> TriageOutcome:
        async with semaphore:
            try:
                return await triage_node(ctx, reference, repo_context, **options)
            except (TriageError, ValueError) as e:
                logger.error(f"Triage failed for {reference}: {e}")
                if ctx.metrics:
                    ctx.metrics.record_triage_outcome(OutcomeStatus.FAILED.value)
                    ctx.metrics.record_error("triage", e.__class__.__name__)
                if ctx.audit:
                    ctx.audit.log_error("triage", e.__class__.__name__, str(e), reference)
                return TriageOutcome(
                    reference=reference,
                    status=OutcomeStatus.FAILED,
                    error=format_user_error(e) if isinstance(e, TriageError) else str(e),
                )

    return list(await asyncio.gather(*(run_one(ref) for ref in references)))


# =============================================================================
# DISCOVERY
# =============================================================================

async def list_issues_needing_triage(
    ctx: TriageContext,
    owner: str,
    repo: str,
    since: Optional[str] = None,
    force: bool = False,
) -> List[Dict[str, Any]]:
    """
    Open issues lacking labels or a milestone (all open issues with force).

    Returns:
        Dicts with number, title, url, labels, milestone
    """
    issues = await ctx.github.list_open_issues(owner, repo, since=since)
    pending = []
    for data in issues:
        labels = [label["name"] for label in data.get("labels", []) if isinstance(label, dict)]
        milestone = (data.get("milestone") or {}).get("title")
        if not force and labels and milestone:
            continue
        pending.append({
            "number": data["number"],
            "title": data.get("title", ""),
            "url": data.get("html_url", ""),
            "labels": labels,
            "milestone": milestone,
        })
    logger.info(f"{len(pending)} of {len(issues)} open issues in {owner}/{repo} need triage")
    return pending


__all__ = [
    "TRIAGE_MARKER",
    "OutcomeStatus",
    "TriageStatus",
    "ApplyResult",
    "TriageOutcome",
    "extract_search_terms",
    "fetch_issue",
    "check_already_triaged",
    "analyze_issue",
    "render_triage_markdown",
    "post_triage_comment",
    "is_priority_label",
    "apply_triage_labels",
    "triage_node",
    "triage_many",
    "list_issues_needing_triage",
]
