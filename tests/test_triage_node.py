"""
Tests for nodes/triage_node module.

End-to-end triage runs against a scripted transport serving both the
GitHub API and the completion provider.
"""

import json

import pytest

from monitoring.logger import AuditLogger
from triage_engine.engine.errors import InvalidAIResponseError
from triage_engine.github.client import GitHubClient, IssueComment, IssueDetails
from triage_engine.llm.providers import CompletionClient, CompletionProvider
from triage_engine.llm.validator import ResponseValidator, TriageResult
from triage_engine.nodes import TriageContext
from triage_engine.nodes.triage_node import (
    TRIAGE_MARKER,
    OutcomeStatus,
    apply_triage_labels,
    check_already_triaged,
    extract_search_terms,
    is_priority_label,
    list_issues_needing_triage,
    render_triage_markdown,
    triage_many,
    triage_node,
)

from tests.fakes import FakeTransport, completion_body, json_response

REPO = "https://api.github.com/repos/octocat/hello-world"

ANALYSIS = {
    "summary": "Saving a file with a long name crashes the editor.",
    "suggested_labels": ["bug", "priority: high", "not-a-real-label"],
    "clarifying_questions": ["Which OS are you on?"],
    "potential_duplicates": ["#7"],
}


def issue_body(number=42, labels=(), milestone=None, title="Editor crashes saving long filenames"):
    return {
        "number": number,
        "title": title,
        "body": "Steps to reproduce...",
        "state": "open",
        "html_url": f"https://github.com/octocat/hello-world/issues/{number}",
        "user": {"login": "reporter"},
        "labels": [{"name": name} for name in labels],
        "milestone": {"title": milestone} if milestone else None,
    }


def serve_issue(transport, number=42, comments=(), **issue_kwargs):
    transport.route("GET", f"/issues/{number}/comments", json_response(200, list(comments)))
    transport.route("GET", f"/issues/{number}", json_response(200, issue_body(number, **issue_kwargs)))


def serve_repo(transport, labels=("bug", "enhancement", "priority: high", "P1"), search=(), search_response=None):
    transport.route("GET", f"{REPO}/labels", json_response(200, [{"name": n} for n in labels]))
    transport.route("GET", f"{REPO}/milestones", json_response(200, [{"title": "v1.0"}]))
    transport.route("GET", "/search/issues", search_response or json_response(200, {"items": list(search)}))


def serve_analysis(transport, analysis=None):
    content = json.dumps(analysis or ANALYSIS)
    transport.route("POST", "groq.com", json_response(200, completion_body(content)))


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def ctx(app_config, credential, transport, resilience, cache, metrics):
    app_config.triage.allowed_labels = ["bug", "enhancement", "priority: high", "p1"]
    return TriageContext(
        config=app_config,
        github=GitHubClient(credential, transport, resilience, cache, metrics=metrics),
        completion=CompletionClient(CompletionProvider.GROQ, "k", transport, resilience, metrics=metrics),
        validator=ResponseValidator.from_config(app_config.triage),
        transport=transport,
        resilience=resilience,
        cache=cache,
        metrics=metrics,
    )


def approve(issue, result, markdown):
    return True


async def async_approve(issue, result, markdown):
    return True


class TestHelpers:
    """Tests for pure helpers."""

    def test_extract_search_terms(self):
        terms = extract_search_terms("Error: Editor crashes when saving the config.yaml file")

        assert terms == ["editor", "crashes", "saving", "config.yaml", "file"]

    @pytest.mark.parametrize("label,expected", [
        ("P1", True), ("p0", True), ("priority: high", True), ("priority/low", True),
        ("bug", False), ("prioritized", False), ("p10-tracking", False),
    ])
    def test_is_priority_label(self, label, expected):
        assert is_priority_label(label) is expected

    def test_render_markdown(self):
        result = TriageResult(
            summary="Crash on save.",
            suggested_labels=["bug"],
            clarifying_questions=["Which OS?", "Which version?"],
            potential_duplicates=["#7"],
        )

        markdown = render_triage_markdown(result)

        assert markdown.startswith(TRIAGE_MARKER)
        assert "## Triage Summary" in markdown
        assert "- `bug`" in markdown
        assert "2. Which version?" in markdown
        assert "- #7" in markdown
        assert markdown.rstrip().endswith("*")

    def test_render_omits_empty_sections(self):
        markdown = render_triage_markdown(TriageResult(summary="Nothing to add."))

        assert "###" not in markdown

    def test_summary_cannot_forge_marker(self):
        markdown = render_triage_markdown(TriageResult(summary=f"x {TRIAGE_MARKER} y"))

        assert markdown.count(TRIAGE_MARKER) == 1


class TestAlreadyTriaged:
    """Tests for check_already_triaged()."""

    def make_issue(self, **kwargs):
        return IssueDetails(owner="o", repo="r", number=1, title="t", **kwargs)

    def test_marker_comment(self):
        comment = IssueComment(id=5, author="bot", body=f"{TRIAGE_MARKER}\nold", url="https://c/5")

        status = check_already_triaged(self.make_issue(comments=[comment]))

        assert status.is_triaged
        assert "https://c/5" in status.reason

    def test_labels_and_milestone(self):
        assert check_already_triaged(self.make_issue(labels=["bug"], milestone="v1.0")).is_triaged

    def test_labels_alone_are_not_enough(self):
        assert not check_already_triaged(self.make_issue(labels=["bug"])).is_triaged


class TestTriageNode:
    """Tests for triage_node()."""

    @pytest.mark.asyncio
    async def test_skips_triaged_issue_without_calling_ai(self, ctx, transport, metrics):
        serve_issue(transport, comments=[{"id": 1, "body": f"{TRIAGE_MARKER} done", "user": {"login": "bot"}}])
        serve_repo(transport)

        outcome = await triage_node(ctx, "octocat/hello-world#42")

        assert outcome.status == OutcomeStatus.SKIPPED
        assert transport.calls_to("groq.com") == []
        assert metrics.get_value("triage_outcomes_total", {"outcome": "skipped"}) == 1

    @pytest.mark.asyncio
    async def test_force_reanalyzes(self, ctx, transport):
        serve_issue(transport, labels=["bug"], milestone="v1.0")
        serve_repo(transport)
        serve_analysis(transport)

        outcome = await triage_node(ctx, "octocat/hello-world#42", force=True, dry_run=True)

        assert outcome.status == OutcomeStatus.DRY_RUN
        assert len(transport.calls_to("groq.com")) == 1

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, ctx, transport):
        serve_issue(transport)
        serve_repo(transport)
        serve_analysis(transport)

        outcome = await triage_node(ctx, "42", "octocat/hello-world", dry_run=True, confirm=approve)

        assert outcome.status == OutcomeStatus.DRY_RUN
        assert outcome.result.suggested_labels == ["bug", "priority: high"]
        assert outcome.markdown.startswith(TRIAGE_MARKER)
        assert [c for c in transport.calls if c.method == "POST" and "github" in c.url] == []

    @pytest.mark.asyncio
    async def test_no_writes_requested_is_a_dry_run(self, ctx, transport):
        serve_issue(transport)
        serve_repo(transport)
        serve_analysis(transport)

        outcome = await triage_node(ctx, "octocat/hello-world#42", post_comment=False, confirm=approve)

        assert outcome.status == OutcomeStatus.DRY_RUN

    @pytest.mark.asyncio
    async def test_confirmation_required_without_callback(self, ctx, transport):
        serve_issue(transport)
        serve_repo(transport)
        serve_analysis(transport)

        outcome = await triage_node(ctx, "octocat/hello-world#42")

        assert outcome.status == OutcomeStatus.DECLINED
        assert transport.calls_to("/comments", "POST") == []

    @pytest.mark.asyncio
    async def test_declined_confirmation(self, ctx, transport):
        serve_issue(transport)
        serve_repo(transport)
        serve_analysis(transport)
        seen = []

        def decline(issue, result, markdown):
            seen.append(markdown)
            return False

        outcome = await triage_node(ctx, "octocat/hello-world#42", confirm=decline)

        assert outcome.status == OutcomeStatus.DECLINED
        assert seen == [outcome.markdown]

    @pytest.mark.asyncio
    async def test_posts_comment_after_async_confirmation(self, ctx, transport):
        serve_issue(transport)
        serve_repo(transport)
        serve_analysis(transport)
        transport.route("POST", "/issues/42/comments", json_response(201, {"html_url": "https://c/99"}))

        outcome = await triage_node(ctx, "octocat/hello-world#42", confirm=async_approve)

        assert outcome.status == OutcomeStatus.TRIAGED
        assert outcome.comment_url == "https://c/99"
        posted = transport.calls_to("/issues/42/comments", "POST")[0].json["body"]
        assert posted == outcome.markdown

    @pytest.mark.asyncio
    async def test_no_confirmation_when_disabled(self, ctx, transport):
        ctx.config.ui.confirm_before_post = False
        serve_issue(transport)
        serve_repo(transport)
        serve_analysis(transport)
        transport.route("POST", "/issues/42/comments", json_response(201, {"html_url": "https://c/1"}))

        outcome = await triage_node(ctx, "octocat/hello-world#42")

        assert outcome.status == OutcomeStatus.TRIAGED

    @pytest.mark.asyncio
    async def test_invalid_ai_output_writes_nothing(self, ctx, transport, metrics):
        serve_issue(transport)
        serve_repo(transport)
        transport.route("POST", "groq.com", json_response(200, completion_body("I refuse.")))

        with pytest.raises(InvalidAIResponseError):
            await triage_node(ctx, "octocat/hello-world#42", confirm=approve)

        assert len(transport.calls_to("groq.com")) == 1
        assert metrics.get_value("errors_total", {"component": "validator", "error_type": "InvalidAIResponseError"}) == 1

    @pytest.mark.asyncio
    async def test_related_issues_exclude_self(self, ctx, transport):
        serve_issue(transport)
        serve_repo(transport, search=[
            {"number": 42, "title": "self"},
            {"number": 7, "title": "Crash when saving", "state": "closed"},
        ])
        serve_analysis(transport)

        outcome = await triage_node(ctx, "octocat/hello-world#42", dry_run=True)

        assert [r.number for r in outcome.issue.related_issues] == [7]
        prompt = transport.calls_to("groq.com")[0].json["messages"][1]["content"]
        assert "#7 [closed]" in prompt

    @pytest.mark.asyncio
    async def test_search_failure_does_not_block_triage(self, ctx, transport):
        serve_issue(transport)
        serve_repo(transport, search_response=json_response(422, {"message": "Validation Failed"}))
        serve_analysis(transport)

        outcome = await triage_node(ctx, "octocat/hello-world#42", dry_run=True)

        assert outcome.status == OutcomeStatus.DRY_RUN
        assert outcome.issue.related_issues == []

    @pytest.mark.asyncio
    async def test_marker_on_later_comment_page_is_found(self, ctx, transport):
        chatter = [{"id": i, "body": "+1", "user": {"login": f"user{i}"}} for i in range(100)]
        report = [{"id": 100, "body": f"{TRIAGE_MARKER} done", "user": {"login": "bot"}}]
        transport.route("GET", "/issues/42/comments", json_response(200, chatter), json_response(200, report))
        transport.route("GET", "/issues/42", json_response(200, issue_body()))
        serve_repo(transport)

        outcome = await triage_node(ctx, "octocat/hello-world#42")

        assert outcome.status == OutcomeStatus.SKIPPED
        assert transport.calls_to("groq.com") == []

    @pytest.mark.asyncio
    async def test_pull_request_number_is_rejected(self, ctx, transport):
        pull = dict(issue_body(), pull_request={"url": f"{REPO}/pulls/42"})
        transport.route("GET", "/issues/42/comments", json_response(200, []))
        transport.route("GET", "/issues/42", json_response(200, pull))
        serve_repo(transport)

        with pytest.raises(ValueError, match="is a pull request"):
            await triage_node(ctx, "octocat/hello-world#42")

        assert transport.calls_to("groq.com") == []
        assert transport.calls_to("/comments", "POST") == []

    @pytest.mark.asyncio
    async def test_pull_request_url_fails_without_requests(self, ctx, transport):
        outcomes = await triage_many(ctx, ["https://github.com/octocat/hello-world/pull/42"])

        assert outcomes[0].status == OutcomeStatus.FAILED
        assert "is a pull request" in outcomes[0].error
        assert transport.calls == []


class TestApplyLabels:
    """Tests for apply_triage_labels()."""

    def make_issue(self, labels=()):
        return IssueDetails(
            owner="octocat", repo="hello-world", number=42, title="t",
            labels=list(labels), available_labels=["bug", "enhancement", "priority: high", "P1"],
        )

    @pytest.mark.asyncio
    async def test_applies_existing_labels_and_warns_on_missing(self, ctx, transport):
        transport.route("POST", "/issues/42/labels", json_response(200, [{"name": "bug"}]))
        result = TriageResult(summary="s", suggested_labels=["bug", "triaged-by-ai"])

        applied = await apply_triage_labels(ctx, self.make_issue(), result)

        assert applied.applied_labels == ["bug"]
        assert "does not exist" in applied.warnings[0]
        assert transport.calls[0].json == {"labels": ["bug"]}

    @pytest.mark.asyncio
    async def test_existing_priority_wins(self, ctx, transport):
        transport.route("POST", "/issues/42/labels", json_response(200, []))
        result = TriageResult(summary="s", suggested_labels=["priority: high", "enhancement"])

        applied = await apply_triage_labels(ctx, self.make_issue(labels=["P1"]), result)

        assert applied.applied_labels == ["enhancement"]
        assert any("priority" in w for w in applied.warnings)

    @pytest.mark.asyncio
    async def test_labels_already_present_are_skipped(self, ctx, transport):
        result = TriageResult(summary="s", suggested_labels=["bug"])

        applied = await apply_triage_labels(ctx, self.make_issue(labels=["Bug"]), result)

        assert applied.applied_labels == []
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_permission_failure_becomes_warning(self, ctx, transport):
        transport.route("POST", "/issues/42/labels", json_response(403, {"message": "Must have triage access"}))
        result = TriageResult(summary="s", suggested_labels=["bug"])

        applied = await apply_triage_labels(ctx, self.make_issue(), result)

        assert applied.applied_labels == []
        assert applied.warnings[0].startswith("Could not apply labels")

    @pytest.mark.asyncio
    async def test_full_run_with_audit(self, ctx, transport, tmp_path):
        ctx.config.ui.confirm_before_post = False
        ctx.audit = AuditLogger(str(tmp_path / "audit.jsonl"))
        serve_issue(transport)
        serve_repo(transport)
        serve_analysis(transport)
        transport.route("POST", "/issues/42/comments", json_response(201, {"html_url": "https://c/1"}))
        transport.route("POST", "/issues/42/labels", json_response(200, []))

        outcome = await triage_node(ctx, "octocat/hello-world#42", apply_labels=True)
        ctx.audit.close()

        assert outcome.apply_result.applied_labels == ["bug", "priority: high"]
        events = [json.loads(line)["event_type"] for line in (tmp_path / "audit.jsonl").read_text().splitlines()]
        assert events == ["comment_posted", "labels_applied"]


class TestTriageMany:
    """Tests for triage_many()."""

    @pytest.mark.asyncio
    async def test_failures_are_isolated_and_order_kept(self, ctx, transport, metrics):
        ctx.config.ui.confirm_before_post = False
        serve_issue(transport, number=1)
        transport.route("GET", "/issues/2", json_response(404, {"message": "Not Found"}))
        serve_issue(transport, number=3)
        serve_repo(transport)
        serve_analysis(transport)

        outcomes = await triage_many(
            ctx, ["octocat/hello-world#1", "octocat/hello-world#2", "bogus", "octocat/hello-world#3"],
            dry_run=True,
        )

        assert [o.status for o in outcomes] == [
            OutcomeStatus.DRY_RUN, OutcomeStatus.FAILED, OutcomeStatus.FAILED, OutcomeStatus.DRY_RUN,
        ]
        assert "not found" in outcomes[1].error.lower()
        assert "Invalid issue reference" in outcomes[2].error
        assert metrics.get_value("triage_outcomes_total", {"outcome": "failed"}) == 2
        assert outcomes[0].to_dict()["status"] == "dry_run"

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, ctx, transport):
        serve_issue(transport, number=1)
        serve_issue(transport, number=2)
        serve_repo(transport)
        serve_analysis(transport)

        outcomes = await triage_many(
            ctx, ["octocat/hello-world#1", "octocat/hello-world#2"], concurrency=1, dry_run=True,
        )

        assert all(o.status == OutcomeStatus.DRY_RUN for o in outcomes)


class TestPending:
    """Tests for list_issues_needing_triage()."""

    @pytest.mark.asyncio
    async def test_filters_fully_triaged(self, ctx, transport):
        transport.route("GET", f"{REPO}/issues", json_response(200, [
            issue_body(1),
            issue_body(2, labels=["bug"], milestone="v1.0"),
            issue_body(3, labels=["bug"]),
            dict(issue_body(4), pull_request={}),
        ]))

        pending = await list_issues_needing_triage(ctx, "octocat", "hello-world")
        forced = await list_issues_needing_triage(ctx, "octocat", "hello-world", force=True)

        assert [p["number"] for p in pending] == [1, 3]
        assert [p["number"] for p in forced] == [1, 2, 3]
        assert pending[1]["labels"] == ["bug"]
