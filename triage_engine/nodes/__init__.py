# =============================================================================
# ISSUE TRIAGE SYSTEM - TRIAGE NODES PACKAGE
# =============================================================================
"""
Triage Nodes Package

Workflow steps for triaging issues. Every step takes a TriageContext as its
first argument.

Usage:
    from triage_engine.nodes import create_triage_context, triage_many

    ctx = await create_triage_context(config)
    try:
        outcomes = await triage_many(ctx, ["o/r#1", "o/r#2"], dry_run=True)
    finally:
        await ctx.close()
"""

# Base module
from triage_engine.nodes._base import (
    TriageContext,
    create_triage_context,
)

# Node implementation
from triage_engine.nodes.triage_node import (
    TRIAGE_MARKER,
    OutcomeStatus,
    TriageStatus,
    ApplyResult,
    TriageOutcome,
    fetch_issue,
    check_already_triaged,
    analyze_issue,
    render_triage_markdown,
    post_triage_comment,
    apply_triage_labels,
    triage_node,
    triage_many,
    list_issues_needing_triage,
)


__all__ = [
    # Base
    "TriageContext",
    "create_triage_context",
    # Node
    "TRIAGE_MARKER",
    "OutcomeStatus",
    "TriageStatus",
    "ApplyResult",
    "TriageOutcome",
    "fetch_issue",
    "check_already_triaged",
    "analyze_issue",
    "render_triage_markdown",
    "post_triage_comment",
    "apply_triage_labels",
    "triage_node",
    "triage_many",
    "list_issues_needing_triage",
]
