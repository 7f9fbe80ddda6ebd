# =============================================================================
# ISSUE TRIAGE SYSTEM - MAIN ENTRY POINT
# =============================================================================
"""
Triage Main Module

Command line entry point. Parses arguments, loads configuration, sets up
logging and delegates to the triage workflow.

Usage:
    issue-triage triage octocat/hello-world#42 --dry-run
    issue-triage triage 42 43 --repo octocat/hello-world --apply --yes
    issue-triage pending octocat/hello-world
    issue-triage login
    issue-triage auth-status
    issue-triage rate-limit
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from monitoring.logger import AuditLogger, setup_logging
from monitoring.metrics import MetricsCollector, create_metrics_collector
from triage_engine.config import AppConfig, load_config
from triage_engine.engine.errors import (
    NotAuthenticatedError,
    TriageError,
    format_user_error,
)
from triage_engine.engine.transport import HttpTransport
from triage_engine.github.auth import CredentialResolver
from triage_engine.github.device_flow import DeviceAuthorizationFlow, DeviceAuthorizationSession
from triage_engine.nodes._base import create_audit_logger, create_triage_context
from triage_engine.nodes.triage_node import (
    OutcomeStatus,
    TriageOutcome,
    list_issues_needing_triage,
    triage_many,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


# =============================================================================
# OUTPUT
# =============================================================================


def _print_outcome(outcome: TriageOutcome, as_json: bool) -> None:
    if as_json:
        print(json.dumps(outcome.to_dict(), indent=2))
        return

    status = outcome.status
    if status == OutcomeStatus.FAILED:
        print(f"{outcome.reference}: failed - {outcome.error}")
        return
    if status == OutcomeStatus.SKIPPED:
        reason = outcome.triage_status.reason if outcome.triage_status else "already triaged"
        print(f"{outcome.reference}: skipped ({reason}). Use --force to triage again.")
        return
    if status == OutcomeStatus.DRY_RUN and outcome.markdown:
        print(f"--- {outcome.reference} (dry run) ---")
        print(outcome.markdown)
        return
    if status == OutcomeStatus.DECLINED:
        print(f"{outcome.reference}: nothing posted.")
        return

    print(f"{outcome.reference}: triaged")
    if outcome.comment_url:
        print(f"  comment: {outcome.comment_url}")
    if outcome.apply_result:
        if outcome.apply_result.applied_labels:
            print(f"  labels: {', '.join(outcome.apply_result.applied_labels)}")
        for warning in outcome.apply_result.warnings:
            print(f"  warning: {warning}")


def _make_confirm(assume_yes: bool):
    """Confirmation callback. Prompts are serialized across concurrent issues."""
    prompt_lock = asyncio.Lock()

    async def confirm(issue, result, markdown: str) -> bool:
        if assume_yes:
            return True
        if not sys.stdin.isatty():
            logger.warning("Confirmation required but stdin is not a terminal; use --yes")
            return False
        async with prompt_lock:
            print(f"--- {issue.reference}: {issue.title} ---")
            print(markdown)
            answer = await asyncio.to_thread(input, "Post this triage? [y/N] ")
        return answer.strip().lower() in ("y", "yes")

    return confirm


# =============================================================================
# COMMANDS
# =============================================================================


async def cmd_triage(args: argparse.Namespace, config: AppConfig, metrics: MetricsCollector) -> int:
    ctx = await create_triage_context(config, metrics=metrics)
    try:
        outcomes = await triage_many(
            ctx,
            args.references,
            repo_context=args.repo,
            concurrency=args.concurrency,
            force=args.force,
            dry_run=args.dry_run,
            post_comment=not args.no_comment,
            apply_labels=args.apply,
            confirm=_make_confirm(args.yes),
        )
    finally:
        await ctx.close()

    for outcome in outcomes:
        _print_outcome(outcome, args.json)
    failed = sum(1 for o in outcomes if o.status == OutcomeStatus.FAILED)
    return EXIT_ERROR if failed else EXIT_OK


async def cmd_pending(args: argparse.Namespace, config: AppConfig, metrics: MetricsCollector) -> int:
    owner, _, repo = args.repository.partition("/")
    if not owner or not repo:
        print("Repository must be given as owner/repo", file=sys.stderr)
        return EXIT_ERROR

    ctx = await create_triage_context(config, metrics=metrics, with_ai=False)
    try:
        issues = await list_issues_needing_triage(
            ctx, owner, repo, since=args.since, force=args.force
        )
    finally:
        await ctx.close()

    if args.json:
        print(json.dumps(issues, indent=2))
        return EXIT_OK
    if not issues:
        print(f"No issues in {owner}/{repo} need triage.")
    for issue in issues:
        print(f"#{issue['number']:<6} {issue['title']}")
    return EXIT_OK


async def cmd_login(args: argparse.Namespace, config: AppConfig) -> int:
    resolver = CredentialResolver()
    audit: Optional[AuditLogger] = create_audit_logger(config) if config.logging.audit_file else None

    def show_code(session: DeviceAuthorizationSession) -> None:
        print(f"Open {session.verification_uri} and enter code: {session.user_code}")
        print("Waiting for authorization...")

    async with HttpTransport(connect_timeout=config.github.connect_timeout_seconds) as transport:
        flow = DeviceAuthorizationFlow(
            transport,
            resolver,
            client_id=config.github.oauth_client_id,
            timeout=config.github.device_flow_timeout_seconds,
            audit=audit,
        )
        try:
            credential = await flow.run(on_code=show_code)
        finally:
            if audit:
                audit.close()

    if credential is None:
        print(f"Login did not complete ({flow.state.value}).", file=sys.stderr)
        return EXIT_ERROR
    print("Logged in. Token stored in the system keyring.")
    return EXIT_OK


async def cmd_logout(args: argparse.Namespace, config: AppConfig) -> int:
    removed = await CredentialResolver().logout()
    if config.logging.audit_file and removed:
        audit = create_audit_logger(config)
        audit.log_auth("logout", "keyring")
        audit.close()
    print("Stored token removed." if removed else "No stored token.")
    return EXIT_OK


async def cmd_auth_status(args: argparse.Namespace, config: AppConfig) -> int:
    try:
        credential = await CredentialResolver().resolve()
    except NotAuthenticatedError:
        print("Not authenticated. Run `issue-triage login` or set GH_TOKEN.")
        return EXIT_ERROR
    print(f"Authenticated via {credential.source.value}.")
    return EXIT_OK


async def cmd_rate_limit(args: argparse.Namespace, config: AppConfig, metrics: MetricsCollector) -> int:
    ctx = await create_triage_context(config, metrics=metrics, with_ai=False)
    try:
        statuses = await ctx.github.get_rate_limit()
    finally:
        await ctx.close()

    for name in sorted(statuses):
        status = statuses[name]
        flag = "  (low)" if status.is_low else ""
        print(f"{status.message()}, resets in {status.reset_in():.0f}s{flag}")
    return EXIT_OK


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        prog="issue-triage",
        description="AI-assisted GitHub issue triage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    triage = sub.add_parser("triage", help="Triage one or more issues")
    triage.add_argument("references", nargs="+", help="Issue URL, owner/repo#N, or N with --repo")
    triage.add_argument("--repo", help="owner/repo for bare issue numbers")
    triage.add_argument("--force", action="store_true", help="Triage even if already triaged")
    triage.add_argument("--dry-run", action="store_true", help="Print the triage without posting")
    triage.add_argument("--apply", action="store_true", help="Also apply suggested labels")
    triage.add_argument("--no-comment", action="store_true", help="Do not post a comment")
    triage.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")
    triage.add_argument("--concurrency", type=int, help="Issues triaged in parallel")
    triage.add_argument("--json", action="store_true", help="JSON output")

    pending = sub.add_parser("pending", help="List open issues that need triage")
    pending.add_argument("repository", help="owner/repo")
    pending.add_argument("--since", help="Only issues updated after this ISO 8601 time")
    pending.add_argument("--force", action="store_true", help="List all open issues")
    pending.add_argument("--json", action="store_true", help="JSON output")

    sub.add_parser("login", help="Authenticate with GitHub (device flow)")
    sub.add_parser("logout", help="Remove the stored GitHub token")
    sub.add_parser("auth-status", help="Show where the GitHub credential comes from")
    sub.add_parser("rate-limit", help="Show GitHub API rate limits")
    return parser


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


async def async_main(args: argparse.Namespace, config: AppConfig) -> int:
    """Dispatch a parsed command."""
    if args.command == "login":
        return await cmd_login(args, config)
    if args.command == "logout":
        return await cmd_logout(args, config)
    if args.command == "auth-status":
        return await cmd_auth_status(args, config)

    metrics = create_metrics_collector(
        {"namespace": config.metrics.namespace, "port": config.metrics.port},
        start_server=config.metrics.enabled,
    )
    if args.command == "triage":
        return await cmd_triage(args, config, metrics)
    if args.command == "pending":
        return await cmd_pending(args, config, metrics)
    return await cmd_rate_limit(args, config, metrics)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except TriageError as e:
        print(format_user_error(e), file=sys.stderr)
        return EXIT_ERROR

    setup_logging(
        level="DEBUG" if args.debug else config.logging.level,
        fmt=config.logging.format,
        log_file=config.logging.log_file,
    )

    try:
        return asyncio.run(async_main(args, config))
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except TriageError as e:
        logger.debug("Command failed", exc_info=True)
        print(format_user_error(e), file=sys.stderr)
        return EXIT_ERROR
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
