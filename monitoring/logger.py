# =============================================================================
# ISSUE TRIAGE SYSTEM - STRUCTURED LOGGING
# =============================================================================
"""
Structured Logging Module

Provides consistent, structured logging across all components.

Module code logs through ``logging.getLogger(__name__)``; those records are
rendered by structlog's ProcessorFormatter so that stdlib and structlog
events share one pipeline (context variables, timestamps, masking, JSON).

Features:
    - JSON or console output
    - Context variables bound per triage run (issue, provider)
    - Sensitive data masking (tokens, API keys, device codes)
    - Optional rotating file output
    - JSONL audit trail for side effects (comments, labels, logins)
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from structlog.contextvars import bind_contextvars, merge_contextvars, unbind_contextvars


# =============================================================================
# SENSITIVE DATA MASKING
# =============================================================================

# Keys whose values should be masked
SENSITIVE_KEYS = frozenset([
    "token", "api_key", "password", "secret", "credential",
    "access_token", "refresh_token", "authorization", "device_code",
    "github_token", "gemini_api_key", "openrouter_api_key",
])


_SENSITIVE_WORDS = frozenset(["token", "password", "secret", "credential", "authorization"])


def _is_sensitive(key: str) -> bool:
    """Check if a key name indicates sensitive data (input_tokens is not)."""
    key_lower = key.lower().replace("-", "_")
    if key_lower in SENSITIVE_KEYS or key_lower.endswith("api_key"):
        return True
    return any(word in _SENSITIVE_WORDS for word in key_lower.split("_"))


def _mask_value(value: Any) -> str:
    """Mask a sensitive value, keeping only a short prefix of long strings."""
    if not isinstance(value, str):
        return "****"
    if len(value) > 12:
        return value[:4] + "****"
    return "****"


def mask_sensitive_data(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Structlog processor that masks sensitive data in log events.

    Recursively processes dictionaries to mask values whose keys
    match known sensitive patterns.
    """

    def _process(d: Dict[str, Any]) -> Dict[str, Any]:
        result = {}
        for key, value in d.items():
            if _is_sensitive(key):
                result[key] = _mask_value(value)
            elif isinstance(value, dict):
                result[key] = _process(value)
            else:
                result[key] = value
        return result

    return _process(event_dict)


def mask_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Mask sensitive data in an arbitrary dict (e.g. audit events)."""
    return mask_sensitive_data(None, "", data)


# =============================================================================
# LOGGING SETUP
# =============================================================================


def setup_logging(
    level: str = "INFO",
    fmt: str = "console",
    log_file: Optional[str] = None,
    mask_sensitive: bool = True,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
) -> logging.Logger:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: Output format, ``"json"`` or ``"console"``.
        log_file: Optional log file path (always JSON, rotated).
        mask_sensitive: Mask sensitive values in logs.
        max_bytes: Max file size before rotation.
        backup_count: Number of rotated files to keep.

    Returns:
        Root logger instance.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: List[Any] = [
        merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if mask_sensitive:
        shared_processors.append(mask_sensitive_data)

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    def _formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
        return structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
        )

    root = logging.getLogger()
    root.setLevel(numeric_level)

    # Remove existing handlers to avoid duplicates on re-init
    root.handlers.clear()

    # Logs go to stderr; stdout belongs to command output
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    if fmt == "json":
        console.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    else:
        console.setFormatter(_formatter(structlog.dev.ConsoleRenderer(colors=False)))
    root.addHandler(console)

    # File handler (with rotation)
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)  # capture everything to file
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
        root.addHandler(file_handler)

    # Suppress noisy third-party loggers
    for name in ("aiohttp", "asyncio", "keyring"):
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


# =============================================================================
# LOG CONTEXT MANAGER
# =============================================================================


class LogContext:
    """
    Context manager that binds key-value pairs to all logs emitted
    inside the block.

    Usage::

        with LogContext(issue="octocat/hello-world#42", provider="gemini"):
            logger.info("Analyzing")
            # All logs include issue=... and provider=...
    """

    def __init__(self, **kwargs: Any):
        self.context = kwargs

    def __enter__(self) -> "LogContext":
        bind_contextvars(**self.context)
        return self

    def __exit__(self, *args: Any) -> None:
        unbind_contextvars(*self.context.keys())


@contextmanager
def log_context(**kwargs: Any):
    """Functional alias for :class:`LogContext`."""
    with LogContext(**kwargs) as ctx:
        yield ctx


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit trail for side effects, one JSON object per line.

    Event categories:
        - ``auth``: Login, logout, credential source changes
        - ``comment_posted``: Triage comment written to an issue
        - ``labels_applied``: Labels added to an issue
        - ``llm_call``: Completion requests
        - ``error``: Failed triage runs

    Usage::

        audit = AuditLogger("~/.local/share/issue-triage/audit.jsonl")
        audit.log_comment_posted("octocat/hello-world", 42, "https://...")
    """

    def __init__(
        self,
        output_path: str,
        max_bytes: int = 50 * 1024 * 1024,  # 50 MB
        backup_count: int = 5,
    ):
        self.output_path = str(Path(output_path).expanduser())
        self._logger = logging.getLogger(f"audit.{self.output_path}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False  # don't echo to root logger

        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
            handler.close()

        # Setup rotating file handler for audit log
        Path(self.output_path).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            self.output_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        self._logger.addHandler(handler)

    def close(self) -> None:
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
            handler.close()

    # -----------------------------------------------------------------
    # Event writers
    # -----------------------------------------------------------------

    def _write_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """Write a single audit event."""
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            **mask_dict(data),
        }
        self._logger.info(json.dumps(event, default=str))

    def log_auth(self, action: str, source: str, scopes: Optional[List[str]] = None) -> None:
        """Log a login, logout or credential resolution."""
        self._write_event("auth", {
            "action": action,
            "source": source,
            "scopes": scopes or [],
        })

    def log_comment_posted(self, repo: str, issue_number: int, comment_url: str) -> None:
        self._write_event("comment_posted", {
            "repo": repo,
            "issue_number": issue_number,
            "comment_url": comment_url,
        })

    def log_labels_applied(
        self,
        repo: str,
        issue_number: int,
        labels: List[str],
        warnings: Optional[List[str]] = None,
    ) -> None:
        self._write_event("labels_applied", {
            "repo": repo,
            "issue_number": issue_number,
            "labels": labels,
            "warnings": warnings or [],
        })

    def log_llm_call(
        self,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        duration: float,
    ) -> None:
        """Log a completion call."""
        self._write_event("llm_call", {
            "provider": provider,
            "model": model,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
            "duration_seconds": round(duration, 2),
        })

    def log_error(
        self,
        component: str,
        error_type: str,
        message: str,
        issue: Optional[str] = None,
    ) -> None:
        """Log an error event."""
        self._write_event("error", {
            "component": component,
            "error_type": error_type,
            "message": message,
            "issue": issue,
        })


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    # Setup
    "setup_logging",
    # Data masking
    "mask_sensitive_data",
    "mask_dict",
    "SENSITIVE_KEYS",
    # Context
    "LogContext",
    "log_context",
    # Audit
    "AuditLogger",
]
