"""
Tests for monitoring package.

Sensitive data masking, audit trail format, metric accessors and logging
setup.
"""

import json
import logging

import pytest
import structlog

from monitoring.logger import (
    AuditLogger,
    log_context,
    mask_dict,
    mask_sensitive_data,
    setup_logging,
)
from monitoring.metrics import MetricsCollector


class TestMasking:
    """Tests for mask_sensitive_data()."""

    @pytest.mark.parametrize("key", [
        "token", "access_token", "GH_TOKEN", "api_key", "GEMINI_API_KEY",
        "password", "Authorization", "device_code", "client-secret",
    ])
    def test_sensitive_keys_are_masked(self, key):
        masked = mask_dict({key: "ghp_abcdefghijklmnopqrstuvwxyz"})

        assert masked[key] == "ghp_****"

    @pytest.mark.parametrize("key", ["input_tokens", "output_tokens", "total_tokens", "issue", "provider"])
    def test_ordinary_keys_are_kept(self, key):
        assert mask_dict({key: 120}) == {key: 120}

    def test_short_values_fully_masked(self):
        assert mask_dict({"token": "abc"}) == {"token": "****"}
        assert mask_dict({"token": None}) == {"token": "****"}

    def test_nested_dicts(self):
        event = {"event": "request", "headers": {"authorization": "Bearer ghp_secretsecret"}}

        masked = mask_sensitive_data(None, "info", event)

        assert masked["headers"]["authorization"] == "Bear****"
        assert masked["event"] == "request"


class TestAuditLogger:
    """Tests for AuditLogger."""

    def test_writes_one_json_object_per_line(self, tmp_path):
        path = tmp_path / "audit" / "audit.jsonl"
        audit = AuditLogger(str(path))

        audit.log_comment_posted("octocat/hello-world", 42, "https://c/1")
        audit.log_labels_applied("octocat/hello-world", 42, ["bug"], ["Label 'x' does not exist"])
        audit.log_llm_call("groq", "llama-3.3-70b-versatile", 120, 40, 1.234)
        audit.log_auth("login", "device_flow", ["repo"])
        audit.close()

        events = [json.loads(line) for line in path.read_text().splitlines()]
        assert [e["event_type"] for e in events] == ["comment_posted", "labels_applied", "llm_call", "auth"]
        assert events[2]["total_tokens"] == 160
        assert events[2]["duration_seconds"] == 1.23
        assert "timestamp" in events[0]

    def test_audit_events_are_masked(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        audit = AuditLogger(str(path))

        audit.log_error("auth", "AuthFailedError", "rejected", issue=None)
        audit._write_event("debug", {"access_token": "gho_0123456789abcdef"})
        audit.close()

        assert "gho_0123456789abcdef" not in path.read_text()


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_get_value_defaults_to_zero(self):
        assert MetricsCollector().get_value("retries_total", {"service": "github", "error_type": "X"}) == 0.0

    def test_collectors_are_isolated(self):
        first, second = MetricsCollector(), MetricsCollector()

        first.record_retry("github", "ServerError")

        assert first.get_value("retries_total", {"service": "github", "error_type": "ServerError"}) == 1
        assert second.get_value("retries_total", {"service": "github", "error_type": "ServerError"}) == 0

    def test_circuit_transition_sets_state_gauge(self):
        metrics = MetricsCollector()

        metrics.record_circuit_transition("ai:groq", "closed", "open")

        assert metrics.get_value("circuit_state", {"service": "ai:groq"}) == 2

    def test_snapshot_and_export(self):
        metrics = MetricsCollector({"namespace": "triage_test"})
        metrics.record_http_request("github", "GET", 200)

        snapshot = metrics.snapshot()

        assert snapshot["http_requests"][("http_requests_total", ("method", "GET"), ("service", "github"), ("status", "200"))] == 1
        assert b"triage_test_http_requests_total" in metrics.export()
        assert snapshot["uptime_seconds"] >= 0


class TestSetupLogging:
    """Tests for setup_logging() and log_context()."""

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers[:] = handlers
        root.setLevel(level)
        structlog.reset_defaults()

    def test_json_output_is_masked(self, capsys):
        setup_logging(level="DEBUG", fmt="json")

        structlog.get_logger("test").info("resolved", token="ghp_abcdefghijklmnop", input_tokens=12)

        line = capsys.readouterr().err.strip().splitlines()[-1]
        event = json.loads(line)
        assert event["token"] == "ghp_****"
        assert event["input_tokens"] == 12
        assert event["level"] == "info"

    def test_context_binding(self, capsys):
        setup_logging(level="INFO", fmt="json")

        with log_context(issue="octocat/hello-world#42"):
            logging.getLogger("triage_engine.test").info("analyzing")
        logging.getLogger("triage_engine.test").info("done")

        lines = [json.loads(l) for l in capsys.readouterr().err.strip().splitlines()]
        assert lines[-2]["issue"] == "octocat/hello-world#42"
        assert "issue" not in lines[-1]

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "triage.log"

        setup_logging(level="WARNING", log_file=str(log_file))
        logging.getLogger("triage_engine.test").warning("rate limit low")
        for handler in logging.getLogger().handlers:
            handler.flush()

        event = json.loads(log_file.read_text().splitlines()[-1])
        assert event["event"] == "rate limit low"
        assert event["logger"] == "triage_engine.test"
