# ABOUTME: Unit tests for logging utilities
# ABOUTME: Tests correlation IDs, configure_logging, application binding and AuditLogger

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import structlog

from gitops_sync.models import DiffAction, ItemOutcome, SyncItemResult
from gitops_sync.utils.logging import (
    AuditLogger,
    add_correlation_id,
    bind_application,
    configure_logging,
    correlation_id,
    get_correlation_id,
    set_correlation_id,
)


@pytest.mark.unit
class TestCorrelationId:
    """Tests for correlation ID generation and context management."""

    def test_get_correlation_id_generates_new_when_empty(self):
        """Test that get_correlation_id generates a new ID when none exists."""
        correlation_id.set("")

        cid = get_correlation_id()

        assert len(cid) == 8
        int(cid.replace("-", ""), 16)

    def test_get_correlation_id_returns_existing(self):
        """Test that get_correlation_id returns existing ID when set."""
        set_correlation_id("tick1234")

        assert get_correlation_id() == "tick1234"

    def test_get_correlation_id_preserves_value(self):
        """Test that subsequent calls return the same ID."""
        correlation_id.set("")

        assert get_correlation_id() == get_correlation_id()


@pytest.mark.unit
class TestAddCorrelationId:
    """Tests for the add_correlation_id processor function."""

    def test_adds_correlation_id_to_event_dict(self):
        """Test that correlation ID is added to event dictionary."""
        set_correlation_id("proc1234")

        result = add_correlation_id(MagicMock(), "info", {"event": "Reconciled"})

        assert result["correlation_id"] == "proc1234"
        assert result["event"] == "Reconciled"

    def test_generates_correlation_id_if_not_set(self):
        """Test that correlation ID is generated if not already set."""
        correlation_id.set("")

        result = add_correlation_id(MagicMock(), "info", {"event": "Reconciled"})

        assert len(result["correlation_id"]) == 8


@pytest.mark.unit
class TestBindApplication:
    """Tests for binding the application name to log context."""

    def test_bind_application_sets_context_var(self):
        """Test that the application name lands in structlog's context."""
        structlog.contextvars.clear_contextvars()

        bind_application("guestbook")

        assert structlog.contextvars.get_contextvars()["application"] == "guestbook"
        structlog.contextvars.clear_contextvars()


@pytest.mark.unit
class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_configure_logging_console_output(self):
        """Test configure_logging uses the console renderer by default."""
        with patch("gitops_sync.utils.logging.structlog") as mock_structlog:
            configure_logging()

            mock_structlog.configure.assert_called_once()
            mock_structlog.dev.ConsoleRenderer.assert_called_once()
            mock_structlog.processors.JSONRenderer.assert_not_called()

    def test_configure_logging_json_output(self):
        """Test configure_logging with JSON output."""
        with patch("gitops_sync.utils.logging.structlog") as mock_structlog:
            configure_logging(level="DEBUG", json_output=True)

            mock_structlog.processors.JSONRenderer.assert_called_once()
            mock_structlog.dev.ConsoleRenderer.assert_not_called()

    def test_configure_logging_level_passed_to_filter(self):
        """Test that the level name is translated for the filtering logger."""
        with patch("gitops_sync.utils.logging.structlog") as mock_structlog:
            configure_logging(level="warning")

            mock_structlog.make_filtering_bound_logger.assert_called_once_with(30)

    def test_configure_logging_processors_order(self):
        """Test correlation id is added before rendering."""
        with patch("gitops_sync.utils.logging.structlog") as mock_structlog:
            configure_logging()

            processors = mock_structlog.configure.call_args.kwargs["processors"]
            assert processors[0] is mock_structlog.contextvars.merge_contextvars
            assert add_correlation_id in processors
            assert processors.index(add_correlation_id) == len(processors) - 2


@pytest.mark.unit
class TestAuditLogger:
    """Tests for AuditLogger file and stdout output."""

    def test_log_to_file(self, tmp_path: Path):
        """Test that entries are appended to the file as JSON lines."""
        log_file = tmp_path / "audit.log"
        set_correlation_id("file1234")
        audit = AuditLogger(log_file)

        audit.log("sync_application", "guestbook", "queued")
        audit.log("refresh_application", "guestbook", "queued")

        lines = log_file.read_text().strip().split("\n")
        assert len(lines) == 2
        entry = json.loads(lines[0])
        assert entry["action"] == "sync_application"
        assert entry["target"] == "guestbook"
        assert entry["result"] == "queued"
        assert entry["correlation_id"] == "file1234"
        assert "details" not in entry

    def test_log_masks_details(self, tmp_path: Path):
        """Test that sensitive detail values are masked."""
        log_file = tmp_path / "audit.log"
        audit = AuditLogger(log_file)

        audit.log("create_application", "guestbook", "created", {"token": "s3cr3t", "prune": True})

        entry = json.loads(log_file.read_text())
        assert entry["details"]["token"] == "***MASKED***"
        assert entry["details"]["prune"] is True
        assert "s3cr3t" not in log_file.read_text()

    def test_log_to_stdout(self):
        """Test that without a path entries go to structlog."""
        audit = AuditLogger()
        audit._logger = MagicMock()

        audit.log("get_application", "guestbook", "success")

        audit._logger.info.assert_called_once_with(
            "audit",
            action="get_application",
            target="guestbook",
            result="success",
            details=None,
        )

    def test_log_blocked(self, tmp_path: Path):
        """Test blocked entries carry the reason."""
        log_file = tmp_path / "audit.log"
        AuditLogger(log_file).log_blocked("sync_application", "guestbook", "read-only mode")

        entry = json.loads(log_file.read_text())
        assert entry["result"] == "blocked"
        assert entry["details"] == {"reason": "read-only mode"}

    def test_log_error(self, tmp_path: Path):
        """Test error entries carry the error text."""
        log_file = tmp_path / "audit.log"
        AuditLogger(log_file).log_error("get_application", "missing", "Unknown application")

        entry = json.loads(log_file.read_text())
        assert entry["result"] == "error"
        assert entry["details"]["error"] == "Unknown application"

    def test_log_read_and_write_delegate(self):
        """Test convenience methods delegate to log."""
        audit = AuditLogger()
        with patch.object(audit, "log") as mock_log:
            audit.log_read("list_applications", "all")
            audit.log_write("terminate_sync", "guestbook", "terminated", {"x": 1})

        mock_log.assert_any_call("list_applications", "all", "success")
        mock_log.assert_any_call("terminate_sync", "guestbook", "terminated", {"x": 1})

    def test_log_sync_item(self, tmp_path: Path):
        """Test sync item outcomes are recorded against the object identity."""
        log_file = tmp_path / "audit.log"
        item = SyncItemResult(
            kind="Deployment",
            namespace="web",
            name="api",
            action=DiffAction.MODIFY,
            outcome=ItemOutcome.FAILED,
            message="Kubernetes API error (422): invalid",
            retries=0,
        )

        AuditLogger(log_file).log_sync_item("guestbook", item)

        entry = json.loads(log_file.read_text())
        assert entry["action"] == "sync_item"
        assert entry["target"] == "Deployment/web/api"
        assert entry["result"] == "Failed"
        assert entry["details"]["application"] == "guestbook"
        assert entry["details"]["operation"] == "Modify"

    def test_timestamp_is_utc_iso_format(self, tmp_path: Path):
        """Test timestamps are ISO-8601 with UTC offset."""
        log_file = tmp_path / "audit.log"
        AuditLogger(log_file).log_read("list_applications", "all")

        entry = json.loads(log_file.read_text())
        assert entry["timestamp"].endswith("+00:00")
