"""
Structured logging and payload redaction.
"""

import logging

import pytest

from agentsafe.util.logging import StructuredLogger, audit_event, logger, sanitize_payload


@pytest.fixture
def caplog_agentsafe(caplog):
    caplog.set_level(logging.INFO, logger="agentsafe")
    return caplog


class TestStructuredLogger:

    def test_operation_format(self, caplog_agentsafe):
        logger.log_operation("ledger.commit", "success", {"amount_usd": 5})
        assert "Operation: ledger.commit, Status: success, Details: {'amount_usd': 5}" in caplog_agentsafe.text

    def test_single_handler(self):
        StructuredLogger()
        StructuredLogger()
        assert len(logging.getLogger("agentsafe").handlers) == 1

    def test_executor_failure_logged_as_error(self, caplog_agentsafe):
        logger.log_executor_failure("a1", "VOTE", "relay down", 12.345)
        record = caplog_agentsafe.records[-1]
        assert record.levelno == logging.ERROR
        assert "executor.failed" in record.getMessage()
        assert "'retryable': True" in record.getMessage()

    def test_rejection_is_not_an_error(self, caplog_agentsafe):
        logger.log_rejection("execute", "a1", "TOO_EARLY", "Veto window open for another 5s")
        record = caplog_agentsafe.records[-1]
        assert record.levelno == logging.INFO
        assert "execute.rejected" in record.getMessage()

    def test_alert_logged_as_warning(self, caplog_agentsafe):
        logger.log_liquidation_alert("alert_1", "ev_1", 0.95, "LIQUIDATION_REPAY", False)
        record = caplog_agentsafe.records[-1]
        assert record.levelno == logging.WARNING
        assert "critical_over_cap" in record.getMessage()

    def test_transition_details_are_sanitized(self, caplog_agentsafe):
        logger.log_action_transition("a1", "LIQUIDATION_PROTECT", "QUEUED", "EXECUTED",
                                     {"calldata": "0xdeadbeef"})
        assert "0xdeadbeef" not in caplog_agentsafe.text
        assert "action.executed" in caplog_agentsafe.text


class TestSanitizePayload:

    def test_redacts_sensitive_fields(self):
        sanitized = sanitize_payload({"calldata": "0x1234", "target": "0xabc", "nested": {"signature": "sig"}})
        assert sanitized == {"calldata": "[REDACTED]", "target": "0xabc", "nested": {"signature": "[REDACTED]"}}

    def test_reveal(self):
        assert sanitize_payload({"calldata": "0x1234"}, reveal_sensitive=True) == {"calldata": "0x1234"}

    def test_truncates_long_strings(self):
        result = sanitize_payload({"body": "x" * 150})
        assert result["body"] == "x" * 100 + "..."

    def test_lists(self):
        assert sanitize_payload([{"secret": "s"}, 3]) == [{"secret": "[REDACTED]"}, 3]


class TestAuditEvent:

    def test_audit_event_redacts(self, caplog_agentsafe):
        audit_event("action.queued", {"action_id": "a1"}, {"calldata": "0xfeed", "kind": "VOTE"})
        assert "action_queued" in caplog_agentsafe.text
        assert "0xfeed" not in caplog_agentsafe.text
        assert "[REDACTED]" in caplog_agentsafe.text
