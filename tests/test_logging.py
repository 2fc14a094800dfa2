"""
Structured logger output and payload sanitization.
"""

import logging

from crm_assistant.util.logging import StructuredLogger, sanitize_payload


def test_sensitive_fields_are_redacted():
    sanitized = sanitize_payload({"content": "private", "mode": "keyword", "nested": {"token": "abc"}})
    assert sanitized == {"content": "[REDACTED]", "mode": "keyword", "nested": {"token": "[REDACTED]"}}


def test_long_strings_are_truncated():
    assert sanitize_payload("x" * 150) == "x" * 100 + "..."


def test_reveal_sensitive():
    assert sanitize_payload({"body": "note"}, reveal_sensitive=True) == {"body": "note"}


def test_failed_transition_logs_warning(caplog):
    structured = StructuredLogger("crm_assistant.test")
    with caplog.at_level(logging.INFO, logger="crm_assistant.test"):
        structured.log_action_transition("a1", "CREATE_TASK", "CONFIRMED", "FAILED", error="boom")

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert "action.transition" in record.getMessage()
    assert "'error': 'boom'" in record.getMessage()


def test_retrieval_log_details(caplog):
    structured = StructuredLogger("crm_assistant.test")
    with caplog.at_level(logging.INFO, logger="crm_assistant.test"):
        structured.log_retrieval("keyword", "user-alice", 2, {"duration_ms": 5})

    message = caplog.records[-1].getMessage()
    assert "retrieval.search" in message
    assert "'mode': 'keyword'" in message
    assert "'result_count': 2" in message
