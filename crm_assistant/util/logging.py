"""
Structured logging for the assistant pipeline.
Every subsystem logs through the global `logger` so operations render uniformly.
"""

import logging
from typing import Any, Dict, List, Optional

SENSITIVE_FIELDS = ['content', 'body', 'message', 'password', 'secret', 'token']


class StructuredLogger:
    """Structured logger for retrieval, embedding, action and streaming operations."""

    def __init__(self, name: str = "crm_assistant"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_embedding_operation(self, operation: str, source_type: str, source_id: str,
                                details: Dict[str, Any] = None, status: str = "success"):
        """Log an embedding pipeline operation."""
        log_details = {"source_type": source_type, "source_id": source_id}
        if details:
            log_details.update(details)

        level = logging.WARNING if status in ("failed", "skipped") else logging.INFO
        self.log_operation(f"embedding.{operation}", status, log_details, level)

    def log_retrieval(self, mode: str, user_id: str, result_count: int, details: Dict[str, Any] = None):
        """Log a retrieval pass (semantic or keyword fallback)."""
        log_details = {"mode": mode, "user_id": user_id, "result_count": result_count}
        if details:
            log_details.update(details)

        self.log_operation("retrieval.search", "success", log_details)

    def log_action_transition(self, action_id: str, action_type: str, from_status: Optional[str],
                              to_status: str, error: str = None):
        """Log an action state machine transition."""
        log_details = {
            "action_id": action_id,
            "action_type": action_type,
            "from": from_status,
            "to": to_status
        }
        if error:
            log_details["error"] = error[:200]

        level = logging.WARNING if to_status == "FAILED" else logging.INFO
        self.log_operation("action.transition", to_status.lower(), log_details, level)

    def log_stream_event(self, thread_id: str, event: str, details: Dict[str, Any] = None):
        """Log a streaming turn milestone."""
        log_details = {"thread_id": thread_id}
        if details:
            log_details.update(details)

        level = logging.WARNING if event in ("error", "timeout") else logging.INFO
        self.log_operation(f"stream.{event}", "emitted", log_details, level)

    def log_rate_limit(self, identifier: str, scope: str, retry_after: int):
        """Log a rejected admission check."""
        self.log_operation("rate_limit.rejected", "blocked", {
            "identifier": identifier,
            "scope": scope,
            "retry_after_sec": retry_after
        }, logging.WARNING)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def exception(self, message: str) -> None:
        """Log an error message with the active traceback."""
        self.logger.exception(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for logging."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
