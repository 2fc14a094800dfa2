"""
Usage metrics recorded into the metric_events table.
"""

import sqlite3
from typing import Any, Dict, Optional

from . import assistant_dao
from ..util.logging import logger, sanitize_payload


class MetricsRecorder:
    """Fire-and-forget metric sink. Recording never raises into the caller."""

    def __init__(self, queue=None):
        self.queue = queue

    def record(self, user_id: Optional[str], event: str, properties: Dict[str, Any] = None):
        properties = properties or {}
        if self.queue is None:
            self._write(user_id, event, properties)
            return
        self.queue.submit(self._write, user_id, event, properties, description=f"metric:{event}")

    def _write(self, user_id: Optional[str], event: str, properties: Dict[str, Any]):
        try:
            assistant_dao.insert_metric_event(user_id, event, sanitize_payload(properties))
        except sqlite3.Error as e:
            logger.warning(f"Failed to record metric {event}: {e}")

    def track_chat_query(self, user_id: str, thread_id: str, duration_ms: int, success: bool,
                         has_action_proposal: bool = False, citation_count: int = 0, error: str = None):
        properties = {
            "thread_id": thread_id,
            "duration_ms": duration_ms,
            "success": success,
            "has_action_proposal": has_action_proposal,
            "citation_count": citation_count,
        }
        if error:
            properties["error"] = error
        self.record(user_id, "assistant_chat_query", properties)

    def track_action_proposed(self, user_id: str, action_type: str, thread_id: str):
        self.record(user_id, "assistant_action_proposed", {"action_type": action_type, "thread_id": thread_id})

    def track_action_confirmed(self, user_id: str, action_type: str, duration_ms: int,
                               success: bool, error: str = None):
        properties = {"action_type": action_type, "duration_ms": duration_ms, "success": success}
        if error:
            properties["error"] = error
        self.record(user_id, "assistant_action_confirmed", properties)

    def track_action_cancelled(self, user_id: str, action_type: str):
        self.record(user_id, "assistant_action_cancelled", {"action_type": action_type})

    def track_thread(self, user_id: str, thread_id: str, operation: str):
        """operation: created | deleted"""
        self.record(user_id, f"assistant_thread_{operation}", {"thread_id": thread_id})

    def track_search(self, user_id: str, mode: str, result_count: int, duration_ms: int):
        self.record(user_id, "assistant_search", {
            "mode": mode, "result_count": result_count, "duration_ms": duration_ms
        })

    def track_embedding(self, user_id: str, source_type: str, success: bool, retry_count: int):
        self.record(user_id, "embedding_generated", {
            "source_type": source_type, "success": success, "retry_count": retry_count
        })
