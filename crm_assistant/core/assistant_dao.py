"""
Assistant persistence: threads, messages, action proposals, document
embeddings and metric events.
"""

import json
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence

from .dao import RecordNotFoundError
from .db import get_db
from .schema import ActionRecord, ChatMessage, DocumentEmbedding, Thread
from ..util.logging import logger

_THREAD_OWNED = "EXISTS (SELECT 1 FROM assistant_threads WHERE id = ? AND owner_user_id = ?)"


def _row_to_thread(row) -> Thread:
    data = dict(row)
    data["title_locked"] = bool(data["title_locked"])
    return Thread(**data)


def _row_to_action(row) -> ActionRecord:
    return ActionRecord(
        id=row["id"],
        thread_id=row["thread_id"],
        action_type=row["action_type"],
        payload=json.loads(row["payload"]),
        status=row["status"],
        error_msg=row["error_msg"],
        created_at=row["created_at"],
        executed_at=row["executed_at"]
    )


def _row_to_embedding(row) -> DocumentEmbedding:
    return DocumentEmbedding(
        source_type=row["source_type"],
        source_id=row["source_id"],
        owner_user_id=row["owner_user_id"],
        content_text=row["content_text"],
        embedding=json.loads(row["embedding"]) if row["embedding"] else None,
        updated_at=row["updated_at"]
    )


# Threads

def create_thread(owner_user_id: str, title: str) -> Thread:
    now = time.time()
    thread = Thread(id=uuid.uuid4().hex, owner_user_id=owner_user_id, title=title,
                    title_locked=False, created_at=now, updated_at=now)
    with get_db() as conn:
        conn.execute(
            "INSERT INTO assistant_threads (id, owner_user_id, title, title_locked, created_at, updated_at) "
            "VALUES (?, ?, ?, 0, ?, ?)",
            (thread.id, owner_user_id, title, now, now)
        )
        conn.commit()
    return thread


def get_thread(owner_user_id: str, thread_id: str) -> Optional[Thread]:
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM assistant_threads WHERE id = ? AND owner_user_id = ?",
            (thread_id, owner_user_id)
        ).fetchone()
    return _row_to_thread(row) if row else None


def list_threads(owner_user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Threads newest first, each with its message count."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT t.*, (SELECT COUNT(*) FROM assistant_messages m WHERE m.thread_id = t.id) AS message_count "
            "FROM assistant_threads t WHERE t.owner_user_id = ? ORDER BY t.updated_at DESC LIMIT ?",
            (owner_user_id, limit)
        ).fetchall()

    threads = []
    for row in rows:
        data = dict(row)
        count = data.pop("message_count")
        threads.append({"thread": _row_to_thread(data), "message_count": count})
    return threads


def delete_thread(owner_user_id: str, thread_id: str) -> None:
    """Delete a thread; messages and actions cascade."""
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM assistant_threads WHERE id = ? AND owner_user_id = ?",
            (thread_id, owner_user_id)
        )
        conn.commit()
        if cursor.rowcount == 0:
            raise RecordNotFoundError("Thread not found or not owned by user")


def set_thread_title_once(owner_user_id: str, thread_id: str, title: str) -> bool:
    """Set the generated title unless it was already frozen."""
    with get_db() as conn:
        cursor = conn.execute(
            "UPDATE assistant_threads SET title = ?, title_locked = 1, updated_at = ? "
            "WHERE id = ? AND owner_user_id = ? AND title_locked = 0",
            (title, time.time(), thread_id, owner_user_id)
        )
        conn.commit()
        return cursor.rowcount == 1


# Messages

def add_message(owner_user_id: str, thread_id: str, role: str, content: str) -> ChatMessage:
    """Append a message to an owned thread and bump the thread's activity time."""
    now = time.time()
    message = ChatMessage(id=uuid.uuid4().hex, thread_id=thread_id, role=role,
                          content=content, created_at=now)
    with get_db() as conn:
        cursor = conn.execute(
            f"INSERT INTO assistant_messages (id, thread_id, role, content, created_at) "
            f"SELECT ?, ?, ?, ?, ? WHERE {_THREAD_OWNED}",
            (message.id, thread_id, role, content, now, thread_id, owner_user_id)
        )
        if cursor.rowcount == 0:
            conn.rollback()
            raise RecordNotFoundError("Thread not found or not owned by user")
        conn.execute("UPDATE assistant_threads SET updated_at = ? WHERE id = ?", (now, thread_id))
        conn.commit()
    return message


def list_messages(thread_id: str) -> List[ChatMessage]:
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM assistant_messages WHERE thread_id = ? ORDER BY created_at, rowid",
            (thread_id,)
        ).fetchall()
    return [ChatMessage(**dict(row)) for row in rows]


# Actions

def insert_action(owner_user_id: str, thread_id: str, action_type: str,
                  payload: Dict[str, Any], status: str = "PROPOSED") -> ActionRecord:
    now = time.time()
    action = ActionRecord(id=uuid.uuid4().hex, thread_id=thread_id, action_type=action_type,
                          payload=payload, status=status, error_msg=None,
                          created_at=now, executed_at=None)
    with get_db() as conn:
        cursor = conn.execute(
            f"INSERT INTO assistant_actions (id, thread_id, action_type, payload, status, created_at) "
            f"SELECT ?, ?, ?, ?, ?, ? WHERE {_THREAD_OWNED}",
            (action.id, thread_id, action_type, json.dumps(payload), status, now,
             thread_id, owner_user_id)
        )
        conn.commit()
        if cursor.rowcount == 0:
            raise RecordNotFoundError("Thread not found or not owned by user")
    return action


def get_action(owner_user_id: str, action_id: str) -> Optional[ActionRecord]:
    """Fetch an action only if its thread belongs to the user."""
    with get_db() as conn:
        row = conn.execute(
            "SELECT a.* FROM assistant_actions a JOIN assistant_threads t ON t.id = a.thread_id "
            "WHERE a.id = ? AND t.owner_user_id = ?",
            (action_id, owner_user_id)
        ).fetchone()
    return _row_to_action(row) if row else None


def list_actions(thread_id: str) -> List[ActionRecord]:
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM assistant_actions WHERE thread_id = ? ORDER BY created_at, rowid",
            (thread_id,)
        ).fetchall()
    return [_row_to_action(row) for row in rows]


def transition_action(owner_user_id: str, action_id: str, from_status: str, to_status: str,
                      error_msg: str = None, executed_at: float = None) -> bool:
    """Compare-and-set the action status; False when the action was not in `from_status`."""
    with get_db() as conn:
        cursor = conn.execute(
            "UPDATE assistant_actions SET status = ?, error_msg = COALESCE(?, error_msg), "
            "executed_at = COALESCE(?, executed_at) "
            "WHERE id = ? AND status = ? AND thread_id IN "
            "(SELECT id FROM assistant_threads WHERE owner_user_id = ?)",
            (to_status, error_msg, executed_at, action_id, from_status, owner_user_id)
        )
        conn.commit()
        return cursor.rowcount == 1


# Document embeddings

def upsert_embedding(source_type: str, source_id: str, owner_user_id: str, content_text: str,
                     embedding: Optional[Sequence[float]]) -> None:
    """Insert or replace the indexed document for (source_type, source_id)."""
    vector = json.dumps([float(v) for v in embedding]) if embedding is not None else None
    with get_db() as conn:
        conn.execute(
            "INSERT INTO document_embeddings (source_type, source_id, owner_user_id, content_text, embedding, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(source_type, source_id) DO UPDATE SET "
            "owner_user_id = excluded.owner_user_id, content_text = excluded.content_text, "
            "embedding = excluded.embedding, updated_at = excluded.updated_at",
            (source_type, source_id, owner_user_id, content_text, vector, time.time())
        )
        conn.commit()


def delete_embedding(source_type: str, source_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM document_embeddings WHERE source_type = ? AND source_id = ?",
            (source_type, source_id)
        )
        conn.commit()
        return cursor.rowcount > 0


def get_embedding(source_type: str, source_id: str) -> Optional[DocumentEmbedding]:
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM document_embeddings WHERE source_type = ? AND source_id = ?",
            (source_type, source_id)
        ).fetchone()
    return _row_to_embedding(row) if row else None


def list_embeddings(owner_user_id: str, source_types: Optional[Sequence[str]] = None,
                    vectors_only: bool = True) -> List[DocumentEmbedding]:
    """Owner-scoped indexed documents, optionally filtered by source type."""
    sql = "SELECT * FROM document_embeddings WHERE owner_user_id = ?"
    params: List[Any] = [owner_user_id]
    if vectors_only:
        sql += " AND embedding IS NOT NULL"
    if source_types:
        sql += f" AND source_type IN ({', '.join('?' for _ in source_types)})"
        params.extend(source_types)
    with get_db() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [_row_to_embedding(row) for row in rows]


# Metric events

def insert_metric_event(user_id: Optional[str], event: str, properties: Dict[str, Any]) -> None:
    with get_db() as conn:
        conn.execute(
            "INSERT INTO metric_events (user_id, event, properties, created_at) VALUES (?, ?, ?, ?)",
            (user_id, event, json.dumps(properties, default=str), time.time())
        )
        conn.commit()
    logger.debug(f"Recorded metric {event} for {user_id}")


def list_metric_events(user_id: Optional[str] = None, event: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM metric_events WHERE 1 = 1"
    params: List[Any] = []
    if user_id is not None:
        sql += " AND user_id = ?"
        params.append(user_id)
    if event is not None:
        sql += " AND event = ?"
        params.append(event)
    sql += " ORDER BY id"
    with get_db() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [
        {"user_id": row["user_id"], "event": row["event"],
         "properties": json.loads(row["properties"] or "{}"), "created_at": row["created_at"]}
        for row in rows
    ]
