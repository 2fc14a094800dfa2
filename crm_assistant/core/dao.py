"""
Owner-scoped business record store.
Every write whose correctness depends on ownership is a single conditional
statement; rows affected decides success.
"""

import time
import uuid
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .db import get_db
from .schema import Company, Contact, Deal, Note, RECORD_TABLES, Task
from ..util.logging import logger


class RecordNotFoundError(LookupError):
    """Raised when an owner-scoped write matched no row."""


_OWNED = "EXISTS (SELECT 1 FROM {table} WHERE id = ? AND owner_user_id = ?)"

_LABELS = {
    "companies": "Company",
    "contacts": "Contact",
    "deals": "Deal",
    "tasks": "Task",
    "notes": "Note",
}

_UPDATABLE = {
    "companies": {"name", "website", "phone", "address"},
    "contacts": {"first_name", "last_name", "email", "phone", "title", "company_id"},
    "deals": {"title", "amount_cents", "stage", "close_date", "company_id", "contact_id"},
    "tasks": {"title", "due_at", "status", "related_type", "related_id"},
    "notes": {"body", "related_type", "related_id"},
}

# Per source type: base select (aliased `r`), row type
_SELECTS = {
    "COMPANY": ("SELECT r.* FROM companies r", Company),
    "CONTACT": (
        "SELECT r.*, co.name AS company_name FROM contacts r "
        "LEFT JOIN companies co ON co.id = r.company_id AND co.owner_user_id = r.owner_user_id",
        Contact,
    ),
    "DEAL": (
        "SELECT r.*, co.name AS company_name, "
        "ct.first_name || ' ' || ct.last_name AS contact_name FROM deals r "
        "LEFT JOIN companies co ON co.id = r.company_id AND co.owner_user_id = r.owner_user_id "
        "LEFT JOIN contacts ct ON ct.id = r.contact_id AND ct.owner_user_id = r.owner_user_id",
        Deal,
    ),
    "TASK": ("SELECT r.* FROM tasks r", Task),
    "NOTE": ("SELECT r.* FROM notes r", Note),
}

# Columns matched by the keyword fallback
KEYWORD_COLUMNS = {
    "COMPANY": ["name", "website", "address"],
    "CONTACT": ["first_name", "last_name", "email", "title"],
    "DEAL": ["title"],
    "TASK": ["title"],
    "NOTE": ["body"],
}


def _new_id() -> str:
    return uuid.uuid4().hex


def _clean(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in values.items()}


def _related_table(related_type: Optional[str], related_id: Optional[str]) -> Optional[str]:
    if isinstance(related_type, Enum):
        related_type = related_type.value
    if not related_type or related_type == "NONE" or not related_id:
        return None
    return RECORD_TABLES[related_type]


def _reference_checks(owner_user_id: str, references: Iterable[Tuple[Optional[str], Optional[str]]]):
    """Build EXISTS predicates proving every non-null reference is owned by the user."""
    clauses, params, labels = [], [], []
    for table, record_id in references:
        if table is None or record_id is None:
            continue
        clauses.append(_OWNED.format(table=table))
        params.extend([record_id, owner_user_id])
        labels.append(_LABELS[table])
    return clauses, params, labels


def _not_found(labels: List[str]) -> RecordNotFoundError:
    return RecordNotFoundError(f"{' or '.join(labels)} not found or not owned by user")


def _check_columns(table: str, values: Dict[str, Any]):
    unknown = set(values) - _UPDATABLE[table]
    if unknown:
        raise ValueError(f"Unknown columns for {table}: {sorted(unknown)}")


def _insert(table: str, owner_user_id: str, values: Dict[str, Any],
            references: Sequence[Tuple[Optional[str], Optional[str]]] = ()) -> str:
    """INSERT ... SELECT guarded by the ownership of every referenced record."""
    _check_columns(table, values)
    now = time.time()
    record_id = _new_id()
    row = {"id": record_id, "owner_user_id": owner_user_id, **_clean(values),
           "created_at": now, "updated_at": now}
    columns = list(row)

    clauses, ref_params, labels = _reference_checks(owner_user_id, references)
    sql = f"INSERT INTO {table} ({', '.join(columns)}) SELECT {', '.join('?' for _ in columns)}"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)

    with get_db() as conn:
        cursor = conn.execute(sql, [row[c] for c in columns] + ref_params)
        conn.commit()
        if cursor.rowcount == 0:
            raise _not_found(labels)

    logger.debug(f"Inserted {table} row {record_id} for user {owner_user_id}")
    return record_id


def _update(table: str, owner_user_id: str, record_id: str, values: Dict[str, Any],
            references: Sequence[Tuple[Optional[str], Optional[str]]] = ()) -> None:
    """UPDATE keyed by id and owner, guarded by reference ownership."""
    _check_columns(table, values)
    values = _clean(values)
    values["updated_at"] = time.time()

    clauses, ref_params, labels = _reference_checks(owner_user_id, references)
    sql = f"UPDATE {table} SET {', '.join(f'{c} = ?' for c in values)} WHERE id = ? AND owner_user_id = ?"
    for clause in clauses:
        sql += f" AND {clause}"

    with get_db() as conn:
        cursor = conn.execute(sql, list(values.values()) + [record_id, owner_user_id] + ref_params)
        conn.commit()
        if cursor.rowcount == 0:
            raise _not_found([_LABELS[table]] + labels)


def _delete(table: str, owner_user_id: str, record_id: str) -> None:
    with get_db() as conn:
        cursor = conn.execute(
            f"DELETE FROM {table} WHERE id = ? AND owner_user_id = ?",
            (record_id, owner_user_id)
        )
        conn.commit()
        if cursor.rowcount == 0:
            raise _not_found([_LABELS[table]])


def _bulk_update(table: str, owner_user_id: str, record_ids: Sequence[str], values: Dict[str, Any],
                 references: Sequence[Tuple[Optional[str], Optional[str]]] = ()) -> int:
    """
    Update many rows in one statement, or none at all.

    The count predicate requires every id to be owned by the user; a single
    foreign id makes the whole statement match zero rows.
    """
    _check_columns(table, values)
    ids = list(dict.fromkeys(record_ids))
    if not ids:
        raise ValueError("At least one id is required")

    values = _clean(values)
    values["updated_at"] = time.time()
    in_list = ", ".join("?" for _ in ids)

    clauses, ref_params, labels = _reference_checks(owner_user_id, references)
    sql = (
        f"UPDATE {table} SET {', '.join(f'{c} = ?' for c in values)} "
        f"WHERE owner_user_id = ? AND id IN ({in_list}) "
        f"AND (SELECT COUNT(*) FROM {table} WHERE owner_user_id = ? AND id IN ({in_list})) = ?"
    )
    for clause in clauses:
        sql += f" AND {clause}"

    params = list(values.values()) + [owner_user_id] + ids + [owner_user_id] + ids + [len(ids)] + ref_params
    with get_db() as conn:
        cursor = conn.execute(sql, params)
        conn.commit()
        if cursor.rowcount == 0:
            plural = table if not labels else f"{table} or referenced " + " or ".join(labels).lower()
            raise RecordNotFoundError(f"One or more {plural} not found or not owned by user")
        return cursor.rowcount


# Readers

def get_record(source_type: str, owner_user_id: str, record_id: str):
    """Fetch one record of the given source type, scoped to its owner."""
    base, row_type = _SELECTS[source_type]
    with get_db() as conn:
        row = conn.execute(
            f"{base} WHERE r.id = ? AND r.owner_user_id = ?",
            (record_id, owner_user_id)
        ).fetchone()
    return row_type(**dict(row)) if row else None


def list_records(source_type: str, owner_user_id: str) -> list:
    base, row_type = _SELECTS[source_type]
    with get_db() as conn:
        rows = conn.execute(
            f"{base} WHERE r.owner_user_id = ? ORDER BY r.updated_at DESC",
            (owner_user_id,)
        ).fetchall()
    return [row_type(**dict(row)) for row in rows]


def search_records(source_type: str, owner_user_id: str, terms: List[str], limit: int) -> list:
    """Case-insensitive substring match of any term against the type's keyword columns."""
    if not terms:
        return []

    base, row_type = _SELECTS[source_type]
    columns = KEYWORD_COLUMNS[source_type]
    predicates, params = [], [owner_user_id]
    for term in terms:
        for column in columns:
            predicates.append(f"instr(lower(r.{column}), ?) > 0")
            params.append(term.lower())

    sql = f"{base} WHERE r.owner_user_id = ? AND ({' OR '.join(predicates)}) ORDER BY r.updated_at DESC LIMIT ?"
    params.append(limit)
    with get_db() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [row_type(**dict(row)) for row in rows]


def find_open_tasks(owner_user_id: str, due_before: Optional[str] = None) -> List[Task]:
    sql = "SELECT * FROM tasks WHERE owner_user_id = ? AND status = 'OPEN'"
    params: List[Any] = [owner_user_id]
    if due_before:
        sql += " AND due_at IS NOT NULL AND due_at <= ?"
        params.append(due_before)
    sql += " ORDER BY due_at IS NULL, due_at"
    with get_db() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [Task(**dict(row)) for row in rows]


def find_deals_in_stage(owner_user_id: str, stage: str, min_amount_cents: Optional[int] = None) -> List[Deal]:
    base, _ = _SELECTS["DEAL"]
    sql = f"{base} WHERE r.owner_user_id = ? AND r.stage = ?"
    params: List[Any] = [owner_user_id, stage.value if isinstance(stage, Enum) else stage]
    if min_amount_cents is not None:
        sql += " AND r.amount_cents >= ?"
        params.append(min_amount_cents)
    sql += " ORDER BY r.close_date IS NULL, r.close_date"
    with get_db() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [Deal(**dict(row)) for row in rows]


# Companies

def create_company(owner_user_id: str, name: str, website: str = None, phone: str = None,
                   address: str = None) -> Company:
    record_id = _insert("companies", owner_user_id,
                        {"name": name, "website": website, "phone": phone, "address": address})
    return get_record("COMPANY", owner_user_id, record_id)


def update_company(owner_user_id: str, company_id: str, **fields) -> Company:
    _update("companies", owner_user_id, company_id, fields)
    return get_record("COMPANY", owner_user_id, company_id)


def delete_company(owner_user_id: str, company_id: str) -> None:
    _delete("companies", owner_user_id, company_id)


# Contacts

def create_contact(owner_user_id: str, first_name: str, last_name: str, email: str = None,
                   phone: str = None, title: str = None, company_id: str = None) -> Contact:
    record_id = _insert(
        "contacts", owner_user_id,
        {"first_name": first_name, "last_name": last_name, "email": email,
         "phone": phone, "title": title, "company_id": company_id},
        references=[("companies", company_id)]
    )
    return get_record("CONTACT", owner_user_id, record_id)


def update_contact(owner_user_id: str, contact_id: str, **fields) -> Contact:
    _update("contacts", owner_user_id, contact_id, fields,
            references=[("companies", fields.get("company_id"))])
    return get_record("CONTACT", owner_user_id, contact_id)


def delete_contact(owner_user_id: str, contact_id: str) -> None:
    _delete("contacts", owner_user_id, contact_id)


def bulk_update_contacts(owner_user_id: str, contact_ids: Sequence[str], **fields) -> int:
    return _bulk_update("contacts", owner_user_id, contact_ids, fields,
                        references=[("companies", fields.get("company_id"))])


# Deals

def create_deal(owner_user_id: str, title: str, amount_cents: int = None, stage: str = "LEAD",
                close_date: str = None, company_id: str = None, contact_id: str = None) -> Deal:
    record_id = _insert(
        "deals", owner_user_id,
        {"title": title, "amount_cents": amount_cents, "stage": stage, "close_date": close_date,
         "company_id": company_id, "contact_id": contact_id},
        references=[("companies", company_id), ("contacts", contact_id)]
    )
    return get_record("DEAL", owner_user_id, record_id)


def update_deal(owner_user_id: str, deal_id: str, **fields) -> Deal:
    _update("deals", owner_user_id, deal_id, fields,
            references=[("companies", fields.get("company_id")), ("contacts", fields.get("contact_id"))])
    return get_record("DEAL", owner_user_id, deal_id)


def delete_deal(owner_user_id: str, deal_id: str) -> None:
    _delete("deals", owner_user_id, deal_id)


def bulk_update_deals(owner_user_id: str, deal_ids: Sequence[str], **fields) -> int:
    return _bulk_update("deals", owner_user_id, deal_ids, fields)


# Tasks

def create_task(owner_user_id: str, title: str, due_at: str = None, related_type: str = "NONE",
                related_id: str = None, status: str = "OPEN") -> Task:
    record_id = _insert(
        "tasks", owner_user_id,
        {"title": title, "due_at": due_at, "status": status,
         "related_type": related_type, "related_id": related_id},
        references=[(_related_table(related_type, related_id), related_id)]
    )
    return get_record("TASK", owner_user_id, record_id)


def update_task(owner_user_id: str, task_id: str, **fields) -> Task:
    _update("tasks", owner_user_id, task_id, fields,
            references=[(_related_table(fields.get("related_type"), fields.get("related_id")),
                         fields.get("related_id"))])
    return get_record("TASK", owner_user_id, task_id)


def delete_task(owner_user_id: str, task_id: str) -> None:
    _delete("tasks", owner_user_id, task_id)


def bulk_update_tasks(owner_user_id: str, task_ids: Sequence[str], **fields) -> int:
    return _bulk_update("tasks", owner_user_id, task_ids, fields)


# Notes

def create_note(owner_user_id: str, body: str, related_type: str = "NONE", related_id: str = None) -> Note:
    record_id = _insert(
        "notes", owner_user_id,
        {"body": body, "related_type": related_type, "related_id": related_id},
        references=[(_related_table(related_type, related_id), related_id)]
    )
    return get_record("NOTE", owner_user_id, record_id)


def delete_note(owner_user_id: str, note_id: str) -> None:
    _delete("notes", owner_user_id, note_id)
