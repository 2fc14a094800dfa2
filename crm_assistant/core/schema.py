"""
Record types shared by the store, the retrieval engine and the action pipeline.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class SourceType(str, Enum):
    COMPANY = "COMPANY"
    CONTACT = "CONTACT"
    DEAL = "DEAL"
    TASK = "TASK"
    NOTE = "NOTE"


class DealStage(str, Enum):
    LEAD = "LEAD"
    QUALIFIED = "QUALIFIED"
    PROPOSAL = "PROPOSAL"
    NEGOTIATION = "NEGOTIATION"
    WON = "WON"
    LOST = "LOST"


class TaskStatus(str, Enum):
    OPEN = "OPEN"
    DONE = "DONE"


class RelatedType(str, Enum):
    CONTACT = "CONTACT"
    COMPANY = "COMPANY"
    DEAL = "DEAL"
    NONE = "NONE"


class ActionStatus(str, Enum):
    PROPOSED = "PROPOSED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


class ActionType(str, Enum):
    CREATE_TASK = "CREATE_TASK"
    CREATE_NOTE = "CREATE_NOTE"
    CREATE_DEAL = "CREATE_DEAL"
    CREATE_CONTACT = "CREATE_CONTACT"
    CREATE_COMPANY = "CREATE_COMPANY"
    UPDATE_DEAL_STAGE = "UPDATE_DEAL_STAGE"
    UPDATE_CONTACT = "UPDATE_CONTACT"
    UPDATE_COMPANY = "UPDATE_COMPANY"
    UPDATE_TASK = "UPDATE_TASK"
    DELETE_TASK = "DELETE_TASK"
    DELETE_NOTE = "DELETE_NOTE"
    DELETE_DEAL = "DELETE_DEAL"
    DELETE_CONTACT = "DELETE_CONTACT"
    DELETE_COMPANY = "DELETE_COMPANY"
    BULK_UPDATE_DEALS = "BULK_UPDATE_DEALS"
    BULK_UPDATE_TASKS = "BULK_UPDATE_TASKS"
    BULK_UPDATE_CONTACTS = "BULK_UPDATE_CONTACTS"


# Which table a related/source type lives in
RECORD_TABLES = {
    "COMPANY": "companies",
    "CONTACT": "contacts",
    "DEAL": "deals",
    "TASK": "tasks",
    "NOTE": "notes",
}


@dataclass
class Company:
    id: str
    owner_user_id: str
    name: str
    website: Optional[str]
    phone: Optional[str]
    address: Optional[str]
    created_at: float
    updated_at: float


@dataclass
class Contact:
    id: str
    owner_user_id: str
    first_name: str
    last_name: str
    email: Optional[str]
    phone: Optional[str]
    title: Optional[str]
    company_id: Optional[str]
    created_at: float
    updated_at: float
    company_name: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass
class Deal:
    id: str
    owner_user_id: str
    title: str
    amount_cents: Optional[int]
    stage: str
    close_date: Optional[str]
    company_id: Optional[str]
    contact_id: Optional[str]
    created_at: float
    updated_at: float
    company_name: Optional[str] = None
    contact_name: Optional[str] = None


@dataclass
class Task:
    id: str
    owner_user_id: str
    title: str
    due_at: Optional[str]
    status: str
    related_type: str
    related_id: Optional[str]
    created_at: float
    updated_at: float


@dataclass
class Note:
    id: str
    owner_user_id: str
    body: str
    related_type: str
    related_id: Optional[str]
    created_at: float
    updated_at: float


@dataclass
class Thread:
    id: str
    owner_user_id: str
    title: str
    title_locked: bool
    created_at: float
    updated_at: float


@dataclass
class ChatMessage:
    id: str
    thread_id: str
    role: str  # user, assistant, system
    content: str
    created_at: float


@dataclass
class ActionRecord:
    id: str
    thread_id: str
    action_type: str
    payload: Dict[str, Any]
    status: str
    error_msg: Optional[str]
    created_at: float
    executed_at: Optional[float]


@dataclass
class DocumentEmbedding:
    source_type: str
    source_id: str
    owner_user_id: str
    content_text: str
    embedding: Optional[list]
    updated_at: float


@dataclass
class RecordChange:
    """A committed business-record mutation, used to drive re-indexing."""
    source_type: str
    source_id: str
    deleted: bool = False
