"""
Assistant action pipeline.
A registry maps each action type to its payload schema and executor; the
workflow drives the one-way proposal state machine:

    PROPOSED -> CONFIRMED -> EXECUTED | FAILED
    PROPOSED -> CANCELLED

Every status change is a compare-and-set on the stored status, so two
concurrent confirms can never both execute.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import ValidationError

from . import assistant_dao, dao
from .dao import RecordNotFoundError
from .payloads import (
    ActionPayload,
    BulkUpdateContactsPayload,
    BulkUpdateDealsPayload,
    BulkUpdateTasksPayload,
    CreateCompanyPayload,
    CreateContactPayload,
    CreateDealPayload,
    CreateNotePayload,
    CreateTaskPayload,
    DeleteCompanyPayload,
    DeleteContactPayload,
    DeleteDealPayload,
    DeleteNotePayload,
    DeleteTaskPayload,
    UpdateCompanyPayload,
    UpdateContactPayload,
    UpdateDealStagePayload,
    UpdateTaskPayload,
)
from .schema import ActionRecord, ActionStatus, ActionType, RecordChange, RelatedType
from ..util.logging import logger


class ActionError(Exception):
    """Base class for action pipeline failures."""


class ActionNotFoundError(ActionError):
    pass


class ThreadNotFoundError(ActionError):
    pass


class InvalidActionStateError(ActionError):
    pass


class ActionValidationError(ActionError):
    pass


@dataclass
class ValidationResult:
    valid: bool
    data: Optional[ActionPayload] = None
    error: Optional[str] = None


@dataclass
class ActionHandler:
    schema: Type[ActionPayload]
    executor: Callable[[str, Any], List[RecordChange]]


@dataclass
class ActionOutcome:
    success: bool
    action: ActionRecord
    error: Optional[str] = None


ACTION_REGISTRY: Dict[str, ActionHandler] = {}


def register_action(action_type: ActionType, schema: Type[ActionPayload]):
    """Register the executor for `action_type` together with its payload schema."""
    def decorator(fn):
        ACTION_REGISTRY[action_type.value] = ActionHandler(schema=schema, executor=fn)
        return fn
    return decorator


def _type_value(action_type) -> str:
    return action_type.value if isinstance(action_type, ActionType) else str(action_type)


def format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        path = ".".join(str(p) for p in err["loc"])
        parts.append(f"{path}: {err['msg']}" if path else err["msg"])
    return ", ".join(parts)


def validate_payload(action_type, payload: Any) -> ValidationResult:
    """Validate `payload` against the schema registered for `action_type`."""
    handler = ACTION_REGISTRY.get(_type_value(action_type))
    if handler is None:
        return ValidationResult(valid=False, error=f"Unknown action type: {_type_value(action_type)}")

    if not isinstance(payload, dict):
        return ValidationResult(valid=False, error="payload: Input should be an object")

    try:
        data = handler.schema.model_validate(payload)
    except ValidationError as e:
        return ValidationResult(valid=False, error=format_validation_error(e))
    return ValidationResult(valid=True, data=data)


def _related_id(related_type: RelatedType, related_id: Optional[str]) -> Optional[str]:
    return None if related_type == RelatedType.NONE else related_id


# Executors. Each returns the records it changed so they can be re-indexed.

@register_action(ActionType.CREATE_TASK, CreateTaskPayload)
def _create_task(user_id: str, data: CreateTaskPayload) -> List[RecordChange]:
    task = dao.create_task(user_id, title=data.title, due_at=data.due_at, related_type=data.related_type,
                           related_id=_related_id(data.related_type, data.related_id))
    return [RecordChange("TASK", task.id)]


@register_action(ActionType.CREATE_NOTE, CreateNotePayload)
def _create_note(user_id: str, data: CreateNotePayload) -> List[RecordChange]:
    note = dao.create_note(user_id, body=data.body, related_type=data.related_type,
                           related_id=_related_id(data.related_type, data.related_id))
    return [RecordChange("NOTE", note.id)]


@register_action(ActionType.CREATE_DEAL, CreateDealPayload)
def _create_deal(user_id: str, data: CreateDealPayload) -> List[RecordChange]:
    deal = dao.create_deal(user_id, title=data.title, amount_cents=data.amount_cents, stage=data.stage,
                           close_date=data.close_date, company_id=data.company_id,
                           contact_id=data.contact_id)
    return [RecordChange("DEAL", deal.id)]


@register_action(ActionType.CREATE_CONTACT, CreateContactPayload)
def _create_contact(user_id: str, data: CreateContactPayload) -> List[RecordChange]:
    contact = dao.create_contact(user_id, first_name=data.first_name, last_name=data.last_name,
                                 email=data.email, phone=data.phone, title=data.title,
                                 company_id=data.company_id)
    return [RecordChange("CONTACT", contact.id)]


@register_action(ActionType.CREATE_COMPANY, CreateCompanyPayload)
def _create_company(user_id: str, data: CreateCompanyPayload) -> List[RecordChange]:
    company = dao.create_company(user_id, name=data.name, website=data.website,
                                 phone=data.phone, address=data.address)
    return [RecordChange("COMPANY", company.id)]


@register_action(ActionType.UPDATE_DEAL_STAGE, UpdateDealStagePayload)
def _update_deal_stage(user_id: str, data: UpdateDealStagePayload) -> List[RecordChange]:
    dao.update_deal(user_id, data.deal_id, stage=data.stage)
    return [RecordChange("DEAL", data.deal_id)]


@register_action(ActionType.UPDATE_CONTACT, UpdateContactPayload)
def _update_contact(user_id: str, data: UpdateContactPayload) -> List[RecordChange]:
    dao.update_contact(user_id, data.contact_id, **data.changes("contact_id"))
    return [RecordChange("CONTACT", data.contact_id)]


@register_action(ActionType.UPDATE_COMPANY, UpdateCompanyPayload)
def _update_company(user_id: str, data: UpdateCompanyPayload) -> List[RecordChange]:
    dao.update_company(user_id, data.company_id, **data.changes("company_id"))
    return [RecordChange("COMPANY", data.company_id)]


@register_action(ActionType.UPDATE_TASK, UpdateTaskPayload)
def _update_task(user_id: str, data: UpdateTaskPayload) -> List[RecordChange]:
    dao.update_task(user_id, data.task_id, **data.changes("task_id"))
    return [RecordChange("TASK", data.task_id)]


@register_action(ActionType.DELETE_TASK, DeleteTaskPayload)
def _delete_task(user_id: str, data: DeleteTaskPayload) -> List[RecordChange]:
    dao.delete_task(user_id, data.task_id)
    return [RecordChange("TASK", data.task_id, deleted=True)]


@register_action(ActionType.DELETE_NOTE, DeleteNotePayload)
def _delete_note(user_id: str, data: DeleteNotePayload) -> List[RecordChange]:
    dao.delete_note(user_id, data.note_id)
    return [RecordChange("NOTE", data.note_id, deleted=True)]


@register_action(ActionType.DELETE_DEAL, DeleteDealPayload)
def _delete_deal(user_id: str, data: DeleteDealPayload) -> List[RecordChange]:
    dao.delete_deal(user_id, data.deal_id)
    return [RecordChange("DEAL", data.deal_id, deleted=True)]


@register_action(ActionType.DELETE_CONTACT, DeleteContactPayload)
def _delete_contact(user_id: str, data: DeleteContactPayload) -> List[RecordChange]:
    dao.delete_contact(user_id, data.contact_id)
    return [RecordChange("CONTACT", data.contact_id, deleted=True)]


@register_action(ActionType.DELETE_COMPANY, DeleteCompanyPayload)
def _delete_company(user_id: str, data: DeleteCompanyPayload) -> List[RecordChange]:
    dao.delete_company(user_id, data.company_id)
    return [RecordChange("COMPANY", data.company_id, deleted=True)]


@register_action(ActionType.BULK_UPDATE_DEALS, BulkUpdateDealsPayload)
def _bulk_update_deals(user_id: str, data: BulkUpdateDealsPayload) -> List[RecordChange]:
    dao.bulk_update_deals(user_id, data.deal_ids, **data.updates.changes())
    return [RecordChange("DEAL", deal_id) for deal_id in dict.fromkeys(data.deal_ids)]


@register_action(ActionType.BULK_UPDATE_TASKS, BulkUpdateTasksPayload)
def _bulk_update_tasks(user_id: str, data: BulkUpdateTasksPayload) -> List[RecordChange]:
    dao.bulk_update_tasks(user_id, data.task_ids, **data.updates.changes())
    return [RecordChange("TASK", task_id) for task_id in dict.fromkeys(data.task_ids)]


@register_action(ActionType.BULK_UPDATE_CONTACTS, BulkUpdateContactsPayload)
def _bulk_update_contacts(user_id: str, data: BulkUpdateContactsPayload) -> List[RecordChange]:
    dao.bulk_update_contacts(user_id, data.contact_ids, **data.updates.changes())
    return [RecordChange("CONTACT", contact_id) for contact_id in dict.fromkeys(data.contact_ids)]


class ActionWorkflow:
    """Proposal, confirmation and cancellation of assistant actions.

    `indexer` receives the record changes of every executed action and
    `metrics` receives usage events; both are optional and fire-and-forget.
    """

    def __init__(self, indexer=None, metrics=None):
        self.indexer = indexer
        self.metrics = metrics

    def propose(self, user_id: str, thread_id: str, action_type, payload: Dict[str, Any]) -> ActionRecord:
        """Validate and persist a new action in PROPOSED state."""
        type_value = _type_value(action_type)
        result = validate_payload(type_value, payload)
        if not result.valid:
            raise ActionValidationError(result.error)

        try:
            action = assistant_dao.insert_action(user_id, thread_id, type_value, result.data.to_payload())
        except RecordNotFoundError:
            raise ThreadNotFoundError("Thread not found")

        logger.log_action_transition(action.id, type_value, None, ActionStatus.PROPOSED.value)
        if self.metrics:
            self.metrics.track_action_proposed(user_id, type_value, thread_id)
        return action

    def get(self, user_id: str, action_id: str) -> ActionRecord:
        action = assistant_dao.get_action(user_id, action_id)
        if action is None:
            raise ActionNotFoundError("Action not found")
        return action

    def _require_proposed(self, action: ActionRecord):
        if action.status != ActionStatus.PROPOSED.value:
            raise InvalidActionStateError(f"Action is already {action.status.lower()}")

    def confirm(self, user_id: str, action_id: str) -> ActionOutcome:
        """Execute a proposed action; the outcome carries the captured error on failure."""
        action = self.get(user_id, action_id)
        self._require_proposed(action)

        if not assistant_dao.transition_action(user_id, action_id, ActionStatus.PROPOSED.value,
                                               ActionStatus.CONFIRMED.value):
            raise InvalidActionStateError("Action is no longer pending")
        logger.log_action_transition(action_id, action.action_type, ActionStatus.PROPOSED.value,
                                     ActionStatus.CONFIRMED.value)

        started = time.time()
        error = None
        changes: List[RecordChange] = []

        result = validate_payload(action.action_type, action.payload)
        if not result.valid:
            error = f"Invalid payload: {result.error}"
        else:
            try:
                changes = ACTION_REGISTRY[action.action_type].executor(user_id, result.data)
            except Exception as e:
                logger.error(f"Action {action_id} ({action.action_type}) failed: {e}")
                error = str(e) or e.__class__.__name__

        duration_ms = int((time.time() - started) * 1000)

        if error:
            assistant_dao.transition_action(user_id, action_id, ActionStatus.CONFIRMED.value,
                                            ActionStatus.FAILED.value, error_msg=error)
            logger.log_action_transition(action_id, action.action_type, ActionStatus.CONFIRMED.value,
                                         ActionStatus.FAILED.value, error)
            if self.metrics:
                self.metrics.track_action_confirmed(user_id, action.action_type, duration_ms, False, error)
            return ActionOutcome(success=False, action=self.get(user_id, action_id), error=error)

        assistant_dao.transition_action(user_id, action_id, ActionStatus.CONFIRMED.value,
                                        ActionStatus.EXECUTED.value, executed_at=time.time())
        logger.log_action_transition(action_id, action.action_type, ActionStatus.CONFIRMED.value,
                                     ActionStatus.EXECUTED.value)

        if self.indexer:
            self.indexer.schedule_changes(user_id, changes)
        if self.metrics:
            self.metrics.track_action_confirmed(user_id, action.action_type, duration_ms, True)
        return ActionOutcome(success=True, action=self.get(user_id, action_id))

    def cancel(self, user_id: str, action_id: str) -> ActionRecord:
        """Cancel a proposed action. Business records are never touched."""
        action = self.get(user_id, action_id)
        self._require_proposed(action)

        if not assistant_dao.transition_action(user_id, action_id, ActionStatus.PROPOSED.value,
                                               ActionStatus.CANCELLED.value):
            raise InvalidActionStateError("Action is no longer pending")

        logger.log_action_transition(action_id, action.action_type, ActionStatus.PROPOSED.value,
                                     ActionStatus.CANCELLED.value)
        if self.metrics:
            self.metrics.track_action_cancelled(user_id, action.action_type)
        return self.get(user_id, action_id)
