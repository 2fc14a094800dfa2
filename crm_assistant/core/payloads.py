"""
Typed payloads for every assistant action.
Models accept the camelCase keys the language model emits and expose
snake_case attributes to the executors.
"""

import re
from datetime import datetime
from typing import Annotated, List, Optional
from urllib.parse import urlparse

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .schema import DealStage, RelatedType, TaskStatus

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
DATETIME_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}")


def _check_datetime(value: str) -> str:
    # Full timestamps only, a bare date is rejected
    if not DATETIME_PATTERN.match(value):
        raise ValueError("Invalid datetime")
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError("Invalid datetime")
    return value


def _check_email(value: str) -> str:
    if not EMAIL_PATTERN.match(value):
        raise ValueError("Invalid email")
    return value


def _check_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("Invalid url")
    return value


def _reject_null(value):
    if value is None:
        raise ValueError("Field may be omitted but not null")
    return value


IsoDateTime = Annotated[str, AfterValidator(_check_datetime)]
Email = Annotated[str, AfterValidator(_check_email)]
Url = Annotated[str, AfterValidator(_check_url)]
RequiredText = Annotated[str, Field(min_length=1)]
PositiveCents = Annotated[int, Field(gt=0, strict=True)]

# Optional on update, but an explicit null is not a valid value
NonNullText = Annotated[Optional[RequiredText], BeforeValidator(_reject_null)]
NonNullDealStage = Annotated[Optional[DealStage], BeforeValidator(_reject_null)]
NonNullTaskStatus = Annotated[Optional[TaskStatus], BeforeValidator(_reject_null)]


class ActionPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_payload(self) -> dict:
        """Serialized form stored with the proposal and sent to clients."""
        return self.model_dump(by_alias=True, mode="json", exclude_unset=True)

    def changes(self, *exclude: str) -> dict:
        """Explicitly provided fields, snake_case, minus `exclude`."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name not in exclude
        }


# Create payloads

class CreateTaskPayload(ActionPayload):
    title: RequiredText
    due_at: Optional[IsoDateTime] = None
    related_type: RelatedType = RelatedType.NONE
    related_id: Optional[str] = None

    @model_validator(mode="after")
    def related_id_required(self):
        if self.related_type != RelatedType.NONE and not self.related_id:
            raise ValueError("relatedId is required when relatedType is set")
        return self


class CreateNotePayload(ActionPayload):
    body: RequiredText
    related_type: RelatedType
    related_id: RequiredText

    @field_validator('body')
    @classmethod
    def body_must_not_be_blank(cls, v):
        if not v.strip():
            raise ValueError('Note body is required')
        return v


class CreateDealPayload(ActionPayload):
    title: RequiredText
    amount_cents: Optional[PositiveCents] = None
    stage: DealStage = DealStage.LEAD
    close_date: Optional[IsoDateTime] = None
    company_id: Optional[str] = None
    contact_id: Optional[str] = None


class CreateContactPayload(ActionPayload):
    first_name: RequiredText
    last_name: RequiredText
    email: Optional[Email] = None
    phone: Optional[str] = None
    title: Optional[str] = None
    company_id: Optional[str] = None


class CreateCompanyPayload(ActionPayload):
    name: RequiredText
    website: Optional[Url] = None
    phone: Optional[str] = None
    address: Optional[str] = None


# Update payloads

class UpdateDealStagePayload(ActionPayload):
    deal_id: RequiredText
    stage: DealStage


class UpdateContactPayload(ActionPayload):
    contact_id: RequiredText
    first_name: NonNullText = None
    last_name: NonNullText = None
    email: Optional[Email] = None
    phone: Optional[str] = None
    title: Optional[str] = None
    company_id: Optional[str] = None


class UpdateCompanyPayload(ActionPayload):
    company_id: RequiredText
    name: NonNullText = None
    website: Optional[Url] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class UpdateTaskPayload(ActionPayload):
    task_id: RequiredText
    title: NonNullText = None
    due_at: Optional[IsoDateTime] = None
    status: NonNullTaskStatus = None


# Delete payloads

class DeleteTaskPayload(ActionPayload):
    task_id: RequiredText


class DeleteNotePayload(ActionPayload):
    note_id: RequiredText


class DeleteDealPayload(ActionPayload):
    deal_id: RequiredText


class DeleteContactPayload(ActionPayload):
    contact_id: RequiredText


class DeleteCompanyPayload(ActionPayload):
    company_id: RequiredText


# Bulk payloads

class _BulkUpdates(ActionPayload):

    @model_validator(mode="after")
    def at_least_one_field(self):
        if not self.model_fields_set:
            raise ValueError("At least one field to update is required")
        return self


class DealUpdates(_BulkUpdates):
    stage: NonNullDealStage = None
    close_date: Optional[IsoDateTime] = None
    amount_cents: Optional[PositiveCents] = None


class TaskUpdates(_BulkUpdates):
    status: NonNullTaskStatus = None
    due_at: Optional[IsoDateTime] = None


class ContactUpdates(_BulkUpdates):
    title: Optional[str] = None
    company_id: Optional[str] = None


class BulkUpdateDealsPayload(ActionPayload):
    deal_ids: List[str] = Field(min_length=1)
    updates: DealUpdates


class BulkUpdateTasksPayload(ActionPayload):
    task_ids: List[str] = Field(min_length=1)
    updates: TaskUpdates


class BulkUpdateContactsPayload(ActionPayload):
    contact_ids: List[str] = Field(min_length=1)
    updates: ContactUpdates
