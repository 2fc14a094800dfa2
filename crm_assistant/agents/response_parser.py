"""
Structured decoding of raw model output.

A reply is either plain text or an action proposal. Anything that does not
decode cleanly into one of the two, including a proposal whose payload fails
validation, is treated as plain text by returning None.
"""

import json
import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..core.actions import validate_payload
from ..core.schema import ActionType
from ..util.logging import logger
from ..vector.pipeline import format_amount

FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
PROPOSAL_BLOCK = re.compile(r"```(?:json)?\s*\{[\s\S]*?\"action_proposal\"[\s\S]*?```")


class Citation(BaseModel):
    id: str
    type: str
    title: str
    url: str


class TextResponse(BaseModel):
    type: Literal["text"] = "text"
    content: str
    citations: List[Citation] = []


class ActionProposalResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: Literal["action_proposal"]
    action_type: ActionType
    payload: Dict[str, Any]
    summary: str = Field(min_length=1)
    confirmation_message: Optional[str] = None


LLMResponse = Union[ActionProposalResponse, TextResponse]


def _first_object(text: str) -> Optional[str]:
    """Return the first balanced {...} span, ignoring braces inside JSON strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


def _extract_candidate(text: str) -> Optional[str]:
    match = FENCED_BLOCK.search(text)
    if match:
        return match.group(1).strip()
    return _first_object(text)


def parse_assistant_response(text: str) -> Optional[LLMResponse]:
    """Decode `text` into a text response or a validated action proposal, else None."""
    candidate = _extract_candidate(text or "")
    if not candidate:
        return None

    try:
        decoded = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(decoded, dict):
        return None

    try:
        if decoded.get("type") == "action_proposal":
            proposal = ActionProposalResponse.model_validate(decoded)
        else:
            return TextResponse.model_validate(decoded)
    except ValidationError:
        return None

    result = validate_payload(proposal.action_type, proposal.payload)
    if not result.valid:
        logger.warning(f"Discarding {proposal.action_type.value} proposal with invalid payload: {result.error}")
        return None
    return proposal


def is_action_proposal(response: Optional[LLMResponse]) -> bool:
    return isinstance(response, ActionProposalResponse)


def strip_proposal_markup(text: str) -> str:
    """Remove fenced action-proposal JSON so only the prose remains."""
    return PROPOSAL_BLOCK.sub("", text).strip()


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'s' if count != 1 else ''}"


def _format_due(value: str) -> str:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return value


def format_action_for_display(action_type, payload: Dict[str, Any]) -> str:
    """One-line human description of a proposed action."""
    action_type = action_type.value if isinstance(action_type, ActionType) else str(action_type)

    if action_type == "CREATE_TASK":
        due = f" (Due: {_format_due(payload['dueAt'])})" if payload.get("dueAt") else ""
        return f'Create Task: "{payload.get("title")}"{due}'
    if action_type == "CREATE_NOTE":
        body = payload.get("body") or ""
        preview = body[:50] + ("..." if len(body) > 50 else "")
        return f'Add Note to {payload.get("relatedType")}: "{preview}"'
    if action_type == "CREATE_DEAL":
        amount = f" ({format_amount(payload['amountCents'])})" if payload.get("amountCents") else ""
        return f'Create Deal: "{payload.get("title")}"{amount}'
    if action_type == "CREATE_CONTACT":
        return f"Create Contact: {payload.get('firstName')} {payload.get('lastName')}"
    if action_type == "CREATE_COMPANY":
        return f'Create Company: "{payload.get("name")}"'
    if action_type == "UPDATE_DEAL_STAGE":
        return f"Update Deal Stage to: {payload.get('stage')}"
    if action_type.startswith("UPDATE_") or action_type.startswith("DELETE_"):
        verb, noun = action_type.split("_", 1)
        key = f"{noun.lower()}Id"
        return f"{verb.capitalize()} {noun.capitalize()}: {payload.get(key)}"
    if action_type.startswith("BULK_UPDATE_"):
        noun = action_type[len("BULK_UPDATE_"):-1].capitalize()
        ids = payload.get(f"{noun.lower()}Ids") or []
        return f"Bulk Update {_plural(len(ids), noun)}"
    return f"Action: {action_type}"
