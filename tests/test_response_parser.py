"""
Decoding model output into text replies and validated action proposals.
"""

from datetime import datetime

from crm_assistant.agents.prompts import build_system_prompt
from crm_assistant.agents.response_parser import (
    ActionProposalResponse,
    TextResponse,
    format_action_for_display,
    is_action_proposal,
    parse_assistant_response,
    strip_proposal_markup,
)
from crm_assistant.core.schema import ActionType

PROPOSAL_REPLY = '''I can set that up for you.

```json
{
  "type": "action_proposal",
  "actionType": "CREATE_TASK",
  "payload": {"title": "Call John", "dueAt": "2024-01-16T14:00:00"},
  "summary": "Create a follow-up task",
  "confirmationMessage": "Create this task?"
}
```'''


class TestParse:

    def test_plain_prose_is_not_structured(self):
        assert parse_assistant_response("Sure, I can help. No JSON here.") is None

    def test_empty_reply(self):
        assert parse_assistant_response("") is None
        assert parse_assistant_response(None) is None

    def test_fenced_proposal(self):
        parsed = parse_assistant_response(PROPOSAL_REPLY)

        assert isinstance(parsed, ActionProposalResponse)
        assert is_action_proposal(parsed)
        assert parsed.action_type == ActionType.CREATE_TASK
        assert parsed.payload["title"] == "Call John"
        assert parsed.summary == "Create a follow-up task"
        assert parsed.confirmation_message == "Create this task?"

    def test_bare_object_with_surrounding_prose(self):
        reply = ('Here you go: {"type": "action_proposal", "actionType": "CREATE_COMPANY", '
                 '"payload": {"name": "Acme {Holdings}"}, "summary": "Add Acme"} Let me know.')

        parsed = parse_assistant_response(reply)

        assert is_action_proposal(parsed)
        assert parsed.payload == {"name": "Acme {Holdings}"}

    def test_invalid_payload_is_treated_as_text(self):
        reply = ('{"type": "action_proposal", "actionType": "CREATE_TASK", '
                 '"payload": {"title": ""}, "summary": "Create a task"}')
        assert parse_assistant_response(reply) is None

    def test_nulled_required_field_is_treated_as_text(self):
        reply = ('{"type": "action_proposal", "actionType": "UPDATE_TASK", '
                 '"payload": {"taskId": "t1", "title": null}, "summary": "Rename the task"}')
        assert parse_assistant_response(reply) is None

    def test_unknown_action_type(self):
        reply = ('{"type": "action_proposal", "actionType": "SEND_EMAIL", '
                 '"payload": {}, "summary": "Email John"}')
        assert parse_assistant_response(reply) is None

    def test_missing_summary(self):
        reply = ('{"type": "action_proposal", "actionType": "CREATE_COMPANY", '
                 '"payload": {"name": "Acme"}, "summary": ""}')
        assert parse_assistant_response(reply) is None

    def test_text_response(self):
        reply = '{"type": "text", "content": "You have 3 open deals.", "citations": []}'

        parsed = parse_assistant_response(reply)

        assert isinstance(parsed, TextResponse)
        assert parsed.content == "You have 3 open deals."
        assert not is_action_proposal(parsed)

    def test_malformed_json(self):
        assert parse_assistant_response('```json\n{"type": "action_proposal",\n```') is None

    def test_non_object_json(self):
        assert parse_assistant_response("```json\n[1, 2, 3]\n```") is None


class TestDisplay:

    def test_strip_proposal_markup_keeps_prose(self):
        assert strip_proposal_markup(PROPOSAL_REPLY) == "I can set that up for you."

    def test_strip_leaves_other_code_blocks(self):
        text = "Example:\n```json\n{\"a\": 1}\n```"
        assert strip_proposal_markup(text) == text

    def test_create_task(self):
        line = format_action_for_display("CREATE_TASK", {"title": "Call John", "dueAt": "2024-01-16T14:00:00"})
        assert line == 'Create Task: "Call John" (Due: 2024-01-16 14:00)'

    def test_create_note_preview(self):
        line = format_action_for_display(ActionType.CREATE_NOTE, {"body": "a" * 60, "relatedType": "DEAL"})
        assert line == f'Add Note to DEAL: "{"a" * 50}..."'

    def test_create_deal_amount(self):
        line = format_action_for_display("CREATE_DEAL", {"title": "Renewal", "amountCents": 250000})
        assert line == 'Create Deal: "Renewal" ($2500)'

    def test_stage_change(self):
        assert format_action_for_display("UPDATE_DEAL_STAGE", {"dealId": "d1", "stage": "WON"}) == \
            "Update Deal Stage to: WON"

    def test_update_and_delete(self):
        assert format_action_for_display("UPDATE_CONTACT", {"contactId": "c1"}) == "Update Contact: c1"
        assert format_action_for_display("DELETE_TASK", {"taskId": "t1"}) == "Delete Task: t1"

    def test_bulk_update(self):
        assert format_action_for_display("BULK_UPDATE_DEALS", {"dealIds": ["a", "b"]}) == "Bulk Update 2 Deals"
        assert format_action_for_display("BULK_UPDATE_TASKS", {"taskIds": ["a"]}) == "Bulk Update 1 Task"


class TestSystemPrompt:

    def test_dates_are_filled_in(self):
        prompt = build_system_prompt(datetime(2024, 1, 15, 9, 30))

        assert "Today's date is: 2024-01-15" in prompt
        assert "2024-01-16T14:00:00" in prompt
        assert "{{" not in prompt

    def test_every_action_type_is_described(self):
        prompt = build_system_prompt(datetime(2024, 1, 15))
        for action_type in ActionType:
            assert action_type.value in prompt
