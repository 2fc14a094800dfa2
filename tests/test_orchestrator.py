"""
Streaming turns: event order, proposals, citations and failure handling.
"""

import asyncio
import json
from datetime import datetime
from unittest.mock import Mock

from crm_assistant.agents.orchestrator import (
    EMPTY_RESPONSE_MESSAGE,
    TIMEOUT_MESSAGE,
    EventChannel,
    StreamingOrchestrator,
    encode_event,
)
from crm_assistant.agents.provider import ProviderUnavailableError
from crm_assistant.core import assistant_dao, dao
from crm_assistant.core.actions import ActionWorkflow
from crm_assistant.vector.retrieval import RetrievalEngine

PROPOSAL_REPLY = (
    'I will create that task.\n```json\n'
    '{"type": "action_proposal", "actionType": "CREATE_TASK", '
    '"payload": {"title": "Call John"}, "summary": "Create a follow-up task"}\n```'
)


class ScriptedChat:
    """Streams fixed deltas and records what it was asked."""

    def __init__(self, deltas, delay=0.0, fail_after=None):
        self.deltas = deltas
        self.delay = delay
        self.fail_after = fail_after
        self.calls = []

    async def stream_chat(self, messages, system_prompt):
        self.calls.append((messages, system_prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        for i, delta in enumerate(self.deltas):
            if self.fail_after is not None and i == self.fail_after:
                raise ProviderUnavailableError("Ollama is not reachable at http://localhost:11434")
            yield delta


def make_orchestrator(chat, metrics=None, timeout=5.0):
    return StreamingOrchestrator(
        chat_provider=chat,
        retrieval=RetrievalEngine(provider=None),
        workflow=ActionWorkflow(),
        metrics=metrics,
        first_chunk_timeout=timeout,
        now=lambda: datetime(2024, 1, 15, 9, 0)
    )


def run_turn(orchestrator, user_id, thread_id, message):
    async def collect():
        return [event async for event in orchestrator.stream_turn(user_id, thread_id, message)]
    return asyncio.run(collect())


def types_of(events):
    return [event["type"] for event in events]


class TestHappyPath:

    def test_event_order_and_persistence(self, user_id):
        thread = assistant_dao.create_thread(user_id, "New Chat")
        chat = ScriptedChat(["You have ", "no open deals."])

        events = run_turn(make_orchestrator(chat), user_id, thread.id, "What deals are open?")

        assert types_of(events) == ["status", "status", "status", "chunk", "chunk", "done"]
        assert [e["phase"] for e in events if e["type"] == "status"] == ["thinking", "searching", "generating"]
        assert "".join(e["content"] for e in events if e["type"] == "chunk") == "You have no open deals."

        messages = assistant_dao.list_messages(thread.id)
        assert [(m.role, m.content) for m in messages] == [
            ("user", "What deals are open?"),
            ("assistant", "You have no open deals."),
        ]

    def test_first_message_names_the_thread(self, user_id):
        thread = assistant_dao.create_thread(user_id, "New Chat")
        run_turn(make_orchestrator(ScriptedChat(["Done."])), user_id, thread.id, "Create a task for tomorrow")

        assert assistant_dao.get_thread(user_id, thread.id).title == "Create Task"

    def test_prompt_carries_date_and_context(self, user_id):
        dao.create_company(user_id, "Acme Corp")
        thread = assistant_dao.create_thread(user_id, "New Chat")
        chat = ScriptedChat(["Acme is a customer."])

        events = run_turn(make_orchestrator(chat), user_id, thread.id, "Tell me about Acme")

        messages, system_prompt = chat.calls[0]
        assert "2024-01-15" in system_prompt
        assert messages[-1]["role"] == "user"
        assert messages[-1]["content"].startswith("[Context from your CRM data]\n[COMPANY:")
        assert messages[-1]["content"].endswith("[User question]\nTell me about Acme")

        citations = [e for e in events if e["type"] == "citations"]
        assert len(citations) == 1
        assert citations[0]["citations"][0]["title"] == "Acme Corp"
        assert types_of(events)[-2:] == ["citations", "done"]

    def test_history_is_sent_before_new_message(self, user_id):
        thread = assistant_dao.create_thread(user_id, "New Chat")
        assistant_dao.add_message(user_id, thread.id, "user", "Hi")
        assistant_dao.add_message(user_id, thread.id, "assistant", "Hello!")
        chat = ScriptedChat(["Sure."])

        run_turn(make_orchestrator(chat), user_id, thread.id, "Thanks")

        messages, _ = chat.calls[0]
        assert [m["content"] for m in messages] == ["Hi", "Hello!", "Thanks"]

    def test_metrics_record_success(self, user_id):
        thread = assistant_dao.create_thread(user_id, "New Chat")
        metrics = Mock()

        run_turn(make_orchestrator(ScriptedChat(["Ok."]), metrics=metrics), user_id, thread.id, "Hello")

        args, kwargs = metrics.track_chat_query.call_args
        assert args[0] == user_id
        assert args[3] is True
        assert kwargs["error"] is None


class TestProposals:

    def test_valid_proposal_is_persisted_and_announced(self, user_id):
        thread = assistant_dao.create_thread(user_id, "New Chat")
        chat = ScriptedChat([PROPOSAL_REPLY[:20], PROPOSAL_REPLY[20:]])

        events = run_turn(make_orchestrator(chat), user_id, thread.id, "Remind me to call John")

        proposal = next(e for e in events if e["type"] == "action_proposal")
        assert proposal["actionType"] == "CREATE_TASK"
        assert proposal["payload"] == {"title": "Call John"}
        assert proposal["summary"] == "Create a follow-up task"

        action = assistant_dao.get_action(user_id, proposal["actionId"])
        assert action.status == "PROPOSED"
        assert action.thread_id == thread.id
        assert types_of(events)[-1] == "done"

    def test_invalid_proposal_is_plain_text(self, user_id):
        thread = assistant_dao.create_thread(user_id, "New Chat")
        reply = ('{"type": "action_proposal", "actionType": "CREATE_TASK", '
                 '"payload": {"title": ""}, "summary": "Create a task"}')

        events = run_turn(make_orchestrator(ScriptedChat([reply])), user_id, thread.id, "Add a task")

        assert "action_proposal" not in types_of(events)
        assert types_of(events)[-1] == "done"
        assert assistant_dao.list_actions(thread.id) == []


class TestFailures:

    def test_unknown_thread(self, user_id, other_user_id):
        thread = assistant_dao.create_thread(other_user_id, "Private")
        chat = ScriptedChat(["never"])

        events = run_turn(make_orchestrator(chat), user_id, thread.id, "Hello")

        assert types_of(events) == ["status", "error"]
        assert events[-1]["message"] == "Thread not found"
        assert chat.calls == []
        assert assistant_dao.list_messages(thread.id) == []

    def test_first_chunk_timeout(self, user_id):
        thread = assistant_dao.create_thread(user_id, "New Chat")
        chat = ScriptedChat(["late"], delay=1.0)

        events = run_turn(make_orchestrator(chat, timeout=0.05), user_id, thread.id, "Hello")

        assert types_of(events)[-1] == "error"
        assert events[-1]["message"] == TIMEOUT_MESSAGE
        assert "chunk" not in types_of(events)
        assert [m.role for m in assistant_dao.list_messages(thread.id)] == ["user"]

    def test_provider_failure_mid_stream(self, user_id):
        thread = assistant_dao.create_thread(user_id, "New Chat")
        chat = ScriptedChat(["Partial ", "reply"], fail_after=1)
        metrics = Mock()

        events = run_turn(make_orchestrator(chat, metrics=metrics), user_id, thread.id, "Hello")

        assert types_of(events) == ["status", "status", "status", "chunk", "error"]
        assert "not reachable" in events[-1]["message"]
        assert [m.role for m in assistant_dao.list_messages(thread.id)] == ["user"]
        assert metrics.track_chat_query.call_args[0][3] is False

    def test_empty_stream(self, user_id):
        thread = assistant_dao.create_thread(user_id, "New Chat")

        events = run_turn(make_orchestrator(ScriptedChat(["", ""])), user_id, thread.id, "Hello")

        assert types_of(events) == ["status", "status", "error"]
        assert events[-1]["message"] == EMPTY_RESPONSE_MESSAGE
        assert [m.role for m in assistant_dao.list_messages(thread.id)] == ["user"]

    def test_exactly_one_terminal_event(self, user_id):
        thread = assistant_dao.create_thread(user_id, "New Chat")
        chat = ScriptedChat(["a"], fail_after=0)

        events = run_turn(make_orchestrator(chat), user_id, thread.id, "Hello")

        terminal = [e for e in events if e["type"] in ("done", "error")]
        assert len(terminal) == 1
        assert events[-1] is terminal[0]


class TestEventChannel:

    def test_drains_until_closed(self):
        async def scenario():
            channel = EventChannel()
            await channel.send({"type": "status", "phase": "thinking"})
            channel.close()
            return [event async for event in channel]

        assert asyncio.run(scenario()) == [{"type": "status", "phase": "thinking"}]

    def test_send_after_close_is_dropped(self):
        async def scenario():
            channel = EventChannel()
            channel.close()
            channel.close()
            sent = await channel.send({"type": "done"})
            return sent, [event async for event in channel]

        assert asyncio.run(scenario()) == (False, [])

    def test_encode_event_is_one_line(self):
        line = encode_event({"type": "chunk", "content": "a\nb"})
        assert line.endswith("\n")
        assert line.count("\n") == 1
        assert json.loads(line) == {"type": "chunk", "content": "a\nb"}
