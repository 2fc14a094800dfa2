"""
Streaming orchestrator - drives one conversational turn end to end.

For each user message the StreamingOrchestrator:

1. Emits a `thinking` status and verifies the thread belongs to the user
2. Persists the user message and names the thread from its first message
3. Retrieves evidence from the user's CRM records and bounds the history
4. Streams the model completion, relaying every delta as a `chunk` event
5. Parses the finished reply; a valid proposal is persisted and announced
6. Emits citations, persists the assistant message and emits `done`

A watchdog bounds the wait for the first delta only. Timeouts and provider
failures end the turn with a single `error` event and persist no reply.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from ..core import assistant_dao
from ..core.actions import ActionError, ActionWorkflow
from ..core.config import STREAM_FIRST_CHUNK_TIMEOUT_SEC
from ..core.conversation import ConversationWindowManager
from ..core.dao import RecordNotFoundError
from ..core.schema import ActionRecord
from ..core.titles import generate_thread_title
from ..util.logging import logger
from ..vector.retrieval import EntityDetails, RetrievalEngine, build_retrieval_context
from .prompts import build_system_prompt
from .provider import ProviderUnavailableError
from .response_parser import ActionProposalResponse, is_action_proposal, parse_assistant_response

TIMEOUT_MESSAGE = "Request is taking longer than expected. Please try again."
EMPTY_RESPONSE_MESSAGE = "No response received from the language model"


# Event builders

def status_event(phase: str) -> Dict[str, Any]:
    return {"type": "status", "phase": phase}


def chunk_event(content: str) -> Dict[str, Any]:
    return {"type": "chunk", "content": content}


def action_proposal_event(action: ActionRecord, proposal: ActionProposalResponse) -> Dict[str, Any]:
    event = {
        "type": "action_proposal",
        "actionId": action.id,
        "actionType": action.action_type,
        "payload": action.payload,
        "summary": proposal.summary,
    }
    if proposal.confirmation_message:
        event["confirmationMessage"] = proposal.confirmation_message
    return event


def citations_event(citations: List[EntityDetails]) -> Dict[str, Any]:
    return {"type": "citations", "citations": [c.to_citation() for c in citations]}


def done_event() -> Dict[str, Any]:
    return {"type": "done"}


def error_event(message: str) -> Dict[str, Any]:
    return {"type": "error", "message": message}


def encode_event(event: Dict[str, Any]) -> str:
    """One NDJSON line."""
    return json.dumps(event) + "\n"


_CLOSED = object()


class EventChannel:
    """Single-consumer event queue between a turn and its HTTP response.

    Once closed, `send` and `close` are no-ops, so a turn keeps running to
    completion after its client has gone away.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, event: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        await self._queue.put(event)
        return True

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


@dataclass
class TurnResult:
    success: bool
    content: str = ""
    action_id: Optional[str] = None
    citations: List[EntityDetails] = field(default_factory=list)
    error: Optional[str] = None


class TurnFailed(Exception):
    """Ends a turn with a user-facing error message."""


class StreamingOrchestrator:
    """Coordinates retrieval, windowing, the model stream and action proposals."""

    def __init__(self, chat_provider, retrieval: RetrievalEngine, workflow: ActionWorkflow,
                 window: ConversationWindowManager = None, metrics=None,
                 first_chunk_timeout: float = STREAM_FIRST_CHUNK_TIMEOUT_SEC,
                 now: Callable[[], datetime] = datetime.now):
        self.chat_provider = chat_provider
        self.retrieval = retrieval
        self.workflow = workflow
        self.window = window or ConversationWindowManager()
        self.metrics = metrics
        self.first_chunk_timeout = first_chunk_timeout
        self._now = now
        self._running: set = set()

    def start_turn(self, user_id: str, thread_id: str, message: str) -> EventChannel:
        """Run a turn as a background task and hand back the channel it writes to."""
        channel = EventChannel()
        task = asyncio.create_task(self.run_turn(user_id, thread_id, message, channel))
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        return channel

    async def stream_turn(self, user_id: str, thread_id: str, message: str) -> AsyncIterator[Dict[str, Any]]:
        """Events of one turn; leaving early closes the channel but not the turn."""
        channel = self.start_turn(user_id, thread_id, message)
        try:
            async for event in channel:
                yield event
        finally:
            channel.close()

    async def run_turn(self, user_id: str, thread_id: str, message: str, channel: EventChannel) -> TurnResult:
        started = time.time()
        result = TurnResult(success=False)

        try:
            await channel.send(status_event("thinking"))
            chat_messages, context = await self._prepare(user_id, thread_id, message, channel)

            content = await self._relay(chat_messages, build_system_prompt(self._now()), channel, thread_id)
            if not content:
                raise TurnFailed(EMPTY_RESPONSE_MESSAGE)
            result.content = content

            parsed = parse_assistant_response(content)
            if is_action_proposal(parsed):
                action = self._propose(user_id, thread_id, parsed)
                if action:
                    result.action_id = action.id
                    await channel.send(action_proposal_event(action, parsed))

            if context.citations:
                result.citations = context.citations
                await channel.send(citations_event(context.citations))

            assistant_dao.add_message(user_id, thread_id, "assistant", content)
            await channel.send(done_event())
            result.success = True
            logger.log_stream_event(thread_id, "done", {
                "chars": len(content),
                "has_action": result.action_id is not None,
                "citations": len(result.citations)
            })

        except asyncio.TimeoutError:
            result.error = TIMEOUT_MESSAGE
            logger.log_stream_event(thread_id, "timeout", {"timeout_sec": self.first_chunk_timeout})
        except TurnFailed as e:
            result.error = str(e)
        except RecordNotFoundError:
            result.error = "Thread not found"
        except ProviderUnavailableError as e:
            result.error = str(e)
        except Exception as e:
            logger.exception(f"Chat turn failed for thread {thread_id}")
            result.error = str(e) or e.__class__.__name__

        if result.error:
            await channel.send(error_event(result.error))
            logger.log_stream_event(thread_id, "error", {"message": result.error})
        channel.close()

        if self.metrics:
            self.metrics.track_chat_query(
                user_id, thread_id, int((time.time() - started) * 1000), result.success,
                has_action_proposal=result.action_id is not None,
                citation_count=len(result.citations),
                error=result.error
            )
        return result

    async def _prepare(self, user_id: str, thread_id: str, message: str, channel: EventChannel):
        """Persist the user turn, gather evidence and build the model input."""
        if assistant_dao.get_thread(user_id, thread_id) is None:
            raise TurnFailed("Thread not found")

        history = assistant_dao.list_messages(thread_id)
        assistant_dao.add_message(user_id, thread_id, "user", message)
        if not history:
            assistant_dao.set_thread_title_once(user_id, thread_id, generate_thread_title(message))

        await channel.send(status_event("searching"))
        results = await asyncio.to_thread(self.retrieval.search, message, user_id)
        context = build_retrieval_context(results)

        managed = self.window.manage(history)
        health = self.window.health(history)
        if health.needs_attention:
            logger.warning(f"Conversation {thread_id} needs attention: {health.reason}")

        chat_messages = [{"role": m.role.lower(), "content": m.content} for m in managed.messages]
        if context.context_text:
            chat_messages.append({
                "role": "user",
                "content": f"[Context from your CRM data]\n{context.context_text}\n\n[User question]\n{message}"
            })
        else:
            chat_messages.append({"role": "user", "content": message})
        return chat_messages, context

    async def _relay(self, chat_messages: List[Dict[str, str]], system_prompt: str,
                     channel: EventChannel, thread_id: str) -> str:
        """Forward deltas to the channel and return the assembled reply."""
        stream = self.chat_provider.stream_chat(chat_messages, system_prompt)
        parts = []
        try:
            # Watchdog covers the wait for the first delta only
            first = await asyncio.wait_for(self._first_delta(stream), timeout=self.first_chunk_timeout)
            if first is None:
                logger.warning(f"No chunks received from model stream for thread {thread_id}")
                return ""

            await channel.send(status_event("generating"))
            parts.append(first)
            await channel.send(chunk_event(first))

            async for delta in stream:
                if delta:
                    parts.append(delta)
                    await channel.send(chunk_event(delta))
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose:
                await aclose()

        return "".join(parts)

    @staticmethod
    async def _first_delta(stream) -> Optional[str]:
        async for delta in stream:
            if delta:
                return delta
        return None

    def _propose(self, user_id: str, thread_id: str, proposal: ActionProposalResponse) -> Optional[ActionRecord]:
        try:
            return self.workflow.propose(user_id, thread_id, proposal.action_type, proposal.payload)
        except ActionError as e:
            # The reply still reaches the user as plain text
            logger.warning(f"Dropped {proposal.action_type.value} proposal: {e}")
            return None
