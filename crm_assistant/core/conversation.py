"""
Conversation window management.
Keeps long threads inside a bounded context by replacing older turns with a
synthetic summary message, and reports advisory conversation health.
"""

import re
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .config import WINDOW_MAX_ACTIVE_MESSAGES, WINDOW_MAX_SUMMARY_CHARS, WINDOW_SUMMARY_TRIGGER
from .schema import ChatMessage

SUMMARY_PREFIX = "Previous conversation summary: "

INACTIVITY_HOURS = 24
LONG_CONVERSATION_MESSAGES = 50
QUESTION_BURST_WINDOW = 10
QUESTION_BURST_THRESHOLD = 5

ENTITY_PATTERNS = {
    "company": re.compile(r"\b(?:company|client)\s+[\"']?([\w&.\-]+)[\"']?"),
    "contact": re.compile(r"\b(?:contact|person)\s+[\"']?([\w&.\-]+)[\"']?"),
    "deal": re.compile(r"\b(?:deal|opportunity)\s+[\"']?([\w&.\-]+)[\"']?"),
    "task": re.compile(r"\b(?:task|todo)\s+[\"']?([\w&.\-]+)[\"']?"),
}

_WORD = re.compile(r"[a-z0-9][a-z0-9'\-]*")


@dataclass
class ConversationContext:
    key_topics: List[str] = field(default_factory=list)
    entity_references: Dict[str, List[str]] = field(default_factory=dict)
    message_count: int = 0
    last_activity: Optional[float] = None


@dataclass
class ManagedConversation:
    messages: List[ChatMessage]
    context: ConversationContext
    summarized: bool
    summary_text: Optional[str] = None


@dataclass
class ConversationHealth:
    needs_attention: bool
    reason: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        data = {"needsAttention": self.needs_attention}
        if self.reason:
            data["reason"] = self.reason
            data["suggestions"] = list(self.suggestions)
        return data


class ConversationAnalyzer(ABC):
    """Derives topic and entity context from a run of messages."""

    @abstractmethod
    def analyze(self, messages: Sequence[ChatMessage]) -> ConversationContext:
        pass


class KeywordConversationAnalyzer(ConversationAnalyzer):
    """Best-effort heuristic: repeated long words become topics, and a
    word following an entity keyword ("company", "deal", ...) becomes an
    entity mention. Never authoritative."""

    def __init__(self, max_topics: int = 5, min_word_length: int = 5):
        self.max_topics = max_topics
        self.min_word_length = min_word_length

    def analyze(self, messages: Sequence[ChatMessage]) -> ConversationContext:
        context = ConversationContext(message_count=len(messages))
        if messages:
            context.last_activity = messages[-1].created_at

        counts: Counter = Counter()
        first_seen: Dict[str, int] = {}

        for message in messages:
            content = message.content.lower()

            for entity_type, pattern in ENTITY_PATTERNS.items():
                for name in pattern.findall(content):
                    names = context.entity_references.setdefault(entity_type, [])
                    if name and name not in names:
                        names.append(name)

            for word in _WORD.findall(content):
                if len(word) < self.min_word_length:
                    continue
                counts[word] += 1
                first_seen.setdefault(word, len(first_seen))

        repeated = [word for word, count in counts.items() if count > 1]
        repeated.sort(key=lambda w: (-counts[w], first_seen[w]))
        context.key_topics = repeated[:self.max_topics]
        return context


class ConversationWindowManager:
    """Bounds dialogue history sent to the model.

    Threads shorter than `summary_trigger` pass through untouched. From the
    trigger on, only the newest `max_active` messages are kept verbatim and
    anything older is folded into one leading system message.
    """

    def __init__(self, analyzer: ConversationAnalyzer = None,
                 max_active: int = WINDOW_MAX_ACTIVE_MESSAGES,
                 summary_trigger: int = WINDOW_SUMMARY_TRIGGER,
                 max_summary_chars: int = WINDOW_MAX_SUMMARY_CHARS,
                 clock: Callable[[], float] = time.time):
        self.analyzer = analyzer or KeywordConversationAnalyzer()
        self.max_active = max_active
        self.summary_trigger = summary_trigger
        self.max_summary_chars = max_summary_chars
        self._clock = clock

    def manage(self, messages: Sequence[ChatMessage]) -> ManagedConversation:
        """Window the thread for the model.

        `summarized` is True only when a summary message was prepended. A thread
        at or past the trigger whose messages all fit the active window comes
        back unchanged with `summarized` False.
        """
        messages = list(messages)
        context = self.analyzer.analyze(messages)

        if len(messages) < self.summary_trigger:
            return ManagedConversation(messages=messages, context=context, summarized=False)

        recent = messages[-self.max_active:]
        older = messages[:-self.max_active]
        if not older:
            return ManagedConversation(messages=recent, context=context, summarized=False)

        summary_text = self.summarize(older)
        now = self._clock()
        summary_message = ChatMessage(
            id=f"summary-{int(now * 1000)}",
            thread_id=recent[-1].thread_id,
            role="system",
            content=f"{SUMMARY_PREFIX}{summary_text}",
            created_at=now
        )
        return ManagedConversation(
            messages=[summary_message] + recent,
            context=context,
            summarized=True,
            summary_text=summary_text
        )

    def summarize(self, messages: Sequence[ChatMessage]) -> str:
        context = self.analyzer.analyze(messages)
        parts = []

        if context.key_topics:
            parts.append(f"Key topics discussed: {', '.join(context.key_topics)}")

        entity_parts = [
            f"{entity_type}s: {', '.join(names[:3])}"
            for entity_type, names in context.entity_references.items()
            if names
        ]
        if entity_parts:
            parts.append(f"Entities mentioned: {'; '.join(entity_parts)}")

        user_count = sum(1 for m in messages if m.role == "user")
        assistant_count = sum(1 for m in messages if m.role == "assistant")
        parts.append(f"{user_count} user queries, {assistant_count} assistant responses")

        summary = ". ".join(parts)
        if len(summary) > self.max_summary_chars:
            summary = summary[:self.max_summary_chars - 3] + "..."
        return summary

    def health(self, messages: Sequence[ChatMessage], now: float = None) -> ConversationHealth:
        """Advisory only; the turn proceeds regardless of the result."""
        if not messages:
            return ConversationHealth(needs_attention=False)

        now = self._clock() if now is None else now
        hours_idle = (now - messages[-1].created_at) / 3600

        if hours_idle > INACTIVITY_HOURS:
            return ConversationHealth(
                needs_attention=True,
                reason="Conversation inactive for over 24 hours",
                suggestions=["Send a follow-up message", "Archive the conversation"]
            )

        if len(messages) > LONG_CONVERSATION_MESSAGES:
            return ConversationHealth(
                needs_attention=True,
                reason="Very long conversation may need summarization",
                suggestions=["Consider starting a new conversation", "Archive completed topics"]
            )

        questions = [
            m for m in messages[-QUESTION_BURST_WINDOW:]
            if m.role == "user" and _looks_like_question(m.content)
        ]
        if len(questions) >= QUESTION_BURST_THRESHOLD:
            return ConversationHealth(
                needs_attention=True,
                reason="Many unanswered questions detected",
                suggestions=["Address pending questions", "Clarify requirements"]
            )

        return ConversationHealth(needs_attention=False)

    def stats(self, messages: Sequence[ChatMessage]) -> Dict:
        """Per-role totals, average user-to-assistant latency and topic context."""
        response_times = [
            nxt.created_at - cur.created_at
            for cur, nxt in zip(messages, messages[1:])
            if cur.role == "user" and nxt.role == "assistant"
        ]
        context = self.analyzer.analyze(messages)
        return {
            "totalMessages": len(messages),
            "userMessages": sum(1 for m in messages if m.role == "user"),
            "assistantMessages": sum(1 for m in messages if m.role == "assistant"),
            "avgResponseTimeSec": (sum(response_times) / len(response_times)) if response_times else None,
            "topicsDiscussed": context.key_topics,
            "entitiesReferenced": {k: len(v) for k, v in context.entity_references.items()},
        }


def _looks_like_question(content: str) -> bool:
    lowered = content.lower()
    return "?" in content or any(word in lowered for word in ("what", "how", "why"))
