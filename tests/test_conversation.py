"""
Conversation windowing, summaries and advisory health.
"""

from crm_assistant.core.conversation import (
    SUMMARY_PREFIX,
    ConversationWindowManager,
    KeywordConversationAnalyzer,
)
from crm_assistant.core.schema import ChatMessage

NOW = 1_700_000_000.0


def make_messages(count, start=NOW - 3600, step=10.0, content=None):
    messages = []
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        text = content or f"{role} message {i} about the Acme renewal"
        messages.append(ChatMessage(id=f"m{i}", thread_id="t1", role=role,
                                    content=text, created_at=start + i * step))
    return messages


def manager(**kwargs):
    return ConversationWindowManager(clock=lambda: NOW, **kwargs)


class TestWindowing:

    def test_short_thread_passes_through(self):
        messages = make_messages(14)
        managed = manager().manage(messages)

        assert managed.messages == messages
        assert managed.summarized is False

    def test_thread_within_active_window_is_not_summarized(self):
        messages = make_messages(16)
        managed = manager().manage(messages)

        assert managed.messages == messages
        assert managed.summarized is False
        assert managed.summary_text is None

    def test_long_thread_keeps_recent_and_summarizes_older(self):
        messages = make_messages(25)
        managed = manager().manage(messages)

        assert managed.summarized is True
        assert len(managed.messages) == 21
        assert managed.messages[1:] == messages[-20:]

        summary = managed.messages[0]
        assert summary.role == "system"
        assert summary.content.startswith(SUMMARY_PREFIX)
        assert "3 user queries, 2 assistant responses" in summary.content

    def test_summary_is_bounded(self):
        long_words = " ".join(f"topicword{i} topicword{i}" for i in range(200))
        older = make_messages(10, content=long_words)

        summary = manager(max_summary_chars=40).summarize(older)

        assert len(summary) <= 40
        assert summary.endswith("...")

    def test_summary_mentions_entities(self):
        older = [
            ChatMessage("m0", "t1", "user", "Tell me about company Acme", NOW - 100),
            ChatMessage("m1", "t1", "assistant", "The deal Renewal is in proposal", NOW - 90),
        ]

        summary = manager().summarize(older)

        assert "Entities mentioned" in summary
        assert "acme" in summary
        assert "renewal" in summary


class TestAnalyzer:

    def test_repeated_long_words_become_topics(self):
        messages = [
            ChatMessage("m0", "t1", "user", "pricing for the renewal", NOW),
            ChatMessage("m1", "t1", "assistant", "renewal pricing is ready", NOW),
            ChatMessage("m2", "t1", "user", "send renewal", NOW),
        ]

        context = KeywordConversationAnalyzer().analyze(messages)

        assert context.key_topics == ["renewal", "pricing"]
        assert context.message_count == 3
        assert context.last_activity == NOW


class TestHealth:

    def test_empty_thread_is_healthy(self):
        assert manager().health([]).needs_attention is False

    def test_inactive_thread(self):
        messages = make_messages(4, start=NOW - 2 * 86400)
        health = manager().health(messages)

        assert health.needs_attention is True
        assert health.reason == "Conversation inactive for over 24 hours"
        assert health.to_dict()["suggestions"]

    def test_very_long_thread(self):
        health = manager().health(make_messages(51, start=NOW - 600))
        assert health.reason == "Very long conversation may need summarization"

    def test_question_burst(self):
        messages = make_messages(10, start=NOW - 600, content="what is the status?")
        health = manager().health(messages)
        assert health.reason == "Many unanswered questions detected"

    def test_healthy_to_dict(self):
        health = manager().health(make_messages(4, start=NOW - 600))
        assert health.to_dict() == {"needsAttention": False}


class TestStats:

    def test_counts_and_latency(self):
        messages = make_messages(6, step=4.0)
        stats = manager().stats(messages)

        assert stats["totalMessages"] == 6
        assert stats["userMessages"] == 3
        assert stats["assistantMessages"] == 3
        assert stats["avgResponseTimeSec"] == 4.0
        assert "renewal" in stats["topicsDiscussed"]

    def test_no_replies_has_no_latency(self):
        stats = manager().stats(make_messages(1))
        assert stats["avgResponseTimeSec"] is None
