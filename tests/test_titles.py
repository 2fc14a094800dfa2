"""
Thread titles derived from the first user message.
"""

import pytest

from crm_assistant.core.titles import DEFAULT_TITLE, MAX_TITLE_LENGTH, generate_thread_title


@pytest.mark.parametrize("message,title", [
    ("How many deals do I have?", "Data Query"),
    ("What are my open deals?", "Deal Information"),
    ("What is the contact email for John", "Contact Details"),
    ("How do I merge two companies", "How-to Question"),
    ("Which of the accounts in the northeast region have been quiet lately?", "Question"),
    ("Create a task to call John", "Create Task"),
    ("Add a note about the demo", "Add Note"),
    ("Update the Acme deal", "Update Record"),
    ("Remove the old lead", "Delete Record"),
    ("Acme company pipeline", "Company Discussion"),
    ("Deal pipeline review", "Deal Pipeline"),
])
def test_titles(message, title):
    assert generate_thread_title(message) == title


def test_short_question_uses_first_sentence():
    assert generate_thread_title("Who owns Acme? Just curious.") == "Who owns Acme"


def test_filler_is_trimmed():
    assert generate_thread_title("hi there Acme quarterly review thanks") == "There Acme quarterly review"


def test_empty_message():
    assert generate_thread_title("   ") == DEFAULT_TITLE


def test_title_is_bounded():
    assert len(generate_thread_title("Why " + "very " * 30 + "slow")) <= MAX_TITLE_LENGTH
