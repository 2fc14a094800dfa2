"""
Thread title generation from the first user message.
"""

import re

MAX_TITLE_LENGTH = 50
DEFAULT_TITLE = "New Chat"

QUESTION_WORDS = ['what', 'how', 'when', 'where', 'why', 'who', 'which', 'can you', 'could you', 'would you']
ACTION_WORDS = ['create', 'add', 'update', 'change', 'delete', 'remove', 'edit', 'modify', 'set', 'mark', 'assign']
ENTITY_WORDS = ['company', 'contact', 'deal', 'task', 'note', 'client', 'customer', 'project']

_LEADING_FILLER = re.compile(r"^(hi|hello|hey|can you|could you|please|thanks?|thank you)\s+", re.IGNORECASE)
_TRAILING_FILLER = re.compile(r"\s+(please|thanks?|thank you)$", re.IGNORECASE)


def _has_any(text: str, words) -> bool:
    return any(word in text for word in words)


def generate_thread_title(user_message: str) -> str:
    """Pick a short title: question, action request, entity topic, or leading words."""
    if not user_message or not user_message.strip():
        return DEFAULT_TITLE

    message = user_message.strip()
    lowered = message.lower()

    if _has_any(lowered, QUESTION_WORDS) or '?' in message:
        title = _question_title(message, lowered)
    elif _has_any(lowered, ACTION_WORDS):
        title = _action_title(lowered)
    elif _has_any(lowered, ENTITY_WORDS):
        title = _entity_title(lowered)
    else:
        title = _default_title(message)

    return title[:MAX_TITLE_LENGTH]


def _question_title(message: str, lowered: str) -> str:
    if 'how many' in lowered or 'how much' in lowered:
        return "Data Query"

    if 'what are' in lowered or 'what is' in lowered:
        if _has_any(lowered, ['deal', 'opportunity']):
            return "Deal Information"
        if _has_any(lowered, ['contact', 'person']):
            return "Contact Details"
        if _has_any(lowered, ['company', 'client']):
            return "Company Overview"

    if 'how to' in lowered or 'how do i' in lowered:
        return "How-to Question"

    first_sentence = re.split(r"[.!?]", message)[0].strip()
    if first_sentence and len(first_sentence) <= MAX_TITLE_LENGTH:
        return first_sentence
    return "Question"


def _action_title(lowered: str) -> str:
    if 'create' in lowered or 'add' in lowered:
        if _has_any(lowered, ['task', 'todo']):
            return "Create Task"
        if 'note' in lowered:
            return "Add Note"
        if _has_any(lowered, ['deal', 'opportunity']):
            return "Create Deal"
        if 'contact' in lowered:
            return "Add Contact"
        return "Create New"

    if _has_any(lowered, ['update', 'change', 'edit']):
        return "Update Record"

    if _has_any(lowered, ['delete', 'remove']):
        return "Delete Record"

    return "Action Request"


def _entity_title(lowered: str) -> str:
    if _has_any(lowered, ['company', 'client']):
        return "Company Setup" if _has_any(lowered, ['new', 'add']) else "Company Discussion"
    if _has_any(lowered, ['contact', 'person']):
        return "Contact Management"
    if _has_any(lowered, ['deal', 'opportunity']):
        return "Deal Pipeline" if _has_any(lowered, ['pipeline', 'stage']) else "Deal Discussion"
    if _has_any(lowered, ['task', 'todo']):
        return "Task Management"
    return "CRM Discussion"


def _default_title(message: str) -> str:
    cleaned = _TRAILING_FILLER.sub('', _LEADING_FILLER.sub('', message))
    words = cleaned.split()

    phrase = ' '.join(words[:8])
    if 10 < len(phrase) <= MAX_TITLE_LENGTH:
        return phrase[0].upper() + phrase[1:]

    short = ' '.join(words[:4])
    if short:
        return short[0].upper() + short[1:]
    return DEFAULT_TITLE
