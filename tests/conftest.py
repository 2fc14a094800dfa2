"""
Shared fixtures: every test runs against its own temporary SQLite file.
"""

import pytest

from crm_assistant.core.db import init_db


@pytest.fixture(autouse=True)
def temp_database(tmp_path, monkeypatch):
    """Point DB_PATH at a fresh file and create the schema."""
    db_path = tmp_path / "assistant.db"
    monkeypatch.setenv("DB_PATH", str(db_path))
    init_db()
    return db_path


@pytest.fixture
def user_id():
    return "user-alice"


@pytest.fixture
def other_user_id():
    return "user-bob"


class InlineQueue:
    """Runs submitted work immediately so tests can assert on its effects."""

    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args, description="task", **kwargs):
        self.submitted.append(description)
        fn(*args, **kwargs)
        return True


@pytest.fixture
def inline_queue():
    return InlineQueue()
