"""
SQLite foundation for the record store and assistant persistence.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator
from .config import get_db_path

REQUIRED_TABLES = [
    'companies', 'contacts', 'deals', 'tasks', 'notes',
    'assistant_threads', 'assistant_messages', 'assistant_actions',
    'document_embeddings', 'metric_events'
]


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    db_path = get_db_path()
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()


def init_db():
    """Initialize the database with required tables."""
    with get_db() as conn:
        cursor = conn.cursor()

        # Business records, every row owner scoped
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS companies (
                id TEXT PRIMARY KEY,
                owner_user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                website TEXT,
                phone TEXT,
                address TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS contacts (
                id TEXT PRIMARY KEY,
                owner_user_id TEXT NOT NULL,
                first_name TEXT NOT NULL,
                last_name TEXT NOT NULL,
                email TEXT,
                phone TEXT,
                title TEXT,
                company_id TEXT REFERENCES companies(id) ON DELETE SET NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS deals (
                id TEXT PRIMARY KEY,
                owner_user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                amount_cents INTEGER,
                stage TEXT NOT NULL DEFAULT 'LEAD',
                close_date TEXT,
                company_id TEXT REFERENCES companies(id) ON DELETE SET NULL,
                contact_id TEXT REFERENCES contacts(id) ON DELETE SET NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                owner_user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                due_at TEXT,
                status TEXT NOT NULL DEFAULT 'OPEN',
                related_type TEXT NOT NULL DEFAULT 'NONE',
                related_id TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS notes (
                id TEXT PRIMARY KEY,
                owner_user_id TEXT NOT NULL,
                body TEXT NOT NULL,
                related_type TEXT NOT NULL DEFAULT 'NONE',
                related_id TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        ''')

        # Assistant conversation state
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS assistant_threads (
                id TEXT PRIMARY KEY,
                owner_user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                title_locked INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS assistant_messages (
                id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL REFERENCES assistant_threads(id) ON DELETE CASCADE,
                role TEXT NOT NULL,  -- 'user', 'assistant', 'system'
                content TEXT NOT NULL,
                created_at REAL NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS assistant_actions (
                id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL REFERENCES assistant_threads(id) ON DELETE CASCADE,
                action_type TEXT NOT NULL,
                payload TEXT NOT NULL,  -- JSON
                status TEXT NOT NULL DEFAULT 'PROPOSED',
                error_msg TEXT,
                created_at REAL NOT NULL,
                executed_at REAL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS document_embeddings (
                source_type TEXT NOT NULL,
                source_id TEXT NOT NULL,
                owner_user_id TEXT NOT NULL,
                content_text TEXT NOT NULL,
                embedding TEXT,  -- JSON array, NULL when generation failed
                updated_at REAL NOT NULL,
                PRIMARY KEY (source_type, source_id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS metric_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT,
                event TEXT NOT NULL,
                properties TEXT,  -- JSON
                created_at REAL NOT NULL
            )
        ''')

        # Create indexes for performance
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_threads_owner ON assistant_threads(owner_user_id, updated_at DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_messages_thread ON assistant_messages(thread_id, created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_actions_thread ON assistant_actions(thread_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_embeddings_owner ON document_embeddings(owner_user_id, source_type)')
        for table in ['companies', 'contacts', 'deals', 'tasks', 'notes']:
            cursor.execute(f'CREATE INDEX IF NOT EXISTS idx_{table}_owner ON {table}(owner_user_id)')

        conn.commit()


def health_check():
    """Check database health."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            tables = cursor.fetchall()

            # Check if required tables exist
            table_names = [table[0] for table in tables]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
