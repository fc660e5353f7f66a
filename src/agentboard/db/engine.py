"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS workspaces (
    name TEXT PRIMARY KEY,
    path TEXT NOT NULL,
    repo_url TEXT DEFAULT '',
    default_branch TEXT DEFAULT 'main',
    has_prd INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    workspace TEXT NOT NULL REFERENCES workspaces(name) ON DELETE CASCADE,
    id INTEGER NOT NULL,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    priority TEXT DEFAULT 'medium' CHECK (priority IN ('high', 'medium', 'low')),
    estimate TEXT DEFAULT '',
    status TEXT DEFAULT 'todo' CHECK (status IN ('todo', 'in-progress', 'done')),
    branch_name TEXT,
    worktree_path TEXT,
    session_id TEXT,
    is_running INTEGER DEFAULT 0,
    last_error TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    completed_at TEXT,
    PRIMARY KEY (workspace, id)
);

-- depends_on_id is not a foreign key; edges to missing tasks survive
-- and keep the dependent blocked.
CREATE TABLE IF NOT EXISTS task_dependencies (
    workspace TEXT NOT NULL,
    task_id INTEGER NOT NULL,
    depends_on_id INTEGER NOT NULL,
    PRIMARY KEY (workspace, task_id, depends_on_id),
    FOREIGN KEY (workspace, task_id) REFERENCES tasks(workspace, id) ON DELETE CASCADE
);

-- IDs of deleted tasks; never handed out again within the workspace.
CREATE TABLE IF NOT EXISTS retired_task_ids (
    workspace TEXT NOT NULL REFERENCES workspaces(name) ON DELETE CASCADE,
    id INTEGER NOT NULL,
    PRIMARY KEY (workspace, id)
);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workspace TEXT NOT NULL,
    task_id INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    FOREIGN KEY (workspace, task_id) REFERENCES tasks(workspace, id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS worktrees (
    path TEXT PRIMARY KEY,
    workspace TEXT NOT NULL,
    task_id INTEGER NOT NULL,
    branch TEXT NOT NULL,
    base_branch TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE (workspace, task_id)
);
"""


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
