"""Task board operations."""

import sqlite3
from datetime import datetime

from agentboard.core.dependencies import check_acyclic
from agentboard.db.models import TRANSITIONS, Priority, Task, TaskEvent, TaskStatus


class TransitionError(ValueError):
    """Raised for a status change the state machine does not allow."""


def check_transition(old: TaskStatus, new: TaskStatus) -> None:
    if old == new:
        return
    if new not in TRANSITIONS[old]:
        raise TransitionError(f"Cannot move task from '{old.value}' to '{new.value}'")


def _next_id(db: sqlite3.Connection, workspace: str) -> int:
    row = db.execute(
        """SELECT MAX(
               (SELECT COALESCE(MAX(id), 0) FROM tasks WHERE workspace = ?),
               (SELECT COALESCE(MAX(id), 0) FROM retired_task_ids WHERE workspace = ?)
           ) AS max_id""",
        (workspace, workspace),
    ).fetchone()
    return row["max_id"] + 1


def _is_retired(db: sqlite3.Connection, workspace: str, task_id: int) -> bool:
    row = db.execute(
        "SELECT 1 FROM retired_task_ids WHERE workspace = ? AND id = ?", (workspace, task_id)
    ).fetchone()
    return row is not None


def create_task(
    db: sqlite3.Connection,
    workspace: str,
    title: str,
    description: str = "",
    priority: str | Priority = Priority.MEDIUM,
    estimate: str = "",
    dependencies: list[int] | None = None,
    task_id: int | None = None,
) -> Task:
    """Create a new task. IDs are assigned sequentially per workspace unless given."""
    if not title.strip():
        raise ValueError("Task title cannot be empty")
    priority = Priority(priority)

    if task_id is None:
        task_id = _next_id(db, workspace)
    elif task_id <= 0:
        raise ValueError("Task ID must be a positive integer")
    elif get_task(db, workspace, task_id):
        raise ValueError(f"Task {task_id} already exists in workspace '{workspace}'")
    elif _is_retired(db, workspace, task_id):
        raise ValueError(f"Task ID {task_id} belonged to a deleted task in workspace '{workspace}'")

    deps = sorted(set(dependencies or []))
    check_acyclic(list_tasks(db, workspace), task_id, deps)

    db.execute(
        """INSERT INTO tasks (workspace, id, title, description, priority, estimate)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (workspace, task_id, title.strip(), description, priority.value, estimate),
    )
    for dep_id in deps:
        db.execute(
            "INSERT INTO task_dependencies (workspace, task_id, depends_on_id) VALUES (?, ?, ?)",
            (workspace, task_id, dep_id),
        )

    _log_event(db, workspace, task_id, "created", None, TaskStatus.TODO.value)
    db.commit()
    return get_task(db, workspace, task_id)


def get_task(db: sqlite3.Connection, workspace: str, task_id: int) -> Task | None:
    """Get a task with its dependencies."""
    row = db.execute(
        "SELECT * FROM tasks WHERE workspace = ? AND id = ?", (workspace, task_id)
    ).fetchone()
    if not row:
        return None
    task = _row_to_task(row)
    task.dependencies = _dependencies_of(db, workspace, task_id)
    return task


def list_tasks(
    db: sqlite3.Connection,
    workspace: str,
    status: str | TaskStatus | None = None,
) -> list[Task]:
    """List a workspace's tasks, optionally filtered by status."""
    query = "SELECT * FROM tasks WHERE workspace = ?"
    params: list = [workspace]

    if status:
        query += " AND status = ?"
        params.append(TaskStatus(status).value)

    query += " ORDER BY id ASC"
    rows = db.execute(query, params).fetchall()

    dep_rows = db.execute(
        "SELECT task_id, depends_on_id FROM task_dependencies WHERE workspace = ? ORDER BY depends_on_id",
        (workspace,),
    ).fetchall()
    deps: dict[int, list[int]] = {}
    for d in dep_rows:
        deps.setdefault(d["task_id"], []).append(d["depends_on_id"])

    tasks = []
    for row in rows:
        task = _row_to_task(row)
        task.dependencies = deps.get(task.id, [])
        tasks.append(task)
    return tasks


def update_task(
    db: sqlite3.Connection,
    workspace: str,
    task_id: int,
    **kwargs,
) -> Task | None:
    """Update editable task fields (title, description, priority, estimate)."""
    task = get_task(db, workspace, task_id)
    if not task:
        return None

    allowed = {"title", "description", "priority", "estimate"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if "title" in updates and not updates["title"].strip():
        raise ValueError("Task title cannot be empty")
    if "priority" in updates:
        updates["priority"] = Priority(updates["priority"]).value
    if not updates:
        return task

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    db.execute(
        f"UPDATE tasks SET {set_clause}, updated_at = datetime('now') WHERE workspace = ? AND id = ?",
        list(updates.values()) + [workspace, task_id],
    )
    for key, value in updates.items():
        old = getattr(task, key)
        old = old.value if isinstance(old, Priority) else old
        if old != value:
            _log_event(db, workspace, task_id, f"{key}_changed", str(old), str(value))
    db.commit()
    return get_task(db, workspace, task_id)


def update_task_status(
    db: sqlite3.Connection,
    workspace: str,
    task_id: int,
    status: str | TaskStatus,
) -> Task | None:
    """Move a task to a new status, enforcing the transition table."""
    task = get_task(db, workspace, task_id)
    if not task:
        return None

    status = TaskStatus(status)
    check_transition(task.status, status)
    if status == task.status:
        return task

    updates = {"status": status.value}
    if status == TaskStatus.DONE:
        updates["completed_at"] = datetime.now().isoformat(timespec="seconds")
    else:
        updates["completed_at"] = None

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE workspace = ? AND id = ?",
        list(updates.values()) + [workspace, task_id],
    )
    _log_event(db, workspace, task_id, "status_changed", task.status.value, status.value)
    db.commit()
    return get_task(db, workspace, task_id)


def set_running(db: sqlite3.Connection, workspace: str, task_id: int, running: bool) -> None:
    db.execute(
        "UPDATE tasks SET is_running = ?, updated_at = datetime('now') WHERE workspace = ? AND id = ?",
        (1 if running else 0, workspace, task_id),
    )
    db.commit()


def set_last_error(db: sqlite3.Connection, workspace: str, task_id: int, error: str | None) -> None:
    db.execute(
        "UPDATE tasks SET last_error = ?, updated_at = datetime('now') WHERE workspace = ? AND id = ?",
        (error, workspace, task_id),
    )
    db.commit()


# ── Worktree / session binding ────────────────────────────────────────────────


def bind_worktree(
    db: sqlite3.Connection,
    workspace: str,
    task_id: int,
    branch_name: str,
    worktree_path: str,
) -> None:
    """Attach a fresh worktree to a task. Any previous session is dropped."""
    task = get_task(db, workspace, task_id)
    if not task:
        return
    db.execute(
        """UPDATE tasks SET branch_name = ?, worktree_path = ?, session_id = NULL,
           updated_at = datetime('now') WHERE workspace = ? AND id = ?""",
        (branch_name, worktree_path, workspace, task_id),
    )
    _log_event(db, workspace, task_id, "worktree_created", task.worktree_path, worktree_path)
    db.commit()


def bind_session(db: sqlite3.Connection, workspace: str, task_id: int, session_id: str | None) -> None:
    task = get_task(db, workspace, task_id)
    if not task:
        return
    db.execute(
        "UPDATE tasks SET session_id = ?, updated_at = datetime('now') WHERE workspace = ? AND id = ?",
        (session_id, workspace, task_id),
    )
    if session_id != task.session_id:
        _log_event(db, workspace, task_id, "session_bound", task.session_id, session_id)
    db.commit()


def clear_worktree_binding(db: sqlite3.Connection, workspace: str, task_id: int) -> None:
    """Expire the task's session together with its worktree path."""
    task = get_task(db, workspace, task_id)
    if not task or (task.worktree_path is None and task.session_id is None):
        return
    db.execute(
        """UPDATE tasks SET worktree_path = NULL, session_id = NULL,
           updated_at = datetime('now') WHERE workspace = ? AND id = ?""",
        (workspace, task_id),
    )
    _log_event(db, workspace, task_id, "worktree_removed", task.worktree_path, None)
    db.commit()


# ── Dependencies ──────────────────────────────────────────────────────────────


def add_dependency(
    db: sqlite3.Connection,
    workspace: str,
    task_id: int,
    depends_on_id: int,
) -> Task | None:
    """Add a dependency to an existing task. Rejects unknown targets and cycles."""
    task = get_task(db, workspace, task_id)
    if not task:
        return None
    if not get_task(db, workspace, depends_on_id):
        raise ValueError(f"Dependency task not found: {depends_on_id}")
    if depends_on_id in task.dependencies:
        return task

    check_acyclic(list_tasks(db, workspace), task_id, task.dependencies + [depends_on_id])
    db.execute(
        "INSERT INTO task_dependencies (workspace, task_id, depends_on_id) VALUES (?, ?, ?)",
        (workspace, task_id, depends_on_id),
    )
    _log_event(db, workspace, task_id, "dependency_added", None, str(depends_on_id))
    db.commit()
    return get_task(db, workspace, task_id)


def remove_dependency(
    db: sqlite3.Connection,
    workspace: str,
    task_id: int,
    depends_on_id: int,
) -> Task | None:
    """Remove a dependency from a task."""
    task = get_task(db, workspace, task_id)
    if not task:
        return None
    db.execute(
        "DELETE FROM task_dependencies WHERE workspace = ? AND task_id = ? AND depends_on_id = ?",
        (workspace, task_id, depends_on_id),
    )
    _log_event(db, workspace, task_id, "dependency_removed", str(depends_on_id), None)
    db.commit()
    return get_task(db, workspace, task_id)


def delete_task(db: sqlite3.Connection, workspace: str, task_id: int) -> bool:
    """Delete a task record. Edges from other tasks onto it are kept.

    The ID is retired so a later task can never inherit those edges.
    """
    if not get_task(db, workspace, task_id):
        return False
    db.execute("DELETE FROM tasks WHERE workspace = ? AND id = ?", (workspace, task_id))
    db.execute(
        "INSERT OR IGNORE INTO retired_task_ids (workspace, id) VALUES (?, ?)", (workspace, task_id)
    )
    db.commit()
    return True


def get_task_events(db: sqlite3.Connection, workspace: str, task_id: int) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE workspace = ? AND task_id = ? ORDER BY id",
        (workspace, task_id),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            workspace=r["workspace"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


# ── Import / export ───────────────────────────────────────────────────────────


def import_tasks(db: sqlite3.Connection, workspace: str, records: list[dict]) -> list[Task]:
    """Load generated tasks ({id, title, description, dependencies, priority, estimate}).

    The whole batch is checked for cycles against the existing board
    before anything is written.
    """
    existing = list_tasks(db, workspace)
    taken = {t.id for t in existing}
    staged = list(existing)
    for rec in records:
        task_id = int(rec["id"])
        if task_id in taken:
            raise ValueError(f"Task {task_id} already exists in workspace '{workspace}'")
        if _is_retired(db, workspace, task_id):
            raise ValueError(f"Task ID {task_id} belonged to a deleted task in workspace '{workspace}'")
        taken.add(task_id)
        staged.append(
            Task(
                id=task_id,
                workspace=workspace,
                title=rec.get("title", ""),
                dependencies=[int(d) for d in rec.get("dependencies") or []],
            )
        )
    for task in staged:
        check_acyclic(staged, task.id, task.dependencies)

    created = []
    for rec in records:
        created.append(
            create_task(
                db,
                workspace,
                title=rec.get("title", ""),
                description=rec.get("description", ""),
                priority=str(rec.get("priority") or Priority.MEDIUM.value).lower(),
                estimate=rec.get("estimate", ""),
                dependencies=[int(d) for d in rec.get("dependencies") or []],
                task_id=int(rec["id"]),
            )
        )
    return created


def task_to_dict(task: Task) -> dict:
    return {
        "id": task.id,
        "workspace": task.workspace,
        "title": task.title,
        "description": task.description,
        "priority": task.priority.value,
        "estimate": task.estimate,
        "dependencies": task.dependencies,
        "status": task.status.value,
        "branch_name": task.branch_name,
        "worktree_path": task.worktree_path,
        "session_id": task.session_id,
        "is_running": task.is_running,
        "last_error": task.last_error,
        "created_at": task.created_at.isoformat() if task.created_at else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }


def export_tasks(db: sqlite3.Connection, workspace: str) -> list[dict]:
    return [
        {
            "id": t.id,
            "title": t.title,
            "description": t.description,
            "dependencies": t.dependencies,
            "priority": t.priority.value,
            "estimate": t.estimate,
            "status": t.status.value,
        }
        for t in list_tasks(db, workspace)
    ]


def _dependencies_of(db: sqlite3.Connection, workspace: str, task_id: int) -> list[int]:
    rows = db.execute(
        "SELECT depends_on_id FROM task_dependencies WHERE workspace = ? AND task_id = ? ORDER BY depends_on_id",
        (workspace, task_id),
    ).fetchall()
    return [r["depends_on_id"] for r in rows]


def _log_event(
    db: sqlite3.Connection,
    workspace: str,
    task_id: int,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (workspace, task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?, ?)",
        (workspace, task_id, event_type, old_value, new_value),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        workspace=row["workspace"],
        title=row["title"],
        description=row["description"] or "",
        priority=Priority(row["priority"]),
        estimate=row["estimate"] or "",
        status=TaskStatus(row["status"]),
        branch_name=row["branch_name"],
        worktree_path=row["worktree_path"],
        session_id=row["session_id"],
        is_running=bool(row["is_running"]),
        last_error=row["last_error"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
