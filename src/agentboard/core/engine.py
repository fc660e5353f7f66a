"""Task execution: worktree, agent session, commit and push.

Status moves through todo -> in-progress -> done. While the agent works the
task carries the `is_running` flag; readiness is computed, never stored.
"""

import logging
import sqlite3
from collections.abc import Callable
from pathlib import Path

from agentboard.config import Config
from agentboard.core import tasks as task_store
from agentboard.core.changes import detect_changes
from agentboard.core.dependencies import blocking_dependencies, is_ready
from agentboard.core.publish import commit_and_push, continuation_commit_message, task_commit_message
from agentboard.core.workspaces import get_workspace, require_workspace
from agentboard.core.worktrees import (
    WorktreeError,
    create_worktree,
    destroy_worktree,
    list_worktree_records,
)
from agentboard.db.models import (
    ActiveSession,
    CompletionResult,
    SessionResult,
    Task,
    TaskRunResult,
    TaskStatus,
)
from agentboard.integrations.agent import AgentError, AgentSession
from agentboard.integrations.git import GitClient, GitError

logger = logging.getLogger(__name__)

AgentFactory = Callable[[str, Config], AgentSession]


def _require_task(db: sqlite3.Connection, workspace: str, task_id: int) -> Task:
    if task_id is None or task_id <= 0:
        raise ValueError("Task ID must be a positive integer")
    task = task_store.get_task(db, workspace, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    return task


def run_task(
    db: sqlite3.Connection,
    config: Config,
    workspace_name: str,
    task_id: int,
    base_branch: str,
    vcs: GitClient | None = None,
    agent_factory: AgentFactory | None = None,
) -> TaskRunResult:
    """Run the agent on a ready task in a fresh worktree and publish its changes.

    If the agent fails the task goes back to todo with the error recorded,
    and the worktree stays on disk for inspection.
    """
    workspace = require_workspace(db, workspace_name)
    task = _require_task(db, workspace.name, task_id)
    if not base_branch or not base_branch.strip():
        raise ValueError("Base branch is required")
    if not task.title.strip():
        raise ValueError("Task title cannot be empty")
    if task.status == TaskStatus.DONE:
        raise task_store.TransitionError(f"Task {task_id} is already done")
    if task.is_running:
        raise ValueError(f"Task {task_id} is already running")

    board = task_store.list_tasks(db, workspace.name)
    if not is_ready(task, board):
        blockers = ", ".join(str(d) for d in blocking_dependencies(task, board)) or "a dependency cycle"
        raise ValueError(f"Task {task_id} is blocked by: {blockers}")

    vcs = vcs or GitClient()
    agent_factory = agent_factory or AgentSession

    task_store.set_running(db, workspace.name, task_id, True)
    try:
        try:
            branch, wt_path = create_worktree(
                db, workspace, task_id, task.title, base_branch.strip(), remote=config.remote, vcs=vcs
            )
        except (GitError, WorktreeError) as e:
            task_store.set_last_error(db, workspace.name, task_id, str(e))
            raise

        try:
            result = agent_factory(wt_path, config).start(task.id, task.title, task.description)
        except AgentError as e:
            logger.warning("Agent failed on task %d: %s", task_id, e)
            task_store.set_last_error(db, workspace.name, task_id, str(e))
            task_store.update_task_status(db, workspace.name, task_id, TaskStatus.TODO)
            raise

        task_store.set_last_error(db, workspace.name, task_id, None)
        task_store.update_task_status(db, workspace.name, task_id, TaskStatus.IN_PROGRESS)
        task_store.bind_session(db, workspace.name, task_id, result.session_id)

        has_changes, detected = detect_changes(wt_path, vcs=vcs)
        pushed = False
        files = _merge_files(result.files_changed, detected)
        if has_changes:
            try:
                commit_and_push(
                    wt_path,
                    branch,
                    task_commit_message(task.id, task.title, task.description),
                    files,
                    remote=config.remote,
                    author_name=config.bot_name,
                    author_email=config.bot_email,
                    vcs=vcs,
                )
            except GitError as e:
                task_store.set_last_error(db, workspace.name, task_id, str(e))
                raise
            pushed = True
            message = f"Committed {len(files)} file(s) and pushed {branch}"
        else:
            message = "Agent finished without changing any files"
    finally:
        task_store.set_running(db, workspace.name, task_id, False)

    logger.info("Task %d: %s", task_id, message)
    return TaskRunResult(
        task=task_store.get_task(db, workspace.name, task_id),
        branch_name=branch,
        worktree_path=wt_path,
        session_id=result.session_id,
        files_changed=files if has_changes else [],
        agent_output=result.response,
        pushed=pushed,
        message=message,
    )


def continue_session(
    db: sqlite3.Connection,
    config: Config,
    workspace_name: str,
    task_id: int,
    message: str,
    vcs: GitClient | None = None,
    agent_factory: AgentFactory | None = None,
) -> SessionResult:
    """Send a follow-up instruction to the task's agent session."""
    workspace = require_workspace(db, workspace_name)
    task = _require_task(db, workspace.name, task_id)
    if not message or not message.strip():
        raise ValueError("Message cannot be empty")

    session = task.session
    if not isinstance(session, ActiveSession):
        raise ValueError(f"Task {task_id} has no active session; run it first")
    if not Path(session.worktree_path).is_dir():
        raise ValueError(f"Worktree no longer exists: {session.worktree_path}")
    if task.is_running:
        raise ValueError(f"Task {task_id} is already running")

    vcs = vcs or GitClient()
    agent_factory = agent_factory or AgentSession

    task_store.set_running(db, workspace.name, task_id, True)
    try:
        try:
            result = agent_factory(session.worktree_path, config).continue_session(session.id, message)
        except AgentError as e:
            logger.warning("Agent failed continuing task %d: %s", task_id, e)
            task_store.set_last_error(db, workspace.name, task_id, str(e))
            raise

        task_store.set_last_error(db, workspace.name, task_id, None)
        if task.status != TaskStatus.IN_PROGRESS:
            task_store.update_task_status(db, workspace.name, task_id, TaskStatus.IN_PROGRESS)
        if result.session_id and result.session_id != session.id:
            task_store.bind_session(db, workspace.name, task_id, result.session_id)

        has_changes, detected = detect_changes(session.worktree_path, vcs=vcs)
        files = _merge_files(result.files_changed, detected)
        pushed = False
        if has_changes:
            branch = task.branch_name or vcs.current_branch(session.worktree_path)
            try:
                commit_and_push(
                    session.worktree_path,
                    branch,
                    continuation_commit_message(message, files),
                    files,
                    remote=config.remote,
                    author_name=config.bot_name,
                    author_email=config.bot_email,
                    vcs=vcs,
                )
            except GitError as e:
                task_store.set_last_error(db, workspace.name, task_id, str(e))
                raise
            pushed = True
            summary = f"Committed {len(files)} file(s) and pushed {branch}"
        else:
            summary = "No files changed"
    finally:
        task_store.set_running(db, workspace.name, task_id, False)

    return SessionResult(
        task=task_store.get_task(db, workspace.name, task_id),
        response=result.response,
        files_changed=files if has_changes else [],
        pushed=pushed,
        message=summary,
    )


def complete_task(
    db: sqlite3.Connection,
    workspace_name: str,
    task_id: int,
    vcs: GitClient | None = None,
) -> CompletionResult:
    """Mark a task done and remove its worktree.

    The status change stands even when cleanup fails; the failure is
    returned in `cleanup_error`.
    """
    workspace = require_workspace(db, workspace_name)
    task = _require_task(db, workspace.name, task_id)
    if task.is_running:
        raise ValueError(f"Task {task_id} is running")
    task_store.check_transition(task.status, TaskStatus.DONE)
    task_store.update_task_status(db, workspace.name, task_id, TaskStatus.DONE)

    removed = False
    cleanup_error = None
    try:
        removed = destroy_worktree(db, workspace, task_id, vcs=vcs)
    except WorktreeError as e:
        logger.warning("Cleanup failed for task %d: %s", task_id, e)
        cleanup_error = str(e)

    return CompletionResult(
        task=task_store.get_task(db, workspace.name, task_id),
        worktree_removed=removed,
        cleanup_error=cleanup_error,
    )


def set_status(
    db: sqlite3.Connection,
    workspace_name: str,
    task_id: int,
    status: str | TaskStatus,
    vcs: GitClient | None = None,
) -> Task:
    """Move a task to `status`. Moving to done goes through `complete_task`."""
    status = TaskStatus(status)
    if status == TaskStatus.DONE:
        return complete_task(db, workspace_name, task_id, vcs=vcs).task
    workspace = require_workspace(db, workspace_name)
    _require_task(db, workspace.name, task_id)
    return task_store.update_task_status(db, workspace.name, task_id, status)


def delete_task(
    db: sqlite3.Connection,
    workspace_name: str,
    task_id: int,
    vcs: GitClient | None = None,
) -> bool:
    """Remove a task's worktree (best-effort) and then the task itself."""
    workspace = require_workspace(db, workspace_name)
    task = _require_task(db, workspace.name, task_id)
    if task.is_running:
        raise ValueError(f"Task {task_id} is running")
    try:
        destroy_worktree(db, workspace, task_id, vcs=vcs)
    except (WorktreeError, GitError) as e:
        logger.warning("Could not clean up worktree for task %d: %s", task_id, e)
    return task_store.delete_task(db, workspace.name, task_id)


def cleanup_stale_worktrees(db: sqlite3.Connection, vcs: GitClient | None = None) -> list[str]:
    """Destroy recorded worktrees whose task is done or gone. Returns removed paths."""
    vcs = vcs or GitClient()
    removed = []
    for record in list_worktree_records(db):
        workspace = get_workspace(db, record.workspace)
        if not workspace:
            continue
        task = task_store.get_task(db, record.workspace, record.task_id)
        if task and task.status != TaskStatus.DONE:
            continue
        try:
            destroy_worktree(db, workspace, record.task_id, vcs=vcs)
            removed.append(record.path)
        except WorktreeError as e:
            logger.warning("%s", e)
    return removed


def _merge_files(reported: list[str], detected: list[str]) -> list[str]:
    merged = list(detected)
    for path in reported:
        if path not in merged:
            merged.append(path)
    return merged
