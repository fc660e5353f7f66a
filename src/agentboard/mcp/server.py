"""MCP server exposing the task board and execution engine."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from agentboard.config import Config, get_config
from agentboard.core import dependencies as deps_mod
from agentboard.core import engine as engine_mod
from agentboard.core import tasks as tasks_mod
from agentboard.core import workspaces as workspaces_mod
from agentboard.core.worktrees import WorktreeError
from agentboard.db.engine import init_db
from agentboard.db.models import TaskStatus
from agentboard.integrations.agent import AgentError
from agentboard.integrations.git import GitError

TOOL_ERRORS = (ValueError, GitError, AgentError, WorktreeError)


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    try:
        yield AppContext(db=db, config=config)
    finally:
        db.close()


mcp = FastMCP("agentboard", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Workspace Tools ───────────────────────────────────────────────────────────


@mcp.tool()
def list_workspaces(ctx: Context) -> list[dict]:
    """List workspaces. Also registers new repos and removes orphaned worktrees."""
    app = _ctx(ctx)
    return [workspaces_mod.workspace_to_dict(w) for w in workspaces_mod.list_workspaces(app.db, app.config)]


@mcp.tool()
def list_branches(ctx: Context, workspace: str) -> list[dict] | dict:
    """List local and remote-only branches usable as a task's base branch."""
    app = _ctx(ctx)
    try:
        branches = workspaces_mod.list_branches(app.db, workspace, remote=app.config.remote)
    except TOOL_ERRORS as e:
        return {"error": str(e)}
    return [b.__dict__ for b in branches]


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    workspace: str,
    title: str,
    description: str = "",
    dependencies: list[int] | None = None,
    priority: str = "medium",
    estimate: str = "",
) -> dict:
    """Create a task. Priority is high, medium or low. Dependencies are task IDs."""
    app = _ctx(ctx)
    try:
        workspaces_mod.require_workspace(app.db, workspace)
        task = tasks_mod.create_task(
            app.db, workspace, title, description, priority=priority, estimate=estimate, dependencies=dependencies
        )
    except TOOL_ERRORS as e:
        return {"error": str(e)}
    return tasks_mod.task_to_dict(task)


@mcp.tool()
def list_tasks(ctx: Context, workspace: str, status: str | None = None, ready_only: bool = False) -> list[dict]:
    """List a workspace's tasks with their ready/blocked state."""
    app = _ctx(ctx)
    board = tasks_mod.list_tasks(app.db, workspace)
    tasks = [t for t in board if not status or t.status.value == status]
    if ready_only:
        tasks = [t for t in tasks if t.status != TaskStatus.DONE and deps_mod.is_ready(t, board)]
    return [_task_to_dict(t, board) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, workspace: str, task_id: int) -> dict:
    """Get full details of a task, including what blocks it."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, workspace, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    board = tasks_mod.list_tasks(app.db, workspace)
    td = _task_to_dict(task, board)
    td["blocked_by"] = deps_mod.blocking_dependencies(task, board)
    return td


@mcp.tool()
def add_dependency(ctx: Context, workspace: str, task_id: int, depends_on_id: int) -> dict:
    """Make a task depend on another. Cycles are rejected."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.add_dependency(app.db, workspace, task_id, depends_on_id)
    except TOOL_ERRORS as e:
        return {"error": str(e)}
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return tasks_mod.task_to_dict(task)


@mcp.tool()
def update_task_status(ctx: Context, workspace: str, task_id: int, status: str) -> dict:
    """Move a task to todo, in-progress or done. Done removes its worktree."""
    app = _ctx(ctx)
    try:
        if TaskStatus(status) == TaskStatus.DONE:
            result = engine_mod.complete_task(app.db, workspace, task_id)
            td = tasks_mod.task_to_dict(result.task)
            td["cleanup_error"] = result.cleanup_error
            return td
        task = engine_mod.set_status(app.db, workspace, task_id, status)
    except TOOL_ERRORS as e:
        return {"error": str(e)}
    return tasks_mod.task_to_dict(task)


@mcp.tool()
def board_stats(ctx: Context, workspace: str) -> dict:
    """Total, ready, blocked and with-dependencies counts for a workspace."""
    app = _ctx(ctx)
    return deps_mod.dependency_stats(tasks_mod.list_tasks(app.db, workspace)).__dict__


# ── Engine Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def run_task(ctx: Context, workspace: str, task_id: int, base_branch: str | None = None) -> dict:
    """Run the coding agent on a ready task in a fresh worktree, then commit and push.

    Blocks until the agent finishes.
    """
    app = _ctx(ctx)
    try:
        ws = workspaces_mod.require_workspace(app.db, workspace)
        result = engine_mod.run_task(app.db, app.config, workspace, task_id, base_branch or ws.default_branch)
    except TOOL_ERRORS as e:
        return {"error": str(e)}
    return {
        "task": tasks_mod.task_to_dict(result.task),
        "branch_name": result.branch_name,
        "worktree_path": result.worktree_path,
        "session_id": result.session_id,
        "files_changed": result.files_changed,
        "pushed": result.pushed,
        "message": result.message,
        "agent_output": result.agent_output,
    }


@mcp.tool()
def continue_task(ctx: Context, workspace: str, task_id: int, message: str) -> dict:
    """Send a follow-up instruction to a task's agent session."""
    app = _ctx(ctx)
    try:
        result = engine_mod.continue_session(app.db, app.config, workspace, task_id, message)
    except TOOL_ERRORS as e:
        return {"error": str(e)}
    return {
        "task": tasks_mod.task_to_dict(result.task),
        "response": result.response,
        "files_changed": result.files_changed,
        "pushed": result.pushed,
        "message": result.message,
    }


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_to_dict(task, board) -> dict:
    td = tasks_mod.task_to_dict(task)
    td["ready"] = deps_mod.is_ready(task, board)
    td["blocked"] = not td["ready"]
    return td
