"""CLI entry point for agentboard."""

import json
import logging
import sys

import click

from agentboard.config import get_config
from agentboard.core import dependencies as deps_mod
from agentboard.core import engine as engine_mod
from agentboard.core import tasks as tasks_mod
from agentboard.core import workspaces as workspaces_mod
from agentboard.core import worktrees as worktrees_mod
from agentboard.core.worktrees import WorktreeError
from agentboard.db.engine import get_db
from agentboard.db.models import TaskStatus
from agentboard.integrations.agent import AgentError
from agentboard.integrations.git import GitError

BOARD_ERRORS = (ValueError, GitError, AgentError, WorktreeError)


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


workspace_option = click.option(
    "--workspace", "-w", required=True, envvar="AB_WORKSPACE", help="Workspace name"
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """agentboard - dependency-aware task board for coding agents"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Workspace Commands ────────────────────────────────────────────────────────


@main.group("workspace")
def workspace_group():
    """Manage workspaces."""
    pass


@workspace_group.command("add")
@click.argument("name")
@click.argument("path", default=".")
@click.option("--branch", default="main", help="Default base branch")
@click.option("--repo-url", default="", help="Remote URL of the repository")
def workspace_add(name, path, branch, repo_url):
    """Register an existing repository as a workspace."""
    with _get_db() as db:
        try:
            ws = workspaces_mod.register_workspace(db, name, path, repo_url=repo_url, default_branch=branch)
        except BOARD_ERRORS as e:
            _fail(str(e))
        click.echo(f"Workspace registered: {ws.name}")
        click.echo(f"  Path: {ws.path}")
        click.echo(f"  Branch: {ws.default_branch}")


@workspace_group.command("clone")
@click.argument("url")
def workspace_clone(url):
    """Clone a repository into the workspaces directory."""
    config = get_config()
    with _get_db() as db:
        try:
            ws = workspaces_mod.clone_workspace(db, url, config.workspaces_dir)
        except BOARD_ERRORS as e:
            _fail(str(e))
        click.echo(f"Cloned {url}")
        click.echo(f"  Workspace: {ws.name}")
        click.echo(f"  Path: {ws.path}")
        click.echo(f"  Current branch: {ws.default_branch}")


@workspace_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def workspace_list(json_output):
    """List workspaces, discovering new repos and sweeping orphaned worktrees."""
    config = get_config()
    with _get_db() as db:
        workspaces = workspaces_mod.list_workspaces(db, config)

        if json_output:
            click.echo(json.dumps([workspaces_mod.workspace_to_dict(w) for w in workspaces], indent=2))
            return

        if not workspaces:
            click.echo("No workspaces found.")
            return
        for ws in workspaces:
            prd = " [PRD]" if ws.has_prd else ""
            click.echo(f"  {ws.name}: {ws.path} ({ws.default_branch}){prd}")


@workspace_group.command("show")
@click.argument("name")
def workspace_show(name):
    """Show a workspace and its board statistics."""
    with _get_db() as db:
        ws = workspaces_mod.get_workspace(db, name)
        if not ws:
            _fail(f"Workspace not found: {name}")
        stats = deps_mod.dependency_stats(tasks_mod.list_tasks(db, name))
        click.echo(f"Workspace: {ws.name}")
        click.echo(f"  Path: {ws.path}")
        click.echo(f"  Branch: {ws.default_branch}")
        if ws.repo_url:
            click.echo(f"  Repo: {ws.repo_url}")
        if ws.prd_path:
            click.echo(f"  PRD: {ws.prd_path}")
        click.echo(f"  Tasks: {stats.total} ({stats.ready} ready, {stats.blocked} blocked)")


@workspace_group.command("branches")
@click.argument("name")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def workspace_branches(name, json_output):
    """List branches available as a task base."""
    config = get_config()
    with _get_db() as db:
        try:
            branches = workspaces_mod.list_branches(db, name, remote=config.remote)
        except BOARD_ERRORS as e:
            _fail(str(e))

        if json_output:
            click.echo(json.dumps([b.__dict__ for b in branches], indent=2))
            return
        for b in branches:
            marker = "*" if b.is_current else " "
            where = f" ({config.remote})" if b.is_remote else ""
            click.echo(f"  {marker} {b.name} {b.hash}{where}")


@workspace_group.command("delete")
@click.argument("name")
@click.option("--delete-files", is_flag=True, help="Also delete the repository from disk")
@click.confirmation_option(prompt="Delete this workspace and all of its tasks?")
def workspace_delete(name, delete_files):
    """Delete a workspace, its worktrees and its tasks."""
    with _get_db() as db:
        if not workspaces_mod.delete_workspace(db, name, delete_files=delete_files):
            _fail(f"Workspace not found: {name}")
        click.echo(f"Deleted workspace: {name}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


def _parse_ids(value: str | None) -> list[int]:
    if not value:
        return []
    try:
        return [int(v.strip()) for v in value.split(",") if v.strip()]
    except ValueError:
        raise click.BadParameter(f"expected comma-separated task IDs, got '{value}'")


@task_group.command("add")
@click.argument("title")
@workspace_option
@click.option("--description", "-d", default="", help="Task description")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option(
    "--priority", "-p", default="medium", type=click.Choice(["high", "medium", "low"]), help="Task priority"
)
@click.option("--estimate", "-e", default="", help="Effort estimate")
def task_add(title, workspace, description, depends_on, priority, estimate):
    """Create a new task."""
    deps = _parse_ids(depends_on)
    with _get_db() as db:
        try:
            workspaces_mod.require_workspace(db, workspace)
            task = tasks_mod.create_task(
                db, workspace, title, description, priority=priority, estimate=estimate, dependencies=deps
            )
        except BOARD_ERRORS as e:
            _fail(str(e))
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority.value}")
        click.echo(f"  Status: {task.status.value}")
        if task.dependencies:
            click.echo(f"  Depends on: {', '.join(str(d) for d in task.dependencies)}")


@task_group.command("list")
@workspace_option
@click.option("--status", default=None, type=click.Choice(["todo", "in-progress", "done"]), help="Filter by status")
@click.option("--ready", "only_ready", is_flag=True, help="Only tasks that can be run now")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(workspace, status, only_ready, json_output):
    """List tasks with their ready/blocked state."""
    with _get_db() as db:
        board = tasks_mod.list_tasks(db, workspace)
        tasks = [t for t in board if not status or t.status.value == status]
        if only_ready:
            tasks = [t for t in tasks if t.status != TaskStatus.DONE and deps_mod.is_ready(t, board)]

        if json_output:
            click.echo(json.dumps([_task_dict(t, board) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "todo": "○",
            "in-progress": "●",
            "done": "✓",
        }

        for task in tasks:
            icon = "✗" if deps_mod.is_blocked(task, board) else status_icons.get(task.status.value, "?")
            deps = f" [depends: {', '.join(str(d) for d in task.dependencies)}]" if task.dependencies else ""
            running = " [running]" if task.is_running else ""
            click.echo(f"  {icon} {task.id}: {task.title} ({task.status.value}, {task.priority.value}){deps}{running}")


@task_group.command("show")
@click.argument("task_id", type=int)
@workspace_option
def task_show(task_id, workspace):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, workspace, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")
        board = tasks_mod.list_tasks(db, workspace)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority.value}")
        click.echo(f"  Status: {task.status.value}")
        if task.estimate:
            click.echo(f"  Estimate: {task.estimate}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.dependencies:
            click.echo(f"  Depends on: {', '.join(str(d) for d in task.dependencies)}")
            blockers = deps_mod.blocking_dependencies(task, board)
            if blockers:
                click.echo(f"  Blocked by: {', '.join(str(d) for d in blockers)}")
        if task.branch_name:
            click.echo(f"  Branch: {task.branch_name}")
        if task.worktree_path:
            click.echo(f"  Worktree: {task.worktree_path}")
        if task.session_id:
            click.echo(f"  Session: {task.session_id}")
        if task.last_error:
            click.echo(f"  Last error: {task.last_error}")

        events = tasks_mod.get_task_events(db, workspace, task_id)
        if events:
            click.echo("  History:")
            for ev in events[-10:]:
                click.echo(f"    {ev.created_at} {ev.event_type}: {ev.old_value} -> {ev.new_value}")


@task_group.command("edit")
@click.argument("task_id", type=int)
@workspace_option
@click.option("--title", default=None, help="New title")
@click.option("--description", "-d", default=None, help="New description")
@click.option("--priority", "-p", default=None, type=click.Choice(["high", "medium", "low"]), help="New priority")
@click.option("--estimate", "-e", default=None, help="New estimate")
def task_edit(task_id, workspace, title, description, priority, estimate):
    """Edit task fields."""
    with _get_db() as db:
        try:
            task = tasks_mod.update_task(
                db, workspace, task_id, title=title, description=description, priority=priority, estimate=estimate
            )
        except BOARD_ERRORS as e:
            _fail(str(e))
        if not task:
            _fail(f"Task not found: {task_id}")
        click.echo(f"Updated task {task.id}: {task.title}")


@task_group.command("add-dep")
@click.argument("task_id", type=int)
@click.argument("depends_on_id", type=int)
@workspace_option
def task_add_dep(task_id, depends_on_id, workspace):
    """Add a dependency to a task."""
    with _get_db() as db:
        try:
            task = tasks_mod.add_dependency(db, workspace, task_id, depends_on_id)
        except BOARD_ERRORS as e:
            _fail(str(e))
        if not task:
            _fail(f"Task not found: {task_id}")
        click.echo(f"Added dependency: {task_id} now depends on {depends_on_id}")
        click.echo(f"  Depends on: {', '.join(str(d) for d in task.dependencies)}")


@task_group.command("remove-dep")
@click.argument("task_id", type=int)
@click.argument("depends_on_id", type=int)
@workspace_option
def task_remove_dep(task_id, depends_on_id, workspace):
    """Remove a dependency from a task."""
    with _get_db() as db:
        task = tasks_mod.remove_dependency(db, workspace, task_id, depends_on_id)
        if not task:
            _fail(f"Task not found: {task_id}")
        click.echo(f"Removed dependency: {task_id} no longer depends on {depends_on_id}")
        if task.dependencies:
            click.echo(f"  Remaining deps: {', '.join(str(d) for d in task.dependencies)}")
        else:
            click.echo("  No remaining dependencies")


@task_group.command("delete")
@click.argument("task_id", type=int)
@workspace_option
def task_delete(task_id, workspace):
    """Delete a task and clean up its worktree."""
    with _get_db() as db:
        try:
            engine_mod.delete_task(db, workspace, task_id)
        except BOARD_ERRORS as e:
            _fail(str(e))
        click.echo(f"Deleted task {task_id}")


@task_group.command("import")
@click.argument("file", type=click.File("r"))
@workspace_option
def task_import(file, workspace):
    """Import tasks from a JSON file ({"tasks": [...]} or a bare list)."""
    try:
        data = json.load(file)
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON: {e}")
    records = data.get("tasks", []) if isinstance(data, dict) else data

    with _get_db() as db:
        try:
            workspaces_mod.require_workspace(db, workspace)
            created = tasks_mod.import_tasks(db, workspace, records)
        except (KeyError, TypeError) as e:
            _fail(f"Malformed task record: {e}")
        except BOARD_ERRORS as e:
            _fail(str(e))
        click.echo(f"Imported {len(created)} task(s) into {workspace}")


@task_group.command("export")
@workspace_option
def task_export(workspace):
    """Export the task list as JSON."""
    with _get_db() as db:
        click.echo(json.dumps({"tasks": tasks_mod.export_tasks(db, workspace)}, indent=2))


@task_group.command("stats")
@workspace_option
def task_stats(workspace):
    """Show dependency statistics for a workspace."""
    with _get_db() as db:
        stats = deps_mod.dependency_stats(tasks_mod.list_tasks(db, workspace))
        click.echo(f"Total: {stats.total}")
        click.echo(f"Ready: {stats.ready}")
        click.echo(f"Blocked: {stats.blocked}")
        click.echo(f"With dependencies: {stats.with_dependencies}")


# ── Engine Commands ──────────────────────────────────────────────────────────


@main.command("run")
@click.argument("task_id", type=int)
@workspace_option
@click.option("--base", "base_branch", default=None, help="Base branch (defaults to the workspace's)")
def run_command(task_id, workspace, base_branch):
    """Run the agent on a task in a fresh worktree."""
    config = get_config()
    with _get_db() as db:
        try:
            ws = workspaces_mod.require_workspace(db, workspace)
            result = engine_mod.run_task(db, config, workspace, task_id, base_branch or ws.default_branch)
        except BOARD_ERRORS as e:
            _fail(str(e))

        click.echo(f"Task {task_id}: {result.message}")
        click.echo(f"  Branch: {result.branch_name}")
        click.echo(f"  Worktree: {result.worktree_path}")
        if result.session_id:
            click.echo(f"  Session: {result.session_id}")
        for f in result.files_changed:
            click.echo(f"  - {f}")
        if result.agent_output:
            click.echo("")
            click.echo(result.agent_output)


@main.command("continue")
@click.argument("task_id", type=int)
@click.argument("message")
@workspace_option
def continue_command(task_id, message, workspace):
    """Send a follow-up instruction to a task's agent session."""
    config = get_config()
    with _get_db() as db:
        try:
            result = engine_mod.continue_session(db, config, workspace, task_id, message)
        except BOARD_ERRORS as e:
            _fail(str(e))
        click.echo(f"Task {task_id}: {result.message}")
        for f in result.files_changed:
            click.echo(f"  - {f}")
        if result.response:
            click.echo("")
            click.echo(result.response)


@main.command("done")
@click.argument("task_id", type=int)
@workspace_option
def done_command(task_id, workspace):
    """Mark a task done and remove its worktree."""
    with _get_db() as db:
        try:
            result = engine_mod.complete_task(db, workspace, task_id)
        except BOARD_ERRORS as e:
            _fail(str(e))
        click.echo(f"Task {task_id} marked done")
        if result.worktree_removed:
            click.echo("  Worktree removed")
        if result.cleanup_error:
            click.echo(f"  Warning: cleanup failed: {result.cleanup_error}", err=True)

        board = tasks_mod.list_tasks(db, workspace)
        unblocked = [
            t for t in board
            if task_id in t.dependencies and t.status != TaskStatus.DONE and deps_mod.is_ready(t, board)
        ]
        for t in unblocked:
            click.echo(f"  Unblocked: {t.id}: {t.title}")


# ── Worktree Commands ────────────────────────────────────────────────────────


@main.group("worktree")
def worktree_group():
    """Manage task worktrees."""
    pass


@worktree_group.command("list")
@workspace_option
def worktree_list(workspace):
    """List a workspace's worktrees and their linked tasks."""
    with _get_db() as db:
        try:
            ws = workspaces_mod.require_workspace(db, workspace)
            wts = worktrees_mod.list_task_worktrees(db, ws)
        except BOARD_ERRORS as e:
            _fail(str(e))
        if not wts:
            click.echo("No worktrees found.")
            return
        for wt in wts:
            task_info = ""
            if "task_id" in wt:
                task_info = f" -> {wt['task_id']}: {wt.get('task_title', '')} ({wt.get('task_status', '')})"
            click.echo(f"  {wt['branch']} at {wt['path']}{task_info}")


@worktree_group.command("clean")
def worktree_clean():
    """Remove worktrees whose task is done or deleted."""
    with _get_db() as db:
        removed = engine_mod.cleanup_stale_worktrees(db)
        if not removed:
            click.echo("No worktrees to clean up.")
            return
        for path in removed:
            click.echo(f"  Removed: {path}")


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Serve the board's JSON API."""
    from agentboard.web.app import run_server

    click.echo(f"Serving agentboard at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from agentboard.mcp.server import mcp
    from agentboard.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task, board) -> dict:
    data = tasks_mod.task_to_dict(task)
    data["ready"] = deps_mod.is_ready(task, board)
    data["blocked"] = not data["ready"]
    return data


if __name__ == "__main__":
    main()
