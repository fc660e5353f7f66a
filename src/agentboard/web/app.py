"""JSON API for the task board."""

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from agentboard.config import get_config
from agentboard.core import dependencies as deps_mod
from agentboard.core import engine as engine_mod
from agentboard.core import tasks as tasks_mod
from agentboard.core import workspaces as workspaces_mod
from agentboard.core.worktrees import WorktreeError
from agentboard.db.engine import init_db
from agentboard.db.models import TaskStatus
from agentboard.integrations.agent import AgentError
from agentboard.integrations.git import GitError


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _error(e: Exception) -> JSONResponse:
    if isinstance(e, tasks_mod.TransitionError):
        return JSONResponse({"error": str(e)}, status_code=409)
    if isinstance(e, ValueError):
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse({"error": str(e)}, status_code=500)


def _call_engine(fn, *args, **kwargs):
    """Run an engine operation on its own connection (called from a worker thread)."""
    db = _get_db()
    try:
        return fn(db, *args, **kwargs)
    finally:
        db.close()


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_workspaces(request: Request):
    config = get_config()
    db = _get_db()
    try:
        workspaces = workspaces_mod.list_workspaces(db, config)
        return JSONResponse([workspaces_mod.workspace_to_dict(w) for w in workspaces])
    finally:
        db.close()


async def api_get_workspace(request: Request):
    name = request.path_params["name"]
    db = _get_db()
    try:
        ws = workspaces_mod.get_workspace(db, name)
        if not ws:
            return JSONResponse({"error": "Workspace not found"}, status_code=404)
        return JSONResponse(workspaces_mod.workspace_to_dict(ws))
    finally:
        db.close()


async def api_workspace_branches(request: Request):
    name = request.path_params["name"]
    config = get_config()
    db = _get_db()
    try:
        if not workspaces_mod.get_workspace(db, name):
            return JSONResponse({"error": "Workspace not found"}, status_code=404)
        branches = workspaces_mod.list_branches(db, name, remote=config.remote)
        return JSONResponse([b.__dict__ for b in branches])
    except GitError as e:
        return _error(e)
    finally:
        db.close()


async def api_workspace_tasks(request: Request):
    name = request.path_params["name"]
    status_filter = request.query_params.get("status")
    only_ready = request.query_params.get("ready") in ("1", "true")
    db = _get_db()
    try:
        if not workspaces_mod.get_workspace(db, name):
            return JSONResponse({"error": "Workspace not found"}, status_code=404)
        board = tasks_mod.list_tasks(db, name)
        tasks = [t for t in board if not status_filter or t.status.value == status_filter]
        if only_ready:
            tasks = [t for t in tasks if t.status != TaskStatus.DONE and deps_mod.is_ready(t, board)]
        return JSONResponse([_task_dict(t, board) for t in tasks])
    finally:
        db.close()


async def api_workspace_stats(request: Request):
    name = request.path_params["name"]
    db = _get_db()
    try:
        stats = deps_mod.dependency_stats(tasks_mod.list_tasks(db, name))
        return JSONResponse(stats.__dict__)
    finally:
        db.close()


async def api_get_task(request: Request):
    name = request.path_params["name"]
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        task = tasks_mod.get_task(db, name, task_id)
        if not task:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        td = _task_dict(task, tasks_mod.list_tasks(db, name))
        td["events"] = [_event_dict(e) for e in tasks_mod.get_task_events(db, name, task_id)]
        return JSONResponse(td)
    finally:
        db.close()


async def api_run_task(request: Request):
    name = request.path_params["name"]
    task_id = request.path_params["task_id"]
    body = await _json_body(request)
    config = get_config()
    try:
        base_branch = body.get("base_branch")
        if not base_branch:
            ws = await run_in_threadpool(_call_engine, workspaces_mod.require_workspace, name)
            base_branch = ws.default_branch
        result = await run_in_threadpool(_call_engine, engine_mod.run_task, config, name, task_id, base_branch)
    except (ValueError, GitError, AgentError, WorktreeError) as e:
        return _error(e)
    return JSONResponse({
        "task": tasks_mod.task_to_dict(result.task),
        "branch_name": result.branch_name,
        "worktree_path": result.worktree_path,
        "session_id": result.session_id,
        "files_changed": result.files_changed,
        "pushed": result.pushed,
        "message": result.message,
        "agent_output": result.agent_output,
    })


async def api_continue_task(request: Request):
    name = request.path_params["name"]
    task_id = request.path_params["task_id"]
    body = await _json_body(request)
    config = get_config()
    try:
        result = await run_in_threadpool(
            _call_engine, engine_mod.continue_session, config, name, task_id, body.get("message", "")
        )
    except (ValueError, GitError, AgentError, WorktreeError) as e:
        return _error(e)
    return JSONResponse({
        "task": tasks_mod.task_to_dict(result.task),
        "response": result.response,
        "files_changed": result.files_changed,
        "pushed": result.pushed,
        "message": result.message,
    })


async def api_set_status(request: Request):
    name = request.path_params["name"]
    task_id = request.path_params["task_id"]
    body = await _json_body(request)
    try:
        status = TaskStatus(body.get("status"))
        if status == TaskStatus.DONE:
            result = await run_in_threadpool(_call_engine, engine_mod.complete_task, name, task_id)
            payload = tasks_mod.task_to_dict(result.task)
            payload["cleanup_error"] = result.cleanup_error
            return JSONResponse(payload)
        task = await run_in_threadpool(_call_engine, engine_mod.set_status, name, task_id, status)
    except (ValueError, GitError, WorktreeError) as e:
        return _error(e)
    return JSONResponse(tasks_mod.task_to_dict(task))


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_dict(task, board) -> dict:
    td = tasks_mod.task_to_dict(task)
    td["ready"] = deps_mod.is_ready(task, board)
    td["blocked"] = not td["ready"]
    return td


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/workspaces", api_list_workspaces),
        Route("/api/workspaces/{name}", api_get_workspace),
        Route("/api/workspaces/{name}/branches", api_workspace_branches),
        Route("/api/workspaces/{name}/tasks", api_workspace_tasks),
        Route("/api/workspaces/{name}/stats", api_workspace_stats),
        Route("/api/workspaces/{name}/tasks/{task_id:int}", api_get_task),
        Route("/api/workspaces/{name}/tasks/{task_id:int}/run", api_run_task, methods=["POST"]),
        Route("/api/workspaces/{name}/tasks/{task_id:int}/continue", api_continue_task, methods=["POST"]),
        Route("/api/workspaces/{name}/tasks/{task_id:int}/status", api_set_status, methods=["POST"]),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
