"""Tests for the board's JSON API."""

import os

import pytest
from starlette.testclient import TestClient

from agentboard.core import tasks as tasks_mod
from agentboard.core import workspaces as workspaces_mod
from agentboard.db.engine import init_db
from agentboard.web.app import create_app


@pytest.fixture
def web_env(tmp_root, repo):
    """Seed a board and point the app at it."""
    db_path = tmp_root / "test.db"
    env = {"AB_DB_PATH": str(db_path), "AB_WORKSPACES_DIR": str(tmp_root / "repos")}
    old_env = {}
    for k, v in env.items():
        old_env[k] = os.environ.get(k)
        os.environ[k] = v

    db = init_db(db_path)
    workspaces_mod.register_workspace(db, "demo", repo)
    tasks_mod.create_task(db, "demo", "Setup database", "Create tables", priority="high")
    tasks_mod.create_task(db, "demo", "Build API", dependencies=[1])
    tasks_mod.create_task(db, "demo", "Write tests", dependencies=[2])
    tasks_mod.update_task_status(db, "demo", 1, "done")
    tasks_mod.update_task_status(db, "demo", 2, "in-progress")
    db.close()

    client = TestClient(create_app())
    yield client

    for k, v in old_env.items():
        if v is None:
            os.environ.pop(k, None)
        else:
            os.environ[k] = v


class TestWorkspacesAPI:
    def test_list(self, web_env):
        resp = web_env.get("/api/workspaces")
        assert resp.status_code == 200
        assert [w["name"] for w in resp.json()] == ["demo"]

    def test_get(self, web_env):
        resp = web_env.get("/api/workspaces/demo")
        assert resp.status_code == 200
        assert resp.json()["default_branch"] == "main"
        assert resp.json()["has_prd"] is False

    def test_get_missing(self, web_env):
        assert web_env.get("/api/workspaces/nope").status_code == 404

    def test_branches(self, web_env):
        resp = web_env.get("/api/workspaces/demo/branches")
        assert resp.status_code == 200
        main = next(b for b in resp.json() if b["name"] == "main")
        assert main["is_current"] is True

    def test_stats(self, web_env):
        resp = web_env.get("/api/workspaces/demo/stats")
        assert resp.json() == {"total": 3, "ready": 2, "blocked": 1, "with_dependencies": 2}


class TestTasksAPI:
    def test_list_with_ready_flags(self, web_env):
        resp = web_env.get("/api/workspaces/demo/tasks")
        assert resp.status_code == 200
        flags = {t["id"]: (t["status"], t["ready"], t["blocked"]) for t in resp.json()}
        assert flags == {
            1: ("done", True, False),
            2: ("in-progress", True, False),
            3: ("todo", False, True),
        }

    def test_filters(self, web_env):
        ready = web_env.get("/api/workspaces/demo/tasks?ready=1").json()
        assert [t["id"] for t in ready] == [2]
        done = web_env.get("/api/workspaces/demo/tasks?status=done").json()
        assert [t["id"] for t in done] == [1]

    def test_list_missing_workspace(self, web_env):
        assert web_env.get("/api/workspaces/nope/tasks").status_code == 404

    def test_get_task_with_events(self, web_env):
        resp = web_env.get("/api/workspaces/demo/tasks/2")
        assert resp.status_code == 200
        data = resp.json()
        assert data["title"] == "Build API"
        assert data["dependencies"] == [1]
        assert [e["event_type"] for e in data["events"]] == ["created", "status_changed"]

    def test_get_task_missing(self, web_env):
        assert web_env.get("/api/workspaces/demo/tasks/99").status_code == 404


class TestStatusAPI:
    def test_mark_done(self, web_env):
        resp = web_env.post("/api/workspaces/demo/tasks/2/status", json={"status": "done"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "done"
        assert resp.json()["cleanup_error"] is None

        task3 = web_env.get("/api/workspaces/demo/tasks/3").json()
        assert task3["ready"] is True

    def test_move_back(self, web_env):
        resp = web_env.post("/api/workspaces/demo/tasks/2/status", json={"status": "todo"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "todo"

    def test_invalid_status(self, web_env):
        resp = web_env.post("/api/workspaces/demo/tasks/2/status", json={"status": "blocked"})
        assert resp.status_code == 400

    def test_illegal_transition(self, web_env):
        resp = web_env.post("/api/workspaces/demo/tasks/1/status", json={"status": "todo"})
        assert resp.status_code == 409


class TestEngineAPI:
    def test_run_blocked_task(self, web_env):
        resp = web_env.post("/api/workspaces/demo/tasks/3/run", json={})
        assert resp.status_code == 400
        assert "blocked by: 2" in resp.json()["error"]

    def test_run_done_task(self, web_env):
        resp = web_env.post("/api/workspaces/demo/tasks/1/run", json={"base_branch": "main"})
        assert resp.status_code == 409

    def test_continue_without_session(self, web_env):
        resp = web_env.post("/api/workspaces/demo/tasks/2/continue", json={"message": "more"})
        assert resp.status_code == 400
        assert "no active session" in resp.json()["error"]
