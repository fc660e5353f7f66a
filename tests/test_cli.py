"""Tests for the CLI."""

import json
import os
import stat

import pytest
from click.testing import CliRunner

from agentboard.cli import main
from conftest import git

FAKE_AGENT = """#!/bin/sh
echo "generated by agent" > feature.txt
echo '{"type": "system", "subtype": "init", "session_id": "cli-sess"}'
echo '{"type": "result", "result": "Implemented the feature.", "session_id": "cli-sess", "is_error": false}'
"""


@pytest.fixture
def cli_env(tmp_root, repo):
    """Point the CLI at a temp DB, a temp workspaces dir and a scripted agent."""
    agent = tmp_root / "fake-claude"
    agent.write_text(FAKE_AGENT)
    agent.chmod(agent.stat().st_mode | stat.S_IEXEC)

    env = {
        "AB_DB_PATH": str(tmp_root / "test.db"),
        "AB_WORKSPACES_DIR": str(tmp_root / "repos"),
        "AB_AGENT_EXECUTABLE": str(agent),
    }
    old_env = {}
    for k, v in env.items():
        old_env[k] = os.environ.get(k)
        os.environ[k] = v
    old_env["AB_WORKSPACE"] = os.environ.pop("AB_WORKSPACE", None)

    runner = CliRunner()
    result = runner.invoke(main, ["workspace", "add", "demo", str(repo)])
    assert result.exit_code == 0, result.output

    yield runner, repo

    for k, v in old_env.items():
        if v is None:
            os.environ.pop(k, None)
        else:
            os.environ[k] = v


class TestWorkspaceCommands:
    def test_help(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "agentboard" in result.output

    def test_add_duplicate(self, cli_env):
        runner, repo = cli_env
        result = runner.invoke(main, ["workspace", "add", "demo", str(repo)])
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_list_json(self, cli_env):
        runner, repo = cli_env
        result = runner.invoke(main, ["workspace", "list", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [w["name"] for w in data] == ["demo"]
        assert data[0]["path"] == str(repo)

    def test_show(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "A", "-w", "demo"])
        result = runner.invoke(main, ["workspace", "show", "demo"])
        assert result.exit_code == 0
        assert "Tasks: 1 (1 ready, 0 blocked)" in result.output

    def test_show_missing(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["workspace", "show", "nope"])
        assert result.exit_code == 1
        assert "Workspace not found" in result.output

    def test_branches(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["workspace", "branches", "demo"])
        assert result.exit_code == 0
        assert "* main" in result.output

    def test_clone_rejects_bad_url(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["workspace", "clone", "not-a-url"])
        assert result.exit_code == 1
        assert "Invalid Git repository URL" in result.output

    def test_delete(self, cli_env):
        runner, repo = cli_env
        result = runner.invoke(main, ["workspace", "delete", "demo", "--yes"])
        assert result.exit_code == 0
        assert repo.exists()
        result = runner.invoke(main, ["workspace", "show", "demo"])
        assert result.exit_code == 1


class TestTaskCommands:
    def test_add_and_list(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["task", "add", "Setup DB", "-w", "demo", "-p", "high", "-e", "2h"])
        assert result.exit_code == 0
        assert "Created task: 1" in result.output
        assert "Priority: high" in result.output

        runner.invoke(main, ["task", "add", "Build API", "-w", "demo", "--depends-on", "1"])
        result = runner.invoke(main, ["task", "list", "-w", "demo"])
        assert result.exit_code == 0
        assert "○ 1: Setup DB (todo, high)" in result.output
        assert "✗ 2: Build API (todo, medium) [depends: 1]" in result.output

    def test_workspace_from_env(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["task", "add", "From env"], env={"AB_WORKSPACE": "demo"})
        assert result.exit_code == 0
        assert "Created task: 1" in result.output

    def test_add_to_unknown_workspace(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["task", "add", "X", "-w", "nope"])
        assert result.exit_code == 1
        assert "Workspace not found" in result.output

    def test_ready_filter_json(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "A", "-w", "demo"])
        runner.invoke(main, ["task", "add", "B", "-w", "demo", "--depends-on", "1"])
        result = runner.invoke(main, ["task", "list", "-w", "demo", "--ready", "--json"])
        data = json.loads(result.output)
        assert [t["id"] for t in data] == [1]
        assert data[0]["ready"] is True

    def test_show_lists_blockers_and_history(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "A", "-w", "demo"])
        runner.invoke(main, ["task", "add", "B", "-w", "demo", "-d", "Needs A", "--depends-on", "1"])
        result = runner.invoke(main, ["task", "show", "2", "-w", "demo"])
        assert result.exit_code == 0
        assert "Description: Needs A" in result.output
        assert "Blocked by: 1" in result.output
        assert "created" in result.output

    def test_edit(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "Old", "-w", "demo"])
        result = runner.invoke(main, ["task", "edit", "1", "-w", "demo", "--title", "New"])
        assert result.exit_code == 0
        assert "Updated task 1: New" in result.output

    def test_dependency_cycle_rejected(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "A", "-w", "demo"])
        runner.invoke(main, ["task", "add", "B", "-w", "demo", "--depends-on", "1"])
        result = runner.invoke(main, ["task", "add-dep", "1", "2", "-w", "demo"])
        assert result.exit_code == 1
        assert "Dependency cycle" in result.output

    def test_remove_dep(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "A", "-w", "demo"])
        runner.invoke(main, ["task", "add", "B", "-w", "demo", "--depends-on", "1"])
        result = runner.invoke(main, ["task", "remove-dep", "2", "1", "-w", "demo"])
        assert result.exit_code == 0
        assert "No remaining dependencies" in result.output

    def test_bad_depends_on(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["task", "add", "A", "-w", "demo", "--depends-on", "x,y"])
        assert result.exit_code == 2

    def test_import_export(self, cli_env, tmp_root):
        runner, _ = cli_env
        source = tmp_root / "tasks.json"
        source.write_text(json.dumps({"tasks": [
            {"id": 1, "title": "Schema", "priority": "High"},
            {"id": 2, "title": "API", "dependencies": [1]},
        ]}))
        result = runner.invoke(main, ["task", "import", str(source), "-w", "demo"])
        assert result.exit_code == 0
        assert "Imported 2 task(s) into demo" in result.output

        result = runner.invoke(main, ["task", "export", "-w", "demo"])
        exported = json.loads(result.output)["tasks"]
        assert [(t["id"], t["priority"], t["dependencies"]) for t in exported] == [(1, "high", []), (2, "medium", [1])]

    def test_import_invalid_json(self, cli_env, tmp_root):
        runner, _ = cli_env
        source = tmp_root / "bad.json"
        source.write_text("{not json")
        result = runner.invoke(main, ["task", "import", str(source), "-w", "demo"])
        assert result.exit_code == 1
        assert "Invalid JSON" in result.output

    def test_stats(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "A", "-w", "demo"])
        runner.invoke(main, ["task", "add", "B", "-w", "demo", "--depends-on", "1"])
        result = runner.invoke(main, ["task", "stats", "-w", "demo"])
        assert "Total: 2" in result.output
        assert "Ready: 1" in result.output
        assert "Blocked: 1" in result.output
        assert "With dependencies: 1" in result.output

    def test_delete(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "A", "-w", "demo"])
        result = runner.invoke(main, ["task", "delete", "1", "-w", "demo"])
        assert result.exit_code == 0
        result = runner.invoke(main, ["task", "show", "1", "-w", "demo"])
        assert result.exit_code == 1


class TestEngineCommands:
    def test_run_then_done(self, cli_env, origin):
        runner, repo = cli_env
        runner.invoke(main, ["task", "add", "Add feature", "-w", "demo"])
        runner.invoke(main, ["task", "add", "Follow up", "-w", "demo", "--depends-on", "1"])

        result = runner.invoke(main, ["run", "1", "-w", "demo"])
        assert result.exit_code == 0, result.output
        assert "Branch: task-1-add-feature" in result.output
        assert "Session: cli-sess" in result.output
        assert "- feature.txt" in result.output
        assert "Implemented the feature." in result.output
        assert git("--git-dir", str(origin), "log", "-1", "--format=%s", "task-1-add-feature", cwd=repo) == (
            "feat: Add feature"
        )

        result = runner.invoke(main, ["worktree", "list", "-w", "demo"])
        assert "task-1-add-feature" in result.output
        assert "-> 1: Add feature (in-progress)" in result.output

        result = runner.invoke(main, ["done", "1", "-w", "demo"])
        assert result.exit_code == 0
        assert "Worktree removed" in result.output
        assert "Unblocked: 2: Follow up" in result.output
        assert not (repo.parent / "task-1-demo").exists()

    def test_run_blocked_task(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "A", "-w", "demo"])
        runner.invoke(main, ["task", "add", "B", "-w", "demo", "--depends-on", "1"])
        result = runner.invoke(main, ["run", "2", "-w", "demo"])
        assert result.exit_code == 1
        assert "blocked by: 1" in result.output

    def test_continue_without_session(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "A", "-w", "demo"])
        result = runner.invoke(main, ["continue", "1", "more please", "-w", "demo"])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_worktree_clean_nothing(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["worktree", "clean"])
        assert result.exit_code == 0
        assert "No worktrees to clean up." in result.output
