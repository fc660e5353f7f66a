"""Shared fixtures: temp git repos with a bare origin, a board DB, and a fake agent."""

import os
import subprocess
import tempfile
from pathlib import Path

import pytest

from agentboard.config import Config
from agentboard.core import workspaces as workspaces_mod
from agentboard.db.engine import init_db
from agentboard.db.models import AgentResult
from agentboard.integrations.agent import AgentError

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def git(*args, cwd) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True, env=GIT_ENV
    )
    return result.stdout.strip()


def make_repo(path: Path, origin: Path) -> Path:
    """A repo on `main` with one commit, pushed to the bare `origin`."""
    path.mkdir(parents=True)
    git("init", cwd=path)
    git("checkout", "-b", "main", cwd=path)
    (path / "README.md").write_text("# Test")
    git("add", ".", cwd=path)
    git("commit", "-m", "init", cwd=path)
    git("remote", "add", "origin", str(origin), cwd=path)
    git("push", "-u", "origin", "main", cwd=path)
    return path


@pytest.fixture
def tmp_root():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp).resolve()


@pytest.fixture
def origin(tmp_root):
    path = tmp_root / "origin.git"
    git("init", "--bare", str(path), cwd=tmp_root)
    return path


@pytest.fixture
def repo(tmp_root, origin):
    return make_repo(tmp_root / "repos" / "demo", origin)


@pytest.fixture
def db(tmp_root):
    conn = init_db(tmp_root / "test.db")
    yield conn
    conn.close()


@pytest.fixture
def workspace(db, repo):
    return workspaces_mod.register_workspace(db, "demo", repo)


@pytest.fixture
def config(tmp_root):
    return Config(db_path=tmp_root / "test.db", workspaces_dir=tmp_root / "repos")


class FakeAgent:
    """Stands in for the Claude CLI: writes files into the worktree and reports them."""

    def __init__(self, worktree_path, config, writes=None, error=None, session_id="sess-1", calls=None):
        self.worktree_path = Path(worktree_path)
        self.config = config
        self.writes = writes or {}
        self.error = error
        self.session_id = session_id
        self.calls = calls if calls is not None else []

    def start(self, task_id, title, description):
        self.calls.append(("start", task_id, title))
        return self._work(self.session_id)

    def continue_session(self, session_id, message):
        self.calls.append(("continue", session_id, message))
        return self._work(session_id)

    def _work(self, session_id):
        if self.error:
            raise AgentError(self.error)
        for name, content in self.writes.items():
            target = self.worktree_path / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        return AgentResult(session_id=session_id, response="All done.", files_changed=list(self.writes))


@pytest.fixture
def agent_factory():
    """Build a factory for FakeAgent; the returned list records every call."""

    def make(**kwargs):
        calls = []

        def factory(worktree_path, config):
            return FakeAgent(worktree_path, config, calls=calls, **kwargs)

        return factory, calls

    return make
