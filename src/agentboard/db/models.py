"""Data models for agentboard."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    DONE = "done"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Allowed status moves. A move to the same status is always a no-op.
TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.TODO: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.DONE}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.TODO, TaskStatus.DONE}),
    TaskStatus.DONE: frozenset({TaskStatus.IN_PROGRESS}),
}


@dataclass(frozen=True)
class ActiveSession:
    id: str
    worktree_path: str


@dataclass(frozen=True)
class ExpiredSession:
    pass


SessionHandle = ActiveSession | ExpiredSession


@dataclass
class Workspace:
    name: str
    path: str
    repo_url: str = ""
    default_branch: str = "main"
    has_prd: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def prd_path(self) -> str | None:
        if not self.has_prd:
            return None
        return f"{self.path}/PRD.md"


@dataclass
class Task:
    id: int
    workspace: str
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    estimate: str = ""
    status: TaskStatus = TaskStatus.TODO
    branch_name: str | None = None
    worktree_path: str | None = None
    session_id: str | None = None
    is_running: bool = False
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    dependencies: list[int] = field(default_factory=list)

    @property
    def session(self) -> SessionHandle:
        if self.session_id and self.worktree_path:
            return ActiveSession(id=self.session_id, worktree_path=self.worktree_path)
        return ExpiredSession()


@dataclass
class TaskEvent:
    id: int | None = None
    workspace: str = ""
    task_id: int = 0
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class WorktreeRecord:
    path: str
    workspace: str
    task_id: int
    branch: str
    base_branch: str
    created_at: datetime | None = None


@dataclass
class BranchInfo:
    name: str
    is_remote: bool = False
    is_current: bool = False
    hash: str = ""


@dataclass
class DependencyStats:
    total: int = 0
    ready: int = 0
    blocked: int = 0
    with_dependencies: int = 0


@dataclass
class AgentResult:
    session_id: str | None
    response: str
    files_changed: list[str] = field(default_factory=list)


@dataclass
class TaskRunResult:
    task: Task
    branch_name: str
    worktree_path: str
    session_id: str | None
    files_changed: list[str] = field(default_factory=list)
    agent_output: str = ""
    pushed: bool = False
    message: str = ""


@dataclass
class SessionResult:
    task: Task
    response: str
    files_changed: list[str] = field(default_factory=list)
    pushed: bool = False
    message: str = ""


@dataclass
class CompletionResult:
    task: Task
    worktree_removed: bool = False
    cleanup_error: str | None = None
