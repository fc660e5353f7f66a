"""Claude CLI agent sessions run inside a task worktree."""

import json
import logging
import subprocess
from pathlib import Path

from agentboard.config import Config
from agentboard.db.models import AgentResult

logger = logging.getLogger(__name__)

START_SYSTEM_PROMPT = (
    "You are a senior software engineer helping to implement specific development tasks. "
    "Focus on writing high-quality, maintainable code that follows the existing codebase patterns."
)

CONTINUE_SYSTEM_PROMPT = (
    "You are a senior software engineer helping to implement and modify development tasks. "
    "Focus on understanding the user's request and making the appropriate changes while "
    "maintaining code quality."
)

FILE_WRITING_TOOLS = {"Write", "Edit"}


class AgentError(Exception):
    """Raised when the agent cannot be run or reports a failure."""


def build_task_prompt(task_id: int, title: str, description: str) -> str:
    return (
        "I need help implementing this specific task:\n"
        "\n"
        f"**Task ID**: {task_id}\n"
        f"**Title**: {title}\n"
        f"**Description**: {description}\n"
        "\n"
        "Please analyze the current codebase and implement this task. Consider:\n"
        "1. The existing code structure and patterns\n"
        "2. Best practices for the technology stack being used\n"
        "3. Any dependencies or integration points\n"
        "4. Testing requirements if applicable\n"
        "\n"
        "Please implement the necessary code changes to complete this task."
    )


def parse_stream(output: str) -> AgentResult:
    """Parse `--output-format stream-json` output into an AgentResult.

    Text comes from assistant text blocks, or from the final result event when
    no assistant text was seen. Changed files come from Write/Edit tool calls.
    """
    text_chunks: list[str] = []
    files: list[str] = []
    session_id = None
    result_text = None
    is_error = False

    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except (json.JSONDecodeError, ValueError):
            text_chunks.append(line)
            continue
        if not isinstance(event, dict):
            continue

        event_type = event.get("type")
        if event.get("session_id"):
            session_id = event["session_id"]

        if event_type == "assistant":
            for block in event.get("message", {}).get("content", []):
                if block.get("type") == "text":
                    text_chunks.append(block.get("text", ""))
                elif block.get("type") == "tool_use" and block.get("name") in FILE_WRITING_TOOLS:
                    tool_input = block.get("input", {})
                    path = tool_input.get("file_path") or tool_input.get("path")
                    if path and path not in files:
                        files.append(path)
        elif event_type == "result":
            result_text = event.get("result")
            is_error = bool(event.get("is_error"))

    response = "\n".join(t for t in text_chunks if t)
    if not response and result_text:
        response = result_text
    if is_error:
        raise AgentError(result_text or response or "Agent reported an error")

    return AgentResult(session_id=session_id, response=response, files_changed=files)


class AgentSession:
    """One agent conversation bound to a worktree.

    The agent CLI owns session state; only the session ID is kept locally.
    """

    def __init__(self, worktree_path: str | Path, config: Config):
        self.worktree_path = Path(worktree_path)
        self.config = config

    def start(self, task_id: int, title: str, description: str) -> AgentResult:
        prompt = build_task_prompt(task_id, title, description)
        result = self._run(prompt, self.config.start_tools, START_SYSTEM_PROMPT)
        if not result.session_id:
            logger.warning("Agent run for task %d returned no session ID", task_id)
        return result

    def continue_session(self, session_id: str, message: str) -> AgentResult:
        if not session_id:
            raise ValueError("Session ID is required to continue a session")
        if not message or not message.strip():
            raise ValueError("Message cannot be empty")
        result = self._run(message, self.config.continue_tools, CONTINUE_SYSTEM_PROMPT, resume=session_id)
        if not result.session_id:
            result.session_id = session_id
        return result

    def build_command(
        self,
        prompt: str,
        tools: list[str],
        system_prompt: str,
        resume: str | None = None,
    ) -> list[str]:
        cmd = [
            self.config.agent_executable,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--max-turns",
            str(self.config.agent_max_turns),
            "--permission-mode",
            self.config.agent_permission_mode,
            "--append-system-prompt",
            system_prompt,
        ]
        if tools:
            cmd += ["--allowedTools", ",".join(tools)]
        if self.config.agent_model:
            cmd += ["--model", self.config.agent_model]
        if resume:
            cmd += ["--resume", resume]
        return cmd

    def _run(
        self,
        prompt: str,
        tools: list[str],
        system_prompt: str,
        resume: str | None = None,
    ) -> AgentResult:
        if not self.worktree_path.is_dir():
            raise AgentError(f"Worktree does not exist: {self.worktree_path}")

        cmd = self.build_command(prompt, tools, system_prompt, resume=resume)
        logger.info("Running agent in %s%s", self.worktree_path, f" (resume {resume})" if resume else "")
        try:
            proc = subprocess.run(cmd, cwd=self.worktree_path, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise AgentError(f"Agent executable not found: {self.config.agent_executable}") from e

        if proc.returncode != 0 and not proc.stdout.strip():
            detail = proc.stderr.strip() or f"exit code {proc.returncode}"
            raise AgentError(f"Agent failed: {detail}")

        result = parse_stream(proc.stdout)
        if proc.returncode != 0:
            raise AgentError(f"Agent failed (exit {proc.returncode}): {proc.stderr.strip() or result.response}")
        if not result.response and not result.session_id:
            raise AgentError("No response received from agent")

        result.files_changed = [self._relative(f) for f in result.files_changed]
        return result

    def _relative(self, path: str) -> str:
        p = Path(path)
        if not p.is_absolute():
            return path
        try:
            return str(p.resolve().relative_to(self.worktree_path.resolve()))
        except ValueError:
            return path
