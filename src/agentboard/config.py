"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _split_tools(value: str) -> list[str]:
    return [t.strip() for t in value.split(",") if t.strip()]


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".agentboard" / "agentboard.db")
    workspaces_dir: Path = field(default_factory=lambda: Path.home() / ".agentboard" / "repos")
    remote: str = "origin"
    agent_executable: str = "claude"
    agent_model: str | None = None
    agent_max_turns: int = 10
    agent_permission_mode: str = "acceptEdits"
    start_tools: list[str] = field(default_factory=lambda: ["Read", "Write", "LS", "Grep"])
    continue_tools: list[str] = field(default_factory=lambda: ["Read", "Write", "LS", "Grep", "Edit"])
    bot_name: str = "Claude Code"
    bot_email: str = "claude@anthropic.com"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("AB_DB_PATH"):
            config.db_path = Path(db)

        if ws_dir := os.environ.get("AB_WORKSPACES_DIR"):
            config.workspaces_dir = Path(ws_dir)

        if remote := os.environ.get("AB_REMOTE"):
            config.remote = remote

        if exe := os.environ.get("AB_AGENT_EXECUTABLE"):
            config.agent_executable = exe

        config.agent_model = os.environ.get("AB_AGENT_MODEL") or None

        if turns := os.environ.get("AB_AGENT_MAX_TURNS"):
            config.agent_max_turns = int(turns)

        if mode := os.environ.get("AB_AGENT_PERMISSION_MODE"):
            config.agent_permission_mode = mode

        if tools := os.environ.get("AB_START_TOOLS"):
            config.start_tools = _split_tools(tools)

        if tools := os.environ.get("AB_CONTINUE_TOOLS"):
            config.continue_tools = _split_tools(tools)

        if name := os.environ.get("AB_BOT_NAME"):
            config.bot_name = name

        if email := os.environ.get("AB_BOT_EMAIL"):
            config.bot_email = email

        return config


def get_config() -> Config:
    return Config.from_env()
