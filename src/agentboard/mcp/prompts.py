"""MCP prompt templates for common workflows."""

from agentboard.mcp.server import mcp


@mcp.prompt()
def work_ready_tasks(workspace: str) -> str:
    """Generate a prompt that works through the ready tasks of a workspace."""
    return (
        f"Work through the ready tasks of the '{workspace}' workspace.\n\n"
        f"1. Use list_tasks with ready_only=true to find tasks whose dependencies are done.\n"
        f"2. Pick the highest-priority one and call run_task for it.\n"
        f"3. Review the agent output and changed files. If something is missing, "
        f"use continue_task with a specific follow-up instruction.\n"
        f"4. When the work looks complete, call update_task_status with status='done'.\n"
        f"5. Repeat until no ready tasks remain, then summarize what was done "
        f"and which tasks are still blocked."
    )


@mcp.prompt()
def status_report(workspace: str) -> str:
    """Generate a prompt for a workspace status report."""
    return (
        f"Please generate a status report for the '{workspace}' workspace.\n\n"
        f"Use board_stats and list_tasks, then provide:\n"
        f"1. Overall progress summary\n"
        f"2. Tasks currently in progress\n"
        f"3. Tasks that are blocked and what blocks them\n"
        f"4. Recommended next tasks to run"
    )
