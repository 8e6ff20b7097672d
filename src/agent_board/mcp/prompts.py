"""MCP prompt templates for common workflows."""

from agent_board.mcp.server import mcp


@mcp.prompt()
def plan_task(task_id: str) -> str:
    """Generate a prompt to plan a task locally before handing it to the agent."""
    return (
        f"Please draft an implementation plan for task '{task_id}'.\n\n"
        f"Use get_task_context to read the task, its workspace docs, conversations and links.\n"
        f"Do not change any code. Then write a plan with:\n"
        f"1. Approach\n"
        f"2. Files to change\n"
        f"3. Implementation steps\n"
        f"4. Edge cases\n"
        f"5. Testing\n\n"
        f"Post the plan with add_comment, or use request_planning_run to have the cloud agent refine it."
    )


@mcp.prompt()
def review_task(task_id: str) -> str:
    """Generate a prompt to review the agent's work on a task."""
    return (
        f"Please review the work done for task '{task_id}'.\n\n"
        f"Use get_task to see the plan and the agent runs, including the pull request link.\n"
        f"Then provide:\n"
        f"1. Summary of changes made\n"
        f"2. Whether the plan's goals appear to be met\n"
        f"3. Any issues or concerns\n"
        f"4. Whether it's ready to merge\n\n"
        f"Leave your findings with add_comment. Mention @agent in the comment if the agent should address them."
    )
