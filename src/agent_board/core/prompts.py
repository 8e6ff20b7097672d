"""Prompt construction for planning and implementation runs."""

import re

from agent_board.core.context import RenderedContext
from agent_board.db.models import Task, Workspace


def _task_sections(task: Task, workspace: Workspace | None, context: RenderedContext) -> list[str]:
    parts = []
    if task.description:
        parts.append(f"\n## Description\n{task.description}")
    if task.prompt:
        parts.append(f"\n## Original Request\n{task.prompt}")

    if workspace:
        parts.append(f"\n## Workspace: {workspace.name}")
        if workspace.description:
            parts.append(workspace.description)

    if context.docs:
        parts.append(f"\n## Related Documentation\n{context.docs}")
    if context.messages:
        parts.append(f"\n## Relevant Conversations\n{context.messages}")
    if context.links:
        parts.append(f"\n## Reference Links\n{context.links}")
    return parts


def build_planning_prompt(
    task: Task,
    workspace: Workspace | None,
    context: RenderedContext,
    instructions: str | None = None,
) -> str:
    """Prompt asking the agent for an implementation plan without touching code."""
    parts = [
        "Create a detailed implementation plan for the following task.",
        "",
        "IMPORTANT: Do NOT make any code changes. Only analyze the codebase and create a plan.",
        "",
        f"# Task: {task.title}",
    ]
    parts.extend(_task_sections(task, workspace, context))

    if task.plan:
        parts.append(f"\n## Previous Plan\n{task.plan}")
    if instructions:
        parts.append(f"\n## Requested Changes\n{instructions}")

    parts.append(
        "\n## Your Task\n"
        "Analyze the codebase and create a detailed implementation plan. Include:\n"
        "1. **Approach** - your strategy in two or three sentences\n"
        "2. **Files to Change** - the files to modify or create\n"
        "3. **Implementation Steps** - concrete numbered steps\n"
        "4. **Edge Cases** - what needs special handling\n"
        "5. **Testing** - how to verify the change"
    )
    return "\n".join(parts)


def build_implementation_prompt(
    task: Task,
    workspace: Workspace | None,
    context: RenderedContext,
    instructions: str | None = None,
) -> str:
    """Prompt asking the agent to implement the task and open a pull request."""
    parts = [f"# Task: {task.title}", f"Task ID: {task.id}"]
    parts.extend(_task_sections(task, workspace, context))

    if task.plan:
        parts.append(f"\n## Implementation Plan\n{task.plan}")
    if instructions:
        parts.append(f"\n## Additional Instructions\n{instructions}")

    parts.append(
        "\n## Instructions\n"
        "1. Follow the existing code style and patterns in the repository\n"
        "2. Include tests where the repository has them\n"
        "3. Create a pull request with a clear description of the changes\n"
        "\n"
        "When done, summarize what was implemented."
    )
    return "\n".join(parts)


_STEPS_HEADING = re.compile(r"^#{1,6}\s*.*implementation steps.*$|^\*\*implementation steps\*\*", re.I)
_HEADING = re.compile(r"^#{1,6}\s|^\*\*\d*\.?\s*[A-Z][^*]*\*\*\s*$")
_STEP = re.compile(r"^(?:\d+[.)]|[-*])\s+(.+)$")


def plan_steps(plan: str, limit: int = 10) -> list[str]:
    """Pull the top-level steps out of a plan's "Implementation Steps" section.

    Falls back to the plan's first numbered list when no such section exists.
    """
    lines = plan.splitlines()
    start = 0
    for i, line in enumerate(lines):
        if _STEPS_HEADING.match(line.strip()):
            start = i + 1
            break

    steps = []
    for line in lines[start:]:
        if line != line.lstrip():
            continue  # nested item
        stripped = line.strip()
        if steps and _HEADING.match(stripped):
            break
        m = _STEP.match(stripped)
        if m:
            steps.append(m.group(1).strip().strip("*").strip())
        if len(steps) >= limit:
            break
    return steps
