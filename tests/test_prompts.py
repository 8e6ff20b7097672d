"""Tests for agent prompts, plan parsing and comment mentions."""

import pytest

from agent_board.core import comments as comments_mod
from agent_board.core.context import RenderedContext
from agent_board.core.prompts import build_implementation_prompt, build_planning_prompt, plan_steps
from agent_board.db.models import Task, Workspace


@pytest.fixture
def task():
    return Task(
        id="add-dark-mode",
        workspace_id="acme",
        title="Add dark mode",
        description="Users want a dark theme",
        prompt="make it dark",
    )


class TestPrompts:
    def test_planning_prompt(self, task):
        context = RenderedContext(docs="## Theme\nTokens", links="- [Mockups](https://f)")
        prompt = build_planning_prompt(task, Workspace("acme", "Acme"), context)
        assert "Do NOT make any code changes" in prompt
        assert "## Description\nUsers want a dark theme" in prompt
        assert "## Original Request\nmake it dark" in prompt
        assert "## Workspace: Acme" in prompt
        assert "## Related Documentation\n## Theme\nTokens" in prompt
        assert "## Reference Links" in prompt
        assert "## Relevant Conversations" not in prompt
        assert "Previous Plan" not in prompt

    def test_implementation_prompt_carries_plan(self, task):
        task.plan = "1. Add toggle"
        prompt = build_implementation_prompt(task, None, RenderedContext(), "Be quick")
        assert prompt.startswith("# Task: Add dark mode\nTask ID: add-dark-mode")
        assert "## Implementation Plan\n1. Add toggle" in prompt
        assert "## Additional Instructions\nBe quick" in prompt
        assert "Create a pull request" in prompt


class TestPlanSteps:
    def test_steps_section(self):
        plan = (
            "**Approach**\nSomething.\n\n"
            "**Implementation Steps**\n"
            "1. Add toggle to header\n"
            "2. Persist choice\n"
            "**Edge Cases**\n"
            "- none\n"
        )
        assert plan_steps(plan) == ["Add toggle to header", "Persist choice"]

    def test_first_list_without_section(self):
        assert plan_steps("Intro\n- one\n- two\n") == ["one", "two"]

    def test_limit(self):
        plan = "\n".join(f"{i}. step {i}" for i in range(1, 20))
        assert len(plan_steps(plan, limit=3)) == 3

    def test_no_steps(self):
        assert plan_steps("Just prose.") == []


class TestMentions:
    @pytest.mark.parametrize("text", ["@agent fix it", "Hey @Agent.", "ping @AGENT"])
    def test_mentions(self, text):
        assert comments_mod.mentions_agent(text)

    @pytest.mark.parametrize("text", ["@agents assemble", "agent please", "email@agentcorp.com"])
    def test_not_mentions(self, text):
        assert not comments_mod.mentions_agent(text)

    def test_empty_comment_rejected(self, db, agent_task):
        with pytest.raises(ValueError):
            comments_mod.add_comment(db, agent_task.id, "   ")
