"""Prompts handed to the agent in each phase, and the plan scaffold."""

from cbox.models.schemas import Task
from cbox.workflow.template import expand_vars

PLAN_SCAFFOLD = """\
# Task: {title}

## Context
<!-- What you learned from researching the codebase -->

## Approach
<!-- The plan for how to implement this -->

## Acceptance Criteria
- [ ] (define testable criteria here)

## Notes
<!-- Anything else relevant: edge cases, open questions, etc. -->
"""

_STATE_FILES_RULE = """\
IMPORTANT: Do NOT commit or git-add any files in .cbox/ (task.json, plan.md, etc.).
These files are local workflow state managed by cbox and are in .gitignore.
Never use "git add -f" to bypass .gitignore for these files."""

SHAPING_PROMPT = """\
You are in SHAPING MODE for a cbox flow task.

Task: $Title
Description: $Description

Your goal is to produce a clear, actionable plan at /workspace/.cbox/plan.md.

Rules:
- Research the codebase to understand the current state.
- Ask the user clarifying questions about scope, requirements, and edge cases.
- Write an early draft of the plan and iterate on it throughout the session.
- The plan must include an "## Acceptance Criteria" section with clear, testable items.
- Do NOT write implementation code. Pseudocode and architecture sketches are fine.
- The plan should be detailed enough that a separate session can implement it without re-deriving the approach.

If /workspace/.cbox/plan.md already exists, read it and continue from where it left off.

When the plan is complete and the user confirms:
1. Write the final plan to /workspace/.cbox/plan.md
2. Run `cbox-flow-ready` to advance the task to the ready phase

""" + _STATE_FILES_RULE

YOLO_SHAPING_PROMPT = """\
You are in YOLO SHAPING MODE for a cbox flow task.

Task: $Title
Description: $Description

Your goal is to produce a clear, actionable plan at /workspace/.cbox/plan.md.

Rules:
- Research the codebase thoroughly to understand the current state.
- Write a complete, detailed plan with:
  - Context section (what you learned from the codebase)
  - Approach section (step-by-step implementation plan)
  - Acceptance Criteria section (clear, testable items)
- The plan must be detailed enough for implementation without re-deriving the approach.
- Do NOT write implementation code. Pseudocode and architecture sketches are fine.
- Use your best judgment: do not ask questions, make reasonable decisions.
- When the plan is complete, run `cbox-flow-ready`.

""" + _STATE_FILES_RULE

IMPLEMENTATION_PROMPT = """\
You are in IMPLEMENTATION MODE for a cbox flow task.

Task: $Title
Plan: /workspace/.cbox/plan.md

Read the plan file for full details, including acceptance criteria.

- Implement the feature according to the plan.
- Write tests and ensure all acceptance criteria are satisfied.
- When complete, run `cbox-report --type done` with a summary, then `cbox-flow-pr` to create a PR.
- Do not deviate from the plan without discussing with the user first.
- If the plan is unclear or incomplete on a point, ask rather than guess.

""" + _STATE_FILES_RULE

YOLO_SUFFIX = """

You are in YOLO mode: work autonomously. Use your best judgment for minor
decisions that aren't covered by the plan. Only stop for truly ambiguous or
high-risk choices."""


def plan_scaffold(title: str) -> str:
    return PLAN_SCAFFOLD.format(title=title)


def shaping_prompt(task: Task, yolo: bool = False) -> str:
    template = YOLO_SHAPING_PROMPT if yolo else SHAPING_PROMPT
    return expand_vars(template, {"Title": task.title, "Description": task.description})


def implementation_prompt(task: Task, yolo: bool = False, custom_yolo: str = "") -> str:
    """Implementation prompt, listing earlier verification failures to address.

    ``custom_yolo`` replaces the default yolo suffix when set.
    """
    prompt = expand_vars(IMPLEMENTATION_PROMPT, {"Title": task.title})
    if yolo:
        prompt += ("\n\n" + expand_vars(custom_yolo, {"Title": task.title})) if custom_yolo else YOLO_SUFFIX
    if task.verify_failures:
        prompt += "\n\nPrevious verification failures (address these):"
        for failure in task.verify_failures:
            prompt += f"\n- [{failure.timestamp.strftime('%Y-%m-%dT%H:%M:%SZ')}] {failure.reason}"
    return prompt
