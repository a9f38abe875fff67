"""Build the text prompts passed to agent providers for each phase and task."""

from __future__ import annotations

from typing import Optional

from .models import AgentRole, Phase, Story, TaskContext

_ROLE_INSTRUCTIONS: dict[AgentRole, str] = {
    AgentRole.STORY_REFINER: (
        "Refine the story: clarify the goal, write testable acceptance criteria under "
        "'## Acceptance Criteria', and list open questions."
    ),
    AgentRole.TECH_LEAD_REVIEWER: (
        "Review the story as a tech lead: feasibility, architecture fit, hidden complexity."
    ),
    AgentRole.SECURITY_REVIEWER: (
        "Review the story as a security engineer: input handling, secrets, authn/authz, data exposure."
    ),
    AgentRole.PRODUCT_OWNER_REVIEWER: (
        "Review the story as a product owner: user value, scope, and acceptance criteria quality."
    ),
    AgentRole.RESEARCHER: (
        "Research the codebase for this story: relevant files, existing patterns, and risks."
    ),
    AgentRole.PLANNER: (
        "Write an implementation plan. Include a '## Implementation Tasks' section where each "
        "task is a line '- [ ] **T<n>**: <description>' followed by indented "
        "'- Files: `path`' and '- Dependencies: T<m>' (or 'none') bullets."
    ),
    AgentRole.PLAN_REVIEWER: (
        "Review the implementation plan: task granularity, file scopes, dependency order, gaps."
    ),
    AgentRole.IMPLEMENTER: "Implement the story exactly as planned and keep the tests passing.",
    AgentRole.REVIEWER: (
        "Review the implementation against the acceptance criteria: correctness, tests, style."
    ),
}

_RESPONSE_CONTRACT = """Respond with a single JSON object:
{
  "approved": true | false,
  "summary": "<one paragraph>",
  "concerns": [
    {"severity": "blocker|critical|major|minor", "category": "<area>", "description": "<text>", "file": "<optional path>"}
  ],
  "content": "<optional markdown produced by this step>"
}
Use severity "blocker" only for problems that must be fixed before the story can proceed."""


def build_phase_prompt(
    role: AgentRole,
    story: Story,
    phase: Phase,
    *,
    feedback: Optional[str] = None,
    iteration: int = 1,
) -> str:
    """Build the prompt for one phase agent."""
    instruction = _ROLE_INSTRUCTIONS.get(role, f"Act as the {role.value} for this story.")
    sections = [
        f"You are the {role.value.replace('_', ' ')} for story {story.id}: {story.title}",
        f"Phase: {phase.value}",
        instruction,
        "Story:\n" + (story.content.strip() or "(no content)"),
    ]
    if story.review_history and phase in {Phase.PLAN, Phase.IMPLEMENT}:
        last = story.review_history[-1]
        sections.append(f"Previous review ({last.decision.value}):\n{last.feedback}")
    if feedback:
        sections.append(
            f"This is iteration {iteration}. Address these concerns raised by other agents:\n{feedback}"
        )
    sections.append(_RESPONSE_CONTRACT)
    return "\n\n".join(sections) + "\n"


def build_task_prompt(story: Story, context: TaskContext) -> str:
    """Build the prompt for one implementation task."""
    task = context.task
    lines = [
        f"Implement task {task.id} of story {story.id}: {task.description}",
        "",
        "You may only modify these files:",
    ]
    lines.extend(f"- {path}" for path in task.files)
    if context.acceptance_criteria:
        lines.append("")
        lines.append("Relevant acceptance criteria:")
        lines.extend(f"- {criterion}" for criterion in context.acceptance_criteria)
    for path, content in context.existing_files.items():
        lines.append("")
        lines.append(f"Current contents of {path}:")
        lines.append("```")
        lines.append(content)
        lines.append("```")
    if context.project_patterns:
        lines.append("")
        lines.append("Project conventions:")
        lines.append(context.project_patterns)
    if context.previous_error:
        lines.append("")
        lines.append("The previous attempt failed with:")
        lines.append(context.previous_error)
    lines.append("")
    lines.append("Do not commit; the runner commits after verifying the file scope.")
    return "\n".join(lines) + "\n"
