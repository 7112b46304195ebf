"""Prompt assembly boundary: callers supply the builder, the engine appends retries."""

from __future__ import annotations

from collections.abc import Callable, Sequence

from agent_loop.engine.models import TaskDetail

COMPLETION_SIGNAL = "<promise>COMPLETE</promise>"

PromptBuilder = Callable[[TaskDetail], str]


def render_default_prompt(detail: TaskDetail) -> str:
    """Plain prompt used when the caller does not provide a builder."""

    lines = [f"## Task {detail.id}: {detail.title}", ""]
    if detail.description:
        lines.extend([detail.description.strip(), ""])
    if detail.acceptance_criteria:
        lines.append("### Acceptance criteria")
        lines.extend(f"- {item}" for item in detail.acceptance_criteria)
        lines.append("")
    lines.append(
        f"When the task is fully done and verified, print {COMPLETION_SIGNAL} on its own line.",
    )
    return "\n".join(lines)


def append_alternatives(prompt: str, alternatives: Sequence[str]) -> str:
    if not alternatives:
        return prompt
    lines = [
        prompt.rstrip(),
        "",
        "### Alternative approach requested by the user",
        "A previous attempt was blocked waiting for permission. Do not repeat the blocked step.",
    ]
    lines.extend(f"- {item}" for item in alternatives)
    return "\n".join(lines)


def has_completion_signal(output: str) -> bool:
    return COMPLETION_SIGNAL in output
