"""Prompt construction for engine iterations."""

from __future__ import annotations

from ..tracker import Task

COMPLETION_MARKER = "<promise>COMPLETE</promise>"
_PREVIOUS_OUTPUT_CHARS = 4000


def build_prompt(
    task: Task,
    *,
    iteration: int,
    max_iterations: int,
    previous_output: str = "",
    completion_marker: str = COMPLETION_MARKER,
) -> str:
    """Render the instructions sent to the agent for one iteration."""

    sections = [
        f"You are working on task {task.id}: {task.title}",
    ]
    if task.description:
        sections.append(f"## Task description\n{task.description.strip()}")
    sections.append(
        "## Instructions\n"
        "Work inside the current directory; it is a dedicated git worktree for this task.\n"
        "Make focused changes, run the relevant checks, and leave the tree in a working state.\n"
        f"When the task is fully done, print {completion_marker} on its own line."
    )
    if iteration > 1 and previous_output.strip():
        tail = previous_output.strip()[-_PREVIOUS_OUTPUT_CHARS:]
        sections.append(f"## Output from your previous attempt\n{tail}")
    sections.append(f"This is iteration {iteration} of at most {max_iterations}.")
    return "\n\n".join(sections)


__all__ = ["COMPLETION_MARKER", "build_prompt"]
