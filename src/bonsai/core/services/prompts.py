"""Worker prompt building from package-resource templates."""

from __future__ import annotations

from functools import cache
from importlib.resources import files
from typing import TYPE_CHECKING

from bonsai.core.models.enums import TaskType
from bonsai.core.models.state_machine import PHASE_ARTIFACTS, next_phase

if TYPE_CHECKING:
    from collections.abc import Sequence

    from bonsai.core.adapters.db.schema import Message, WorkItem

_TEMPLATES: dict[TaskType, str] = {
    TaskType.RESEARCH: "research.md",
    TaskType.PLAN: "plan.md",
    TaskType.IMPLEMENT: "implement.md",
    TaskType.REWORK: "rework.md",
    TaskType.VERIFY: "verify.md",
}

# Artifact title per kind, in workflow order.
_ARTIFACT_TITLES: dict[str, str] = {
    "research": "Research notes",
    "plan": "Approved plan",
    "implementation": "Implementation summary",
    "verification": "Verification report",
}


@cache
def _load_prompt_template(filename: str) -> str:
    """Load a prompt template from package resources."""
    return (files("bonsai.core.prompts") / filename).read_text(encoding="utf-8")


def _artifact_section(item: WorkItem) -> str:
    own = PHASE_ARTIFACTS.get(item.phase)
    blocks = [
        f"## {title}\n{item.artifacts[kind].strip()}\n"
        for kind, title in _ARTIFACT_TITLES.items()
        if kind != own and item.artifacts.get(kind, "").strip()
    ]
    return "\n".join(blocks)


def _human_section(messages: Sequence[Message]) -> str:
    if not messages:
        return ""
    lines = [f"- ({message.created_at:%Y-%m-%d %H:%M}) {message.content}" for message in messages]
    return "## New messages from the human\n" + "\n".join(lines) + "\n"


def _conflict_section(conflict_note: str | None) -> str:
    if not conflict_note:
        return ""
    return (
        "## Integration conflict\n"
        f"{conflict_note}\n\n"
        "Rebase this branch onto the current trunk yourself, resolve the listed\n"
        "files, and make sure the result builds before reporting back.\n"
    )


def build_prompt(
    item: WorkItem,
    task_type: TaskType,
    *,
    unread: Sequence[Message] = (),
    conflict_note: str | None = None,
) -> str:
    """Render the task prompt handed to the worker for *item*."""
    template = _load_prompt_template(_TEMPLATES[task_type])
    following = next_phase(item.phase)
    return template.format(
        title=item.title,
        item_id=item.id,
        description=item.description.strip() or "No description provided.",
        artifact_section=_artifact_section(item),
        human_section=_human_section(unread),
        conflict_section=_conflict_section(conflict_note),
        next_phase=following.value if following is not None else "",
        result_contract=_load_prompt_template("result_contract.md"),
    )
