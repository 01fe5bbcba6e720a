"""Render a work item into deterministic GitHub issue markdown."""

from __future__ import annotations

from handoff_bot.control_plane.models.contracts import WorkItem

MARKER_TEMPLATE = "<!-- handoff-bot:work-item:{work_item_id} -->"


def issue_marker(work_item_id: str) -> str:
    return MARKER_TEMPLATE.format(work_item_id=work_item_id)


def issue_labels(item: WorkItem) -> list[str]:
    labels = [label.strip() for label in item.labels if label.strip()]
    if item.priority.strip():
        priority_label = f"priority:{item.priority.strip()}"
        if priority_label not in labels:
            labels.append(priority_label)
    return labels


def _section(heading: str, value: str) -> str:
    return f"### {heading}\n{value.strip() or '_No response_'}"


def render_issue_body(item: WorkItem) -> str:
    criteria = "\n".join(f"- [ ] {line.strip()}" for line in item.acceptance_criteria if line.strip())
    chunks = []
    if item.body.strip():
        chunks.append(item.body.strip())
    chunks.extend(
        [
            _section("Problem", item.problem),
            _section("Scope", item.scope),
            _section("Acceptance criteria", criteria),
            _section("Priority", item.priority),
        ]
    )
    chunks.append(f"Work item: `{item.short_id}`\n\n{issue_marker(item.id)}")
    return "\n\n".join(chunks).strip() + "\n"
