"""Prompt text and message builders for the extraction and organization oracles."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Mapping, Sequence

EXTRACTION_TOOL_NAME = "extract_entities"
EXTRACTION_TOOL_DESCRIPTION = (
    "Record the tasks, decisions, and insights found in the note. Call this tool exactly once."
)
EXTRACTION_PROMPT_VERSION = "v1"

ORGANIZATION_TOOL_NAME = "organize_entities"
ORGANIZATION_TOOL_DESCRIPTION = (
    "Assign extracted entities to projects, epics, and assignees, and flag duplicates. "
    "Call this tool exactly once."
)
ORGANIZATION_PROMPT_VERSION = "v1"

EXTRACTION_SYSTEM_PROMPT = """
You turn raw notes from a project team into structured entities.

Entity types:
- task: work to be done. Status is always "captured". Attributes: category
  (feature, bug_fix, improvement, chore, refactor, story), owner (a name only if
  one is stated), priority (critical, high, medium, low), complexity (small,
  medium, large). Leave an attribute null unless the note supports it.
- decision: a choice made or still open. Status is "decided" or "pending".
  Attributes: options, chosen, rationale, decided_by.
- insight: an observation, data point, or idea. Status is always "captured".
  Attributes: sentiment, data_points, feasibility.

Prefer a few rich entities over many thin ones. A purely conversational note
yields an empty entity list.

For every entity give at least one evidence quote copied from the note, with
character offsets when you can. Give a confidence between 0 and 1 for type,
content, status and every populated attribute in field_confidence, and set the
entity confidence to the lowest of those. Add short lowercase topic tags.

Relationships reference entities by their 0-based position in your output:
derived_from when one follows from another, related_to otherwise.
""".strip()

ORGANIZATION_SYSTEM_PROMPT = """
You organize freshly extracted entities into an existing project structure.

For each entity (by its 0-based index) report:
- the best matching project id from the active projects, or null, with a
  confidence and a reason; use confidence 0 when nothing fits at all;
- the best matching epic id within that project, or null, same rules;
- duplicate candidates among the recent entities with similarity of at least
  0.7, each with a reason;
- an assignee id from the known users when the entity names an owner, or null;
  assignee confidence is null when no owner is mentioned.

Only use ids that appear in the input. When several entities share a theme no
existing epic covers, suggest an epic under an existing project. When they
belong to no existing project, suggest a new project. Each suggestion lists the
entity indices it would contain, a confidence, and a reason.
""".strip()


def _json_block(value: Any) -> list[str]:
    return ["```json", json.dumps(value, indent=2, default=str), "```"]


def build_extraction_message(
    *,
    content: str,
    source: str,
    captured_at: datetime | None,
    source_meta: Mapping[str, Any] | None,
) -> str:
    """Render the user message for one extraction call."""
    lines = ["## Raw Note", f"Source: {source}"]
    if captured_at is not None:
        lines.append(f"Captured at: {captured_at.isoformat()}")
    if source_meta:
        lines.append(f"Source metadata: {json.dumps(source_meta, default=str)}")
    lines.extend(["", "Content:", content])
    return "\n".join(lines)


def build_organization_message(
    *,
    entities: Sequence[Mapping[str, Any]],
    projects: Sequence[Mapping[str, Any]],
    recent_entities: Sequence[Mapping[str, Any]],
    users: Sequence[Mapping[str, Any]],
    source: str,
    source_meta: Mapping[str, Any] | None,
) -> str:
    """Render the user message for one organization call."""
    lines = ["## Extracted Entities", *_json_block(list(entities)), ""]
    lines.extend(["## Active Projects", *_json_block(list(projects)), ""])
    lines.extend(
        ["## Recent Entities (for duplicate detection)", *_json_block(list(recent_entities)), ""]
    )
    lines.extend(["## Known Users", *_json_block(list(users)), ""])
    lines.extend(["## Source Context", f"- Source: {source}"])
    if source_meta:
        lines.append(f"- Source metadata: {json.dumps(source_meta, default=str)}")
    return "\n".join(lines)


def build_retry_message(
    user_message: str, tool_name: str, issues: Sequence[Mapping[str, Any]]
) -> str:
    """Append validation feedback to the original message for the single retry."""
    return "\n".join(
        [
            user_message,
            "",
            "## Validation Issues",
            f"The previous tool output did not match the schema. "
            f"Fix the output and call {tool_name} again.",
            *_json_block(list(issues)),
        ]
    )
