"""
Document Text Templates

Renders structured DocumentFields to Markdown. The rendered text is what gets
stored as a version's content and broadcast to meeting clients.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .documents import DocumentFields


DOCUMENT_TEMPLATE = """# {title}

## Goal
{goal}

## When to Use
{when_to_use}

## Who Performs
{who_performs}

## Tools Required
{tools}

## Main Flow
{main_flow}

## Decision Points
{decision_points}

## Exceptions
{exceptions}

## Quality Check
{quality_check}

## Assumptions
{assumptions}

## Needs Confirmation
{low_confidence}
"""


def _format_list(items: list, empty: str = "- (none documented)") -> str:
    if not items:
        return empty
    return "\n".join(f"- {item}" for item in items)


def _format_main_flow(steps: list) -> str:
    """Format ordered steps, keeping the order the collaborator assigned"""
    if not steps:
        return "1. (no steps captured yet)"

    lines = []
    for step in sorted(steps, key=lambda s: s.order):
        line = f"{step.order}. {step.action}"
        if step.role:
            line += f" *({step.role})*"
        lines.append(line)
        if step.detail:
            lines.append(f"   {step.detail}")
    return "\n".join(lines)


def _format_decision_points(points: list) -> str:
    if not points:
        return "- (none documented)"

    lines = []
    for p in points:
        line = f"- If {p.condition}, then {p.then}"
        if p.otherwise:
            line += f"; otherwise {p.otherwise}"
        lines.append(line)
    return "\n".join(lines)


def _format_exceptions(exceptions: list) -> str:
    if not exceptions:
        return "- (none documented)"

    lines = []
    for e in exceptions:
        handling = e.handling or "TBD"
        lines.append(f"- {e.case}\n  Handling: {handling}")
    return "\n".join(lines)


def render_document_markdown(title: str, fields: "DocumentFields") -> str:
    """
    Render structured document fields to Markdown.

    Sections with no content are still rendered with a placeholder so that
    readers can see what has not been captured yet.
    """
    text = DOCUMENT_TEMPLATE.format(
        title=title,
        goal=fields.goal or "(not documented)",
        when_to_use=fields.when_to_use or "(not documented)",
        who_performs=fields.who_performs or "(not documented)",
        tools=_format_list(fields.tools_required),
        main_flow=_format_main_flow(fields.main_flow),
        decision_points=_format_decision_points(fields.decision_points),
        exceptions=_format_exceptions(fields.exceptions),
        quality_check=fields.quality_check or "(not documented)",
        assumptions=_format_list(fields.assumptions),
        low_confidence=_format_list(fields.low_confidence_sections, empty="- (nothing flagged)"),
    )

    while "\n\n\n" in text:
        text = text.replace("\n\n\n", "\n\n")

    return text.strip()
