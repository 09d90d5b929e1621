"""
Observation Validator & Classifier

Decides whether a candidate text describes an actionable step and assigns it
a category. Text that fails validation is discarded: never stored, never
counted toward synthesis thresholds.

Screen-derived text arrives as analysis lines of the form::

    ACTION: Clicked "Convert" on the lead | app=Salesforce | page=Lead Detail | from=Open | to=Qualified | repeated=yes

Transcript-derived text is accepted only if it sounds procedural, and is
tagged as a lower-confidence "document" observation.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..common.schemas import (
    ClarificationCategory,
    Observation,
    ObservationCategory,
    ObservationSource,
)

ACTION_MARKER_RE = re.compile(r"ACTION:\s*(.+)", re.IGNORECASE)
QUESTION_MARKER_RE = re.compile(r"QUESTION:\s*(?:\[([a-z_]+)\]\s*)?(.+)", re.IGNORECASE)

MIN_ACTION_CONTENT = 5
TRANSCRIPT_CONFIDENCE = 0.5

ACTION_VERBS = [
    "click", "select", "enter", "type", "configure", "navigate", "open", "close",
    "save", "submit", "fill", "upload", "download", "create", "delete", "remove",
    "edit", "update", "change", "set", "drag", "drop", "scroll", "search",
    "filter", "sort", "copy", "paste", "run", "execute", "export", "import",
    "log", "sign", "approve", "reject", "assign", "check", "toggle", "switch",
    "press", "choose", "add", "send", "attach", "convert", "review", "mark",
]
_ACTION_VERB_RE = re.compile(r"\b(?:" + "|".join(ACTION_VERBS) + r")\w*\b", re.IGNORECASE)

# Fixed priority order: first match wins.
CATEGORY_KEYWORDS: List[Tuple[ObservationCategory, List[str]]] = [
    (ObservationCategory.CODE, [
        "code", "function", "terminal", "script", "editor", "ide", "commit",
        "repository", "console", "compile", "debug", "sql", "query",
    ]),
    (ObservationCategory.DIAGRAM, [
        "diagram", "chart", "graph", "flowchart", "whiteboard", "architecture",
    ]),
    (ObservationCategory.PRESENTATION, [
        "slide", "presentation", "deck", "powerpoint", "keynote",
    ]),
    (ObservationCategory.DOCUMENT, [
        "document", "spreadsheet", "excel", "sheet", "word", "pdf", "report",
        "page", "wiki", "notion",
    ]),
    (ObservationCategory.UI, [
        "button", "menu", "form", "field", "dropdown", "tab", "dialog", "modal",
        "checkbox", "screen", "window", "link", "icon", "dashboard", "settings",
    ]),
]

PROCEDURAL_KEYWORDS = [
    "step", "first", "then", "next", "after that", "afterwards", "finally",
    "click", "configure", "select", "enter", "open", "navigate", "make sure",
    "always", "never", "before", "process", "procedure", "submit", "approve",
]
_PROCEDURAL_RE = re.compile(r"\b(?:" + "|".join(re.escape(k) for k in PROCEDURAL_KEYWORDS) + r")\b", re.IGNORECASE)

_FIELD_ALIASES = {
    "app": "app",
    "application": "app",
    "page": "page",
    "action": "action",
    "from": "from_value",
    "before": "from_value",
    "to": "to_value",
    "after": "to_value",
    "repeated": "is_repeated",
}


@dataclass
class ActionCandidate:
    """One ACTION line split into free text and structured fields"""
    content: str
    fields: Dict[str, str]


def _split_fields(body: str) -> ActionCandidate:
    parts = [p.strip() for p in body.split("|")]
    content = parts[0]
    fields: Dict[str, str] = {}
    for part in parts[1:]:
        if "=" not in part:
            content = f"{content} {part}".strip()
            continue
        key, _, value = part.partition("=")
        key = _FIELD_ALIASES.get(key.strip().lower())
        if key and value.strip():
            fields[key] = value.strip()
    return ActionCandidate(content=content, fields=fields)


def extract_action_candidates(analysis: str) -> List[ActionCandidate]:
    """Pull every ACTION line out of an analysis response."""
    candidates = []
    for line in (analysis or "").splitlines():
        match = ACTION_MARKER_RE.search(line)
        if match:
            candidates.append(_split_fields(match.group(1).strip()))
    return candidates


def extract_questions(analysis: str) -> List[Tuple[ClarificationCategory, str]]:
    """
    Pull ``QUESTION: [category] text`` lines out of an analysis response.

    Unknown or missing categories fall back to ``condition``.
    """
    questions = []
    for line in (analysis or "").splitlines():
        match = QUESTION_MARKER_RE.search(line)
        if not match:
            continue
        text = match.group(2).strip()
        if not text:
            continue
        try:
            category = ClarificationCategory((match.group(1) or "").lower())
        except ValueError:
            category = ClarificationCategory.CONDITION
        questions.append((category, text))
    return questions


def is_valid_action(content: str) -> bool:
    """Content must be at least 5 characters and contain an action verb."""
    content = (content or "").strip()
    if len(content) < MIN_ACTION_CONTENT:
        return False
    return _ACTION_VERB_RE.search(content) is not None


def classify_text(text: str) -> ObservationCategory:
    lowered = text.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        for keyword in keywords:
            if re.search(r"\b" + re.escape(keyword) + r"s?\b", lowered):
                return category
    return ObservationCategory.OTHER


def is_procedural(text: str) -> bool:
    return _PROCEDURAL_RE.search(text or "") is not None


class ObservationClassifier:
    """
    Turns analysis text and transcript lines into Observations.

    Stateless; one instance is shared across meetings.
    """

    def classify_screen(self, meeting_id: str, analysis: str) -> List[Observation]:
        """
        Validate and classify every ACTION line of a screen analysis.

        Returns an empty list when nothing actionable was described.
        """
        observations = []
        for candidate in extract_action_candidates(analysis):
            if not is_valid_action(candidate.content):
                continue

            fields = candidate.fields
            observations.append(Observation(
                meeting_id=meeting_id,
                content=candidate.content,
                category=classify_text(candidate.content),
                source=ObservationSource.SCREEN,
                app=fields.get("app"),
                page=fields.get("page"),
                action=fields.get("action"),
                from_value=fields.get("from_value"),
                to_value=fields.get("to_value"),
                is_repeated=fields.get("is_repeated", "").lower() in ("yes", "true", "1"),
            ))
        return observations

    def classify_transcript(self, meeting_id: str, speaker: str, text: str) -> Optional[Observation]:
        """Accept a transcript line as an observation only if it is procedural."""
        text = (text or "").strip()
        if not text or not is_procedural(text):
            return None

        return Observation(
            meeting_id=meeting_id,
            content=f"{speaker}: {text}" if speaker else text,
            category=ObservationCategory.DOCUMENT,
            source=ObservationSource.TRANSCRIPT,
            confidence=TRANSCRIPT_CONFIDENCE,
        )
