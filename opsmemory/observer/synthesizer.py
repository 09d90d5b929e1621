"""
Document Synthesizer

Turns the observation stream of one document thread into a new document
version. Two flavors share the same shape:

- procedure: structured, decision-based document (goal, main flow, decision
  points, exceptions, assumptions, low-confidence sections) requested as JSON
- role: free-text delegation document (bottleneck roles, hand-off candidates)

The collaborator response is parsed into a tagged result: StructuredResult
when the JSON parses into document fields, FreeformResult otherwise. A
malformed response never fails the pass; it degrades to freeform content with
a generic change summary.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from ..common.config import ObserverConfig
from ..common.errors import ConfigurationError, SynthesisError
from ..common.llm_client import LLMClient
from ..common.llm_utils import parse_llm_json, strip_code_fences
from ..common.schemas import (
    DocumentFields,
    DocumentKind,
    Observation,
    render_document_markdown,
)
from .session_state import DocumentThread, MeetingSession

logger = logging.getLogger("opsmemory.observer.synthesizer")

GENERIC_CHANGE_SUMMARY = "Automatic update from observation analysis"
FLOWCHART_SOURCE_LIMIT = 8000


# ============================================================================
# Built-in templates
# ============================================================================

PROCEDURE_TEMPLATE = """You are an operations documentation assistant. You watch a live meeting in which someone demonstrates or explains a business process, and you maintain a decision-based Standard Operating Procedure for it.

Extend the existing document with what the new observations and transcript show. Keep steps that are still valid, merge duplicates, and never invent steps that were not observed or said.

Respond with a valid JSON object with these keys:
- "title": short procedure title (5-60 chars)
- "goal": what this procedure achieves
- "whenToUse": the trigger or situation for running it
- "whoPerforms": the role that performs it
- "toolsRequired": list of applications and tools used
- "mainFlow": ordered list of {"order": 1, "action": "...", "detail": "...", "role": "..."}
- "decisionPoints": list of {"condition": "...", "then": "...", "otherwise": "..."}
- "exceptions": list of {"case": "...", "handling": "..."}
- "qualityCheck": how to verify the procedure was done correctly
- "assumptions": list of things you inferred rather than saw
- "lowConfidenceSections": list of section names you are unsure about
- "changeSummary": one sentence describing what changed in this version

Return ONLY the JSON object."""

ROLE_TEMPLATE = """You are an operations analyst. From the observed meeting activity, maintain a short Markdown document about roles and delegation:

## Roles Involved
Who does what in this process.

## Bottlenecks
Steps that depend on a single person or need repeated approval.

## Delegation Candidates
Steps that could be handed off, automated, or templated, and to whom.

Extend the existing document rather than replacing it. Return only the Markdown document."""

DEFAULT_TEMPLATES = {
    DocumentKind.PROCEDURE: PROCEDURE_TEMPLATE,
    DocumentKind.ROLE: ROLE_TEMPLATE,
}


FLOWCHART_PROMPT = """Convert the following SOP (Standard Operating Procedure) document into a Mermaid.js flowchart diagram.

Rules for the flowchart:
1. Use "graph TD" for top-down flow
2. Start with a circular Start node: Start(("Start"))
3. End with a circular End node: End(("End"))
4. Use rectangular nodes for main steps: StepN["Step description"]
5. Keep step labels short (max 4-5 words)
6. Extract only the main procedural steps, not every detail
7. Apply these styles:
   - Start node: style Start fill:#1967D2,stroke:none,color:#fff
   - End node: style End fill:#34A853,stroke:none,color:#fff
   - Step nodes: style StepN fill:#292A2D,stroke:#3c4043,color:#E8EAED
8. Connect nodes with arrows: NodeA --> NodeB
9. Maximum 8-10 steps to keep the flowchart readable
10. Return ONLY the Mermaid code, no explanations or markdown code blocks

SOP Content:
"""

FALLBACK_FLOWCHART = (
    'graph TD\n'
    '    Start(("Start"))\n'
    '    style Start fill:#1967D2,stroke:none,color:#fff\n'
    '    End(("End"))\n'
    '    style End fill:#34A853,stroke:none,color:#fff\n'
    '    Start --> End'
)

ERROR_FLOWCHART = (
    'graph TD\n'
    '    Start(("Start"))\n'
    '    style Start fill:#1967D2,stroke:none,color:#fff\n'
    '    Error["Error generating flowchart"]\n'
    '    style Error fill:#EA4335,stroke:none,color:#fff\n'
    '    End(("End"))\n'
    '    style End fill:#34A853,stroke:none,color:#fff\n'
    '    Start --> Error --> End'
)


# ============================================================================
# Result types
# ============================================================================

@dataclass(frozen=True)
class StructuredResult:
    """Collaborator returned parseable document fields"""
    fields: DocumentFields
    content: str
    change_summary: str = GENERIC_CHANGE_SUMMARY


@dataclass(frozen=True)
class FreeformResult:
    """Collaborator returned free text (or JSON that did not parse)"""
    content: str
    change_summary: str = GENERIC_CHANGE_SUMMARY


SynthesisResult = Union[StructuredResult, FreeformResult]


# ============================================================================
# Trigger
# ============================================================================

@dataclass
class TriggerCheck:
    ready: bool  # enough new material
    due: bool  # interval elapsed (or forced)
    wait: float = 0.0  # seconds until due
    forced: bool = False

    @property
    def should_run(self) -> bool:
        return self.forced or (self.ready and self.due)


def evaluate_trigger(
    thread: DocumentThread,
    session: MeetingSession,
    now: float,
    config: Optional[ObserverConfig] = None,
) -> TriggerCheck:
    """
    Decide whether a thread should be synthesized now.

    Material threshold: at least ``synthesis_min_observations`` observations
    past the cursor, or at least ``transcript_min_entries`` transcript entries
    (totalling ``transcript_min_chars`` characters) since the last synthesis.
    Timing: ``synthesis_interval`` seconds since the last synthesis. A pending
    force bypasses both.
    """
    config = config or ObserverConfig()
    if thread.force_next:
        return TriggerCheck(ready=True, due=True, forced=True)

    new_observations = len(thread.observations) - thread.cursor
    transcript = session.transcript_since(thread.transcript_mark)
    transcript_chars = sum(len(e.text) for e in transcript)
    ready = (
        new_observations >= config.synthesis_min_observations
        or (
            len(transcript) >= config.transcript_min_entries
            and transcript_chars >= config.transcript_min_chars
        )
    )

    if thread.last_synthesis_at is None:
        return TriggerCheck(ready=ready, due=True)
    elapsed = now - thread.last_synthesis_at
    wait = max(0.0, config.synthesis_interval - elapsed)
    return TriggerCheck(ready=ready, due=wait <= 0, wait=wait)


# ============================================================================
# Templates & request construction
# ============================================================================

class TemplateLoader:
    """
    Resolves the synthesis template of a document kind.

    An externally configured ``<templates_dir>/<kind>.md`` wins; otherwise the
    built-in default is used.
    """

    def __init__(self, templates_dir: Optional[Path] = None):
        self._dir = Path(templates_dir) if templates_dir else None

    def load(self, kind: DocumentKind) -> str:
        if self._dir is not None:
            path = self._dir / f"{kind.value}.md"
            if path.exists():
                try:
                    text = path.read_text(encoding="utf-8").strip()
                    if text:
                        return text
                except OSError as e:
                    logger.warning("Failed to read template %s: %s", path, e)
        return DEFAULT_TEMPLATES[kind]


def build_request(
    template: str,
    title: str,
    existing_content: Optional[str],
    transcript_text: str,
    observations: Sequence[Observation],
    clarifications: Sequence[str] = (),
) -> str:
    parts = [template, "", "## Document title", title, "", "## Existing document"]
    parts.append(existing_content.strip() if existing_content else "(none yet, start a new document)")

    parts += ["", "## Meeting transcript (most recent)"]
    parts.append(transcript_text.strip() if transcript_text else "(no transcript)")

    parts += ["", "## New observations"]
    if observations:
        parts += [f"{i}. {obs.render_line()}" for i, obs in enumerate(observations, 1)]
    else:
        parts.append("(no new observations)")

    if clarifications:
        parts += ["", "## Answered clarifications"]
        parts += [f"- {c}" for c in clarifications]

    return "\n".join(parts)


# ============================================================================
# Response parsing
# ============================================================================

_KEY_ALIASES = {
    "whenToUse": "when_to_use",
    "whoPerforms": "who_performs",
    "toolsRequired": "tools_required",
    "tools": "tools_required",
    "mainFlow": "main_flow",
    "steps": "main_flow",
    "decisionPoints": "decision_points",
    "qualityCheck": "quality_check",
    "lowConfidenceSections": "low_confidence_sections",
    "changeSummary": "change_summary",
}

_STRUCTURE_KEYS = {"goal", "main_flow", "decision_points", "exceptions", "when_to_use"}


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {_KEY_ALIASES.get(k, k): v for k, v in data.items()}


def _as_list(value: Any) -> List[Any]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, list):
        return value
    return [value]


def _coerce_step(item: Any, index: int) -> Dict[str, Any]:
    if isinstance(item, dict):
        return {
            "order": item.get("order") or item.get("step") or index,
            "action": str(item.get("action") or item.get("title") or item.get("description") or ""),
            "detail": str(item.get("detail") or item.get("details") or ""),
            "role": item.get("role"),
        }
    return {"order": index, "action": str(item)}


def _coerce_decision(item: Any) -> Dict[str, Any]:
    if isinstance(item, dict):
        return {
            "condition": str(item.get("condition") or item.get("if") or ""),
            "then": str(item.get("then") or item.get("action") or ""),
            "otherwise": str(item.get("otherwise") or item.get("else") or ""),
        }
    return {"condition": str(item), "then": ""}


def _coerce_exception(item: Any) -> Dict[str, Any]:
    if isinstance(item, dict):
        return {
            "case": str(item.get("case") or item.get("exception") or item.get("scenario") or ""),
            "handling": str(item.get("handling") or item.get("resolution") or ""),
        }
    return {"case": str(item)}


def _to_fields(data: Dict[str, Any]) -> DocumentFields:
    steps = _as_list(data.get("main_flow"))
    return DocumentFields.model_validate({
        "goal": str(data.get("goal") or ""),
        "when_to_use": str(data.get("when_to_use") or ""),
        "who_performs": str(data.get("who_performs") or ""),
        "tools_required": [str(t) for t in _as_list(data.get("tools_required"))],
        "main_flow": [_coerce_step(s, i) for i, s in enumerate(steps, 1)],
        "decision_points": [_coerce_decision(d) for d in _as_list(data.get("decision_points"))],
        "exceptions": [_coerce_exception(e) for e in _as_list(data.get("exceptions"))],
        "quality_check": str(data.get("quality_check") or ""),
        "assumptions": [str(a) for a in _as_list(data.get("assumptions"))],
        "low_confidence_sections": [str(s) for s in _as_list(data.get("low_confidence_sections"))],
    })


def parse_response(kind: DocumentKind, raw: str, title: str) -> SynthesisResult:
    """
    Parse a collaborator response into a tagged result.

    Only the procedure flavor is asked for JSON; a procedure response that is
    not a JSON object with document fields falls back to freeform.
    """
    text = (raw or "").strip()
    if kind != DocumentKind.PROCEDURE:
        return FreeformResult(content=strip_code_fences(text) if text.startswith("```") else text)

    data = _normalize_keys(parse_llm_json(text))
    if not data or not (_STRUCTURE_KEYS & data.keys()):
        logger.info("Procedure response was not structured; storing as freeform")
        return FreeformResult(content=text)

    try:
        fields = _to_fields(data)
    except (ValidationError, TypeError, ValueError) as e:
        logger.warning("Structured fields failed validation, storing as freeform: %s", e)
        return FreeformResult(content=text)

    summary = str(data.get("change_summary") or "").strip() or GENERIC_CHANGE_SUMMARY
    content = render_document_markdown(title, fields)
    return StructuredResult(fields=fields, content=content, change_summary=summary)


# ============================================================================
# Synthesizer
# ============================================================================

class DocumentSynthesizer:
    """Calls the synthesis collaborator for one document thread"""

    def __init__(
        self,
        llm: LLMClient,
        templates: Optional[TemplateLoader] = None,
        max_tokens: int = 4000,
        timeout: float = 60.0,
    ):
        self._llm = llm
        self._templates = templates or TemplateLoader()
        self._max_tokens = max_tokens
        self._timeout = timeout

    @property
    def is_available(self) -> bool:
        return self._llm.is_available

    def synthesize(
        self,
        kind: DocumentKind,
        title: str,
        existing_content: Optional[str],
        transcript_text: str,
        observations: Sequence[Observation],
        clarifications: Sequence[str] = (),
    ) -> SynthesisResult:
        """
        Produce the next version of a document.

        Raises:
            ConfigurationError: no collaborator credential
            SynthesisError: collaborator failed or returned nothing
        """
        if not self.is_available:
            raise ConfigurationError("LLM provider not configured; cannot synthesize documents")

        prompt = build_request(
            self._templates.load(kind),
            title,
            existing_content,
            transcript_text,
            observations,
            clarifications,
        )
        try:
            raw = self._llm.generate(prompt, max_tokens=self._max_tokens, timeout=self._timeout)
        except ConfigurationError:
            raise
        except Exception as e:
            raise SynthesisError(f"{kind.value} synthesis failed: {e}", cause=e) from e

        if not raw or not raw.strip():
            raise SynthesisError(f"{kind.value} synthesis returned an empty response")
        return parse_response(kind, raw, title)

    def generate_flowchart(self, content: str) -> str:
        """
        Best-effort Mermaid flowchart for a procedure document.

        Never raises: a missing collaborator or a response that is not a
        Mermaid graph yields the Start -> End fallback, any error yields the
        error diagram.
        """
        if not self.is_available or not content:
            return FALLBACK_FLOWCHART
        try:
            raw = self._llm.generate(
                FLOWCHART_PROMPT + content[:FLOWCHART_SOURCE_LIMIT] + "\n\nGenerate the Mermaid flowchart code:",
                max_tokens=1000,
                timeout=self._timeout,
            )
        except Exception as e:
            logger.warning("Flowchart generation failed: %s", e)
            return ERROR_FLOWCHART

        code = strip_code_fences(raw)
        if "graph" not in code and "flowchart" not in code:
            return FALLBACK_FLOWCHART
        return code
