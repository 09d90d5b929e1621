"""
Screen Analyzer: the "describe this capture" step.

Sends an accepted screen capture to the vision collaborator with a fixed
analysis policy and returns the free-text description. The description is
what the similarity filter, the classifier and the clarification extractor
work on.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..common.errors import ConfigurationError, SynthesisError
from ..common.llm_client import LLMClient

logger = logging.getLogger("opsmemory.observer.screen_analyzer")

IDLE_MARKER = "[Observing meeting]"

ANALYSIS_POLICY = """You are an operations assistant watching a shared screen during a video meeting. Analyze this screen capture.

If you see:
- Code: briefly describe what the code does
- Documents: summarize key points
- Diagrams/Charts: describe what they show
- Presentations: extract main points
- UI/Applications: describe what the user is doing in the application

For every concrete step the user performs, write one line:
ACTION: <what the user did> | app=<application> | page=<screen or page> | from=<old value> | to=<new value> | repeated=<yes|no>
Omit any field you cannot see.

If a step is ambiguous and a human should confirm it, write one line:
QUESTION: [mandatory_optional|condition|approval|exception|tool] <question>

Keep the whole response under 100 words.
If it's just a video call interface with no shared content, respond with just: "[Observing meeting]\""""


@dataclass
class AnalysisResult:
    """Result of one screen analysis"""
    text: str
    is_idle: bool = False


def strip_data_url(payload: str) -> str:
    """Accept both raw base64 and ``data:image/...;base64,`` payloads"""
    if payload.startswith("data:") and "," in payload:
        return payload.split(",", 1)[1]
    return payload


def mime_from_data_url(payload: str, default: str = "image/jpeg") -> str:
    if payload.startswith("data:") and ";" in payload:
        return payload[5:payload.index(";")] or default
    return default


class ScreenAnalyzer:
    """
    Vision-based capture analysis.

    Raises ConfigurationError when no collaborator credential is present and
    SynthesisError for any transient collaborator failure.
    """

    def __init__(self, llm: LLMClient, max_tokens: int = 400, timeout: float = 60.0):
        self._llm = llm
        self._max_tokens = max_tokens
        self._timeout = timeout

    @property
    def is_available(self) -> bool:
        return self._llm.is_available

    def analyze(self, payload: str, mime_type: Optional[str] = None) -> AnalysisResult:
        """
        Describe a capture.

        Args:
            payload: base64 image, optionally as a data URL
            mime_type: image MIME type (defaults to the data URL's, then JPEG)

        Returns:
            AnalysisResult; ``is_idle`` when nothing is being shared
        """
        if not self.is_available:
            raise ConfigurationError("LLM provider not configured; cannot analyze captures")

        mime = mime_type or mime_from_data_url(payload)
        try:
            text = self._llm.describe_image(
                strip_data_url(payload),
                ANALYSIS_POLICY,
                mime_type=mime,
                max_tokens=self._max_tokens,
                timeout=self._timeout,
            )
        except ConfigurationError:
            raise
        except Exception as e:
            raise SynthesisError(f"Screen analysis failed: {e}", cause=e) from e

        text = (text or "").strip()
        if not text or text.strip('"') == IDLE_MARKER:
            return AnalysisResult(text=IDLE_MARKER, is_idle=True)
        return AnalysisResult(text=text)
