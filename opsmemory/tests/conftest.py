"""Shared fixtures: controllable clock, scripted LLM collaborator, store."""

from typing import List, Optional

import pytest

from opsmemory.common.config import ObserverConfig
from opsmemory.observer.document_store import DocumentStore


class FakeClock:
    """Monotonic clock the tests advance by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLLM:
    """
    Stand-in for LLMClient.

    ``vision`` responses are returned in order by describe_image, ``text``
    responses by generate. The last response repeats once the script runs out.
    """

    def __init__(
        self,
        vision: Optional[List[str]] = None,
        text: Optional[List[str]] = None,
        available: bool = True,
        flowchart: str = "graph TD\n    Start --> End",
    ):
        self.vision = list(vision or [])
        self.text = list(text or [])
        self.available = available
        self.flowchart = flowchart
        self.prompts: List[str] = []
        self.image_calls = 0
        self.mime_types: List[str] = []
        self.fail_next: Optional[Exception] = None

    @property
    def is_available(self) -> bool:
        return self.available

    def _pop(self, script: List[str]) -> str:
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error
        if len(script) > 1:
            return script.pop(0)
        return script[0] if script else ""

    def describe_image(self, image_b64, prompt, *, mime_type="image/jpeg", max_tokens=400, timeout=60.0):
        self.image_calls += 1
        self.mime_types.append(mime_type)
        return self._pop(self.vision)

    def generate(self, prompt, *, system=None, max_tokens=2000, timeout=60.0):
        if prompt.startswith("Convert the following SOP"):
            return self.flowchart
        self.prompts.append(prompt)
        return self._pop(self.text)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def observer_config():
    return ObserverConfig(templates_dir="")


@pytest.fixture
def store():
    return DocumentStore()
