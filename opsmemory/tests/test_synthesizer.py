"""Tests for the document synthesizer: trigger, request, parsing, flowchart."""

import json

import pytest

from opsmemory.common.config import ObserverConfig
from opsmemory.common.errors import ConfigurationError, SynthesisError
from opsmemory.common.schemas import DocumentKind, Observation
from opsmemory.observer.session_state import MeetingSession
from opsmemory.observer.synthesizer import (
    ERROR_FLOWCHART,
    FALLBACK_FLOWCHART,
    GENERIC_CHANGE_SUMMARY,
    PROCEDURE_TEMPLATE,
    ROLE_TEMPLATE,
    DocumentSynthesizer,
    FreeformResult,
    StructuredResult,
    TemplateLoader,
    build_request,
    evaluate_trigger,
    parse_response,
)

from conftest import FakeLLM


def _obs(text):
    return Observation(meeting_id="m1", content=text)


STRUCTURED = json.dumps({
    "title": "Convert a qualified lead",
    "goal": "Turn a qualified lead into an opportunity",
    "whenToUse": "A lead has been qualified by sales",
    "toolsRequired": "Salesforce, Slack",
    "mainFlow": [
        "Open the lead record",
        {"step": 2, "action": "Click Convert", "detail": "Top right", "role": "SDR"},
    ],
    "decisionPoints": [{"if": "Deal above 50k", "then": "Ask the manager", "else": "Continue"}],
    "exceptions": ["Duplicate account"],
    "lowConfidenceSections": ["exceptions"],
    "changeSummary": "Added conversion steps",
})


class TestTrigger:
    def test_two_new_observations_trigger(self):
        session = MeetingSession("m1", now=0.0)
        session.append_observation(_obs("Clicked save"))
        thread = session.thread(DocumentKind.PROCEDURE)
        assert not evaluate_trigger(thread, session, 0.0).should_run

        session.append_observation(_obs("Clicked convert"))
        assert evaluate_trigger(thread, session, 0.0).should_run

    def test_transcript_needs_entries_and_chars(self):
        session = MeetingSession("m1", now=0.0)
        thread = session.thread(DocumentKind.ROLE)
        for _ in range(3):
            session.add_transcript("Ana", "ok", 0.0)
        assert not evaluate_trigger(thread, session, 0.0).ready

        session.add_transcript("Ana", "Then the manager approves anything above fifty thousand", 0.0)
        assert evaluate_trigger(thread, session, 0.0).ready

    def test_interval_gate_and_wait(self):
        session = MeetingSession("m1", now=0.0)
        thread = session.thread(DocumentKind.PROCEDURE)
        session.append_observation(_obs("Clicked save"))
        session.append_observation(_obs("Clicked convert"))
        thread.last_synthesis_at = 100.0

        check = evaluate_trigger(thread, session, 110.0, ObserverConfig())
        assert check.ready
        assert not check.due
        assert check.wait == pytest.approx(20.0)
        assert not check.should_run

        assert evaluate_trigger(thread, session, 130.0).should_run

    def test_force_bypasses_everything(self):
        session = MeetingSession("m1", now=0.0)
        thread = session.thread(DocumentKind.PROCEDURE)
        thread.last_synthesis_at = 100.0
        thread.force_next = True
        check = evaluate_trigger(thread, session, 101.0)
        assert check.forced
        assert check.should_run


class TestTemplates:
    def test_defaults(self, tmp_path):
        loader = TemplateLoader(tmp_path)
        assert loader.load(DocumentKind.PROCEDURE) == PROCEDURE_TEMPLATE
        assert TemplateLoader().load(DocumentKind.ROLE) == ROLE_TEMPLATE

    def test_external_template_wins(self, tmp_path):
        (tmp_path / "role.md").write_text("Custom role template")
        assert TemplateLoader(tmp_path).load(DocumentKind.ROLE) == "Custom role template"


class TestBuildRequest:
    def test_sections_present(self):
        prompt = build_request(
            "TEMPLATE",
            "Procedure: Lead intake",
            "# Existing doc",
            "Ana: first open the lead",
            [_obs("Clicked convert")],
            ["Is approval needed? -> Only above 50k"],
        )
        assert prompt.startswith("TEMPLATE")
        assert "# Existing doc" in prompt
        assert "Ana: first open the lead" in prompt
        assert "1. [screen/other] Clicked convert" in prompt
        assert "Is approval needed? -> Only above 50k" in prompt

    def test_new_document_marker(self):
        prompt = build_request("T", "Roles: x", None, "", [])
        assert "(none yet, start a new document)" in prompt
        assert "Answered clarifications" not in prompt


class TestParseResponse:
    def test_structured_camel_case(self):
        result = parse_response(DocumentKind.PROCEDURE, STRUCTURED, "Procedure: Lead intake")
        assert isinstance(result, StructuredResult)
        fields = result.fields
        assert fields.when_to_use == "A lead has been qualified by sales"
        assert fields.tools_required == ["Salesforce", "Slack"]
        assert [s.action for s in fields.main_flow] == ["Open the lead record", "Click Convert"]
        assert fields.main_flow[1].role == "SDR"
        assert fields.decision_points[0].otherwise == "Continue"
        assert fields.exceptions[0].case == "Duplicate account"
        assert result.change_summary == "Added conversion steps"
        assert "Procedure: Lead intake" in result.content

    def test_fenced_structured(self):
        result = parse_response(DocumentKind.PROCEDURE, f"```json\n{STRUCTURED}\n```", "P")
        assert isinstance(result, StructuredResult)

    def test_unparseable_procedure_degrades(self):
        result = parse_response(DocumentKind.PROCEDURE, "1. Open CRM\n2. Convert lead", "P")
        assert isinstance(result, FreeformResult)
        assert result.content == "1. Open CRM\n2. Convert lead"
        assert result.change_summary == GENERIC_CHANGE_SUMMARY

    def test_json_without_document_fields_degrades(self):
        result = parse_response(DocumentKind.PROCEDURE, '{"foo": "bar"}', "P")
        assert isinstance(result, FreeformResult)

    def test_role_is_freeform(self):
        result = parse_response(DocumentKind.ROLE, "## Roles Involved\n- SDR", "Roles: x")
        assert result == FreeformResult(content="## Roles Involved\n- SDR")


class TestDocumentSynthesizer:
    def test_unconfigured_raises(self):
        synth = DocumentSynthesizer(FakeLLM(available=False))
        with pytest.raises(ConfigurationError):
            synth.synthesize(DocumentKind.PROCEDURE, "P", None, "", [])

    def test_collaborator_failure_wrapped(self):
        llm = FakeLLM(text=["unused"])
        llm.fail_next = TimeoutError("read timed out")
        synth = DocumentSynthesizer(llm)
        with pytest.raises(SynthesisError) as exc:
            synth.synthesize(DocumentKind.ROLE, "R", None, "", [])
        assert isinstance(exc.value.cause, TimeoutError)

    def test_empty_response_is_failure(self):
        synth = DocumentSynthesizer(FakeLLM(text=["   "]))
        with pytest.raises(SynthesisError):
            synth.synthesize(DocumentKind.ROLE, "R", None, "", [])

    def test_synthesize_structured(self):
        llm = FakeLLM(text=[STRUCTURED])
        result = DocumentSynthesizer(llm).synthesize(
            DocumentKind.PROCEDURE, "Procedure: Lead intake", None, "", [_obs("Clicked convert")]
        )
        assert isinstance(result, StructuredResult)
        assert "Clicked convert" in llm.prompts[0]


class TestFlowchart:
    def test_code_fences_stripped(self):
        llm = FakeLLM(flowchart="```mermaid\ngraph TD\n    Start --> End\n```")
        assert DocumentSynthesizer(llm).generate_flowchart("# SOP") == "graph TD\n    Start --> End"

    def test_non_mermaid_falls_back(self):
        llm = FakeLLM(flowchart="Sorry, I cannot draw that.")
        assert DocumentSynthesizer(llm).generate_flowchart("# SOP") == FALLBACK_FLOWCHART

    def test_unavailable_falls_back(self):
        assert DocumentSynthesizer(FakeLLM(available=False)).generate_flowchart("# SOP") == FALLBACK_FLOWCHART

    def test_error_diagram_on_failure(self):
        class Broken(FakeLLM):
            def generate(self, prompt, **kwargs):
                raise ConnectionError("reset")

        assert DocumentSynthesizer(Broken()).generate_flowchart("# SOP") == ERROR_FLOWCHART
