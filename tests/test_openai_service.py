"""Tests for ideabot.services.openai_service: parsing, normalisation and fallback."""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from openai import OpenAIError

from ideabot.errors import EnrichmentError
from ideabot.models import Scope, StructuredNote
from ideabot.services.openai_service import (
    EnrichmentGateway,
    normalize_note,
    note_to_payload,
    parse_note,
    strip_fences,
)


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def gateway_returning(*contents):
    client = MagicMock()
    client.chat.completions.create.side_effect = [completion(c) for c in contents]
    return EnrichmentGateway(client=client, model="test-model"), client


GOOD_JSON = json.dumps({
    "title": "Fleet auto-assign",
    "summary": "Auto-assign idle fleets.",
    "gameplayImpact": "Less micromanagement.",
    "scope": {"client": ["Patrol tab", "UI"], "server": [], "database": ["fleet_patrol table"]},
    "implementationNotes": ["Route planner job", "  "],
    "risks": ["Server load"],
    "telemetry": [],
    "antiCheat": ["Validate ownership"],
    "dependencies": ["Fleet service"],
    "openQuestions": ["Q1?", "Q2?", "Q3?", "Q4?"],
    "tags": ["Fleet", "UI"],
})


class TestStripFences:
    def test_plain_json_untouched(self):
        assert strip_fences('{"a": 1}') == '{"a": 1}'

    def test_json_fence_removed(self):
        assert strip_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_bare_fence_removed(self):
        assert strip_fences('```\n{"a": 1}\n```') == '{"a": 1}'


class TestParseNote:
    def test_maps_camel_case_fields(self):
        note = parse_note(GOOD_JSON)
        assert note.gameplay_impact == "Less micromanagement."
        assert note.anti_cheat == ["Validate ownership"]
        assert note.scope.database == ["fleet_patrol table"]

    @pytest.mark.parametrize("content", ["not json", "[1, 2]", "", "```json\n{oops\n```"])
    def test_malformed_is_none(self, content):
        assert parse_note(content) is None

    def test_non_list_fields_become_empty(self):
        note = parse_note('{"risks": "just a string", "scope": "nope"}')
        assert note.risks == []
        assert note.scope.client == []


class TestNormalizeNote:
    def test_empty_note_from_raw_text(self):
        raw = "x" * 120
        note = normalize_note(None, raw)
        assert note.title == "x" * 80
        assert note.summary == raw
        assert note.scope.client == ["None"]
        assert note.scope.server == ["None"]
        assert note.scope.database == ["No changes"]
        for field in ("implementation_notes", "risks", "telemetry", "anti_cheat", "dependencies"):
            assert getattr(note, field) == ["None"]
        assert note.open_questions == []
        assert note.tags == []

    def test_placeholders_are_dropped(self):
        note = normalize_note(StructuredNote(
            scope=Scope(client=["UI", "3D assets"], server=["API/WS endpoint", "POST /x"],
                        database=["Schema change?"]),
        ), "raw")
        assert note.scope.client == ["None"]
        assert note.scope.server == ["POST /x"]
        assert note.scope.database == ["No changes"]

    def test_open_questions_capped_at_three(self):
        note = normalize_note(parse_note(GOOD_JSON), "raw")
        assert note.open_questions == ["Q1?", "Q2?", "Q3?"]

    def test_tags_keep_ui(self):
        note = normalize_note(parse_note(GOOD_JSON), "raw")
        assert note.tags == ["Fleet", "UI"]

    def test_normalize_is_stable(self):
        once = normalize_note(parse_note(GOOD_JSON), "raw")
        assert normalize_note(once, "raw") == once

    def test_payload_uses_prompt_keys(self):
        payload = note_to_payload(normalize_note(None, "raw"))
        assert payload["antiCheat"] == ["None"]
        assert payload["scope"]["database"] == ["No changes"]


class TestEnrichmentGateway:
    async def test_first_pass_success(self):
        gw, client = gateway_returning(GOOD_JSON)
        note = await gw.first_pass("auto-assign fleets", "@kim")
        assert note.title == "Fleet auto-assign"
        assert note.scope.client == ["Patrol tab"]
        assert note.implementation_notes == ["Route planner job"]
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "auto-assign fleets" in kwargs["messages"][1]["content"]

    async def test_retries_once_after_malformed(self):
        gw, client = gateway_returning("garbage", GOOD_JSON)
        note = await gw.first_pass("auto-assign fleets", "@kim")
        assert note.title == "Fleet auto-assign"
        assert client.chat.completions.create.call_count == 2

    async def test_two_malformed_without_previous_falls_back_to_raw(self):
        raw = "A very long idea about letting players rename their capital ships with custom fonts and colours"
        gw, client = gateway_returning("garbage", "still garbage")
        note = await gw.first_pass(raw, "@kim")
        assert note.title == raw[:80]
        assert note.summary == raw
        assert note.scope.client == ["None"]
        assert note.scope.database == ["No changes"]
        assert note.risks == ["None"]
        assert client.chat.completions.create.call_count == 2

    async def test_refine_falls_back_to_previous(self):
        previous = normalize_note(parse_note(GOOD_JSON), "raw")
        gw, _ = gateway_returning("nope", "nope")
        note = await gw.refine("raw", "Q1: a?\nA1: b", "@kim", previous)
        assert note == previous

    async def test_refine_prompt_carries_previous_and_answers(self):
        previous = normalize_note(parse_note(GOOD_JSON), "raw")
        gw, client = gateway_returning(GOOD_JSON)
        await gw.refine("raw idea", "Q1: cross borders?\nA1: no", "@kim", previous)
        prompt = client.chat.completions.create.call_args.kwargs["messages"][1]["content"]
        assert "A1: no" in prompt
        assert '"gameplayImpact": "Less micromanagement."' in prompt

    async def test_transport_error_raises_enrichment_error(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = OpenAIError("connection reset")
        gw = EnrichmentGateway(client=client)
        with pytest.raises(EnrichmentError):
            await gw.first_pass("idea", "@kim")
