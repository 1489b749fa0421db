import json

import pytest

from moment_studio.config import settings
from moment_studio.director.agents import (
    InstructionRewriter,
    LLMCreativeValidator,
    LLMPlanner,
    LLMSceneContextBuilder,
    LLMSequenceRewriter,
    LLMTechnicalValidator,
    PlanningContext,
    TranscriptPlanner,
    get_director_agents,
    parse_json_block,
)
from moment_studio.errors import PlanValidationError
from moment_studio.providers import EchoLLMProvider
from moment_studio.sessions.models import CREATIVE_DIMENSIONS, Highlight, Moment, Plan, TranscriptCue


def make_moment(cues=None):
    return Moment(
        index=2,
        highlight=Highlight(reference="ep7", title="The Bridge", start_sec=10, end_sec=40, summary="A duel."),
        cues=cues or [],
    )


PLAN_JSON = """Here is the plan:
```json
{"sequences": [
  {"type": "establishing_shot", "durationSec": 3, "backgroundDescription": "Rope bridge"},
  {"type": "action_closeup", "durationSec": 2, "subject": "fraying rope"}
]}
```
"""


def test_parse_json_block_variants():
    assert parse_json_block('{"a": 1}') == {"a": 1}
    assert parse_json_block('```json\n{"a": 2}\n```') == {"a": 2}
    assert parse_json_block('Sure! {"a": 3} hope that helps') == {"a": 3}
    assert parse_json_block("no json here") is None
    assert parse_json_block("") is None


@pytest.mark.asyncio
async def test_llm_planner_parses_fenced_plan():
    provider = EchoLLMProvider(responses=[PLAN_JSON])
    planner = LLMPlanner(provider)
    moment = make_moment([TranscriptCue(start_sec=12, end_sec=14, speaker="Vex", text="Cut it!")])

    plan = await planner.plan(PlanningContext(moment=moment, direction="Make it tense.", scene_context={"mood": "grim"}))

    assert plan.moment_title == "The Bridge"
    assert [seq.type for seq in plan.sequences] == ["establishing_shot", "close_up"]
    prompt = provider.prompts[0]
    assert "## Direction\nMake it tense." in prompt
    assert "## Scene Context" in prompt
    assert "Vex: Cut it!" in prompt


@pytest.mark.asyncio
async def test_llm_planner_rejects_unparseable_output():
    planner = LLMPlanner(EchoLLMProvider(responses=["I cannot plan this."]))

    with pytest.raises(PlanValidationError):
        await planner.plan(PlanningContext(moment=make_moment(), direction="", scene_context=None))


@pytest.mark.asyncio
async def test_llm_technical_validator_reads_fixes_and_auto_approves_garbage():
    plan = Plan.from_payload({"sequences": [{"type": "impact", "durationSec": 0.2}]})
    provider = EchoLLMProvider(
        responses=[
            '{"approved": false, "fixes": [{"sequenceOrder": 1, "field": "durationSec", "suggestedValue": 1}]}',
            "not json",
            '{"approved": "maybe", "fixes": "none"}',
        ]
    )
    validator = LLMTechnicalValidator(provider)

    result = await validator.validate(plan)
    assert result.approved is False
    assert result.fixes[0].suggested_value == 1

    assert (await validator.validate(plan)).approved is True
    assert (await validator.validate(plan)).approved is True


@pytest.mark.asyncio
async def test_llm_creative_validator_counts_passes_and_auto_approves_garbage():
    plan = Plan.from_payload({"sequences": [{"type": "impact", "durationSec": 1}]})
    provider = EchoLLMProvider(
        responses=[
            '{"dimensions": {"cinematicPacing": {"pass": true}, "characterFidelity": {"pass": false, '
            '"feedback": "Vex looks different"}, "sceneCoherence": {"pass": true}}}',
            "```json\n{broken\n```",
        ]
    )
    validator = LLMCreativeValidator(provider)

    result = await validator.review(plan, None, [{"name": "Vex"}])
    assert result.pass_count == 2
    assert [name for name, _dim in result.failed_dimensions()] == ["characterFidelity"]
    assert "## Character Cards" in provider.prompts[0]

    fallback = await validator.review(plan, None, [])
    assert fallback.pass_count == len(CREATIVE_DIMENSIONS)


@pytest.mark.asyncio
async def test_llm_scene_builder_skips_empty_transcripts():
    provider = EchoLLMProvider(responses=['{"setting": "bridge"}', "[1, 2]"])
    builder = LLMSceneContextBuilder(provider)

    assert await builder.build(make_moment()) is None
    assert provider.prompts == []

    moment = make_moment([TranscriptCue(start_sec=12, end_sec=14, speaker="Vex", text="Cut it!")])
    assert await builder.build(moment) == {"setting": "bridge"}
    assert await builder.build(moment) is None


@pytest.mark.asyncio
async def test_transcript_planner_falls_back_to_narration():
    plan = await TranscriptPlanner().plan(PlanningContext(moment=make_moment(), direction="", scene_context=None))

    assert [seq.type for seq in plan.sequences] == ["establishing_shot", "dm_description"]
    assert plan.sequences[1].lines == ["A duel."]
    assert plan.sequences[1].reuse_background_from == 1


def test_director_agents_follow_provider_mode(monkeypatch):
    monkeypatch.setattr(settings, "llm_provider_mode", "mock")
    assert isinstance(get_director_agents().planner, TranscriptPlanner)

    monkeypatch.setattr(settings, "openrouter_api_key", None)
    assert isinstance(get_director_agents("openrouter").planner, TranscriptPlanner)

    monkeypatch.setattr(settings, "openrouter_api_key", "test-key")
    assert isinstance(get_director_agents("openrouter").planner, LLMPlanner)
    assert isinstance(get_director_agents("openrouter").rewriter, LLMSequenceRewriter)


@pytest.mark.asyncio
async def test_llm_rewriter_unwraps_sequence_and_rejects_prose():
    plan = Plan.from_payload(json.loads(PLAN_JSON.split("```json")[1].split("```")[0]))
    target = plan.sequences[1]
    provider = EchoLLMProvider(
        responses=[
            '```json\n{"sequence": {"type": "close_up", "durationSec": 3, "subject": "snapping rope"}}\n```',
            "Sorry, I would rather not.",
        ]
    )
    rewriter = LLMSequenceRewriter(provider)

    payload = await rewriter.rewrite(plan, target, "Show the rope snapping", {"mood": "grim"})

    assert payload == {"type": "close_up", "durationSec": 3, "subject": "snapping rope"}
    assert "## User Feedback\nShow the rope snapping" in provider.prompts[0]
    assert "order 2 (close_up)" in provider.prompts[0]
    with pytest.raises(PlanValidationError):
        await rewriter.rewrite(plan, target, "again", None)


@pytest.mark.asyncio
async def test_instruction_rewriter_replaces_visual_notes():
    plan = Plan.from_payload(json.loads(PLAN_JSON.split("```json")[1].split("```")[0]))

    payload = await InstructionRewriter().rewrite(plan, plan.sequences[0], "  Fog over the gorge ", None)

    assert payload["visualNotes"] == "Fog over the gorge"
    assert payload["backgroundDescription"] == "Rope bridge"
    assert "assets" not in payload
