"""Director collaborators: planner, technical/creative validators, scene context.

Each collaborator has an LLM-backed implementation and a deterministic one
used when no LLM provider is configured.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import ValidationError

from ..config import settings
from ..errors import PlanValidationError
from ..instrumentation import get_logger
from ..providers import LLMProvider, get_llm_provider
from ..serialization import dumps
from ..sessions.models import (
    CreativeQCResult,
    Moment,
    NARRATOR_IDENTITY,
    Plan,
    QCFix,
    QCResult,
    SequenceBase,
    normalize_identity,
)

logger = get_logger()

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?\s*```")
_OBJECT_SPAN = re.compile(r"(\{[\s\S]*\})")


def parse_json_block(text: str | None) -> Any | None:
    """Best-effort JSON extraction from model output.

    Tries the whole text, then a fenced block, then the outermost ``{...}``
    span. Returns ``None`` when nothing parses.
    """
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass
    match = _FENCED_BLOCK.search(text)
    if match:
        try:
            return json.loads(match.group(1))
        except ValueError:
            pass
    match = _OBJECT_SPAN.search(text)
    if match:
        try:
            return json.loads(match.group(1))
        except ValueError:
            pass
    return None


@dataclass(slots=True)
class PlanningContext:
    moment: Moment
    direction: str
    scene_context: dict[str, Any] | None
    attempt: int = 1


class Planner(Protocol):
    async def plan(self, context: PlanningContext) -> Plan:  # pragma: no cover - protocol
        ...


class TechnicalValidator(Protocol):
    async def validate(self, plan: Plan) -> QCResult:  # pragma: no cover - protocol
        ...


class CreativeValidator(Protocol):
    async def review(
        self,
        plan: Plan,
        scene_context: dict[str, Any] | None,
        character_refs: list[dict[str, Any]],
    ) -> CreativeQCResult:  # pragma: no cover - protocol
        ...


class SceneContextBuilder(Protocol):
    async def build(self, moment: Moment) -> dict[str, Any] | None:  # pragma: no cover - protocol
        ...


class SequenceRewriter(Protocol):
    async def rewrite(
        self,
        plan: Plan,
        sequence: SequenceBase,
        instructions: str,
        scene_context: dict[str, Any] | None,
    ) -> dict[str, Any]:  # pragma: no cover - protocol
        ...


def _moment_brief(moment: Moment) -> dict[str, Any]:
    return {
        "title": moment.highlight.title,
        "reference": moment.highlight.reference,
        "startSec": moment.highlight.start_sec,
        "endSec": moment.highlight.end_sec,
        "summary": moment.highlight.summary,
    }


def _render_cues(moment: Moment, limit: int = 400) -> str:
    lines = []
    for cue in moment.cues[:limit]:
        speaker = cue.speaker or "UNKNOWN"
        lines.append(f"[{cue.start_sec:.1f}] {speaker}: {cue.text}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# LLM-backed collaborators
# ---------------------------------------------------------------------------

PLANNER_SYSTEM = (
    "You are a director planning short vertical video sequences for a highlight moment. "
    "Respond with JSON: {momentTitle, sequences: [{order, type, durationSec, ...}]}. "
    "Valid types: dialogue, close_up, establishing_shot, impact, dm_description."
)

TECHNICAL_SYSTEM = (
    "Check the sequence plan for timing and field errors. Respond with JSON: "
    "{approved: bool, fixes: [{sequenceOrder, field, suggestedValue, issue}]}."
)

CREATIVE_SYSTEM = (
    "Judge the plan on cinematicPacing, characterFidelity and sceneCoherence. Respond with JSON: "
    "{dimensions: {name: {pass: bool, feedback: str}}, passCount: int, overallFeedback: str}."
)

SCENE_SYSTEM = (
    "Summarise the scene around this moment. Respond with JSON: "
    "{setting, mood, characters: [...], stakes}."
)

REWRITE_SYSTEM = (
    "You are revising one sequence of an approved storyboard. Keep its place in the story and "
    "apply the user feedback. Respond with JSON for that single sequence: {type, durationSec, ...}."
)


class LLMPlanner:
    def __init__(self, provider: LLMProvider | None = None, model: str | None = None) -> None:
        self.provider = provider or get_llm_provider()
        self.model = model or settings.planner_model

    async def plan(self, context: PlanningContext) -> Plan:
        parts = ["## Moment", dumps(_moment_brief(context.moment), indent=2)]
        if context.direction:
            parts.extend(["\n## Direction", context.direction])
        if context.scene_context:
            parts.extend(["\n## Scene Context", dumps(context.scene_context, indent=2)])
        if context.moment.cues:
            parts.extend(["\n## Transcript", _render_cues(context.moment)])

        completion = await self.provider.complete(
            "\n".join(parts), system=PLANNER_SYSTEM, model=self.model, temperature=0.7
        )
        payload = parse_json_block(completion)
        if payload is None:
            raise PlanValidationError("Planner output was not valid JSON")
        plan = Plan.from_payload(payload)
        if not plan.moment_title:
            plan.moment_title = context.moment.highlight.title
        return plan


class LLMTechnicalValidator:
    def __init__(self, provider: LLMProvider | None = None, model: str | None = None) -> None:
        self.provider = provider or get_llm_provider()
        self.model = model or settings.validator_model

    async def validate(self, plan: Plan) -> QCResult:
        completion = await self.provider.complete(
            dumps(plan, indent=2), system=TECHNICAL_SYSTEM, model=self.model, temperature=0.0
        )
        payload = parse_json_block(completion)
        if payload is None:
            logger.warning("Technical QC response unparseable; auto-approving")
            return QCResult(approved=True)
        try:
            return QCResult.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Technical QC response malformed (%s); auto-approving", exc.error_count())
            return QCResult(approved=True)


class LLMCreativeValidator:
    def __init__(self, provider: LLMProvider | None = None, model: str | None = None) -> None:
        self.provider = provider or get_llm_provider()
        self.model = model or settings.planner_model

    async def review(
        self,
        plan: Plan,
        scene_context: dict[str, Any] | None,
        character_refs: list[dict[str, Any]],
    ) -> CreativeQCResult:
        parts = ["## Sequence Plan", "```json", dumps(plan, indent=2), "```"]
        if scene_context:
            parts.extend(["\n## Scene Context", "```json", dumps(scene_context, indent=2), "```"])
        if character_refs:
            parts.append("\n## Character Cards")
            parts.extend(dumps(ref) for ref in character_refs)

        completion = await self.provider.complete(
            "\n".join(parts), system=CREATIVE_SYSTEM, model=self.model, temperature=0.3
        )
        payload = parse_json_block(completion)
        if payload is None:
            logger.warning("Creative QC response unparseable; auto-approving")
            return CreativeQCResult.approve_all("Auto-approved (unparseable response)")
        try:
            return CreativeQCResult.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Creative QC response malformed (%s); auto-approving", exc.error_count())
            return CreativeQCResult.approve_all("Auto-approved (malformed response)")


class LLMSceneContextBuilder:
    def __init__(self, provider: LLMProvider | None = None, model: str | None = None) -> None:
        self.provider = provider or get_llm_provider()
        self.model = model or settings.validator_model

    async def build(self, moment: Moment) -> dict[str, Any] | None:
        if not moment.cues:
            return None
        prompt = "\n".join(
            ["## Moment", dumps(_moment_brief(moment), indent=2), "\n## Transcript", _render_cues(moment)]
        )
        completion = await self.provider.complete(prompt, system=SCENE_SYSTEM, model=self.model, temperature=0.2)
        payload = parse_json_block(completion)
        if not isinstance(payload, dict):
            logger.warning("Scene context for moment %s unparseable; planning without it", moment.index)
            return None
        return payload


class LLMSequenceRewriter:
    """Asks the planner model to rewrite one sequence against user feedback."""

    def __init__(self, provider: LLMProvider | None = None, model: str | None = None) -> None:
        self.provider = provider or get_llm_provider()
        self.model = model or settings.planner_model

    async def rewrite(
        self,
        plan: Plan,
        sequence: SequenceBase,
        instructions: str,
        scene_context: dict[str, Any] | None,
    ) -> dict[str, Any]:
        parts = [
            "## Storyboard",
            "```json",
            dumps(plan, indent=2),
            "```",
            f"\n## Sequence To Rewrite\norder {sequence.order} ({sequence.type})",
            "\n## User Feedback",
            instructions,
        ]
        if scene_context:
            parts.extend(["\n## Scene Context", dumps(scene_context, indent=2)])

        completion = await self.provider.complete(
            "\n".join(parts), system=REWRITE_SYSTEM, model=self.model, temperature=0.7
        )
        payload = parse_json_block(completion)
        if isinstance(payload, dict) and isinstance(payload.get("sequence"), dict):
            payload = payload["sequence"]
        if not isinstance(payload, dict):
            raise PlanValidationError(f"Rewrite of sequence {sequence.order} was not a JSON object")
        return payload


# ---------------------------------------------------------------------------
# Deterministic collaborators
# ---------------------------------------------------------------------------

SECONDS_PER_LINE = 2.5
MIN_SPEAKING_SECONDS = 3.0
MAX_SPEAKING_GROUPS = 4
MIN_SECONDS = {
    "establishing_shot": 2.0,
    "impact": 0.5,
}


def _minimum_duration(seq: Any) -> float:
    if seq.type in ("dialogue", "dm_description"):
        return max(MIN_SPEAKING_SECONDS, SECONDS_PER_LINE * len(seq.lines))
    if seq.type == "close_up":
        return 0.75 * seq.frame_count
    return MIN_SECONDS.get(seq.type, 1.0)


class TranscriptPlanner:
    """Plans straight from the transcript: an establishing shot, then one beat per speaker turn."""

    async def plan(self, context: PlanningContext) -> Plan:
        moment = context.moment
        setting = moment.highlight.title or moment.highlight.summary or "the scene"
        sequences: list[dict[str, Any]] = [
            {
                "type": "establishing_shot",
                "durationSec": 3.0,
                "backgroundDescription": setting,
                "concept": "Open on the location",
            }
        ]

        turns: list[tuple[str, list[str]]] = []
        for cue in moment.cues:
            window = moment.highlight
            if window.end_sec and not (window.start_sec <= cue.start_sec <= window.end_sec):
                continue
            speaker = cue.speaker or NARRATOR_IDENTITY
            if turns and normalize_identity(turns[-1][0]) == normalize_identity(speaker):
                turns[-1][1].append(cue.text)
            else:
                turns.append((speaker, [cue.text]))

        if not turns:
            turns.append((NARRATOR_IDENTITY, [moment.highlight.summary or setting]))

        for speaker, lines in turns[:MAX_SPEAKING_GROUPS]:
            duration = max(MIN_SPEAKING_SECONDS, SECONDS_PER_LINE * len(lines))
            if normalize_identity(speaker) == NARRATOR_IDENTITY:
                sequences.append(
                    {
                        "type": "dm_description",
                        "durationSec": duration,
                        "lines": lines,
                        "backgroundDescription": setting,
                        "reuseBackgroundFrom": 1,
                    }
                )
            else:
                sequences.append(
                    {
                        "type": "dialogue",
                        "durationSec": duration,
                        "speaker": speaker,
                        "lines": lines,
                        "backgroundDescription": setting,
                        "reuseBackgroundFrom": 1,
                    }
                )

        return Plan.from_payload({"momentTitle": moment.highlight.title, "sequences": sequences})


class RuleBasedTechnicalValidator:
    """Timing checks: every beat must last long enough to read or register."""

    async def validate(self, plan: Plan) -> QCResult:
        fixes: list[QCFix] = []
        for seq in plan.sequences:
            minimum = _minimum_duration(seq)
            if seq.duration_sec < minimum:
                fixes.append(
                    QCFix(
                        sequence_order=seq.order,
                        field="durationSec",
                        suggested_value=minimum,
                        issue=f"{seq.type} needs at least {minimum:g}s",
                    )
                )
        return QCResult(approved=not fixes, fixes=fixes)


class ApprovingCreativeValidator:
    async def review(
        self,
        plan: Plan,
        scene_context: dict[str, Any] | None,
        character_refs: list[dict[str, Any]],
    ) -> CreativeQCResult:
        return CreativeQCResult.approve_all()


class CueSceneContextBuilder:
    async def build(self, moment: Moment) -> dict[str, Any] | None:
        if not moment.cues:
            return None
        speakers = sorted({cue.speaker for cue in moment.cues if cue.speaker})
        return {
            "setting": moment.highlight.title,
            "summary": moment.highlight.summary,
            "characters": speakers,
            "cueCount": len(moment.cues),
        }


class InstructionRewriter:
    """Keeps the beat as planned and replaces its visual notes with the feedback."""

    async def rewrite(
        self,
        plan: Plan,
        sequence: SequenceBase,
        instructions: str,
        scene_context: dict[str, Any] | None,
    ) -> dict[str, Any]:
        payload = sequence.model_dump(by_alias=True, exclude={"assets", "qc_issues", "export_files"})
        payload["visualNotes"] = instructions.strip()
        return payload


@dataclass(slots=True)
class DirectorAgents:
    planner: Planner
    technical: TechnicalValidator
    creative: CreativeValidator
    scene: SceneContextBuilder
    rewriter: SequenceRewriter = field(default_factory=InstructionRewriter)


def get_director_agents(mode: str | None = None) -> DirectorAgents:
    mode = (mode or settings.llm_provider_mode).lower()
    if mode == "openrouter" and settings.openrouter_api_key:
        provider = get_llm_provider("openrouter")
        return DirectorAgents(
            planner=LLMPlanner(provider),
            technical=LLMTechnicalValidator(provider),
            creative=LLMCreativeValidator(provider),
            scene=LLMSceneContextBuilder(provider),
            rewriter=LLMSequenceRewriter(provider),
        )
    return DirectorAgents(
        planner=TranscriptPlanner(),
        technical=RuleBasedTechnicalValidator(),
        creative=ApprovingCreativeValidator(),
        scene=CueSceneContextBuilder(),
        rewriter=InstructionRewriter(),
    )

