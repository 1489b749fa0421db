"""Bounded plan -> technical fix -> creative check loop."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import ValidationError
from pydantic.alias_generators import to_snake

from ..config import settings
from ..errors import PlanValidationError
from ..instrumentation import TelemetryEvent, emit_event, get_logger
from ..retry import FeedbackAccumulator, RetryPolicy, call_with_retry, with_timeout
from ..serialization import loads
from ..sessions.models import CreativeQCResult, Moment, Plan, PlanReview, QCResult, sequence_adapter
from .agents import DirectorAgents, PlanningContext, get_director_agents
from .fixes import PROTECTED_FIELDS, apply_fixes, validate_structure

logger = get_logger()

T = TypeVar("T")

ProgressCallback = Callable[[str, str], None]


def load_character_refs(path: Path | None) -> list[dict[str, Any]]:
    """Character cards from ``{"characters": [...]}`` (or a bare list) on disk.

    A missing file means no cards. An unreadable one is logged and ignored.
    """
    if path is None or not path.exists():
        return []
    try:
        data = loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Failed to load character cards from %s: %s", path, exc)
        return []
    cards = data.get("characters") if isinstance(data, dict) else data
    if not isinstance(cards, list):
        logger.warning("Character cards in %s are not a list; ignoring", path)
        return []
    return [card for card in cards if isinstance(card, dict)]


@dataclass(slots=True)
class DirectorOutcome:
    plan: Plan
    qc_result: QCResult
    creative_result: CreativeQCResult
    scene_context: dict[str, Any] | None
    attempts: int
    quality_degraded: bool
    feedback: FeedbackAccumulator = field(default_factory=FeedbackAccumulator)
    structure_notes: list[str] = field(default_factory=list)

    def to_review(self) -> PlanReview:
        return PlanReview(
            attempts=self.attempts,
            qc_result=self.qc_result,
            creative_result=self.creative_result,
            quality_degraded=self.quality_degraded,
            feedback=self.feedback.as_list(),
        )


class DirectorPipeline:
    """Produces an approved plan for one moment.

    Technical correctness is the hard gate: a structurally invalid plan burns
    the attempt and only fails the pipeline once every attempt is spent.
    Creative review is the soft gate: after the last attempt the most recent
    valid plan is returned with ``quality_degraded`` set.
    """

    def __init__(
        self,
        agents: DirectorAgents | None = None,
        *,
        policy: RetryPolicy | None = None,
        transient_policy: RetryPolicy | None = None,
        pass_threshold: int | None = None,
        call_timeout: float | None = None,
        character_refs: list[dict[str, Any]] | None = None,
        character_refs_path: Path | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.agents = agents or get_director_agents()
        self.policy = policy or RetryPolicy.director_default()
        self.transient_policy = transient_policy or RetryPolicy.transient_default()
        self.pass_threshold = pass_threshold if pass_threshold is not None else settings.director.creative_pass_threshold
        self.call_timeout = call_timeout if call_timeout is not None else settings.planner_timeout_seconds
        self.character_refs = character_refs
        self.character_refs_path = character_refs_path or settings.character_refs_path
        self._sleep = sleep

    async def _call(self, factory: Callable[[], Awaitable[T]], label: str) -> T:
        return await call_with_retry(
            lambda: with_timeout(factory(), self.call_timeout, label),
            self.transient_policy,
            label=label,
            sleep=self._sleep,
        )

    async def ensure_scene_context(self, moment: Moment) -> dict[str, Any] | None:
        """Build the scene context once per moment and memoize it there."""
        if not moment.scene_context_built:
            moment.scene_context = await self._call(lambda: self.agents.scene.build(moment), "scene_context")
            moment.scene_context_built = True
        return moment.scene_context

    def load_character_refs(self) -> list[dict[str, Any]]:
        """Explicit cards win; otherwise the cards file is read fresh for each run."""
        if self.character_refs is not None:
            return self.character_refs
        return load_character_refs(self.character_refs_path)

    async def rewrite_sequence(self, moment: Moment, order: int, instructions: str) -> Plan:
        """Rewrite one sequence of the moment's plan from user feedback.

        Returns a revised copy with offsets, totals and cost estimate
        recomputed; the moment's own plan is left untouched. Money already
        spent on the sequence carries over to the rewritten one.
        """
        plan = moment.require_plan()
        current = plan.get(order)
        if current is None:
            raise KeyError(f"Sequence {order} not found in moment {moment.index}")

        scene_context = await self.ensure_scene_context(moment)
        payload = await self._call(
            lambda: self.agents.rewriter.rewrite(plan, current, instructions, scene_context), "rewrite"
        )
        item = {key: value for key, value in payload.items() if to_snake(key) not in PROTECTED_FIELDS}
        item.setdefault("type", current.type)
        item["order"] = order
        item["cost"] = current.cost
        try:
            rewritten = sequence_adapter.validate_python(item)
        except ValidationError as exc:
            raise PlanValidationError(
                f"Rewrite of sequence {order} failed validation: {exc.error_count()} error(s): {exc}"
            ) from exc

        revised = plan.model_copy(deep=True)
        revised.replace(rewritten)
        revised.recompute()
        for note in validate_structure(revised):
            logger.info("Moment %s rewrite: %s", moment.index, note)
        emit_event(
            TelemetryEvent(
                name="director_sequence_rewritten",
                attributes={
                    "moment": moment.index,
                    "order": order,
                    "type": rewritten.type,
                    "duration_delta": revised.total_duration_sec - plan.total_duration_sec,
                },
            )
        )
        return revised

    async def run(self, moment: Moment, *, on_progress: ProgressCallback | None = None) -> DirectorOutcome:
        progress = on_progress or (lambda step, message: None)

        progress("scene_context", "Building scene context...")
        scene_context = await self.ensure_scene_context(moment)
        character_refs = self.load_character_refs()

        feedback = FeedbackAccumulator()
        best: tuple[Plan, QCResult, CreativeQCResult, list[str]] | None = None
        last_error: PlanValidationError | None = None
        attempts = 0

        for attempt in self.policy.attempts():
            attempts = attempt
            if attempt > 1:
                progress("retry", f"Retrying director (attempt {attempt}/{self.policy.max_attempts})...")
            emit_event(
                TelemetryEvent(
                    name="director_attempt",
                    attributes={"moment": moment.index, "attempt": attempt, "feedback_items": len(feedback)},
                )
            )
            context = PlanningContext(
                moment=moment,
                direction=feedback.augment(moment.direction),
                scene_context=scene_context,
                attempt=attempt,
            )

            try:
                progress("planning", "Director planning sequences...")
                plan = await self._call(lambda: self.agents.planner.plan(context), "planner")

                progress("technical_qc", "Technical quality check...")
                qc_result = await self._call(lambda: self.agents.technical.validate(plan), "technical_qc")
                if not qc_result.approved and qc_result.fixes:
                    applied = apply_fixes(plan, qc_result.fixes)
                    logger.info("Moment %s: applied %s/%s QC fixes", moment.index, len(applied), len(qc_result.fixes))
                else:
                    plan.recompute()
                notes = validate_structure(plan)
            except PlanValidationError as exc:
                last_error = exc
                logger.warning("Moment %s attempt %s produced an invalid plan: %s", moment.index, attempt, exc)
                emit_event(
                    TelemetryEvent(
                        name="director_invalid_plan",
                        attributes={"moment": moment.index, "attempt": attempt, "error": str(exc)},
                    )
                )
                feedback.add(attempt, "structure", str(exc))
                continue

            progress("creative_qc", "Creative quality check...")
            creative = await self._call(
                lambda: self.agents.creative.review(plan, scene_context, character_refs),
                "creative_qc",
            )
            best = (plan, qc_result, creative, notes)
            emit_event(
                TelemetryEvent(
                    name="director_creative_qc",
                    attributes={"moment": moment.index, "attempt": attempt, "pass_count": creative.pass_count},
                )
            )
            if (creative.pass_count or 0) >= self.pass_threshold:
                break
            for name, dimension in creative.failed_dimensions():
                feedback.add(attempt, name, dimension.feedback)

        if best is None:
            raise PlanValidationError(
                f"No valid plan after {attempts} attempts: {last_error}",
                attempts=attempts,
            )

        plan, qc_result, creative, notes = best
        degraded = (creative.pass_count or 0) < self.pass_threshold
        if degraded:
            logger.warning(
                "Moment %s: creative QC only %s/%s after %s attempts; proceeding with degraded quality",
                moment.index,
                creative.pass_count,
                len(creative.dimensions),
                attempts,
            )
            emit_event(
                TelemetryEvent(
                    name="director_quality_degraded",
                    attributes={"moment": moment.index, "pass_count": creative.pass_count, "attempts": attempts},
                )
            )

        return DirectorOutcome(
            plan=plan,
            qc_result=qc_result,
            creative_result=creative,
            scene_context=scene_context,
            attempts=attempts,
            quality_degraded=degraded,
            feedback=feedback,
            structure_notes=notes,
        )
