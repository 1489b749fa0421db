"""Session lifecycle: creation, planning, manual plan edits and resumption."""

from __future__ import annotations

import asyncio
from typing import Any

from ..costs import estimate_minutes
from ..director.fixes import validate_structure
from ..director.pipeline import DirectorPipeline
from ..errors import PlanValidationError, ServiceError
from ..generation.orchestrator import FINISHED_STATUSES, REATTEMPT, GenerationOrchestrator
from ..instrumentation import TelemetryEvent, emit_event, get_logger, telemetry_store
from .models import MomentInput, Plan, Session, SessionStage
from .repository import SessionStore, session_store

logger = get_logger()

ANALYSIS_START_PERCENT = 5
PLAN_READY_PERCENT = 50

# Fraction of a moment's planning slice reached at each director step.
_STEP_WEIGHTS = {
    "scene_context": 0.1,
    "planning": 0.3,
    "retry": 0.3,
    "technical_qc": 0.6,
    "creative_qc": 0.8,
}


class SessionService:
    """Facade over the store, the director and the generation orchestrator."""

    def __init__(
        self,
        store: SessionStore | None = None,
        director: DirectorPipeline | None = None,
        orchestrator: GenerationOrchestrator | None = None,
    ) -> None:
        self.store = store or session_store
        self.director = director or DirectorPipeline()
        self.orchestrator = orchestrator or GenerationOrchestrator(store=self.store, director=self.director)

    async def create_session(self, moments: list[MomentInput]) -> Session:
        if not moments:
            raise ValueError("A session needs at least one moment")
        session = await self.store.create(moments)
        emit_event(TelemetryEvent(name="session_created", attributes={"session_id": session.id, "moments": len(moments)}))
        return session

    async def plan_session(self, session_id: str) -> Session:
        async with self.store.guard(session_id, "planning"):
            session = await self.store.get(session_id)
            session.mark_stage(SessionStage.ANALYZING)
            session.error = None
            session.reset_progress()
            session.set_progress("Analyzing moments...", ANALYSIS_START_PERCENT)
            await self.store.upsert(session)

            try:
                await self._plan_moments(session)
            except (PlanValidationError, ServiceError) as exc:
                logger.error("Planning failed for session %s: %s", session.id, exc)
                session.error = str(exc)
                session.mark_stage(SessionStage.FAILED, reason=str(exc))
                session.set_progress(f"Analysis failed: {exc}")
                await self.store.upsert(session)
                emit_event(
                    TelemetryEvent(name="planning_failed", attributes={"session_id": session.id, "error": str(exc)})
                )
                raise

            session.estimated_minutes = estimate_minutes(session.plans())
            session.mark_stage(SessionStage.PLAN_READY)
            session.set_progress("Plan ready for review", PLAN_READY_PERCENT)
            await self.store.upsert(session)
            logger.info(
                "Session %s plan ready: %s moments, ~%s minutes",
                session.id,
                len(session.moments),
                session.estimated_minutes,
            )
            return session

    async def _plan_moments(self, session: Session) -> None:
        total = len(session.moments)
        span = (PLAN_READY_PERCENT - ANALYSIS_START_PERCENT) / total
        for position, moment in enumerate(session.moments):
            base = ANALYSIS_START_PERCENT + position * span

            def report(step: str, message: str, *, _base: float = base) -> None:
                weight = _STEP_WEIGHTS.get(step, 0.0)
                session.set_progress(f"Moment {moment.index}: {message}", int(_base + weight * span))

            moment.plan = None
            moment.review = None
            outcome = await self.director.run(moment, on_progress=report)
            moment.plan = outcome.plan
            moment.review = outcome.to_review()
            session.set_progress(f"Moment {moment.index} planned", int(base + span))
            await self.store.upsert(session)

    async def update_plan(self, session_id: str, moment_index: int, sequences: list[dict[str, Any]]) -> Session:
        """Replace a moment's storyboard with a manual edit.

        Orders are reassigned densely by position and every derived field is
        recomputed; stale reuse references are cleared.
        """
        async with self.store.guard(session_id, "plan_edit"):
            session = await self.store.get(session_id)
            if session.stage != SessionStage.PLAN_READY:
                raise ValueError("Plans can only be edited while the session is plan_ready")
            moment = session.get_moment(moment_index)
            title = moment.plan.moment_title if moment.plan else moment.highlight.title
            stripped = [{key: value for key, value in item.items() if key != "order"} for item in sequences]
            plan = Plan.from_payload({"momentTitle": title, "sequences": stripped}).renumber()
            notes = validate_structure(plan)
            for note in notes:
                logger.info("Session %s moment %s: %s", session_id, moment_index, note)
            moment.plan = plan
            session.estimated_minutes = estimate_minutes(session.plans())
            session.set_progress("Plan updated")
            await self.store.upsert(session)
            return session

    async def reopen(self, session_id: str) -> Session:
        """Return a cancelled session to ``plan_ready`` so it can be resumed.

        Generated and exported units are kept and skipped by the next run;
        every other unit goes back to ``pending``. Money already spent stays
        on each sequence.
        """
        async with self.store.guard(session_id, "reopen"):
            session = await self.store.get(session_id)
            session.mark_stage(SessionStage.PLAN_READY, reason="reopened")
            kept = 0
            for plan in session.plans():
                for seq in plan.sequences:
                    if seq.status in FINISHED_STATUSES:
                        kept += 1
                        continue
                    seq.reset_for_regeneration()
                    seq.assets = {}
            session.error = None
            session.set_progress(
                f"Plan ready for review ({kept} finished sequences kept)", PLAN_READY_PERCENT, monotonic=False
            )
            await self.store.upsert(session)
            return session

    def start_generation(self, session_id: str) -> asyncio.Task[Session]:
        return self.orchestrator.start_generation(session_id)

    def start_regeneration(
        self,
        session_id: str,
        moment_index: int,
        order: int,
        *,
        mode: str = REATTEMPT,
        instructions: str = "",
    ) -> asyncio.Task[Session]:
        return self.orchestrator.start_regeneration(
            session_id, moment_index, order, mode=mode, instructions=instructions
        )

    def cancel(self, session_id: str) -> bool:
        return self.orchestrator.request_cancel(session_id)

    async def get(self, session_id: str) -> Session:
        return await self.store.get(session_id)

    def activity(self, session_id: str) -> dict[str, Any]:
        """Telemetry summary for one session: event counts and its stage timeline."""
        return telemetry_store.stats(session_id=session_id)
