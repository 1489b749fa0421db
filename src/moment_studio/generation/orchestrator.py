"""Generation orchestrator.

Drives a planned session through sequential per-sequence asset generation
and export. Every sequence of a session is processed strictly in plan
order and never concurrently; parallelism exists only across sessions.

Reuse rules within one moment:
- a background-reuse reference is honoured only when it points at an
  earlier sequence whose background already exists, otherwise the
  background is generated fresh;
- speaker portraits are cached by normalized identity, reused verbatim for
  an unchanged expression and derived from the base portrait otherwise.

Only real external calls pass through the rate-limit gate.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ..config import settings
from ..costs import estimate_minutes
from ..director.pipeline import DirectorPipeline
from ..errors import (
    GenerationCancelled,
    InvalidStageTransition,
    PermanentServiceError,
    ServiceError,
)
from ..instrumentation import TelemetryEvent, emit_event, get_logger
from ..provider_throttle import GenerationThrottle
from ..providers import (
    AssetGenerator,
    ExportService,
    GeneratedAsset,
    VisionQC,
    get_asset_generator,
    get_export_service,
    get_vision_qc,
)
from ..retry import RetryPolicy, call_with_retry, with_timeout
from ..sessions.models import (
    AssetRef,
    AssetSource,
    Moment,
    RegenerationTarget,
    SequenceBase,
    SequenceStatus,
    Session,
    SessionStage,
)
from ..sessions.repository import SessionLease, SessionStore, session_store
from ..storage import ArtifactStorage, content_digest
from .cache import CacheDecision, MomentAssetCache, StoredAsset
from .progress import ProgressTracker

logger = get_logger()

_MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
}

EXPORT_OPTIONS = {"width": 1080, "height": 1920, "fps": 12}

REATTEMPT = "reattempt"
REWRITE = "rewrite"
REGENERATION_MODES = frozenset({REATTEMPT, REWRITE})

# Units a generation run may start from; finished ones are kept and skipped.
RUNNABLE_STATUSES = frozenset({SequenceStatus.PENDING, SequenceStatus.GENERATED, SequenceStatus.COMPLETE})
FINISHED_STATUSES = frozenset({SequenceStatus.GENERATED, SequenceStatus.COMPLETE})


def with_user_feedback(visual_notes: str, instructions: str) -> str:
    """Append rerun instructions to a sequence's visual notes."""
    note = f"[USER FEEDBACK]: {instructions.strip()}"
    return f"{visual_notes}\n{note}" if visual_notes else note


def validate_asset(asset: GeneratedAsset, kind: str) -> None:
    """Asset-level technical check applied to every generated binary."""
    if not asset.binary:
        raise PermanentServiceError(f"Generator returned an empty {kind}")
    if not (asset.mime_type or "").startswith("image/"):
        raise PermanentServiceError(f"Generator returned {asset.mime_type!r} for {kind}, expected an image")


@dataclass(slots=True)
class UnitWork:
    """Assets and spend collected while one sequence is being generated."""

    assets: dict[str, AssetRef] = field(default_factory=dict)
    cost: float = 0.0
    calls: int = 0


class GenerationOrchestrator:
    """Runs generation, export and single-unit regeneration for sessions."""

    def __init__(
        self,
        store: SessionStore | None = None,
        generator: AssetGenerator | None = None,
        vision_qc: VisionQC | None = None,
        exporter: ExportService | None = None,
        storage: ArtifactStorage | None = None,
        *,
        interval_seconds: float | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        transient_policy: RetryPolicy | None = None,
        call_timeout: float | None = None,
        export_timeout: float | None = None,
        auto_regenerate_kinds: frozenset[str] | None = None,
        vision_policy: RetryPolicy | None = None,
        cancel_check: Callable[[str], bool] | None = None,
        director: DirectorPipeline | None = None,
    ) -> None:
        self.store = store or session_store
        self.storage = storage or getattr(self.store, "storage", None) or ArtifactStorage()
        self.generator = generator or get_asset_generator()
        self.vision_qc = vision_qc or get_vision_qc()
        self.exporter = exporter or get_export_service()
        self.interval_seconds = (
            settings.generation.interval_seconds if interval_seconds is None else interval_seconds
        )
        self.transient_policy = transient_policy or RetryPolicy.transient_default()
        self.call_timeout = settings.generation.call_timeout_seconds if call_timeout is None else call_timeout
        self.export_timeout = (
            settings.generation.export_timeout_seconds if export_timeout is None else export_timeout
        )
        self.auto_regenerate_kinds = (
            settings.generation.vision_qc_auto_regenerate_kinds
            if auto_regenerate_kinds is None
            else auto_regenerate_kinds
        )
        self.vision_policy = vision_policy or RetryPolicy(
            max_attempts=max(settings.generation.vision_qc_max_regenerations, 1), backoff_base=0.0
        )
        self._clock = clock
        self._sleep = sleep
        self._external_cancel = cancel_check
        self.director = director
        self._cancel_requests: set[str] = set()
        self._tasks: dict[str, asyncio.Task[Session]] = {}

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def start_generation(self, session_id: str) -> asyncio.Task[Session]:
        """Claim the session and schedule its generation run in the background."""
        lease = self.store.claim(session_id, "generation")
        try:
            session = self.store.lookup(session_id)
            self._check_ready(session)
        except Exception:
            self.store.release(lease)
            raise
        return self._spawn(session_id, self._run_generation(session, lease))

    async def run_generation(self, session_id: str) -> Session:
        """Claim the session and run generation to completion in the caller's task."""
        lease = self.store.claim(session_id, "generation")
        try:
            session = await self.store.get(session_id)
            self._check_ready(session)
        except Exception:
            self.store.release(lease)
            raise
        return await self._run_generation(session, lease)

    def start_regeneration(
        self,
        session_id: str,
        moment_index: int,
        order: int,
        *,
        mode: str = REATTEMPT,
        instructions: str = "",
    ) -> asyncio.Task[Session]:
        lease = self.store.claim(session_id, f"regenerate:{moment_index}:{order}")
        try:
            session = self.store.lookup(session_id)
            self._check_regenerable(session, moment_index, order, mode, instructions)
        except Exception:
            self.store.release(lease)
            raise
        return self._spawn(
            session_id, self._run_regeneration(session, moment_index, order, lease, mode, instructions)
        )

    async def regenerate(
        self,
        session_id: str,
        moment_index: int,
        order: int,
        *,
        mode: str = REATTEMPT,
        instructions: str = "",
    ) -> Session:
        """Rerun one sequence of a complete session.

        ``reattempt`` keeps the description and appends any instructions to
        the visual notes; ``rewrite`` has the director rewrite the sequence
        from the instructions first.
        """
        lease = self.store.claim(session_id, f"regenerate:{moment_index}:{order}")
        try:
            session = await self.store.get(session_id)
            self._check_regenerable(session, moment_index, order, mode, instructions)
        except Exception:
            self.store.release(lease)
            raise
        return await self._run_regeneration(session, moment_index, order, lease, mode, instructions)

    def request_cancel(self, session_id: str) -> bool:
        """Ask the active task for ``session_id`` to stop at the next unit boundary."""
        active = self.store.is_busy(session_id)
        if active:
            self._cancel_requests.add(session_id)
        return active

    def task_for(self, session_id: str) -> asyncio.Task[Session] | None:
        return self._tasks.get(session_id)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @staticmethod
    def _check_ready(session: Session) -> None:
        if session.stage != SessionStage.PLAN_READY:
            raise InvalidStageTransition(session.stage.value, SessionStage.GENERATING.value)
        if not session.moments or any(moment.plan is None for moment in session.moments):
            raise ValueError(f"Session {session.id} has moments without an approved plan")
        for moment in session.moments:
            for seq in moment.require_plan().sequences:
                if seq.status not in RUNNABLE_STATUSES:
                    raise ValueError(
                        f"Sequence {seq.order} of moment {moment.index} is '{seq.status.value}', expected pending or finished"
                    )

    @staticmethod
    def _check_regenerable(
        session: Session, moment_index: int, order: int, mode: str, instructions: str
    ) -> None:
        if mode not in REGENERATION_MODES:
            raise ValueError(f"Unknown regeneration mode {mode!r}; expected one of {sorted(REGENERATION_MODES)}")
        if mode == REWRITE and not instructions.strip():
            raise ValueError("A rewrite needs instructions")
        if session.stage != SessionStage.COMPLETE:
            raise InvalidStageTransition(session.stage.value, SessionStage.GENERATING.value)
        session.get_sequence(moment_index, order)

    def _spawn(self, session_id: str, coro: Awaitable[Session]) -> asyncio.Task[Session]:
        task = asyncio.ensure_future(coro)
        self._tasks[session_id] = task
        task.add_done_callback(lambda _task: self._tasks.pop(session_id, None))
        return task

    def _cancelled(self, session_id: str) -> bool:
        if session_id in self._cancel_requests:
            return True
        return bool(self._external_cancel and self._external_cancel(session_id))

    def _check_cancel(self, session: Session) -> None:
        if self._cancelled(session.id):
            raise GenerationCancelled(session.id)

    def _get_director(self) -> DirectorPipeline:
        if self.director is None:
            self.director = DirectorPipeline()
        return self.director

    def _new_throttle(self) -> GenerationThrottle:
        kwargs: dict[str, Any] = {"sleep": self._sleep, "name": "generation"}
        if self._clock is not None:
            kwargs["clock"] = self._clock
        return GenerationThrottle(self.interval_seconds, **kwargs)

    async def _save(self, session: Session) -> None:
        session.recompute_total_cost()
        await self.store.upsert(session)

    # ------------------------------------------------------------------
    # Full generation run
    # ------------------------------------------------------------------

    async def _run_generation(self, session: Session, lease: SessionLease) -> Session:
        try:
            await self._generate_session(session)
        except GenerationCancelled as exc:
            logger.info("Generation for session %s cancelled: %s", session.id, exc)
            emit_event(TelemetryEvent(name="generation_cancelled", attributes={"session_id": session.id}))
            session.mark_stage(SessionStage.CANCELLED, reason="cancel requested")
            session.set_progress("Generation cancelled")
            await self._save(session)
        except Exception as exc:
            logger.exception("Generation for session %s failed", session.id)
            emit_event(
                TelemetryEvent(name="generation_failed", attributes={"session_id": session.id, "error": str(exc)})
            )
            session.error = str(exc)
            if session.can_transition(SessionStage.FAILED):
                session.mark_stage(SessionStage.FAILED, reason=str(exc))
            session.set_progress(f"Generation failed: {exc}")
            await self._save(session)
            raise
        finally:
            self._cancel_requests.discard(session.id)
            self.store.release(lease)
        return session

    async def _generate_session(self, session: Session) -> None:
        session.error = None
        session.mark_stage(SessionStage.GENERATING)
        throttle = self._new_throttle()
        total_sequences = sum(len(moment.require_plan().sequences) for moment in session.moments)
        tracker = ProgressTracker(session, total_sequences * 2)
        tracker.begin("Generating assets...")
        await self._save(session)
        emit_event(
            TelemetryEvent(
                name="generation_started",
                attributes={"session_id": session.id, "sequences": total_sequences},
            )
        )

        for moment in session.moments:
            cache = MomentAssetCache()
            moment.working_dir = self._moment_dir(session, moment)
            for seq in moment.require_plan().sequences:
                if seq.status in FINISHED_STATUSES:
                    cache.absorb(seq, self.storage)
                    tracker.advance(f"Kept moment {moment.index} sequence {seq.order}")
                    continue
                self._check_cancel(session)
                await self._generate_unit(session, moment, seq, cache, throttle)
                tracker.advance(f"Generated moment {moment.index} sequence {seq.order}")
                await self._save(session)

        session.mark_stage(SessionStage.EXPORTING)
        tracker.note("Exporting sequences...")
        await self._save(session)

        for moment in session.moments:
            for seq in moment.require_plan().sequences:
                if seq.status == SequenceStatus.GENERATED:
                    self._check_cancel(session)
                    await self._export_unit(session, moment, seq)
                tracker.advance(f"Exported moment {moment.index} sequence {seq.order}")
                await self._save(session)

        session.mark_stage(SessionStage.COMPLETE)
        summary = {moment.index: moment.status.value for moment in session.moments}
        session.set_progress("Generation complete", 100)
        await self._save(session)
        logger.info(
            "Session %s complete: moments=%s cost=$%.2f throttle=%s",
            session.id,
            summary,
            session.total_cost,
            throttle.metrics.as_dict(),
        )
        emit_event(
            TelemetryEvent(
                name="generation_complete",
                attributes={"session_id": session.id, "moments": summary, "total_cost": session.total_cost},
            )
        )

    # ------------------------------------------------------------------
    # Single-unit regeneration
    # ------------------------------------------------------------------

    async def _run_regeneration(
        self,
        session: Session,
        moment_index: int,
        order: int,
        lease: SessionLease,
        mode: str = REATTEMPT,
        instructions: str = "",
    ) -> Session:
        moment = session.get_moment(moment_index)
        previous_plan = moment.require_plan().model_copy(deep=True)
        previous_minutes = session.estimated_minutes

        session.regeneration = RegenerationTarget(moment_index=moment_index, order=order)
        message = f"Sequence {order} regenerated"
        try:
            session.mark_stage(SessionStage.GENERATING, reason=f"{mode} moment {moment_index} sequence {order}")
            session.error = None
            session.reset_progress(f"Regenerating sequence {order}...")
            tracker = ProgressTracker(session, 3 if mode == REWRITE else 2, start=0, end=100)
            self._check_cancel(session)

            if mode == REWRITE:
                tracker.note(f"Rewriting sequence {order}...")
                await self._save(session)
                moment.plan = await self._get_director().rewrite_sequence(moment, order, instructions)
                session.estimated_minutes = estimate_minutes(session.plans())
                tracker.advance(f"Rewrote sequence {order}")
            elif instructions.strip():
                target = session.get_sequence(moment_index, order)
                target.visual_notes = with_user_feedback(target.visual_notes, instructions)

            plan = moment.require_plan()
            seq = session.get_sequence(moment_index, order)
            seq.reset_for_regeneration()
            await self._save(session)

            self._check_cancel(session)
            cache = MomentAssetCache.seeded(plan, order, self.storage)
            await self._generate_unit(session, moment, seq, cache, self._new_throttle())
            tracker.advance(f"Regenerated sequence {order}")
            await self._save(session)

            if seq.status == SequenceStatus.GENERATED:
                session.mark_stage(SessionStage.EXPORTING)
                await self._save(session)
                self._check_cancel(session)
                await self._export_unit(session, moment, seq)
            if seq.status != SequenceStatus.COMPLETE:
                message = f"Sequence {order} {seq.status.value}: {seq.error}"
        except GenerationCancelled:
            logger.info("Regeneration of sequence %s in session %s cancelled", order, session.id)
            current = moment.require_plan().get(order)
            restored = previous_plan.get(order)
            if current is not None and restored is not None:
                restored.cost = max(restored.cost, current.cost)
            moment.plan = previous_plan
            session.estimated_minutes = previous_minutes
            message = f"Regeneration of sequence {order} cancelled"
            emit_event(
                TelemetryEvent(
                    name="regeneration_cancelled",
                    attributes={"session_id": session.id, "moment": moment_index, "order": order},
                )
            )
        except Exception as exc:
            logger.exception("Regeneration of sequence %s in session %s failed", order, session.id)
            session.error = str(exc)
            message = f"Regeneration failed: {exc}"
            raise
        finally:
            if session.stage != SessionStage.COMPLETE:
                session.mark_stage(SessionStage.COMPLETE, reason=f"regenerated sequence {order}")
            session.regeneration = None
            session.set_progress(message, 100, monotonic=False)
            self._cancel_requests.discard(session.id)
            await self._save(session)
            self.store.release(lease)
        return session

    # ------------------------------------------------------------------
    # Unit work
    # ------------------------------------------------------------------

    def _moment_dir(self, session: Session, moment: Moment) -> str:
        return self.storage.moment_dir(session.id, moment.index)

    def _sequence_dir(self, session: Session, moment: Moment, seq: SequenceBase) -> str:
        return self.storage.sequence_dir(session.id, moment.index, seq.order, seq.type)

    async def _generate_unit(
        self,
        session: Session,
        moment: Moment,
        seq: SequenceBase,
        cache: MomentAssetCache,
        throttle: GenerationThrottle,
    ) -> None:
        seq.advance(SequenceStatus.GENERATING)
        session.set_progress(f"Generating {seq.type} (moment {moment.index}, sequence {seq.order})...")
        await self._save(session)

        work = UnitWork()
        try:
            await self._produce_assets(session, moment, seq, cache, throttle, work)
        except Exception as exc:
            if isinstance(exc, ServiceError):
                kind = exc.kind
            elif isinstance(exc, OSError):
                kind = "transient"
            else:
                kind = "permanent"
            seq.add_cost(work.cost)
            seq.record_failure(SequenceStatus.FAILED, str(exc), kind)
            logger.warning(
                "Sequence %s of moment %s failed (%s): %s",
                seq.order,
                moment.index,
                kind,
                exc,
                exc_info=not isinstance(exc, (ServiceError, OSError)),
            )
            emit_event(
                TelemetryEvent(
                    name="unit_failed",
                    attributes={
                        "session_id": session.id,
                        "moment": moment.index,
                        "order": seq.order,
                        "error_kind": kind,
                        "error": str(exc),
                    },
                )
            )
            return

        seq.add_cost(work.cost)
        seq.assets = work.assets
        seq.advance(SequenceStatus.GENERATED)
        emit_event(
            TelemetryEvent(
                name="unit_generated",
                attributes={
                    "session_id": session.id,
                    "moment": moment.index,
                    "order": seq.order,
                    "calls": work.calls,
                    "cost": work.cost,
                },
            )
        )

    async def _produce_assets(
        self,
        session: Session,
        moment: Moment,
        seq: SequenceBase,
        cache: MomentAssetCache,
        throttle: GenerationThrottle,
        work: UnitWork,
    ) -> None:
        seq_type = seq.type
        if seq_type == "dialogue":
            await self._portrait(session, moment, seq, cache, throttle, work)
            await self._background(session, moment, seq, cache, throttle, work)
        elif seq_type in ("dm_description", "establishing_shot"):
            await self._background(session, moment, seq, cache, throttle, work)
        elif seq_type == "close_up":
            await self._action_frames(session, moment, seq, throttle, work)
        # impact sequences are rendered without any generated asset

    async def _call_generator(
        self,
        kind: str,
        descriptor: str,
        reference: GeneratedAsset | None,
        throttle: GenerationThrottle,
        work: UnitWork,
    ) -> GeneratedAsset:
        await throttle.acquire()
        asset = await call_with_retry(
            lambda: with_timeout(
                self.generator.generate(kind, descriptor, reference), self.call_timeout, f"generate:{kind}"
            ),
            self.transient_policy,
            label=f"generate:{kind}",
            sleep=self._sleep,
        )
        work.calls += 1
        work.cost += asset.cost
        validate_asset(asset, kind)
        return asset

    def _write_asset(
        self,
        session: Session,
        moment: Moment,
        seq: SequenceBase,
        role: str,
        asset: GeneratedAsset,
        source: AssetSource,
        source_order: int | None = None,
    ) -> AssetRef:
        digest = content_digest(asset.binary)
        ext = _MIME_EXTENSIONS.get(asset.mime_type, "bin")
        relative = f"{self._sequence_dir(session, moment, seq)}/assets/{role}-{digest[:8]}.{ext}"
        self.storage.save_bytes(relative, asset.binary)
        return AssetRef(
            name=role,
            kind=asset.kind,
            path=relative,
            mime_type=asset.mime_type,
            sha256=digest,
            size_bytes=len(asset.binary),
            source=source,
            source_order=source_order,
        )

    async def _portrait(
        self,
        session: Session,
        moment: Moment,
        seq: SequenceBase,
        cache: MomentAssetCache,
        throttle: GenerationThrottle,
        work: UnitWork,
    ) -> None:
        speaker: str = seq.speaker
        expression: str | None = seq.expression
        lookup = cache.characters.lookup(speaker, expression)

        if lookup.decision == CacheDecision.HIT and lookup.stored is not None:
            ref = self._write_asset(
                session, moment, seq, "portrait", lookup.stored.asset, AssetSource.CACHED, lookup.stored.order
            )
            work.assets["portrait"] = ref
            logger.debug("Portrait cache hit for %s (%s)", lookup.identity, lookup.expression)
            return

        descriptor = f"Character portrait of {speaker}, {lookup.expression} expression."
        if seq.visual_notes:
            descriptor += f" {seq.visual_notes}"
        if lookup.decision == CacheDecision.VARIANT:
            asset = await self._call_generator("portrait", descriptor, lookup.reference, throttle, work)
            source = AssetSource.DERIVED
        else:
            asset = await self._call_generator("portrait", descriptor, None, throttle, work)
            source = AssetSource.GENERATED

        ref = self._write_asset(
            session,
            moment,
            seq,
            "portrait",
            asset,
            source,
            lookup.stored.order if lookup.stored is not None else None,
        )
        work.assets["portrait"] = ref
        cache.characters.store(speaker, expression, StoredAsset(asset=asset, ref=ref, order=seq.order))

    async def _background(
        self,
        session: Session,
        moment: Moment,
        seq: SequenceBase,
        cache: MomentAssetCache,
        throttle: GenerationThrottle,
        work: UnitWork,
    ) -> None:
        reference = getattr(seq, "reuse_background_from", None)
        reused = cache.backgrounds.resolve(reference, seq.order)
        if reused is not None:
            ref = self._write_asset(session, moment, seq, "background", reused.asset, AssetSource.REUSED, reused.order)
            work.assets["background"] = ref
            cache.backgrounds.register(seq.order, StoredAsset(asset=reused.asset, ref=ref, order=seq.order))
            return
        if reference is not None:
            logger.info(
                "Sequence %s: background from %s unavailable; generating fresh", seq.order, reference
            )

        description = seq.background_description
        mood = getattr(seq, "background_mood", "")
        descriptor = f"{description}, vertical composition (9:16)" + (f", {mood}" if mood else "")
        if seq.visual_notes:
            descriptor += f". {seq.visual_notes}"
        style = cache.style_reference.asset if cache.style_reference is not None else None
        asset = await self._call_generator("background", descriptor, style, throttle, work)
        ref = self._write_asset(session, moment, seq, "background", asset, AssetSource.GENERATED)
        work.assets["background"] = ref
        cache.backgrounds.register(seq.order, StoredAsset(asset=asset, ref=ref, order=seq.order))

    async def _action_frames(
        self,
        session: Session,
        moment: Moment,
        seq: SequenceBase,
        throttle: GenerationThrottle,
        work: UnitWork,
    ) -> None:
        subject: str = seq.subject
        count: int = seq.frame_count
        descriptor = f"Close-up of {subject}"
        if seq.visual_notes:
            descriptor += f". {seq.visual_notes}"

        frames: list[GeneratedAsset] = []
        for idx in range(count):
            frames.append(await self._frame(descriptor, idx, count, frames, throttle, work))

        await self._review_frames(seq, descriptor, frames, throttle, work)

        for idx, frame in enumerate(frames, start=1):
            source = AssetSource.GENERATED if idx == 1 else AssetSource.DERIVED
            role = f"frame_{idx:02d}"
            work.assets[role] = self._write_asset(session, moment, seq, role, frame, source)

    async def _frame(
        self,
        descriptor: str,
        idx: int,
        count: int,
        frames: list[GeneratedAsset],
        throttle: GenerationThrottle,
        work: UnitWork,
    ) -> GeneratedAsset:
        frame_descriptor = f"{descriptor}, frame {idx + 1} of {count}"
        reference = frames[0] if idx > 0 and frames else None
        return await self._call_generator("action_frame", frame_descriptor, reference, throttle, work)

    async def _review_frames(
        self,
        seq: SequenceBase,
        descriptor: str,
        frames: list[GeneratedAsset],
        throttle: GenerationThrottle,
        work: UnitWork,
    ) -> None:
        """Advisory vision check; regenerates flagged frames only for opted-in kinds."""
        kind = "action_frame"
        regenerations = 0
        while True:
            try:
                review = await with_timeout(
                    self.vision_qc.review(frames, kind, descriptor), self.call_timeout, "vision_qc"
                )
            except ServiceError as exc:
                logger.warning("Vision QC unavailable for sequence %s: %s", seq.order, exc)
                seq.qc_issues.append(f"vision QC unavailable: {exc}")
                return
            if review.coherent:
                return
            seq.qc_issues.extend(review.issues)
            emit_event(
                TelemetryEvent(
                    name="vision_qc_incoherent",
                    attributes={"order": seq.order, "issues": review.issues, "frames": review.problematic_frames},
                )
            )
            if kind not in self.auto_regenerate_kinds or regenerations >= self.vision_policy.max_attempts:
                return
            regenerations += 1
            targets = [idx for idx in review.problematic_frames if 0 <= idx < len(frames)] or list(
                range(len(frames))
            )
            logger.info("Regenerating frames %s of sequence %s after vision QC", targets, seq.order)
            for idx in targets:
                anchor = frames[:1] if idx > 0 else []
                frames[idx] = await self._frame(descriptor, idx, len(frames), anchor, throttle, work)

    async def _export_unit(self, session: Session, moment: Moment, seq: SequenceBase) -> None:
        seq.advance(SequenceStatus.EXPORTING)
        session.set_progress(f"Exporting moment {moment.index} sequence {seq.order}...")
        await self._save(session)

        options = {**EXPORT_OPTIONS, "relative_dir": self._sequence_dir(session, moment, seq)}
        try:
            result = await with_timeout(
                self.exporter.export(seq, self.storage.root, options), self.export_timeout, "export"
            )
        except Exception as exc:
            kind = exc.kind if isinstance(exc, ServiceError) else "permanent"
            seq.record_failure(SequenceStatus.EXPORT_FAILED, str(exc), kind)
            logger.warning("Export of sequence %s (moment %s) failed: %s", seq.order, moment.index, exc)
            emit_event(
                TelemetryEvent(
                    name="unit_export_failed",
                    attributes={"session_id": session.id, "moment": moment.index, "order": seq.order, "error": str(exc)},
                )
            )
            return

        seq.export_files = list(result.files)
        seq.advance(SequenceStatus.COMPLETE)
        emit_event(
            TelemetryEvent(
                name="unit_exported",
                attributes={"session_id": session.id, "moment": moment.index, "order": seq.order},
            )
        )


generation_orchestrator: GenerationOrchestrator | None = None


def get_generation_orchestrator() -> GenerationOrchestrator:
    global generation_orchestrator
    if generation_orchestrator is None:
        generation_orchestrator = GenerationOrchestrator()
    return generation_orchestrator
