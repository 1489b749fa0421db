"""Session, moment and plan data models with the stage state machine."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Iterator, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    computed_field,
    model_validator,
)
from pydantic.alias_generators import to_camel

from ..costs import estimate_plan_cost, estimate_plan_duration
from ..errors import InvalidStageTransition, PlanValidationError
from ..instrumentation import TelemetryEvent, emit_event


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StudioModel(BaseModel):
    """Base model: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


NARRATOR_IDENTITY = "narrator"
NARRATOR_ALIASES = frozenset({"dm", "dungeon master", "narrator", "gm", "game master"})
DEFAULT_EXPRESSION = "neutral"


def normalize_identity(speaker: str | None) -> str:
    """Case-folded speaker identity; narrator-like roles share one identity."""
    key = " ".join((speaker or "").split()).casefold()
    if key in NARRATOR_ALIASES:
        return NARRATOR_IDENTITY
    return key


def normalize_expression(expression: str | None) -> str:
    key = " ".join((expression or "").split()).casefold()
    return key or DEFAULT_EXPRESSION


class SessionStage(str, Enum):
    UPLOADED = "uploaded"
    ANALYZING = "analyzing"
    PLAN_READY = "plan_ready"
    GENERATING = "generating"
    EXPORTING = "exporting"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


STAGE_TRANSITIONS: dict[SessionStage, frozenset[SessionStage]] = {
    SessionStage.UPLOADED: frozenset({SessionStage.ANALYZING}),
    SessionStage.ANALYZING: frozenset({SessionStage.PLAN_READY, SessionStage.FAILED}),
    SessionStage.PLAN_READY: frozenset({SessionStage.ANALYZING, SessionStage.GENERATING}),
    SessionStage.GENERATING: frozenset(
        {SessionStage.EXPORTING, SessionStage.FAILED, SessionStage.CANCELLED}
    ),
    SessionStage.EXPORTING: frozenset(
        {SessionStage.COMPLETE, SessionStage.FAILED, SessionStage.CANCELLED}
    ),
    SessionStage.COMPLETE: frozenset(),
    SessionStage.FAILED: frozenset({SessionStage.ANALYZING}),
    SessionStage.CANCELLED: frozenset({SessionStage.PLAN_READY}),
}

# Only legal while a single-unit regeneration is running.
REGENERATE_TRANSITIONS: dict[SessionStage, frozenset[SessionStage]] = {
    SessionStage.COMPLETE: frozenset({SessionStage.GENERATING}),
    SessionStage.GENERATING: frozenset({SessionStage.EXPORTING, SessionStage.COMPLETE}),
    SessionStage.EXPORTING: frozenset({SessionStage.COMPLETE}),
}


class SequenceStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    GENERATED = "generated"
    EXPORTING = "exporting"
    COMPLETE = "complete"
    FAILED = "failed"
    EXPORT_FAILED = "export_failed"


SEQUENCE_TRANSITIONS: dict[SequenceStatus, frozenset[SequenceStatus]] = {
    SequenceStatus.PENDING: frozenset({SequenceStatus.GENERATING}),
    SequenceStatus.GENERATING: frozenset({SequenceStatus.GENERATED, SequenceStatus.FAILED}),
    SequenceStatus.GENERATED: frozenset({SequenceStatus.EXPORTING}),
    SequenceStatus.EXPORTING: frozenset({SequenceStatus.COMPLETE, SequenceStatus.EXPORT_FAILED}),
    SequenceStatus.COMPLETE: frozenset(),
    SequenceStatus.FAILED: frozenset(),
    SequenceStatus.EXPORT_FAILED: frozenset(),
}

SETTLED_STATUSES = frozenset(
    {SequenceStatus.COMPLETE, SequenceStatus.FAILED, SequenceStatus.EXPORT_FAILED}
)


class MomentStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


class AssetSource(str, Enum):
    GENERATED = "generated"
    DERIVED = "derived"
    CACHED = "cached"
    REUSED = "reused"


class AssetRef(StudioModel):
    """Pointer to an asset file; binaries never live in session state."""

    name: str
    kind: str
    path: str
    mime_type: str = "image/png"
    sha256: str
    size_bytes: int
    source: AssetSource = AssetSource.GENERATED
    source_order: int | None = None


# ---------------------------------------------------------------------------
# Sequences (tagged by ``type``)
# ---------------------------------------------------------------------------


class SequenceBase(StudioModel):
    order: int = 0
    duration_sec: float
    start_offset_sec: float = 0.0
    concept: str = ""
    visual_notes: str = ""

    status: SequenceStatus = SequenceStatus.PENDING
    cost: float = 0.0
    error: str | None = None
    error_kind: Literal["transient", "permanent"] | None = None
    assets: dict[str, AssetRef] = Field(default_factory=dict)
    qc_issues: list[str] = Field(default_factory=list)
    export_files: list[str] = Field(default_factory=list)

    @property
    def produces_background(self) -> bool:
        return False

    def advance(self, status: SequenceStatus) -> None:
        """Move forward along the sequence lifecycle; regressions are rejected."""
        if status == self.status:
            return
        if status not in SEQUENCE_TRANSITIONS[self.status]:
            raise ValueError(
                f"Sequence {self.order} cannot move from '{self.status.value}' to '{status.value}'"
            )
        self.status = status

    def add_cost(self, amount: float) -> None:
        if amount < 0:
            raise ValueError("cost increments must be non-negative")
        self.cost = round(self.cost + amount, 4)

    def record_failure(self, status: SequenceStatus, message: str, kind: str) -> None:
        self.advance(status)
        self.error = message
        self.error_kind = kind  # type: ignore[assignment]

    def reset_for_regeneration(self) -> None:
        """The only sanctioned way back to ``pending``."""
        self.status = SequenceStatus.PENDING
        self.error = None
        self.error_kind = None
        self.qc_issues = []
        self.export_files = []


class DialogueSequence(SequenceBase):
    type: Literal["dialogue"] = "dialogue"
    speaker: str
    expression: str | None = None
    lines: list[str] = Field(min_length=1)
    background_description: str
    background_mood: str = ""
    reuse_background_from: int | None = None

    @property
    def produces_background(self) -> bool:
        return True


class DMDescriptionSequence(SequenceBase):
    type: Literal["dm_description"] = "dm_description"
    lines: list[str] = Field(min_length=1)
    background_description: str
    background_mood: str = ""
    reuse_background_from: int | None = None

    @property
    def produces_background(self) -> bool:
        return True


class CloseUpSequence(SequenceBase):
    type: Literal["close_up"] = "close_up"
    subject: str
    frame_count: int = Field(3, ge=1, le=8)


class EstablishingShotSequence(SequenceBase):
    type: Literal["establishing_shot"] = "establishing_shot"
    background_description: str
    background_mood: str = ""

    @property
    def produces_background(self) -> bool:
        return True


class ImpactSequence(SequenceBase):
    type: Literal["impact"] = "impact"
    effect: str = "flash"
    text: str | None = None


Sequence = Annotated[
    Union[
        DialogueSequence,
        DMDescriptionSequence,
        CloseUpSequence,
        EstablishingShotSequence,
        ImpactSequence,
    ],
    Field(discriminator="type"),
]

sequence_adapter: TypeAdapter[Sequence] = TypeAdapter(Sequence)

_LEGACY_TYPES = {"action_closeup": "close_up"}


class Plan(StudioModel):
    moment_title: str = ""
    sequences: list[Sequence] = Field(default_factory=list)
    total_duration_sec: float = 0.0
    estimated_cost: float = 0.0

    @classmethod
    def from_payload(cls, payload: Any) -> "Plan":
        """Build a plan from raw planner output.

        Missing ``order`` values are assigned by position. Any structural
        problem is reported as :class:`PlanValidationError`.
        """
        if not isinstance(payload, dict):
            raise PlanValidationError("Plan payload must be a JSON object")
        raw_sequences = payload.get("sequences")
        if not isinstance(raw_sequences, list) or not raw_sequences:
            raise PlanValidationError("Plan payload is missing a non-empty 'sequences' list")

        normalized: list[Any] = []
        for position, raw in enumerate(raw_sequences, start=1):
            if not isinstance(raw, dict):
                raise PlanValidationError(f"Sequence {position} is not an object")
            item = dict(raw)
            item["type"] = _LEGACY_TYPES.get(item.get("type"), item.get("type"))
            if item.get("order") is None:
                item["order"] = position
            normalized.append(item)
        if all(isinstance(item["order"], int) for item in normalized):
            normalized.sort(key=lambda item: item["order"])

        data = {key: value for key, value in payload.items() if key != "sequences"}
        data["sequences"] = normalized
        try:
            plan = cls.model_validate(data)
        except ValidationError as exc:
            raise PlanValidationError(f"Plan failed validation: {exc.error_count()} error(s): {exc}") from exc
        return plan.recompute()

    def recompute(self) -> "Plan":
        """Refresh every derived field. Deterministic and idempotent."""
        offset = 0.0
        for seq in self.sequences:
            seq.start_offset_sec = offset
            offset += seq.duration_sec
        self.total_duration_sec = estimate_plan_duration(self)
        self.estimated_cost = estimate_plan_cost(self)
        return self

    def get(self, order: int) -> SequenceBase | None:
        for seq in self.sequences:
            if seq.order == order:
                return seq
        return None

    def index_of(self, order: int) -> int:
        for idx, seq in enumerate(self.sequences):
            if seq.order == order:
                return idx
        raise KeyError(f"Sequence {order} not found")

    def replace(self, sequence: SequenceBase) -> None:
        self.sequences[self.index_of(sequence.order)] = sequence  # type: ignore[assignment]

    def renumber(self) -> "Plan":
        for position, seq in enumerate(self.sequences, start=1):
            seq.order = position
        return self.recompute()


# ---------------------------------------------------------------------------
# QC results
# ---------------------------------------------------------------------------

CREATIVE_DIMENSIONS: tuple[str, ...] = ("cinematicPacing", "characterFidelity", "sceneCoherence")


class QCFix(StudioModel):
    sequence_order: int
    field: str | None = None
    suggested_value: Any = None
    issue: str = ""


class QCResult(StudioModel):
    approved: bool = True
    fixes: list[QCFix] = Field(default_factory=list)


class CreativeDimension(StudioModel):
    passed: bool = Field(alias="pass")
    feedback: str = ""


class CreativeQCResult(StudioModel):
    dimensions: dict[str, CreativeDimension] = Field(default_factory=dict)
    pass_count: int | None = None
    overall_feedback: str = ""

    @model_validator(mode="after")
    def _derive_pass_count(self) -> "CreativeQCResult":
        if self.pass_count is None:
            self.pass_count = sum(1 for dim in self.dimensions.values() if dim.passed)
        return self

    @classmethod
    def approve_all(cls, note: str = "") -> "CreativeQCResult":
        return cls(
            dimensions={name: CreativeDimension(passed=True, feedback=note) for name in CREATIVE_DIMENSIONS},
            pass_count=len(CREATIVE_DIMENSIONS),
        )

    def failed_dimensions(self) -> Iterator[tuple[str, CreativeDimension]]:
        for name, dim in self.dimensions.items():
            if not dim.passed:
                yield name, dim


class VisionReview(StudioModel):
    coherent: bool = True
    issues: list[str] = Field(default_factory=list)
    problematic_frames: list[int] = Field(default_factory=list)


class PlanReview(StudioModel):
    """Outcome of the director loop for one moment."""

    attempts: int = 0
    qc_result: QCResult | None = None
    creative_result: CreativeQCResult | None = None
    quality_degraded: bool = False
    feedback: list[dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Moments and sessions
# ---------------------------------------------------------------------------


class TranscriptCue(StudioModel):
    start_sec: float
    end_sec: float
    speaker: str | None = None
    text: str


class Highlight(StudioModel):
    reference: str
    title: str = ""
    start_sec: float = 0.0
    end_sec: float = 0.0
    summary: str = ""


class Moment(StudioModel):
    index: int
    highlight: Highlight
    direction: str = ""
    cues: list[TranscriptCue] = Field(default_factory=list)
    scene_context: dict[str, Any] | None = None
    scene_context_built: bool = False
    plan: Plan | None = None
    review: PlanReview | None = None
    working_dir: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> MomentStatus:
        """Aggregate derived from the sequences; never set directly."""
        sequences = self.plan.sequences if self.plan else []
        if not sequences:
            return MomentStatus.PENDING
        statuses = [seq.status for seq in sequences]
        if not all(status in SETTLED_STATUSES for status in statuses):
            if all(status == SequenceStatus.PENDING for status in statuses):
                return MomentStatus.PENDING
            return MomentStatus.IN_PROGRESS
        completed = sum(1 for status in statuses if status == SequenceStatus.COMPLETE)
        if completed == len(statuses):
            return MomentStatus.COMPLETE
        if completed:
            return MomentStatus.PARTIAL
        return MomentStatus.FAILED

    def require_plan(self) -> Plan:
        if self.plan is None:
            raise ValueError(f"Moment {self.index} has no plan")
        return self.plan


class Progress(StudioModel):
    message: str = ""
    percent: int = 0


class StageTransition(StudioModel):
    source: SessionStage | None
    target: SessionStage
    reason: str | None = None
    at: datetime = Field(default_factory=_utcnow)


class RegenerationTarget(StudioModel):
    moment_index: int
    order: int
    started_at: datetime = Field(default_factory=_utcnow)


class MomentInput(StudioModel):
    """Caller-supplied description of one moment to plan."""

    highlight: Highlight
    direction: str = ""
    cues: list[TranscriptCue] = Field(default_factory=list)


class Session(StudioModel):
    id: str
    stage: SessionStage = SessionStage.UPLOADED
    progress: Progress = Field(default_factory=Progress)
    error: str | None = None
    moments: list[Moment] = Field(default_factory=list)
    estimated_minutes: int | None = None
    total_cost: float = 0.0
    stage_history: list[StageTransition] = Field(default_factory=list)
    regeneration: RegenerationTarget | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def can_transition(self, target: SessionStage) -> bool:
        if target in STAGE_TRANSITIONS[self.stage]:
            return True
        if self.regeneration is not None:
            return target in REGENERATE_TRANSITIONS.get(self.stage, frozenset())
        return False

    def mark_stage(self, target: SessionStage, reason: str | None = None) -> None:
        if not self.can_transition(target):
            raise InvalidStageTransition(self.stage.value, target.value)
        self.stage_history.append(StageTransition(source=self.stage, target=target, reason=reason))
        emit_event(
            TelemetryEvent(
                name="stage_transition",
                attributes={
                    "session_id": self.id,
                    "source": self.stage.value,
                    "target": target.value,
                    "reason": reason,
                    "regeneration": self.regeneration is not None,
                },
            )
        )
        self.stage = target
        self.updated_at = _utcnow()

    def set_progress(self, message: str, percent: int | None = None, *, monotonic: bool = True) -> None:
        if percent is None:
            percent = self.progress.percent
        percent = max(0, min(100, int(percent)))
        if monotonic:
            percent = max(percent, self.progress.percent)
        self.progress = Progress(message=message, percent=percent)
        self.updated_at = _utcnow()

    def reset_progress(self, message: str = "") -> None:
        self.progress = Progress(message=message, percent=0)

    def get_moment(self, index: int) -> Moment:
        for moment in self.moments:
            if moment.index == index:
                return moment
        raise KeyError(f"Moment {index} not found in session {self.id}")

    def get_sequence(self, moment_index: int, order: int) -> SequenceBase:
        plan = self.get_moment(moment_index).require_plan()
        seq = plan.get(order)
        if seq is None:
            raise KeyError(f"Sequence {order} not found in moment {moment_index}")
        return seq

    def recompute_total_cost(self) -> float:
        total = 0.0
        for moment in self.moments:
            if moment.plan:
                total += sum(seq.cost for seq in moment.plan.sequences)
        self.total_cost = round(total, 4)
        return self.total_cost

    def plans(self) -> list[Plan]:
        return [moment.plan for moment in self.moments if moment.plan is not None]
