import json

import pytest

from conftest import moment_input
from moment_studio.director.agents import DirectorAgents, RuleBasedTechnicalValidator
from moment_studio.director.pipeline import DirectorPipeline
from moment_studio.errors import InvalidStageTransition, PlanValidationError, SessionBusyError
from moment_studio.generation.orchestrator import GenerationOrchestrator
from moment_studio.retry import RetryPolicy
from moment_studio.serialization import dumps
from moment_studio.sessions.models import MomentStatus, Session, SessionStage, SequenceStatus
from moment_studio.sessions.repository import SessionStore
from moment_studio.sessions.service import SessionService

CUES = [
    {"startSec": 2, "endSec": 4, "speaker": "DM", "text": "The doors slam shut."},
    {"startSec": 5, "endSec": 7, "speaker": "Rook", "text": "Nobody move."},
]


class RefusingPlanner:
    async def plan(self, context):
        raise PlanValidationError("Planner output was not valid JSON")


def test_stage_graph_allows_documented_moves():
    session = Session(id="s1")

    for target in (SessionStage.ANALYZING, SessionStage.PLAN_READY, SessionStage.GENERATING, SessionStage.CANCELLED):
        session.mark_stage(target)

    assert session.stage == SessionStage.CANCELLED
    assert [entry.target for entry in session.stage_history][-1] == SessionStage.CANCELLED
    assert session.stage_history[0].source == SessionStage.UPLOADED


@pytest.mark.parametrize(
    "path, illegal",
    [
        ([], SessionStage.GENERATING),
        ([SessionStage.ANALYZING], SessionStage.COMPLETE),
        ([SessionStage.ANALYZING, SessionStage.FAILED], SessionStage.PLAN_READY),
        (
            [SessionStage.ANALYZING, SessionStage.PLAN_READY, SessionStage.GENERATING, SessionStage.EXPORTING, SessionStage.COMPLETE],
            SessionStage.GENERATING,
        ),
    ],
)
def test_stage_graph_rejects_undocumented_moves(path, illegal):
    session = Session(id="s2")
    for target in path:
        session.mark_stage(target)

    with pytest.raises(InvalidStageTransition):
        session.mark_stage(illegal)


def test_progress_is_monotonic_unless_reset():
    session = Session(id="s3")
    session.set_progress("halfway", 50)
    session.set_progress("oops", 20)
    assert session.progress.percent == 50

    session.set_progress("clamped", 140)
    assert session.progress.percent == 100

    session.reset_progress("again")
    assert session.progress.percent == 0


def test_sequence_status_never_regresses():
    from moment_studio.sessions.models import Plan

    seq = Plan.from_payload({"sequences": [{"type": "impact", "durationSec": 1}]}).sequences[0]
    seq.advance(SequenceStatus.GENERATING)
    seq.advance(SequenceStatus.GENERATED)

    with pytest.raises(ValueError):
        seq.advance(SequenceStatus.PENDING)
    with pytest.raises(ValueError):
        seq.add_cost(-0.01)


@pytest.mark.asyncio
async def test_store_create_and_lookup(store):
    session = await store.create([moment_input(), moment_input(reference="ep2")])

    assert [moment.index for moment in session.moments] == [1, 2]
    assert session.stage == SessionStage.UPLOADED
    assert (await store.get(session.id)) is session
    assert (await store.list_sessions())[0].id == session.id
    with pytest.raises(KeyError):
        await store.get("missing")


@pytest.mark.asyncio
async def test_snapshot_written_on_every_upsert(store, storage):
    session = await store.create([moment_input()])
    path = storage.resolve(storage.snapshot_path(session.id))

    payload = json.loads(path.read_text())
    assert payload["stage"] == "uploaded"
    assert payload["moments"][0]["highlight"]["reference"] == "ep1"

    session.mark_stage(SessionStage.ANALYZING)
    await store.upsert(session)
    assert store.load_snapshot(session.id).stage == SessionStage.ANALYZING


@pytest.mark.asyncio
async def test_snapshot_failure_does_not_interrupt(store, monkeypatch, caplog):
    session = await store.create([moment_input()])

    def broken(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(store.storage, "save_json", broken)
    session.mark_stage(SessionStage.ANALYZING)

    assert (await store.upsert(session)) is session
    assert store.snapshot(session) is None
    assert "disk full" in caplog.text


@pytest.mark.asyncio
async def test_lease_rejects_second_claimant(store):
    session = await store.create([moment_input()])

    async with store.guard(session.id, "planning") as lease:
        assert store.active_lease(session.id) is lease
        with pytest.raises(SessionBusyError) as excinfo:
            store.claim(session.id, "generation")
        assert excinfo.value.holder == "planning"

    assert not store.is_busy(session.id)


def test_snapshot_serializer_rejects_binary():
    with pytest.raises(TypeError):
        dumps({"blob": b"\x89PNG"})


def make_service(store, storage, clock, planner=None):
    from moment_studio.director.agents import get_director_agents

    agents = get_director_agents("mock")
    if planner is not None:
        agents = DirectorAgents(planner=planner, technical=agents.technical, creative=agents.creative, scene=agents.scene)
    director = DirectorPipeline(agents, transient_policy=RetryPolicy(1, 0.0), call_timeout=5.0, sleep=clock.sleep)
    orchestrator = GenerationOrchestrator(
        store=store, storage=storage, interval_seconds=0, sleep=clock.sleep, director=director
    )
    return SessionService(store=store, director=director, orchestrator=orchestrator)


@pytest.mark.asyncio
async def test_service_plans_generates_and_regenerates(store, storage, clock):
    service = make_service(store, storage, clock)
    session = await service.create_session([moment_input(cues=CUES), moment_input(reference="ep2", cues=CUES)])

    session = await service.plan_session(session.id)

    assert session.stage == SessionStage.PLAN_READY
    assert session.progress.percent == 50
    assert session.estimated_minutes and session.estimated_minutes > 0
    for moment in session.moments:
        assert moment.review.attempts == 1
        assert moment.review.quality_degraded is False
        assert [seq.type for seq in moment.plan.sequences] == ["establishing_shot", "dm_description", "dialogue"]

    session = await service.start_generation(session.id)
    assert session.stage == SessionStage.COMPLETE
    assert all(moment.status == MomentStatus.COMPLETE for moment in session.moments)

    session = await service.start_regeneration(session.id, 2, 3)
    assert session.stage == SessionStage.COMPLETE
    assert session.moments[1].plan.sequences[2].status == SequenceStatus.COMPLETE


@pytest.mark.asyncio
async def test_service_activity_reports_stage_timeline(store, storage, clock):
    service = make_service(store, storage, clock)
    session = await service.create_session([moment_input(cues=CUES)])
    other = await service.create_session([moment_input(reference="ep9", cues=CUES)])
    await service.plan_session(other.id)

    await service.plan_session(session.id)
    await service.start_generation(session.id)
    session = await service.start_regeneration(session.id, 1, 2, mode="rewrite", instructions="Thunder outside")

    assert session.moments[0].plan.sequences[1].visual_notes == "Thunder outside"
    activity = service.activity(session.id)
    assert activity["stage_timeline"] == [
        ("uploaded", "analyzing"),
        ("analyzing", "plan_ready"),
        ("plan_ready", "generating"),
        ("generating", "exporting"),
        ("exporting", "complete"),
        ("complete", "generating"),
        ("generating", "exporting"),
        ("exporting", "complete"),
    ]
    assert activity["events_by_name"]["stage_transition"] == 8
    assert activity["events_by_name"]["session_created"] == 1
    assert service.activity(other.id)["stage_timeline"] == [("uploaded", "analyzing"), ("analyzing", "plan_ready")]


@pytest.mark.asyncio
async def test_service_planning_failure_marks_session_failed(store, storage, clock):
    service = make_service(store, storage, clock, planner=RefusingPlanner())
    session = await service.create_session([moment_input(cues=CUES)])

    with pytest.raises(PlanValidationError):
        await service.plan_session(session.id)

    session = await service.get(session.id)
    assert session.stage == SessionStage.FAILED
    assert session.progress.message.startswith("Analysis failed:")
    assert "not valid JSON" in session.error
    assert not store.is_busy(session.id)


@pytest.mark.asyncio
async def test_service_rejects_planning_while_busy(store, storage, clock):
    service = make_service(store, storage, clock)
    session = await service.create_session([moment_input(cues=CUES)])
    store.claim(session.id, "generation")

    with pytest.raises(SessionBusyError):
        await service.plan_session(session.id)
    assert (await service.get(session.id)).stage == SessionStage.UPLOADED


@pytest.mark.asyncio
async def test_update_plan_renumbers_and_reestimates(store, storage, clock):
    service = make_service(store, storage, clock)
    session = await service.create_session([moment_input(cues=CUES)])
    session = await service.plan_session(session.id)
    before_minutes = session.estimated_minutes

    session = await service.update_plan(
        session.id,
        1,
        [
            {"order": 7, "type": "impact", "durationSec": 1, "effect": "shake"},
            {
                "order": 3,
                "type": "dialogue",
                "durationSec": 4,
                "speaker": "Rook",
                "lines": ["Nobody move."],
                "backgroundDescription": "Vault",
                "reuseBackgroundFrom": 1,
            },
            {"type": "close_up", "durationSec": 3, "subject": "a trembling key", "frameCount": 6},
        ],
    )

    plan = session.moments[0].plan
    assert [seq.order for seq in plan.sequences] == [1, 2, 3]
    assert [seq.type for seq in plan.sequences] == ["impact", "dialogue", "close_up"]
    assert plan.sequences[1].reuse_background_from is None
    assert [seq.start_offset_sec for seq in plan.sequences] == [0.0, 1.0, 5.0]
    assert session.estimated_minutes != before_minutes


@pytest.mark.asyncio
async def test_update_plan_only_in_plan_ready(store, storage, clock):
    service = make_service(store, storage, clock)
    session = await service.create_session([moment_input(cues=CUES)])

    with pytest.raises(ValueError):
        await service.update_plan(session.id, 1, [{"type": "impact", "durationSec": 1}])


@pytest.mark.asyncio
async def test_replanning_from_failed_state(store, storage, clock):
    service = make_service(store, storage, clock, planner=RefusingPlanner())
    session = await service.create_session([moment_input(cues=CUES)])
    with pytest.raises(PlanValidationError):
        await service.plan_session(session.id)

    service.director = make_service(store, storage, clock).director
    session = await service.plan_session(session.id)

    assert session.stage == SessionStage.PLAN_READY
    assert session.error is None


@pytest.mark.asyncio
async def test_create_session_requires_moments(store, storage, clock):
    service = make_service(store, storage, clock)

    with pytest.raises(ValueError):
        await service.create_session([])


def test_default_store_snapshots_under_output_root():
    from moment_studio.config import settings
    from moment_studio.sessions.repository import session_store

    assert isinstance(session_store, SessionStore)
    assert session_store.storage.root == settings.output_root
