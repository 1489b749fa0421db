import pytest

from moment_studio import costs
from moment_studio.sessions.models import Plan


def build_plan():
    return Plan.from_payload(
        {
            "momentTitle": "The Ambush",
            "sequences": [
                {"type": "establishing_shot", "durationSec": 3, "backgroundDescription": "Forest road"},
                {
                    "type": "dialogue",
                    "durationSec": 4,
                    "speaker": "Mira",
                    "lines": ["Get down!"],
                    "backgroundDescription": "Forest road",
                },
                {
                    "type": "dialogue",
                    "durationSec": 4,
                    "speaker": "Tomas",
                    "lines": ["Too late."],
                    "backgroundDescription": "Forest road",
                    "reuseBackgroundFrom": 2,
                },
                {"type": "close_up", "durationSec": 2, "subject": "an arrow", "frameCount": 4},
                {"type": "impact", "durationSec": 1},
            ],
        }
    )


def test_sequence_cost_table():
    plan = build_plan()

    assert [costs.sequence_cost(seq) for seq in plan.sequences] == pytest.approx([0.04, 0.16, 0.12, 0.16, 0.0])
    assert plan.estimated_cost == pytest.approx(0.48)


def test_close_up_without_frame_count_uses_default():
    plan = Plan.from_payload({"sequences": [{"type": "close_up", "durationSec": 2, "subject": "a coin"}]})

    assert costs.sequence_cost(plan.sequences[0]) == pytest.approx(costs.IMAGE_COST_USD * costs.DEFAULT_FRAME_COUNT)


def test_minutes_estimate_rounds_up():
    plan = build_plan()

    # 0.5 + 1.5 + 1.0 + 2.0 + 0.1 generation, 5 exports, 1 overhead
    assert costs.estimate_minutes([plan]) == 12


def test_estimates_are_pure():
    plan = build_plan()
    before = plan.model_dump()

    first = (costs.estimate_plan_cost(plan), costs.estimate_plan_duration(plan), costs.estimate_minutes([plan]))
    second = (costs.estimate_plan_cost(plan), costs.estimate_plan_duration(plan), costs.estimate_minutes([plan]))

    assert first == second
    assert plan.model_dump() == before
    assert plan.total_duration_sec == 14.0


def test_empty_session_only_carries_overhead():
    assert costs.estimate_minutes([]) == 1
