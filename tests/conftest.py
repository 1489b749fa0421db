import os
import sys
import tempfile
from pathlib import Path
from typing import Any

import pytest

# Load .env file first before any other imports
from dotenv import load_dotenv
load_dotenv(Path(__file__).resolve().parents[1] / ".env")

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

# Settings are read once at import time, so pin offline providers first.
os.environ["APP_ENV"] = "development"
os.environ["LLM_PROVIDER_MODE"] = "mock"
os.environ["IMAGE_PROVIDER_MODE"] = "mock"
os.environ.setdefault("OUTPUT_ROOT", tempfile.mkdtemp(prefix="moment-studio-tests-"))


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def _reset_telemetry():
    from moment_studio.instrumentation import telemetry_store

    telemetry_store.reset()
    yield
    telemetry_store.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(tmp_path):
    from moment_studio.storage import ArtifactStorage

    return ArtifactStorage(tmp_path / "output")


@pytest.fixture
def store(storage):
    from moment_studio.sessions.repository import SessionStore

    return SessionStore(storage)


@pytest.fixture
def generator():
    from moment_studio.providers import MockAssetGenerator

    return MockAssetGenerator()


@pytest.fixture
def orchestrator(store, storage, generator, clock):
    """Orchestrator wired to the temporary store with a fake clock."""
    from moment_studio.generation.orchestrator import GenerationOrchestrator

    return GenerationOrchestrator(
        store=store,
        generator=generator,
        storage=storage,
        interval_seconds=10.0,
        clock=clock,
        sleep=clock.sleep,
    )


def moment_input(reference: str = "ep1", title: str = "The Ambush", cues: list[dict[str, Any]] | None = None):
    from moment_studio.sessions.models import MomentInput

    return MomentInput.model_validate(
        {
            "highlight": {"reference": reference, "title": title, "startSec": 0, "endSec": 60},
            "direction": "",
            "cues": cues or [],
        }
    )


@pytest.fixture
def make_ready_session(store):
    """Factory creating a session whose moments already carry approved plans."""
    from moment_studio.sessions.models import Plan, SessionStage

    async def factory(*moment_sequences: list[dict[str, Any]]):
        session = await store.create([moment_input(title=f"Moment {idx}") for idx in range(1, len(moment_sequences) + 1)])
        for moment, sequences in zip(session.moments, moment_sequences):
            moment.plan = Plan.from_payload({"momentTitle": moment.highlight.title, "sequences": sequences})
        session.mark_stage(SessionStage.ANALYZING)
        session.mark_stage(SessionStage.PLAN_READY)
        session.set_progress("Plan ready for review", 50)
        await store.upsert(session)
        return session

    return factory
