"""Shared fixtures: a temporary SQLite database, a seeded plan and scheduler factories."""

import asyncio
from typing import Dict, List, Optional

import pytest

from renderflow.db import build_engine, build_session_factory, init_database
from renderflow.db.models import PlanVersion, Project, Scene
from renderflow.orchestrator.pipeline import RenderFlags
from renderflow.orchestrator.scheduler import create_scheduler
from renderflow.orchestrator.state import STEPS, RunStep
from renderflow.pipeline import STEP_LIBRARY
from renderflow.services.events import InMemoryBroadcaster
from renderflow.services.file_manager import FileManager
from renderflow.services.run_store import RunStore


@pytest.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'renderflow.db'}")
    await init_database(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> RunStore:
    return RunStore(session_factory)


@pytest.fixture
def files(tmp_path) -> FileManager:
    return FileManager(tmp_path / "artifacts")


@pytest.fixture
async def plan(session_factory) -> PlanVersion:
    """A facts project with a three-scene approved plan."""
    async with session_factory() as session:
        project = Project(
            title="Ocean facts",
            topic="Strange facts about the deep ocean",
            niche_pack_id="facts",
            target_length_sec=15,
        )
        session.add(project)
        await session.flush()

        plan = PlanVersion(
            project_id=project.id,
            hook_selected="You won't believe what lives down there.",
            outline="Hook, three facts, outro",
        )
        session.add(plan)
        await session.flush()

        narrations = [
            "The deep ocean is darker than any night.",
            "Some fish make their own light.",
            "Most of it has never been explored.",
        ]
        for idx, text in enumerate(narrations):
            session.add(
                Scene(
                    plan_version_id=plan.id,
                    idx=idx,
                    narration_text=text,
                    visual_prompt=f"Deep sea scene {idx + 1}",
                    effect_preset="slow_zoom_in",
                    duration_target_sec=5.0,
                    start_time_sec=idx * 5.0,
                    end_time_sec=(idx + 1) * 5.0,
                )
            )
        await session.commit()
        await session.refresh(plan)
    return plan


@pytest.fixture
def broadcaster() -> InMemoryBroadcaster:
    return InMemoryBroadcaster(keep_history=True)


def _no_provider():
    raise AssertionError("A media provider was requested")


@pytest.fixture
def make_scheduler(store, files, broadcaster, tmp_path):
    """Build a scheduler over the shared store with the given flags and steps."""

    def factory(flags: Optional[RenderFlags] = None, steps=None, **kwargs):
        kwargs.setdefault("provider_factory", _no_provider)
        kwargs.setdefault("music_library_dir", tmp_path / "music")
        return create_scheduler(
            store,
            broadcaster=broadcaster,
            flags=flags or RenderFlags(dry_run=True),
            files=files,
            steps=steps or STEP_LIBRARY,
            **kwargs,
        )

    return factory


class FakeSteps:
    """Step bodies that record what ran, add configurable cost and can block.

    gate(run_id, step) returns an (entered, release) pair of events; the step
    sets entered, waits for release and then checks for cancellation unless
    the gate was opened with cooperative=False.
    """

    def __init__(self, costs: Optional[Dict[RunStep, float]] = None):
        self.costs = costs or {}
        self.calls: List[tuple] = []
        self._gates: Dict[tuple, tuple] = {}
        self.extra: Dict[RunStep, object] = {}

    def gate(self, run_id: str, step: RunStep, cooperative: bool = True):
        entered, release = asyncio.Event(), asyncio.Event()
        self._gates[(run_id, step)] = (entered, release, cooperative)
        return entered, release

    def ran(self, run_id: Optional[str] = None) -> List[RunStep]:
        return [step for rid, step in self.calls if run_id is None or rid == run_id]

    def run_order(self) -> List[str]:
        order: List[str] = []
        for rid, _step in self.calls:
            if not order or order[-1] != rid:
                order.append(rid)
        return order

    def _body(self, step: RunStep):
        async def body(ctx):
            gate = self._gates.pop((ctx.run_id, step), None)
            if gate is not None:
                entered, release, cooperative = gate
                entered.set()
                await release.wait()
                if cooperative:
                    ctx.ensure_active()
            self.calls.append((ctx.run_id, step))
            await ctx.report_progress(0.5)
            if step in self.costs:
                ctx.add_cost(self.costs[step])
            extra = self.extra.get(step)
            if extra is not None:
                await extra(ctx)

        return body

    def library(self):
        return {step: self._body(step) for step in STEPS}


@pytest.fixture
def fake_steps() -> FakeSteps:
    return FakeSteps()
