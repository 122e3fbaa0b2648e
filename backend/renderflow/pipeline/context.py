"""Execution context handed to each render step."""

from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List

from renderflow.config import CaptionStyleConfig
from renderflow.db.models import PlanVersion, Project, Scene
from renderflow.orchestrator.ledger import ArtifactLedger
from renderflow.orchestrator.state import RunStep
from renderflow.schemas.run_state import LogLevel
from renderflow.services.file_manager import FileManager, RunPaths
from renderflow.services.providers import MediaProvider
from renderflow.services.run_store import RunStore

LogFn = Callable[[str, LogLevel], Awaitable[None]]


@dataclass
class StepContext:
    """Everything a step body needs, bound to one run.

    report_progress takes the completed fraction (0..1) of the current step;
    ensure_active raises when the run has been canceled and must be called
    between units of work so a cancel takes effect mid-step.
    """

    run_id: str
    step: RunStep
    project: Project
    plan: PlanVersion
    scenes: List[Scene]
    paths: RunPaths
    files: FileManager
    ledger: ArtifactLedger
    store: RunStore
    dry_run: bool
    caption_style: CaptionStyleConfig
    music_library_dir: Path
    log: LogFn
    report_progress: Callable[[float], Awaitable[None]]
    ensure_active: Callable[[], None]
    get_provider: Callable[[], MediaProvider]

    async def info(self, message: str) -> None:
        await self.log(message, "info")

    async def warn(self, message: str) -> None:
        await self.log(message, "warn")

    def provider(self) -> MediaProvider:
        return self.get_provider()

    def add_cost(self, usd: float) -> None:
        self.ledger.add_cost(self.step, usd)

    def record(self, key: str, path_or_value) -> None:
        """Record an artifact; paths are stored relative to the artifacts dir."""
        if isinstance(path_or_value, Path):
            path_or_value = self.files.relative(path_or_value)
        self.ledger.record(key, path_or_value)


StepFn = Callable[[StepContext], Awaitable[None]]
