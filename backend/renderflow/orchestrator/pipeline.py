"""Pipeline executor with idempotent, resumable step execution.

Drives one run through the seven canonical steps with:
- Atomic queued -> running start and terminal transitions
- Resume from the persisted completed-step prefix
- Cooperative cancellation at step boundaries and inside steps
- Dry-run failure injection and step delay for tests
- Monotonic progress, persisted before it is published
- QA gate on real renders before declaring success
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

from renderflow.config import RenderConfig, settings
from renderflow.orchestrator.ledger import ArtifactLedger
from renderflow.orchestrator.state import (
    CURRENT_STEP_COMPLETE,
    CURRENT_STEP_ERROR,
    EXECUTION_STATES,
    STEP_MESSAGES,
    STEP_WEIGHTS,
    STEPS,
    RunStatus,
    RunStep,
    completed_weight,
    parse_step,
)
from renderflow.pipeline import STEP_LIBRARY, StepContext, StepFn
from renderflow.schemas.run_state import LogLevel, ResumeState, parse_artifacts, parse_resume_state
from renderflow.services.cancellation import CancellationRegistry
from renderflow.services.events import (
    EventBroadcaster,
    NullBroadcaster,
    RunEvent,
    log_event,
    progress_event,
    state_event,
    step_event,
)
from renderflow.services.file_manager import FileManager
from renderflow.services.niche_packs import caption_style_for
from renderflow.services.providers import MediaProvider, OpenAIMediaProvider
from renderflow.services.qa import QaGate, validate_qa
from renderflow.services.run_store import RunStore

logger = logging.getLogger(__name__)


class RunCanceled(Exception):
    """Raised inside the executor when the run's active flag was cleared."""


class InjectedStepFailure(Exception):
    """Raised when dry-run failure injection targets the current step."""


@dataclass(frozen=True)
class RenderFlags:
    """Resolved render mode flags.

    Failure injection and step delay only apply in dry-run; dry-run is
    never effective in test mode, where rendering is disabled altogether.
    """

    dry_run: bool = False
    fail_step: Optional[RunStep] = None
    step_delay_ms: int = 0
    test_mode: bool = False

    @classmethod
    def from_settings(cls, render_config: Optional[RenderConfig] = None) -> "RenderFlags":
        cfg = render_config or settings.render
        dry_run = cfg.dry_run and not cfg.test_mode
        fail_step = parse_step(cfg.dry_run_fail_step) if dry_run else None
        if dry_run and cfg.dry_run_fail_step and fail_step is None:
            logger.warning(f"Ignoring unknown dry_run_fail_step {cfg.dry_run_fail_step!r}")
        return cls(
            dry_run=dry_run,
            fail_step=fail_step,
            step_delay_ms=max(cfg.dry_run_step_delay_ms, 0) if dry_run else 0,
            test_mode=cfg.test_mode,
        )

    def should_fail(self, step: RunStep) -> bool:
        return self.dry_run and self.fail_step == step


class _RunProgress:
    """Non-decreasing progress for one run, persisted before publish."""

    def __init__(self, executor: "PipelineExecutor", run_id: str, baseline: int):
        self._executor = executor
        self._run_id = run_id
        self.value = baseline

    async def advance_to(self, value: int) -> None:
        value = min(int(value), 100)
        if value <= self.value:
            return
        self.value = value
        await self._executor.record(self._run_id, progress=value)
        self._executor.publish(progress_event(self._run_id, value))


class PipelineExecutor:
    """Runs a queued run to a terminal status.

    Args:
        store: Run persistence
        broadcaster: Event sink; events are published after the write they describe
        cancellation: Active-flag registry shared with the scheduler
        flags: Render mode flags
        files: Artifact tree manager; defaults to settings.storage.artifacts_dir
        steps: Step bodies keyed by step; defaults to STEP_LIBRARY
        provider_factory: Builds the media provider on first paid call
        qa_gate: QA check for the final video; defaults to validate_qa
        music_library_dir: Background music directory
    """

    def __init__(
        self,
        store: RunStore,
        broadcaster: Optional[EventBroadcaster] = None,
        cancellation: Optional[CancellationRegistry] = None,
        flags: Optional[RenderFlags] = None,
        files: Optional[FileManager] = None,
        steps: Optional[Mapping[RunStep, StepFn]] = None,
        provider_factory: Optional[Callable[[], MediaProvider]] = None,
        qa_gate: Optional[QaGate] = None,
        music_library_dir: Optional[Path] = None,
    ):
        self.store = store
        self.broadcaster = broadcaster or NullBroadcaster()
        self.cancellation = cancellation or CancellationRegistry()
        self.flags = flags or RenderFlags.from_settings()
        self.files = files or FileManager()
        self.steps: Dict[RunStep, StepFn] = dict(STEP_LIBRARY if steps is None else steps)
        missing = [s.value for s in STEPS if s not in self.steps]
        if missing:
            raise ValueError(f"No step body registered for: {', '.join(missing)}")
        self._provider_factory = provider_factory or OpenAIMediaProvider
        self.qa_gate: QaGate = qa_gate or validate_qa
        self.music_library_dir = music_library_dir or settings.storage.music_library_dir

    def publish(self, event: RunEvent) -> None:
        try:
            self.broadcaster.publish(event)
        except Exception as e:
            # A broken subscriber must never fail the run
            logger.error(f"Run {event.run_id}: failed to publish {event.kind} event: {e}")

    async def log(self, run_id: str, message: str, level: LogLevel = "info") -> None:
        entry = await self.store.append_log(run_id, message, level)
        if entry is not None:
            self.publish(log_event(run_id, entry))

    async def record(self, run_id: str, **fields) -> None:
        """Write run columns while this execution still owns the run.

        Raises:
            RunCanceled: If a retry re-queued the run meanwhile.
        """
        if not await self.store.update(run_id, expected_statuses=EXECUTION_STATES, **fields):
            raise RunCanceled("Run was re-queued before this execution finished")

    def _ensure_active(self, run_id: str, step: RunStep) -> None:
        if not self.cancellation.is_active(run_id):
            raise RunCanceled(f"Run canceled during {step.value} step")

    async def _before_step(self, run_id: str, step: RunStep) -> None:
        """Dry-run delay, then the cancellation boundary check."""
        if self.flags.dry_run and self.flags.step_delay_ms > 0:
            await asyncio.sleep(self.flags.step_delay_ms / 1000)
        if not self.cancellation.is_active(run_id):
            raise RunCanceled(f"Run canceled before {step.value} step")

    async def execute(self, run_id: str) -> Optional[RunStatus]:
        """Execute a queued run.

        Returns:
            The terminal status this execution produced, or None if the run
            could not be started (missing or no longer queued) or was
            canceled.
        """
        run = await self.store.find(run_id)
        if run is None:
            logger.warning(f"Run {run_id} not found, nothing to execute")
            return None

        resume = parse_resume_state(run.resume_state_json, run_id)
        baseline = completed_weight(resume.completed_steps)

        self.cancellation.activate(run_id)
        try:
            started = await self.store.transition(
                run_id,
                [RunStatus.QUEUED],
                RunStatus.RUNNING,
                progress=baseline,
                current_step="",
            )
            if not started:
                logger.info(f"Run {run_id} is no longer queued, skipping")
                return None

            self.publish(state_event(run_id, RunStatus.RUNNING.value, baseline, ""))
            logger.info(
                f"Starting run {run_id} "
                f"(dry_run={self.flags.dry_run}, completed={[s.value for s in resume.completed_steps]})"
            )
            return await self._run_steps(run_id, run.plan_version_id, resume, baseline, run.artifacts_json)
        finally:
            self.cancellation.discard(run_id)
            self.store.forget(run_id)

    async def _run_steps(
        self,
        run_id: str,
        plan_version_id: str,
        resume: ResumeState,
        baseline: int,
        artifacts_json: str,
    ) -> Optional[RunStatus]:
        ledger = ArtifactLedger(parse_artifacts(artifacts_json, run_id))
        progress = _RunProgress(self, run_id, baseline)
        step_log: Dict[str, float] = {}
        pipeline_start = time.monotonic()
        current: Optional[RunStep] = None
        project_id: Optional[str] = None

        try:
            project, plan, scenes = await self.store.load_plan(plan_version_id)
            project_id = project.id
            await self.store.set_project_status(project.id, "RENDERING")

            paths = self.files.get_run_paths(project.id, run_id)
            ledger.record("imagesDir", self.files.relative(paths.images))
            ledger.record("audioDir", self.files.relative(paths.audio))
            ledger.record("captionsDir", self.files.relative(paths.captions))
            if self.flags.dry_run:
                ledger.record("dryRun", True)
            await self.store.merge_artifacts(run_id, ledger.snapshot())

            provider: Optional[MediaProvider] = None

            def get_provider() -> MediaProvider:
                nonlocal provider
                if self.flags.dry_run:
                    raise RuntimeError("Media provider requested during a dry run")
                if provider is None:
                    provider = self._provider_factory()
                return provider

            for step in STEPS:
                if resume.is_completed(step):
                    continue

                await self._before_step(run_id, step)
                current = step

                if self.flags.should_fail(step):
                    raise InjectedStepFailure(f"Dry-run failure injected at {step.value}")

                await self.record(run_id, current_step=step.value)
                self.publish(step_event(run_id, step.value, STEP_MESSAGES[step]))
                await self.log(run_id, STEP_MESSAGES[step])

                step_base = progress.value
                weight = STEP_WEIGHTS[step]

                async def report_progress(fraction: float, _base=step_base, _weight=weight) -> None:
                    fraction = min(max(fraction, 0.0), 1.0)
                    await progress.advance_to(_base + round(fraction * _weight))

                async def step_log_fn(message: str, level: LogLevel = "info") -> None:
                    await self.log(run_id, message, level)

                ctx = StepContext(
                    run_id=run_id,
                    step=step,
                    project=project,
                    plan=plan,
                    scenes=scenes,
                    paths=paths,
                    files=self.files,
                    ledger=ledger,
                    store=self.store,
                    dry_run=self.flags.dry_run,
                    caption_style=caption_style_for(project.niche_pack_id),
                    music_library_dir=self.music_library_dir,
                    log=step_log_fn,
                    report_progress=report_progress,
                    ensure_active=lambda _step=step: self._ensure_active(run_id, _step),
                    get_provider=get_provider,
                )

                step_start = time.monotonic()
                await self.steps[step](ctx)
                step_log[step.value] = time.monotonic() - step_start
                logger.info(f"Run {run_id}: {step.value} completed in {step_log[step.value]:.2f}s")

                resume = resume.with_completed(step)
                if not await self.store.save_resume_state(run_id, resume, expected_statuses=EXECUTION_STATES):
                    raise RunCanceled(f"Run was re-queued before {step.value} was recorded")
                await self.store.merge_artifacts(run_id, ledger.snapshot())
                await progress.advance_to(step_base + weight)
                current = None

            if not self.cancellation.is_active(run_id):
                raise RunCanceled("Run canceled before completion")

            if not self.flags.dry_run and paths.final_video.exists():
                qa = await self.qa_gate(paths.final_video)
                ledger.record("qaResult", qa.model_dump(by_alias=True))
                if not qa.passed:
                    return await self._finish_qa_failed(run_id, ledger, qa.details)

            return await self._finish_done(run_id, project.id, ledger, pipeline_start)

        except RunCanceled as e:
            # cancel() owns the status transition; record where execution stopped
            logger.info(f"Run {run_id}: {e}")
            ledger.record_cost_estimate()
            await self.store.merge_artifacts(run_id, ledger.snapshot())
            await self.log(run_id, str(e), "warn")
            return None

        except Exception as e:
            step_name = current.value if current else "setup"
            logger.error(f"Run {run_id} failed at {step_name}: {type(e).__name__}: {e}")
            return await self._finish_failed(run_id, project_id, ledger, e)

    async def _finish_done(
        self, run_id: str, project_id: str, ledger: ArtifactLedger, pipeline_start: float
    ) -> Optional[RunStatus]:
        ledger.record_cost_estimate()
        await self.store.merge_artifacts(run_id, ledger.snapshot())
        done = await self.store.transition(
            run_id,
            [RunStatus.RUNNING],
            RunStatus.DONE,
            progress=100,
            current_step=CURRENT_STEP_COMPLETE,
        )
        if not done:
            logger.info(f"Run {run_id} left running before completion, not marking done")
            return None
        await self.log(run_id, "Render complete!")
        await self.store.set_project_status(project_id, "DONE")
        self.publish(RunEvent(kind="done", run_id=run_id, data={"progress": 100, "artifacts": ledger.snapshot()}))
        logger.info(f"Run {run_id} completed in {time.monotonic() - pipeline_start:.2f}s")
        return RunStatus.DONE

    async def _finish_qa_failed(
        self, run_id: str, ledger: ArtifactLedger, details: Optional[str]
    ) -> Optional[RunStatus]:
        ledger.record_cost_estimate()
        await self.store.merge_artifacts(run_id, ledger.snapshot())
        changed = await self.store.transition(
            run_id,
            [RunStatus.RUNNING],
            RunStatus.QA_FAILED,
            progress=100,
            current_step=CURRENT_STEP_COMPLETE,
        )
        if not changed:
            return None
        await self.log(run_id, f"QA failed: {details or 'checks failed'}", "warn")
        self.publish(state_event(run_id, RunStatus.QA_FAILED.value, 100, CURRENT_STEP_COMPLETE))
        logger.warning(f"Run {run_id} failed QA: {details}")
        return RunStatus.QA_FAILED

    async def _finish_failed(
        self,
        run_id: str,
        project_id: Optional[str],
        ledger: ArtifactLedger,
        error: Exception,
    ) -> Optional[RunStatus]:
        ledger.record_cost_estimate()
        await self.store.merge_artifacts(run_id, ledger.snapshot())
        changed = await self.store.transition(
            run_id,
            [RunStatus.RUNNING],
            RunStatus.FAILED,
            current_step=CURRENT_STEP_ERROR,
        )
        if not changed:
            logger.info(f"Run {run_id} was no longer running when it failed")
            return None
        message = str(error) or type(error).__name__
        await self.log(run_id, f"Error: {message}", "error")
        if project_id is not None:
            await self.store.set_project_status(project_id, "FAILED")
        self.publish(RunEvent(kind="failed", run_id=run_id, data={"error": message}))
        return RunStatus.FAILED
