"""Single-slot run scheduler with a FIFO wait queue.

At most one run executes per process. Further render requests wait in
submission order and are promoted when the active run terminates. Retry,
cancel and the restart sweep are the only operations that mutate a run
from outside the executor, and all of them use conditional status updates.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Set

from renderflow.db.models import Run
from renderflow.orchestrator.pipeline import PipelineExecutor, RenderFlags
from renderflow.orchestrator.state import (
    CURRENT_STEP_ERROR,
    IN_PROGRESS_STATES,
    RETRYABLE_STATES,
    RunStatus,
    parse_step,
    truncate_completed_steps,
)
from renderflow.schemas.run_state import ResumeState
from renderflow.services.cancellation import CancellationRegistry
from renderflow.services.events import EventBroadcaster, RunEvent, state_event
from renderflow.services.run_store import RunStore

logger = logging.getLogger(__name__)

RECOVERY_MESSAGE = (
    'Run was in "running" state at server start; marked as failed. Use Retry to resume.'
)


class SchedulerError(Exception):
    """Base class for rejected scheduler requests."""


class RunNotFoundError(SchedulerError):
    pass


class RunInProgressError(SchedulerError):
    pass


class RunNotRetryableError(SchedulerError):
    pass


class RunNotActiveError(SchedulerError):
    pass


class RenderingDisabledError(SchedulerError):
    pass


@dataclass
class RecoveryReport:
    """Outcome of the restart sweep."""

    failed: List[str] = field(default_factory=list)
    requeued: List[str] = field(default_factory=list)


class RunScheduler:
    """Owns the active-run slot and the wait queue.

    All slot and queue mutations happen under one asyncio.Lock. Execution
    runs in a background task; when it returns (for any reason) the slot is
    released and the next queued run is promoted.
    """

    def __init__(self, executor: PipelineExecutor):
        self.executor = executor
        self.store: RunStore = executor.store
        self.cancellation: CancellationRegistry = executor.cancellation
        self.flags: RenderFlags = executor.flags
        self._lock = asyncio.Lock()
        self._active: Optional[str] = None
        self._queue: Deque[str] = deque()
        self._tasks: Set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def broadcaster(self) -> EventBroadcaster:
        return self.executor.broadcaster

    @property
    def active_run_id(self) -> Optional[str]:
        return self._active

    def queued_run_ids(self) -> List[str]:
        return list(self._queue)

    async def submit(self, run_id: str) -> None:
        """Start run_id now if the slot is free, otherwise queue it."""
        async with self._lock:
            # The active id may be resubmitted after a retry while its previous
            # execution is still unwinding; it is promoted again once it ends
            if run_id in self._queue:
                logger.info(f"Run {run_id} already queued")
                return
            self._queue.append(run_id)
            self._idle.clear()
            if self._active is None:
                await self._promote_locked()
            else:
                logger.info(
                    f"Run {run_id} queued behind {self._active} (position {len(self._queue)})"
                )

    async def _promote_locked(self) -> None:
        """Start the first startable queued run. Caller holds the lock."""
        while self._queue:
            run_id = self._queue.popleft()
            try:
                run = await self.store.find(run_id)
            except Exception as e:
                logger.error(f"Failed to load queued run {run_id}, skipping: {e}")
                continue
            if run is None:
                logger.warning(f"Queued run {run_id} no longer exists, skipping")
                continue
            if run.status != RunStatus.QUEUED.value:
                logger.info(f"Queued run {run_id} is {run.status}, skipping")
                continue

            self._active = run_id
            task = asyncio.create_task(self._run(run_id), name=f"render-{run_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            logger.info(f"Promoted run {run_id} to active")
            return

        self._active = None
        self._idle.set()

    async def _run(self, run_id: str) -> None:
        try:
            await self.executor.execute(run_id)
        except Exception as e:
            logger.exception(f"Run {run_id} crashed outside a step: {e}")
            await self._fail_crashed(run_id, e)
        finally:
            await self.on_terminate(run_id)

    async def _fail_crashed(self, run_id: str, error: Exception) -> None:
        try:
            changed = await self.store.transition(
                run_id,
                [RunStatus.QUEUED, RunStatus.RUNNING],
                RunStatus.FAILED,
                current_step=CURRENT_STEP_ERROR,
            )
            if changed:
                await self.executor.log(run_id, f"Error: {error}", "error")
                self.executor.publish(RunEvent(kind="failed", run_id=run_id, data={"error": str(error)}))
        except Exception as e:
            logger.error(f"Run {run_id}: could not record crash: {e}")

    async def on_terminate(self, run_id: str) -> None:
        """Release the slot held by run_id and promote the next queued run."""
        async with self._lock:
            if self._active == run_id:
                self._active = None
            if self._active is None:
                await self._promote_locked()

    async def request_render(self, plan_version_id: str) -> Run:
        """Create a queued run for a plan version and submit it.

        Raises:
            RenderingDisabledError: In test mode.
            ValueError: If the plan version does not exist.
        """
        if self.flags.test_mode:
            raise RenderingDisabledError("Rendering disabled in test mode")
        project, _plan, _scenes = await self.store.load_plan(plan_version_id)
        run = await self.store.create_run(project.id, plan_version_id)
        await self.submit(run.id)
        return run

    async def retry(self, run_id: str, from_step: Optional[str] = None) -> Run:
        """Re-queue a failed, canceled or QA-failed run.

        Completed steps are truncated to the prefix strictly before
        from_step (empty when from_step is missing or unknown).

        Raises:
            RenderingDisabledError: In test mode.
            RunNotFoundError: If the run does not exist.
            RunInProgressError: If the run is queued or running.
            RunNotRetryableError: If the run is in any other state.
        """
        if self.flags.test_mode:
            raise RenderingDisabledError("Rendering disabled in test mode")

        resume = ResumeState(completed_steps=truncate_completed_steps(from_step))
        changed = await self.store.transition(
            run_id,
            RETRYABLE_STATES,
            RunStatus.QUEUED,
            resume_state_json=resume.to_json(),
            current_step="",
        )
        if not changed:
            run = await self.store.find(run_id)
            if run is None:
                raise RunNotFoundError("Run not found")
            if run.status in {s.value for s in IN_PROGRESS_STATES}:
                raise RunInProgressError("Run is already in progress")
            raise RunNotRetryableError("Run is not retryable from current state")

        # A cancel flag left over from the previous attempt must not stop this one
        self.cancellation.discard(run_id)

        step = parse_step(from_step)
        origin = step.value if step else "the beginning"
        await self.executor.log(run_id, f"Retry requested from {origin}")

        run = await self.store.find(run_id)
        self.executor.publish(state_event(run_id, RunStatus.QUEUED.value, run.progress, ""))
        logger.info(f"Run {run_id} re-queued from {origin}")
        await self.submit(run_id)
        return run

    async def cancel(self, run_id: str) -> None:
        """Cancel a queued or running run.

        Raises:
            RunNotFoundError: If the run does not exist.
            RunNotActiveError: If the run is not queued or running.
        """
        run = await self.store.find(run_id)
        if run is None:
            raise RunNotFoundError("Run not found")

        self.cancellation.cancel(run_id)
        async with self._lock:
            if run_id in self._queue:
                self._queue.remove(run_id)
                if self._active is None and not self._queue:
                    self._idle.set()

        changed = await self.store.transition(
            run_id,
            IN_PROGRESS_STATES,
            RunStatus.CANCELED,
        )
        if not changed:
            self.cancellation.discard(run_id)
            raise RunNotActiveError("Run is not in progress")

        async with self._lock:
            # Only an executing run still reads its flag; its executor drops it on exit
            if self._active != run_id:
                self.cancellation.discard(run_id)

        await self.executor.log(run_id, "Run canceled by user", "warn")
        self.executor.publish(RunEvent(kind="canceled", run_id=run_id, data={"status": RunStatus.CANCELED.value}))
        logger.info(f"Run {run_id} canceled")

    async def recover(self) -> RecoveryReport:
        """Restart sweep.

        Runs persisted as running cannot be resumed safely, so they are marked
        failed with a log entry asking the operator to retry. Persisted queued
        runs are re-enqueued in creation order.
        """
        report = RecoveryReport()

        for run in await self.store.list_runs([RunStatus.RUNNING]):
            changed = await self.store.transition(
                run.id,
                [RunStatus.RUNNING],
                RunStatus.FAILED,
                current_step=CURRENT_STEP_ERROR,
            )
            if changed:
                await self.store.append_log(run.id, RECOVERY_MESSAGE, "warn")
                report.failed.append(run.id)
                logger.warning(f"Run {run.id} was running at startup, marked failed")

        for run in await self.store.list_runs([RunStatus.QUEUED]):
            await self.submit(run.id)
            report.requeued.append(run.id)

        if report.failed or report.requeued:
            logger.info(
                f"Recovery: {len(report.failed)} run(s) failed, {len(report.requeued)} re-queued"
            )
        return report

    async def wait_idle(self) -> None:
        """Wait until no run is active and the queue is empty."""
        while True:
            await self._idle.wait()
            async with self._lock:
                if self._active is None and not self._queue:
                    return


def create_scheduler(
    store: RunStore,
    broadcaster: Optional[EventBroadcaster] = None,
    flags: Optional[RenderFlags] = None,
    **executor_kwargs,
) -> RunScheduler:
    """Build a scheduler and its executor sharing one cancellation registry."""
    executor = PipelineExecutor(
        store,
        broadcaster=broadcaster,
        cancellation=CancellationRegistry(),
        flags=flags or RenderFlags.from_settings(),
        **executor_kwargs,
    )
    return RunScheduler(executor)
