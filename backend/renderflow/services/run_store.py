"""Run persistence helpers (service layer).

RunStore encapsulates the DB logic so the scheduler and executor never deal
with sessions directly. Every method opens a short-lived session and commits
before returning, so a caller that publishes an event after awaiting a store
call never announces state that is not yet durable.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from renderflow.db.models import PlanVersion, Project, Run, Scene
from renderflow.orchestrator.state import RunStatus
from renderflow.schemas.run_state import (
    LogEntry,
    LogLevel,
    ResumeState,
    dump_logs,
    parse_artifacts,
    parse_logs,
)

logger = logging.getLogger(__name__)


class RunStore:
    """Read/update access to Run records keyed by run id.

    Log, artifact and resume-state documents are read-modify-written under a
    per-run asyncio.Lock so concurrent appends (executor and cancel request)
    never drop entries.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._doc_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, run_id: str) -> asyncio.Lock:
        lock = self._doc_locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            self._doc_locks[run_id] = lock
        return lock

    def forget(self, run_id: str) -> None:
        """Drop the per-run lock once a run is no longer active."""
        lock = self._doc_locks.get(run_id)
        if lock is not None and not lock.locked():
            del self._doc_locks[run_id]

    async def find(self, run_id: str) -> Optional[Run]:
        async with self._session_factory() as session:
            return await session.get(Run, run_id)

    async def create_run(self, project_id: str, plan_version_id: str) -> Run:
        """Create a queued run with empty logs, artifacts and resume state."""
        run = Run(
            project_id=project_id,
            plan_version_id=plan_version_id,
            status=RunStatus.QUEUED.value,
            progress=0,
            current_step="",
            logs_json="[]",
            artifacts_json="{}",
            resume_state_json="{}",
        )
        async with self._session_factory() as session:
            session.add(run)
            await session.commit()
            await session.refresh(run)
        logger.info(f"Created run {run.id} for plan version {plan_version_id}")
        return run

    async def update(
        self,
        run_id: str,
        expected_statuses: Optional[Iterable[RunStatus]] = None,
        **fields: Any,
    ) -> bool:
        """Set columns on a run.

        With expected_statuses the write only lands while the run is in one of
        them. Returns False if the run is missing or the status did not match.
        """
        if "status" in fields and isinstance(fields["status"], RunStatus):
            fields["status"] = fields["status"].value
        stmt = update(Run).where(Run.id == run_id)
        if expected_statuses is not None:
            stmt = stmt.where(Run.status.in_([s.value for s in expected_statuses]))
        async with self._session_factory() as session:
            result = await session.execute(stmt.values(**fields))
            await session.commit()
            return result.rowcount == 1

    async def transition(
        self,
        run_id: str,
        from_statuses: Iterable[RunStatus],
        to_status: RunStatus,
        **fields: Any,
    ) -> bool:
        """Atomic check-and-set of a run's status.

        Issues a single conditional UPDATE, so of several concurrent callers
        at most one observes True for the same source state.
        """
        allowed = [s.value for s in from_statuses]
        async with self._session_factory() as session:
            result = await session.execute(
                update(Run)
                .where(Run.id == run_id, Run.status.in_(allowed))
                .values(status=to_status.value, **fields)
            )
            await session.commit()
            changed = result.rowcount == 1
        if changed:
            logger.debug(f"Run {run_id}: {allowed} -> {to_status.value}")
        return changed

    async def append_log(
        self, run_id: str, message: str, level: LogLevel = "info"
    ) -> Optional[LogEntry]:
        """Append an entry to the run's log. Returns None if the run is missing."""
        entry = LogEntry(message=message, level=level)
        async with self._lock_for(run_id):
            async with self._session_factory() as session:
                run = await session.get(Run, run_id)
                if run is None:
                    return None
                logs = parse_logs(run.logs_json, run_id)
                logs.append(entry)
                run.logs_json = dump_logs(logs)
                await session.commit()
        return entry

    async def save_resume_state(
        self,
        run_id: str,
        state: ResumeState,
        expected_statuses: Optional[Iterable[RunStatus]] = None,
    ) -> bool:
        async with self._lock_for(run_id):
            return await self.update(
                run_id, expected_statuses=expected_statuses, resume_state_json=state.to_json()
            )

    async def merge_artifacts(self, run_id: str, artifacts: Dict[str, Any]) -> Dict[str, Any]:
        """Merge artifact keys into the stored map without removing any key."""
        async with self._lock_for(run_id):
            async with self._session_factory() as session:
                run = await session.get(Run, run_id)
                if run is None:
                    return {}
                merged = parse_artifacts(run.artifacts_json, run_id)
                merged.update(artifacts)
                run.artifacts_json = json.dumps(merged)
                await session.commit()
        return merged

    async def list_runs(
        self,
        statuses: Optional[Sequence[RunStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[Run]:
        """Runs ordered by creation time (oldest first), optionally filtered."""
        stmt = select(Run).order_by(Run.created_at.asc(), Run.id.asc())
        if statuses:
            stmt = stmt.where(Run.status.in_([s.value for s in statuses]))
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def load_plan(self, plan_version_id: str) -> Tuple[Project, PlanVersion, List[Scene]]:
        """Load a plan version with its project and scenes in index order.

        Raises:
            ValueError: If the plan version or its project is missing.
        """
        async with self._session_factory() as session:
            plan = await session.get(PlanVersion, plan_version_id)
            if plan is None:
                raise ValueError(f"Plan version {plan_version_id} not found")
            project = await session.get(Project, plan.project_id)
            if project is None:
                raise ValueError(f"Project {plan.project_id} not found")
            result = await session.execute(
                select(Scene)
                .where(Scene.plan_version_id == plan_version_id)
                .order_by(Scene.idx)
            )
            scenes = list(result.scalars().all())
        return project, plan, scenes

    async def update_scene_timings(
        self, timings: Sequence[Tuple[str, float, float, float]]
    ) -> None:
        """Persist (scene_id, duration, start, end) tuples in one transaction."""
        async with self._session_factory() as session:
            for scene_id, duration, start, end in timings:
                await session.execute(
                    update(Scene)
                    .where(Scene.id == scene_id)
                    .values(
                        duration_target_sec=duration,
                        start_time_sec=start,
                        end_time_sec=end,
                    )
                )
            await session.commit()

    async def set_project_status(self, project_id: str, status: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Project).where(Project.id == project_id).values(status=status)
            )
            await session.commit()
