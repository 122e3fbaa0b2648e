"""Pydantic schemas for the JSON documents stored on a Run.

Logs, artifacts and resume state are persisted as JSON text columns. These
models are the (de)serialization boundary: decoding never raises, a
malformed document is logged and replaced by its default.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from renderflow.orchestrator.state import RunStep, canonical_prefix

logger = logging.getLogger(__name__)

LogLevel = Literal["info", "warn", "error"]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class LogEntry(BaseModel):
    """Single operator-facing run log line."""

    timestamp: str = Field(default_factory=utc_now_iso)
    message: str
    level: LogLevel = "info"


class ResumeState(BaseModel):
    """Durable record of which steps already produced their artifacts.

    completed_steps is always a prefix of the canonical step order; any
    persisted list is normalised to its longest valid prefix.
    """

    completed_steps: List[RunStep] = Field(default_factory=list, alias="completedSteps")

    model_config = {"populate_by_name": True}

    @field_validator("completed_steps", mode="before")
    @classmethod
    def normalise_prefix(cls, v):
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError("completedSteps must be a list")
        return canonical_prefix(v)

    def is_completed(self, step: RunStep) -> bool:
        return step in self.completed_steps

    def with_completed(self, step: RunStep) -> "ResumeState":
        """Return a copy with step appended, keeping the prefix invariant."""
        if step in self.completed_steps:
            return self
        return ResumeState(completed_steps=[*self.completed_steps, step])

    def to_json(self) -> str:
        return json.dumps({"completedSteps": [s.value for s in self.completed_steps]})


class CostEstimate(BaseModel):
    """Accumulated provider spend for a run, in USD."""

    estimated_usd: float = Field(0.0, alias="estimatedUsd")
    by_step: Dict[str, float] = Field(default_factory=dict, alias="byStep")

    model_config = {"populate_by_name": True}


class QaResult(BaseModel):
    """Outcome of the post-render quality gate."""

    passed: bool
    silence: bool = True
    file_size: bool = Field(True, alias="fileSize")
    resolution: bool = True
    details: Optional[str] = None

    model_config = {"populate_by_name": True}


def parse_logs(raw: Optional[str], run_id: str = "") -> List[LogEntry]:
    """Decode a run's log list; malformed documents yield an empty list."""
    if not raw:
        return []
    try:
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError("logs document is not a list")
        return [LogEntry.model_validate(item) for item in data]
    except (ValueError, ValidationError) as e:
        logger.error(f"Run {run_id}: failed to parse logs, starting fresh: {e}")
        return []


def dump_logs(entries: List[LogEntry]) -> str:
    return json.dumps([e.model_dump() for e in entries])


def parse_artifacts(raw: Optional[str], run_id: str = "") -> Dict[str, Any]:
    """Decode a run's artifact map; malformed documents yield an empty map."""
    if not raw:
        return {}
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("artifacts document is not an object")
        return data
    except ValueError as e:
        logger.error(f"Run {run_id}: failed to parse artifacts, starting fresh: {e}")
        return {}


def parse_resume_state(raw: Optional[str], run_id: str = "") -> ResumeState:
    """Decode a run's resume state.

    Corrupt JSON or an unexpected structure is treated as "no steps
    completed" so the run restarts from the beginning instead of crashing.
    """
    if not raw:
        return ResumeState()
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("resume state document is not an object")
        return ResumeState.model_validate(data)
    except (ValueError, ValidationError) as e:
        logger.error(f"Run {run_id}: failed to parse resume state, starting fresh: {e}")
        return ResumeState()
