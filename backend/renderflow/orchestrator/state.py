"""State machine constants and transition logic for the render orchestrator.

Defines the canonical step order, per-step progress weights and the run
status transitions that govern execution, retry and restart recovery.
"""

from enum import Enum
from typing import Dict, Iterable, List, Optional


class RunStatus(str, Enum):
    """Lifecycle status of a render run."""

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELED = "canceled"
    QA_FAILED = "qa_failed"


class RunStep(str, Enum):
    """The seven canonical render steps, declared in execution order."""

    TTS_GENERATE = "tts_generate"
    ASR_ALIGN = "asr_align"
    IMAGES_GENERATE = "images_generate"
    CAPTIONS_BUILD = "captions_build"
    MUSIC_BUILD = "music_build"
    FFMPEG_RENDER = "ffmpeg_render"
    FINALIZE_ARTIFACTS = "finalize_artifacts"


# Steps in execution order
STEPS: List[RunStep] = list(RunStep)

# Share of overall progress contributed by each step
STEP_WEIGHTS: Dict[RunStep, int] = {
    RunStep.TTS_GENERATE: 20,
    RunStep.ASR_ALIGN: 10,
    RunStep.IMAGES_GENERATE: 35,
    RunStep.CAPTIONS_BUILD: 5,
    RunStep.MUSIC_BUILD: 5,
    RunStep.FFMPEG_RENDER: 20,
    RunStep.FINALIZE_ARTIFACTS: 5,
}

if sum(STEP_WEIGHTS.values()) != 100 or set(STEP_WEIGHTS) != set(STEPS):
    raise RuntimeError("Step weights must cover every step and sum to 100")

# Human-readable step banners logged when a step starts
STEP_MESSAGES: Dict[RunStep, str] = {
    RunStep.TTS_GENERATE: "Generating voice-over audio...",
    RunStep.ASR_ALIGN: "Transcribing audio for captions...",
    RunStep.IMAGES_GENERATE: "Generating scene images...",
    RunStep.CAPTIONS_BUILD: "Building captions...",
    RunStep.MUSIC_BUILD: "Processing background music...",
    RunStep.FFMPEG_RENDER: "Rendering video...",
    RunStep.FINALIZE_ARTIFACTS: "Finalizing...",
}

TERMINAL_STATES = {
    RunStatus.DONE,
    RunStatus.FAILED,
    RunStatus.CANCELED,
    RunStatus.QA_FAILED,
}

# States from which an explicit retry may re-queue the run
RETRYABLE_STATES = {
    RunStatus.FAILED,
    RunStatus.CANCELED,
    RunStatus.QA_FAILED,
}

# States a run is considered "in progress" in
IN_PROGRESS_STATES = {
    RunStatus.QUEUED,
    RunStatus.RUNNING,
}

# States in which the execution that started a run may still record its
# work. A retry moves the run back to queued and out of this set.
EXECUTION_STATES = {
    RunStatus.RUNNING,
    RunStatus.CANCELED,
}

# Markers stored in Run.current_step outside of a step
CURRENT_STEP_COMPLETE = "complete"
CURRENT_STEP_ERROR = "error"


def parse_step(name: Optional[str]) -> Optional[RunStep]:
    """Return the RunStep for a name, or None if it is not a known step."""
    if not name:
        return None
    try:
        return RunStep(name)
    except ValueError:
        return None


def parse_status(value: str) -> RunStatus:
    """Decode a persisted status.

    Raises:
        ValueError: If the value is not a known status.
    """
    return RunStatus(value)


def can_retry(status: RunStatus) -> bool:
    """Check if a run in the given status may be retried."""
    return status in RETRYABLE_STATES


def is_terminal(status: RunStatus) -> bool:
    return status in TERMINAL_STATES


def truncate_completed_steps(from_step: Optional[str]) -> List[RunStep]:
    """Completed steps to keep when retrying from the given step.

    Returns the canonical prefix strictly before from_step, or an empty list
    when no step is given or the name is not recognised.

    Examples:
        >>> truncate_completed_steps("images_generate")
        [<RunStep.TTS_GENERATE: 'tts_generate'>, <RunStep.ASR_ALIGN: 'asr_align'>]
        >>> truncate_completed_steps("bogus")
        []
    """
    step = parse_step(from_step)
    if step is None:
        return []
    return STEPS[: STEPS.index(step)]


def canonical_prefix(steps: Iterable[str]) -> List[RunStep]:
    """Longest canonical prefix covered by the given step names.

    A persisted list that skips a predecessor or contains unknown names is
    cut at the first gap, so the result always satisfies the prefix
    invariant.
    """
    present = {s.value if isinstance(s, RunStep) else s for s in steps}
    prefix: List[RunStep] = []
    for step in STEPS:
        if step.value not in present:
            break
        prefix.append(step)
    return prefix


def completed_weight(steps: Iterable[RunStep]) -> int:
    """Progress already earned by the given completed steps."""
    return sum(STEP_WEIGHTS[s] for s in steps)
