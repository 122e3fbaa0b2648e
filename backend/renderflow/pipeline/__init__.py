"""Render step library: one coroutine per canonical step."""

from typing import Dict

from renderflow.orchestrator.state import RunStep
from renderflow.pipeline.audio import asr_align, music_build, tts_generate
from renderflow.pipeline.captions import captions_build
from renderflow.pipeline.context import StepContext, StepFn
from renderflow.pipeline.finalize import finalize_artifacts
from renderflow.pipeline.images import images_generate
from renderflow.pipeline.render import ffmpeg_render

STEP_LIBRARY: Dict[RunStep, StepFn] = {
    RunStep.TTS_GENERATE: tts_generate,
    RunStep.ASR_ALIGN: asr_align,
    RunStep.IMAGES_GENERATE: images_generate,
    RunStep.CAPTIONS_BUILD: captions_build,
    RunStep.MUSIC_BUILD: music_build,
    RunStep.FFMPEG_RENDER: ffmpeg_render,
    RunStep.FINALIZE_ARTIFACTS: finalize_artifacts,
}

__all__ = ["STEP_LIBRARY", "StepContext", "StepFn"]
