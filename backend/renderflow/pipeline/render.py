"""Video composition step.

Builds one motion clip per scene from its image, concatenates the clips with
hard cuts, then muxes the mixed audio and burns in captions. In dry-run mode
no media tool runs; a report file stands in for the video.
"""

import logging
from pathlib import Path
from typing import List

from renderflow.pipeline.context import StepContext
from renderflow.services.ffmpeg import concatenate_videos, create_scene_video, final_composite
from renderflow.services.file_manager import write_placeholder

logger = logging.getLogger(__name__)

DRY_RUN_REPORT = "Dry-run render completed. No MP4 generated or FFmpeg executed.\n"


async def ffmpeg_render(ctx: StepContext) -> None:
    """Render final/final.mp4 (or the dry-run report)."""
    if ctx.dry_run:
        write_placeholder(ctx.paths.dry_run_report, DRY_RUN_REPORT)
        ctx.record("dryRunReportPath", ctx.paths.dry_run_report)
        return

    total = len(ctx.scenes)
    clips: List[Path] = []

    for i, scene in enumerate(ctx.scenes):
        ctx.ensure_active()
        image = ctx.paths.scene_image(i)
        clip = ctx.paths.scene_video(i)

        if not clip.exists() and image.exists():
            await ctx.info(f"Creating video segment {i + 1}/{total}...")
            await create_scene_video(image, scene.duration_target_sec, scene.effect_preset, clip)

        if clip.exists():
            clips.append(clip)
        else:
            logger.warning(f"Run {ctx.run_id}: no clip for scene {i}, image missing")

        # Clips are the first half of the step's work
        await ctx.report_progress((i + 1) / total * 0.5)

    ctx.ensure_active()
    raw = ctx.paths.raw_video
    if clips and not raw.exists():
        await ctx.info("Concatenating video segments...")
        await concatenate_videos(clips, raw)
    await ctx.report_progress(0.75)

    final = ctx.paths.final_video
    audio = ctx.paths.mixed_audio if ctx.paths.mixed_audio.exists() else ctx.paths.voice_over
    if not final.exists() and raw.exists() and audio.exists():
        await ctx.info("Creating final video with audio and captions...")
        await final_composite(raw, audio, ctx.paths.captions_ass, final)

    if final.exists():
        ctx.record("mp4Path", final)
    else:
        await ctx.warn("Final video was not produced (missing clips or audio)")
