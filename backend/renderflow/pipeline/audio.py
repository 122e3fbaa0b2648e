"""Audio steps: voice-over synthesis, transcription and music mixing.

Each step re-checks per-file existence before doing work, so re-entering a
step after a partial attempt never repeats a paid call.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional

from renderflow.services.ffmpeg import FFmpegError, concatenate_audio, get_media_duration, mix_audio
from renderflow.services.file_manager import write_placeholder
from renderflow.pipeline.context import StepContext

logger = logging.getLogger(__name__)

MUSIC_SUFFIXES = {".mp3", ".wav", ".m4a"}


async def tts_generate(ctx: StepContext) -> None:
    """Synthesize per-scene voice-over and rewrite scene timings from it.

    Scene durations are replaced by the measured audio length (real renders
    only) and start/end offsets are recomputed back to back.
    """
    total = len(ctx.scenes)
    scene_audio: List[Path] = []
    durations: List[float] = []

    for i, scene in enumerate(ctx.scenes):
        ctx.ensure_active()
        audio_path = ctx.paths.scene_audio(i)
        await ctx.info(f"Generating TTS for scene {i + 1}/{total}...")

        if not audio_path.exists():
            if ctx.dry_run:
                write_placeholder(audio_path, f"[dry-run audio]\n{scene.narration_text}\n")
            else:
                cost = await ctx.provider().synthesize_speech(
                    scene.narration_text, audio_path, ctx.project.voice_preset
                )
                ctx.add_cost(cost)

        scene_audio.append(audio_path)

        duration = scene.duration_target_sec
        if not ctx.dry_run and audio_path.exists():
            try:
                duration = await get_media_duration(audio_path)
                await ctx.info(
                    f"Scene {i + 1} audio duration: {duration:.2f}s "
                    f"(target: {scene.duration_target_sec:.2f}s)"
                )
            except FFmpegError as e:
                logger.warning(f"Run {ctx.run_id}: could not measure scene {i} audio, using target: {e}")
        durations.append(duration)

        await ctx.report_progress((i + 1) / total)

    if durations:
        await ctx.info("Updating scene durations based on audio...")
        timings = []
        current = 0.0
        for scene, duration in zip(ctx.scenes, durations):
            end = current + duration
            timings.append((scene.id, duration, current, end))
            scene.duration_target_sec = duration
            scene.start_time_sec = current
            scene.end_time_sec = end
            current = end
        await ctx.store.update_scene_timings(timings)
        await ctx.info(f"Updated {len(timings)} scene(s) with measured audio durations")

    voice_over = ctx.paths.voice_over
    if scene_audio and not voice_over.exists():
        if ctx.dry_run:
            await ctx.info("Creating dry-run voice-over placeholder...")
            narration = "\n".join(s.narration_text for s in ctx.scenes)
            write_placeholder(voice_over, f"[dry-run voice-over]\n{narration}\n")
        else:
            await ctx.info("Concatenating voice-over audio...")
            await concatenate_audio(scene_audio, voice_over)


async def asr_align(ctx: StepContext) -> None:
    """Transcribe the full voice-over into word timings for captions."""
    voice_over = ctx.paths.voice_over
    timestamps = ctx.paths.timestamps

    if not voice_over.exists() or timestamps.exists():
        return

    if ctx.dry_run:
        transcript = {
            "text": " ".join(s.narration_text for s in ctx.scenes),
            "words": [],
        }
    else:
        result = await ctx.provider().transcribe(voice_over)
        ctx.add_cost(result.cost_usd)
        transcript = {
            "text": result.text,
            "words": [w.model_dump() for w in result.words],
        }
        await ctx.info(f"Transcribed {len(result.words)} words")

    timestamps.parent.mkdir(parents=True, exist_ok=True)
    timestamps.write_text(json.dumps(transcript, indent=2), encoding="utf-8")


def pick_music_track(library_dir: Path) -> Optional[Path]:
    """First audio file (by name) in the music library, if any."""
    if not library_dir.is_dir():
        return None
    tracks = sorted(
        p for p in library_dir.iterdir()
        if p.is_file() and p.suffix.lower() in MUSIC_SUFFIXES
    )
    return tracks[0] if tracks else None


async def music_build(ctx: StepContext) -> None:
    """Mix background music under the voice-over into audio/mixed.mp3."""
    mixed = ctx.paths.mixed_audio

    if ctx.dry_run:
        write_placeholder(mixed, "[dry-run mixed audio]\n")
        return

    music = pick_music_track(ctx.music_library_dir)
    if music is not None:
        await ctx.info(f"Using background music: {music.name}")

    if not mixed.exists() and ctx.paths.voice_over.exists():
        await mix_audio(ctx.paths.voice_over, music, mixed)
