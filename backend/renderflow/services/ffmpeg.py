"""ffmpeg/ffprobe wrappers used by the render steps and the QA gate.

Every command runs through subprocess.run inside asyncio.to_thread so the
event loop stays responsive while an encode is in progress. Output is
always 1080x1920 at 30 fps.
"""

import asyncio
import json
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

WIDTH = 1080
HEIGHT = 1920
FPS = 30

_SCALE = f"scale={WIDTH}:{HEIGHT}:force_original_aspect_ratio=increase,crop={WIDTH}:{HEIGHT}"
_SILENCE_DURATION_RE = re.compile(r"silence_duration:\s*([\d.]+)")


class FFmpegError(Exception):
    """Raised when ffmpeg or ffprobe exits with a non-zero status."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


@dataclass
class VideoProbe:
    valid: bool
    duration: float = 0.0
    width: Optional[int] = None
    height: Optional[int] = None
    error: Optional[str] = None


def _run(cmd: List[str]) -> subprocess.CompletedProcess:
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        return subprocess.run(cmd, check=True, capture_output=True, text=True)
    except subprocess.CalledProcessError as e:
        stderr = e.stderr or ""
        raise FFmpegError(
            f"{cmd[0]} exited with code {e.returncode}: {stderr[-500:]}", stderr
        ) from e
    except FileNotFoundError as e:
        raise FFmpegError(f"{cmd[0]} not found on PATH") from e


async def run_ffmpeg(args: Sequence[str]) -> None:
    """Run ffmpeg with the given arguments (overwrite implied)."""
    await asyncio.to_thread(_run, ["ffmpeg", "-y", *args])


async def get_media_duration(path: Path) -> float:
    """Duration in seconds of an audio or video file.

    Raises:
        FFmpegError: If ffprobe fails or reports no duration.
    """
    result = await asyncio.to_thread(
        _run,
        [
            "ffprobe", "-v", "quiet",
            "-show_entries", "format=duration",
            "-of", "csv=p=0",
            str(path),
        ],
    )
    try:
        return float(result.stdout.strip())
    except ValueError as e:
        raise FFmpegError(f"Could not get duration for {path}") from e


async def probe_video(path: Path) -> VideoProbe:
    """Duration and dimensions of a video file; never raises."""
    path = Path(path)
    if not path.exists():
        return VideoProbe(valid=False, error="File does not exist")
    try:
        result = await asyncio.to_thread(
            _run,
            [
                "ffprobe", "-v", "quiet",
                "-show_entries", "format=duration:stream=width,height",
                "-of", "json",
                str(path),
            ],
        )
        data = json.loads(result.stdout or "{}")
    except (FFmpegError, ValueError) as e:
        return VideoProbe(valid=False, error=str(e))

    duration = float(data.get("format", {}).get("duration") or 0)
    stream = next(
        (s for s in data.get("streams", []) if s.get("width") and s.get("height")),
        None,
    )
    return VideoProbe(
        valid=duration > 0,
        duration=duration,
        width=stream["width"] if stream else None,
        height=stream["height"] if stream else None,
    )


def _write_concat_list(inputs: Sequence[Path], list_file: Path) -> None:
    with open(list_file, "w") as f:
        for path in inputs:
            # Absolute paths require -safe 0
            f.write(f"file '{Path(path).resolve()}'\n")


async def concatenate_audio(inputs: Sequence[Path], output: Path) -> None:
    """Concatenate audio files with the concat demuxer and stream copy."""
    list_file = output.with_name(output.name + ".list.txt")
    _write_concat_list(inputs, list_file)
    try:
        await run_ffmpeg(["-f", "concat", "-safe", "0", "-i", str(list_file), "-c", "copy", str(output)])
    finally:
        if list_file.exists():
            list_file.unlink()


def motion_filter(effect: str, duration: float) -> str:
    """ffmpeg video filter for a scene motion preset.

    Unknown presets fall back to a static scale/crop.
    """
    frames = int(round(duration * FPS))
    zoompan = f"d={frames}:s={WIDTH}x{HEIGHT}:fps={FPS}"
    center_x = "iw/2-(iw/zoom/2)"
    center_y = "ih/2-(ih/zoom/2)"
    travel = f"(1-on/{frames})"

    if effect == "slow_zoom_in":
        return f"{_SCALE},zoompan=z='min(zoom+0.0005,1.1)':{zoompan}"
    if effect == "slow_zoom_out":
        return f"{_SCALE},zoompan=z='if(eq(on,1),1.1,max(zoom-0.0005,1))':{zoompan}"
    if effect == "pan_left":
        return f"{_SCALE},zoompan=z='1.1':x='{center_x}+((iw/zoom)*{travel})':y='{center_y}':{zoompan}"
    if effect == "pan_right":
        return f"{_SCALE},zoompan=z='1.1':x='{center_x}-((iw/zoom)*{travel})':y='{center_y}':{zoompan}"
    if effect == "tilt_up":
        return f"{_SCALE},zoompan=z='1.1':x='{center_x}':y='{center_y}+((ih/zoom)*{travel})':{zoompan}"
    if effect == "tilt_down":
        return f"{_SCALE},zoompan=z='1.1':x='{center_x}':y='{center_y}-((ih/zoom)*{travel})':{zoompan}"
    if effect == "glitch":
        return f"{_SCALE},noise=c0s=10:c0f=t+u"
    if effect == "flash_cut":
        return f"{_SCALE},fade=in:0:5"
    if effect == "fade":
        return f"{_SCALE},fade=in:0:15,fade=out:{max(frames - 15, 0)}:15"
    return _SCALE


async def create_scene_video(image: Path, duration: float, effect: str, output: Path) -> None:
    """Render a still image into a motion clip of the given duration."""
    output.parent.mkdir(parents=True, exist_ok=True)
    await run_ffmpeg([
        "-loop", "1",
        "-i", str(image),
        "-c:v", "libx264",
        "-t", f"{duration:.3f}",
        "-pix_fmt", "yuv420p",
        "-vf", motion_filter(effect, duration),
        "-r", str(FPS),
        str(output),
    ])


async def concatenate_videos(inputs: Sequence[Path], output: Path) -> None:
    """Concatenate scene clips into one video (re-encoded, hard cuts).

    Raises:
        ValueError: If no inputs are given.
    """
    if not inputs:
        raise ValueError("No input files")

    if len(inputs) == 1:
        logger.info("Single clip detected, copying without concatenation")
        await asyncio.to_thread(shutil.copyfile, inputs[0], output)
        return

    list_file = output.with_name(output.name + ".list.txt")
    _write_concat_list(inputs, list_file)
    try:
        await run_ffmpeg([
            "-f", "concat", "-safe", "0",
            "-i", str(list_file),
            "-c:v", "libx264", "-crf", "23", "-preset", "fast",
            "-pix_fmt", "yuv420p",
            str(output),
        ])
    finally:
        if list_file.exists():
            list_file.unlink()


async def mix_audio(
    voice: Path, music: Optional[Path], output: Path, music_volume: float = 0.15
) -> None:
    """Mix background music under the voice-over, or copy the voice-over alone."""
    if music is None or not music.exists():
        await asyncio.to_thread(shutil.copyfile, voice, output)
        return

    vo_duration = await get_media_duration(voice)
    await run_ffmpeg([
        "-i", str(voice),
        "-i", str(music),
        "-filter_complex",
        f"[1:a]volume={music_volume},atrim=0:{vo_duration}[music];"
        "[0:a][music]amix=inputs=2:duration=first:dropout_transition=2",
        "-c:a", "aac", "-b:a", "192k",
        str(output),
    ])


def _subtitles_filter(captions: Path) -> str:
    escaped = str(captions.resolve()).replace("\\", "/").replace(":", "\\:").replace("'", "\\'")
    return f"subtitles='{escaped}'"


async def final_composite(
    video: Path, audio: Path, captions: Optional[Path], output: Path
) -> None:
    """Mux video with audio and burn in captions when present."""
    filter_args: List[str] = []
    if captions is not None and captions.exists():
        filter_args = ["-vf", _subtitles_filter(captions)]

    await run_ffmpeg([
        "-i", str(video),
        "-i", str(audio),
        *filter_args,
        "-c:v", "libx264", "-crf", "20", "-preset", "fast",
        "-c:a", "aac", "-b:a", "192k",
        "-map", "0:v", "-map", "1:a",
        "-shortest",
        str(output),
    ])


async def extract_thumbnail(video: Path, output: Path, offset: float = 2.0) -> None:
    await run_ffmpeg([
        "-i", str(video),
        "-ss", f"{offset:.2f}",
        "-vframes", "1",
        "-vf", "scale=540:960",
        str(output),
    ])


def parse_silence_durations(stderr: str) -> List[float]:
    """Extract silence_duration values from silencedetect output."""
    return [float(m) for m in _SILENCE_DURATION_RE.findall(stderr)]


def _silencedetect(path: Path, noise_db: int, min_duration: float) -> str:
    # silencedetect reports on stderr; the exit code is not meaningful here
    result = subprocess.run(
        [
            "ffmpeg", "-i", str(path),
            "-af", f"silencedetect=n={noise_db}dB:d={min_duration}",
            "-f", "null", "-",
        ],
        capture_output=True,
        text=True,
    )
    return result.stderr or ""


async def detect_silence(path: Path, noise_db: int = -50, min_duration: float = 2.0) -> List[float]:
    """Durations of silent stretches of at least min_duration seconds.

    Raises:
        FFmpegError: If ffmpeg cannot be started.
    """
    try:
        stderr = await asyncio.to_thread(_silencedetect, path, noise_db, min_duration)
    except FileNotFoundError as e:
        raise FFmpegError("ffmpeg not found on PATH") from e
    return parse_silence_durations(stderr)
