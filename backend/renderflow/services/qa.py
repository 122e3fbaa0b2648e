"""Post-render quality gate for the final MP4.

Checks the objective delivery constraints of a vertical short:
- no silent stretch of max_silence_seconds or longer (ffmpeg silencedetect)
- file size within max_file_size_mb
- resolution exactly required_width x required_height
"""

import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from renderflow.config import QaConfig, settings
from renderflow.schemas.run_state import QaResult
from renderflow.services.ffmpeg import FFmpegError, detect_silence, probe_video

logger = logging.getLogger(__name__)

QaGate = Callable[[Path], Awaitable[QaResult]]


async def validate_qa(path: Path, qa_config: Optional[QaConfig] = None) -> QaResult:
    """Run all QA checks against a rendered video.

    A missing file fails every check. Tool failures fail the check they
    belong to rather than raising.

    Args:
        path: Absolute path to the final MP4
        qa_config: Thresholds; defaults to settings.qa

    Returns:
        QaResult with per-check booleans and a "; "-joined details string
    """
    cfg = qa_config or settings.qa
    path = Path(path)

    if not path.exists():
        return QaResult(
            passed=False,
            silence=False,
            file_size=False,
            resolution=False,
            details="File does not exist",
        )

    details: List[str] = []
    file_size_ok = True
    resolution_ok = True
    silence_ok = True

    size_mb = path.stat().st_size / (1024 * 1024)
    if size_mb > cfg.max_file_size_mb:
        file_size_ok = False
        details.append(f"File size {size_mb:.1f} MB exceeds {cfg.max_file_size_mb:g} MB")

    probe = await probe_video(path)
    if not probe.valid or probe.width != cfg.required_width or probe.height != cfg.required_height:
        resolution_ok = False
        if probe.width is not None and probe.height is not None:
            details.append(
                f"Resolution {probe.width}x{probe.height} "
                f"(expected {cfg.required_width}x{cfg.required_height})"
            )
        else:
            details.append(probe.error or "Invalid or missing video stream")

    try:
        silences = await detect_silence(path, cfg.silence_noise_db, cfg.max_silence_seconds)
        longest = max((d for d in silences if d >= cfg.max_silence_seconds), default=None)
        if longest is not None:
            silence_ok = False
            details.append(f"Detected silence >= {cfg.max_silence_seconds:g}s ({longest:.1f}s)")
    except FFmpegError as e:
        silence_ok = False
        details.append(str(e))

    result = QaResult(
        passed=file_size_ok and resolution_ok and silence_ok,
        silence=silence_ok,
        file_size=file_size_ok,
        resolution=resolution_ok,
        details="; ".join(details) if details else None,
    )
    logger.info(f"QA for {path.name}: passed={result.passed} {result.details or ''}".rstrip())
    return result
