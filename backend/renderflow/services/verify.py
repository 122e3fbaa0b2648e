"""Read-only verification of a run's artifact bundle.

Dry-run bundles are checked for placeholders only. Real bundles are probed
with ffprobe: voice-over duration, final video validity, duration against
the project's target length, vertical resolution, thumbnails and the export
document.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from renderflow.services.ffmpeg import FFmpegError, HEIGHT, WIDTH, get_media_duration, probe_video
from renderflow.services.file_manager import FileManager

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp"}


class VerificationCheck(BaseModel):
    name: str
    passed: bool
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class VerificationSummary(BaseModel):
    total: int
    passed: int
    failed: int


class VerificationResult(BaseModel):
    passed: bool
    checks: List[VerificationCheck]
    summary: VerificationSummary


def duration_tolerance(target_sec: int) -> int:
    """Allowed deviation of the final video from the target length."""
    return 10 if target_sec >= 180 else 5


def _resolve(files: FileManager, artifacts: Dict[str, Any], key: str) -> Optional[Path]:
    value = artifacts.get(key)
    if not isinstance(value, str) or not value:
        return None
    try:
        return files.resolve(value)
    except ValueError:
        logger.warning(f"Artifact {key} points outside the artifacts dir: {value}")
        return None


def _result(checks: List[VerificationCheck]) -> VerificationResult:
    passed = sum(1 for c in checks if c.passed)
    return VerificationResult(
        passed=passed == len(checks),
        checks=checks,
        summary=VerificationSummary(total=len(checks), passed=passed, failed=len(checks) - passed),
    )


def _check_images(files: FileManager, artifacts, scene_count: int, placeholders: bool) -> VerificationCheck:
    name = "Scene Image Placeholders" if placeholders else "Scene Images"
    images_dir = _resolve(files, artifacts, "imagesDir")
    if images_dir is None or not images_dir.is_dir():
        return VerificationCheck(name=name, passed=False, message="Images directory not found")

    if placeholders:
        found = [p.name for p in images_dir.iterdir() if p.name.startswith("scene_")]
    else:
        found = [p.name for p in images_dir.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES]
    ok = len(found) >= scene_count
    noun = "placeholders" if placeholders else "images"
    return VerificationCheck(
        name=name,
        passed=ok,
        message=(
            f"All {scene_count} scene {noun} present"
            if ok else f"Missing {noun}: found {len(found)}/{scene_count}"
        ),
        details={"found": len(found), "expected": scene_count},
    )


def _check_present(path: Optional[Path], name: str, present: str, missing: str) -> VerificationCheck:
    if path is not None and path.exists():
        return VerificationCheck(name=name, passed=True, message=present, details={"path": str(path)})
    return VerificationCheck(name=name, passed=False, message=missing)


def _check_export(path: Optional[Path]) -> VerificationCheck:
    if path is None or not path.exists():
        return VerificationCheck(name="Export JSON", passed=False, message="Export JSON file not found")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError:
        return VerificationCheck(name="Export JSON", passed=False, message="Export JSON file is invalid")
    if not isinstance(data, dict):
        data = {}
    sections = {key: bool(data.get(key)) for key in ("project", "plan", "render")}
    ok = all(sections.values())
    return VerificationCheck(
        name="Export JSON",
        passed=ok,
        message="Export JSON valid with all required fields" if ok else "Export JSON missing required fields",
        details=sections,
    )


async def verify_artifacts(
    artifacts: Dict[str, Any],
    scene_count: int,
    target_length_sec: int,
    files: Optional[FileManager] = None,
    dry_run: bool = False,
) -> VerificationResult:
    """Verify a run's artifacts.

    Args:
        artifacts: Decoded artifact map of the run
        scene_count: Number of scenes in the rendered plan
        target_length_sec: Project target length in seconds
        files: FileManager rooted at the artifacts directory
        dry_run: Force placeholder checks; also implied by artifacts["dryRun"]

    Returns:
        VerificationResult with one entry per check and a summary
    """
    files = files or FileManager()
    checks: List[VerificationCheck] = []
    audio_dir = _resolve(files, artifacts, "audioDir")
    voice_over = audio_dir / "vo_full.mp3" if audio_dir else None
    captions = _resolve(files, artifacts, "captionsPath")
    export = _resolve(files, artifacts, "exportJsonPath")

    if dry_run or artifacts.get("dryRun") is True:
        checks.append(VerificationCheck(name="Dry-run Mode", passed=True, message="Dry-run render: no MP4 generated."))
        checks.append(_check_images(files, artifacts, scene_count, placeholders=True))
        checks.append(_check_present(voice_over, "Voice-over Placeholder", "Voice-over placeholder present", "Voice-over placeholder missing"))
        checks.append(_check_present(captions, "Captions File", "Captions file present", "Captions file not found"))
        checks.append(_check_present(export, "Export JSON", "Export JSON present", "Export JSON file not found"))
        checks.append(VerificationCheck(name="Final Video File", passed=True, message="Skipped in dry-run mode"))
        return _result(checks)

    checks.append(_check_images(files, artifacts, scene_count, placeholders=False))

    if voice_over is not None and voice_over.exists():
        try:
            duration = await get_media_duration(voice_over)
            checks.append(VerificationCheck(
                name="Voice-over Audio",
                passed=duration > 0,
                message=f"Voice-over present: {duration:.1f}s",
                details={"duration": duration},
            ))
        except FFmpegError:
            checks.append(VerificationCheck(
                name="Voice-over Audio", passed=False,
                message="Voice-over file exists but could not be validated",
            ))
    else:
        checks.append(VerificationCheck(name="Voice-over Audio", passed=False, message="Voice-over audio file not found"))

    if captions is not None and captions.exists():
        has_dialogue = "Dialogue:" in captions.read_text(encoding="utf-8")
        checks.append(VerificationCheck(
            name="Captions File",
            passed=has_dialogue,
            message="Captions file present with dialogue entries" if has_dialogue else "Captions file exists but may be empty",
            details={"size": captions.stat().st_size},
        ))
    else:
        checks.append(VerificationCheck(name="Captions File", passed=False, message="Captions file not found"))

    mp4 = _resolve(files, artifacts, "mp4Path")
    if mp4 is not None and mp4.exists():
        probe = await probe_video(mp4)
        if probe.valid:
            tolerance = duration_tolerance(target_length_sec)
            duration_ok = abs(probe.duration - target_length_sec) <= tolerance
            vertical = probe.width == WIDTH and probe.height == HEIGHT
            checks.append(VerificationCheck(
                name="Final Video File", passed=True,
                message=f"Video valid: {probe.duration:.1f}s, {probe.width}x{probe.height}",
            ))
            checks.append(VerificationCheck(
                name="Video Duration",
                passed=duration_ok,
                message=(
                    f"Duration {probe.duration:.1f}s matches target {target_length_sec}s (+/-{tolerance}s)"
                    if duration_ok else
                    f"Duration {probe.duration:.1f}s differs from target {target_length_sec}s by more than {tolerance}s"
                ),
                details={"actual": probe.duration, "target": target_length_sec, "tolerance": tolerance},
            ))
            checks.append(VerificationCheck(
                name="Video Resolution",
                passed=vertical,
                message=f"Correct resolution ({WIDTH}x{HEIGHT})" if vertical else f"Non-standard resolution: {probe.width}x{probe.height}",
                details={"width": probe.width, "height": probe.height},
            ))
        else:
            checks.append(VerificationCheck(name="Final Video File", passed=False, message=probe.error or "Video file invalid"))
    else:
        checks.append(VerificationCheck(name="Final Video File", passed=False, message="Final video file not found"))

    thumbs = artifacts.get("thumbPaths")
    if isinstance(thumbs, list) and thumbs:
        existing = [t for t in thumbs if isinstance(t, str) and files.resolve(t).exists()]
        checks.append(VerificationCheck(
            name="Thumbnails",
            passed=len(existing) == len(thumbs),
            message=(
                f"All {len(thumbs)} thumbnails present"
                if len(existing) == len(thumbs) else f"Thumbnails: {len(existing)}/{len(thumbs)} found"
            ),
            details={"found": len(existing)},
        ))
    else:
        checks.append(_check_present(
            _resolve(files, artifacts, "thumbPath"), "Thumbnail",
            "Thumbnail image present", "Thumbnail image not found",
        ))

    checks.append(_check_export(export))
    return _result(checks)
