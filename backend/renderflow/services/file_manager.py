"""
File management service for renderflow.

Handles the run-scoped artifact tree with path traversal protection.
Creates per-run directories with subdirectories for images, audio,
captions, scene videos and final output.
"""
from dataclasses import dataclass
from pathlib import Path

from renderflow.config import settings

RUN_SUBDIRS = ("images", "audio", "captions", "video", "final")


def _scene_name(idx: int, ext: str) -> str:
    return f"scene_{idx:02d}.{ext}"


@dataclass(frozen=True)
class RunPaths:
    """Stable subpaths of one run's artifact directory."""

    root: Path

    @property
    def images(self) -> Path:
        return self.root / "images"

    @property
    def audio(self) -> Path:
        return self.root / "audio"

    @property
    def captions(self) -> Path:
        return self.root / "captions"

    @property
    def video(self) -> Path:
        return self.root / "video"

    @property
    def final(self) -> Path:
        return self.root / "final"

    def scene_audio(self, idx: int) -> Path:
        return self.audio / _scene_name(idx, "mp3")

    def scene_image(self, idx: int) -> Path:
        return self.images / _scene_name(idx, "png")

    def scene_video(self, idx: int) -> Path:
        return self.video / _scene_name(idx, "mp4")

    @property
    def voice_over(self) -> Path:
        return self.audio / "vo_full.mp3"

    @property
    def mixed_audio(self) -> Path:
        return self.audio / "mixed.mp3"

    @property
    def timestamps(self) -> Path:
        return self.captions / "timestamps.json"

    @property
    def captions_ass(self) -> Path:
        return self.captions / "captions.ass"

    @property
    def raw_video(self) -> Path:
        return self.final / "raw.mp4"

    @property
    def final_video(self) -> Path:
        return self.final / "final.mp4"

    @property
    def dry_run_report(self) -> Path:
        return self.final / "dry_run_report.txt"

    @property
    def export_json(self) -> Path:
        return self.final / "export.json"

    def thumbnails(self) -> list[Path]:
        """Thumbnails at 0s, 3s and mid-video, in that order."""
        return [
            self.final / "thumb_0.png",
            self.final / "thumb_3.png",
            self.final / "thumb_mid.png",
        ]


class FileManager:
    """
    Manage filesystem artifacts for render runs.

    Creates structured directories:
    - {base_dir}/{project_id}/{run_id}/images/ - Scene images
    - {base_dir}/{project_id}/{run_id}/audio/ - Scene voice-over, full and mixed audio
    - {base_dir}/{project_id}/{run_id}/captions/ - Word timestamps and ASS captions
    - {base_dir}/{project_id}/{run_id}/video/ - Per-scene motion clips
    - {base_dir}/{project_id}/{run_id}/final/ - Final video, thumbnails, export

    Implements path traversal protection to prevent directory escape attacks.
    """

    def __init__(self, base_dir: str | Path | None = None):
        """
        Initialize FileManager with base directory.

        Args:
            base_dir: Root directory for all run artifacts.
                     If None, uses settings.storage.artifacts_dir
        """
        if base_dir is None:
            base_dir = settings.storage.artifacts_dir

        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def get_run_paths(self, project_id: str, run_id: str) -> RunPaths:
        """
        Get or create the run directory with subdirectories.

        Args:
            project_id: ID of the project owning the run
            run_id: ID of the run

        Returns:
            RunPaths rooted at the resolved run directory

        Raises:
            ValueError: If the ids create a path outside base_dir (traversal attack)
        """
        run_dir = (self.base_dir / str(project_id) / str(run_id)).resolve()

        if not run_dir.is_relative_to(self.base_dir) or run_dir == self.base_dir:
            raise ValueError("Invalid run path")

        run_dir.mkdir(parents=True, exist_ok=True)
        for name in RUN_SUBDIRS:
            (run_dir / name).mkdir(exist_ok=True)

        return RunPaths(run_dir)

    def relative(self, path: Path) -> str:
        """Path relative to base_dir, as stored in the artifact map."""
        return Path(path).resolve().relative_to(self.base_dir).as_posix()

    def resolve(self, relative_path: str) -> Path:
        """
        Resolve an artifact-map path back to an absolute path.

        Raises:
            ValueError: If the path escapes base_dir
        """
        path = (self.base_dir / relative_path).resolve()
        if not path.is_relative_to(self.base_dir):
            raise ValueError("Invalid artifact path")
        return path


def write_placeholder(path: Path, contents: str) -> bool:
    """Write a text placeholder unless the file already exists.

    Returns:
        True if the file was written, False if it was already present
    """
    if path.exists():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents, encoding="utf-8")
    return True
