"""renderflow - render pipeline orchestrator for short-form narrated videos.

This module exposes startup validation for the external media tools the
render steps shell out to. Call validate_dependencies() before starting a
non-dry-run render.
"""

import logging
import subprocess

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def validate_dependencies() -> None:
    """Validate that ffmpeg and ffprobe are available on PATH.

    Raises:
        RuntimeError: If either tool is missing or not functional.
    """
    for tool in ("ffmpeg", "ffprobe"):
        try:
            result = subprocess.run(
                [tool, "-version"],
                capture_output=True,
                check=True,
                text=True,
            )
            version_line = result.stdout.split("\n")[0]
            logger.info(f"{tool} validated: {version_line}")
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise RuntimeError(
                f"{tool} not found on PATH. Install ffmpeg to render real videos "
                "(or enable dry-run mode).\n"
                "Ubuntu/Debian: sudo apt-get install ffmpeg\n"
                "macOS: brew install ffmpeg\n"
                "Windows: https://ffmpeg.org/download.html"
            ) from e
