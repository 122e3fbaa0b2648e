"""Tests for the ffmpeg helpers and the QA gate that do not need ffmpeg installed."""

from unittest.mock import AsyncMock, patch

import pytest

from renderflow.config import QaConfig
from renderflow.services import qa as qa_module
from renderflow.services.ffmpeg import (
    FPS,
    VideoProbe,
    concatenate_videos,
    motion_filter,
    parse_silence_durations,
)
from renderflow.services.qa import validate_qa

SILENCEDETECT_STDERR = """
[silencedetect @ 0x55d] silence_start: 3.2
[silencedetect @ 0x55d] silence_end: 4.1 | silence_duration: 0.9
[silencedetect @ 0x55d] silence_start: 10
[silencedetect @ 0x55d] silence_end: 12.75 | silence_duration: 2.75
"""


def test_parse_silence_durations():
    assert parse_silence_durations(SILENCEDETECT_STDERR) == [0.9, 2.75]
    assert parse_silence_durations("no silence here") == []


@pytest.mark.parametrize(
    "effect,fragment",
    [
        ("slow_zoom_in", "zoompan=z='min(zoom+0.0005,1.1)'"),
        ("pan_left", "x='iw/2-(iw/zoom/2)+"),
        ("glitch", "noise="),
        ("fade", "fade=out:"),
    ],
)
def test_motion_filter_presets(effect, fragment):
    assert fragment in motion_filter(effect, 4.0)


def test_motion_filter_uses_frame_count_and_falls_back_to_static():
    assert f"d={4 * FPS}:s=1080x1920" in motion_filter("slow_zoom_out", 4.0)
    assert "zoompan" not in motion_filter("made_up", 4.0)


async def test_concatenate_videos_requires_inputs(tmp_path):
    with pytest.raises(ValueError):
        await concatenate_videos([], tmp_path / "out.mp4")


# ---------------------------------------------------------------------------
# QA gate
# ---------------------------------------------------------------------------

async def test_qa_missing_file_fails_every_check(tmp_path):
    result = await validate_qa(tmp_path / "final.mp4")
    assert result.passed is False
    assert (result.silence, result.file_size, result.resolution) == (False, False, False)
    assert result.details == "File does not exist"


async def test_qa_passes_valid_video(tmp_path):
    video = tmp_path / "final.mp4"
    video.write_bytes(b"\x00" * 2048)

    with patch.object(qa_module, "probe_video", AsyncMock(return_value=VideoProbe(valid=True, width=1080, height=1920))), \
         patch.object(qa_module, "detect_silence", AsyncMock(return_value=[0.4])):
        result = await validate_qa(video, QaConfig())

    assert result.passed is True
    assert result.details is None


async def test_qa_reports_each_failed_check(tmp_path):
    video = tmp_path / "final.mp4"
    video.write_bytes(b"\x00" * 2048)
    config = QaConfig(max_file_size_mb=0.001, max_silence_seconds=2.0)

    with patch.object(qa_module, "probe_video", AsyncMock(return_value=VideoProbe(valid=True, width=720, height=1280))), \
         patch.object(qa_module, "detect_silence", AsyncMock(return_value=[3.5])):
        result = await validate_qa(video, config)

    assert result.passed is False
    assert (result.silence, result.file_size, result.resolution) == (False, False, False)
    assert "Resolution 720x1280 (expected 1080x1920)" in result.details
    assert "Detected silence" in result.details
    assert result.details.count("; ") == 2
