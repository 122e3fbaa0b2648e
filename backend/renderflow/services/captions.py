"""ASS subtitle generation for burned-in captions.

Word timings (from transcription) are grouped into short on-screen phrases;
within a phrase, words are shown in chunks of four with the spoken word
highlighted. Without word timings, each scene's narration is shown for the
scene's time range.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Sequence

from renderflow.config import CaptionStyleConfig

logger = logging.getLogger(__name__)

PAUSE_BREAK_SEC = 0.5
MAX_WORDS_PER_SEGMENT = 6
HIGHLIGHT_CHUNK_SIZE = 4


@dataclass
class WordTiming:
    word: str
    start: float
    end: float


@dataclass
class CaptionSegment:
    text: str
    start: float
    end: float
    words: List[WordTiming] = field(default_factory=list)


def format_ass_time(seconds: float) -> str:
    """Format seconds as an ASS timestamp (H:MM:SS.cc)."""
    total_cs = int(round(max(seconds, 0.0) * 100))
    hours, rem = divmod(total_cs, 360000)
    minutes, rem = divmod(rem, 6000)
    secs, cs = divmod(rem, 100)
    return f"{hours}:{minutes:02d}:{secs:02d}.{cs:02d}"


def _bgr(hex_color: str) -> str:
    value = hex_color.lstrip("#")
    if len(value) != 6:
        raise ValueError(f"Expected #RRGGBB colour, got {hex_color!r}")
    r, g, b = value[0:2], value[2:4], value[4:6]
    return f"{b}{g}{r}".upper()


def hex_to_ass(hex_color: str) -> str:
    """Convert #RRGGBB to an ASS style colour (&HAABBGGRR&, opaque)."""
    return f"&H00{_bgr(hex_color)}&"


def escape_ass_text(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace("\n", "\\N")
        .replace("{", "\\{")
        .replace("}", "\\}")
    )


def group_words(words: Sequence[WordTiming]) -> List[CaptionSegment]:
    """Split word timings into segments at long pauses or every six words."""
    segments: List[CaptionSegment] = []
    current: List[WordTiming] = []

    for i, word in enumerate(words):
        current.append(word)
        is_last = i == len(words) - 1
        long_pause = not is_last and words[i + 1].start - word.end > PAUSE_BREAK_SEC
        if long_pause or len(current) >= MAX_WORDS_PER_SEGMENT or is_last:
            segments.append(
                CaptionSegment(
                    text=" ".join(w.word for w in current),
                    start=current[0].start,
                    end=current[-1].end,
                    words=current,
                )
            )
            current = []

    return segments


def _highlight_events(words: Sequence[WordTiming], style: CaptionStyleConfig) -> List[str]:
    highlight = _bgr(style.highlight_color)
    lines = []
    for offset in range(0, len(words), HIGHLIGHT_CHUNK_SIZE):
        chunk = words[offset:offset + HIGHLIGHT_CHUNK_SIZE]
        for i, word in enumerate(chunk):
            parts = [
                f"{{\\c&H{highlight}&}}{escape_ass_text(w.word)}{{\\r}}" if j == i else escape_ass_text(w.word)
                for j, w in enumerate(chunk)
            ]
            lines.append(
                f"Dialogue: 0,{format_ass_time(word.start)},{format_ass_time(word.end)},"
                f"Default,,0,0,0,,{' '.join(parts)}"
            )
    return lines


def _header(style: CaptionStyleConfig) -> str:
    primary = hex_to_ass(style.primary_color)
    outline = hex_to_ass(style.outline_color)
    highlight = hex_to_ass(style.highlight_color)
    margins = f"{style.margin_horizontal},{style.margin_horizontal},{style.margin_bottom}"
    common = f"&H80000000&,1,0,0,0,100,100,0,0,1,{style.outline_width},0,2,{margins},1"
    return (
        "[Script Info]\n"
        "Title: renderflow captions\n"
        "ScriptType: v4.00+\n"
        "PlayResX: 1080\n"
        "PlayResY: 1920\n"
        "WrapStyle: 0\n"
        "\n"
        "[V4+ Styles]\n"
        "Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, "
        "BackColour, Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, "
        "BorderStyle, Outline, Shadow, Alignment, MarginL, MarginR, MarginV, Encoding\n"
        f"Style: Default,{style.font_family},{style.font_size},{primary},{highlight},{outline},{common}\n"
        f"Style: Highlight,{style.font_family},{style.font_size},{highlight},{primary},{outline},{common}\n"
        "\n"
        "[Events]\n"
        "Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text\n"
    )


def render_ass(segments: Iterable[CaptionSegment], style: CaptionStyleConfig) -> str:
    """Full ASS document for the given segments."""
    lines: List[str] = []
    for segment in segments:
        if segment.words:
            lines.extend(_highlight_events(segment.words, style))
        else:
            lines.append(
                f"Dialogue: 0,{format_ass_time(segment.start)},{format_ass_time(segment.end)},"
                f"Default,,0,0,0,,{escape_ass_text(segment.text)}"
            )
    body = "\n".join(lines)
    return _header(style) + (body + "\n" if body else "")


def _write(content: str, output: Path) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(content, encoding="utf-8")


def build_captions_from_words(
    words: Sequence[WordTiming], style: CaptionStyleConfig, output: Path
) -> int:
    """Write captions from word timings. Returns the number of segments."""
    segments = group_words(words)
    _write(render_ass(segments, style), output)
    logger.info(f"Built {len(segments)} word-timed caption segments -> {output}")
    return len(segments)


def build_captions_from_scenes(scenes, style: CaptionStyleConfig, output: Path) -> int:
    """Write one caption per scene spanning its start/end offsets.

    Args:
        scenes: Objects with narration_text, start_time_sec and end_time_sec
        style: Caption style
        output: Destination .ass path

    Returns:
        Number of caption segments written
    """
    segments = [
        CaptionSegment(text=s.narration_text, start=s.start_time_sec, end=s.end_time_sec)
        for s in scenes
    ]
    _write(render_ass(segments, style), output)
    logger.info(f"Built {len(segments)} scene caption segments -> {output}")
    return len(segments)
