"""Caption building step."""

import json
import logging
from typing import List

from renderflow.pipeline.context import StepContext
from renderflow.services.captions import WordTiming, build_captions_from_scenes, build_captions_from_words

logger = logging.getLogger(__name__)


def load_word_timings(raw: str) -> List[WordTiming]:
    """Word timings from a timestamps.json document; empty when absent or malformed."""
    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.warning(f"Malformed timestamps document, falling back to scene captions: {e}")
        return []
    words = data.get("words") if isinstance(data, dict) else None
    if not isinstance(words, list):
        return []
    timings = []
    for item in words:
        try:
            timings.append(WordTiming(word=str(item["word"]).strip(), start=float(item["start"]), end=float(item["end"])))
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Skipping malformed word timing: {item!r}")
    return timings


async def captions_build(ctx: StepContext) -> None:
    """Write captions/captions.ass from word timings, else from scene narration."""
    captions_path = ctx.paths.captions_ass

    if not captions_path.exists():
        words: List[WordTiming] = []
        if ctx.paths.timestamps.exists():
            words = load_word_timings(ctx.paths.timestamps.read_text(encoding="utf-8"))

        if words:
            count = build_captions_from_words(words, ctx.caption_style, captions_path)
        else:
            count = build_captions_from_scenes(ctx.scenes, ctx.caption_style, captions_path)
        await ctx.info(f"Built {count} caption segment(s)")

    ctx.record("captionsPath", captions_path)
