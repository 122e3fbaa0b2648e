"""Finalization step: thumbnails, publish metadata and the export document."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from renderflow.pipeline.context import StepContext
from renderflow.services.ffmpeg import extract_thumbnail, get_media_duration
from renderflow.services.niche_packs import get_niche_pack
from renderflow.services.providers import ProviderError, PublishMeta

logger = logging.getLogger(__name__)


async def _extract_thumbnails(ctx: StepContext) -> None:
    final = ctx.paths.final_video
    thumbs = ctx.paths.thumbnails()
    if any(not t.exists() for t in thumbs):
        await ctx.info("Extracting thumbnails...")
        duration = await get_media_duration(final)
        offsets = [0.0, 3.0, max(0.0, duration / 2 - 0.5)]
        for thumb, offset in zip(thumbs, offsets):
            if not thumb.exists():
                await extract_thumbnail(final, thumb, offset)

    relative = [ctx.files.relative(t) for t in thumbs]
    ctx.record("thumbPaths", relative)
    ctx.record("thumbPath", relative[0])


async def _publish_meta(ctx: StepContext) -> Optional[PublishMeta]:
    pack = get_niche_pack(ctx.project.niche_pack_id)
    try:
        await ctx.info("Generating publish caption and hashtags...")
        meta = await ctx.provider().publish_metadata(
            topic=ctx.project.topic,
            niche_name=pack.name if pack else ctx.project.niche_pack_id,
            hook=ctx.plan.hook_selected or "",
            outline=ctx.plan.outline or "",
        )
    except ProviderError as e:
        await ctx.warn(f"Publish metadata failed: {e}")
        return None

    ctx.add_cost(meta.cost_usd)
    ctx.record("publishCaption", meta.caption)
    ctx.record("publishHashtags", meta.hashtags)
    ctx.record("publishTitle", meta.title)
    return meta


def build_export(ctx: StepContext, meta: Optional[PublishMeta]) -> Dict[str, Any]:
    """Export document describing the project, plan, render and artifacts."""
    project = ctx.project
    export: Dict[str, Any] = {
        "project": {
            "id": project.id,
            "title": project.title,
            "topic": project.topic,
            "nichePackId": project.niche_pack_id,
            "language": project.language,
            "targetLengthSec": project.target_length_sec,
        },
        "plan": {
            "hookSelected": ctx.plan.hook_selected,
            "outline": ctx.plan.outline,
            "scenes": [
                {
                    "idx": s.idx,
                    "narrationText": s.narration_text,
                    "visualPrompt": s.visual_prompt,
                    "durationTargetSec": s.duration_target_sec,
                }
                for s in ctx.scenes
            ],
        },
        "render": {
            "runId": ctx.run_id,
            "completedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "dryRun": ctx.dry_run,
        },
        "artifacts": ctx.ledger.snapshot(),
    }
    if meta is not None:
        export["publish"] = {
            "caption": meta.caption,
            "hashtags": meta.hashtags,
            "title": meta.title,
        }
    return export


async def finalize_artifacts(ctx: StepContext) -> None:
    """Write final/export.json and, for real renders, thumbnails and publish metadata."""
    ctx.ledger.record_cost_estimate()

    if not ctx.dry_run and ctx.paths.final_video.exists():
        await _extract_thumbnails(ctx)

    meta = None
    if not ctx.dry_run:
        meta = await _publish_meta(ctx)
        ctx.ledger.record_cost_estimate()

    export_path = ctx.paths.export_json
    if not export_path.exists():
        export_path.parent.mkdir(parents=True, exist_ok=True)
        export_path.write_text(json.dumps(build_export(ctx, meta), indent=2), encoding="utf-8")
        logger.info(f"Run {ctx.run_id}: wrote {export_path}")

    ctx.record("exportJsonPath", export_path)
