"""Scene image generation step."""

import logging

from renderflow.pipeline.context import StepContext
from renderflow.services.file_manager import write_placeholder
from renderflow.services.niche_packs import get_niche_pack

logger = logging.getLogger(__name__)

VERTICAL_COMPOSITION = "High quality, detailed, vertical composition suitable for short-form video"


def build_image_prompt(style_bible: str, visual_prompt: str) -> str:
    """Join the pack style, scene prompt and composition hint, skipping blanks."""
    parts = [style_bible, visual_prompt, VERTICAL_COMPOSITION]
    return ". ".join(p.strip() for p in parts if p and p.strip())


async def images_generate(ctx: StepContext) -> None:
    """Generate images/scene_NN.png for every scene that does not have one."""
    pack = get_niche_pack(ctx.project.niche_pack_id)
    if pack is None:
        logger.warning(f"Run {ctx.run_id}: unknown niche pack {ctx.project.niche_pack_id!r}, no style prompt")
    style_bible = pack.style_bible_prompt if pack else ""
    total = len(ctx.scenes)

    for i, scene in enumerate(ctx.scenes):
        ctx.ensure_active()
        image_path = ctx.paths.scene_image(i)

        if not image_path.exists():
            await ctx.info(f"Generating image for scene {i + 1}/{total}...")
            prompt = build_image_prompt(style_bible, scene.visual_prompt)
            if ctx.dry_run:
                write_placeholder(image_path, f"[dry-run image]\n{prompt}\n")
            else:
                cost = await ctx.provider().generate_image(prompt, image_path)
                ctx.add_cost(cost)

        await ctx.report_progress((i + 1) / total)
