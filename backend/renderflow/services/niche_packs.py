"""Niche packs: per-genre image style prompt and caption colour overrides."""

from dataclasses import dataclass, field
from typing import Dict, Optional

from renderflow.config import CaptionStyleConfig, settings


@dataclass(frozen=True)
class NichePack:
    id: str
    name: str
    style_bible_prompt: str
    caption_overrides: Dict[str, str] = field(default_factory=dict)


NICHE_PACKS: Dict[str, NichePack] = {
    pack.id: pack
    for pack in [
        NichePack(
            "horror",
            "Horror Stories",
            "Dark, eerie, cinematic horror style, atmospheric lighting, muted colors with red accents, "
            "fog and shadows, unsettling imagery, high contrast, dramatic composition",
            {"primary_color": "#FF0000", "highlight_color": "#FFFFFF"},
        ),
        NichePack(
            "facts",
            "Amazing Facts",
            "Clean, modern, educational style, bright vibrant colors, clear composition, infographic "
            "aesthetic, professional photography style, well-lit subjects",
            {"primary_color": "#00D4FF", "highlight_color": "#FFD700"},
        ),
        NichePack(
            "motivation",
            "Motivation",
            "Inspiring, epic, cinematic style, golden hour lighting, dramatic skies, powerful imagery, "
            "hero shots, aspirational scenes, mountains and sunrises, determined expressions",
            {"primary_color": "#FFD700", "highlight_color": "#FFFFFF"},
        ),
        NichePack(
            "product",
            "Product Showcase",
            "Clean product photography style, studio lighting, minimalist backgrounds, professional "
            "product shots, macro details, sleek and modern aesthetic",
            {"primary_color": "#FFFFFF", "highlight_color": "#00FF88"},
        ),
        NichePack(
            "story",
            "Storytelling",
            "Cinematic storytelling style, movie-like composition, dramatic lighting, emotional scenes, "
            "narrative imagery, rich colors and atmosphere",
            {"primary_color": "#FFFFFF", "highlight_color": "#FF6B6B"},
        ),
        NichePack(
            "top5",
            "Top 5 Lists",
            "Bold, dynamic list style, vibrant colors, clear numbered graphics aesthetic, eye-catching "
            "compositions, variety of subjects, engaging visuals",
            {"primary_color": "#FF4444", "highlight_color": "#FFD700"},
        ),
        NichePack(
            "finance_tips",
            "Finance Tips",
            "Professional finance style, clean and trustworthy aesthetic, business imagery, charts and "
            "graphs visual style, money and success imagery, corporate colors",
            {"primary_color": "#00CC66", "highlight_color": "#FFFFFF"},
        ),
        NichePack(
            "health_myths",
            "Health Myths",
            "Clean medical and health style, bright and trustworthy aesthetic, wellness imagery, "
            "scientific yet approachable, green and blue tones, healthy lifestyle visuals",
            {"primary_color": "#44CC88", "highlight_color": "#FFFFFF"},
        ),
        NichePack(
            "history",
            "History",
            "Epic historical style, cinematic period imagery, sepia and muted tones with dramatic "
            "accents, grand architecture, historical scenes reimagined, documentary aesthetic",
            {"primary_color": "#D4AF37", "highlight_color": "#FFFFFF"},
        ),
        NichePack(
            "gaming",
            "Gaming",
            "Vibrant gaming style, neon accents, digital aesthetic, game-inspired visuals, dynamic "
            "action shots, cyberpunk and fantasy elements, glowing effects",
            {"primary_color": "#FF00FF", "highlight_color": "#00FFFF"},
        ),
        NichePack(
            "science",
            "Science Explained",
            "Scientific visualization style, space and cosmos imagery, molecular and atomic visuals, "
            "clean educational aesthetic, futuristic technology, nature documentary quality",
            {"primary_color": "#00BFFF", "highlight_color": "#FFD700"},
        ),
        NichePack(
            "mystery",
            "Mysteries & Unexplained",
            "Mysterious and enigmatic style, dark atmospheric lighting, fog and shadows, ancient "
            "artifacts, unexplained phenomena visuals, documentary mystery aesthetic",
            {"primary_color": "#9966FF", "highlight_color": "#FFFFFF"},
        ),
    ]
}


def get_niche_pack(pack_id: str) -> Optional[NichePack]:
    return NICHE_PACKS.get(pack_id)


def caption_style_for(pack_id: str, base: Optional[CaptionStyleConfig] = None) -> CaptionStyleConfig:
    """Configured caption style with the pack's colour overrides applied."""
    style = base or settings.captions
    pack = get_niche_pack(pack_id)
    if pack is None or not pack.caption_overrides:
        return style
    return style.model_copy(update=pack.caption_overrides)
