"""Pydantic schemas for an approved content plan imported from YAML.

A plan document carries the project fields the render steps read, the
selected hook and outline, and the ordered scenes. Scene offsets are
derived from the target durations at import time.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

EffectPreset = Literal[
    "slow_zoom_in",
    "slow_zoom_out",
    "pan_left",
    "pan_right",
    "tilt_up",
    "tilt_down",
    "glitch",
    "flash_cut",
    "fade",
    "static",
]


class ProjectSpec(BaseModel):
    """Project metadata used by captions, prompts and the export document."""

    title: str
    topic: str = ""
    niche_pack_id: str = Field(
        default="facts",
        description="Niche pack providing the visual style bible and caption overrides",
    )
    language: str = "en"
    target_length_sec: int = Field(default=60, gt=0)
    voice_preset: str = "alloy"


class SceneSpec(BaseModel):
    """One narrated scene; list order defines scene index."""

    narration_text: str = Field(min_length=1)
    on_screen_text: Optional[str] = None
    visual_prompt: str = ""
    effect_preset: EffectPreset = "static"
    duration_target_sec: float = Field(default=5.0, gt=0)


class PlanDocument(BaseModel):
    """Complete approved plan ready to render."""

    project: ProjectSpec
    hook_selected: str = ""
    outline: str = ""
    script_full: str = ""
    scenes: List[SceneSpec] = Field(min_length=1)
