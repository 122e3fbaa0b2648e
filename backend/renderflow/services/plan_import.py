"""Load approved plans into the database."""

import logging
from pathlib import Path
from typing import Union

import yaml
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from renderflow.db.models import PlanVersion, Project, Scene
from renderflow.schemas.plan import PlanDocument

logger = logging.getLogger(__name__)


def load_plan_document(path: Union[str, Path]) -> PlanDocument:
    """Parse and validate a YAML plan file.

    Raises:
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If the document does not match PlanDocument.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return PlanDocument.model_validate(data)


async def import_plan(
    session_factory: async_sessionmaker[AsyncSession],
    document: PlanDocument,
) -> PlanVersion:
    """Create a project, its plan version and scenes in one transaction."""
    async with session_factory() as session:
        project = Project(**document.project.model_dump(), status="APPROVED")
        session.add(project)
        await session.flush()

        plan = PlanVersion(
            project_id=project.id,
            hook_selected=document.hook_selected,
            outline=document.outline,
            script_full=document.script_full
            or " ".join(s.narration_text for s in document.scenes),
        )
        session.add(plan)
        await session.flush()

        offset = 0.0
        for idx, scene_spec in enumerate(document.scenes):
            session.add(
                Scene(
                    plan_version_id=plan.id,
                    idx=idx,
                    narration_text=scene_spec.narration_text,
                    on_screen_text=scene_spec.on_screen_text,
                    visual_prompt=scene_spec.visual_prompt,
                    effect_preset=scene_spec.effect_preset,
                    duration_target_sec=scene_spec.duration_target_sec,
                    start_time_sec=offset,
                    end_time_sec=offset + scene_spec.duration_target_sec,
                )
            )
            offset += scene_spec.duration_target_sec

        await session.commit()
        await session.refresh(plan)

    logger.info(
        f"Imported plan version {plan.id} for project {project.id} "
        f"({len(document.scenes)} scenes, {offset:.1f}s)"
    )
    return plan
