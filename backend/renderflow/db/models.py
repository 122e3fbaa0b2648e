"""SQLAlchemy 2.0 ORM models for the render orchestrator."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, Integer, Float, ForeignKey, Index, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


class Project(Base):
    """Project owning plan versions and render runs.

    Only the fields the render steps read are modelled here; project CRUD
    lives outside this package.
    """
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(Text)
    topic: Mapped[str] = mapped_column(Text, default="")
    niche_pack_id: Mapped[str] = mapped_column(String(50), default="facts")
    language: Mapped[str] = mapped_column(String(10), default="en")
    target_length_sec: Mapped[int] = mapped_column(Integer, default=60)
    voice_preset: Mapped[str] = mapped_column(String(50), default="alloy")
    status: Mapped[str] = mapped_column(String(50), default="APPROVED")
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )


class PlanVersion(Base):
    """Approved plan version that a run renders."""
    __tablename__ = "plan_versions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id"), index=True)
    hook_selected: Mapped[str] = mapped_column(Text, default="")
    outline: Mapped[str] = mapped_column(Text, default="")
    script_full: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())


class Scene(Base):
    """Scene within a plan version.

    duration_target_sec, start_time_sec and end_time_sec start as plan-time
    estimates and are rewritten from measured voice-over length.
    """
    __tablename__ = "scenes"
    __table_args__ = (
        Index("idx_scenes_plan_idx", "plan_version_id", "idx"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    plan_version_id: Mapped[str] = mapped_column(ForeignKey("plan_versions.id"), index=True)
    idx: Mapped[int] = mapped_column(Integer)
    narration_text: Mapped[str] = mapped_column(Text)
    on_screen_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    visual_prompt: Mapped[str] = mapped_column(Text, default="")
    effect_preset: Mapped[str] = mapped_column(String(30), default="static")
    duration_target_sec: Mapped[float] = mapped_column(Float, default=5.0)
    start_time_sec: Mapped[float] = mapped_column(Float, default=0.0)
    end_time_sec: Mapped[float] = mapped_column(Float, default=0.0)


class Run(Base):
    """One render attempt of a plan version.

    logs_json, artifacts_json and resume_state_json hold the documents
    described in renderflow.schemas.run_state.
    """
    __tablename__ = "runs"
    __table_args__ = (
        Index("idx_runs_status_created", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id"), index=True)
    plan_version_id: Mapped[str] = mapped_column(ForeignKey("plan_versions.id"), index=True)
    status: Mapped[str] = mapped_column(String(20), default="queued")
    progress: Mapped[int] = mapped_column(Integer, default=0)
    current_step: Mapped[str] = mapped_column(String(50), default="")
    logs_json: Mapped[str] = mapped_column(Text, default="[]")
    artifacts_json: Mapped[str] = mapped_column(Text, default="{}")
    resume_state_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow
    )
