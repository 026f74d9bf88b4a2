# /appbuilder/models/generated_app.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, Integer, Boolean, DateTime, JSON

from appbuilder.core.database import Base


class JobStatus:
    PENDING = "PENDING"
    GENERATING = "GENERATING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    ACTIVE = (PENDING, GENERATING)
    TERMINAL = (COMPLETE, FAILED, CANCELLED)


class GeneratedApp(Base):
    """One generation job. The only durable record of where a job stands."""
    __tablename__ = "generated_apps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    created_by_id: Mapped[str] = mapped_column(String(36), index=True)

    prompt: Mapped[str] = mapped_column(Text)
    business_context: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # PENDING | GENERATING | COMPLETE | FAILED | CANCELLED
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING, index=True)

    current_stage: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    current_detail: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # workspace directory, written once by mark_generating
    source_dir: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    title: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    iteration_count: Mapped[int] = mapped_column(Integer, default=0)
    published: Mapped[bool] = mapped_column(Boolean, default=False)
    preview_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
