# /appbuilder/models/app_iteration.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, Integer, ForeignKey, DateTime

from appbuilder.core.database import Base


class AppIteration(Base):
    """A follow-up refinement pass against an existing workspace."""
    __tablename__ = "app_iterations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    generated_app_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("generated_apps.id", ondelete="CASCADE"), index=True
    )

    prompt: Mapped[str] = mapped_column(Text)
    sequence_number: Mapped[int] = mapped_column(Integer)

    # PENDING | GENERATING | COMPLETE | FAILED
    status: Mapped[str] = mapped_column(String(20), default="PENDING")
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
