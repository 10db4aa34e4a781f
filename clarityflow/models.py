from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from clarityflow.clock import utcnow


class Base(DeclarativeBase):
  pass


class Task(Base):
  __tablename__ = "tasks"
  __table_args__ = (Index("ix_tasks_user_due", "user_id", "completed", "due_date"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str] = mapped_column(Text, nullable=False, default="")
  quadrant: Mapped[str] = mapped_column(String, nullable=False, default="not-urgent-important")
  priority: Mapped[str] = mapped_column(String, nullable=False, default="medium")
  due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
