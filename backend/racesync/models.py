from __future__ import annotations

from datetime import datetime, timezone
from sqlalchemy import String, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalSlice(Base):
    """One independently persisted piece of device state (entries, faults, settings...)."""
    __tablename__ = "local_slices"
    name: Mapped[str] = mapped_column(String, primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
