from __future__ import annotations

from datetime import datetime
from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from deadman.db.base import Base
from deadman.db.types import UTCDateTime, utcnow


class CheckInHistory(Base):
    __tablename__ = "checkin_history"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    secret_id: Mapped[str] = mapped_column(ForeignKey("secrets.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    checked_in_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    next_check_in: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    secret: Mapped["Secret"] = relationship("Secret", back_populates="check_in_history")
