"""Single-use check-in links sent with reminders. Only the SHA-256 of the token is stored."""

from __future__ import annotations

from datetime import datetime
from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from deadman.db.base import Base
from deadman.db.types import UTCDateTime, utcnow


class CheckInToken(Base):
    __tablename__ = "check_in_tokens"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    secret_id: Mapped[str] = mapped_column(ForeignKey("secrets.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    secret: Mapped["Secret"] = relationship("Secret", back_populates="check_in_tokens")
