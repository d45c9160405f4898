from __future__ import annotations

from datetime import datetime
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from deadman.db.base import Base
from deadman.db.types import UTCDateTime, utcnow
from deadman.models.enums import ContactMethod, Tier


class User(Base):
    """Secret owner. Identity lives in the auth service; id is its subject string."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_method: Mapped[str] = mapped_column(String(8), nullable=False, default=ContactMethod.EMAIL.value)
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default=Tier.FREE.value)  # free | pro
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    secrets: Mapped[list["Secret"]] = relationship("Secret", back_populates="owner", cascade="all, delete-orphan")

    @property
    def custom_intervals(self) -> bool:
        return self.tier == Tier.PRO.value
