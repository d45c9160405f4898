"""Dead man's switch secret: encrypted payload, recipients, deadline and lifecycle status."""

from __future__ import annotations

import uuid
from datetime import datetime
from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from deadman.db.base import Base
from deadman.db.types import UTCDateTime, utcnow
from deadman.models.enums import SecretStatus


class Secret(Base):
    __tablename__ = "secrets"
    __table_args__ = (
        Index("ix_secrets_status_next_check_in", "status", "next_check_in"),
        CheckConstraint("status IN ('active', 'paused', 'triggered')", name="ck_secrets_status"),
        CheckConstraint("(status = 'triggered') = (triggered_at IS NOT NULL)", name="ck_secrets_triggered_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    # AES-256-GCM envelope, base64 encoded
    ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    iv: Mapped[str] = mapped_column(String(32), nullable=False)
    auth_tag: Mapped[str] = mapped_column(String(32), nullable=False)
    check_in_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SecretStatus.ACTIVE.value)
    last_check_in: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    next_check_in: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    triggered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    owner: Mapped["User"] = relationship("User", back_populates="secrets")
    recipients: Mapped[list["SecretRecipient"]] = relationship(
        "SecretRecipient",
        back_populates="secret",
        cascade="all, delete-orphan",
        order_by="SecretRecipient.position",
    )
    reminders: Mapped[list["Reminder"]] = relationship(
        "Reminder", back_populates="secret", cascade="all, delete-orphan"
    )
    check_in_tokens: Mapped[list["CheckInToken"]] = relationship(
        "CheckInToken", back_populates="secret", cascade="all, delete-orphan"
    )
    check_in_history: Mapped[list["CheckInHistory"]] = relationship(
        "CheckInHistory", back_populates="secret", cascade="all, delete-orphan"
    )
    deliveries: Mapped[list["DisclosureDelivery"]] = relationship(
        "DisclosureDelivery", back_populates="secret", cascade="all, delete-orphan"
    )


class SecretRecipient(Base):
    __tablename__ = "secret_recipients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    secret_id: Mapped[str] = mapped_column(ForeignKey("secrets.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    contact_method: Mapped[str] = mapped_column(String(8), nullable=False)  # email | phone | both

    secret: Mapped["Secret"] = relationship("Secret", back_populates="recipients")
