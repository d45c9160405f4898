"""Per-recipient, per-channel outcome of a disclosure. Rows are created when the secret is triggered."""

from __future__ import annotations

from datetime import datetime
from sqlalchemy import ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from deadman.db.base import Base
from deadman.db.types import UTCDateTime, utcnow
from deadman.models.enums import DeliveryStatus


class DisclosureDelivery(Base):
    __tablename__ = "disclosure_deliveries"
    __table_args__ = (
        UniqueConstraint("secret_id", "recipient_id", "channel", name="uq_disclosure_secret_recipient_channel"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    secret_id: Mapped[str] = mapped_column(ForeignKey("secrets.id", ondelete="CASCADE"), nullable=False, index=True)
    recipient_id: Mapped[int] = mapped_column(
        ForeignKey("secret_recipients.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    channel: Mapped[str] = mapped_column(String(8), nullable=False)  # email | sms
    destination: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=DeliveryStatus.PENDING.value, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    secret: Mapped["Secret"] = relationship("Secret", back_populates="deliveries")
    recipient: Mapped["SecretRecipient"] = relationship("SecretRecipient")
