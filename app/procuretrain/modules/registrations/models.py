from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.procuretrain.models import Base, new_uuid


def _money(v: Decimal | None) -> str | None:
    return str(v) if v is not None else None


class EventRegistration(Base):
    __tablename__ = "event_registrations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    # Zero-padded sequence, e.g. "0001"
    registration_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    event_id: Mapped[str] = mapped_column(ForeignKey("events.id", ondelete="RESTRICT"), nullable=False, index=True)

    # pending, paid, confirmed, cancelled
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    registered_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    country: Mapped[str | None] = mapped_column(String(128), nullable=True)
    organization: Mapped[str | None] = mapped_column(String(255), nullable=True)
    position: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    has_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Stored evidence reference; may be a legacy URL or key (see app.procuretrain.evidence).
    payment_evidence: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    price_paid: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    delegate_type: Mapped[str | None] = mapped_column(String(32), nullable=True)

    dinner_gala_attendance: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    accommodation_package: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    victoria_falls_package: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    boat_cruise_package: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    group_size: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    group_payment_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    group_payment_currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    organization_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    user: Mapped["User"] = relationship("User", lazy="selectin")
    event: Mapped["Event"] = relationship("Event", lazy="selectin")
    evidence_history: Mapped[list["EvidenceHistory"]] = relationship(
        "EvidenceHistory",
        back_populates="registration",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="EvidenceHistory.uploaded_at",
    )

    @property
    def is_cancelled(self) -> bool:
        return self.payment_status == "cancelled"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "registrationNumber": self.registration_number,
            "userId": self.user_id,
            "eventId": self.event_id,
            "paymentStatus": self.payment_status,
            "registeredAt": self.registered_at.isoformat() if self.registered_at else None,
            "country": self.country,
            "organization": self.organization,
            "position": self.position,
            "notes": self.notes,
            "hasPaid": bool(self.has_paid),
            "paymentEvidence": self.payment_evidence,
            "paymentMethod": self.payment_method,
            "currency": self.currency,
            "pricePaid": _money(self.price_paid),
            "delegateType": self.delegate_type,
            "dinnerGalaAttendance": bool(self.dinner_gala_attendance),
            "accommodationPackage": bool(self.accommodation_package),
            "victoriaFallsPackage": bool(self.victoria_falls_package),
            "boatCruisePackage": bool(self.boat_cruise_package),
            "groupSize": self.group_size,
            "groupPaymentAmount": _money(self.group_payment_amount),
            "groupPaymentCurrency": self.group_payment_currency,
            "organizationReference": self.organization_reference,
        }


class EvidenceHistory(Base):
    """Append-only record of every evidence key stored for a registration."""

    __tablename__ = "evidence_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    registration_id: Mapped[str] = mapped_column(
        ForeignKey("event_registrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    uploaded_by_user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    registration: Mapped["EventRegistration"] = relationship("EventRegistration", back_populates="evidence_history")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "registrationId": self.registration_id,
            "filePath": self.file_path,
            "uploadedAt": self.uploaded_at.isoformat() if self.uploaded_at else None,
            "uploadedByUserId": self.uploaded_by_user_id,
        }
