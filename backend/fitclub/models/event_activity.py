"""Event-scoped activities: one table for all events, unique per (event_id, external_id)."""

from datetime import date, datetime
from sqlalchemy import BigInteger, Date, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from fitclub.db.base import Base


class EventActivity(Base):
    __tablename__ = "event_activities"
    __table_args__ = (UniqueConstraint("event_id", "external_id", name="uq_event_activities_event_external_id"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    category: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    distance_m: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    moving_time_s: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    elapsed_time_s: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    elevation_m: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    local_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_instant: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    event: Mapped["Event"] = relationship("Event", back_populates="activities")
