from datetime import date, datetime
from sqlalchemy import Boolean, Date, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from fitclub.db.base import Base


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)  # local calendar day
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)  # None = open-ended, runs until now
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    # Partition of event_activities; absent until the event has started and been provisioned
    activity_table_name: Mapped[str | None] = mapped_column(String(63), nullable=True)
    activity_table_created: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    registrations: Mapped[list["EventRegistration"]] = relationship(
        "EventRegistration", back_populates="event", cascade="all, delete-orphan"
    )
    activities: Mapped[list["EventActivity"]] = relationship(
        "EventActivity", back_populates="event", cascade="all, delete-orphan"
    )
