import uuid
from datetime import date, datetime

from sqlalchemy import CheckConstraint, Date, DateTime, Float, ForeignKey, SmallInteger
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from homeenergy.db.base import Base

# The placeholder recovery path matches on this exact constraint name
DEVICE_FK_NAME = "fk_hourly_consumption_device_id"


class HourlyConsumption(Base):
    """Per-device, per-hour accumulator of raw measurement values.

    Keyed by (device_id, day, hour) with day/hour taken in UTC. Rows are only
    ever grown by adding to accumulated_value, never overwritten. Deleting a
    device cascades to its buckets.
    """

    __tablename__ = "hourly_consumption"
    __table_args__ = (
        CheckConstraint("hour >= 0 AND hour <= 23", name="ck_hourly_consumption_hour"),
    )

    device_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("devices.id", ondelete="CASCADE", name=DEVICE_FK_NAME),
        primary_key=True,
        nullable=False,
    )
    day: Mapped[date] = mapped_column(Date, primary_key=True, nullable=False)
    hour: Mapped[int] = mapped_column(SmallInteger, primary_key=True, nullable=False)
    accumulated_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
