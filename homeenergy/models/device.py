import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from homeenergy.db.base import Base

# Name given to directory rows created before their lifecycle event arrives
PLACEHOLDER_DEVICE_NAME = "Unknown device"


class Device(Base):
    """Local, eventually-consistent projection of the device registry.

    Rows are written by lifecycle events (materialized) or created implicitly
    when a measurement references a device that has not been synced yet
    (placeholder=True). A materialized upsert always overwrites a placeholder.
    """

    __tablename__ = "devices"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    max_consumption: Mapped[float | None] = mapped_column(Float, nullable=True)
    # "metadata" is reserved on declarative classes
    device_metadata: Mapped[dict] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict, server_default="{}"
    )
    placeholder: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
