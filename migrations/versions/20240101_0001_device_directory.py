"""Device directory and hourly consumption buckets.

Revision ID: 0001
Revises:
Create Date: 2024-01-01 00:00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── 1. devices (local projection of the device registry) ──────────────────
    op.create_table(
        "devices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("max_consumption", sa.Float, nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "placeholder", sa.Boolean, nullable=False, server_default=sa.text("false")
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    )

    # ── 2. hourly_consumption (one row per device, UTC day and hour) ──────────
    op.create_table(
        "hourly_consumption",
        sa.Column(
            "device_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(
                "devices.id",
                ondelete="CASCADE",
                name="fk_hourly_consumption_device_id",
            ),
            nullable=False,
        ),
        sa.Column("day", sa.Date, nullable=False),
        sa.Column("hour", sa.SmallInteger, nullable=False),
        sa.Column("accumulated_value", sa.Float, nullable=False, server_default="0"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("device_id", "day", "hour"),
        sa.CheckConstraint("hour >= 0 AND hour <= 23", name="ck_hourly_consumption_hour"),
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_hourly_consumption_day "
        "ON hourly_consumption (day, device_id)"
    )


def downgrade() -> None:
    op.drop_table("hourly_consumption")
    op.drop_table("devices")
