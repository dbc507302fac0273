"""initial schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "cluster_settings",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False, server_default=""),
        *_timestamps(),
    )

    op.create_table(
        "disks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("host", sa.String(length=128), nullable=False),
        sa.Column("device", sa.String(length=256), nullable=False),
        sa.Column("mount_point", sa.String(length=256), nullable=False),
        sa.Column("container_image", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("chunkserver_id", sa.String(length=64), nullable=False, server_default="-"),
        sa.Column("uri", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("size", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("format_percent", sa.Integer(), nullable=False, server_default="90"),
        sa.Column("service_mount_device", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("host", "device", name="uq_disks_host_device"),
    )
    op.create_index("ix_disks_host", "disks", ["host"])
    op.create_index("ix_disks_chunkserver_id", "disks", ["chunkserver_id"])

    op.create_table(
        "disk_replacements",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("chunkserver_id", sa.String(length=64), nullable=False),
        sa.Column("host", sa.String(length=128), nullable=False),
        sa.Column("old_device", sa.String(length=256), nullable=False),
        sa.Column("device", sa.String(length=256), nullable=False),
        sa.Column("mount_point", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("old_disk_uri", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("old_disk_size", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("new_record_existed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("new_record_mount_point", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("new_record_size", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("old_entry_provisioned", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("committed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_disk_replacements_chunkserver_id", "disk_replacements", ["chunkserver_id"])
    op.create_index("ix_disk_replacements_status", "disk_replacements", ["status"])

    op.create_table(
        "services",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("host", sa.String(length=128), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="chunkserver"),
        sa.Column("container_id", sa.String(length=128), nullable=False, server_default=""),
        *_timestamps(),
    )
    op.create_index("ix_services_host", "services", ["host"])

    op.create_table(
        "operation_locks",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("owner", sa.String(length=64), nullable=False),
        sa.Column("purpose", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("level", sa.String(length=16), nullable=False),
        sa.Column("chunkserver_id", sa.String(length=64), nullable=True),
        sa.Column("host", sa.String(length=128), nullable=True),
        sa.Column("fields", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        *_timestamps(),
    )
    op.create_index("ix_events_category", "events", ["category"])
    op.create_index("ix_events_chunkserver_id", "events", ["chunkserver_id"])
    op.create_index("ix_events_created_at", "events", ["created_at"])


def downgrade() -> None:
    op.drop_table("events")
    op.drop_table("operation_locks")
    op.drop_table("services")
    op.drop_table("disk_replacements")
    op.drop_table("disks")
    op.drop_table("cluster_settings")
