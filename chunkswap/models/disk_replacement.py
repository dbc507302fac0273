from __future__ import annotations

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from chunkswap.models.base import Base, TimestampMixin

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_DONE = "done"
IN_FLIGHT_STATUSES = (STATUS_PENDING, STATUS_RUNNING)


class DiskReplacement(TimestampMixin, Base):
    __tablename__ = "disk_replacements"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    chunkserver_id: Mapped[str] = mapped_column(String(64), index=True)
    host: Mapped[str] = mapped_column(String(128))
    old_device: Mapped[str] = mapped_column(String(256))
    device: Mapped[str] = mapped_column(String(256))
    mount_point: Mapped[str] = mapped_column(String(256), default="")
    old_disk_uri: Mapped[str] = mapped_column(String(256), default="")
    old_disk_size: Mapped[str] = mapped_column(String(32), default="")
    new_record_existed: Mapped[bool] = mapped_column(Boolean, default=False)
    new_record_mount_point: Mapped[str] = mapped_column(String(256), default="")
    new_record_size: Mapped[str] = mapped_column(String(32), default="")
    old_entry_provisioned: Mapped[bool] = mapped_column(Boolean, default=True)
    committed: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(16), default=STATUS_PENDING, index=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)

    @property
    def in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES
