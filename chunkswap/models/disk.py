from __future__ import annotations

from sqlalchemy import Boolean, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chunkswap.models.base import Base, TimestampMixin

UNOWNED_SERVICE_ID = "-"


class Disk(TimestampMixin, Base):
    __tablename__ = "disks"
    __table_args__ = (UniqueConstraint("host", "device", name="uq_disks_host_device"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host: Mapped[str] = mapped_column(String(128), index=True)
    device: Mapped[str] = mapped_column(String(256))
    mount_point: Mapped[str] = mapped_column(String(256))
    container_image: Mapped[str] = mapped_column(String(256), default="")
    chunkserver_id: Mapped[str] = mapped_column(String(64), default=UNOWNED_SERVICE_ID, index=True)
    uri: Mapped[str] = mapped_column(String(256), default="")
    size: Mapped[str] = mapped_column(String(32), default="")
    format_percent: Mapped[int] = mapped_column(Integer, default=90)
    service_mount_device: Mapped[bool] = mapped_column(Boolean, default=False)

    @property
    def owned(self) -> bool:
        return bool(self.chunkserver_id) and self.chunkserver_id != UNOWNED_SERVICE_ID
