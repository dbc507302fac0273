from __future__ import annotations

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from chunkswap.models.base import Base, TimestampMixin

DISKS_SETTING_KEY = "disks"


class ClusterSetting(TimestampMixin, Base):
    __tablename__ = "cluster_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, default="")
