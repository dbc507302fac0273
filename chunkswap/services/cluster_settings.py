from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chunkswap.logger import get_logger
from chunkswap.models.cluster_setting import DISKS_SETTING_KEY, ClusterSetting

_logger = get_logger("services.cluster_settings")


async def get_setting(session: AsyncSession, key: str) -> Optional[ClusterSetting]:
    result = await session.execute(select(ClusterSetting).where(ClusterSetting.key == key))
    return result.scalar_one_or_none()


async def stage_setting(session: AsyncSession, key: str, value: str) -> ClusterSetting:
    """Overwrite a setting in the current transaction; the caller commits."""
    setting = await get_setting(session, key)
    if setting is None:
        setting = ClusterSetting(key=key, value=value)
        session.add(setting)
    else:
        setting.value = value
    _logger.debug("cluster_settings.stage", "Staged cluster setting", key=key, size=len(value))
    return setting


async def get_disks_document(session: AsyncSession) -> str:
    setting = await get_setting(session, DISKS_SETTING_KEY)
    return setting.value if setting is not None else ""


async def stage_disks_document(session: AsyncSession, raw: str) -> None:
    await stage_setting(session, DISKS_SETTING_KEY, raw)
