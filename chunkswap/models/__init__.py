from chunkswap.models.base import Base
from chunkswap.models.cluster_setting import ClusterSetting
from chunkswap.models.disk import UNOWNED_SERVICE_ID, Disk
from chunkswap.models.disk_replacement import DiskReplacement
from chunkswap.models.event import Event
from chunkswap.models.operation_lock import OperationLock
from chunkswap.models.service import Service

__all__ = [
    "Base",
    "ClusterSetting",
    "Disk",
    "DiskReplacement",
    "Event",
    "OperationLock",
    "Service",
    "UNOWNED_SERVICE_ID",
]
