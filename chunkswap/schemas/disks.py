from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class DiskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    host: str
    device: str
    mount_point: str
    container_image: str
    chunkserver_id: str
    uri: str
    size: str
    format_percent: int
    service_mount_device: bool
    created_at: datetime
    updated_at: datetime


class DisksDocumentIn(BaseModel):
    document: str = Field(min_length=1)


class DisksDocumentOut(BaseModel):
    document: str


class DisksCommitOut(BaseModel):
    added: List[str]
    updated: List[str]
    removed: List[str]
    retained: List[str]
