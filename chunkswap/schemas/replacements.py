from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class ReplacementCreate(BaseModel):
    chunkserver_id: str = Field(min_length=1)
    device: str = Field(min_length=1)
    restart: bool = False


class ReplacementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    chunkserver_id: str
    host: str
    old_device: str
    device: str
    status: str
    progress: int
    committed: bool
    created_at: datetime
    updated_at: datetime


class ReplaceResultOut(BaseModel):
    replacement: ReplacementOut
    steps: List[str]
    checks: List[str]
    warnings: List[str]
    resumed: bool


class StopResultOut(BaseModel):
    stopped: bool
    chunkserver_id: str
    reverted: bool
    message: str
