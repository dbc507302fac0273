from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ServiceRegister(BaseModel):
    id: str = Field(min_length=1)
    host: str = Field(min_length=1)
    container_id: str = ""
    device: Optional[str] = None


class ServiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    host: str
    role: str
    container_id: str
    created_at: datetime
    updated_at: datetime
