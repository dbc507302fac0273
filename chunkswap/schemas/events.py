from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class EventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    category: str
    name: str
    level: str
    chunkserver_id: Optional[str]
    host: Optional[str]
    fields: Dict[str, Any]
    created_at: datetime
