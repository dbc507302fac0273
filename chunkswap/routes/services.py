from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from chunkswap.database import get_db_session
from chunkswap.schemas.services import ServiceOut, ServiceRegister
from chunkswap.services import service_registry

router = APIRouter(prefix="/services", tags=["services"])


@router.get("", response_model=List[ServiceOut])
async def list_services(
    host: Optional[str] = None,
    session: AsyncSession = Depends(get_db_session),
) -> List[ServiceOut]:
    services = await service_registry.list_services(session, host)
    return [ServiceOut.model_validate(service) for service in services]


@router.get("/{chunkserver_id}", response_model=ServiceOut)
async def get_service(
    chunkserver_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> ServiceOut:
    service = await service_registry.get_service(session, chunkserver_id)
    if service is None:
        raise HTTPException(status_code=404, detail="Service not found")
    return ServiceOut.model_validate(service)


@router.post("", response_model=ServiceOut, status_code=status.HTTP_201_CREATED)
async def register_service(
    payload: ServiceRegister,
    session: AsyncSession = Depends(get_db_session),
) -> ServiceOut:
    service = await service_registry.register_service(
        session,
        chunkserver_id=payload.id,
        host=payload.host,
        container_id=payload.container_id,
        device=payload.device,
    )
    return ServiceOut.model_validate(service)
