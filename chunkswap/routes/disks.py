from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from chunkswap.database import get_db_session
from chunkswap.schemas.disks import DiskOut, DisksCommitOut, DisksDocumentIn, DisksDocumentOut
from chunkswap.services import disks as disk_service
from chunkswap.services.remote import RemoteRunner, get_runner

router = APIRouter(prefix="/disks", tags=["disks"])


@router.get("", response_model=List[DiskOut])
async def list_disks(
    host: Optional[str] = None,
    session: AsyncSession = Depends(get_db_session),
) -> List[DiskOut]:
    disks = await disk_service.list_disks(session, host)
    return [DiskOut.model_validate(disk) for disk in disks]


@router.get("/document", response_model=DisksDocumentOut)
async def get_document(
    session: AsyncSession = Depends(get_db_session),
) -> DisksDocumentOut:
    return DisksDocumentOut(document=await disk_service.show_disks_document(session))


@router.put("/document", response_model=DisksCommitOut)
async def commit_document(
    payload: DisksDocumentIn,
    session: AsyncSession = Depends(get_db_session),
) -> DisksCommitOut:
    result = await disk_service.commit_disks(session, payload.document)
    return DisksCommitOut(
        added=result.added,
        updated=result.updated,
        removed=result.removed,
        retained=result.retained,
    )


@router.post("/probe", response_model=List[DiskOut])
async def probe_disks(
    host: Optional[str] = None,
    session: AsyncSession = Depends(get_db_session),
    runner: RemoteRunner = Depends(get_runner),
) -> List[DiskOut]:
    disks = await disk_service.probe_disks(session, runner, host)
    return [DiskOut.model_validate(disk) for disk in disks]
