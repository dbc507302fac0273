from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from chunkswap.database import get_db_session
from chunkswap.schemas.replacements import (
    ReplacementCreate,
    ReplacementOut,
    ReplaceResultOut,
    StopResultOut,
)
from chunkswap.services import playbook
from chunkswap.services.remote import RemoteRunner, get_runner

router = APIRouter(prefix="/replacements", tags=["replacements"])


@router.get("", response_model=List[ReplacementOut])
async def list_replacements(
    chunkserver_id: Optional[str] = None,
    session: AsyncSession = Depends(get_db_session),
    runner: RemoteRunner = Depends(get_runner),
) -> List[ReplacementOut]:
    tickets = await playbook.replacement_status(session, runner, chunkserver_id)
    return [ReplacementOut.model_validate(ticket) for ticket in tickets]


@router.post("", response_model=ReplaceResultOut, status_code=status.HTTP_202_ACCEPTED)
async def replace_disk(
    payload: ReplacementCreate,
    session: AsyncSession = Depends(get_db_session),
    runner: RemoteRunner = Depends(get_runner),
) -> ReplaceResultOut:
    result = await playbook.replace_disk(
        session,
        payload.chunkserver_id,
        payload.device,
        runner,
        restart=payload.restart,
    )
    return ReplaceResultOut(
        replacement=ReplacementOut.model_validate(result.ticket),
        steps=[step.value for step in result.steps],
        checks=result.report.passed,
        warnings=result.warnings,
        resumed=result.resumed,
    )


@router.delete("/{chunkserver_id}", response_model=StopResultOut)
async def stop_replacement(
    chunkserver_id: str,
    session: AsyncSession = Depends(get_db_session),
    runner: RemoteRunner = Depends(get_runner),
) -> StopResultOut:
    result = await playbook.stop_replacement(session, chunkserver_id, runner)
    return StopResultOut(
        stopped=result.stopped,
        chunkserver_id=result.chunkserver_id,
        reverted=result.reverted,
        message=result.message,
    )
