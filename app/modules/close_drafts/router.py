"""
Close Drafts Router - API endpoints for the shift/day close wizard
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import config
from app.core.db.engine import get_db_util
from app.core.exceptions import NotFoundError
from app.modules.auth.auth import (
    TokenData,
    require_cashier,
    require_shift_manager,
    require_store_manager,
)
from .finalizer import FinalizationOrchestrator
from .models import DraftStatus
from .service import CloseDraftsService
from .schemas import (
    CleanupResponse,
    CreateDraftDto,
    DraftResponse,
    FinalizeDraftDto,
    FinalizeResponse,
    GetDraftResponse,
    UpdateDraftDto,
    UpdateLotteryDto,
    UpdateStepStateDto,
    VersionConflict,
    VersionConflictResponse,
)

router = APIRouter(prefix="/close-drafts", tags=["close-drafts"])

# Shared so concurrent finalize requests for one draft join the same run
_finalizer = FinalizationOrchestrator()


def get_finalizer() -> FinalizationOrchestrator:
    return _finalizer


def _conflict_response(conflict: VersionConflict) -> JSONResponse:
    body = VersionConflictResponse(
        message=conflict.message,
        current_version=conflict.current_version,
        expected_version=conflict.expected_version,
    )
    return JSONResponse(status_code=409, content=body.model_dump())


_conflict_responses = {409: {"model": VersionConflictResponse}}


@router.post("", response_model=DraftResponse)
async def create_draft(
    dto: CreateDraftDto,
    db: AsyncSession = Depends(get_db_util),
    current_user: TokenData = Depends(require_cashier),
):
    """
    Open the close draft for a shift.
    Returns the existing active draft when there is one.
    """
    return await CloseDraftsService.create(db, current_user, dto)


@router.get("", response_model=List[DraftResponse])
async def list_drafts(
    status: Optional[DraftStatus] = Query(None, description="Filter by draft status"),
    db: AsyncSession = Depends(get_db_util),
    current_user: TokenData = Depends(require_shift_manager),
):
    """List the store's drafts, most recently updated first."""
    return await CloseDraftsService.list_drafts(db, current_user, status)


@router.get("/active", response_model=GetDraftResponse)
async def get_active_draft(
    scope_id: str = Query(..., min_length=1, description="Shift being closed"),
    db: AsyncSession = Depends(get_db_util),
    current_user: TokenData = Depends(require_cashier),
):
    """
    Active draft of a shift, for crash recovery.
    `draft` is null when the shift has none.
    """
    draft = await CloseDraftsService.get_active(db, current_user, scope_id)
    return GetDraftResponse(draft=DraftResponse.model_validate(draft) if draft else None)


@router.delete("/expired", response_model=CleanupResponse)
async def cleanup_expired_drafts(
    max_age_hours: int = Query(config.draft_cleanup_max_age_hours, gt=0),
    db: AsyncSession = Depends(get_db_util),
    current_user: TokenData = Depends(require_store_manager),
):
    """Delete the store's expired drafts older than max_age_hours."""
    deleted = await CloseDraftsService.cleanup_expired(db, current_user, max_age_hours)
    return CleanupResponse(deleted=deleted)


@router.get("/{draft_id}", response_model=DraftResponse)
async def get_draft(
    draft_id: str,
    db: AsyncSession = Depends(get_db_util),
    current_user: TokenData = Depends(require_cashier),
):
    draft = await CloseDraftsService.get(db, current_user, draft_id)
    if not draft:
        raise NotFoundError("Close draft", draft_id)
    return draft


@router.patch("/{draft_id}", response_model=DraftResponse, responses=_conflict_responses)
async def update_draft(
    draft_id: str,
    dto: UpdateDraftDto,
    db: AsyncSession = Depends(get_db_util),
    current_user: TokenData = Depends(require_cashier),
):
    """
    Merge a partial payload. Present top-level keys are replaced.
    A stale `version` gets 409 VERSION_CONFLICT and nothing is written.
    """
    result = await CloseDraftsService.update(
        db, current_user, draft_id, dto.payload.to_partial(), dto.version
    )
    if isinstance(result, VersionConflict):
        return _conflict_response(result)
    return result


@router.put("/{draft_id}/lottery", response_model=DraftResponse, responses=_conflict_responses)
async def update_lottery(
    draft_id: str,
    dto: UpdateLotteryDto,
    db: AsyncSession = Depends(get_db_util),
    current_user: TokenData = Depends(require_cashier),
):
    """Replace the lottery section of the draft."""
    result = await CloseDraftsService.update_lottery(
        db, current_user, draft_id, dto.lottery_data.model_dump(mode="json"), dto.version
    )
    if isinstance(result, VersionConflict):
        return _conflict_response(result)
    return result


@router.put("/{draft_id}/step-state", response_model=DraftResponse)
async def update_step_state(
    draft_id: str,
    dto: UpdateStepStateDto,
    db: AsyncSession = Depends(get_db_util),
    current_user: TokenData = Depends(require_cashier),
):
    """Record the wizard step for crash recovery."""
    return await CloseDraftsService.update_step_state(db, current_user, draft_id, dto.step_state)


@router.post("/{draft_id}/finalize", response_model=FinalizeResponse)
async def finalize_draft(
    draft_id: str,
    dto: FinalizeDraftDto,
    finalizer: FinalizationOrchestrator = Depends(get_finalizer),
    current_user: TokenData = Depends(require_shift_manager),
):
    """
    Commit the staged lottery close, settle the shift and finalize the draft.
    Finalizing an already finalized draft returns the original result.
    """
    return await finalizer.finalize(current_user, draft_id, dto.closing_cash)


@router.post("/{draft_id}/expire", response_model=DraftResponse)
async def expire_draft(
    draft_id: str,
    db: AsyncSession = Depends(get_db_util),
    current_user: TokenData = Depends(require_cashier),
):
    """Abandon the draft."""
    return await CloseDraftsService.expire(db, current_user, draft_id)
