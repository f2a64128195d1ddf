"""
Lottery Day Close Router - two-phase close of the lottery business day
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db.engine import get_db_util
from app.core.exceptions import NotFoundError
from app.modules.auth.auth import TokenData, require_shift_manager
from .service import LotteryClosingCoordinator
from .schemas import (
    CancelCloseResponse,
    ClosingAttemptResponse,
    CommitCloseResponse,
    DayIdDto,
    PrepareCloseDto,
    PrepareCloseResponse,
)

router = APIRouter(prefix="/lottery/day-close", tags=["lottery"])


def get_coordinator() -> LotteryClosingCoordinator:
    return LotteryClosingCoordinator()


@router.post("/prepare", response_model=PrepareCloseResponse)
async def prepare_day_close(
    dto: PrepareCloseDto,
    db: AsyncSession = Depends(get_db_util),
    coordinator: LotteryClosingCoordinator = Depends(get_coordinator),
    current_user: TokenData = Depends(require_shift_manager),
):
    """
    Phase 1: validate and freeze the closing lines.
    The day stays PENDING_CLOSE until commit, cancel or expiry.
    """
    return await coordinator.prepare(db, current_user, dto.closings)


@router.post("/commit", response_model=CommitCloseResponse)
async def commit_day_close(
    dto: DayIdDto,
    db: AsyncSession = Depends(get_db_util),
    coordinator: LotteryClosingCoordinator = Depends(get_coordinator),
    current_user: TokenData = Depends(require_shift_manager),
):
    """
    Phase 2: write the frozen closings and open the next business day.
    """
    return await coordinator.commit(db, current_user, dto.day_id)


@router.post("/cancel", response_model=CancelCloseResponse)
async def cancel_day_close(
    dto: DayIdDto,
    db: AsyncSession = Depends(get_db_util),
    coordinator: LotteryClosingCoordinator = Depends(get_coordinator),
    current_user: TokenData = Depends(require_shift_manager),
):
    """Cancel a pending close. Returns cancelled=false when nothing was pending."""
    cancelled = await coordinator.cancel(db, current_user, dto.day_id)
    return CancelCloseResponse(cancelled=cancelled)


@router.get("/{day_id}", response_model=ClosingAttemptResponse)
async def get_day_close(
    day_id: str,
    db: AsyncSession = Depends(get_db_util),
    coordinator: LotteryClosingCoordinator = Depends(get_coordinator),
    current_user: TokenData = Depends(require_shift_manager),
):
    """Current closing attempt of a day, for the expiry countdown."""
    attempt = await coordinator.get_attempt(db, current_user, day_id)
    if attempt is None:
        raise NotFoundError("Lottery closing attempt", day_id)
    return attempt
