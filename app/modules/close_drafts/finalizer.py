"""
FinalizationOrchestrator - closes a draft in a fixed order.

1. mark the draft FINALIZING
2. commit the prepared lottery close (or prepare+commit from the scans)
3. write the settlement and mark the draft FINALIZED, in one transaction

Any failure after step 1 puts the draft back to IN_PROGRESS and re-raises.
Each step is safe to repeat: the lottery commit replays its stored result and
the settlement is unique per scope.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import config
from app.core.db.engine import session_scope
from app.core.exceptions import NotFoundError
from app.core.utils import to_money, utcnow
from app.modules.auth.auth import TokenData
from app.modules.lottery.models import AttemptPhase
from app.modules.lottery.schemas import CommitCloseResponse, PackClosingLine
from app.modules.lottery.service import LotteryClosingCoordinator
from app.modules.settlements.service import SettlementGateway, SettlementService
from .models import DraftKind, DraftStatus
from .schemas import FinalizeResponse
from .service import CloseDraftsService

logger = logging.getLogger(__name__)


class FinalizationOrchestrator:
    """
    Runs finalize for a draft. Concurrent calls for the same draft in this
    process share one run and get the same result.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        coordinator: Optional[LotteryClosingCoordinator] = None,
        settlement: Optional[SettlementGateway] = None,
        clock: Callable[[], datetime] = utcnow,
        stale_after_seconds: Optional[int] = None,
    ) -> None:
        self.session_factory = session_factory
        self.coordinator = coordinator or LotteryClosingCoordinator(clock=clock)
        self.settlement = settlement or SettlementService(clock=clock)
        self.clock = clock
        self.stale_after = timedelta(
            seconds=stale_after_seconds
            if stale_after_seconds is not None
            else config.draft_finalize_stale_seconds
        )
        self._in_flight: Dict[str, asyncio.Task] = {}

    async def finalize(
        self, actor: TokenData, draft_id: str, closing_cash: Union[Decimal, float]
    ) -> FinalizeResponse:
        task = self._in_flight.get(draft_id)
        if task is None:
            task = asyncio.ensure_future(self._run(actor, draft_id, to_money(closing_cash)))
            self._in_flight[draft_id] = task

            def _forget(done: asyncio.Task) -> None:
                if self._in_flight.get(draft_id) is done:
                    del self._in_flight[draft_id]

            task.add_done_callback(_forget)
        else:
            logger.info("Finalize of draft %s already running, waiting for it", draft_id)

        return await asyncio.shield(task)

    async def _run(
        self, actor: TokenData, draft_id: str, closing_cash: Decimal
    ) -> FinalizeResponse:
        async with session_scope(self.session_factory) as db:
            draft = await CloseDraftsService.get(db, actor, draft_id)
            if draft is None:
                raise NotFoundError("Close draft", draft_id)

            if draft.status == DraftStatus.FINALIZED and draft.finalize_result:
                logger.info("Draft %s already finalized, returning stored result", draft_id)
                return FinalizeResponse.model_validate(draft.finalize_result)

            draft = await CloseDraftsService.begin_finalize(
                db, actor, draft_id, stale_after=self.stale_after, now=self.clock()
            )
            scope_id = draft.scope_id
            kind = draft.kind
            payload = dict(draft.payload or {})

        try:
            lottery_result = await self._close_lottery(actor, kind, payload)

            async with session_scope(self.session_factory) as db:
                lottery_total = lottery_result.lottery_total if lottery_result else None
                settlement_id = await self.settlement.settle(
                    db,
                    actor,
                    scope_id=scope_id,
                    kind=kind.value,
                    payload={**payload, "closing_cash": float(closing_cash)},
                    closing_cash=closing_cash,
                    lottery_total=lottery_total,
                )

                response = FinalizeResponse(
                    success=True,
                    draft_id=draft_id,
                    closed_at=self.clock(),
                    settlement_id=settlement_id,
                    closing_cash=closing_cash,
                    lottery_total=lottery_total,
                    lottery_result=lottery_result,
                )
                await CloseDraftsService.finalize(
                    db, actor, draft_id, closing_cash, response.model_dump(mode="json")
                )
        except Exception:
            logger.error("Finalize of draft %s failed, reverting to IN_PROGRESS", draft_id, exc_info=True)
            await self._revert(actor, draft_id)
            raise

        logger.info(
            "Finalized draft %s: settlement %s, closing cash %s (by %s)",
            draft_id, settlement_id, closing_cash, actor.user_id,
        )
        return response

    async def _close_lottery(
        self, actor: TokenData, kind: DraftKind, payload: Dict[str, Any]
    ) -> Optional[CommitCloseResponse]:
        """Commit the staged lottery close, or run prepare+commit for unstaged day close scans."""
        lottery = payload.get("lottery") or {}
        day_id = lottery.get("pending_lottery_day_id")
        scans = lottery.get("bins_scans") or []

        async with session_scope(self.session_factory) as db:
            if day_id:
                attempt = await self.coordinator.get_attempt(db, actor, day_id)
                # A cancelled prepare leaves nothing staged
                if attempt is None or attempt.phase == AttemptPhase.CANCELLED:
                    logger.info("Staged lottery close for day %s was cancelled, ignoring it", day_id)
                    day_id = None

            if not day_id:
                if not (kind == DraftKind.DAY_CLOSE and scans):
                    return None
                closings = [
                    PackClosingLine(
                        pack_id=scan["pack_id"],
                        closing_serial=scan["closing_serial"],
                        is_sold_out=scan.get("is_sold_out", False),
                    )
                    for scan in scans
                ]
                prepared = await self.coordinator.prepare(db, actor, closings, from_wizard=True)
                day_id = prepared.day_id
                logger.info("Deferred lottery commit: prepared day %s from draft scans", day_id)

            return await self.coordinator.commit(db, actor, day_id)

    async def _revert(self, actor: TokenData, draft_id: str) -> None:
        try:
            async with session_scope(self.session_factory) as db:
                await CloseDraftsService.rollback_finalize(db, actor, draft_id)
        except Exception:
            # The original failure is re-raised by the caller
            logger.exception("Could not revert draft %s to IN_PROGRESS", draft_id)
