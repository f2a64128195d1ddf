"""
LotteryClosingCoordinator - two-phase close of a lottery business day.

prepare validates and freezes the closing lines and puts the day in
PENDING_CLOSE; commit applies exactly those frozen lines. A prepared attempt
that is neither committed nor cancelled expires after a TTL. Expiry is
applied lazily whenever the attempt is next touched.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import config
from app.core.exceptions import ConflictError, ExpiredError, NotFoundError, ValidationError
from app.core.utils import next_business_date, to_money, utcnow
from app.modules.auth.auth import TokenData
from .calculations import (
    calculate_sales_amount,
    calculate_tickets_sold,
    parse_serial,
)
from .inventory import PackInventory, PackSnapshot
from .models import (
    AttemptPhase,
    LotteryBusinessDay,
    LotteryClosingAttempt,
    LotteryDayPack,
    LotteryDayStatus,
    PackStatus,
)
from .schemas import (
    BinClosingPreview,
    CommitCloseResponse,
    NextDayResponse,
    PackClosingLine,
    PrepareCloseResponse,
)

logger = logging.getLogger(__name__)

_PENDING_MESSAGE = "A lottery day close is already pending. Commit or cancel it first."
_EXPIRED_MESSAGE = "Pending lottery close has expired. Please scan again and prepare a new close."


class LotteryClosingCoordinator:
    """
    Owns lottery business days and their closing attempts.
    Every method takes the caller's session; nothing here commits.
    """

    def __init__(
        self,
        inventory: Optional[PackInventory] = None,
        clock: Callable[[], datetime] = utcnow,
        prepare_ttl_seconds: Optional[int] = None,
        independent_close_allowed: Optional[bool] = None,
    ) -> None:
        self.inventory = inventory or PackInventory()
        self.clock = clock
        self.prepare_ttl = timedelta(
            seconds=prepare_ttl_seconds
            if prepare_ttl_seconds is not None
            else config.lottery_prepare_ttl_seconds
        )
        self.independent_close_allowed = (
            independent_close_allowed
            if independent_close_allowed is not None
            else config.lottery_independent_close_allowed
        )

    # ------------------------------------------------------------------
    # Business days
    # ------------------------------------------------------------------

    async def get_current_day(self, db: AsyncSession, actor: TokenData) -> LotteryBusinessDay:
        """
        Latest business day of the store that is not closed.
        A day for the current date is opened when there is none.
        """
        day = await self._open_day(db, actor.store_id)
        if day:
            return day

        now = self.clock()
        day = LotteryBusinessDay(
            store_id=actor.store_id,
            business_date=now.date(),
            status=LotteryDayStatus.OPEN,
            opened_at=now,
            opened_by=actor.user_id,
        )
        db.add(day)
        try:
            await db.flush()
        except IntegrityError:
            # Another request opened the same date first
            await db.rollback()
            winner = await self._open_day(db, actor.store_id)
            if winner is None:
                raise
            return winner

        logger.info("Opened lottery day %s (%s) for store %s", day.day_id, day.business_date, actor.store_id)
        return day

    @staticmethod
    async def _open_day(db: AsyncSession, store_id: str) -> Optional[LotteryBusinessDay]:
        result = await db.execute(
            select(LotteryBusinessDay)
            .where(
                LotteryBusinessDay.store_id == store_id,
                LotteryBusinessDay.status != LotteryDayStatus.CLOSED,
            )
            .order_by(desc(LotteryBusinessDay.business_date))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _get_day(self, db: AsyncSession, actor: TokenData, day_id: str) -> LotteryBusinessDay:
        result = await db.execute(
            select(LotteryBusinessDay).where(
                LotteryBusinessDay.day_id == day_id,
                LotteryBusinessDay.store_id == actor.store_id,
            )
        )
        day = result.scalar_one_or_none()
        if not day:
            raise NotFoundError("Lottery business day", day_id)
        return day

    @staticmethod
    async def _latest_attempt(db: AsyncSession, day_id: str) -> Optional[LotteryClosingAttempt]:
        result = await db.execute(
            select(LotteryClosingAttempt)
            .where(LotteryClosingAttempt.day_id == day_id)
            .order_by(desc(LotteryClosingAttempt.prepared_at))
            .limit(1)
        )
        return result.scalar_one_or_none()

    def _expire_if_due(
        self, attempt: LotteryClosingAttempt, day: LotteryBusinessDay, now: datetime
    ) -> bool:
        """Mark a PREPARED attempt past its window as EXPIRED and reopen the day."""
        if attempt.phase != AttemptPhase.PREPARED or attempt.expires_at > now:
            return False

        attempt.phase = AttemptPhase.EXPIRED
        attempt.resolved_at = now
        if day.status == LotteryDayStatus.PENDING_CLOSE:
            day.status = LotteryDayStatus.OPEN
        logger.info("Lottery close attempt %s for day %s expired", attempt.attempt_id, day.day_id)
        return True

    @staticmethod
    async def _flush_or_rollback(db: AsyncSession) -> bool:
        """
        Flush a phase change. Returns False (after rolling back) when another
        request changed the attempt since it was read.
        """
        try:
            await db.flush()
            return True
        except StaleDataError:
            await db.rollback()
            return False

    async def _resolved_elsewhere(
        self, db: AsyncSession, actor: TokenData, day_id: str
    ) -> CommitCloseResponse:
        """Outcome of a commit that lost the race for the attempt."""
        day = await self._get_day(db, actor, day_id)
        attempt = await self._latest_attempt(db, day.day_id)
        if attempt and attempt.phase == AttemptPhase.COMMITTED and attempt.commit_result:
            logger.info("Lottery day %s was committed by another request, returning its result", day_id)
            return CommitCloseResponse.model_validate(attempt.commit_result)
        raise ConflictError(
            "Lottery close was changed by another request. Please check its status and try again."
        )

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    async def prepare(
        self,
        db: AsyncSession,
        actor: TokenData,
        closings: List[PackClosingLine],
        from_wizard: bool = False,
    ) -> PrepareCloseResponse:
        """
        Validate closing lines and freeze them for commit.

        Raises:
            ConflictError: A close is already pending, or independent close is disabled
            ValidationError: Any line is invalid; nothing is written
        """
        if not from_wizard and not self.independent_close_allowed:
            raise ConflictError(
                "Lottery must be closed through the day close wizard for this store"
            )

        if not closings:
            raise ValidationError("At least one pack closing is required")

        day = await self.get_current_day(db, actor)
        now = self.clock()

        attempt = await self._latest_attempt(db, day.day_id)
        if attempt and attempt.phase == AttemptPhase.PREPARED:
            if not self._expire_if_due(attempt, day, now):
                raise ConflictError(_PENDING_MESSAGE)
            if not await self._flush_or_rollback(db):
                raise ConflictError(_PENDING_MESSAGE)

        lines = await self._price_lines(db, actor, closings)
        total = to_money(sum((line.sales_amount for line in lines), Decimal("0")))
        expires_at = now + self.prepare_ttl

        attempt = LotteryClosingAttempt(
            day_id=day.day_id,
            store_id=actor.store_id,
            phase=AttemptPhase.PREPARED,
            prepared_closings=[line.model_dump(mode="json") for line in lines],
            lottery_total=total,
            from_wizard=from_wizard,
            prepared_by=actor.user_id,
            prepared_at=now,
            expires_at=expires_at,
        )
        db.add(attempt)
        day.status = LotteryDayStatus.PENDING_CLOSE
        try:
            await db.flush()
        except IntegrityError:
            # Lost the race on the one-PREPARED-attempt-per-day index
            await db.rollback()
            raise ConflictError(_PENDING_MESSAGE)

        logger.info(
            "Prepared lottery close for day %s: %d packs, total %s, expires %s (by %s)",
            day.day_id, len(lines), total, expires_at.isoformat(), actor.user_id,
        )

        return PrepareCloseResponse(
            day_id=day.day_id,
            business_date=day.business_date,
            status=day.status,
            prepared_at=now,
            expires_at=expires_at,
            closings_count=len(lines),
            estimated_lottery_total=total,
            bins_preview=lines,
        )

    async def _price_lines(
        self, db: AsyncSession, actor: TokenData, closings: List[PackClosingLine]
    ) -> List[BinClosingPreview]:
        seen = set()
        for line in closings:
            if line.pack_id in seen:
                raise ValidationError(f"Pack {line.pack_id} appears more than once")
            seen.add(line.pack_id)

        packs: Dict[str, PackSnapshot] = await self.inventory.get_packs(
            db, actor.store_id, seen
        )

        lines = []
        for line in closings:
            pack = packs.get(line.pack_id)
            if pack is None:
                raise ValidationError(f"Pack {line.pack_id} not found in this store")
            if pack.status != PackStatus.ACTIVE:
                raise ValidationError(
                    f"Pack {pack.pack_number} is {pack.status.value.lower()}, only active packs can be closed"
                )

            starting = parse_serial(pack.starting_serial)
            ending = parse_serial(line.closing_serial)
            if starting is None or ending is None:
                raise ValidationError(f"Invalid serial for pack {pack.pack_number}")
            if ending > pack.tickets_per_pack:
                raise ValidationError(
                    f"Closing serial {line.closing_serial} exceeds pack {pack.pack_number} "
                    f"size of {pack.tickets_per_pack} tickets"
                )

            tickets_sold, clamped = calculate_tickets_sold(starting, ending)
            if clamped:
                logger.warning(
                    "Closing serial %s is below starting serial %s for pack %s; tickets sold clamped to 0",
                    line.closing_serial, pack.starting_serial, pack.pack_number,
                )

            lines.append(
                BinClosingPreview(
                    pack_id=pack.pack_id,
                    bin_id=pack.bin_id,
                    bin_display_order=pack.bin_display_order,
                    pack_number=pack.pack_number,
                    game_name=pack.game_name,
                    starting_serial=pack.starting_serial,
                    closing_serial=line.closing_serial,
                    game_price=to_money(pack.ticket_price),
                    tickets_sold=tickets_sold,
                    sales_amount=calculate_sales_amount(tickets_sold, pack.ticket_price),
                    is_sold_out=line.is_sold_out,
                )
            )

        lines.sort(key=lambda l: l.bin_display_order)
        return lines

    # ------------------------------------------------------------------
    # Phase 2
    # ------------------------------------------------------------------

    async def commit(self, db: AsyncSession, actor: TokenData, day_id: str) -> CommitCloseResponse:
        """
        Apply the frozen lines of the day's prepared attempt.
        Committing an already committed day returns the stored result.

        Raises:
            NotFoundError: Unknown day or no attempt
            ExpiredError: The prepared attempt is past its window
            ConflictError: Attempt was cancelled, or a pack changed state
        """
        day = await self._get_day(db, actor, day_id)
        attempt = await self._latest_attempt(db, day.day_id)
        if attempt is None:
            raise NotFoundError("Lottery closing attempt", day_id)

        if attempt.phase == AttemptPhase.COMMITTED:
            logger.info("Lottery day %s already committed, returning stored result", day_id)
            return CommitCloseResponse.model_validate(attempt.commit_result)

        now = self.clock()
        if attempt.phase == AttemptPhase.EXPIRED:
            raise ExpiredError(_EXPIRED_MESSAGE)
        if self._expire_if_due(attempt, day, now):
            if not await self._flush_or_rollback(db):
                return await self._resolved_elsewhere(db, actor, day_id)
            raise ExpiredError(_EXPIRED_MESSAGE)

        if attempt.phase == AttemptPhase.CANCELLED:
            raise ConflictError("Lottery close was cancelled. Please prepare a new close.")

        lines = [BinClosingPreview.model_validate(raw) for raw in attempt.prepared_closings]

        packs = await self.inventory.get_packs(db, actor.store_id, [l.pack_id for l in lines])
        for line in lines:
            pack = packs.get(line.pack_id)
            if pack is None or pack.status != PackStatus.ACTIVE:
                raise ConflictError(
                    f"Pack {line.pack_number} changed since the close was prepared. Please prepare again."
                )

        # Claim the attempt before writing anything; a concurrent commit loses here
        attempt.phase = AttemptPhase.COMMITTED
        attempt.resolved_at = now
        if not await self._flush_or_rollback(db):
            return await self._resolved_elsewhere(db, actor, day_id)

        for line in lines:
            db.add(
                LotteryDayPack(
                    store_id=actor.store_id,
                    day_id=day.day_id,
                    pack_id=line.pack_id,
                    bin_id=line.bin_id,
                    starting_serial=line.starting_serial,
                    ending_serial=line.closing_serial,
                    tickets_sold=line.tickets_sold,
                    sales_amount=line.sales_amount,
                    is_sold_out=line.is_sold_out,
                    created_at=now,
                    updated_at=now,
                )
            )

        day.status = LotteryDayStatus.CLOSED
        day.closed_at = now
        day.closed_by = actor.user_id
        day.total_sales = attempt.lottery_total
        day.total_packs_sold = len(lines)

        next_day = LotteryBusinessDay(
            store_id=actor.store_id,
            business_date=next_business_date(day.business_date),
            status=LotteryDayStatus.OPEN,
            opened_at=now,
            opened_by=actor.user_id,
        )
        db.add(next_day)
        await db.flush()

        response = CommitCloseResponse(
            day_id=day.day_id,
            business_date=day.business_date,
            closed_at=now,
            closings_created=len(lines),
            lottery_total=to_money(attempt.lottery_total),
            bins_closed=lines,
            next_day=NextDayResponse(
                day_id=next_day.day_id,
                business_date=next_day.business_date,
                status=next_day.status,
            ),
        )

        attempt.commit_result = response.model_dump(mode="json")
        await db.flush()

        logger.info(
            "Committed lottery close for day %s: %d closings, total %s (by %s); next day %s",
            day.day_id, len(lines), response.lottery_total, actor.user_id, next_day.day_id,
        )
        return response

    async def cancel(self, db: AsyncSession, actor: TokenData, day_id: str) -> bool:
        """Cancel the day's prepared attempt. Returns False when nothing was pending."""
        day = await self._get_day(db, actor, day_id)
        attempt = await self._latest_attempt(db, day.day_id)
        if attempt is None:
            return False

        now = self.clock()
        if self._expire_if_due(attempt, day, now):
            await self._flush_or_rollback(db)
            return False
        if attempt.phase != AttemptPhase.PREPARED:
            return False

        attempt.phase = AttemptPhase.CANCELLED
        attempt.resolved_at = now
        day.status = LotteryDayStatus.OPEN
        if not await self._flush_or_rollback(db):
            logger.info("Lottery close for day %s was resolved by another request", day_id)
            return False

        logger.info("Cancelled lottery close for day %s (by %s)", day.day_id, actor.user_id)
        return True

    async def get_attempt(
        self, db: AsyncSession, actor: TokenData, day_id: str
    ) -> Optional[LotteryClosingAttempt]:
        """Current attempt of a day with expiry applied."""
        day = await self._get_day(db, actor, day_id)
        attempt = await self._latest_attempt(db, day.day_id)
        if attempt and self._expire_if_due(attempt, day, self.clock()):
            if not await self._flush_or_rollback(db):
                attempt = await self._latest_attempt(db, day_id)
        return attempt
