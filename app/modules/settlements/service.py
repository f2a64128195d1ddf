"""
Settlement collaborator used by the finalize sequence.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.utils import to_money, utcnow
from app.modules.auth.auth import TokenData
from .models import ShiftSettlement

logger = logging.getLogger(__name__)


class SettlementGateway(ABC):
    """Records the result of a closed shift or day"""

    @abstractmethod
    async def settle(
        self,
        db: AsyncSession,
        actor: TokenData,
        scope_id: str,
        kind: str,
        payload: Dict[str, Any],
        closing_cash: Union[Decimal, float],
        lottery_total: Optional[Union[Decimal, float]] = None,
    ) -> str:
        """Write the settlement and return its id."""


class SettlementService(SettlementGateway):
    """
    Database-backed settlement. Idempotent per (store_id, scope_id): a second
    call for the same scope returns the first settlement's id.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock

    async def find_by_scope(
        self, db: AsyncSession, store_id: str, scope_id: str
    ) -> Optional[ShiftSettlement]:
        result = await db.execute(
            select(ShiftSettlement).where(
                ShiftSettlement.store_id == store_id,
                ShiftSettlement.scope_id == scope_id,
            )
        )
        return result.scalar_one_or_none()

    async def settle(
        self,
        db: AsyncSession,
        actor: TokenData,
        scope_id: str,
        kind: str,
        payload: Dict[str, Any],
        closing_cash: Union[Decimal, float],
        lottery_total: Optional[Union[Decimal, float]] = None,
    ) -> str:
        existing = await self.find_by_scope(db, actor.store_id, scope_id)
        if existing:
            logger.info("Scope %s already settled as %s", scope_id, existing.settlement_id)
            return existing.settlement_id

        settlement = ShiftSettlement(
            store_id=actor.store_id,
            scope_id=scope_id,
            kind=getattr(kind, "value", kind),
            closing_cash=to_money(closing_cash),
            lottery_total=to_money(lottery_total) if lottery_total is not None else None,
            payload_snapshot=dict(payload),
            settled_by=actor.user_id,
            settled_at=self.clock(),
        )
        db.add(settlement)
        await db.flush()

        logger.info(
            "Settled %s %s for store %s: closing cash %s (by %s)",
            settlement.kind, scope_id, actor.store_id, settlement.closing_cash, actor.user_id,
        )
        return settlement.settlement_id
