"""
Bin/pack inventory reader used by the lottery day close.

The inventory tables are owned elsewhere; the closing core only reads them.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from .models import LotteryPack, LotteryDayPack, PackStatus


@dataclass(frozen=True)
class PackSnapshot:
    """Point-in-time view of a pack as seen by prepare/commit"""

    pack_id: str
    store_id: str
    pack_number: str
    game_name: str
    bin_id: Optional[str]
    bin_display_order: int
    status: PackStatus
    starting_serial: str
    ticket_price: Decimal
    tickets_per_pack: int


class PackInventory:
    """
    Reads pack state for a store.
    Starting serial carries forward from the pack's last closing record, then
    falls back to the opening serial, then to "000".
    """

    async def get_packs(
        self, db: AsyncSession, store_id: str, pack_ids: Iterable[str]
    ) -> Dict[str, PackSnapshot]:
        """
        Fetch snapshots for the given packs of one store.
        Packs of other stores are left out (treated as not found).
        """
        ids = list(set(pack_ids))
        if not ids:
            return {}

        result = await db.execute(
            select(LotteryPack).where(
                LotteryPack.pack_id.in_(ids),
                LotteryPack.store_id == store_id,
            )
        )
        packs = result.scalars().all()

        carried = await self._last_ending_serials(db, store_id, ids)

        return {
            pack.pack_id: PackSnapshot(
                pack_id=pack.pack_id,
                store_id=pack.store_id,
                pack_number=pack.pack_number,
                game_name=pack.game_name,
                bin_id=pack.bin_id,
                bin_display_order=pack.bin_display_order,
                status=pack.status,
                starting_serial=carried.get(pack.pack_id) or pack.opening_serial or "000",
                ticket_price=pack.ticket_price,
                tickets_per_pack=pack.tickets_per_pack,
            )
            for pack in packs
        }

    @staticmethod
    async def _last_ending_serials(
        db: AsyncSession, store_id: str, pack_ids: list
    ) -> Dict[str, str]:
        """Ending serial of each pack's most recent day record."""
        latest = (
            select(
                LotteryDayPack.pack_id,
                func.max(LotteryDayPack.created_at).label("last_created"),
            )
            .where(
                LotteryDayPack.store_id == store_id,
                LotteryDayPack.pack_id.in_(pack_ids),
            )
            .group_by(LotteryDayPack.pack_id)
            .subquery()
        )
        query = select(LotteryDayPack.pack_id, LotteryDayPack.ending_serial).join(
            latest,
            (LotteryDayPack.pack_id == latest.c.pack_id)
            & (LotteryDayPack.created_at == latest.c.last_created),
        )
        result = await db.execute(query)
        return {row.pack_id: row.ending_serial for row in result.all()}
