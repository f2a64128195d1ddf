"""
Settlement model - permanent shift/day close record
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, JSON, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core.db.base import BaseModel
from app.core.utils import new_id


class ShiftSettlement(BaseModel):
    """
    Settled shift or day. One row per (store, scope); finalize retries
    find the existing row instead of posting twice.
    """

    __tablename__ = "shift_settlements"

    __table_args__ = (
        UniqueConstraint("store_id", "scope_id", name="uq_settlement_store_scope"),
    )

    settlement_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    store_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    scope_id: Mapped[str] = mapped_column(String(36), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)

    closing_cash: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    lottery_total: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=15, scale=2), nullable=True, default=None
    )
    payload_snapshot: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    settled_by: Mapped[str] = mapped_column(String(36), nullable=False)
    settled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<ShiftSettlement(id={self.settlement_id}, scope={self.scope_id}, kind={self.kind})>"
