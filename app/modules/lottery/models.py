"""
Lottery Models - business days, two-phase closing attempts and pack records
"""

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.db.base import BaseModel
from app.core.utils import new_id


class PackStatus(str, enum.Enum):
    """Pack lifecycle owned by the bin/pack inventory"""

    RECEIVED = "RECEIVED"
    ACTIVE = "ACTIVE"
    DEPLETED = "DEPLETED"
    RETURNED = "RETURNED"


class LotteryDayStatus(str, enum.Enum):
    """
    OPEN: Day is active, accepting transactions
    PENDING_CLOSE: A prepared close is waiting for commit
    CLOSED: Day is finalized, no more changes allowed
    """

    OPEN = "OPEN"
    PENDING_CLOSE = "PENDING_CLOSE"
    CLOSED = "CLOSED"


class AttemptPhase(str, enum.Enum):
    """Phase of a two-phase lottery closing attempt"""

    PREPARED = "PREPARED"
    COMMITTED = "COMMITTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class LotteryPack(BaseModel):
    """
    Physical ticket pack sitting in a bin.
    Owned by the inventory side; the closing core only reads it.
    """

    __tablename__ = "lottery_packs"

    pack_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    store_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pack_number: Mapped[str] = mapped_column(String(50), nullable=False)
    game_name: Mapped[str] = mapped_column(String(255), nullable=False)
    bin_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, default=None)
    bin_display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[PackStatus] = mapped_column(
        SQLEnum(PackStatus, name="lottery_pack_status_enum", native_enum=False),
        nullable=False,
        default=PackStatus.RECEIVED,
    )

    opening_serial: Mapped[Optional[str]] = mapped_column(String(3), nullable=True, default=None)
    ticket_price: Mapped[Decimal] = mapped_column(Numeric(precision=10, scale=2), nullable=False)
    tickets_per_pack: Mapped[int] = mapped_column(Integer, nullable=False, default=300)

    def __repr__(self) -> str:
        return f"<LotteryPack(id={self.pack_id}, number='{self.pack_number}', status={self.status.value})>"


class LotteryBusinessDay(BaseModel):
    """Lottery accounting day for a store"""

    __tablename__ = "lottery_business_days"

    __table_args__ = (
        UniqueConstraint("store_id", "business_date", name="uq_lottery_day_store_date"),
        Index("idx_lottery_day_store_status", "store_id", "status"),
    )

    day_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    store_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    business_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[LotteryDayStatus] = mapped_column(
        SQLEnum(LotteryDayStatus, name="lottery_day_status_enum", native_enum=False),
        nullable=False,
        default=LotteryDayStatus.OPEN,
    )

    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, default=None)
    opened_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, default=None)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, default=None)
    closed_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, default=None)

    total_sales: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2), nullable=False, default=Decimal("0.00")
    )
    total_packs_sold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<LotteryBusinessDay(id={self.day_id}, date={self.business_date}, status={self.status.value})>"


class LotteryClosingAttempt(BaseModel):
    """
    Two-phase commit record for closing one lottery business day.
    prepared_closings is frozen at prepare time; commit applies exactly those lines.
    """

    __tablename__ = "lottery_closing_attempts"

    # At most one PREPARED attempt per day
    __table_args__ = (
        Index("idx_lottery_attempt_day_phase", "day_id", "phase"),
        Index(
            "uq_lottery_attempt_prepared_day",
            "day_id",
            unique=True,
            sqlite_where=text("phase = 'PREPARED'"),
            postgresql_where=text("phase = 'PREPARED'"),
        ),
    )

    attempt_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    day_id: Mapped[str] = mapped_column(
        ForeignKey("lottery_business_days.day_id", name="fk_lottery_attempt_day_id"),
        nullable=False,
    )
    store_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    phase: Mapped[AttemptPhase] = mapped_column(
        SQLEnum(AttemptPhase, name="lottery_attempt_phase_enum", native_enum=False),
        nullable=False,
        default=AttemptPhase.PREPARED,
    )

    prepared_closings: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False)
    lottery_total: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)

    # Set when the prepare came from the day close wizard (deferred commit)
    from_wizard: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    prepared_by: Mapped[str] = mapped_column(String(36), nullable=False)
    prepared_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, default=None)

    commit_result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True, default=None)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Phase changes are compare-and-swap on version
    __mapper_args__ = {"version_id_col": version}

    @property
    def closings_count(self) -> int:
        return len(self.prepared_closings or [])

    def __repr__(self) -> str:
        return f"<LotteryClosingAttempt(id={self.attempt_id}, day={self.day_id}, phase={self.phase.value})>"


class LotteryDayPack(BaseModel):
    """Permanent pack-closing record written when a day close commits"""

    __tablename__ = "lottery_day_packs"

    __table_args__ = (
        Index("idx_lottery_day_pack_pack", "pack_id", "created_at"),
    )

    day_pack_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    store_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    day_id: Mapped[str] = mapped_column(
        ForeignKey("lottery_business_days.day_id", name="fk_lottery_day_pack_day_id"),
        nullable=False,
        index=True,
    )
    pack_id: Mapped[str] = mapped_column(String(36), nullable=False)
    bin_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, default=None)

    starting_serial: Mapped[str] = mapped_column(String(3), nullable=False)
    ending_serial: Mapped[str] = mapped_column(String(3), nullable=False)
    tickets_sold: Mapped[int] = mapped_column(Integer, nullable=False)
    sales_amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    is_sold_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
