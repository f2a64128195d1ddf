"""
Lottery Day Close DTOs (Data Transfer Objects)
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import AttemptPhase, LotteryDayStatus


# ============================================================================
# Request DTOs
# ============================================================================


class PackClosingLine(BaseModel):
    """One bin/pack closing entered by scan or by hand"""

    pack_id: str = Field(..., min_length=1, max_length=36, description="Pack ID")
    closing_serial: str = Field(
        ..., pattern=r"^\d{3}$", description="Ending serial (next ticket position), 3 digits"
    )
    is_sold_out: bool = Field(default=False, description="Pack sold out during the day")


class PrepareCloseDto(BaseModel):
    """DTO for phase 1 of the lottery day close"""

    closings: List[PackClosingLine] = Field(..., min_length=1)


class DayIdDto(BaseModel):
    """DTO naming a lottery business day (commit / cancel)"""

    day_id: str = Field(..., min_length=1, max_length=36)


# ============================================================================
# Response DTOs
# ============================================================================


class BinClosingPreview(BaseModel):
    """Frozen settlement line for one pack"""

    pack_id: str
    bin_id: Optional[str] = None
    bin_display_order: int = 0
    pack_number: str
    game_name: str
    starting_serial: str
    closing_serial: str
    game_price: Decimal
    tickets_sold: int
    sales_amount: Decimal
    is_sold_out: bool = False


class PrepareCloseResponse(BaseModel):
    """Result of prepare; day_id must be kept to commit or cancel"""

    day_id: str
    business_date: date
    status: LotteryDayStatus
    prepared_at: datetime
    expires_at: datetime
    closings_count: int
    estimated_lottery_total: Decimal
    bins_preview: List[BinClosingPreview]


class NextDayResponse(BaseModel):
    """Business day opened automatically after a commit"""

    day_id: str
    business_date: date
    status: LotteryDayStatus


class CommitCloseResponse(BaseModel):
    """Result of commit"""

    day_id: str
    business_date: date
    closed_at: datetime
    closings_created: int
    lottery_total: Decimal
    bins_closed: List[BinClosingPreview]
    next_day: NextDayResponse


class CancelCloseResponse(BaseModel):
    cancelled: bool


class ClosingAttemptResponse(BaseModel):
    """Current closing attempt of a day, with its countdown"""

    attempt_id: str
    day_id: str
    phase: AttemptPhase
    lottery_total: Decimal
    prepared_at: datetime
    expires_at: datetime
    resolved_at: Optional[datetime] = None
    closings_count: int

    model_config = ConfigDict(from_attributes=True)
