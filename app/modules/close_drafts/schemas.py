"""
Close Drafts DTOs (Data Transfer Objects)
"""

import enum
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.core.config import config
from app.modules.lottery.schemas import CommitCloseResponse
from .models import DraftKind, DraftStatus, StepMarker


class EntryMethod(str, enum.Enum):
    """How the closing serials were captured"""

    SCAN = "SCAN"
    MANUAL = "MANUAL"


# ============================================================================
# Payload sections
# ============================================================================


class BinScan(BaseModel):
    """One scanned (or typed) bin closing"""

    pack_id: str = Field(..., min_length=1, max_length=36)
    bin_id: Optional[str] = None
    closing_serial: str = Field(..., pattern=r"^\d{3}$")
    is_sold_out: bool = False
    scanned_at: Optional[datetime] = None


class LotteryTotals(BaseModel):
    tickets_sold: int = Field(default=0, ge=0)
    sales_amount: float = Field(default=0, ge=0)


class LotteryPayload(BaseModel):
    """Lottery step of the wizard"""

    bins_scans: List[BinScan] = Field(default_factory=list)
    totals: LotteryTotals = Field(default_factory=LotteryTotals)
    entry_method: EntryMethod = EntryMethod.SCAN
    authorized_by: Optional[str] = None
    # Prepared lottery day the finalize sequence commits
    pending_lottery_day_id: Optional[str] = None

    @model_validator(mode="after")
    def check_manual_authorization(self) -> "LotteryPayload":
        if self.entry_method == EntryMethod.MANUAL and not self.authorized_by:
            raise ValueError("authorized_by is required for manual lottery entry")
        return self


class LotteryReports(BaseModel):
    instant_sales: float = Field(default=0, ge=0)
    online_sales: float = Field(default=0, ge=0)
    instant_cashes: float = Field(default=0, ge=0)
    online_cashes: float = Field(default=0, ge=0)


class GamingReports(BaseModel):
    net_terminal_income: float = Field(default=0, ge=0)
    plays: float = Field(default=0, ge=0)
    payouts: float = Field(default=0, ge=0)


class CashPayouts(BaseModel):
    lottery_winners: float = Field(default=0, ge=0)
    money_orders: float = Field(default=0, ge=0)
    check_cashing: float = Field(default=0, ge=0)


class VendorInvoice(BaseModel):
    vendor_name: str = Field(..., min_length=1, max_length=255)
    amount: float = Field(..., ge=0)


class ReportsPayload(BaseModel):
    """Reports step of the wizard"""

    lottery_reports: Optional[LotteryReports] = None
    gaming_reports: Optional[GamingReports] = None
    vendor_invoices: List[VendorInvoice] = Field(default_factory=list)
    cash_payouts: Optional[CashPayouts] = None


def _check_closing_cash(value):
    if value is not None and value > config.closing_cash_max:
        raise ValueError(f"closing_cash cannot exceed {config.closing_cash_max}")
    return value


class DraftPayload(BaseModel):
    """
    Partial or full draft payload. Only the keys that were set are written;
    each written key replaces the stored one wholesale.
    """

    lottery: Optional[LotteryPayload] = None
    reports: Optional[ReportsPayload] = None
    closing_cash: Optional[float] = Field(default=None, ge=0)

    model_config = ConfigDict(extra="forbid")

    @field_validator("closing_cash")
    @classmethod
    def check_closing_cash_max(cls, v):
        return _check_closing_cash(v)

    def to_partial(self) -> Dict[str, Any]:
        """JSON-ready dict of the explicitly set top-level keys."""
        full = self.model_dump(mode="json")
        return {key: full[key] for key in self.model_fields_set}


# ============================================================================
# Request DTOs
# ============================================================================


class CreateDraftDto(BaseModel):
    """DTO for opening a draft (idempotent per scope)"""

    scope_id: str = Field(..., min_length=1, max_length=36, description="Shift being closed")
    kind: DraftKind
    business_date: Optional[date] = None


class UpdateDraftDto(BaseModel):
    """DTO for a partial payload write"""

    payload: DraftPayload
    version: int = Field(..., ge=1, description="Version the client last saw")


class UpdateLotteryDto(BaseModel):
    lottery_data: LotteryPayload
    version: int = Field(..., ge=1)


class UpdateStepStateDto(BaseModel):
    step_state: Optional[StepMarker] = None


class FinalizeDraftDto(BaseModel):
    closing_cash: Decimal = Field(..., ge=0, decimal_places=2)

    @field_validator("closing_cash")
    @classmethod
    def check_closing_cash_max(cls, v):
        return _check_closing_cash(v)


# ============================================================================
# Response DTOs
# ============================================================================


class DraftResponse(BaseModel):
    """Response model for a close draft"""

    draft_id: str
    store_id: str
    scope_id: str
    business_date: Optional[date] = None
    kind: DraftKind
    status: DraftStatus
    step_marker: Optional[StepMarker] = None
    payload: Dict[str, Any]
    version: int
    finalize_result: Optional[Dict[str, Any]] = None
    created_by: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GetDraftResponse(BaseModel):
    draft: Optional[DraftResponse] = None


class VersionConflictResponse(BaseModel):
    error: str = "VERSION_CONFLICT"
    message: str
    current_version: int
    expected_version: int


class FinalizeResponse(BaseModel):
    """Result of a finalize; stored on the draft and replayed on retry"""

    success: bool = True
    draft_id: str
    closed_at: datetime
    settlement_id: str
    closing_cash: Decimal
    lottery_total: Optional[Decimal] = None
    lottery_result: Optional[CommitCloseResponse] = None


class CleanupResponse(BaseModel):
    deleted: int


# ============================================================================
# Store results
# ============================================================================


@dataclass(frozen=True)
class VersionConflict:
    """Returned (not raised) by the store when a write carries a stale version"""

    current_version: int
    expected_version: int

    @property
    def message(self) -> str:
        return (
            f"Draft was modified elsewhere: expected version {self.expected_version}, "
            f"current is {self.current_version}"
        )
