# Import all models here to ensure they're loaded together
# This prevents circular import issues with relationships

from app.core.db.base import Base, BaseModel
from app.modules.close_drafts.models import CloseDraft
from app.modules.lottery.models import (
    LotteryPack,
    LotteryBusinessDay,
    LotteryClosingAttempt,
    LotteryDayPack,
)
from app.modules.settlements.models import ShiftSettlement

# Export for easy importing
__all__ = [
    "Base",
    "BaseModel",
    "CloseDraft",
    "LotteryPack",
    "LotteryBusinessDay",
    "LotteryClosingAttempt",
    "LotteryDayPack",
    "ShiftSettlement",
]
