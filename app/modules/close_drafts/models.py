"""
Close Draft Models - in-progress shift/day closing wizard state
"""

import enum
from datetime import date, datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    Date,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    JSON,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.db.base import BaseModel
from app.core.utils import new_id


class DraftKind(str, enum.Enum):
    """What the draft is closing"""

    DAY_CLOSE = "DAY_CLOSE"
    SHIFT_CLOSE = "SHIFT_CLOSE"


class DraftStatus(str, enum.Enum):
    """
    IN_PROGRESS: Wizard is being filled in
    FINALIZING: Finalize sequence is running
    FINALIZED: Closed, immutable
    EXPIRED: Abandoned or discarded, immutable
    """

    IN_PROGRESS = "IN_PROGRESS"
    FINALIZING = "FINALIZING"
    FINALIZED = "FINALIZED"
    EXPIRED = "EXPIRED"


ACTIVE_STATUSES = (DraftStatus.IN_PROGRESS, DraftStatus.FINALIZING)


class StepMarker(str, enum.Enum):
    """Last wizard step the operator reached, used for crash recovery"""

    LOTTERY = "LOTTERY"
    REPORTS = "REPORTS"
    REVIEW = "REVIEW"


class CloseDraft(BaseModel):
    """
    Wizard state for closing one shift or day.

    `version` is an optimistic lock: SQLAlchemy adds it to the WHERE clause of
    every UPDATE and increments it, so a concurrent write fails with
    StaleDataError instead of overwriting.
    """

    __tablename__ = "close_drafts"

    # One active draft per shift
    __table_args__ = (
        Index(
            "uq_close_draft_active_scope",
            "store_id",
            "scope_id",
            unique=True,
            sqlite_where=text("status IN ('IN_PROGRESS', 'FINALIZING')"),
            postgresql_where=text("status IN ('IN_PROGRESS', 'FINALIZING')"),
        ),
        Index("idx_close_draft_store_status", "store_id", "status"),
    )

    draft_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    store_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    scope_id: Mapped[str] = mapped_column(String(36), nullable=False)
    business_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True, default=None)

    kind: Mapped[DraftKind] = mapped_column(
        SQLEnum(DraftKind, name="close_draft_kind_enum", native_enum=False),
        nullable=False,
    )
    status: Mapped[DraftStatus] = mapped_column(
        SQLEnum(DraftStatus, name="close_draft_status_enum", native_enum=False),
        nullable=False,
        default=DraftStatus.IN_PROGRESS,
    )
    step_marker: Mapped[Optional[StepMarker]] = mapped_column(
        SQLEnum(StepMarker, name="close_draft_step_enum", native_enum=False),
        nullable=True,
        default=None,
    )

    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    finalize_result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True, default=None)
    finalizing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, default=None)

    created_by: Mapped[str] = mapped_column(String(36), nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<CloseDraft(id={self.draft_id}, scope={self.scope_id}, "
            f"status={self.status.value}, version={self.version})>"
        )
