"""
DraftSession - client-side state of one close wizard.

Edits are applied locally right away and written in the background after a
quiet window. Pending edits are merged per top-level key (last write wins),
so several quick edits become a single write carrying their union.

A write that hits a version conflict is retried exactly once on the fresh
server version. If that conflicts too, VersionConflictError is raised with
the current server draft so the operator can decide between overwriting and
reloading.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from fastapi import HTTPException
from pydantic import BaseModel

from app.core.config import config
from app.core.exceptions import ConflictError, NotFoundError, VersionConflictError
from app.core.utils import utcnow
from app.modules.lottery.schemas import PackClosingLine, PrepareCloseResponse
from .client import DraftsClient
from .models import DraftKind, DraftStatus, StepMarker
from .schemas import (
    BinScan,
    DraftResponse,
    EntryMethod,
    FinalizeResponse,
    LotteryPayload,
    LotteryTotals,
    VersionConflict,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryInfo:
    """Shown when the wizard reopens a draft left behind by a crash or reload"""

    draft_id: str
    version: int
    step_marker: Optional[StepMarker]
    last_updated: datetime


class DraftSession:
    def __init__(
        self,
        client: DraftsClient,
        scope_id: str,
        kind: DraftKind,
        business_date: Optional[date] = None,
        debounce_seconds: Optional[float] = None,
    ) -> None:
        self.client = client
        self.scope_id = scope_id
        self.kind = kind
        self.business_date = business_date
        self.debounce_seconds = (
            debounce_seconds
            if debounce_seconds is not None
            else config.draft_autosave_debounce_ms / 1000
        )

        self.draft: Optional[DraftResponse] = None
        self.recovery_info: Optional[RecoveryInfo] = None
        self.error: Optional[Exception] = None
        self.has_version_conflict = False

        self._payload: Dict[str, Any] = {}
        self._pending: Dict[str, Any] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        self._autosave_task: Optional[asyncio.Task] = None
        self._finalize_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def payload(self) -> Dict[str, Any]:
        """Server payload with local unsaved edits applied."""
        return dict(self._payload)

    @property
    def is_dirty(self) -> bool:
        return bool(self._pending)

    @property
    def version(self) -> Optional[int]:
        return self.draft.version if self.draft else None

    @property
    def draft_id(self) -> Optional[str]:
        return self.draft.draft_id if self.draft else None

    def _require_open(self) -> DraftResponse:
        if self._closed:
            raise ConflictError("Draft session is closed")
        if self.draft is None:
            raise ConflictError("Draft session is not open")
        return self.draft

    def _adopt(self, draft: DraftResponse) -> None:
        self.draft = draft
        self._payload = {**draft.payload, **self._pending}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> DraftResponse:
        """
        Resume the shift's active draft or create one. Local state comes only
        from what the server returns.
        """
        draft = await self.client.get_active(self.scope_id)
        if draft is not None:
            self.recovery_info = RecoveryInfo(
                draft_id=draft.draft_id,
                version=draft.version,
                step_marker=draft.step_marker,
                last_updated=draft.updated_at,
            )
            logger.info(
                "Resuming draft %s for scope %s at step %s",
                draft.draft_id, self.scope_id, draft.step_marker,
            )
        else:
            draft = await self.client.create(self.scope_id, self.kind, self.business_date)

        self._pending.clear()
        self._adopt(draft)
        self._closed = False
        return draft

    def close(self) -> None:
        """Stop autosaving. Unsaved edits are not written."""
        self._cancel_timer()
        self._closed = True

    async def reload(self) -> DraftResponse:
        """Drop local edits and take the server's current draft."""
        draft = self._require_open()
        self._cancel_timer()

        fresh = await self.client.get(draft.draft_id)
        if fresh is None:
            raise NotFoundError("Close draft", draft.draft_id)

        self._pending.clear()
        self._adopt(fresh)
        self.error = None
        self.has_version_conflict = False
        return fresh

    async def discard(self) -> None:
        """Abandon the draft: cancel any staged lottery close, then expire."""
        draft = self._require_open()
        self._cancel_timer()
        self._pending.clear()

        day_id = (self._payload.get("lottery") or {}).get("pending_lottery_day_id")
        if day_id:
            try:
                await self.client.cancel_lottery(day_id)
            except HTTPException as e:
                logger.warning("Could not cancel lottery close %s for draft %s: %s", day_id, draft.draft_id, e.detail)

        self.draft = await self.client.expire(draft.draft_id)
        self._closed = True
        logger.info("Discarded draft %s", draft.draft_id)

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def update_lottery(self, data: Union[LotteryPayload, Dict[str, Any]]) -> None:
        self._stage("lottery", data)

    def update_reports(self, data: Union[BaseModel, Dict[str, Any]]) -> None:
        self._stage("reports", data)

    def update_closing_cash(self, amount: Union[Decimal, float]) -> None:
        self._stage("closing_cash", float(amount))

    def _stage(self, key: str, value: Any) -> None:
        self._require_open()
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json")
        self._payload[key] = value
        self._pending[key] = value
        self._schedule()

    async def update_step_state(self, marker: Optional[StepMarker]) -> DraftResponse:
        """Written immediately, outside the debounce."""
        draft = self._require_open()
        async with self._write_lock:
            updated = await self.client.update_step_state(draft.draft_id, marker)
            self._adopt(updated)
        return updated

    async def stage_lottery(
        self,
        closings: List[PackClosingLine],
        entry_method: EntryMethod = EntryMethod.SCAN,
        authorized_by: Optional[str] = None,
    ) -> PrepareCloseResponse:
        """
        Prepare the lottery close and record it in the draft so finalize
        commits it. The returned expires_at drives the countdown.
        """
        self._require_open()
        # Validate before preparing so a bad entry never leaves a pending close
        LotteryPayload(entry_method=entry_method, authorized_by=authorized_by)

        prepared = await self.client.prepare_lottery(closings)
        scanned_at = utcnow()
        lottery = LotteryPayload(
            bins_scans=[
                BinScan(
                    pack_id=line.pack_id,
                    bin_id=line.bin_id,
                    closing_serial=line.closing_serial,
                    is_sold_out=line.is_sold_out,
                    scanned_at=scanned_at,
                )
                for line in prepared.bins_preview
            ],
            totals=LotteryTotals(
                tickets_sold=sum(line.tickets_sold for line in prepared.bins_preview),
                sales_amount=float(prepared.estimated_lottery_total),
            ),
            entry_method=entry_method,
            authorized_by=authorized_by,
            pending_lottery_day_id=prepared.day_id,
        )
        self.update_lottery(lottery)
        await self.save()
        return prepared

    # ------------------------------------------------------------------
    # Autosave
    # ------------------------------------------------------------------

    def _schedule(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce_seconds, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._autosave_task = asyncio.ensure_future(self._autosave())

    async def _autosave(self) -> None:
        try:
            await self.save()
        except Exception as e:
            # Surfaced through self.error; the edits stay pending
            logger.warning("Autosave of draft %s failed: %s", self.draft_id, e)

    async def save(self) -> Optional[DraftResponse]:
        """
        Write pending edits now.

        Raises:
            VersionConflictError: Still conflicting after one retry
        """
        draft = self._require_open()
        self._cancel_timer()
        async with self._write_lock:
            if not self._pending:
                return self.draft

            try:
                sent = dict(self._pending)
                result = await self.client.update(draft.draft_id, sent, self.draft.version)

                if isinstance(result, VersionConflict):
                    logger.warning(
                        "Version conflict saving draft %s (expected %s, current %s), retrying",
                        draft.draft_id, result.expected_version, result.current_version,
                    )
                    fresh = await self.client.get(draft.draft_id)
                    if fresh is None:
                        raise NotFoundError("Close draft", draft.draft_id)
                    self.draft = fresh

                    sent = dict(self._pending)
                    result = await self.client.update(draft.draft_id, sent, fresh.version)

                    if isinstance(result, VersionConflict):
                        current = await self.client.get(draft.draft_id)
                        self.has_version_conflict = True
                        raise VersionConflictError(
                            current_version=result.current_version,
                            expected_version=result.expected_version,
                            current_draft=current,
                        )
            except Exception as e:
                self.error = e
                raise

            for key, value in sent.items():
                if key in self._pending and self._pending[key] is value:
                    del self._pending[key]

            self._adopt(result)
            self.error = None
            self.has_version_conflict = False
            return result

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def finalize(self, closing_cash: Union[Decimal, float]) -> FinalizeResponse:
        """
        Flush pending edits, then finalize on the server. Concurrent calls
        share the same run.
        """
        task = self._finalize_task
        if task is None or (task.done() and (task.cancelled() or task.exception() is not None)):
            self._require_open()
            task = asyncio.ensure_future(self._finalize(closing_cash))
            self._finalize_task = task
        return await asyncio.shield(task)

    async def _finalize(self, closing_cash: Union[Decimal, float]) -> FinalizeResponse:
        self._cancel_timer()
        self._payload["closing_cash"] = float(closing_cash)
        self._pending["closing_cash"] = float(closing_cash)
        draft = await self.save()

        result = await self.client.finalize(draft.draft_id, closing_cash)

        fresh = await self.client.get(draft.draft_id)
        if fresh is not None:
            self._adopt(fresh)
        if fresh is None or fresh.status == DraftStatus.FINALIZED:
            self._closed = True
        logger.info("Draft %s finalized with settlement %s", draft.draft_id, result.settlement_id)
        return result
