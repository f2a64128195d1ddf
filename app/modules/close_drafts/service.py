"""
CloseDraftsService - versioned storage of close wizard drafts.

Every write goes through the ORM version counter on CloseDraft, so two
writers holding the same version cannot both succeed. A write carrying a
stale version gets a VersionConflict value back and changes nothing.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, desc, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.utils import utcnow
from app.modules.auth.auth import TokenData
from .models import ACTIVE_STATUSES, CloseDraft, DraftStatus, StepMarker
from .schemas import CreateDraftDto, DraftPayload, VersionConflict

logger = logging.getLogger(__name__)


def _validate_partial(payload: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return DraftPayload.model_validate(payload).to_partial()
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid draft payload: {e.errors(include_url=False)}")


def _ensure_editable(draft: CloseDraft) -> None:
    if draft.status == DraftStatus.FINALIZING:
        raise ConflictError("Draft is being finalized and cannot be edited")
    if draft.status != DraftStatus.IN_PROGRESS:
        raise ConflictError(f"Draft is {draft.status.value} and can no longer be changed")


class CloseDraftsService:
    """
    Close drafts service. Methods take the caller's session and the
    authenticated identity; lookups are always scoped to the caller's store.
    """

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    async def get(db: AsyncSession, actor: TokenData, draft_id: str) -> Optional[CloseDraft]:
        """
        Get a draft by ID. Drafts of other stores are reported as absent.
        """
        result = await db.execute(
            select(CloseDraft)
            .where(CloseDraft.draft_id == draft_id, CloseDraft.store_id == actor.store_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _require(db: AsyncSession, actor: TokenData, draft_id: str) -> CloseDraft:
        draft = await CloseDraftsService.get(db, actor, draft_id)
        if not draft:
            raise NotFoundError("Close draft", draft_id)
        return draft

    @staticmethod
    async def get_active(db: AsyncSession, actor: TokenData, scope_id: str) -> Optional[CloseDraft]:
        """The IN_PROGRESS or FINALIZING draft of a shift, if any."""
        result = await db.execute(
            select(CloseDraft).where(
                CloseDraft.store_id == actor.store_id,
                CloseDraft.scope_id == scope_id,
                CloseDraft.status.in_(ACTIVE_STATUSES),
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def list_drafts(
        db: AsyncSession, actor: TokenData, status: Optional[DraftStatus] = None
    ) -> List[CloseDraft]:
        query = select(CloseDraft).where(CloseDraft.store_id == actor.store_id)
        if status:
            query = query.where(CloseDraft.status == status)
        query = query.order_by(desc(CloseDraft.updated_at))

        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def count_by_status(db: AsyncSession, actor: TokenData, status: DraftStatus) -> int:
        result = await db.execute(
            select(func.count(CloseDraft.draft_id)).where(
                CloseDraft.store_id == actor.store_id,
                CloseDraft.status == status,
            )
        )
        return result.scalar() or 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    async def create(db: AsyncSession, actor: TokenData, dto: CreateDraftDto) -> CloseDraft:
        """
        Open the draft for a shift. Idempotent: when the shift already has an
        active draft, that draft is returned unchanged.
        """
        existing = await CloseDraftsService.get_active(db, actor, dto.scope_id)
        if existing:
            logger.debug("Returning existing draft %s for scope %s", existing.draft_id, dto.scope_id)
            return existing

        draft = CloseDraft(
            store_id=actor.store_id,
            scope_id=dto.scope_id,
            business_date=dto.business_date,
            kind=dto.kind,
            status=DraftStatus.IN_PROGRESS,
            payload={},
            created_by=actor.user_id,
        )
        db.add(draft)
        try:
            await db.flush()
        except IntegrityError:
            # Lost the race on the one-active-draft index
            await db.rollback()
            winner = await CloseDraftsService.get_active(db, actor, dto.scope_id)
            if winner is None:
                raise
            return winner

        logger.info(
            "Created %s draft %s for scope %s (by %s)",
            draft.kind.value, draft.draft_id, draft.scope_id, actor.user_id,
        )
        return draft

    @staticmethod
    async def update(
        db: AsyncSession,
        actor: TokenData,
        draft_id: str,
        payload: Dict[str, Any],
        expected_version: int,
    ) -> Union[CloseDraft, VersionConflict]:
        """
        Merge a partial payload into the draft.

        Present top-level keys replace the stored values; absent keys are kept.

        Returns:
            The updated draft, or VersionConflict when expected_version is stale

        Raises:
            NotFoundError: Unknown draft
            ConflictError: Draft is not IN_PROGRESS
            ValidationError: Payload is malformed
        """
        draft = await CloseDraftsService._require(db, actor, draft_id)
        _ensure_editable(draft)

        if draft.version != expected_version:
            logger.warning(
                "Version conflict on draft %s: expected %s, current %s",
                draft_id, expected_version, draft.version,
            )
            return VersionConflict(current_version=draft.version, expected_version=expected_version)

        partial = _validate_partial(payload)

        # Every accepted write bumps the version, even an empty or identical one
        draft.payload = {**(draft.payload or {}), **partial}
        flag_modified(draft, "payload")
        draft.updated_at = utcnow()
        try:
            await db.flush()
        except StaleDataError:
            await db.rollback()
            current = await CloseDraftsService._require(db, actor, draft_id)
            logger.warning(
                "Draft %s changed concurrently: expected %s, current %s",
                draft_id, expected_version, current.version,
            )
            return VersionConflict(current_version=current.version, expected_version=expected_version)

        logger.debug("Draft %s updated to version %s (keys: %s)", draft_id, draft.version, sorted(partial))
        return draft

    @staticmethod
    async def update_lottery(
        db: AsyncSession,
        actor: TokenData,
        draft_id: str,
        lottery: Dict[str, Any],
        expected_version: int,
    ) -> Union[CloseDraft, VersionConflict]:
        """Replace only the lottery section."""
        return await CloseDraftsService.update(
            db, actor, draft_id, {"lottery": lottery}, expected_version
        )

    @staticmethod
    async def update_step_state(
        db: AsyncSession, actor: TokenData, draft_id: str, marker: Optional[StepMarker]
    ) -> CloseDraft:
        """
        Record the wizard step. Takes no expected version but still bumps it;
        a concurrent write is retried once against the fresh row.
        """
        for attempt in range(2):
            draft = await CloseDraftsService._require(db, actor, draft_id)
            _ensure_editable(draft)

            draft.step_marker = marker
            flag_modified(draft, "step_marker")
            draft.updated_at = utcnow()
            try:
                await db.flush()
                return draft
            except StaleDataError:
                await db.rollback()
                if attempt:
                    raise ConflictError("Draft is being modified concurrently, please retry")

        return draft

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    @staticmethod
    async def begin_finalize(
        db: AsyncSession,
        actor: TokenData,
        draft_id: str,
        stale_after: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> CloseDraft:
        """
        IN_PROGRESS -> FINALIZING. A FINALIZING draft whose run started more
        than `stale_after` ago is taken over.

        Raises:
            ConflictError: Already finalizing, or not finalizable
        """
        now = now or utcnow()
        draft = await CloseDraftsService._require(db, actor, draft_id)

        if draft.status == DraftStatus.FINALIZING:
            started = draft.finalizing_started_at
            if stale_after is None or (started is not None and now - started < stale_after):
                raise ConflictError("Finalization already in progress")
            logger.warning("Resuming stale finalization of draft %s started at %s", draft_id, started)
        elif draft.status != DraftStatus.IN_PROGRESS:
            raise ConflictError(f"Cannot finalize a draft that is {draft.status.value}")

        draft.status = DraftStatus.FINALIZING
        draft.finalizing_started_at = now
        try:
            await db.flush()
        except StaleDataError:
            await db.rollback()
            raise ConflictError("Finalization already in progress")

        logger.info("Draft %s is finalizing (by %s)", draft_id, actor.user_id)
        return draft

    @staticmethod
    async def rollback_finalize(db: AsyncSession, actor: TokenData, draft_id: str) -> CloseDraft:
        """FINALIZING -> IN_PROGRESS after a failed finalize."""
        draft = await CloseDraftsService._require(db, actor, draft_id)
        if draft.status == DraftStatus.IN_PROGRESS:
            return draft
        if draft.status != DraftStatus.FINALIZING:
            raise ConflictError(f"Cannot roll back a draft that is {draft.status.value}")

        draft.status = DraftStatus.IN_PROGRESS
        draft.finalizing_started_at = None
        await db.flush()

        logger.info("Draft %s reverted to IN_PROGRESS", draft_id)
        return draft

    @staticmethod
    async def finalize(
        db: AsyncSession,
        actor: TokenData,
        draft_id: str,
        closing_cash: Union[Decimal, float],
        result: Dict[str, Any],
    ) -> CloseDraft:
        """
        Mark the draft FINALIZED, recording closing cash and the finalize result.
        Finalizing a FINALIZED draft returns it unchanged.
        """
        draft = await CloseDraftsService._require(db, actor, draft_id)
        if draft.status == DraftStatus.FINALIZED:
            return draft
        if draft.status not in ACTIVE_STATUSES:
            raise ConflictError(f"Cannot finalize a draft that is {draft.status.value}")

        draft.payload = {**(draft.payload or {}), "closing_cash": float(closing_cash)}
        draft.status = DraftStatus.FINALIZED
        draft.finalize_result = result
        draft.finalizing_started_at = None
        await db.flush()

        logger.info("Draft %s finalized (by %s)", draft_id, actor.user_id)
        return draft

    @staticmethod
    async def expire(db: AsyncSession, actor: TokenData, draft_id: str) -> CloseDraft:
        """Abandon a draft. Expiring an EXPIRED draft is a no-op."""
        draft = await CloseDraftsService._require(db, actor, draft_id)
        if draft.status == DraftStatus.EXPIRED:
            return draft
        if draft.status == DraftStatus.FINALIZED:
            raise ConflictError("Cannot expire a finalized draft")

        draft.status = DraftStatus.EXPIRED
        draft.finalizing_started_at = None
        await db.flush()

        logger.info("Draft %s expired (by %s)", draft_id, actor.user_id)
        return draft

    @staticmethod
    async def cleanup_expired(
        db: AsyncSession,
        actor: TokenData,
        max_age_hours: int,
        now: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> int:
        """
        Delete EXPIRED drafts of the caller's store not touched for max_age_hours.

        Returns:
            Number of drafts deleted (or that would be, with dry_run)
        """
        if max_age_hours <= 0:
            raise ValidationError("max_age_hours must be positive")

        cutoff = (now or utcnow()) - timedelta(hours=max_age_hours)
        conditions = (
            CloseDraft.store_id == actor.store_id,
            CloseDraft.status == DraftStatus.EXPIRED,
            CloseDraft.updated_at < cutoff,
        )

        if dry_run:
            result = await db.execute(select(func.count(CloseDraft.draft_id)).where(*conditions))
            return result.scalar() or 0

        result = await db.execute(
            delete(CloseDraft).where(*conditions).execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0
        logger.info(
            "Deleted %d expired drafts older than %dh for store %s",
            deleted, max_age_hours, actor.store_id,
        )
        return deleted
