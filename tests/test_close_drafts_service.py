from datetime import timedelta

import pytest

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.utils import utcnow
from app.modules.close_drafts.models import DraftKind, DraftStatus, StepMarker
from app.modules.close_drafts.schemas import CreateDraftDto, VersionConflict
from app.modules.close_drafts.service import CloseDraftsService


REPORTS = {
    "lottery_reports": {"instant_sales": 120.0, "online_sales": 80.5},
    "vendor_invoices": [{"vendor_name": "Coca-Cola", "amount": 245.1}],
}

LOTTERY = {
    "bins_scans": [{"pack_id": "pack-1", "bin_id": "bin-1", "closing_serial": "045"}],
    "totals": {"tickets_sold": 45, "sales_amount": 90.0},
    "entry_method": "SCAN",
}


async def _create(db, actor, scope_id="shift-1", kind=DraftKind.SHIFT_CLOSE):
    return await CloseDraftsService.create(db, actor, CreateDraftDto(scope_id=scope_id, kind=kind))


async def test_create_is_idempotent_per_scope(db, actor):
    first = await _create(db, actor)
    second = await _create(db, actor, kind=DraftKind.DAY_CLOSE)

    assert second.draft_id == first.draft_id
    assert second.version == 1
    assert second.kind == DraftKind.SHIFT_CLOSE
    assert first.status == DraftStatus.IN_PROGRESS


async def test_new_draft_after_previous_expired(db, actor):
    first = await _create(db, actor)
    await CloseDraftsService.expire(db, actor, first.draft_id)

    second = await _create(db, actor)

    assert second.draft_id != first.draft_id
    assert second.version == 1


async def test_update_bumps_version_and_merges_keys(db, actor):
    draft = await _create(db, actor)

    draft = await CloseDraftsService.update(db, actor, draft.draft_id, {"lottery": LOTTERY}, 1)
    assert draft.version == 2

    draft = await CloseDraftsService.update(db, actor, draft.draft_id, {"reports": REPORTS}, 2)
    assert draft.version == 3
    assert draft.payload["lottery"]["totals"]["sales_amount"] == 90.0
    assert draft.payload["reports"]["lottery_reports"]["instant_sales"] == 120.0


async def test_identical_and_empty_writes_still_bump_version(db, actor):
    draft = await _create(db, actor)

    draft = await CloseDraftsService.update(db, actor, draft.draft_id, {"closing_cash": 500}, 1)
    assert draft.version == 2

    draft = await CloseDraftsService.update(db, actor, draft.draft_id, {"closing_cash": 500}, 2)
    assert draft.version == 3

    draft = await CloseDraftsService.update(db, actor, draft.draft_id, {}, 3)
    assert draft.version == 4
    assert draft.payload == {"closing_cash": 500.0}

    stale = await CloseDraftsService.update(db, actor, draft.draft_id, {}, 3)
    assert stale == VersionConflict(current_version=4, expected_version=3)


async def test_present_key_is_replaced_wholesale(db, actor):
    draft = await _create(db, actor)
    draft = await CloseDraftsService.update(db, actor, draft.draft_id, {"reports": REPORTS}, 1)

    draft = await CloseDraftsService.update(
        db, actor, draft.draft_id, {"reports": {"cash_payouts": {"money_orders": 50}}}, 2
    )

    assert draft.payload["reports"]["vendor_invoices"] == []
    assert draft.payload["reports"]["lottery_reports"] is None
    assert draft.payload["reports"]["cash_payouts"]["money_orders"] == 50


async def test_stale_version_is_rejected_without_writing(db, actor):
    draft = await _create(db, actor)
    await CloseDraftsService.update(db, actor, draft.draft_id, {"closing_cash": 100}, 1)

    result = await CloseDraftsService.update(db, actor, draft.draft_id, {"closing_cash": 999}, 1)

    assert result == VersionConflict(current_version=2, expected_version=1)
    stored = await CloseDraftsService.get(db, actor, draft.draft_id)
    assert stored.payload == {"closing_cash": 100.0}
    assert stored.version == 2


async def test_two_writers_with_same_version(db, actor, cashier):
    draft = await _create(db, actor)

    winner = await CloseDraftsService.update(db, actor, draft.draft_id, {"reports": REPORTS}, 1)
    loser = await CloseDraftsService.update(db, cashier, draft.draft_id, {"closing_cash": 5}, 1)

    assert winner.version == 2
    assert isinstance(loser, VersionConflict)
    assert loser.current_version == 2


async def test_invalid_payload_is_rejected(db, actor):
    draft = await _create(db, actor)

    with pytest.raises(ValidationError):
        await CloseDraftsService.update(db, actor, draft.draft_id, {"closing_cash": -1}, 1)
    with pytest.raises(ValidationError):
        await CloseDraftsService.update(db, actor, draft.draft_id, {"closing_cash": 1_000_000}, 1)
    with pytest.raises(ValidationError):
        await CloseDraftsService.update(db, actor, draft.draft_id, {"unknown": 1}, 1)


async def test_manual_lottery_entry_requires_authorization(db, actor):
    draft = await _create(db, actor)
    manual = {**LOTTERY, "entry_method": "MANUAL"}

    with pytest.raises(ValidationError):
        await CloseDraftsService.update_lottery(db, actor, draft.draft_id, manual, 1)

    updated = await CloseDraftsService.update_lottery(
        db, actor, draft.draft_id, {**manual, "authorized_by": "user-1"}, 1
    )
    assert updated.payload["lottery"]["authorized_by"] == "user-1"


async def test_step_state_bumps_version_without_expected_version(db, actor):
    draft = await _create(db, actor)

    draft = await CloseDraftsService.update_step_state(db, actor, draft.draft_id, StepMarker.REPORTS)
    assert draft.step_marker == StepMarker.REPORTS
    assert draft.version == 2

    draft = await CloseDraftsService.update_step_state(db, actor, draft.draft_id, StepMarker.REPORTS)
    assert draft.version == 3


async def test_finalized_and_expired_drafts_are_immutable(db, actor):
    finalized = await _create(db, actor, scope_id="shift-1")
    await CloseDraftsService.begin_finalize(db, actor, finalized.draft_id)
    await CloseDraftsService.finalize(db, actor, finalized.draft_id, 150, {"settlement_id": "s-1"})

    expired = await _create(db, actor, scope_id="shift-2")
    await CloseDraftsService.expire(db, actor, expired.draft_id)

    for draft in (finalized, expired):
        with pytest.raises(ConflictError):
            await CloseDraftsService.update(db, actor, draft.draft_id, {"closing_cash": 1}, draft.version)
        with pytest.raises(ConflictError):
            await CloseDraftsService.update_step_state(db, actor, draft.draft_id, StepMarker.REVIEW)

    with pytest.raises(ConflictError):
        await CloseDraftsService.expire(db, actor, finalized.draft_id)
    again = await CloseDraftsService.expire(db, actor, expired.draft_id)
    assert again.status == DraftStatus.EXPIRED


async def test_finalize_records_closing_cash(db, actor):
    draft = await _create(db, actor)
    await CloseDraftsService.update(db, actor, draft.draft_id, {"reports": REPORTS}, 1)
    await CloseDraftsService.begin_finalize(db, actor, draft.draft_id)

    draft = await CloseDraftsService.finalize(db, actor, draft.draft_id, 1234.5, {"settlement_id": "s-1"})

    assert draft.status == DraftStatus.FINALIZED
    assert draft.payload["closing_cash"] == 1234.5
    assert draft.payload["reports"]["vendor_invoices"][0]["vendor_name"] == "Coca-Cola"
    assert draft.finalize_result == {"settlement_id": "s-1"}

    same = await CloseDraftsService.finalize(db, actor, draft.draft_id, 1, {"settlement_id": "other"})
    assert same.finalize_result == {"settlement_id": "s-1"}


async def test_begin_finalize_is_not_reentrant(db, actor):
    draft = await _create(db, actor)
    now = utcnow()
    await CloseDraftsService.begin_finalize(db, actor, draft.draft_id, now=now)

    with pytest.raises(ConflictError):
        await CloseDraftsService.begin_finalize(db, actor, draft.draft_id, stale_after=timedelta(seconds=120), now=now)

    resumed = await CloseDraftsService.begin_finalize(
        db, actor, draft.draft_id,
        stale_after=timedelta(seconds=120),
        now=now + timedelta(seconds=121),
    )
    assert resumed.status == DraftStatus.FINALIZING


async def test_rollback_finalize_returns_to_in_progress(db, actor):
    draft = await _create(db, actor)
    await CloseDraftsService.begin_finalize(db, actor, draft.draft_id)

    draft = await CloseDraftsService.rollback_finalize(db, actor, draft.draft_id)

    assert draft.status == DraftStatus.IN_PROGRESS
    assert draft.finalizing_started_at is None
    edited = await CloseDraftsService.update(db, actor, draft.draft_id, {"closing_cash": 10}, draft.version)
    assert edited.payload["closing_cash"] == 10.0


async def test_other_store_sees_nothing(db, actor, other_store_actor):
    draft = await _create(db, actor)

    assert await CloseDraftsService.get(db, other_store_actor, draft.draft_id) is None
    assert await CloseDraftsService.get_active(db, other_store_actor, "shift-1") is None
    with pytest.raises(NotFoundError):
        await CloseDraftsService.update(db, other_store_actor, draft.draft_id, {"closing_cash": 1}, 1)


async def test_list_and_count_by_status(db, actor):
    first = await _create(db, actor, scope_id="shift-1")
    await _create(db, actor, scope_id="shift-2")
    await CloseDraftsService.expire(db, actor, first.draft_id)

    assert await CloseDraftsService.count_by_status(db, actor, DraftStatus.IN_PROGRESS) == 1
    assert await CloseDraftsService.count_by_status(db, actor, DraftStatus.EXPIRED) == 1
    assert len(await CloseDraftsService.list_drafts(db, actor)) == 2
    expired = await CloseDraftsService.list_drafts(db, actor, DraftStatus.EXPIRED)
    assert [d.draft_id for d in expired] == [first.draft_id]


async def test_cleanup_deletes_only_old_expired_drafts(db, actor):
    old = await _create(db, actor, scope_id="shift-1")
    await CloseDraftsService.expire(db, actor, old.draft_id)
    active = await _create(db, actor, scope_id="shift-2")

    later = utcnow() + timedelta(hours=73)
    assert await CloseDraftsService.cleanup_expired(db, actor, 72, now=later, dry_run=True) == 1
    assert await CloseDraftsService.cleanup_expired(db, actor, 72) == 0
    assert await CloseDraftsService.cleanup_expired(db, actor, 72, now=later) == 1

    assert await CloseDraftsService.get(db, actor, old.draft_id) is None
    assert await CloseDraftsService.get(db, actor, active.draft_id) is not None

    with pytest.raises(ValidationError):
        await CloseDraftsService.cleanup_expired(db, actor, 0)
