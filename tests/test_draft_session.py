import asyncio

import pytest
from sqlalchemy import select

from app.core.db.engine import session_scope
from app.core.exceptions import VersionConflictError
from app.modules.close_drafts.client import LocalDraftsClient
from app.modules.close_drafts.finalizer import FinalizationOrchestrator
from app.modules.close_drafts.models import DraftKind, DraftStatus, StepMarker
from app.modules.close_drafts.session import DraftSession
from app.modules.lottery.models import AttemptPhase
from app.modules.lottery.schemas import PackClosingLine
from app.modules.lottery.service import LotteryClosingCoordinator
from app.modules.settlements.models import ShiftSettlement

DEBOUNCE = 0.05


class RecordingClient(LocalDraftsClient):
    """Local client that records the order of writes."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = []

    async def update(self, draft_id, payload, version):
        self.calls.append(("update", dict(payload), version))
        return await super().update(draft_id, payload, version)

    async def finalize(self, draft_id, closing_cash):
        self.calls.append(("finalize", closing_cash))
        return await super().finalize(draft_id, closing_cash)

    @property
    def updates(self):
        return [call for call in self.calls if call[0] == "update"]


class InterferingClient(RecordingClient):
    """Another writer bumps the draft right before every write from the session."""

    async def update(self, draft_id, payload, version):
        current = await self.get(draft_id)
        await LocalDraftsClient.update(self, draft_id, {"reports": {}}, current.version)
        return await super().update(draft_id, payload, version)


class BrokenClient(RecordingClient):
    async def update(self, draft_id, payload, version):
        raise RuntimeError("network down")


@pytest.fixture
def coordinator(clock):
    return LotteryClosingCoordinator(clock=clock)


@pytest.fixture
def make_client(actor, session_factory, coordinator, clock):
    def _make(cls=RecordingClient):
        finalizer = FinalizationOrchestrator(
            session_factory=session_factory, coordinator=coordinator, clock=clock
        )
        return cls(actor, session_factory=session_factory, coordinator=coordinator, finalizer=finalizer)

    return _make


def _session(client, kind=DraftKind.SHIFT_CLOSE, debounce=DEBOUNCE):
    return DraftSession(client, scope_id="shift-1", kind=kind, debounce_seconds=debounce)


async def test_open_creates_then_resumes(make_client):
    client = make_client()
    session = _session(client)
    draft = await session.open()

    assert draft.version == 1
    assert session.recovery_info is None

    await session.update_step_state(StepMarker.REPORTS)
    session.update_closing_cash(250)
    await session.save()
    session.close()

    resumed = _session(make_client())
    await resumed.open()

    assert resumed.draft_id == draft.draft_id
    assert resumed.recovery_info.step_marker == StepMarker.REPORTS
    assert resumed.payload["closing_cash"] == 250.0
    assert resumed.version == 3


async def test_quick_edits_are_coalesced_into_one_write(make_client):
    client = make_client()
    session = _session(client)
    await session.open()

    session.update_reports({"lottery_reports": {"instant_sales": 10}})
    session.update_closing_cash(100)
    session.update_reports({"lottery_reports": {"instant_sales": 20}})
    assert session.is_dirty

    await asyncio.sleep(DEBOUNCE * 3)
    await session._autosave_task

    assert len(client.updates) == 1
    _, sent, version = client.updates[0]
    assert set(sent) == {"reports", "closing_cash"}
    assert sent["reports"]["lottery_reports"]["instant_sales"] == 20
    assert version == 1
    assert session.version == 2
    assert not session.is_dirty


async def test_conflict_is_retried_once(make_client):
    session = _session(make_client(), debounce=10)
    await session.open()

    other = make_client()
    await other.update(session.draft_id, {"reports": {"vendor_invoices": []}}, 1)

    session.update_closing_cash(75)
    draft = await session.save()

    assert draft.version == 3
    assert draft.payload["closing_cash"] == 75.0
    assert draft.payload["reports"]["vendor_invoices"] == []
    assert not session.has_version_conflict


async def test_second_conflict_surfaces_to_operator(make_client):
    client = make_client(InterferingClient)
    session = _session(client, debounce=10)
    await session.open()

    session.update_closing_cash(75)
    with pytest.raises(VersionConflictError) as exc_info:
        await session.save()

    assert len(client.updates) == 2
    assert session.has_version_conflict
    assert session.is_dirty
    assert exc_info.value.current_draft.version == exc_info.value.current_version

    await session.reload()
    assert not session.is_dirty
    assert not session.has_version_conflict
    assert "closing_cash" not in session.payload


async def test_failed_write_keeps_pending_edits(make_client):
    session = _session(make_client(BrokenClient), debounce=10)
    await session.open()

    session.update_closing_cash(75)
    with pytest.raises(RuntimeError):
        await session.save()

    assert session.is_dirty
    assert isinstance(session.error, RuntimeError)
    assert session.payload["closing_cash"] == 75.0


async def test_close_cancels_autosave(make_client):
    client = make_client()
    session = _session(client)
    await session.open()

    session.update_closing_cash(75)
    session.close()
    await asyncio.sleep(DEBOUNCE * 4)

    assert client.updates == []


async def test_discard_cancels_staged_lottery(make_client, actor, session_factory, coordinator, make_pack):
    pack = await make_pack()
    session = _session(make_client(), kind=DraftKind.DAY_CLOSE)
    await session.open()

    prepared = await session.stage_lottery([PackClosingLine(pack_id=pack.pack_id, closing_serial="045")])
    assert session.payload["lottery"]["pending_lottery_day_id"] == prepared.day_id
    assert session.payload["lottery"]["totals"]["sales_amount"] == 90.0

    await session.discard()

    assert session.draft.status == DraftStatus.EXPIRED
    async with session_scope(session_factory) as db:
        attempt = await coordinator.get_attempt(db, actor, prepared.day_id)
    assert attempt.phase == AttemptPhase.CANCELLED


async def test_finalize_flushes_before_settlement(make_client, session_factory):
    client = make_client()
    session = _session(client, debounce=10)
    await session.open()

    session.update_reports({"cash_payouts": {"money_orders": 30}})
    result = await session.finalize(640)

    assert [call[0] for call in client.calls] == ["update", "finalize"]
    assert session.draft.status == DraftStatus.FINALIZED
    async with session_scope(session_factory) as db:
        settlement = (await db.execute(select(ShiftSettlement))).scalar_one()
    assert settlement.settlement_id == result.settlement_id
    assert settlement.payload_snapshot["reports"]["cash_payouts"]["money_orders"] == 30
    assert settlement.payload_snapshot["closing_cash"] == 640.0


async def test_concurrent_finalize_on_one_session(make_client):
    client = make_client()
    session = _session(client, debounce=10)
    await session.open()

    first, second = await asyncio.gather(session.finalize(100), session.finalize(100))

    assert first.settlement_id == second.settlement_id
    assert len([call for call in client.calls if call[0] == "finalize"]) == 1
