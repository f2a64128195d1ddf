from decimal import Decimal

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import app.main as main_module
from app.core.db.engine import get_db_util
from app.main import app
from app.modules.auth.auth import AuthService, Role
from app.modules.close_drafts.finalizer import FinalizationOrchestrator
from app.modules.close_drafts.router import get_finalizer
from app.modules.lottery.router import get_coordinator
from app.modules.lottery.service import LotteryClosingCoordinator


def _token(role: Role = Role.SHIFT_MANAGER, store_id: str = "store-1") -> dict:
    token = AuthService.create_access_token(
        {"user_id": "user-1", "sub": "alice", "role": role.value, "store_id": store_id}
    )
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(session_factory, clock):
    """HTTP client over the app with the test database; overrides are cleared afterwards."""

    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    coordinator = LotteryClosingCoordinator(clock=clock, independent_close_allowed=True)
    finalizer = FinalizationOrchestrator(
        session_factory=session_factory, coordinator=coordinator, clock=clock
    )
    app.dependency_overrides[get_db_util] = _get_db
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    app.dependency_overrides[get_finalizer] = lambda: finalizer

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()


async def _create(client, scope_id="shift-1", kind="SHIFT_CLOSE"):
    response = await client.post(
        "/api/close-drafts", json={"scope_id": scope_id, "kind": kind}, headers=_token()
    )
    assert response.status_code == 200
    return response.json()


async def test_requires_token(client):
    response = await client.get("/api/close-drafts/active", params={"scope_id": "shift-1"})
    assert response.status_code in (401, 403)

    bad = await client.get(
        "/api/close-drafts/active",
        params={"scope_id": "shift-1"},
        headers={"Authorization": "Bearer not-a-token"},
    )
    assert bad.status_code == 401


async def test_cashier_cannot_list_drafts(client):
    response = await client.get("/api/close-drafts", headers=_token(Role.CASHIER))
    assert response.status_code == 403


async def test_create_is_idempotent(client):
    first = await _create(client)
    second = await _create(client)

    assert first["draft_id"] == second["draft_id"]
    assert second["version"] == 1
    assert second["status"] == "IN_PROGRESS"


async def test_active_draft_is_null_when_absent(client):
    response = await client.get(
        "/api/close-drafts/active", params={"scope_id": "nothing"}, headers=_token()
    )
    assert response.status_code == 200
    assert response.json() == {"draft": None}


async def test_stale_version_returns_409_body(client):
    draft = await _create(client)
    url = f"/api/close-drafts/{draft['draft_id']}"

    ok = await client.patch(url, json={"payload": {"closing_cash": 10}, "version": 1}, headers=_token())
    assert ok.status_code == 200
    assert ok.json()["version"] == 2

    stale = await client.patch(url, json={"payload": {"closing_cash": 20}, "version": 1}, headers=_token())
    assert stale.status_code == 409
    body = stale.json()
    assert body["error"] == "VERSION_CONFLICT"
    assert body["current_version"] == 2
    assert body["expected_version"] == 1

    current = await client.get(url, headers=_token())
    assert current.json()["payload"] == {"closing_cash": 10.0}


async def test_invalid_payload_returns_422(client):
    draft = await _create(client)
    response = await client.patch(
        f"/api/close-drafts/{draft['draft_id']}",
        json={"payload": {"closing_cash": -5}, "version": 1},
        headers=_token(),
    )
    assert response.status_code == 422


async def test_other_store_gets_404(client):
    draft = await _create(client)
    response = await client.get(
        f"/api/close-drafts/{draft['draft_id']}", headers=_token(store_id="store-2")
    )
    assert response.status_code == 404


async def test_step_state_and_lottery_section(client):
    draft = await _create(client, kind="DAY_CLOSE")
    url = f"/api/close-drafts/{draft['draft_id']}"

    step = await client.put(f"{url}/step-state", json={"step_state": "LOTTERY"}, headers=_token())
    assert step.status_code == 200
    assert step.json()["step_marker"] == "LOTTERY"
    assert step.json()["version"] == 2

    lottery = await client.put(
        f"{url}/lottery",
        json={
            "lottery_data": {"entry_method": "MANUAL", "authorized_by": "user-7"},
            "version": 2,
        },
        headers=_token(),
    )
    assert lottery.status_code == 200
    assert lottery.json()["payload"]["lottery"]["authorized_by"] == "user-7"


async def test_lottery_day_close_flow(client, make_pack):
    pack = await make_pack()

    prepared = await client.post(
        "/api/lottery/day-close/prepare",
        json={"closings": [{"pack_id": pack.pack_id, "closing_serial": "045"}]},
        headers=_token(),
    )
    assert prepared.status_code == 200
    body = prepared.json()
    assert Decimal(body["estimated_lottery_total"]) == Decimal("90.00")
    assert body["status"] == "PENDING_CLOSE"

    attempt = await client.get(f"/api/lottery/day-close/{body['day_id']}", headers=_token())
    assert attempt.json()["phase"] == "PREPARED"
    assert attempt.json()["closings_count"] == 1

    committed = await client.post(
        "/api/lottery/day-close/commit", json={"day_id": body["day_id"]}, headers=_token()
    )
    assert committed.status_code == 200
    assert committed.json()["closings_created"] == 1
    assert Decimal(committed.json()["lottery_total"]) == Decimal("90.00")


async def test_lottery_commit_after_expiry_is_410(client, make_pack, clock):
    pack = await make_pack()
    prepared = await client.post(
        "/api/lottery/day-close/prepare",
        json={"closings": [{"pack_id": pack.pack_id, "closing_serial": "045"}]},
        headers=_token(),
    )
    clock.advance(minutes=6)

    response = await client.post(
        "/api/lottery/day-close/commit", json={"day_id": prepared.json()["day_id"]}, headers=_token()
    )
    assert response.status_code == 410


async def test_cashier_cannot_close_lottery(client):
    response = await client.post(
        "/api/lottery/day-close/cancel", json={"day_id": "x"}, headers=_token(Role.CASHIER)
    )
    assert response.status_code == 403


async def test_finalize_endpoint_is_idempotent(client):
    draft = await _create(client)
    url = f"/api/close-drafts/{draft['draft_id']}/finalize"

    first = await client.post(url, json={"closing_cash": "820.40"}, headers=_token())
    second = await client.post(url, json={"closing_cash": "820.40"}, headers=_token())

    assert first.status_code == 200
    assert second.json()["settlement_id"] == first.json()["settlement_id"]

    listed = await client.get("/api/close-drafts", params={"status": "FINALIZED"}, headers=_token())
    assert [d["draft_id"] for d in listed.json()] == [draft["draft_id"]]


async def test_finalize_rejects_excessive_cash(client):
    draft = await _create(client)
    response = await client.post(
        f"/api/close-drafts/{draft['draft_id']}/finalize",
        json={"closing_cash": "1000000.00"},
        headers=_token(),
    )
    assert response.status_code == 422


async def test_expire_and_cleanup(client):
    draft = await _create(client)

    expired = await client.post(f"/api/close-drafts/{draft['draft_id']}/expire", headers=_token())
    assert expired.json()["status"] == "EXPIRED"

    forbidden = await client.delete("/api/close-drafts/expired", headers=_token())
    assert forbidden.status_code == 403

    cleanup = await client.delete(
        "/api/close-drafts/expired", headers=_token(Role.STORE_MANAGER)
    )
    assert cleanup.status_code == 200
    assert cleanup.json() == {"deleted": 0}


async def test_health(client, monkeypatch):
    async def _ok():
        return True

    monkeypatch.setattr(main_module, "check_database_connection", _ok)
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] is True
