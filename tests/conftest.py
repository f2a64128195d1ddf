from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from app.core.db import Base
from app.core.db.engine import build_engine, build_session_factory, session_scope
from app.modules.auth.auth import Role, TokenData
from app.modules.lottery.models import LotteryPack, PackStatus


class FakeClock:
    """Injectable clock for expiry and staleness windows."""

    def __init__(self, now: datetime = datetime(2026, 3, 1, 22, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'closing_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def actor() -> TokenData:
    return TokenData(
        user_id="user-1", username="alice", role=Role.SHIFT_MANAGER.value, store_id="store-1"
    )


@pytest.fixture
def cashier() -> TokenData:
    return TokenData(user_id="user-2", username="bob", role=Role.CASHIER.value, store_id="store-1")


@pytest.fixture
def other_store_actor() -> TokenData:
    return TokenData(
        user_id="user-9", username="mallory", role=Role.STORE_MANAGER.value, store_id="store-2"
    )


@pytest.fixture
def make_pack(session_factory):
    """Insert a lottery pack (committed) and return it."""

    async def _make(**overrides) -> LotteryPack:
        fields = dict(
            store_id="store-1",
            pack_number="0123456",
            game_name="Lucky 7s",
            bin_id="bin-1",
            bin_display_order=1,
            status=PackStatus.ACTIVE,
            opening_serial="000",
            ticket_price=Decimal("2.00"),
            tickets_per_pack=300,
        )
        fields.update(overrides)
        pack = LotteryPack(**fields)
        async with session_scope(session_factory) as session:
            session.add(pack)
        return pack

    return _make
