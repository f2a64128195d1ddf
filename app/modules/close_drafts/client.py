"""
Drafts client - the round-trip interface a DraftSession talks to.

LocalDraftsClient runs each call in its own short transaction against the
service layer. A remote client would implement the same methods over HTTP.
"""

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.db.engine import session_scope
from app.modules.auth.auth import TokenData
from app.modules.lottery.schemas import PackClosingLine, PrepareCloseResponse
from app.modules.lottery.service import LotteryClosingCoordinator
from .finalizer import FinalizationOrchestrator
from .models import DraftKind, StepMarker
from .schemas import (
    CreateDraftDto,
    DraftResponse,
    FinalizeResponse,
    VersionConflict,
)
from .service import CloseDraftsService


class DraftsClient(ABC):
    @abstractmethod
    async def get_active(self, scope_id: str) -> Optional[DraftResponse]: ...

    @abstractmethod
    async def get(self, draft_id: str) -> Optional[DraftResponse]: ...

    @abstractmethod
    async def create(
        self, scope_id: str, kind: DraftKind, business_date: Optional[date] = None
    ) -> DraftResponse: ...

    @abstractmethod
    async def update(
        self, draft_id: str, payload: Dict[str, Any], version: int
    ) -> Union[DraftResponse, VersionConflict]: ...

    @abstractmethod
    async def update_step_state(
        self, draft_id: str, marker: Optional[StepMarker]
    ) -> DraftResponse: ...

    @abstractmethod
    async def finalize(
        self, draft_id: str, closing_cash: Union[Decimal, float]
    ) -> FinalizeResponse: ...

    @abstractmethod
    async def expire(self, draft_id: str) -> DraftResponse: ...

    @abstractmethod
    async def prepare_lottery(self, closings: List[PackClosingLine]) -> PrepareCloseResponse: ...

    @abstractmethod
    async def cancel_lottery(self, day_id: str) -> bool: ...


class LocalDraftsClient(DraftsClient):
    """In-process client acting as `actor`."""

    def __init__(
        self,
        actor: TokenData,
        session_factory: Optional[async_sessionmaker] = None,
        coordinator: Optional[LotteryClosingCoordinator] = None,
        finalizer: Optional[FinalizationOrchestrator] = None,
    ) -> None:
        self.actor = actor
        self.session_factory = session_factory
        self.coordinator = coordinator or LotteryClosingCoordinator()
        self.finalizer = finalizer or FinalizationOrchestrator(
            session_factory=session_factory, coordinator=self.coordinator
        )

    @staticmethod
    def _to_response(draft) -> Optional[DraftResponse]:
        return DraftResponse.model_validate(draft) if draft is not None else None

    async def get_active(self, scope_id: str) -> Optional[DraftResponse]:
        async with session_scope(self.session_factory) as db:
            return self._to_response(await CloseDraftsService.get_active(db, self.actor, scope_id))

    async def get(self, draft_id: str) -> Optional[DraftResponse]:
        async with session_scope(self.session_factory) as db:
            return self._to_response(await CloseDraftsService.get(db, self.actor, draft_id))

    async def create(
        self, scope_id: str, kind: DraftKind, business_date: Optional[date] = None
    ) -> DraftResponse:
        dto = CreateDraftDto(scope_id=scope_id, kind=kind, business_date=business_date)
        async with session_scope(self.session_factory) as db:
            return self._to_response(await CloseDraftsService.create(db, self.actor, dto))

    async def update(
        self, draft_id: str, payload: Dict[str, Any], version: int
    ) -> Union[DraftResponse, VersionConflict]:
        async with session_scope(self.session_factory) as db:
            result = await CloseDraftsService.update(db, self.actor, draft_id, payload, version)
            if isinstance(result, VersionConflict):
                return result
            return self._to_response(result)

    async def update_step_state(
        self, draft_id: str, marker: Optional[StepMarker]
    ) -> DraftResponse:
        async with session_scope(self.session_factory) as db:
            draft = await CloseDraftsService.update_step_state(db, self.actor, draft_id, marker)
            return self._to_response(draft)

    async def finalize(
        self, draft_id: str, closing_cash: Union[Decimal, float]
    ) -> FinalizeResponse:
        return await self.finalizer.finalize(self.actor, draft_id, closing_cash)

    async def expire(self, draft_id: str) -> DraftResponse:
        async with session_scope(self.session_factory) as db:
            return self._to_response(await CloseDraftsService.expire(db, self.actor, draft_id))

    async def prepare_lottery(self, closings: List[PackClosingLine]) -> PrepareCloseResponse:
        async with session_scope(self.session_factory) as db:
            return await self.coordinator.prepare(db, self.actor, closings, from_wizard=True)

    async def cancel_lottery(self, day_id: str) -> bool:
        async with session_scope(self.session_factory) as db:
            return await self.coordinator.cancel(db, self.actor, day_id)
