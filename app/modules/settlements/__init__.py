"""Settlements module"""

from .service import SettlementGateway, SettlementService

__all__ = ["SettlementGateway", "SettlementService"]
