from fastapi import Request

from app.services.balance_service import BalanceVerifier
from app.services.factory import SettlementServices
from app.services.ledger_service import SettlementLedger
from app.services.reconciler import BridgeReconciler
from app.services.settlement_service import SettlementCoordinator


def get_services(request: Request) -> SettlementServices:
    """Services built at startup and kept on app.state."""
    return request.app.state.services


def get_ledger(request: Request) -> SettlementLedger:
    return get_services(request).ledger


def get_verifier(request: Request) -> BalanceVerifier:
    return get_services(request).verifier


def get_coordinator(request: Request) -> SettlementCoordinator:
    return get_services(request).coordinator


def get_reconciler(request: Request) -> BridgeReconciler:
    return get_services(request).reconciler
