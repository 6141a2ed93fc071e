"""
Service wiring.

Everything stateful (database handle, RPC and HTTP clients, the ledger's
per-debt locks, the reconciler task) is created here once per application
and torn down with it.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.clients.bridge_client import CcipStatusClient
from app.clients.chain_client import ChainClient
from app.core.chains import ChainRegistry
from app.core.config import Settings
from app.repositories.debt_repo import DebtRepository
from app.services.balance_service import BalanceVerifier
from app.services.intent_service import PaymentIntentBuilder
from app.services.ledger_service import SettlementLedger
from app.services.reconciler import BridgeReconciler, ReconcilerPolicy
from app.services.settlement_service import SettlementCoordinator

logger = logging.getLogger(__name__)


@dataclass
class SettlementServices:
    registry: ChainRegistry
    chain_client: ChainClient
    bridge_client: CcipStatusClient
    ledger: SettlementLedger
    verifier: BalanceVerifier
    builder: PaymentIntentBuilder
    coordinator: SettlementCoordinator
    reconciler: BridgeReconciler

    async def aclose(self) -> None:
        await self.reconciler.stop()
        await self.bridge_client.aclose()
        await self.chain_client.aclose()


def build_services(settings: Settings, db: AsyncIOMotorDatabase) -> SettlementServices:
    registry = ChainRegistry.from_settings(settings.SETTLEMENT_CHAIN_ID, settings.RPC_URLS)
    chain_client = ChainClient(registry, timeout=settings.RPC_TIMEOUT_SECONDS)
    bridge_client = CcipStatusClient(
        settings.BRIDGE_STATUS_API_URL,
        timeout=settings.BRIDGE_QUERY_TIMEOUT_SECONDS
    )

    ledger = SettlementLedger(DebtRepository(db), max_retries=settings.LEDGER_MAX_RETRIES)
    verifier = BalanceVerifier(registry, chain_client)
    builder = PaymentIntentBuilder(registry)
    coordinator = SettlementCoordinator(
        registry,
        ledger,
        verifier,
        builder,
        chain_client,
        bridge_explorer_url=settings.BRIDGE_EXPLORER_URL,
        direct_confirmations=settings.DIRECT_TRANSFER_CONFIRMATIONS
    )
    reconciler = BridgeReconciler(
        coordinator,
        bridge_client,
        chain_client,
        ReconcilerPolicy(
            initial_delay=settings.RECONCILER_INITIAL_BACKOFF_SECONDS,
            max_delay=settings.RECONCILER_MAX_BACKOFF_SECONDS,
            backoff_factor=settings.RECONCILER_BACKOFF_FACTOR,
            ceiling=timedelta(hours=settings.RECONCILER_CEILING_HOURS),
            sweep_interval=settings.RECONCILER_SWEEP_INTERVAL_SECONDS,
            concurrency=settings.RECONCILER_CONCURRENCY
        )
    )

    logger.info(
        f"Settlement services ready: chains {', '.join(registry.chain_ids)}, "
        f"settling on {registry.settlement_chain.name}"
    )
    return SettlementServices(
        registry=registry,
        chain_client=chain_client,
        bridge_client=bridge_client,
        ledger=ledger,
        verifier=verifier,
        builder=builder,
        coordinator=coordinator,
        reconciler=reconciler
    )
