"""
Execution of approved transfer intents.

The backend (Conway credit transfer or Vultisig signing broker) is chosen once
when the executor is built. Preconditions (intent exists and is approved) are
raised as hard errors. Backend failures are written to the intent as a failed
execution record and then re-raised as ExecutionFailed.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Protocol

from . import metrics
from .config import Settings
from .intent_store import IntentStore
from .kv_store import LedgerTransaction, TransactionLedger
from .schemas import ExecutionBackendName, ExecutionRecord, IntentStatus, TransferIntent
from .vultisig_broker import VultisigBroker, create_vultisig_broker

logger = logging.getLogger(__name__)


class TreasuryError(Exception):
    pass


class IntentNotFound(TreasuryError):
    def __init__(self, intent_id: str):
        super().__init__(f"Transfer intent {intent_id} not found.")
        self.intent_id = intent_id


class IntentNotApproved(TreasuryError):
    def __init__(self, intent_id: str, status: IntentStatus):
        super().__init__(
            f"Transfer intent {intent_id} must be approved before execution (current: {status.value})."
        )
        self.intent_id = intent_id
        self.status = status


class ExecutionFailed(TreasuryError):
    def __init__(self, intent_id: str, message: str):
        super().__init__(message)
        self.intent_id = intent_id


@dataclass(frozen=True)
class CreditTransferResult:
    status: str
    transfer_id: Optional[str] = None


class ConwayClient(Protocol):
    async def transfer_credits(
        self, to_address: str, amount_cents: int, reason: Optional[str] = None
    ) -> CreditTransferResult:
        ...


@dataclass(frozen=True)
class BackendOutcome:
    ok: bool
    status: IntentStatus
    message: str
    detail: str
    transaction_ref: Optional[str] = None


class ExecutionBackend(ABC):
    name: ExecutionBackendName

    @abstractmethod
    async def submit(self, intent: TransferIntent) -> BackendOutcome:
        pass


class ConwayBackend(ExecutionBackend):
    name = ExecutionBackendName.CONWAY

    def __init__(self, client: ConwayClient):
        self.client = client

    async def submit(self, intent: TransferIntent) -> BackendOutcome:
        try:
            transfer = await self.client.transfer_credits(intent.to_address, intent.amount_cents, intent.reason)
        except Exception as e:
            logger.error("conway transfer failed for intent %s: %s", intent.id, e)
            return BackendOutcome(
                ok=False,
                status=IntentStatus.FAILED,
                message=f"Conway credit transfer failed: {e}",
                detail="failed",
            )
        status = IntentStatus.EXECUTED if transfer.status == "completed" else IntentStatus.SUBMITTED
        return BackendOutcome(
            ok=True,
            status=status,
            message=f"Conway credit transfer {transfer.status}",
            detail=transfer.status,
            transaction_ref=transfer.transfer_id or None,
        )


class VultisigBackend(ExecutionBackend):
    name = ExecutionBackendName.VULTISIG

    def __init__(self, broker: VultisigBroker):
        self.broker = broker

    async def submit(self, intent: TransferIntent) -> BackendOutcome:
        result = await self.broker.submit(intent)
        return BackendOutcome(
            ok=result.ok,
            status=IntentStatus.SUBMITTED if result.ok else IntentStatus.FAILED,
            message=result.message,
            detail=result.status,
            transaction_ref=result.transaction_ref,
        )


def create_execution_backend(settings: Settings, conway_client: Optional[ConwayClient] = None) -> ExecutionBackend:
    if settings.TREASURY_EXECUTION_BACKEND == ExecutionBackendName.CONWAY.value:
        if conway_client is None:
            raise ValueError("conway execution backend requires a Conway client")
        return ConwayBackend(conway_client)
    return VultisigBackend(create_vultisig_broker(settings.broker_config()))


class TransferExecutor:
    def __init__(self, store: IntentStore, ledger: TransactionLedger, backend: ExecutionBackend):
        self.store = store
        self.ledger = ledger
        self.backend = backend

    async def execute(self, intent_id: str, executed_by: str) -> TransferIntent:
        intent = await self.store.get_by_id(intent_id)
        if intent is None:
            raise IntentNotFound(intent_id)
        if intent.status != IntentStatus.APPROVED:
            raise IntentNotApproved(intent_id, intent.status)

        backend = self.backend.name
        outcome = await self.backend.submit(intent)
        record = ExecutionRecord(
            backend=backend,
            transaction_ref=outcome.transaction_ref,
            message=outcome.message,
            executed_by=executed_by,
        )
        updated = await self.store.set_execution(intent_id, outcome.status, record)
        metrics.executions_total.labels(backend=backend.value, status=outcome.status.value).inc()
        if updated is None:
            raise TreasuryError(f"Failed to update transfer intent {intent_id}.")

        if not outcome.ok:
            logger.error("transfer intent %s failed via %s: %s", intent_id, backend.value, outcome.message)
            raise ExecutionFailed(intent_id, outcome.message)

        await self.ledger.insert_transaction(
            LedgerTransaction(
                amount_cents=updated.amount_cents,
                description=f"Executed transfer intent {intent_id} via {backend.value} ({outcome.detail})",
            )
        )
        logger.info("transfer intent %s %s via %s", intent_id, updated.status.value, backend.value)
        return updated
