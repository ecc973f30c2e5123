"""
Treasury service: the entry points agents and operators call.

transfer_credits()/fund_child() run a request through the spend policy and,
depending on the decision, block it, queue it for human approval, or
auto-approve (and optionally execute) it. The operator actions mirror the
creator CLI: approve, reject, execute, and confirm/fail for results reported
back by an external signer.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from . import metrics
from .logging_setup import close_logging, setup_logging
from .alerts import AlertDispatcher
from .config import Settings
from .executor import (
    ConwayClient,
    ExecutionFailed,
    IntentNotFound,
    TransferExecutor,
    create_execution_backend,
)
from .intent_store import IntentStore
from .kv_store import KeyValueStore, RedisKeyValueStore, TransactionLedger
from .policy import PolicyEvaluation, TransferRequest, evaluate_spend_policy
from .schemas import (
    ExecutionBackendName,
    ExecutionRecord,
    IntentSource,
    IntentStatus,
    PolicyDecision,
    RequestedBy,
    TransferIntent,
)
from .storage import SqlKeyValueStore, SqlTransactionLedger, create_engine_and_sessionmaker, init_models

logger = logging.getLogger(__name__)

DEFAULT_OPERATOR = "creator-cli"
DEFAULT_SIGNER = "vultisig-worker"


def _usd(cents: int) -> str:
    return f"${cents / 100:.2f}"


class TreasuryService:
    def __init__(
        self,
        settings: Settings,
        store: IntentStore,
        executor: TransferExecutor,
        alerts: Optional[AlertDispatcher] = None,
        engine=None,
    ):
        self.settings = settings
        self.policy_config = settings.policy_config()
        self.store = store
        self.executor = executor
        self.alerts = alerts
        self._engine = engine

    @property
    def backend_name(self) -> str:
        return self.executor.backend.name.value

    async def evaluate(self, to_address: str, amount_cents: int, balance_cents: int) -> PolicyEvaluation:
        spent = await self.store.sum_spend_last_24h()
        evaluation = evaluate_spend_policy(
            TransferRequest(
                to_address=to_address,
                amount_cents=amount_cents,
                balance_cents=balance_cents,
                spent_last_24h_cents=spent,
            ),
            self.policy_config,
        )
        metrics.policy_decisions_total.labels(decision=evaluation.decision.value).inc()
        return evaluation

    async def transfer_credits(
        self,
        to_address: str,
        amount_cents: int,
        reason: Optional[str] = None,
        *,
        balance_cents: int,
        source: IntentSource = IntentSource.TRANSFER_CREDITS,
        requested_by: RequestedBy = RequestedBy.AGENT,
        child_id: Optional[str] = None,
    ) -> str:
        evaluation = await self.evaluate(to_address, amount_cents, balance_cents)
        reasons = ", ".join(evaluation.reasons) or "none"

        if evaluation.decision == PolicyDecision.REJECT:
            logger.warning("transfer of %d cents to %s rejected by policy: %s", amount_cents, to_address, reasons)
            return f"Blocked: treasury policy rejected this transfer ({reasons})."

        has_reason = bool(reason and reason.strip())
        if evaluation.decision == PolicyDecision.REQUIRE_HUMAN and not has_reason:
            return (
                f"Blocked: human approval is required for this transfer ({reasons}). "
                "Provide a reason so the request can be queued for review."
            )

        status = (
            IntentStatus.APPROVED
            if evaluation.decision == PolicyDecision.AUTO_APPROVE
            else IntentStatus.PENDING_APPROVAL
        )
        intent = await self.store.append(
            TransferIntent(
                requested_by=requested_by,
                source=source,
                to_address=to_address,
                amount_cents=amount_cents,
                reason=reason.strip() if has_reason else None,
                child_id=child_id,
                status=status,
                policy=evaluation.snapshot,
            )
        )

        if status == IntentStatus.PENDING_APPROVAL:
            return (
                f"Transfer intent {intent.id} is pending human approval ({reasons}): "
                f"{_usd(amount_cents)} to {to_address}."
            )

        if not self.policy_config.auto_execute_approved:
            return (
                f"Transfer intent {intent.id} auto-approved: {_usd(amount_cents)} to {to_address}; "
                "awaiting execution."
            )

        try:
            executed = await self.executor.execute(intent.id, executed_by="treasury-policy")
        except ExecutionFailed as e:
            return f"Transfer intent {intent.id} auto-approved but execution via {self.backend_name} failed: {e}"
        message = executed.execution.message if executed.execution else "ok"
        return (
            f"Transfer intent {intent.id} auto-approved and processed via {self.backend_name}: "
            f"{executed.status.value} ({message})."
        )

    async def fund_child(
        self,
        child_id: str,
        to_address: str,
        amount_cents: int,
        reason: Optional[str] = None,
        *,
        balance_cents: int,
    ) -> str:
        return await self.transfer_credits(
            to_address,
            amount_cents,
            reason,
            balance_cents=balance_cents,
            source=IntentSource.FUND_CHILD,
            child_id=child_id,
        )

    # -- operator actions -------------------------------------------------

    async def list_intents(self, status: Optional[IntentStatus] = None, limit: int = 50) -> List[TransferIntent]:
        return await self.store.list(status=status, limit=max(1, min(500, limit)))

    async def approve(
        self,
        intent_id: str,
        approved_by: str = DEFAULT_OPERATOR,
        note: Optional[str] = None,
        execute: bool = False,
    ) -> TransferIntent:
        approved = await self.store.approve(intent_id, approved_by, note)
        if approved is None:
            raise IntentNotFound(intent_id)
        if not execute:
            return approved
        return await self.executor.execute(intent_id, executed_by=approved_by)

    async def reject(self, intent_id: str, reason: str, rejected_by: str = DEFAULT_OPERATOR) -> TransferIntent:
        if not reason or not reason.strip():
            raise ValueError("Reject requires a reason.")
        rejected = await self.store.reject(intent_id, rejected_by, reason.strip())
        if rejected is None:
            raise IntentNotFound(intent_id)
        return rejected

    async def execute(self, intent_id: str, executed_by: str = DEFAULT_OPERATOR) -> TransferIntent:
        return await self.executor.execute(intent_id, executed_by=executed_by)

    async def confirm(
        self,
        intent_id: str,
        transaction_ref: str,
        status: IntentStatus = IntentStatus.EXECUTED,
        message: Optional[str] = None,
        confirmed_by: str = DEFAULT_SIGNER,
    ) -> TransferIntent:
        """Record an external signer's confirmation of a transfer."""
        if not transaction_ref:
            raise ValueError("Confirm requires a transaction reference.")
        status = IntentStatus.SUBMITTED if IntentStatus(status) == IntentStatus.SUBMITTED else IntentStatus.EXECUTED
        intent = await self.store.get_by_id(intent_id)
        if intent is None:
            raise IntentNotFound(intent_id)
        if message is None:
            message = (
                "External signer confirmed execution."
                if status == IntentStatus.EXECUTED
                else "External signer accepted submission."
            )
        record = ExecutionRecord(
            backend=intent.execution.backend if intent.execution else ExecutionBackendName.VULTISIG,
            transaction_ref=transaction_ref,
            message=message,
            executed_by=confirmed_by,
        )
        updated = await self.store.set_execution(intent_id, status, record)
        if updated is None:
            raise IntentNotFound(intent_id)
        return updated

    async def fail(
        self,
        intent_id: str,
        reason: str,
        transaction_ref: Optional[str] = None,
        failed_by: str = DEFAULT_SIGNER,
    ) -> TransferIntent:
        if not reason or not reason.strip():
            raise ValueError("Fail requires a reason.")
        intent = await self.store.get_by_id(intent_id)
        if intent is None:
            raise IntentNotFound(intent_id)
        record = ExecutionRecord(
            backend=intent.execution.backend if intent.execution else ExecutionBackendName.VULTISIG,
            transaction_ref=transaction_ref,
            message=reason.strip(),
            executed_by=failed_by,
        )
        updated = await self.store.set_execution(intent_id, IntentStatus.FAILED, record)
        if updated is None:
            raise IntentNotFound(intent_id)
        return updated

    async def close(self) -> None:
        if self.alerts is not None:
            await self.alerts.stop()
        await self.store.kv.close()
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
        close_logging()


@dataclass
class _Persistence:
    kv: KeyValueStore
    ledger: TransactionLedger
    engine: object


async def _open_persistence(settings: Settings) -> _Persistence:
    engine, sessionmaker = await create_engine_and_sessionmaker(settings.TREASURY_DB_DSN)
    await init_models(engine)
    kv: KeyValueStore
    if settings.TREASURY_REDIS_URL:
        kv = RedisKeyValueStore(settings.TREASURY_REDIS_URL)
    else:
        kv = SqlKeyValueStore(sessionmaker)
    return _Persistence(kv=kv, ledger=SqlTransactionLedger(sessionmaker), engine=engine)


async def build_treasury_service(
    settings: Settings,
    conway_client: Optional[ConwayClient] = None,
    notifier=None,
    start_alerts: bool = True,
    configure_logging: bool = False,
) -> TreasuryService:
    """Wire the treasury components from one Settings object.

    configure_logging installs the package log handlers at LOG_LEVEL; the
    metrics endpoint is started only when METRICS_PORT is set.
    """
    if configure_logging:
        setup_logging(settings.LOG_LEVEL)
    metrics.start_metrics_server(settings.METRICS_PORT)
    persistence = await _open_persistence(settings)
    alerts = AlertDispatcher(settings.alert_config(), notifier=notifier, kv=persistence.kv)
    if start_alerts and alerts.enabled:
        alerts.start()
    store = IntentStore(persistence.kv, alerts=alerts)
    executor = TransferExecutor(store, persistence.ledger, create_execution_backend(settings, conway_client))
    service = TreasuryService(settings, store, executor, alerts=alerts, engine=persistence.engine)
    logger.info(
        "treasury service ready (backend=%s, policy_enabled=%s, alerts=%s)",
        service.backend_name,
        settings.TREASURY_POLICY_ENABLED,
        alerts.enabled,
    )
    return service
