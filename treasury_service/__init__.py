"""
Treasury guardrails for agent-initiated fund transfers.

- policy.py: pure spend policy (auto_approve | require_human | reject)
- intent_store.py: durable transfer intent lifecycle over a key-value store
- executor.py: dispatch of approved intents to the Conway or Vultisig backend
- vultisig_broker.py: outbox / HTTP hand-off to an external signer
- alerts/: Telegram notifications for intent lifecycle events
- treasury.py: agent tool and operator entry points
"""

from .config import Settings, get_settings
from .executor import ExecutionFailed, IntentNotApproved, IntentNotFound, TransferExecutor, TreasuryError
from .intent_store import IntentStore, IntentStoreConflict
from .policy import PolicyEvaluation, TransferRequest, evaluate_spend_policy
from .schemas import IntentStatus, PolicyDecision, TransferIntent
from .treasury import TreasuryService, build_treasury_service

__all__ = [
    "Settings",
    "get_settings",
    "ExecutionFailed",
    "IntentNotApproved",
    "IntentNotFound",
    "TransferExecutor",
    "TreasuryError",
    "IntentStore",
    "IntentStoreConflict",
    "PolicyEvaluation",
    "TransferRequest",
    "evaluate_spend_policy",
    "IntentStatus",
    "PolicyDecision",
    "TransferIntent",
    "TreasuryService",
    "build_treasury_service",
]
