"""
Treasury transfer intent schemas.

A TransferIntent is the persisted record of one proposed outbound transfer.
Its policy snapshot is captured when the intent is created and is never
recomputed afterwards, even if the spend thresholds change later.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    # Fixed +00:00 offset keeps created_at lexicographically sortable
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def parse_iso(value: str) -> Optional[datetime]:
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class IntentStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUBMITTED = "submitted"
    EXECUTED = "executed"
    FAILED = "failed"


EXECUTION_STATUSES = (IntentStatus.SUBMITTED, IntentStatus.EXECUTED, IntentStatus.FAILED)
SPENT_STATUSES = (IntentStatus.SUBMITTED, IntentStatus.EXECUTED)


class IntentSource(str, Enum):
    TRANSFER_CREDITS = "transfer_credits"
    FUND_CHILD = "fund_child"
    CLI = "cli"
    SYSTEM = "system"


class RequestedBy(str, Enum):
    AGENT = "agent"
    HUMAN = "human"


class PolicyDecision(str, Enum):
    AUTO_APPROVE = "auto_approve"
    REQUIRE_HUMAN = "require_human"
    REJECT = "reject"


class ExecutionBackendName(str, Enum):
    CONWAY = "conway"
    VULTISIG = "vultisig"


class CamelModel(BaseModel):
    """Serialises with camelCase keys, the layout external signers read; accepts either case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PolicySnapshot(CamelModel):
    """Inputs and thresholds the spend policy used for one decision."""

    model_config = ConfigDict(frozen=True)

    enabled: bool
    decision: PolicyDecision
    reasons: Tuple[str, ...] = ()
    require_allowlist: bool
    allowlist_matched: bool
    projected_balance_cents: int
    min_reserve_cents: int
    projected_spent_last_24h_cents: int = Field(alias="projectedSpentLast24hCents")
    hard_daily_limit_cents: int
    auto_approve_max_cents: int
    hard_per_transfer_cents: int


class ApprovalRecord(CamelModel):
    approved_by: str
    note: Optional[str] = None
    at: str = Field(default_factory=utc_now_iso)


class RejectionRecord(CamelModel):
    rejected_by: str
    reason: str
    at: str = Field(default_factory=utc_now_iso)


class ExecutionRecord(CamelModel):
    backend: ExecutionBackendName
    transaction_ref: Optional[str] = None
    message: str
    executed_by: str
    executed_at: str = Field(default_factory=utc_now_iso)


class TransferIntent(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    requested_by: RequestedBy = RequestedBy.AGENT
    source: IntentSource = IntentSource.TRANSFER_CREDITS
    to_address: str
    amount_cents: int
    reason: Optional[str] = None
    child_id: Optional[str] = None
    status: IntentStatus
    policy: PolicySnapshot
    approvals: List[ApprovalRecord] = Field(default_factory=list)
    rejection: Optional[RejectionRecord] = None
    execution: Optional[ExecutionRecord] = None

    def to_payload(self) -> dict:
        """JSON-ready dict, as persisted and as handed to external signers."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


__all__ = [
    "IntentStatus",
    "IntentSource",
    "RequestedBy",
    "PolicyDecision",
    "ExecutionBackendName",
    "PolicySnapshot",
    "ApprovalRecord",
    "RejectionRecord",
    "ExecutionRecord",
    "TransferIntent",
    "EXECUTION_STATUSES",
    "SPENT_STATUSES",
    "utc_now_iso",
    "parse_iso",
]
