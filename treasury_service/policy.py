"""
Treasury spend policy.

Pure decision function: (request, config) -> decision + reasons + snapshot.
No I/O and no state; callers read configuration and the trailing 24h spend
themselves and pass them in.

Rules are evaluated in a fixed order and can only escalate severity:
auto_approve -> require_human -> reject. Once a transfer is rejected no later
rule downgrades it; require_human reasons accumulate.
"""

from dataclasses import dataclass
from typing import List

from .config import PolicyConfig, normalize_address
from .schemas import PolicyDecision, PolicySnapshot


@dataclass(frozen=True)
class TransferRequest:
    to_address: str
    amount_cents: int
    balance_cents: int
    spent_last_24h_cents: int


@dataclass(frozen=True)
class PolicyEvaluation:
    decision: PolicyDecision
    reasons: List[str]
    snapshot: PolicySnapshot


def _escalate(current: PolicyDecision, target: PolicyDecision) -> PolicyDecision:
    if current == PolicyDecision.REJECT:
        return current
    return target


def evaluate_spend_policy(request: TransferRequest, config: PolicyConfig) -> PolicyEvaluation:
    reasons: List[str] = []
    allowlist_matched = normalize_address(request.to_address) in config.allowlisted_recipients
    projected_balance = request.balance_cents - request.amount_cents
    projected_spent = request.spent_last_24h_cents + request.amount_cents

    decision = PolicyDecision.AUTO_APPROVE

    if not config.enabled:
        reasons.append("policy_disabled")
    else:
        if request.amount_cents <= 0:
            decision = PolicyDecision.REJECT
            reasons.append("non_positive_amount")

        if request.amount_cents > config.hard_per_transfer_cents:
            decision = PolicyDecision.REJECT
            reasons.append("above_hard_per_transfer_limit")

        if projected_balance < config.min_reserve_cents:
            decision = PolicyDecision.REJECT
            reasons.append("below_min_reserve")

        if projected_spent > config.hard_daily_limit_cents:
            decision = _escalate(decision, PolicyDecision.REQUIRE_HUMAN)
            reasons.append("above_hard_daily_limit")

        if config.require_allowlist and not allowlist_matched:
            decision = _escalate(decision, PolicyDecision.REQUIRE_HUMAN)
            reasons.append("recipient_not_allowlisted")

        if decision == PolicyDecision.AUTO_APPROVE and request.amount_cents > config.auto_approve_max_cents:
            decision = PolicyDecision.REQUIRE_HUMAN
            reasons.append("above_auto_approve_threshold")

    snapshot = PolicySnapshot(
        enabled=config.enabled,
        decision=decision,
        reasons=tuple(reasons),
        require_allowlist=config.require_allowlist,
        allowlist_matched=allowlist_matched,
        projected_balance_cents=projected_balance,
        min_reserve_cents=config.min_reserve_cents,
        projected_spent_last_24h_cents=projected_spent,
        hard_daily_limit_cents=config.hard_daily_limit_cents,
        auto_approve_max_cents=config.auto_approve_max_cents,
        hard_per_transfer_cents=config.hard_per_transfer_cents,
    )
    return PolicyEvaluation(decision=decision, reasons=reasons, snapshot=snapshot)
