import re
from datetime import datetime, timezone
from typing import List, Optional

from ..schemas import IntentStatus, TransferIntent

REQUEST_CREATED = "request_created"
STATUS_CHANGED = "status_changed"

MAX_MESSAGE_LENGTH = 4000
MAX_REASON_LENGTH = 220

_TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")


def format_usd(cents: int) -> str:
    return f"${cents / 100:.2f}"


def trim_reason(reason: Optional[str], max_length: int = MAX_REASON_LENGTH) -> str:
    if not reason or not reason.strip():
        return "-"
    normalized = " ".join(reason.split())
    if len(normalized) <= max_length:
        return normalized
    return f"{normalized[: max_length - 1]}…"


def build_tx_link(tx_ref: Optional[str], template: str) -> Optional[str]:
    """Block explorer link for an on-chain tx hash; None for anything else."""
    if not tx_ref or not _TX_HASH_RE.match(tx_ref) or not template:
        return None
    if "{tx}" in template:
        return template.replace("{tx}", tx_ref)
    return f"{template.rstrip('/')}/{tx_ref}"


def build_alert_message(
    event: str,
    intent: TransferIntent,
    previous_status: Optional[IntentStatus] = None,
    explorer_template: str = "",
    now: Optional[datetime] = None,
) -> str:
    lines: List[str] = [
        "Automaton Treasury Alert",
        f"Event: {event}",
        f"Intent: {intent.id}",
        f"Amount: {format_usd(intent.amount_cents)}",
        f"To: {intent.to_address}",
        f"Source: {intent.source.value}",
        f"Requested By: {intent.requested_by.value}",
    ]

    if event == STATUS_CHANGED and previous_status is not None:
        lines.append(f"Status: {IntentStatus(previous_status).value} -> {intent.status.value}")
    else:
        lines.append(f"Status: {intent.status.value}")

    tx_ref = intent.execution.transaction_ref if intent.execution else None
    if tx_ref:
        lines.append(f"Tx Ref: {tx_ref}")
    tx_link = build_tx_link(tx_ref, explorer_template)
    if tx_link:
        lines.append(f"Tx Link: {tx_link}")
    if intent.child_id:
        lines.append(f"Child ID: {intent.child_id}")
    lines.append(f"Reason: {trim_reason(intent.reason)}")
    if intent.status == IntentStatus.PENDING_APPROVAL:
        lines.append(f"Action: /approve {intent.id} | /reject {intent.id} <reason>")
    lines.append(f"At: {(now or datetime.now(timezone.utc)).isoformat()}")

    message = "\n".join(lines)
    if len(message) <= MAX_MESSAGE_LENGTH:
        return message
    return f"{message[: MAX_MESSAGE_LENGTH - 3]}..."
