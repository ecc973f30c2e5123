"""
Vultisig signing broker.

Hands approved transfer intents to an out-of-process Vultisig signer, either by
dropping a JSON envelope into an outbox directory or by POSTing it to an HTTP
broker. This module never sees key material; it only shuttles signing requests.
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from .config import BrokerConfig
from .schemas import TransferIntent, utc_now_iso

logger = logging.getLogger(__name__)

OUTBOX_INSTRUCTIONS = (
    "Process with a Vultisig SDK/CLI worker and report the outcome back through "
    "the treasury confirm/fail operator actions."
)
TRANSACTION_REF_FIELDS = ("transactionRef", "txHash", "intentId")
MAX_ERROR_BODY = 300


@dataclass(frozen=True)
class BrokerResult:
    ok: bool
    status: str  # queued_external | submitted | failed
    message: str
    transaction_ref: Optional[str] = None


class VultisigBroker(ABC):
    def __init__(self, config: BrokerConfig):
        self.config = config

    @abstractmethod
    async def submit(self, intent: TransferIntent) -> BrokerResult:
        pass


class OutboxBroker(VultisigBroker):
    """Writes <intent id>.json into the outbox for an external signer to pick up."""

    def _write_envelope(self, intent: TransferIntent) -> str:
        outbox = Path(self.config.outbox_dir)
        outbox.mkdir(mode=0o700, parents=True, exist_ok=True)
        file_path = outbox / f"{intent.id}.json"
        envelope = {
            "submittedAt": utc_now_iso(),
            "intent": intent.to_payload(),
            "instructions": OUTBOX_INSTRUCTIONS,
            "vaultPolicyProfile": self.config.vault_policy_profile,
        }
        fd = os.open(file_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(envelope, fh, indent=2)
        return str(file_path)

    async def submit(self, intent: TransferIntent) -> BrokerResult:
        try:
            file_path = await asyncio.to_thread(self._write_envelope, intent)
        except OSError as e:
            logger.error("vultisig outbox write failed for intent %s: %s", intent.id, e)
            return BrokerResult(ok=False, status="failed", message=str(e) or "Failed writing Vultisig outbox file.")
        logger.info("intent %s queued for vultisig signer at %s", intent.id, file_path)
        return BrokerResult(
            ok=True,
            status="queued_external",
            transaction_ref=file_path,
            message=f"Queued for Vultisig processing: {file_path}",
        )


def extract_transaction_ref(body: str) -> Optional[str]:
    try:
        parsed = json.loads(body)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    for name in TRANSACTION_REF_FIELDS:
        value = parsed.get(name)
        if value:
            return str(value)
    return None


class HttpBroker(VultisigBroker):
    """POSTs {intent, vaultPolicyProfile} to the configured broker URL."""

    def __init__(self, config: BrokerConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config)
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"content-type": "application/json"}
        if self.config.broker_token:
            headers["authorization"] = f"Bearer {self.config.broker_token}"
        return headers

    async def submit(self, intent: TransferIntent) -> BrokerResult:
        if not self.config.broker_url:
            return BrokerResult(
                ok=False,
                status="failed",
                message="AUTOMATON_VULTISIG_BROKER_URL is required for http broker mode.",
            )

        body: Dict[str, Any] = {
            "intent": intent.to_payload(),
            "vaultPolicyProfile": self.config.vault_policy_profile,
        }
        timeout = self.config.request_timeout_ms / 1000.0
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await client.post(self.config.broker_url, json=body, headers=self._headers())
        except httpx.TimeoutException:
            logger.error("vultisig broker timed out after %dms for intent %s", self.config.request_timeout_ms, intent.id)
            return BrokerResult(
                ok=False,
                status="failed",
                message=f"Vultisig broker request timed out after {self.config.request_timeout_ms}ms.",
            )
        except httpx.HTTPError as e:
            logger.error("vultisig broker request failed for intent %s: %s", intent.id, e)
            return BrokerResult(ok=False, status="failed", message=str(e) or "Failed submitting to Vultisig broker.")

        text = resp.text
        if not resp.is_success:
            logger.warning("vultisig broker rejected intent %s: status=%s", intent.id, resp.status_code)
            return BrokerResult(
                ok=False,
                status="failed",
                message=f"Broker rejected intent ({resp.status_code}): {text[:MAX_ERROR_BODY]}",
            )

        return BrokerResult(
            ok=True,
            status="submitted",
            transaction_ref=extract_transaction_ref(text),
            message=text or "Submitted to external Vultisig broker.",
        )


def create_vultisig_broker(config: BrokerConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> VultisigBroker:
    if config.mode == "http":
        return HttpBroker(config, transport=transport)
    return OutboxBroker(config)
