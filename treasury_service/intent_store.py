"""
Durable transfer intent store.

All intents live in one JSON blob under a single key of a KeyValueStore:

    {"version": <int>, "intents": [<newest appended first>, ...]}

A bare JSON list (the legacy layout) is read as version 0. Every write is a
read-modify-write that commits with compare_and_set against the raw value it
read, so a concurrent writer in another process makes the write fail and the
cycle is retried instead of silently clobbering it. Within one process the
cycles are serialised by an asyncio.Lock.

The blob holds at most MAX_INTENTS entries; the oldest appended are dropped.
An unparseable blob reads as an empty store; a malformed entry is skipped
and the rest of the blob is kept.
"""

import asyncio
import copy
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from . import metrics
from .kv_store import KeyValueStore
from .schemas import (
    EXECUTION_STATUSES,
    SPENT_STATUSES,
    ApprovalRecord,
    ExecutionRecord,
    IntentStatus,
    RejectionRecord,
    TransferIntent,
    parse_iso,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

TRANSFER_INTENTS_KEY = "treasury.transfer_intents.v1"
MAX_INTENTS = 2000
MAX_WRITE_ATTEMPTS = 5
SPEND_WINDOW = timedelta(hours=24)

_intent = TypeAdapter(TransferIntent)

Mutator = Callable[[TransferIntent], TransferIntent]


class IntentStoreConflict(Exception):
    """Concurrent writers kept invalidating this store write."""


class IntentStore:
    def __init__(
        self,
        kv: KeyValueStore,
        alerts=None,
        max_intents: int = MAX_INTENTS,
        key: str = TRANSFER_INTENTS_KEY,
    ):
        self.kv = kv
        self.alerts = alerts
        self.max_intents = max_intents
        self.key = key
        self._lock = asyncio.Lock()

    # -- blob codec -------------------------------------------------------

    def _decode(self, raw: Optional[str]) -> Tuple[int, List[TransferIntent]]:
        if not raw:
            return 0, []
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("transfer intent blob %s is not valid JSON; treating as empty", self.key)
            return 0, []
        if isinstance(parsed, list):
            version, items = 0, parsed
        elif isinstance(parsed, dict) and isinstance(parsed.get("intents"), list):
            try:
                version = int(parsed.get("version") or 0)
            except (TypeError, ValueError):
                version = 0
            items = parsed["intents"]
        else:
            logger.warning("transfer intent blob %s has unexpected shape; treating as empty", self.key)
            return 0, []
        intents = []
        for item in items:
            try:
                intents.append(_intent.validate_python(item))
            except ValidationError as e:
                intent_id = item.get("id") if isinstance(item, dict) else None
                logger.warning(
                    "skipping invalid transfer intent %s in blob %s (%d errors)",
                    intent_id,
                    self.key,
                    e.error_count(),
                )
        return version, intents

    def _encode(self, version: int, intents: List[TransferIntent]) -> str:
        if len(intents) > self.max_intents:
            dropped = intents[self.max_intents:]
            pending = sum(1 for i in dropped if i.status == IntentStatus.PENDING_APPROVAL)
            logger.warning(
                "intent store over capacity: dropping %d oldest intents (%d pending approval)",
                len(dropped),
                pending,
            )
            intents = intents[: self.max_intents]
        return json.dumps({"version": version, "intents": [i.to_payload() for i in intents]})

    async def _read(self) -> Tuple[Optional[str], int, List[TransferIntent]]:
        raw = await self.kv.get(self.key)
        version, intents = self._decode(raw)
        return raw, version, intents

    async def _write_cycle(self, transform):
        """Run transform(intents) -> (new_intents | None, result) until it commits.

        transform must not have side effects: it is re-run against fresh data
        whenever another writer commits first. new_intents=None skips the write.
        """
        async with self._lock:
            for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
                raw, version, intents = await self._read()
                new_intents, result = transform(intents)
                if new_intents is None:
                    return result
                if await self.kv.compare_and_set(self.key, raw, self._encode(version + 1, new_intents)):
                    return result
                logger.warning("intent store write conflict on %s (attempt %d/%d)", self.key, attempt, MAX_WRITE_ATTEMPTS)
        raise IntentStoreConflict(f"gave up writing {self.key} after {MAX_WRITE_ATTEMPTS} attempts")

    def _notify(self, event: str, intent: TransferIntent, previous_status: Optional[IntentStatus] = None):
        if self.alerts is None:
            return
        try:
            self.alerts.enqueue(event, intent, previous_status=previous_status)
        except Exception:
            logger.exception("failed to queue %s alert for intent %s", event, intent.id)

    # -- queries ----------------------------------------------------------

    async def list(self, status: Optional[IntentStatus] = None, limit: int = 100) -> List[TransferIntent]:
        _, _, intents = await self._read()
        ordered = sorted(intents, key=lambda i: i.created_at, reverse=True)
        if status is not None:
            ordered = [i for i in ordered if i.status == status]
        return ordered[: max(1, limit)]

    async def get_by_id(self, intent_id: str) -> Optional[TransferIntent]:
        _, _, intents = await self._read()
        for intent in intents:
            if intent.id == intent_id:
                return intent
        return None

    async def sum_spend_last_24h(self, now: Optional[datetime] = None) -> int:
        """Sum of submitted/executed intents created in the trailing 24 hours.

        Windowed on created_at, not on execution time.
        """
        cutoff = (now or datetime.now(timezone.utc)) - SPEND_WINDOW
        _, _, intents = await self._read()
        total = 0
        for intent in intents:
            if intent.status not in SPENT_STATUSES:
                continue
            created = parse_iso(intent.created_at)
            if created is not None and created >= cutoff:
                total += intent.amount_cents
        return total

    # -- mutations --------------------------------------------------------

    async def append(self, intent: TransferIntent) -> TransferIntent:
        def transform(intents):
            return [intent] + [i for i in intents if i.id != intent.id], intent

        await self._write_cycle(transform)
        metrics.intents_created_total.labels(status=intent.status.value).inc()
        logger.info("transfer intent %s created (%s, %d cents)", intent.id, intent.status.value, intent.amount_cents)
        self._notify("request_created", intent)
        return intent

    async def update(self, intent_id: str, mutator: Mutator) -> Optional[TransferIntent]:
        def transform(intents):
            for index, current in enumerate(intents):
                if current.id != intent_id:
                    continue
                updated = mutator(current.model_copy(deep=True))
                updated.updated_at = utc_now_iso()
                next_intents = copy.copy(intents)
                next_intents[index] = updated
                return next_intents, (updated, current.status)
            return None, None

        outcome = await self._write_cycle(transform)
        if outcome is None:
            return None
        updated, previous_status = outcome
        if updated.status != previous_status:
            logger.info("transfer intent %s: %s -> %s", updated.id, previous_status.value, updated.status.value)
            self._notify("status_changed", updated, previous_status=previous_status)
        return updated

    async def approve(self, intent_id: str, approved_by: str, note: Optional[str] = None) -> Optional[TransferIntent]:
        def mutator(intent: TransferIntent) -> TransferIntent:
            # re-approving something already sent out leaves its status alone
            if intent.status not in (IntentStatus.EXECUTED, IntentStatus.SUBMITTED):
                intent.status = IntentStatus.APPROVED
            intent.approvals.append(ApprovalRecord(approved_by=approved_by, note=note))
            return intent

        return await self.update(intent_id, mutator)

    async def reject(self, intent_id: str, rejected_by: str, reason: str) -> Optional[TransferIntent]:
        rejection = RejectionRecord(rejected_by=rejected_by, reason=reason)

        def mutator(intent: TransferIntent) -> TransferIntent:
            intent.status = IntentStatus.REJECTED
            intent.rejection = rejection
            return intent

        return await self.update(intent_id, mutator)

    async def set_execution(
        self, intent_id: str, status: IntentStatus, record: ExecutionRecord
    ) -> Optional[TransferIntent]:
        status = IntentStatus(status)
        if status not in EXECUTION_STATUSES:
            raise ValueError(f"execution status must be submitted, executed or failed (got {status.value})")

        def mutator(intent: TransferIntent) -> TransferIntent:
            intent.status = status
            intent.execution = record
            return intent

        return await self.update(intent_id, mutator)
