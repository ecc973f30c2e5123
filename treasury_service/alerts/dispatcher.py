"""
Treasury alert dispatch.

Intent store mutations call enqueue(), which renders the message immediately
and puts it on a bounded asyncio.Queue without waiting. A separate notifier
loop drains the queue and pushes each message to Telegram. Delivery is best
effort: a full queue drops the alert, and send failures are logged, never
raised back into the mutation that triggered them.

When dedup is enabled, the fingerprints of sent alerts are kept under
ALERT_BOOKKEEPING_KEY so an identical alert inside the dedup window is not
sent twice.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from .. import metrics
from ..config import AlertConfig
from ..kv_store import KeyValueStore, MemoryKeyValueStore
from ..schemas import IntentStatus, TransferIntent, parse_iso
from .formatting import build_alert_message
from .telegram_notifier import TelegramNotifier

logger = logging.getLogger(__name__)

ALERT_BOOKKEEPING_KEY = "treasury.alerts.sent.v1"


@dataclass(frozen=True)
class QueuedAlert:
    event: str
    intent_id: str
    fingerprint: str
    text: str


def alert_fingerprint(event: str, intent: TransferIntent, previous_status: Optional[IntentStatus]) -> str:
    prev = IntentStatus(previous_status).value if previous_status is not None else "-"
    return f"{event}:{intent.id}:{prev}->{intent.status.value}"


class AlertDispatcher:
    def __init__(
        self,
        config: AlertConfig,
        notifier=None,
        kv: Optional[KeyValueStore] = None,
    ):
        self.config = config
        if notifier is None and config.active:
            notifier = TelegramNotifier(config.bot_token, config.chat_id, max_retries=config.max_retries)
        self.notifier = notifier
        self.kv = kv or MemoryKeyValueStore()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=config.queue_size)
        self._worker: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return self.config.enabled and self.notifier is not None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, event: str, intent: TransferIntent, previous_status: Optional[IntentStatus] = None) -> bool:
        if not self.enabled:
            return False
        alert = QueuedAlert(
            event=event,
            intent_id=intent.id,
            fingerprint=alert_fingerprint(event, intent, previous_status),
            text=build_alert_message(event, intent, previous_status, self.config.explorer_template),
        )
        try:
            self._queue.put_nowait(alert)
        except asyncio.QueueFull:
            logger.warning("treasury alert queue full; dropping %s alert for intent %s", event, intent.id)
            metrics.alerts_total.labels(result="dropped").inc()
            return False
        return True

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="treasury-alert-notifier")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def drain(self) -> None:
        """Wait until every queued alert has been handled."""
        if self._worker is not None and not self._worker.done():
            await self._queue.join()
            return
        while not self._queue.empty():
            alert = self._queue.get_nowait()
            try:
                await self._handle(alert)
            finally:
                self._queue.task_done()

    async def _run(self) -> None:
        while True:
            alert = await self._queue.get()
            try:
                await self._handle(alert)
            finally:
                self._queue.task_done()

    async def _handle(self, alert: QueuedAlert) -> None:
        try:
            await self._deliver(alert)
        except Exception:
            metrics.alerts_total.labels(result="failed").inc()
            logger.exception("treasury alert %s for intent %s failed", alert.event, alert.intent_id)

    async def _deliver(self, alert: QueuedAlert) -> None:
        if self.config.dedup_enabled and await self._recently_sent(alert.fingerprint):
            metrics.alerts_total.labels(result="deduplicated").inc()
            logger.debug("suppressing duplicate alert %s", alert.fingerprint)
            return
        result = await self.notifier.send(alert.text)
        if not result.get("ok"):
            metrics.alerts_total.labels(result="failed").inc()
            logger.warning("[treasury-alert] %s", result.get("error", "send failed"))
            return
        metrics.alerts_total.labels(result="sent").inc()
        if self.config.dedup_enabled:
            await self._remember(alert.fingerprint)

    # -- dedup bookkeeping ------------------------------------------------

    async def _load_sent(self) -> Dict[str, str]:
        raw = await self.kv.get(ALERT_BOOKKEEPING_KEY)
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def _window_start(self) -> datetime:
        return datetime.now(timezone.utc) - timedelta(seconds=self.config.dedup_window_seconds)

    async def _recently_sent(self, fingerprint: str) -> bool:
        sent_at = parse_iso((await self._load_sent()).get(fingerprint) or "")
        return sent_at is not None and sent_at >= self._window_start()

    async def _remember(self, fingerprint: str) -> None:
        cutoff = self._window_start()
        sent = {
            fp: at
            for fp, at in (await self._load_sent()).items()
            if (parse_iso(at) or cutoff) > cutoff
        }
        sent[fingerprint] = datetime.now(timezone.utc).isoformat()
        await self.kv.set(ALERT_BOOKKEEPING_KEY, json.dumps(sent))
