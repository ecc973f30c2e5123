import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

TELEGRAM_API_BASE = "https://api.telegram.org"


class TelegramNotifier:
    def __init__(
        self,
        token: str,
        chat_id: str,
        max_retries: int = 3,
        base_delay: float = 0.5,
        timeout: float = 10.0,
        api_base: str = TELEGRAM_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.token = token
        self.chat_id = chat_id
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.timeout = timeout
        self.api_base = api_base.rstrip("/")
        self._transport = transport
        self.logger = logger or logging.getLogger("treasury_service.telegram_notifier")

    @property
    def url(self) -> str:
        return f"{self.api_base}/bot{self.token}/sendMessage"

    async def send(self, text: str) -> Dict[str, Any]:
        """
        Sends a plain-text message via the Bot API sendMessage endpoint.
        Retries transport errors and 5xx with exponential backoff and honours
        429 retry_after. Never raises; returns {"ok": bool, ...}.
        """
        payload = {"chat_id": self.chat_id, "text": text, "disable_web_page_preview": True}
        attempt = 0
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            while attempt <= self.max_retries:
                try:
                    resp = await client.post(self.url, json=payload)
                    if resp.status_code == 429:
                        retry_after = _retry_after(resp)
                        self.logger.warning("Telegram rate limit for chat_id=%s, retrying in %ss", self.chat_id, retry_after)
                        await asyncio.sleep(retry_after)
                        attempt += 1
                        continue
                    if resp.status_code >= 500:
                        resp.raise_for_status()
                    if not resp.is_success:
                        error = f"Telegram sendMessage failed ({resp.status_code}): {resp.text[:300]}"
                        self.logger.error(error)
                        return {"ok": False, "status": resp.status_code, "error": error}
                    return {"ok": True, "status": resp.status_code}
                except (httpx.RequestError, httpx.HTTPStatusError) as e:
                    self.logger.error("Telegram send error for chat_id=%s: %s", self.chat_id, e)
                    if attempt >= self.max_retries:
                        return {"ok": False, "status": None, "error": str(e)}
                    await asyncio.sleep(self.base_delay * (2 ** attempt))
                    attempt += 1
        return {"ok": False, "status": 429, "skipped": True, "error": "Max retries exceeded"}


def _retry_after(resp: httpx.Response) -> float:
    try:
        return float(resp.json().get("parameters", {}).get("retry_after", 1))
    except (ValueError, AttributeError, TypeError):
        return 1.0
