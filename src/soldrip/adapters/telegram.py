from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import httpx

from soldrip.security.redaction import sanitize_text
from soldrip.services.retry import RetryAttempt, retry_with_backoff_async
from soldrip.services.stats import RunSummary, render_summary

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class TelegramDeliveryError(RuntimeError):
    def __init__(self, message: str, *, retry_after: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TelegramNotifier:
    """Best-effort chat delivery; ``send`` never raises."""

    def __init__(
        self,
        *,
        bot_token: str | None,
        chat_id: str | None,
        enabled: bool = True,
        timeout_ms: int = 10_000,
        max_retry: int = 3,
        client: httpx.AsyncClient | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.enabled = enabled
        self.max_retry = max(0, max_retry)
        self._client = client or httpx.AsyncClient(
            base_url=TELEGRAM_API_URL, timeout=httpx.Timeout(timeout_ms / 1000.0)
        )
        self._sleep = sleep_fn

    @property
    def configured(self) -> bool:
        return bool(self.enabled and self.bot_token and self.chat_id)

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, text: str) -> None:
        try:
            response = await self._client.post(
                f"/bot{self.bot_token}/sendMessage",
                json={"chat_id": self.chat_id, "text": text, "parse_mode": "Markdown"},
            )
        except httpx.HTTPError as exc:
            raise TelegramDeliveryError(f"telegram request failed: {type(exc).__name__}") from exc
        if response.status_code >= 400:
            raise TelegramDeliveryError(
                f"telegram returned HTTP {response.status_code}: {response.text[:200]}",
                retry_after=response.headers.get("retry-after"),
            )

    async def send(self, text: str) -> bool:
        if not self.enabled:
            return False
        if not self.bot_token or not self.chat_id:
            logger.info("telegram_disabled_missing_credentials")
            return False

        def _on_retry(attempt: RetryAttempt) -> None:
            logger.info(
                "telegram_retry",
                extra={"extra": {"attempt": attempt.attempt, "delay_ms": attempt.delay_ms}},
            )

        try:
            await retry_with_backoff_async(
                lambda: self._post(text),
                max_attempts=self.max_retry + 1,
                base_delay_ms=1000,
                max_delay_ms=30_000,
                retry_on_exceptions=(TelegramDeliveryError,),
                on_retry=_on_retry,
                retry_after_getter=lambda exc: getattr(exc, "retry_after", None),
                sleep_fn=self._sleep,
            )
        except TelegramDeliveryError as exc:
            logger.warning(
                "telegram_send_failed",
                extra={"extra": {"error_message": sanitize_text(str(exc), known_secrets=[self.bot_token])}},
            )
            return False
        return True

    async def notify_summary(self, summary: RunSummary) -> None:
        await self.send(render_summary(summary))
