from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Generic, TypeVar

from soldrip.domain.models import LegKind, RetryPolicy
from soldrip.security.redaction import sanitize_text
from soldrip.services.drip_errors import RetryExhaustedError, SafetyViolation

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int
    delay_ms: int
    error_type: str
    used_retry_after: bool = False


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    value: T
    attempts: int
    slippage_bps: int


def parse_retry_after_seconds(value: str | None) -> float | None:
    if value is None:
        return None
    candidate = value.strip()
    if not candidate:
        return None
    try:
        parsed = float(candidate)
        return parsed if parsed >= 0 else None
    except ValueError:
        pass
    try:
        parsed_dt = parsedate_to_datetime(candidate)
    except (TypeError, ValueError):
        return None
    now = datetime.now(UTC)
    if parsed_dt.tzinfo is None:
        parsed_dt = parsed_dt.replace(tzinfo=UTC)
    return max(0.0, (parsed_dt - now).total_seconds())


def _compute_delay_ms(
    *,
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    retry_after_s: float | None,
) -> tuple[int, bool]:
    if retry_after_s is not None:
        return min(max_delay_ms, int(retry_after_s * 1000)), True
    return min(max_delay_ms, base_delay_ms * (2 ** max(0, attempt - 1))), False


async def retry_with_backoff_async(  # noqa: UP047
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay_ms: int,
    max_delay_ms: int,
    retry_on_exceptions: Sequence[type[Exception]],
    on_retry: Callable[[RetryAttempt], None] | None = None,
    retry_after_getter: Callable[[Exception], str | None] | None = None,
    sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    retryable = tuple(retry_on_exceptions)

    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            if not isinstance(exc, retryable) or attempt >= max_attempts:
                raise
            retry_after_seconds = None
            if retry_after_getter is not None:
                retry_after_seconds = parse_retry_after_seconds(retry_after_getter(exc))
            delay_ms, used_retry_after = _compute_delay_ms(
                attempt=attempt,
                base_delay_ms=base_delay_ms,
                max_delay_ms=max_delay_ms,
                retry_after_s=retry_after_seconds,
            )
            if on_retry is not None:
                on_retry(
                    RetryAttempt(
                        attempt=attempt,
                        delay_ms=delay_ms,
                        error_type=type(exc).__name__,
                        used_retry_after=used_retry_after,
                    )
                )
            await sleep_fn(delay_ms / 1000.0)

    raise RuntimeError("retry loop exhausted unexpectedly")


class RetryExecutor:
    """Runs one swap leg with bounded attempts, exponential backoff and escalating slippage.

    The action receives the slippage tolerance for the current attempt; the trade size is fixed
    by the caller and never changes between attempts. Safety violations propagate immediately.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.policy = policy
        self._sleep = sleep_fn

    async def attempt(
        self,
        leg: LegKind,
        action: Callable[[int], Awaitable[T]],
        *,
        base_slippage_bps: int,
    ) -> RetryResult[T]:
        max_attempts = max(1, self.policy.attempts_for(leg))
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            slippage_bps = self.policy.slippage_for(attempt, base_slippage_bps)
            try:
                value = await action(slippage_bps)
            except SafetyViolation:
                raise
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                if attempt >= max_attempts:
                    break
                backoff_ms = self.policy.backoff_ms(attempt)
                next_slippage_bps = self.policy.slippage_for(attempt + 1, base_slippage_bps)
                logger.warning(
                    "leg_attempt_failed",
                    extra={
                        "extra": {
                            "leg": leg.value,
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "backoff_ms": backoff_ms,
                            "slippage_bps": slippage_bps,
                            "next_slippage_bps": next_slippage_bps,
                            "error_type": type(exc).__name__,
                        }
                    },
                )
                await self._sleep(backoff_ms / 1000.0)
                continue

            if attempt > 1:
                logger.info(
                    "leg_attempt_succeeded",
                    extra={"extra": {"leg": leg.value, "attempt": attempt, "slippage_bps": slippage_bps}},
                )
            return RetryResult(value=value, attempts=attempt, slippage_bps=slippage_bps)

        logger.error(
            "leg_attempts_exhausted",
            extra={
                "extra": {
                    "leg": leg.value,
                    "attempts": max_attempts,
                    "error_type": type(last_error).__name__ if last_error is not None else None,
                    "error_message": sanitize_text(str(last_error)) if last_error is not None else None,
                }
            },
        )
        raise RetryExhaustedError(leg, max_attempts, last_error) from last_error
