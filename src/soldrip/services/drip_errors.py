from __future__ import annotations

from enum import Enum

import httpx

from soldrip.domain.models import LegKind


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    SAFETY = "safety"
    EXHAUSTED = "exhausted"
    CONFIGURATION = "configuration"


class DripError(RuntimeError):
    kind: ErrorKind = ErrorKind.TRANSIENT


class ConfigurationError(DripError):
    """Raised when required runtime configuration is missing or invalid."""

    kind = ErrorKind.CONFIGURATION


class ProviderError(DripError):
    """A quote, swap, RPC, or confirmation call failed; retried per the leg policy."""

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        request_path: str | None = None,
        response_snippet: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.request_path = request_path
        self.response_snippet = response_snippet


class SafetyViolation(DripError):
    """Fund-state assumptions no longer hold; the run must stop without retrying."""

    kind = ErrorKind.SAFETY


class StateCorruptedError(SafetyViolation):
    pass


class RetryExhaustedError(DripError):
    kind = ErrorKind.EXHAUSTED

    def __init__(self, leg: LegKind, attempts: int, last_error: BaseException | None) -> None:
        detail = f"{type(last_error).__name__}: {last_error}" if last_error is not None else "n/a"
        super().__init__(f"Exhausted {attempts} attempts for {leg.value}: {detail}")
        self.leg = leg
        self.attempts = attempts
        self.last_error = last_error


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, DripError):
        return exc.kind
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        if int(exc.response.status_code) in {401, 403}:
            return ErrorKind.CONFIGURATION
        return ErrorKind.TRANSIENT
    if isinstance(exc, httpx.TransportError | TimeoutError):
        return ErrorKind.TRANSIENT
    return ErrorKind.TRANSIENT
