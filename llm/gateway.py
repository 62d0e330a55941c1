"""
llm/gateway.py — Remote reasoning gateway with timeout, retry and backoff.

Wraps a single outbound model call. Each attempt is bounded by a hard
timeout that cancels only the in-flight request; failures are classified and
fed to the pure :func:`decide_retry` policy, which picks between retrying
(sequentially, never in parallel) and failing fast.

Retry ladder::

    rate-limit / quota (429)      → fail fast, RateLimitedError
    service unavailable (503)     → retry after 3.0 s
    timeout / anything else       → retry after 1.5 s
    retries exhausted             → GatewayTimeoutError | ServiceUnavailableError
                                    | underlying error re-raised

The gateway knows nothing about the response schema — it returns raw text.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, NoReturn

from google.api_core import exceptions as google_exceptions

from core.config import GatewayConfig
from core.constants import C
from core.errors import (
    GatewayTimeoutError,
    GuardianError,
    RateLimitedError,
    ServiceUnavailableError,
)
from core.logger import get_logger

_log = get_logger()

#: Async callable performing one raw model call: ``await transport(parts) -> text``.
Transport = Callable[[list[dict[str, Any]]], Awaitable[str]]

SleepFn = Callable[[float], Awaitable[None]]


# ── Failure classification ────────────────────────────────────────────────────

class FailureKind(Enum):
    """Retry-relevant classification of a failed attempt."""

    GENERIC = "GENERIC"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"


_QUOTA_MARKERS: tuple[str, ...] = ("429", "Quota exceeded", "RESOURCE_EXHAUSTED")
_UNAVAILABLE_MARKERS: tuple[str, ...] = ("503", "Service Unavailable", "UNAVAILABLE")


def classify_failure(exc: BaseException) -> FailureKind:
    """
    Classify a failed attempt for the retry policy.

    Typed errors (Google API exceptions, the local taxonomy, timeouts) are
    recognised first; otherwise the message is scanned for status markers.
    """
    if isinstance(exc, (RateLimitedError, google_exceptions.ResourceExhausted,
                        google_exceptions.TooManyRequests)):
        return FailureKind.RATE_LIMITED
    if isinstance(exc, (ServiceUnavailableError, google_exceptions.ServiceUnavailable)):
        return FailureKind.SERVICE_UNAVAILABLE
    if isinstance(exc, (GatewayTimeoutError, asyncio.TimeoutError, TimeoutError,
                        google_exceptions.DeadlineExceeded)):
        return FailureKind.TIMEOUT

    message = str(exc)
    if any(marker in message for marker in _QUOTA_MARKERS):
        return FailureKind.RATE_LIMITED
    if any(marker in message for marker in _UNAVAILABLE_MARKERS):
        return FailureKind.SERVICE_UNAVAILABLE
    return FailureKind.GENERIC


# ── Retry policy (pure) ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry budget and backoff delays.

    Attributes:
        max_retries: Additional attempts after the first one.
        delay_s: Backoff before retrying a generic failure or timeout.
        service_unavailable_delay_s: Backoff before retrying a 503-class failure.
    """

    max_retries: int = C.GATEWAY_MAX_RETRIES
    delay_s: float = C.RETRY_DELAY_S
    service_unavailable_delay_s: float = C.SERVICE_UNAVAILABLE_DELAY_S

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            delay_s=config.retry_delay_s,
            service_unavailable_delay_s=config.service_unavailable_delay_s,
        )


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of :func:`decide_retry`: retry after ``delay_s`` seconds, or fail."""

    retry: bool
    delay_s: float = 0.0


def decide_retry(
    attempt: int,
    kind: FailureKind,
    policy: RetryPolicy = RetryPolicy(),
) -> RetryDecision:
    """
    Decide what to do after attempt number ``attempt`` (1-based) failed.

    Args:
        attempt: How many attempts have been made so far, including the failed one.
        kind: Classification of the failure.
        policy: Retry budget and delays.

    Returns:
        A :class:`RetryDecision`. Rate-limit failures never retry.
    """
    if kind is FailureKind.RATE_LIMITED:
        return RetryDecision(retry=False)
    if attempt > policy.max_retries:
        return RetryDecision(retry=False)
    if kind is FailureKind.SERVICE_UNAVAILABLE:
        return RetryDecision(retry=True, delay_s=policy.service_unavailable_delay_s)
    return RetryDecision(retry=True, delay_s=policy.delay_s)


# ── Gateway ───────────────────────────────────────────────────────────────────

class ReasoningGateway:
    """
    Single-call boundary to the remote reasoning model.

    Args:
        transport: Async callable performing one raw call.
        policy: Retry budget and delays.
        timeout_s: Hard per-attempt timeout in seconds.
        sleep: Awaitable sleep used for backoff (injectable for tests).
    """

    def __init__(
        self,
        transport: Transport,
        policy: RetryPolicy | None = None,
        timeout_s: float = C.GATEWAY_TIMEOUT_S,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._policy = policy or RetryPolicy()
        self._timeout_s = timeout_s
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: GatewayConfig, transport: Transport | None = None) -> "ReasoningGateway":
        """Build a gateway from config, defaulting to the Gemini transport."""
        if transport is None:
            transport = GeminiTransport(config.model_id, config.api_key)
        return cls(
            transport,
            policy=RetryPolicy.from_config(config),
            timeout_s=config.timeout_s,
        )

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def call(self, parts: list[dict[str, Any]]) -> str:
        """
        Perform the remote call, retrying per policy.

        Args:
            parts: Serialised request parts (text plus optional inline image).

        Returns:
            The model's raw text.

        Raises:
            RateLimitedError: On a quota/429 failure (no retry).
            GatewayTimeoutError: If the final attempt timed out.
            ServiceUnavailableError: If the final attempt was a 503-class failure.
            Exception: The final underlying failure, for anything else.
        """
        attempt = 0
        t_start = time.monotonic()
        while True:
            attempt += 1
            try:
                text = await asyncio.wait_for(self._transport(parts), timeout=self._timeout_s)
                if not isinstance(text, str) or not text.strip():
                    raise GuardianError("Empty text returned from model")
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                kind = classify_failure(exc)
                decision = decide_retry(attempt, kind, self._policy)
                _log.error("gateway", "call_failed", {
                    "timestamp_iso": datetime.now(tz=timezone.utc).isoformat(),
                    "message": str(exc) or type(exc).__name__,
                    "kind": kind.value,
                    "attempt": attempt,
                    "retries_left": max(0, self._policy.max_retries - attempt + 1),
                    "will_retry": decision.retry,
                })
                if decision.retry:
                    await self._sleep(decision.delay_s)
                    continue
                self._raise_terminal(exc, kind)
            else:
                _log.perf("gateway", "call_ok", (time.monotonic() - t_start) * 1000.0, {
                    "attempts": attempt,
                    "chars": len(text),
                })
                return text

    def _raise_terminal(self, exc: Exception, kind: FailureKind) -> NoReturn:
        """Raise the caller-facing error for a failure that will not be retried."""
        if isinstance(exc, (RateLimitedError, GatewayTimeoutError, ServiceUnavailableError)):
            raise exc
        if kind is FailureKind.RATE_LIMITED:
            raise RateLimitedError(str(exc)) from exc
        if kind is FailureKind.TIMEOUT:
            raise GatewayTimeoutError(
                f"Remote call timed out after {self._timeout_s:g}s",
                user_message=f"Gemini API request timed out after {self._timeout_s:g} seconds.",
            ) from exc
        if kind is FailureKind.SERVICE_UNAVAILABLE:
            raise ServiceUnavailableError(str(exc)) from exc
        raise exc


# ── Gemini transport ──────────────────────────────────────────────────────────

def _response_text(response: Any) -> str:
    """Extract text from a Gemini response, preferring the first candidate part."""
    if response is None:
        raise GuardianError("Invalid response from Gemini")
    candidates = getattr(response, "candidates", None) or []
    if candidates:
        content = getattr(candidates[0], "content", None)
        parts = getattr(content, "parts", None) or []
        if parts and getattr(parts[0], "text", ""):
            return parts[0].text
    return response.text


class GeminiTransport:
    """
    One raw ``generate_content`` call against a Gemini model.

    Args:
        model_id: Gemini model name (e.g. ``gemini-2.5-flash``).
        api_key: API key; an empty key fails at call time, not at startup.
    """

    def __init__(self, model_id: str, api_key: str) -> None:
        # Deferred import: the SDK is only needed when a real call is made
        import google.generativeai as genai  # type: ignore[import]

        if api_key:
            genai.configure(api_key=api_key)
        else:
            _log.warn("gateway", "api_key_missing", {"model_id": model_id})
        self._model = genai.GenerativeModel(model_id)
        self._model_id = model_id
        _log.info("gateway", "transport_ready", {"model_id": model_id})

    async def __call__(self, parts: list[dict[str, Any]]) -> str:
        response = await self._model.generate_content_async(
            [{"role": "user", "parts": parts}],
        )
        return _response_text(response)
