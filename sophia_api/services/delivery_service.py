"""Outbound delivery with an outbound rate limit, retry and error classification.

Permanent errors (bad destination, bad credentials, permission denied) are
returned after one attempt. Anything else is transient and retried with
exponential backoff up to ``max_attempts``.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sophia_api.logging_config import get_logger, mask_identifier
from sophia_api.services.rate_limiter import Clock, RateLimiter, SleepFunc, acquire

logger = get_logger("delivery_service")


class DeliveryError(Exception):
    def __init__(self, message: str, permanent: bool = False, code: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message
        self.permanent = permanent
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class MessageSender(ABC):
    """One chat platform's send-message endpoint."""

    platform: str

    @property
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def send_text(self, target: str, text: str, parse_mode: Optional[str] = None) -> Optional[str]:
        """Send text and return the provider message id. Raises DeliveryError."""


class DeliveryStatus(str, Enum):
    SENT = "sent"
    NOT_ATTEMPTED = "not_attempted"
    FAILED_PERMANENT = "failed_permanent"
    FAILED_TRANSIENT = "failed_transient"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class DeliveryAttempt:
    attempt: int
    outcome: AttemptOutcome
    target: str  # masked
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class DeliveryResult:
    status: DeliveryStatus
    platform: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempts: list[DeliveryAttempt] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == DeliveryStatus.SENT

    @property
    def retries(self) -> int:
        return max(0, len(self.attempts) - 1)

    def describe(self) -> str:
        if self.status == DeliveryStatus.SENT:
            return f"sent after {len(self.attempts)} attempt(s)"
        if self.status == DeliveryStatus.NOT_ATTEMPTED:
            return f"not attempted: {self.error}"
        if self.status == DeliveryStatus.FAILED_PERMANENT:
            return f"failed permanently: {self.error}"
        return f"failed after {len(self.attempts)} attempts ({self.retries} retries): {self.error}"


class DeliveryService:
    def __init__(
        self,
        sender: MessageSender,
        outbound_limiter: Optional[RateLimiter] = None,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        timeout_seconds: float = 10.0,
        sleep: SleepFunc = asyncio.sleep,
        clock: Clock = time.time,
    ):
        self.sender = sender
        self.outbound_limiter = outbound_limiter
        self.max_attempts = max(1, max_attempts)
        self.base_delay_seconds = base_delay_seconds
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._clock = clock

    @property
    def platform(self) -> str:
        return self.sender.platform

    def backoff_delay(self, attempt: int) -> float:
        """Delay after a failed attempt: base, 2*base, 4*base, ..."""
        return self.base_delay_seconds * (2 ** (attempt - 1))

    async def send(self, target: str, text: str, parse_mode: Optional[str] = None) -> DeliveryResult:
        platform = self.platform
        masked = mask_identifier(target)

        if not target or not (text or "").strip():
            return DeliveryResult(status=DeliveryStatus.NOT_ATTEMPTED, platform=platform, error="Missing destination or message")
        if not self.sender.is_configured:
            logger.warning("Delivery skipped, sender not configured", extra={"context": {"platform": platform}})
            return DeliveryResult(status=DeliveryStatus.NOT_ATTEMPTED, platform=platform, error=f"{platform} sender is not configured")

        attempts: list[DeliveryAttempt] = []
        last_error: Optional[str] = None
        last_code: Optional[str] = None

        for attempt in range(1, self.max_attempts + 1):
            if self.outbound_limiter is not None:
                limit = await acquire(self.outbound_limiter, f"{platform}:outbound", sleep=self._sleep, clock=self._clock)
                if not limit.allowed:
                    error = "Outbound rate limit exceeded after waiting"
                    logger.warning(error, extra={"context": {"platform": platform, "target": masked}})
                    status = DeliveryStatus.NOT_ATTEMPTED if not attempts else DeliveryStatus.FAILED_TRANSIENT
                    return DeliveryResult(status=status, platform=platform, error=error, error_code="rate_limited", attempts=attempts)

            try:
                message_id = await asyncio.wait_for(
                    self.sender.send_text(target, text, parse_mode=parse_mode),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                last_error, last_code = f"Timed out after {self.timeout_seconds}s", "timeout"
                attempts.append(DeliveryAttempt(attempt, AttemptOutcome.TRANSIENT_FAILURE, masked, last_error))
            except DeliveryError as e:
                last_error, last_code = e.message, e.code
                if e.permanent:
                    attempts.append(DeliveryAttempt(attempt, AttemptOutcome.PERMANENT_FAILURE, masked, e.message))
                    logger.error(
                        "Delivery failed permanently",
                        extra={"context": {"platform": platform, "target": masked, "code": e.code, "error": e.message}},
                    )
                    return DeliveryResult(
                        status=DeliveryStatus.FAILED_PERMANENT,
                        platform=platform,
                        error=e.message,
                        error_code=e.code,
                        attempts=attempts,
                    )
                attempts.append(DeliveryAttempt(attempt, AttemptOutcome.TRANSIENT_FAILURE, masked, e.message))
            except Exception as e:
                last_error, last_code = str(e) or e.__class__.__name__, "network_error"
                attempts.append(DeliveryAttempt(attempt, AttemptOutcome.TRANSIENT_FAILURE, masked, last_error))
            else:
                attempts.append(DeliveryAttempt(attempt, AttemptOutcome.SUCCESS, masked))
                logger.info(
                    "Message delivered",
                    extra={
                        "context": {
                            "platform": platform,
                            "target": masked,
                            "message_id": message_id,
                            "attempts": attempt,
                        }
                    },
                )
                return DeliveryResult(status=DeliveryStatus.SENT, platform=platform, message_id=message_id, attempts=attempts)

            logger.warning(
                "Delivery attempt failed",
                extra={"context": {"platform": platform, "target": masked, "attempt": attempt, "error": last_error}},
            )
            if attempt < self.max_attempts:
                await self._sleep(self.backoff_delay(attempt))

        logger.error(
            "Delivery failed after retries",
            extra={"context": {"platform": platform, "target": masked, "attempts": len(attempts), "error": last_error}},
        )
        return DeliveryResult(
            status=DeliveryStatus.FAILED_TRANSIENT,
            platform=platform,
            error=last_error,
            error_code=last_code,
            attempts=attempts,
        )
