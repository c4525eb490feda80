import asyncio
from unittest.mock import AsyncMock

from conftest import FakeSender

from sophia_api.services.delivery_service import AttemptOutcome, DeliveryError, DeliveryService, DeliveryStatus
from sophia_api.services.rate_limiter import InMemoryRateLimiter


def _service(sender, **kwargs):
    kwargs.setdefault("sleep", AsyncMock())
    return DeliveryService(sender, **kwargs)


class TestDeliverySuccess:
    def test_sent_first_attempt(self):
        sender = FakeSender()
        result = asyncio.run(_service(sender).send("12345", "Hello", parse_mode="Markdown"))

        assert result.success
        assert result.status == DeliveryStatus.SENT
        assert result.message_id == "msg-1"
        assert result.retries == 0
        assert sender.sent == [("12345", "Hello", "Markdown")]

    def test_attempt_target_is_masked(self):
        result = asyncio.run(_service(FakeSender("whatsapp")).send("+35799123456", "Hi"))
        assert result.attempts[0].target == "+357991XXXXX"


class TestRetries:
    def test_transient_error_retried_with_backoff(self):
        sleep = AsyncMock()
        sender = FakeSender(errors=[DeliveryError("Too Many Requests", code="rate_limited"), ConnectionError("reset")])
        service = _service(sender, sleep=sleep, base_delay_seconds=1.0)

        result = asyncio.run(service.send("1", "Hi"))

        assert result.success
        assert len(result.attempts) == 3
        assert result.retries == 2
        assert [a.outcome for a in result.attempts] == [
            AttemptOutcome.TRANSIENT_FAILURE,
            AttemptOutcome.TRANSIENT_FAILURE,
            AttemptOutcome.SUCCESS,
        ]
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    def test_transient_failures_exhaust_attempts(self):
        sleep = AsyncMock()
        sender = FakeSender(errors=[DeliveryError("bad gateway")] * 3)

        result = asyncio.run(_service(sender, sleep=sleep, max_attempts=3).send("1", "Hi"))

        assert result.status == DeliveryStatus.FAILED_TRANSIENT
        assert len(result.attempts) == 3
        assert sleep.await_count == 2
        assert "3 attempts" in result.describe()

    def test_permanent_error_not_retried(self, permanent_error):
        sleep = AsyncMock()
        sender = FakeSender(errors=[permanent_error])

        result = asyncio.run(_service(sender, sleep=sleep).send("1", "Hi"))

        assert result.status == DeliveryStatus.FAILED_PERMANENT
        assert result.error_code == "bad_request"
        assert len(result.attempts) == 1
        sleep.assert_not_awaited()

    def test_timeout_is_transient(self):
        class SlowSender(FakeSender):
            async def send_text(self, target, text, parse_mode=None):
                await asyncio.sleep(1)

        result = asyncio.run(_service(SlowSender(), max_attempts=1, timeout_seconds=0.01).send("1", "Hi"))

        assert result.status == DeliveryStatus.FAILED_TRANSIENT
        assert result.error_code == "timeout"

    def test_backoff_delay(self):
        service = _service(FakeSender(), base_delay_seconds=0.5)
        assert [service.backoff_delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]


class TestNotAttempted:
    def test_empty_text(self):
        sender = FakeSender()
        result = asyncio.run(_service(sender).send("1", "   "))
        assert result.status == DeliveryStatus.NOT_ATTEMPTED
        assert sender.sent == []

    def test_missing_target(self):
        result = asyncio.run(_service(FakeSender()).send("", "Hi"))
        assert result.status == DeliveryStatus.NOT_ATTEMPTED

    def test_unconfigured_sender(self):
        result = asyncio.run(_service(FakeSender(configured=False)).send("1", "Hi"))
        assert result.status == DeliveryStatus.NOT_ATTEMPTED
        assert "not configured" in result.error


class TestOutboundLimit:
    def test_waits_for_window_then_sends(self):
        now = [0.0]

        def clock():
            return now[0]

        async def sleep(seconds):
            now[0] += seconds

        limiter = InMemoryRateLimiter(max_requests=1, window_seconds=1, clock=clock)
        sender = FakeSender()
        service = DeliveryService(sender, outbound_limiter=limiter, sleep=sleep, clock=clock)

        first = asyncio.run(service.send("1", "one"))
        second = asyncio.run(service.send("1", "two"))

        assert first.success and second.success
        assert now[0] == 1.0

    def test_still_capped_after_wait_is_not_attempted(self):
        limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60, clock=lambda: 0.0)
        limiter.check("telegram:outbound")
        sender = FakeSender()
        service = DeliveryService(sender, outbound_limiter=limiter, sleep=AsyncMock(), clock=lambda: 0.0)

        result = asyncio.run(service.send("1", "Hi"))

        assert result.status == DeliveryStatus.NOT_ATTEMPTED
        assert result.error_code == "rate_limited"
        assert sender.sent == []
