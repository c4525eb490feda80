from sophia_api.services.rate_limiter import InMemoryRateLimiter, RateLimitResult, RedisRateLimiter
from sophia_api.services.result import Result
from sophia_api.services.state_machine import (
    InvalidTransitionError,
    RegistrationState,
    SessionStatus,
    can_transition,
    transition,
)
