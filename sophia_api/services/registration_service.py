"""Links chat-platform accounts to agents.

A user moves unregistered -> awaiting_email -> registered. The awaiting_email
step lives in a ``PendingRegistrationStore`` (process memory by default); a
restart mid-registration just restarts the flow. Registered users are
persisted as ``PlatformUser`` rows.
"""

import re
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from sophia_api.logging_config import get_logger
from sophia_api.models import Agent, PlatformUser
from sophia_api.schemas.inbound import InboundUpdate, Platform
from sophia_api.services.result import Result
from sophia_api.services.state_machine import RegistrationState, transition

logger = get_logger("registration_service")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MSG_EMAIL_PROMPT = (
    "👋 Welcome to Sophia AI!\n\n"
    "To get started, please reply with the email address you use as a registered agent."
)
MSG_INVALID_EMAIL = "That doesn't look like a valid email address. Please send it in the form name@example.com."
MSG_AGENT_NOT_FOUND = (
    "I couldn't find an active agent with that email address. "
    "Please check it and send any message to try again, or contact your administrator."
)
MSG_REGISTERED = (
    "✅ Registration successful! Welcome, {name}.\n\n"
    "You can ask me real-estate questions, run fee and tax calculations, "
    "prepare documents, or forward a message with:\n"
    "`forward to +35799123456: your message`"
)
MSG_REGISTRATION_CANCELLED = "Registration cancelled. Send any message when you want to start again."

CANCEL_WORDS = {"/cancel", "cancel"}


def is_valid_email(value: str) -> bool:
    return bool(value) and bool(EMAIL_PATTERN.match(value.strip()))


def normalize_email(value: str) -> str:
    return value.strip().lower()


@dataclass
class PendingRegistration:
    platform: str
    external_user_id: str
    chat_id: str
    started_at: float


class PendingRegistrationStore(ABC):
    """Holds users who were asked for their email and have not answered yet."""

    @abstractmethod
    def get(self, platform: str, external_user_id: str) -> Optional[PendingRegistration]:
        ...

    @abstractmethod
    def put(self, pending: PendingRegistration) -> None:
        ...

    @abstractmethod
    def clear(self, platform: str, external_user_id: str) -> None:
        ...

    def purge_expired(self) -> int:
        return 0


class InMemoryPendingRegistrationStore(PendingRegistrationStore):
    def __init__(self, ttl_seconds: float = 900.0, clock: Optional[Callable[[], float]] = None):
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time
        self._entries: dict[tuple[str, str], PendingRegistration] = {}

    def get(self, platform: str, external_user_id: str) -> Optional[PendingRegistration]:
        key = (platform, external_user_id)
        pending = self._entries.get(key)
        if pending and self._clock() - pending.started_at > self.ttl_seconds:
            self._entries.pop(key, None)
            return None
        return pending

    def put(self, pending: PendingRegistration) -> None:
        self._entries[(pending.platform, pending.external_user_id)] = pending

    def clear(self, platform: str, external_user_id: str) -> None:
        self._entries.pop((platform, external_user_id), None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, item in self._entries.items() if now - item.started_at > self.ttl_seconds]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class RegistrationOutcome:
    state: RegistrationState
    consumed: bool  # True when the message was used by registration and must not reach the router
    reply: Optional[str] = None
    platform_user: Optional[PlatformUser] = None


class RegistrationService:
    def __init__(self, pending_store: PendingRegistrationStore, clock: Optional[Callable[[], float]] = None):
        self.pending_store = pending_store
        self._clock = clock or time.time

    # --- lookups -------------------------------------------------------

    def get_platform_user(self, db: Session, platform: str, external_user_id: str) -> Optional[PlatformUser]:
        return (
            db.query(PlatformUser)
            .filter(
                PlatformUser.platform == platform,
                PlatformUser.external_user_id == external_user_id,
            )
            .first()
        )

    def find_agent_by_email(self, db: Session, email: str) -> Optional[Agent]:
        return (
            db.query(Agent)
            .filter(func.lower(Agent.email) == normalize_email(email), Agent.status == "active")
            .first()
        )

    def find_agent_by_phone(self, db: Session, phone: str) -> Optional[Agent]:
        if not phone:
            return None
        return db.query(Agent).filter(Agent.phone_number == phone, Agent.status == "active").first()

    def get_state(self, db: Session, platform: str, external_user_id: str) -> RegistrationState:
        user = self.get_platform_user(db, platform, external_user_id)
        if user is not None and user.is_active:
            return RegistrationState.REGISTERED
        if self.pending_store.get(platform, external_user_id):
            return RegistrationState.AWAITING_EMAIL
        return RegistrationState.UNREGISTERED

    # --- state machine -------------------------------------------------

    def handle(self, db: Session, update: InboundUpdate) -> RegistrationOutcome:
        """Advance registration for the sender of an update."""
        platform = update.platform.value
        user = self.get_platform_user(db, platform, update.sender_id)
        if user is not None and user.is_active:
            self.touch_last_active(db, user)
            return RegistrationOutcome(state=RegistrationState.REGISTERED, consumed=False, platform_user=user)

        pending = self.pending_store.get(platform, update.sender_id)
        if pending is None:
            return self._handle_unregistered(db, update)
        return self._handle_awaiting_email(db, update)

    def _handle_unregistered(self, db: Session, update: InboundUpdate) -> RegistrationOutcome:
        platform = update.platform.value

        if update.platform == Platform.WHATSAPP:
            agent = self.find_agent_by_phone(db, update.sender_id)
            if agent is not None:
                transition(RegistrationState.UNREGISTERED, RegistrationState.REGISTERED)
                user = self.register(db, update, agent)
                logger.info(
                    "WhatsApp sender linked by phone number",
                    extra={"context": {"agent_id": str(agent.id), "platform": platform}},
                )
                return RegistrationOutcome(state=RegistrationState.REGISTERED, consumed=False, platform_user=user)

        state = transition(RegistrationState.UNREGISTERED, RegistrationState.AWAITING_EMAIL)
        self.pending_store.put(
            PendingRegistration(
                platform=platform,
                external_user_id=update.sender_id,
                chat_id=update.chat_id,
                started_at=self._clock(),
            )
        )
        logger.info("Registration started", extra={"context": {"platform": platform}})
        return RegistrationOutcome(state=state, consumed=True, reply=MSG_EMAIL_PROMPT)

    def _handle_awaiting_email(self, db: Session, update: InboundUpdate) -> RegistrationOutcome:
        platform = update.platform.value
        text = (update.text or "").strip()

        if text.lower() in CANCEL_WORDS:
            self.pending_store.clear(platform, update.sender_id)
            state = transition(RegistrationState.AWAITING_EMAIL, RegistrationState.UNREGISTERED)
            return RegistrationOutcome(state=state, consumed=True, reply=MSG_REGISTRATION_CANCELLED)

        if not is_valid_email(text):
            return RegistrationOutcome(state=RegistrationState.AWAITING_EMAIL, consumed=True, reply=MSG_INVALID_EMAIL)

        agent = self.find_agent_by_email(db, text)
        if agent is None:
            self.pending_store.clear(platform, update.sender_id)
            state = transition(RegistrationState.AWAITING_EMAIL, RegistrationState.UNREGISTERED)
            logger.info("Registration email did not match an active agent", extra={"context": {"platform": platform}})
            return RegistrationOutcome(state=state, consumed=True, reply=MSG_AGENT_NOT_FOUND)

        state = transition(RegistrationState.AWAITING_EMAIL, RegistrationState.REGISTERED)
        user = self.register(db, update, agent)
        self.pending_store.clear(platform, update.sender_id)
        logger.info(
            "Registration completed",
            extra={"context": {"agent_id": str(agent.id), "platform": platform}},
        )
        name = agent.name or update.sender_name or "agent"
        return RegistrationOutcome(
            state=state,
            consumed=True,
            reply=MSG_REGISTERED.format(name=name),
            platform_user=user,
        )

    # --- persistence ---------------------------------------------------

    def register(self, db: Session, update: InboundUpdate, agent: Agent) -> PlatformUser:
        """Create the PlatformUser, or reactivate a previously deactivated one."""
        now = datetime.now(timezone.utc)
        user = self.get_platform_user(db, update.platform.value, update.sender_id)
        if user is None:
            user = PlatformUser(
                id=uuid.uuid4(),
                platform=update.platform.value,
                external_user_id=update.sender_id,
            )
            db.add(user)

        user.agent_id = agent.id
        user.chat_id = update.chat_id
        user.username = update.username
        user.display_name = update.sender_name
        user.is_active = True
        user.registered_at = now
        user.last_active_at = now
        db.commit()
        return user

    def touch_last_active(self, db: Session, user: PlatformUser) -> None:
        user.last_active_at = datetime.now(timezone.utc)
        try:
            db.commit()
        except Exception as e:
            db.rollback()
            logger.warning(
                "Failed to update last_active_at",
                extra={"context": {"platform_user_id": str(user.id), "error": str(e)}},
            )

    def unregister(self, db: Session, platform: str, external_user_id: str) -> Result[PlatformUser]:
        """Deactivate a registered user. Rows are never deleted."""
        user = self.get_platform_user(db, platform, external_user_id)
        if user is None or not user.is_active:
            return Result.failure("User is not registered", "not_registered")

        transition(RegistrationState.REGISTERED, RegistrationState.UNREGISTERED)
        user.is_active = False
        db.commit()
        logger.info("Platform user deactivated", extra={"context": {"platform_user_id": str(user.id)}})
        return Result.success(user)
