import uuid
from unittest.mock import Mock

from conftest import make_update

from sophia_api.models import Agent, PlatformUser
from sophia_api.schemas.inbound import Platform
from sophia_api.services.registration_service import (
    MSG_AGENT_NOT_FOUND,
    MSG_EMAIL_PROMPT,
    MSG_INVALID_EMAIL,
    MSG_REGISTRATION_CANCELLED,
    InMemoryPendingRegistrationStore,
    PendingRegistration,
    RegistrationService,
    is_valid_email,
)
from sophia_api.services.state_machine import RegistrationState


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _agent(email="maria@zyprus.com", name="Maria", phone="+35799123456"):
    return Agent(id=uuid.uuid4(), email=email, name=name, phone_number=phone, status="active")


def _service(user=None, agent_by_email=None, agent_by_phone=None, clock=None):
    clock = clock or FakeClock()
    service = RegistrationService(InMemoryPendingRegistrationStore(ttl_seconds=900, clock=clock), clock=clock)
    service.get_platform_user = Mock(return_value=user)
    service.find_agent_by_email = Mock(return_value=agent_by_email)
    service.find_agent_by_phone = Mock(return_value=agent_by_phone)
    return service


class TestEmailValidation:
    def test_valid(self):
        assert is_valid_email("agent@zyprus.com")
        assert is_valid_email("  agent.name+tag@mail.example.cy ")

    def test_invalid(self):
        assert not is_valid_email("")
        assert not is_valid_email("hello")
        assert not is_valid_email("agent@zyprus")
        assert not is_valid_email("a b@c.com")


class TestRegistrationFlow:
    def test_first_message_prompts_for_email(self, db_session):
        service = _service()

        outcome = service.handle(db_session, make_update("hi"))

        assert outcome.consumed is True
        assert outcome.state == RegistrationState.AWAITING_EMAIL
        assert outcome.reply == MSG_EMAIL_PROMPT
        assert service.get_state(db_session, "telegram", "111") == RegistrationState.AWAITING_EMAIL

    def test_invalid_email_stays_awaiting(self, db_session):
        service = _service()
        service.handle(db_session, make_update("hi"))

        outcome = service.handle(db_session, make_update("not an email"))

        assert outcome.consumed is True
        assert outcome.state == RegistrationState.AWAITING_EMAIL
        assert outcome.reply == MSG_INVALID_EMAIL

    def test_unknown_email_resets_to_unregistered(self, db_session):
        service = _service(agent_by_email=None)
        service.handle(db_session, make_update("hi"))

        outcome = service.handle(db_session, make_update("nobody@example.com"))

        assert outcome.state == RegistrationState.UNREGISTERED
        assert outcome.reply == MSG_AGENT_NOT_FOUND
        assert service.pending_store.get("telegram", "111") is None

    def test_known_email_registers(self, db_session):
        agent = _agent()
        service = _service(agent_by_email=agent)
        service.handle(db_session, make_update("hi"))

        outcome = service.handle(db_session, make_update("Maria@Zyprus.com"))

        assert outcome.consumed is True
        assert outcome.state == RegistrationState.REGISTERED
        assert "Registration successful" in outcome.reply
        assert "Maria" in outcome.reply
        user = outcome.platform_user
        assert user.agent_id == agent.id
        assert user.platform == "telegram"
        assert user.external_user_id == "111"
        assert user.is_active is True
        db_session.add.assert_called_once_with(user)
        db_session.commit.assert_called()
        assert len(service.pending_store) == 0

    def test_cancel_while_awaiting(self, db_session):
        service = _service()
        service.handle(db_session, make_update("hi"))

        outcome = service.handle(db_session, make_update("/cancel"))

        assert outcome.state == RegistrationState.UNREGISTERED
        assert outcome.reply == MSG_REGISTRATION_CANCELLED

    def test_registered_user_passes_through(self, db_session):
        user = PlatformUser(id=uuid.uuid4(), platform="telegram", external_user_id="111", is_active=True)
        service = _service(user=user)

        outcome = service.handle(db_session, make_update("what is the VAT on 300k?"))

        assert outcome.consumed is False
        assert outcome.state == RegistrationState.REGISTERED
        assert outcome.platform_user is user
        assert user.last_active_at is not None

    def test_deactivated_user_must_register_again(self, db_session):
        user = PlatformUser(id=uuid.uuid4(), platform="telegram", external_user_id="111", is_active=False)
        service = _service(user=user)

        outcome = service.handle(db_session, make_update("hi"))

        assert outcome.state == RegistrationState.AWAITING_EMAIL

    def test_whatsapp_sender_linked_by_phone(self, db_session):
        agent = _agent()
        service = _service(agent_by_phone=agent)

        outcome = service.handle(
            db_session, make_update("hello", platform=Platform.WHATSAPP, sender_id="+35799123456")
        )

        assert outcome.consumed is False
        assert outcome.state == RegistrationState.REGISTERED
        assert outcome.platform_user.agent_id == agent.id

    def test_whatsapp_unknown_phone_prompts_for_email(self, db_session):
        service = _service(agent_by_phone=None)

        outcome = service.handle(db_session, make_update("hello", platform=Platform.WHATSAPP, sender_id="+4470000"))

        assert outcome.consumed is True
        assert outcome.reply == MSG_EMAIL_PROMPT


class TestPendingStore:
    def test_pending_expires(self):
        clock = FakeClock()
        store = InMemoryPendingRegistrationStore(ttl_seconds=10, clock=clock)
        store.put(PendingRegistration("telegram", "1", "1", started_at=0))

        clock.now = 11

        assert store.get("telegram", "1") is None

    def test_purge_expired(self):
        clock = FakeClock()
        store = InMemoryPendingRegistrationStore(ttl_seconds=10, clock=clock)
        store.put(PendingRegistration("telegram", "1", "1", started_at=0))
        store.put(PendingRegistration("telegram", "2", "2", started_at=5))

        clock.now = 12

        assert store.purge_expired() == 1
        assert len(store) == 1


class TestUnregister:
    def test_deactivates(self, db_session):
        user = PlatformUser(id=uuid.uuid4(), platform="telegram", external_user_id="111", is_active=True)
        service = _service(user=user)

        result = service.unregister(db_session, "telegram", "111")

        assert result.ok
        assert user.is_active is False

    def test_not_registered(self, db_session):
        result = _service(user=None).unregister(db_session, "telegram", "111")
        assert result.error_code == "not_registered"
