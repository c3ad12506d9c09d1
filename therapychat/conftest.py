"""Shared fixtures: a seeded in-memory clinic and a fully wired engine.

Clinic layout:
    group_a: patient pat_1 (Pat Morgan); therapists ther_1 (Anna Berg),
             ther_2 (Ben Stone)
    group_b: patient pat_2 (Sam Lee); therapist ther_3 (Cara Diaz)
    admin_1 sees everything
"""
from collections import deque
from typing import List, Optional

import pytest

from therapychat.services.audit_service import AuditLogger
from therapychat.services.chat_service.config import ChatConfig
from therapychat.services.chat_service.engine import build_engine
from therapychat.services.llm_service import AIReply, AIRequest, AIResponder, LLMConfig
from therapychat.services.notification_service import InMemoryNotificationQueue, NotificationConfig
from therapychat.services.safety_service import SafetyConfig
from therapychat.shared.database import InMemoryChatStore
from therapychat.shared.errors import UpstreamUnavailable
from therapychat.shared.models import ActorRole, User
from therapychat.shared.utils import configure_pii_salt


SAFE_PAYLOAD = {"danger_level": "none", "detected_concerns": []}


class ScriptedResponder(AIResponder):
    """Returns queued replies in order, then a default safe reply.

    Queue an exception instance to make the next call fail.
    """

    def __init__(self):
        self.script = deque()
        self.requests: List[AIRequest] = []

    def queue(self, text: str = "", safety_payload: Optional[dict] = None, error: Exception = None):
        self.script.append(error if error is not None else AIReply(
            text=text, safety_payload=safety_payload, model="scripted"
        ))

    def generate(self, request: AIRequest) -> AIReply:
        self.requests.append(request)
        if self.script:
            item = self.script.popleft()
            if isinstance(item, Exception):
                raise item
            return item
        return AIReply(
            text=f"Supportive reply #{len(self.requests)}",
            safety_payload=dict(SAFE_PAYLOAD),
            model="scripted",
        )

    def fail_next(self, message: str = "provider timeout"):
        self.queue(error=UpstreamUnavailable(message))


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def store():
    store = InMemoryChatStore()
    for user in (
        User("pat_1", "Pat Morgan", ActorRole.PATIENT, "pat@example.test", ("group_a",)),
        User("pat_2", "Sam Lee", ActorRole.PATIENT, "sam@example.test", ("group_b",)),
        User("ther_1", "Anna Berg", ActorRole.THERAPIST, "anna@clinic.test"),
        User("ther_2", "Ben Stone", ActorRole.THERAPIST, "ben@clinic.test"),
        User("ther_3", "Cara Diaz", ActorRole.THERAPIST, "cara@clinic.test"),
        User("admin_1", "Ada Admin", ActorRole.ADMIN, "admin@clinic.test"),
    ):
        store.save_user(user)
    store.set_therapist_assignments("ther_1", ["group_a"])
    store.set_therapist_assignments("ther_2", ["group_a"])
    store.set_therapist_assignments("ther_3", ["group_b"])
    return store


@pytest.fixture
def responder():
    return ScriptedResponder()


@pytest.fixture
def queue():
    return InMemoryNotificationQueue(NotificationConfig())


@pytest.fixture
def audit():
    return AuditLogger()


@pytest.fixture
def chat_config():
    return ChatConfig()


@pytest.fixture
def safety_config():
    return SafetyConfig(extra_notification_emails=("oncall@clinic.test",))


@pytest.fixture
def engine(store, queue, responder, audit, chat_config, safety_config):
    return build_engine(
        store=store,
        notifier=queue,
        ai_responder=responder,
        audit=audit,
        chat_config=chat_config,
        safety_config=safety_config,
        llm_config=LLMConfig(),
    )


@pytest.fixture
def patient(store):
    return store.get_user("pat_1").as_actor()


@pytest.fixture
def therapist(store):
    return store.get_user("ther_1").as_actor()


@pytest.fixture
def co_therapist(store):
    return store.get_user("ther_2").as_actor()


@pytest.fixture
def outsider(store):
    """Therapist assigned only to the other group."""
    return store.get_user("ther_3").as_actor()


@pytest.fixture
def admin(store):
    return store.get_user("admin_1").as_actor()


@pytest.fixture
def conversation(engine, patient):
    conversation, _ = engine.state.get_or_create(patient)
    return conversation
