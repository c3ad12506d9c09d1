"""Composition root: wires the store, collaborators and components.

``build_engine()`` with no arguments reads everything from the
environment. Tests pass their own store, notifier and responder.
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from therapychat.services.audit_service import AuditLogger, AuditRepository
from therapychat.services.draft_service import DraftWorkflow
from therapychat.services.llm_service import AIResponder, LLMConfig, create_responder
from therapychat.services.notification_service import (
    InMemoryNotificationQueue,
    KinesisNotificationDispatcher,
    NotificationConfig,
    NotificationDispatcher,
)
from therapychat.services.safety_service import (
    AlertService,
    SafetyConfig,
    SafetyEscalationPipeline,
)
from therapychat.shared.database import (
    ChatStore,
    InMemoryChatStore,
    PostgresChatStore,
    get_connection_manager,
)

from .access_guard import AccessGuard
from .config import ChatConfig
from .conversation_state import ConversationState
from .export import ConversationExporter
from .mention_resolver import MentionResolver
from .message_router import MessageRouter
from .notes import NoteService
from .unread_tracker import UnreadTracker

logger = logging.getLogger(__name__)


@dataclass
class TherapyChatEngine:
    store: ChatStore
    audit: AuditLogger
    notifier: NotificationDispatcher
    ai_responder: Optional[AIResponder]
    chat_config: ChatConfig
    safety_config: SafetyConfig
    guard: AccessGuard
    state: ConversationState
    resolver: MentionResolver
    alerts: AlertService
    escalation: SafetyEscalationPipeline
    router: MessageRouter
    tracker: UnreadTracker
    notes: NoteService
    exporter: ConversationExporter
    drafts: DraftWorkflow


def build_engine(
    store: Optional[ChatStore] = None,
    notifier: Optional[NotificationDispatcher] = None,
    ai_responder: Optional[AIResponder] = None,
    audit: Optional[AuditLogger] = None,
    chat_config: Optional[ChatConfig] = None,
    safety_config: Optional[SafetyConfig] = None,
    llm_config: Optional[LLMConfig] = None,
) -> TherapyChatEngine:
    """Build a fully wired engine.

    Args:
        store: Persistence backend; from THERAPY_STORE_BACKEND when omitted
        notifier: Notification queue; from NOTIFICATION_BACKEND when omitted
        ai_responder: AI collaborator; from LLMConfig when omitted, and
            None when no API key is configured
    """
    chat_config = chat_config or ChatConfig.from_env()
    safety_config = safety_config or SafetyConfig.from_env()
    llm_config = llm_config or LLMConfig.from_env()

    if store is None:
        store, audit_repository = _store_from_env()
        audit = audit or AuditLogger(repository=audit_repository)
    audit = audit or AuditLogger()

    if notifier is None:
        notifier = _notifier_from_env()
    if ai_responder is None:
        ai_responder = create_responder(llm_config)

    guard = AccessGuard(store)
    state = ConversationState(store, guard, audit, chat_config)
    resolver = MentionResolver(chat_config.tag_reasons, chat_config.tagging_enabled)
    alerts = AlertService(store, audit, safety_config.excerpt_length)
    escalation = SafetyEscalationPipeline(store, state, alerts, notifier, audit, safety_config)
    router = MessageRouter(
        store, guard, state, resolver, escalation, alerts, notifier, audit, ai_responder, chat_config
    )

    engine = TherapyChatEngine(
        store=store,
        audit=audit,
        notifier=notifier,
        ai_responder=ai_responder,
        chat_config=chat_config,
        safety_config=safety_config,
        guard=guard,
        state=state,
        resolver=resolver,
        alerts=alerts,
        escalation=escalation,
        router=router,
        tracker=UnreadTracker(store, guard, state, audit),
        notes=NoteService(store, guard, audit, ai_responder, llm_config.summary_instruction),
        exporter=ConversationExporter(store, guard, audit),
        drafts=DraftWorkflow(
            store, guard, router, audit, ai_responder,
            llm_config.draft_instruction, llm_config.draft_context,
        ),
    )

    logger.info(
        "THERAPY_CHAT_ENGINE_BUILT",
        extra={
            "store": type(store).__name__,
            "notifier": type(notifier).__name__,
            "ai_configured": ai_responder is not None,
            "danger_detection": safety_config.danger_detection_enabled,
        }
    )
    return engine


def _store_from_env():
    backend = os.getenv("THERAPY_STORE_BACKEND", "memory").lower()
    if backend == "postgres":
        manager = get_connection_manager()
        return PostgresChatStore(manager), AuditRepository(manager)
    if backend != "memory":
        raise ValueError(f"Unknown THERAPY_STORE_BACKEND: {backend}")
    logger.warning("IN_MEMORY_STORE_IN_USE", extra={"durable": False})
    return InMemoryChatStore(), None


def _notifier_from_env() -> NotificationDispatcher:
    config = NotificationConfig.from_env()
    backend = os.getenv("NOTIFICATION_BACKEND", "kinesis").lower()
    if backend == "memory":
        return InMemoryNotificationQueue(config)
    return KinesisNotificationDispatcher(config)
