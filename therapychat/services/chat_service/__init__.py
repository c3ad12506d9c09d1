"""Chat Service - conversation orchestration.

Owns access decisions, conversation control state, mention routing,
message fan-out, unread tracking, notes and export. The composition
root lives in ``engine`` and the HTTP surface in ``handler``; neither is
imported here so the draft service can depend on this package.
"""
from .access_guard import AccessGuard
from .config import DEFAULT_TAG_REASONS, ChatConfig, TagReason, parse_tag_reasons
from .conversation_state import ALLOWED_STATUS_TRANSITIONS, ConversationState, Transition
from .export import ConversationExporter
from .mention_resolver import ALL_THERAPISTS, MentionResolver, RoutingDecision
from .message_router import MessageChange, MessageRouter, RoutingOutcome
from .notes import NoteResult, NoteService
from .unread_tracker import UnreadTracker

__all__ = [
    "ALL_THERAPISTS",
    "ALLOWED_STATUS_TRANSITIONS",
    "DEFAULT_TAG_REASONS",
    "AccessGuard",
    "ChatConfig",
    "ConversationExporter",
    "ConversationState",
    "MentionResolver",
    "MessageChange",
    "MessageRouter",
    "NoteResult",
    "NoteService",
    "RoutingDecision",
    "RoutingOutcome",
    "TagReason",
    "Transition",
    "UnreadTracker",
    "parse_tag_reasons",
]
