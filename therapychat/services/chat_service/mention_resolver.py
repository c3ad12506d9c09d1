"""MentionResolver: who is a patient message addressed to?

Two independent markers:
- ``@therapist`` or ``@<display name>`` addresses therapists. Each mention
  resolves on its own, to the full display name or to a first name only
  one assigned therapist carries. A mention that resolves to nobody, or
  to more than one therapist, sends the message to every assigned
  therapist rather than dropping anyone.
- ``#<topic>`` categorises the message against the configured tag
  reasons. Topics never suppress the AI on their own.

A mention only counts at the start of the text or after whitespace, so
email addresses are not mistaken for mentions.
"""
import re
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Sequence, Union

from therapychat.shared.models import TagUrgency, User

from .config import TagReason

ALL_THERAPISTS = "all"
BROADCAST_KEYWORDS = frozenset({"therapist", "therapists", "all"})

_MENTION = re.compile(r"(?<!\S)@([^\s@#]+)")
_TOPIC = re.compile(r"(?<!\S)#([\w\-]+)", re.UNICODE)
_TRAILING_PUNCTUATION = ".,;:!?)]}\"'"


@dataclass(frozen=True)
class RoutingDecision:
    """``directed_at`` is a set of therapist ids, ``"all"`` or None."""
    directed_at: Union[FrozenSet[str], str, None] = None
    topics: tuple = ()
    urgency: Optional[TagUrgency] = None
    unresolved_mentions: tuple = field(default=(), compare=False)

    @property
    def is_tagged(self) -> bool:
        return bool(self.directed_at)

    @property
    def is_broadcast(self) -> bool:
        return self.directed_at == ALL_THERAPISTS

    def recipients(self, roster: Sequence[User]) -> List[str]:
        """Resolve to concrete therapist ids against the roster."""
        if not self.directed_at:
            return []
        if self.is_broadcast:
            return [t.user_id for t in roster]
        return [t.user_id for t in roster if t.user_id in self.directed_at]

    def to_dict(self) -> dict:
        if self.is_broadcast or self.directed_at is None:
            directed = self.directed_at
        else:
            directed = sorted(self.directed_at)
        return {
            "directed_at": directed,
            "is_tagged": self.is_tagged,
            "topics": list(self.topics),
            "urgency": self.urgency.value if self.urgency else None,
        }


class MentionResolver:
    """Parses direct-address and topic markers out of message text."""

    def __init__(self, tag_reasons: Sequence[TagReason] = (), tagging_enabled: bool = True):
        self.tag_reasons = {reason.key.lower(): reason for reason in tag_reasons}
        self.tagging_enabled = tagging_enabled

    def resolve(self, text: str, roster: Sequence[User]) -> RoutingDecision:
        text = text or ""
        topics = self._topics(text)
        urgency = self._urgency(topics)

        if not self.tagging_enabled:
            return RoutingDecision(topics=tuple(topics), urgency=urgency)

        mentions = [
            (m.start(), m.group(1).rstrip(_TRAILING_PUNCTUATION))
            for m in _MENTION.finditer(text)
        ]
        mentions = [(start, token) for start, token in mentions if token]
        if not mentions:
            return RoutingDecision(topics=tuple(topics), urgency=urgency)

        if any(token.lower() in BROADCAST_KEYWORDS for _, token in mentions):
            return RoutingDecision(ALL_THERAPISTS, tuple(topics), urgency)

        matched = set()
        unresolved = []
        for start, token in mentions:
            therapist_id = self._resolve_mention(text, start, token, roster)
            if therapist_id is None:
                unresolved.append(token)
            else:
                matched.add(therapist_id)

        if matched and not unresolved:
            return RoutingDecision(frozenset(matched), tuple(topics), urgency)

        # Any unknown or ambiguous name: broadcast rather than drop the request
        return RoutingDecision(ALL_THERAPISTS, tuple(topics), urgency, tuple(unresolved))

    @staticmethod
    def _resolve_mention(text: str, start: int, token: str, roster: Sequence[User]) -> Optional[str]:
        """Full display name at this ``@``, else a first name unique on the roster."""
        following = text[start + 1:].lower()
        # Longest names first so "@Anna Maria" wins over "@Anna"
        for therapist in sorted(roster, key=lambda t: len(t.name), reverse=True):
            name = therapist.name.strip().lower()
            if name and re.match(re.escape(name) + r"(?![\w])", following):
                return therapist.user_id

        token = token.lower()
        candidates = [
            therapist.user_id for therapist in roster
            if therapist.name.strip() and therapist.name.strip().lower().split()[0] == token
        ]
        if len(candidates) == 1:
            return candidates[0]
        return None

    def _topics(self, text: str) -> List[str]:
        topics = []
        for match in _TOPIC.finditer(text):
            key = match.group(1).lower()
            if key in self.tag_reasons and key not in topics:
                topics.append(key)
        return topics

    def _urgency(self, topics: List[str]) -> Optional[TagUrgency]:
        levels = [self.tag_reasons[t].urgency for t in topics]
        if not levels:
            return None
        return max(levels, key=lambda u: u.rank)
