"""
Client-side records for a live session.

Every record here is a cache of hub-authoritative state.  ``from_payload``
constructors accept the camelCase wire shape; ``to_dict`` returns it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

HOST_ROLES = {"host", "organizer", "speaker", "moderator"}


class Role(str, Enum):
    HOST = "host"
    ATTENDEE = "attendee"

    @classmethod
    def parse(cls, value: object) -> "Role":
        return cls.HOST if str(value or "").lower() in HOST_ROLES else cls.ATTENDEE


class MessageKind(str, Enum):
    TEXT = "text"
    SYSTEM = "system"
    ANNOUNCEMENT = "announcement"

    @classmethod
    def parse(cls, value: object) -> "MessageKind":
        try:
            return cls(str(value or "text"))
        except ValueError:
            return cls.TEXT


def parse_timestamp(value: object) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(tz=timezone.utc)


@dataclass
class Participant:
    user_id: str
    display_name: str = ""
    role: Role = Role.ATTENDEE
    audio_enabled: bool = True
    video_enabled: bool = True
    screenshare_active: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Participant":
        user_id = str(payload.get("userId") or payload.get("user_id") or "")
        participant = cls(
            user_id=user_id,
            display_name=str(payload.get("displayName") or payload.get("userName") or user_id),
            role=Role.parse(payload.get("role")),
        )
        participant.apply_media_state(payload)
        return participant

    def apply_media_state(self, payload: Dict[str, Any]) -> bool:
        changed = False
        if payload.get("isMuted") is not None:
            enabled = not bool(payload["isMuted"])
            changed = changed or enabled != self.audio_enabled
            self.audio_enabled = enabled
        if payload.get("videoEnabled") is not None:
            enabled = bool(payload["videoEnabled"])
            changed = changed or enabled != self.video_enabled
            self.video_enabled = enabled
        if payload.get("screenshareActive") is not None:
            active = bool(payload["screenshareActive"])
            changed = changed or active != self.screenshare_active
            self.screenshare_active = active
        return changed

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "displayName": self.display_name,
            "role": self.role.value,
            "isMuted": not self.audio_enabled,
            "videoEnabled": self.video_enabled,
            "screenshareActive": self.screenshare_active,
        }


@dataclass
class Session:
    """Local cache of the session roster.  The relay owns membership."""

    session_id: str
    participants: Dict[str, Participant] = field(default_factory=dict)

    def upsert(self, participant: Participant) -> Participant:
        existing = self.participants.get(participant.user_id)
        if existing is None:
            self.participants[participant.user_id] = participant
            return participant
        existing.display_name = participant.display_name or existing.display_name
        existing.role = participant.role
        return existing

    def remove(self, user_id: str) -> Optional[Participant]:
        return self.participants.pop(user_id, None)

    def replace_all(self, participants: List[Participant]) -> None:
        self.participants = {item.user_id: item for item in participants}

    def ordered(self) -> List[Participant]:
        return list(self.participants.values())


@dataclass
class Reaction:
    emoji: str
    count: int = 0


@dataclass
class ChatMessage:
    id: str
    sender_id: str
    sender_name: str
    content: str
    kind: MessageKind = MessageKind.TEXT
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    reactions: Optional[List[Reaction]] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChatMessage":
        return cls(
            id=str(payload.get("_id") or payload.get("id") or ""),
            sender_id=str(payload.get("senderId") or ""),
            sender_name=str(payload.get("senderName") or ""),
            content=str(payload.get("content") or ""),
            kind=MessageKind.parse(payload.get("messageType") or payload.get("kind")),
            timestamp=parse_timestamp(payload.get("timestamp")),
            reactions=parse_reactions(payload.get("reactions")),
        )

    def to_dict(self) -> dict:
        return {
            "_id": self.id,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "content": self.content,
            "messageType": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
            "reactions": [
                {"emoji": item.emoji, "count": item.count} for item in self.reactions or []
            ],
        }


def parse_reactions(value: object) -> Optional[List[Reaction]]:
    if not isinstance(value, list):
        return None
    reactions: List[Reaction] = []
    for item in value:
        if isinstance(item, dict) and item.get("emoji"):
            reactions.append(Reaction(emoji=str(item["emoji"]), count=int(item.get("count") or 0)))
    return reactions


@dataclass
class Question:
    id: str
    asker_id: str
    content: str
    asker_name: str = ""
    is_answered: bool = False
    answer: Optional[str] = None
    answerer_id: Optional[str] = None
    upvoters: Set[str] = field(default_factory=set)
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Question":
        return cls(
            id=str(payload.get("_id") or payload.get("id") or ""),
            asker_id=str(payload.get("userId") or payload.get("askedBy") or ""),
            asker_name=str(payload.get("askedByName") or ""),
            content=str(payload.get("content") or ""),
            is_answered=bool(payload.get("isAnswered")),
            answer=payload.get("answer"),
            answerer_id=payload.get("answeredBy"),
            upvoters={str(item) for item in payload.get("upvotes") or []},
            timestamp=parse_timestamp(payload.get("timestamp")),
        )

    @property
    def upvote_count(self) -> int:
        return len(self.upvoters)

    def add_upvote(self, user_id: str) -> bool:
        if user_id in self.upvoters:
            return False
        self.upvoters.add(user_id)
        return True

    def to_dict(self) -> dict:
        return {
            "_id": self.id,
            "userId": self.asker_id,
            "askedByName": self.asker_name,
            "content": self.content,
            "isAnswered": self.is_answered,
            "answer": self.answer,
            "answeredBy": self.answerer_id,
            "upvotes": sorted(self.upvoters),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PollOption:
    index: int
    label: str
    votes: int = 0

    def to_dict(self) -> dict:
        return {"id": self.index, "text": self.label, "votes": self.votes}


@dataclass
class Poll:
    id: str
    question: str
    options: List[PollOption] = field(default_factory=list)
    is_active: bool = True
    has_current_user_voted: bool = False
    voters: Set[str] = field(default_factory=set)
    respondent_count: int = 0
    created_at: float = field(default_factory=time.time)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Poll":
        poll = cls(
            id=str(payload.get("_id") or payload.get("id") or ""),
            question=str(payload.get("question") or ""),
            is_active=bool(payload.get("isActive", True)),
            has_current_user_voted=bool(payload.get("userVoted")),
        )
        poll.options = parse_options(payload.get("options") or [])
        return poll

    @property
    def total_votes(self) -> int:
        return sum(option.votes for option in self.options)

    def option(self, index: int) -> Optional[PollOption]:
        for option in self.options:
            if option.index == index:
                return option
        return None

    def record_vote(self, voter_id: str, index: int) -> bool:
        """Count one vote for ``voter_id``.  Returns False if it was not counted."""

        option = self.option(index)
        if option is None or not self.is_active or voter_id in self.voters:
            return False
        self.voters.add(voter_id)
        option.votes += 1
        self.respondent_count += 1
        return True

    def retract_vote(self, voter_id: str, index: int) -> None:
        option = self.option(index)
        if option is None or voter_id not in self.voters:
            return
        self.voters.discard(voter_id)
        option.votes = max(0, option.votes - 1)
        self.respondent_count = max(0, self.respondent_count - 1)

    def apply_results(self, results: List[Dict[str, Any]], respondent_count: Optional[int] = None) -> None:
        self.options = parse_options(results)
        self.respondent_count = self.total_votes if respondent_count is None else int(respondent_count)

    def leading_option(self) -> Optional[PollOption]:
        if not self.options:
            return None
        return max(self.options, key=lambda option: option.votes)

    def to_dict(self) -> dict:
        return {
            "_id": self.id,
            "question": self.question,
            "options": [option.to_dict() for option in self.options],
            "isActive": self.is_active,
            "totalVotes": self.total_votes,
            "respondentCount": self.respondent_count,
            "userVoted": self.has_current_user_voted,
        }


def parse_options(raw: List[Any]) -> List[PollOption]:
    options: List[PollOption] = []
    for position, item in enumerate(raw):
        if isinstance(item, dict):
            index = item.get("id", item.get("index", position))
            label = item.get("text", item.get("label", ""))
            options.append(PollOption(index=int(index), label=str(label), votes=int(item.get("votes") or 0)))
        else:
            options.append(PollOption(index=position, label=str(item)))
    return options
