"""
Pydantic models for every signaling frame.

Frames are JSON objects tagged by ``type``.  Each kind is one model with a
literal discriminator; :func:`parse_message` validates an incoming frame
against the discriminated union so handlers only ever see known kinds.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Type, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel


class UnknownMessage(ValueError):
    """Raised when a frame does not match any known message kind."""


class SignalMessage(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    sender: Optional[str] = Field(default=None, alias="from")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def _record_id() -> Any:
    return Field(validation_alias=AliasChoices("_id", "id"), serialization_alias="_id")


# ---------------------------------------------------------------- presence


class JoinSession(SignalMessage):
    type: Literal["join-session"] = "join-session"
    session_id: str
    user_id: Optional[str] = None
    display_name: Optional[str] = None
    role: Optional[str] = None


class LeaveSession(SignalMessage):
    type: Literal["leave-session"] = "leave-session"
    session_id: str


class SessionJoined(SignalMessage):
    type: Literal["session-joined"] = "session-joined"
    session_id: str
    participants: List[Dict[str, Any]] = Field(default_factory=list)


class ParticipantJoined(SignalMessage):
    type: Literal["participant-joined"] = "participant-joined"
    user_id: str
    display_name: Optional[str] = None
    role: Optional[str] = None


class ParticipantLeft(SignalMessage):
    type: Literal["participant-left"] = "participant-left"
    user_id: str


# ---------------------------------------------------------------- negotiation


class WebRTCOffer(SignalMessage):
    type: Literal["webrtc-offer"] = "webrtc-offer"
    to: Optional[str] = None
    offer: Dict[str, Any]


class WebRTCAnswer(SignalMessage):
    type: Literal["webrtc-answer"] = "webrtc-answer"
    to: Optional[str] = None
    answer: Dict[str, Any]


class IceCandidate(SignalMessage):
    type: Literal["ice-candidate"] = "ice-candidate"
    to: Optional[str] = None
    candidate: Optional[Dict[str, Any]] = None


class UpdateMediaState(SignalMessage):
    type: Literal["update-media-state"] = "update-media-state"
    session_id: Optional[str] = None
    is_muted: Optional[bool] = None
    video_enabled: Optional[bool] = None
    screenshare_active: Optional[bool] = None


class ParticipantMediaChanged(SignalMessage):
    type: Literal["participant-media-changed"] = "participant-media-changed"
    user_id: str
    is_muted: Optional[bool] = None
    video_enabled: Optional[bool] = None
    screenshare_active: Optional[bool] = None


# ---------------------------------------------------------------- chat


class SendMessage(SignalMessage):
    type: Literal["send-message"] = "send-message"
    session_id: str
    content: str
    request_id: Optional[str] = None


class NewMessage(SignalMessage):
    type: Literal["new-message"] = "new-message"
    id: str = _record_id()
    sender_id: str
    sender_name: str = ""
    content: str
    message_type: str = "text"
    timestamp: Optional[Union[str, float]] = None
    reactions: Optional[List[Dict[str, Any]]] = None
    request_id: Optional[str] = None


class MessageSent(SignalMessage):
    type: Literal["message-sent"] = "message-sent"
    request_id: Optional[str] = None
    message_id: Optional[str] = None


class DeleteMessage(SignalMessage):
    type: Literal["delete-message"] = "delete-message"
    session_id: str
    message_id: str
    request_id: Optional[str] = None


class MessageDeleted(SignalMessage):
    type: Literal["message-deleted"] = "message-deleted"
    message_id: str
    request_id: Optional[str] = None


class MessageReactionAdded(SignalMessage):
    type: Literal["message-reaction-added"] = "message-reaction-added"
    message_id: str
    reactions: List[Dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------- Q&A


class AskQuestion(SignalMessage):
    type: Literal["ask-question"] = "ask-question"
    session_id: str
    content: str
    request_id: Optional[str] = None


class NewQuestion(SignalMessage):
    type: Literal["new-question"] = "new-question"
    id: str = _record_id()
    user_id: str
    asked_by_name: str = ""
    content: str
    upvotes: List[str] = Field(default_factory=list)
    is_answered: bool = False
    answer: Optional[str] = None
    answered_by: Optional[str] = None
    timestamp: Optional[Union[str, float]] = None
    request_id: Optional[str] = None


class QuestionAsked(SignalMessage):
    type: Literal["question-asked"] = "question-asked"
    request_id: Optional[str] = None
    question_id: Optional[str] = None


class AnswerQuestion(SignalMessage):
    type: Literal["answer-question"] = "answer-question"
    session_id: str
    question_id: str
    answer: str
    request_id: Optional[str] = None


class QuestionAnswered(SignalMessage):
    type: Literal["question-answered"] = "question-answered"
    question_id: str
    answer: str
    answered_by: Optional[str] = None
    request_id: Optional[str] = None


class AnswerSubmitted(SignalMessage):
    type: Literal["answer-submitted"] = "answer-submitted"
    request_id: Optional[str] = None
    question_id: Optional[str] = None


class UpvoteQuestion(SignalMessage):
    type: Literal["upvote-question"] = "upvote-question"
    session_id: str
    question_id: str
    user_id: str
    request_id: Optional[str] = None


class QuestionUpvoted(SignalMessage):
    type: Literal["question-upvoted"] = "question-upvoted"
    question_id: str
    upvotes: Optional[List[str]] = None
    user_id: Optional[str] = None
    request_id: Optional[str] = None


class DeleteQuestion(SignalMessage):
    type: Literal["delete-question"] = "delete-question"
    session_id: str
    question_id: str
    request_id: Optional[str] = None


class QuestionDeleted(SignalMessage):
    type: Literal["question-deleted"] = "question-deleted"
    question_id: str
    request_id: Optional[str] = None


# ---------------------------------------------------------------- polls


class CreatePoll(SignalMessage):
    type: Literal["create-poll"] = "create-poll"
    session_id: str
    question: str
    options: List[str]
    request_id: Optional[str] = None


class NewPoll(SignalMessage):
    type: Literal["new-poll"] = "new-poll"
    id: str = _record_id()
    question: str
    options: List[Dict[str, Any]] = Field(default_factory=list)
    is_active: bool = True
    request_id: Optional[str] = None


class PollCreated(SignalMessage):
    type: Literal["poll-created"] = "poll-created"
    request_id: Optional[str] = None
    poll_id: Optional[str] = None


class VotePoll(SignalMessage):
    type: Literal["vote-poll"] = "vote-poll"
    session_id: str
    poll_id: str
    answer: int
    request_id: Optional[str] = None


class PollUpdated(SignalMessage):
    type: Literal["poll-updated"] = "poll-updated"
    poll_id: str
    results: List[Dict[str, Any]] = Field(default_factory=list)
    respondent_count: int = 0
    is_active: Optional[bool] = None


class VoteRecorded(SignalMessage):
    type: Literal["vote-recorded"] = "vote-recorded"
    request_id: Optional[str] = None
    poll_id: Optional[str] = None


# ---------------------------------------------------------------- file transfer


class FileStart(SignalMessage):
    type: Literal["file-start"] = "file-start"
    id: str
    name: str
    size: int
    mime: str = "application/octet-stream"
    to: Optional[str] = None


class FileChunk(SignalMessage):
    type: Literal["file-chunk"] = "file-chunk"
    id: str
    index: int
    total: int
    chunk: str
    to: Optional[str] = None


class FileEnd(SignalMessage):
    type: Literal["file-end"] = "file-end"
    id: str
    to: Optional[str] = None


# ---------------------------------------------------------------- control


class Ping(SignalMessage):
    type: Literal["ping"] = "ping"
    ts: Optional[float] = None


class Pong(SignalMessage):
    type: Literal["pong"] = "pong"
    ts: Optional[float] = None


class ErrorMessage(SignalMessage):
    type: Literal["error"] = "error"
    code: Optional[str] = None
    message: Optional[str] = None
    request_id: Optional[str] = None


AnyMessage = Annotated[
    Union[
        JoinSession,
        LeaveSession,
        SessionJoined,
        ParticipantJoined,
        ParticipantLeft,
        WebRTCOffer,
        WebRTCAnswer,
        IceCandidate,
        UpdateMediaState,
        ParticipantMediaChanged,
        SendMessage,
        NewMessage,
        MessageSent,
        DeleteMessage,
        MessageDeleted,
        MessageReactionAdded,
        AskQuestion,
        NewQuestion,
        QuestionAsked,
        AnswerQuestion,
        QuestionAnswered,
        AnswerSubmitted,
        UpvoteQuestion,
        QuestionUpvoted,
        DeleteQuestion,
        QuestionDeleted,
        CreatePoll,
        NewPoll,
        PollCreated,
        VotePoll,
        PollUpdated,
        VoteRecorded,
        FileStart,
        FileChunk,
        FileEnd,
        Ping,
        Pong,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_ADAPTER: TypeAdapter[SignalMessage] = TypeAdapter(AnyMessage)

MESSAGE_TYPES: Dict[str, Type[SignalMessage]] = {
    model.model_fields["type"].default: model
    for model in SignalMessage.__subclasses__()
}


def parse_message(raw: Union[str, bytes, Dict[str, Any]]) -> SignalMessage:
    """
    Validate ``raw`` into its message model.

    Raises :class:`UnknownMessage` for frames with an unrecognised ``type``
    and :class:`pydantic.ValidationError` for known kinds with a bad shape.
    """

    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise UnknownMessage(f"frame is not JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise UnknownMessage("frame must be a JSON object")
    kind = raw.get("type")
    if kind not in MESSAGE_TYPES:
        raise UnknownMessage(f"unknown message type {kind!r}")
    return _ADAPTER.validate_python(raw)


__all__ = [
    "AnyMessage",
    "MESSAGE_TYPES",
    "SignalMessage",
    "UnknownMessage",
    "ValidationError",
    "parse_message",
] + [model.__name__ for model in SignalMessage.__subclasses__()]
