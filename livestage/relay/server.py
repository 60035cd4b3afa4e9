"""
Development relay.

A FastAPI WebSocket hub that fans signaling frames out to the members of a
session and keeps chat, Q&A and poll state in memory so confirmations and
push events carry authoritative ids.  Nothing is persisted; a session's
state disappears with its last member.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..models import ChatMessage, Participant, Poll, PollOption, Question, Role
from ..signaling import messages
from ..signaling.messages import SignalMessage, UnknownMessage, ValidationError, parse_message

LOG = logging.getLogger(__name__)

AUTH_CLOSE_CODE = 4401
FORWARDED = (
    messages.WebRTCOffer,
    messages.WebRTCAnswer,
    messages.IceCandidate,
    messages.FileStart,
    messages.FileChunk,
    messages.FileEnd,
)


@dataclass
class Room:
    """In-memory state of one live session."""

    session_id: str
    connections: Dict[str, "RelayConnection"] = field(default_factory=dict)
    chat: Dict[str, ChatMessage] = field(default_factory=dict)
    questions: Dict[str, Question] = field(default_factory=dict)
    polls: Dict[str, Poll] = field(default_factory=dict)

    def roster(self) -> List[dict]:
        return [connection.participant.to_dict() for connection in self.connections.values()]


class RelayConnection:
    """Per-socket state with receive, send and keepalive loops."""

    def __init__(self, manager: "RelayManager", websocket: WebSocket, session_id: str, *, queue_size: int) -> None:
        self.manager = manager
        self.websocket = websocket
        self.session_id = session_id
        self.connection_id = uuid.uuid4().hex
        self.participant = Participant(user_id=self.connection_id)
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.last_pong = time.monotonic()
        self._stop_event = asyncio.Event()
        self._closing = False
        self._teardown: Optional[asyncio.Future] = None
        self.logger = LOG.getChild(f"ws.{self.connection_id[:8]}")

    @property
    def user_id(self) -> str:
        return self.participant.user_id

    @property
    def is_host(self) -> bool:
        return self.participant.role is Role.HOST

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self, token: Optional[str]) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to accept WebSocket connection")
            return

        if not self.manager.accepts(token):
            self.logger.info("Rejecting connection without a valid token")
            await self.close(code=AUTH_CLOSE_CODE, reason="unauthorized")
            return

        try:
            first = await asyncio.wait_for(self.websocket.receive_json(), timeout=self.manager.hello_timeout)
            join = parse_message(first)
        except asyncio.TimeoutError:
            self.logger.info("No join-session frame received")
            await self.close(code=1002, reason="join timeout")
            return
        except WebSocketDisconnect:
            return
        except (UnknownMessage, ValidationError, ValueError) as exc:
            self.logger.warning("Invalid join payload: %s", exc)
            await self.close(code=1002, reason="invalid join")
            return
        if not isinstance(join, messages.JoinSession) or join.session_id != self.session_id:
            await self.close(code=1002, reason="expected join-session")
            return

        user_id = join.user_id or self.connection_id
        self.participant = Participant(
            user_id=user_id,
            display_name=join.display_name or user_id,
            role=Role.parse(join.role),
        )
        await self.manager.register(self)

        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
                task_group.create_task(self._keepalive_loop())
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover
            self.logger.exception("Relay connection crashed")
        finally:
            # Runs in its own task so a cancelled socket still announces its departure.
            self._teardown = asyncio.ensure_future(self._leave())
            await asyncio.shield(self._teardown)

    async def _leave(self) -> None:
        await self.manager.unregister(self)
        await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    async def send(self, payload: Dict[str, Any]) -> None:
        if self.is_stopped:
            return
        await self.send_queue.put(payload)

    async def send_message(self, message: SignalMessage) -> None:
        await self.send(message.to_wire())

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    raw = await self.websocket.receive_json()
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except Exception:  # pragma: no cover
                    self.logger.exception("Failed to receive message")
                    break

                if not isinstance(raw, dict):
                    continue
                kind = str(raw.get("type") or "")
                if kind == "pong":
                    self.last_pong = time.monotonic()
                    continue
                if kind == "ping":
                    await self.send({"type": "pong", "ts": time.time()})
                    continue
                if kind == "leave-session":
                    break

                try:
                    await self.manager.handle_message(self, raw)
                except asyncio.CancelledError:
                    raise
                except Exception:  # pragma: no cover
                    self.logger.exception("Unhandled error while processing %s", kind)
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    payload = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                try:
                    await self.websocket.send_json(payload)
                except asyncio.CancelledError:
                    raise
                except (WebSocketDisconnect, RuntimeError) as exc:
                    self.logger.debug("Send failed: %s", exc)
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    async def _keepalive_loop(self) -> None:
        if self.manager.ping_interval <= 0:
            await self._stop_event.wait()
            return
        try:
            while not self.is_stopped:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.manager.ping_interval)
                if self.is_stopped:
                    break
                await self.send({"type": "ping", "ts": time.time()})
                if (time.monotonic() - self.last_pong) > self.manager.pong_timeout:
                    self.logger.warning("Ping timeout; closing relay connection")
                    await self.close(code=1011, reason="ping timeout")
                    break
        finally:
            self._stop_event.set()


class RelayManager:
    """Rooms keyed by session id, plus the collection logic of the hub."""

    def __init__(
        self,
        *,
        queue_size: int = 256,
        ping_interval: float = 20.0,
        pong_timeout: float = 60.0,
        hello_timeout: float = 5.0,
        allowed_tokens: Optional[Set[str]] = None,
    ) -> None:
        self.queue_size = max(1, int(queue_size))
        self.ping_interval = max(0.0, float(ping_interval))
        self.pong_timeout = max(self.ping_interval, float(pong_timeout))
        self.hello_timeout = max(0.1, float(hello_timeout))
        self.allowed_tokens = set(allowed_tokens) if allowed_tokens else None
        self.rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()

    def accepts(self, token: Optional[str]) -> bool:
        if not token:
            return False
        return self.allowed_tokens is None or token in self.allowed_tokens

    async def run(self, websocket: WebSocket, session_id: str, token: Optional[str]) -> None:
        connection = RelayConnection(self, websocket, session_id, queue_size=self.queue_size)
        await connection.run(token)

    async def stop(self) -> None:
        async with self._lock:
            connections = [conn for room in self.rooms.values() for conn in room.connections.values()]
        for connection in connections:
            await connection.close(code=1001, reason="relay shutting down")

    # ------------------------------------------------------------------ membership

    async def register(self, connection: RelayConnection) -> None:
        async with self._lock:
            room = self.rooms.setdefault(connection.session_id, Room(connection.session_id))
            previous = room.connections.get(connection.user_id)
            room.connections[connection.user_id] = connection
        if previous is not None:
            LOG.info("Replacing connection for %s", connection.user_id)
            await previous.close(code=4000, reason="replaced")

        await connection.send_message(
            messages.SessionJoined(session_id=room.session_id, participants=room.roster())
        )
        await self._replay(room, connection)
        await self.broadcast(
            room,
            messages.ParticipantJoined(
                user_id=connection.user_id,
                display_name=connection.participant.display_name,
                role=connection.participant.role.value,
            ),
            exclude=connection,
        )
        LOG.info(
            "Participant %s joined session %s (%s connected)",
            connection.user_id,
            room.session_id,
            len(room.connections),
        )

    async def unregister(self, connection: RelayConnection) -> None:
        async with self._lock:
            room = self.rooms.get(connection.session_id)
            if room is None or room.connections.get(connection.user_id) is not connection:
                return
            del room.connections[connection.user_id]
            if not room.connections:
                self.rooms.pop(room.session_id, None)
        await self.broadcast(room, messages.ParticipantLeft(user_id=connection.user_id))
        LOG.info("Participant %s left session %s", connection.user_id, room.session_id)

    async def _replay(self, room: Room, connection: RelayConnection) -> None:
        for record in room.chat.values():
            await connection.send_message(messages.NewMessage.model_validate(record.to_dict()))
        for question in room.questions.values():
            await connection.send_message(_question_frame(question))
        for poll in room.polls.values():
            await connection.send_message(_poll_frame(poll))

    async def broadcast(
        self,
        room: Room,
        message: SignalMessage,
        *,
        exclude: Optional[RelayConnection] = None,
    ) -> None:
        targets = [conn for conn in list(room.connections.values()) if conn is not exclude]
        if not targets:
            return
        payload = message.to_wire()
        await asyncio.gather(*[target.send(dict(payload)) for target in targets], return_exceptions=True)

    # ------------------------------------------------------------------ dispatch

    async def handle_message(self, connection: RelayConnection, raw: Dict[str, Any]) -> None:
        try:
            message = parse_message(raw)
        except UnknownMessage as exc:
            connection.logger.debug("Ignoring frame: %s", exc)
            return
        except ValidationError as exc:
            await connection.send_message(
                messages.ErrorMessage(code="invalid", message=str(exc), request_id=raw.get("requestId"))
            )
            return

        room = self.rooms.get(connection.session_id)
        if room is None:
            return
        if isinstance(message, FORWARDED):
            await self._forward(room, connection, raw)
            return

        handler = getattr(self, f"_on_{message.type.replace('-', '_')}", None)
        if handler is None:
            connection.logger.debug("No relay handler for %s", message.type)
            return
        await handler(room, connection, message)

    async def _forward(self, room: Room, connection: RelayConnection, raw: Dict[str, Any]) -> None:
        payload = dict(raw)
        payload["from"] = connection.user_id
        target_id = payload.get("to")
        if target_id:
            target = room.connections.get(str(target_id))
            if target is None:
                connection.logger.debug("Dropping %s for absent %s", payload.get("type"), target_id)
                return
            await target.send(payload)
            return
        for target in list(room.connections.values()):
            if target is not connection:
                await target.send(dict(payload))

    async def _error(self, connection: RelayConnection, code: str, text: str, request_id: Optional[str]) -> None:
        await connection.send_message(messages.ErrorMessage(code=code, message=text, request_id=request_id))

    # ------------------------------------------------------------------ media state

    async def _on_update_media_state(self, room: Room, connection: RelayConnection, message: messages.UpdateMediaState) -> None:
        connection.participant.apply_media_state(message.to_wire())
        await self.broadcast(
            room,
            messages.ParticipantMediaChanged(
                user_id=connection.user_id,
                is_muted=message.is_muted,
                video_enabled=message.video_enabled,
                screenshare_active=message.screenshare_active,
            ),
            exclude=connection,
        )

    # ------------------------------------------------------------------ chat

    async def _on_send_message(self, room: Room, connection: RelayConnection, message: messages.SendMessage) -> None:
        record = ChatMessage(
            id=uuid.uuid4().hex,
            sender_id=connection.user_id,
            sender_name=connection.participant.display_name,
            content=message.content,
        )
        room.chat[record.id] = record
        await self.broadcast(room, messages.NewMessage.model_validate(record.to_dict()))
        await connection.send_message(messages.MessageSent(request_id=message.request_id, message_id=record.id))

    async def _on_delete_message(self, room: Room, connection: RelayConnection, message: messages.DeleteMessage) -> None:
        record = room.chat.get(message.message_id)
        if record is None:
            await self._error(connection, "not-found", "unknown message", message.request_id)
            return
        if record.sender_id != connection.user_id and not connection.is_host:
            await self._error(connection, "forbidden", "cannot delete this message", message.request_id)
            return
        del room.chat[record.id]
        await self.broadcast(room, messages.MessageDeleted(message_id=record.id, request_id=message.request_id))

    # ------------------------------------------------------------------ Q&A

    async def _on_ask_question(self, room: Room, connection: RelayConnection, message: messages.AskQuestion) -> None:
        question = Question(
            id=uuid.uuid4().hex,
            asker_id=connection.user_id,
            asker_name=connection.participant.display_name,
            content=message.content,
        )
        room.questions[question.id] = question
        await self.broadcast(room, _question_frame(question))
        await connection.send_message(messages.QuestionAsked(request_id=message.request_id, question_id=question.id))

    async def _on_answer_question(self, room: Room, connection: RelayConnection, message: messages.AnswerQuestion) -> None:
        question = room.questions.get(message.question_id)
        if question is None:
            await self._error(connection, "not-found", "unknown question", message.request_id)
            return
        if not connection.is_host:
            await self._error(connection, "forbidden", "only hosts can answer", message.request_id)
            return
        question.is_answered = True
        question.answer = message.answer
        question.answerer_id = connection.user_id
        await self.broadcast(
            room,
            messages.QuestionAnswered(
                question_id=question.id, answer=message.answer, answered_by=connection.user_id
            ),
        )
        await connection.send_message(messages.AnswerSubmitted(request_id=message.request_id, question_id=question.id))

    async def _on_upvote_question(self, room: Room, connection: RelayConnection, message: messages.UpvoteQuestion) -> None:
        question = room.questions.get(message.question_id)
        if question is None:
            await self._error(connection, "not-found", "unknown question", message.request_id)
            return
        question.add_upvote(connection.user_id)
        await self.broadcast(
            room,
            messages.QuestionUpvoted(
                question_id=question.id,
                upvotes=sorted(question.upvoters),
                user_id=connection.user_id,
                request_id=message.request_id,
            ),
        )

    async def _on_delete_question(self, room: Room, connection: RelayConnection, message: messages.DeleteQuestion) -> None:
        question = room.questions.get(message.question_id)
        if question is None:
            await self._error(connection, "not-found", "unknown question", message.request_id)
            return
        if question.asker_id != connection.user_id and not connection.is_host:
            await self._error(connection, "forbidden", "cannot delete this question", message.request_id)
            return
        del room.questions[question.id]
        await self.broadcast(room, messages.QuestionDeleted(question_id=question.id, request_id=message.request_id))

    # ------------------------------------------------------------------ polls

    async def _on_create_poll(self, room: Room, connection: RelayConnection, message: messages.CreatePoll) -> None:
        if not connection.is_host:
            await self._error(connection, "forbidden", "only hosts can create polls", message.request_id)
            return
        for poll in room.polls.values():
            poll.is_active = False
        poll = Poll(
            id=uuid.uuid4().hex,
            question=message.question,
            options=[PollOption(index=index, label=label) for index, label in enumerate(message.options)],
        )
        room.polls[poll.id] = poll
        await self.broadcast(room, _poll_frame(poll))
        await connection.send_message(messages.PollCreated(request_id=message.request_id, poll_id=poll.id))

    async def _on_vote_poll(self, room: Room, connection: RelayConnection, message: messages.VotePoll) -> None:
        poll = room.polls.get(message.poll_id)
        if poll is None:
            await self._error(connection, "not-found", "unknown poll", message.request_id)
            return
        if poll.record_vote(connection.user_id, message.answer):
            await self.broadcast(
                room,
                messages.PollUpdated(
                    poll_id=poll.id,
                    results=[option.to_dict() for option in poll.options],
                    respondent_count=poll.respondent_count,
                    is_active=poll.is_active,
                ),
            )
        await connection.send_message(messages.VoteRecorded(request_id=message.request_id, poll_id=poll.id))


def _question_frame(question: Question) -> messages.NewQuestion:
    return messages.NewQuestion(
        id=question.id,
        user_id=question.asker_id,
        asked_by_name=question.asker_name,
        content=question.content,
        upvotes=sorted(question.upvoters),
        is_answered=question.is_answered,
        answer=question.answer,
        answered_by=question.answerer_id,
        timestamp=question.timestamp.isoformat(),
    )


def _poll_frame(poll: Poll) -> messages.NewPoll:
    return messages.NewPoll(
        id=poll.id,
        question=poll.question,
        options=[option.to_dict() for option in poll.options],
        is_active=poll.is_active,
    )


def create_app(*, manager: Optional[RelayManager] = None) -> FastAPI:
    relay = manager or RelayManager()

    app = FastAPI(title="livestage relay", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.relay = relay

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await relay.stop()

    @app.websocket("/ws/{session_id}")
    async def websocket_endpoint(websocket: WebSocket, session_id: str) -> None:
        await relay.run(websocket, session_id, websocket.query_params.get("token"))

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "sessions": len(relay.rooms)}

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> dict:
        room = relay.rooms.get(session_id)
        if room is None:
            raise HTTPException(status_code=404, detail="Unknown session")
        return {
            "sessionId": session_id,
            "participants": room.roster(),
            "messages": len(room.chat),
            "questions": len(room.questions),
            "polls": [poll.to_dict() for poll in room.polls.values()],
        }

    return app
