"""Tests for the session engine: roster, local media state, files and history."""

from typing import List

import httpx
import pytest

from fakes import FakeChannel, FakePeerConnection, FakeTrack
from livestage.api_client import RestClient
from livestage.config import EngineConfig
from livestage.errors import MediaAcquisitionError
from livestage.rtc import LocalMedia
from livestage.session import SessionEngine, open_local_media
from livestage.signaling import messages
from livestage.transfer import ReceivedFile


class SessionChannel(FakeChannel):
    """FakeChannel with the connect and disconnect half of the transport."""

    def __init__(self, user_id: str = "user-a") -> None:
        super().__init__(user_id=user_id, session_id="")
        self.connects: List[tuple] = []
        self.fail_connect = False

    async def connect(self, session_id: str, auth_token: str) -> None:
        if self.fail_connect:
            raise ConnectionError("relay unreachable")
        self.session_id = session_id
        self.connects.append((session_id, auth_token))

    async def disconnect(self) -> None:
        await self.close()

    async def wait_closed(self) -> None:
        return None


def make_engine(tmp_path, *, api=None, save_downloads=False, media=None):
    channel = SessionChannel()
    connections: List[FakePeerConnection] = []

    def factory() -> FakePeerConnection:
        connection = FakePeerConnection()
        connections.append(connection)
        return connection

    engine = SessionEngine(
        EngineConfig(downloads_dir=tmp_path, mutation_timeout=0.5),
        user_id="user-a",
        display_name="Ada",
        role="host",
        transport=channel,
        media=media or LocalMedia(audio=FakeTrack("audio"), video=FakeTrack("video")),
        api=api,
        connection_factory=factory,
        save_downloads=save_downloads,
    )
    return engine, channel, connections


@pytest.mark.asyncio
async def test_join_seeds_roster_with_local_participant(tmp_path) -> None:
    engine, channel, _ = make_engine(tmp_path)

    session = await engine.join("session-1", "token")

    assert channel.connects == [("session-1", "token")]
    assert engine.joined is True
    assert [item.user_id for item in session.ordered()] == ["user-a"]
    assert session.participants["user-a"].display_name == "Ada"
    assert await engine.join("session-1", "token") is session
    with pytest.raises(RuntimeError):
        await engine.join("session-2", "token")


@pytest.mark.asyncio
async def test_failed_connect_leaves_engine_unjoined(tmp_path) -> None:
    engine, channel, _ = make_engine(tmp_path)
    channel.fail_connect = True

    with pytest.raises(ConnectionError):
        await engine.join("session-1", "token")

    assert engine.joined is False
    assert engine.participants() == []


@pytest.mark.asyncio
async def test_roster_follows_presence_events(tmp_path) -> None:
    engine, channel, connections = make_engine(tmp_path)
    await engine.join("session-1", "token")

    await channel.deliver(
        messages.SessionJoined(
            session_id="session-1",
            participants=[
                {"userId": "user-a", "displayName": "stale"},
                {"userId": "user-b", "displayName": "Bea", "role": "attendee", "isMuted": True},
            ],
        )
    )
    assert [item.user_id for item in engine.participants()] == ["user-a", "user-b"]
    assert engine.session.participants["user-a"].display_name == "Ada"
    assert engine.session.participants["user-b"].audio_enabled is False

    await channel.deliver(messages.ParticipantJoined(user_id="user-c", display_name="Cy"))
    assert engine.session.participants["user-c"].display_name == "Cy"
    assert len(connections) == 1

    await channel.deliver(messages.ParticipantMediaChanged(user_id="user-c", video_enabled=False))
    assert engine.session.participants["user-c"].video_enabled is False

    await channel.deliver(messages.ParticipantLeft(user_id="user-b"))
    assert [item.user_id for item in engine.participants()] == ["user-a", "user-c"]


@pytest.mark.asyncio
async def test_own_join_event_is_ignored(tmp_path) -> None:
    engine, channel, connections = make_engine(tmp_path)
    await engine.join("session-1", "token")

    await channel.deliver(messages.ParticipantJoined(user_id="user-a", display_name="echo"))

    assert engine.session.participants["user-a"].display_name == "Ada"
    assert connections == []


@pytest.mark.asyncio
async def test_local_media_changes_update_roster_and_relay(tmp_path) -> None:
    engine, channel, _ = make_engine(tmp_path)
    await engine.join("session-1", "token")

    await engine.set_audio_enabled(False)
    await engine.set_video_enabled(False)
    await engine.start_screen_share(FakeTrack("video"))

    local = engine.session.participants["user-a"]
    assert (local.audio_enabled, local.video_enabled, local.screenshare_active) == (False, False, True)
    states = channel.sent_of(messages.UpdateMediaState)
    assert states[0].is_muted is True
    assert states[1].video_enabled is False
    assert states[2].screenshare_active is True
    assert {state.session_id for state in states} == {"session-1"}

    await engine.stop_screen_share()
    assert local.screenshare_active is False


@pytest.mark.asyncio
async def test_received_files_are_saved_and_announced(tmp_path) -> None:
    engine, channel, _ = make_engine(tmp_path, save_downloads=True)
    seen: List[ReceivedFile] = []
    engine.on_file(seen.append)
    await engine.join("session-1", "token")

    await channel.deliver(messages.FileStart(id="t1", name="notes.txt", size=2, sender="user-b"))
    await channel.deliver(messages.FileChunk(id="t1", index=0, total=1, chunk="aGk=", sender="user-b"))
    await channel.deliver(messages.FileEnd(id="t1", sender="user-b"))

    assert [item.meta.name for item in seen] == ["notes.txt"]
    assert (tmp_path / "notes.txt").read_bytes() == b"hi"


@pytest.mark.asyncio
async def test_leave_closes_session_and_stops_media(tmp_path) -> None:
    audio, video = FakeTrack("audio"), FakeTrack("video")
    engine, channel, _ = make_engine(tmp_path, media=LocalMedia(audio=audio, video=video))
    await engine.join("session-1", "token")

    await engine.leave()

    assert engine.joined is False
    assert audio.stopped and video.stopped
    assert channel.handlers.get(messages.NewMessage, []) == []


@pytest.mark.asyncio
async def test_join_loads_chat_history_when_api_is_set(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": [{"_id": "m1", "senderId": "user-b", "content": "earlier", "timestamp": 1700000000000}],
                "pagination": {"page": 1, "pages": 3},
            },
        )

    api = RestClient("https://hub.example/api", transport=httpx.MockTransport(handler))
    engine, _, _ = make_engine(tmp_path, api=api)

    await engine.join("session-1", "token")

    assert [message.id for message in engine.chat.messages] == ["m1"]
    assert engine.chat.has_more is True
    await api.aclose()


@pytest.mark.asyncio
async def test_history_failure_does_not_block_join(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    api = RestClient("https://hub.example/api", transport=httpx.MockTransport(handler))
    engine, _, _ = make_engine(tmp_path, api=api)

    await engine.join("session-1", "token")

    assert engine.joined is True
    assert engine.chat.messages == []
    await api.aclose()


def test_media_acquisition_failure_degrades() -> None:
    def acquire(config):
        raise MediaAcquisitionError("no camera")

    media, degraded = open_local_media(EngineConfig(), acquire=acquire)

    assert degraded is True
    assert media.has("audio") is False
    assert media.has("video") is False


def test_acquired_tracks_become_local_media() -> None:
    audio = FakeTrack("audio")

    media, degraded = open_local_media(EngineConfig(), acquire=lambda config: {"audio": audio, "video": None})

    assert degraded is False
    assert media.source("audio") is audio
    assert media.audio_enabled is True
    assert media.video_enabled is False


def moderation_api(calls: List[tuple]) -> RestClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/chat"):
            return httpx.Response(200, json={"data": [], "pagination": {"page": 1, "pages": 1}})
        calls.append((request.method, request.url.path))
        return httpx.Response(200, json={"success": True})

    return RestClient("https://hub.example/api", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_host_moderation_updates_the_roster(tmp_path) -> None:
    calls: List[tuple] = []
    api = moderation_api(calls)
    engine, channel, connections = make_engine(tmp_path, api=api)
    await engine.join("session-1", "token")
    await channel.deliver(messages.ParticipantJoined(user_id="user-b", display_name="Bea"))

    await engine.mute_participant("user-b")
    assert engine.session.participants["user-b"].audio_enabled is False
    await engine.unmute_participant("user-b")
    assert engine.session.participants["user-b"].audio_enabled is True
    await engine.remove_participant("user-b")

    assert [item.user_id for item in engine.participants()] == ["user-a"]
    assert "user-b" not in engine.mesh.links
    assert connections[0].closed is True
    assert calls == [
        ("POST", "/api/sessions/session-1/participants/user-b/mute"),
        ("POST", "/api/sessions/session-1/participants/user-b/unmute"),
        ("DELETE", "/api/sessions/session-1/participants/user-b"),
    ]
    await api.aclose()


@pytest.mark.asyncio
async def test_rejected_removal_keeps_the_participant(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/chat"):
            return httpx.Response(200, json={"data": []})
        return httpx.Response(403)

    api = RestClient("https://hub.example/api", transport=httpx.MockTransport(handler))
    engine, channel, _ = make_engine(tmp_path, api=api)
    await engine.join("session-1", "token")
    await channel.deliver(messages.ParticipantJoined(user_id="user-b"))

    with pytest.raises(httpx.HTTPStatusError):
        await engine.remove_participant("user-b")

    assert "user-b" in engine.session.participants
    await api.aclose()


@pytest.mark.asyncio
async def test_moderation_without_api_is_refused(tmp_path) -> None:
    engine, _, _ = make_engine(tmp_path)
    await engine.join("session-1", "token")

    with pytest.raises(RuntimeError):
        await engine.mute_participant("user-b")
