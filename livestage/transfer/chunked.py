"""
Chunked file transfer over the signaling channel.

A file travels as ``file-start``, one ``file-chunk`` per slice in index
order, then ``file-end``.  Chunks carry base64 text so they fit in JSON
frames.  The receiver writes chunks by index and only reassembles once every
index has arrived and the sender has signalled the end.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import inspect
import logging
import math
import mimetypes
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ..signaling import messages
from ..signaling.transport import SignalingChannel

LOG = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 16384
DEFAULT_MIME = "application/octet-stream"
_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._ -]+")


@dataclass
class FileMeta:
    name: str
    size: int
    mime: str = DEFAULT_MIME

    def to_dict(self) -> dict:
        return {"name": self.name, "size": self.size, "mime": self.mime}


@dataclass
class Transfer:
    """Receive-side state for one file in flight."""

    id: str
    meta: FileMeta
    sender_id: str = ""
    total: Optional[int] = None
    chunks: List[Optional[bytes]] = field(default_factory=list)
    received_size: int = 0
    ended: bool = False

    def accepts_total(self, total: int) -> bool:
        """Every chunk carries at least one byte, so ``total`` cannot exceed the size."""

        return 0 < total <= self.meta.size

    def set_total(self, total: int) -> None:
        self.total = total
        self.chunks = [None] * total

    def write(self, index: int, payload: bytes) -> None:
        if self.total is None or not 0 <= index < self.total:
            raise IndexError(f"chunk {index} outside transfer {self.id}")
        previous = self.chunks[index]
        if previous is not None:
            self.received_size -= len(previous)
        self.chunks[index] = payload
        self.received_size += len(payload)

    @property
    def received_count(self) -> int:
        return sum(1 for chunk in self.chunks if chunk is not None)

    @property
    def missing(self) -> List[int]:
        if self.total is None:
            return []
        return [index for index in range(self.total) if self._chunk(index) is None]

    @property
    def complete(self) -> bool:
        if self.total is None:
            return self.meta.size == 0
        return not self.missing

    def assemble(self) -> bytes:
        return b"".join(self._chunk(index) or b"" for index in range(self.total or 0))

    def _chunk(self, index: int) -> Optional[bytes]:
        return self.chunks[index] if index < len(self.chunks) else None


@dataclass
class ReceivedFile:
    id: str
    meta: FileMeta
    data: bytes
    sender_id: str = ""


FileCallback = Callable[[ReceivedFile], Optional[Awaitable[None]]]
ProgressCallback = Callable[[str, int, int], None]


class FileSender:
    """Splits bytes into chunks and paces them onto the channel."""

    def __init__(
        self,
        channel: SignalingChannel,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        pacing_every: int = 10,
        pacing_delay: float = 0.01,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.channel = channel
        self.chunk_size = chunk_size
        self.pacing_every = max(1, pacing_every)
        self.pacing_delay = pacing_delay
        self._sleep = sleep

    async def send(
        self,
        data: bytes,
        name: str,
        mime: str = DEFAULT_MIME,
        *,
        to: Optional[str] = None,
        transfer_id: Optional[str] = None,
    ) -> str:
        transfer_id = transfer_id or uuid.uuid4().hex
        size = len(data)
        total = math.ceil(size / self.chunk_size)
        LOG.info("Sending %s (%s bytes, %s chunks)", name, size, total)

        await self.channel.send(
            messages.FileStart(id=transfer_id, name=name, size=size, mime=mime, to=to)
        )
        for index in range(total):
            start = index * self.chunk_size
            payload = base64.b64encode(data[start:start + self.chunk_size]).decode("ascii")
            await self.channel.send(
                messages.FileChunk(id=transfer_id, index=index, total=total, chunk=payload, to=to)
            )
            if index % self.pacing_every == 0:
                await self._sleep(self.pacing_delay)
        await self.channel.send(messages.FileEnd(id=transfer_id, to=to))
        LOG.info("Sent %s", name)
        return transfer_id

    async def send_path(self, path: Path, *, to: Optional[str] = None) -> str:
        path = Path(path)
        mime = mimetypes.guess_type(path.name)[0] or DEFAULT_MIME
        return await self.send(path.read_bytes(), path.name, mime, to=to)


class TransferReceiver:
    """Reassembles incoming transfers keyed by sender and transfer id."""

    def __init__(
        self,
        *,
        on_file: Optional[FileCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.on_file = on_file
        self.on_progress = on_progress
        self.transfers: Dict[Tuple[str, str], Transfer] = {}
        self.downloaded: List[FileMeta] = []
        self._unsubscribe: List[Callable[[], None]] = []

    def attach(self, channel: SignalingChannel) -> None:
        if self._unsubscribe:
            return
        self._unsubscribe = [
            channel.on(messages.FileStart, self.handle_start),
            channel.on(messages.FileChunk, self.handle_chunk),
            channel.on(messages.FileEnd, self.handle_end),
            channel.on(messages.ParticipantLeft, self._on_participant_left),
        ]
        channel.on_close(self.clear)

    def handle_start(self, message: messages.FileStart) -> None:
        key = (message.sender or "", message.id)
        if key in self.transfers:
            LOG.debug("Restarting transfer %s", message.id)
        self.transfers[key] = Transfer(
            id=message.id,
            meta=FileMeta(name=message.name, size=message.size, mime=message.mime),
            sender_id=message.sender or "",
        )
        LOG.info("Receiving %s (%s bytes)", message.name, message.size)

    async def handle_chunk(self, message: messages.FileChunk) -> None:
        transfer = self.transfers.get((message.sender or "", message.id))
        if transfer is None:
            LOG.debug("Chunk for unknown transfer %s", message.id)
            return
        if transfer.total is None:
            if not transfer.accepts_total(message.total):
                LOG.warning(
                    "Rejecting chunk total %s for %s (%s bytes)",
                    message.total,
                    transfer.meta.name,
                    transfer.meta.size,
                )
                return
            transfer.set_total(message.total)
        elif transfer.total != message.total:
            LOG.debug("Chunk total %s disagrees with %s for %s", message.total, transfer.total, message.id)
            return
        if not 0 <= message.index < transfer.total:
            LOG.debug("Chunk index %s out of range for %s", message.index, message.id)
            return
        try:
            payload = base64.b64decode(message.chunk, validate=True)
        except (binascii.Error, ValueError):
            LOG.debug("Undecodable chunk %s of %s", message.index, message.id)
            return
        transfer.write(message.index, payload)
        if self.on_progress is not None:
            self.on_progress(transfer.id, transfer.received_count, transfer.total)
        if transfer.ended and transfer.complete:
            await self._finish(transfer)

    async def handle_end(self, message: messages.FileEnd) -> None:
        transfer = self.transfers.get((message.sender or "", message.id))
        if transfer is None:
            LOG.debug("End for unknown transfer %s", message.id)
            return
        transfer.ended = True
        if transfer.complete:
            await self._finish(transfer)
        else:
            LOG.debug("Transfer %s ended with %s chunks missing", message.id, len(transfer.missing))

    async def _finish(self, transfer: Transfer) -> None:
        self.transfers.pop((transfer.sender_id, transfer.id), None)
        data = transfer.assemble()
        if len(data) != transfer.meta.size:
            LOG.warning(
                "Dropping %s: got %s bytes, announced %s",
                transfer.meta.name,
                len(data),
                transfer.meta.size,
            )
            return
        self.downloaded.append(transfer.meta)
        LOG.info("Received %s from %s", transfer.meta.name, transfer.sender_id or "unknown")
        if self.on_file is not None:
            result = self.on_file(
                ReceivedFile(id=transfer.id, meta=transfer.meta, data=data, sender_id=transfer.sender_id)
            )
            if inspect.isawaitable(result):
                await result

    def drop_sender(self, sender_id: str) -> int:
        stale = [key for key in self.transfers if key[0] == sender_id]
        for key in stale:
            del self.transfers[key]
        if stale:
            LOG.debug("Dropped %s transfers from %s", len(stale), sender_id)
        return len(stale)

    def _on_participant_left(self, message: messages.ParticipantLeft) -> None:
        self.drop_sender(message.user_id)

    def clear(self) -> None:
        self.transfers.clear()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []


def save_received_file(received: ReceivedFile, directory: Path) -> Path:
    """Write ``received`` under ``directory`` without overwriting anything."""

    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    name = _UNSAFE_NAME.sub("_", Path(received.meta.name).name).strip(" .") or "download"
    target = directory / name
    stem, suffix = target.stem, target.suffix
    counter = 1
    while target.exists():
        target = directory / f"{stem} ({counter}){suffix}"
        counter += 1
    target.write_bytes(received.data)
    return target
