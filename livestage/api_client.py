"""
REST collaborator client: chat history pages and recording upload.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from .errors import UploadError
from .models import ChatMessage

LOG = logging.getLogger(__name__)

USER_AGENT = "livestage/0.3"


@dataclass
class ChatPage:
    messages: List[ChatMessage] = field(default_factory=list)
    page: int = 1
    pages: int = 1

    @property
    def has_more(self) -> bool:
        return self.page < self.pages


class RestClient:
    """Thin async wrapper over the session REST endpoints."""

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"User-Agent": USER_AGENT}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=10.0),
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> "RestClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_chat_history(self, session_id: str, page: int = 1, limit: int = 50) -> ChatPage:
        response = await self._client.get(
            f"sessions/{session_id}/chat", params={"page": page, "limit": limit}
        )
        response.raise_for_status()
        body: Dict[str, Any] = response.json()
        pagination = body.get("pagination") or {}
        return ChatPage(
            messages=[ChatMessage.from_payload(item) for item in body.get("data") or []],
            page=int(pagination.get("page", page)),
            pages=int(pagination.get("pages", page)),
        )

    # ------------------------------------------------------------------ moderation

    async def mute_participant(self, session_id: str, user_id: str) -> None:
        await self._moderate("POST", f"sessions/{session_id}/participants/{user_id}/mute")

    async def unmute_participant(self, session_id: str, user_id: str) -> None:
        await self._moderate("POST", f"sessions/{session_id}/participants/{user_id}/unmute")

    async def remove_participant(self, session_id: str, user_id: str) -> None:
        await self._moderate("DELETE", f"sessions/{session_id}/participants/{user_id}")

    async def _moderate(self, method: str, path: str) -> None:
        response = await self._client.request(method, path)
        response.raise_for_status()
        LOG.info("%s %s", method, path)

    # ------------------------------------------------------------------ recordings

    async def upload_recording(
        self,
        session_id: str,
        data: bytes,
        *,
        filename: str = "recording.mkv",
        mime: str = "video/x-matroska",
    ) -> str:
        """Upload a finished recording and return its public url."""

        files = {"recording": (filename, data, mime)}
        try:
            response = await self._client.post(f"sessions/{session_id}/recording", files=files)
            response.raise_for_status()
            url = (response.json().get("data") or {}).get("url")
        except httpx.HTTPError as exc:
            raise UploadError(f"recording upload failed: {exc}") from exc
        except (ValueError, AttributeError) as exc:
            raise UploadError(f"upload response was not a JSON object: {exc}") from exc
        if not url:
            raise UploadError("upload response did not include a url")
        LOG.info("Recording uploaded to %s", url)
        return str(url)

    async def upload_recording_file(self, session_id: str, path: Path) -> str:
        path = Path(path)
        return await self.upload_recording(session_id, path.read_bytes(), filename=path.name)
