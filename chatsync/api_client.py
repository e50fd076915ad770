"""
Async HTTP client for the chat API.

Transport failures and error responses are normalized into ChatError
subclasses here, at the client boundary, so nothing above this module
ever looks at status codes or error strings.
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from chatsync.errors import TransientError, error_from_response
from chatsync.schemas import MessageView, SendMessageResponse

logger = logging.getLogger(__name__)


def _room_path(code: str) -> str:
    return f"/rooms/{quote(code, safe='')}"


class ChatApiClient:
    """
    One coroutine per server operation.

    Args:
        base_url: Server root, e.g. http://localhost:8000
        transport: Optional httpx transport (tests pass httpx.ASGITransport)
        timeout: Per-request timeout in seconds
        admin_token: Sent as X-Admin-Token on admin calls
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        admin_token: Optional[str] = None,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._admin_token = admin_token

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            logger.debug(f"{method} {url} transport failure: {type(e).__name__}")
            raise TransientError() from e

        if response.is_success:
            return response.json()

        code = None
        try:
            body = response.json()
            if isinstance(body, dict):
                code = body.get("code")
        except ValueError:
            pass
        error = error_from_response(response.status_code, code)
        logger.debug(f"{method} {url} -> {response.status_code} ({type(error).__name__})")
        raise error

    # =========================================================================
    # Rooms
    # =========================================================================

    async def create_room(self, code: str) -> str:
        data = await self._request("POST", "/rooms", json={"code": code})
        return data["code"]

    async def room_exists(self, code: str) -> bool:
        data = await self._request("GET", f"{_room_path(code)}/exists")
        return bool(data["exists"])

    # =========================================================================
    # Messages
    # =========================================================================

    async def get_messages(self, room_code: str) -> list[MessageView]:
        data = await self._request("GET", f"{_room_path(room_code)}/messages")
        return [MessageView.model_validate(item) for item in data]

    async def fetch_messages_after_id(self, room_code: str, last_id: int) -> list[MessageView]:
        data = await self._request("GET", f"{_room_path(room_code)}/messages", params={"after": last_id})
        return [MessageView.model_validate(item) for item in data]

    async def send_message(
        self,
        room_code: str,
        content: str,
        nickname: str,
        owner_id: str,
        reply_to_id: Optional[int] = None,
        image: Optional[str] = None,
        video: Optional[str] = None,
        audio: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> int:
        payload = {
            "content": content,
            "nickname": nickname,
            "owner_id": owner_id,
            "reply_to_id": reply_to_id,
            "image": image,
            "video": video,
            "audio": audio,
            "nonce": nonce,
        }
        data = await self._request("POST", f"{_room_path(room_code)}/messages", json=payload)
        return SendMessageResponse.model_validate(data).id

    async def edit_message(
        self,
        room_code: str,
        message_id: int,
        owner_id: str,
        new_content: str,
        new_image: Optional[str] = None,
        new_video: Optional[str] = None,
        new_audio: Optional[str] = None,
    ) -> bool:
        payload = {
            "owner_id": owner_id,
            "content": new_content,
            "image": new_image,
            "video": new_video,
            "audio": new_audio,
        }
        data = await self._request("PATCH", f"{_room_path(room_code)}/messages/{message_id}", json=payload)
        return bool(data["ok"])

    async def delete_message(self, room_code: str, message_id: int, owner_id: str) -> bool:
        data = await self._request(
            "DELETE", f"{_room_path(room_code)}/messages/{message_id}", params={"owner_id": owner_id}
        )
        return bool(data["ok"])

    async def add_reaction(self, room_code: str, message_id: int, user_id: str, emoji: str) -> bool:
        data = await self._request(
            "POST",
            f"{_room_path(room_code)}/messages/{message_id}/reactions",
            json={"user_id": user_id, "emoji": emoji},
        )
        return bool(data["ok"])

    async def remove_reaction(self, room_code: str, message_id: int, user_id: str, emoji: str) -> bool:
        data = await self._request(
            "DELETE",
            f"{_room_path(room_code)}/messages/{message_id}/reactions",
            params={"user_id": user_id, "emoji": emoji},
        )
        return bool(data["ok"])

    async def get_message_ttl(self) -> int:
        data = await self._request("GET", "/ttl")
        return int(data["ttl_seconds"])

    # =========================================================================
    # Admin
    # =========================================================================

    async def prune_expired_messages(self) -> tuple[int, int]:
        headers = {"X-Admin-Token": self._admin_token} if self._admin_token else {}
        data = await self._request("POST", "/admin/prune", headers=headers)
        return data["messages_pruned"], data["rooms_pruned"]

