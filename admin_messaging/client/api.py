import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from admin_messaging.client.errors import ApiError, AuthError, NetworkError, PayloadTooLargeError

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "/api/messaging"

# (file_name, data, mime_type)
UploadTuple = Tuple[str, bytes, str]


class MessagingApiClient:

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        prefix: str = DEFAULT_PREFIX,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self._prefix = prefix.rstrip("/")
        self._token = token

    def set_token(self, token: Optional[str]) -> None:
        self._token = token

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "MessagingApiClient":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    def _headers(self) -> Dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, self._prefix + path, headers=self._headers(), **kwargs)
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc
        if response.is_success:
            return response.json()
        raise self._error_for(response)

    def _error_for(self, response: httpx.Response) -> ApiError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("message") or body.get("detail") or response.reason_phrase or "Request failed"
        if not isinstance(message, str):
            message = str(message)
        code = body.get("code")
        retryable = bool(body.get("retryable", False))
        status = response.status_code
        if status == 401:
            return AuthError(status, message, code)
        if status == 413:
            return PayloadTooLargeError(status, message, code)
        return ApiError(status, message, code, retryable or status >= 500)

    async def list_conversations(
        self,
        status: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 50,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": limit}
        if status:
            params["status"] = status
        if type:
            params["type"] = type
        body = await self._request("GET", "/conversations", params=params)
        return body["data"]

    async def get_or_create_direct(self, recipient_id: str, title: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"recipientId": recipient_id}
        if title:
            payload["title"] = title
        body = await self._request("POST", "/conversations/direct", json=payload)
        return body["data"]

    async def get_conversation(self, conversation_id: str) -> Dict[str, Any]:
        body = await self._request("GET", f"/conversations/{conversation_id}")
        return body["data"]

    async def get_messages(self, conversation_id: str, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        body = await self._request(
            "GET", f"/conversations/{conversation_id}/messages", params={"page": page, "limit": limit}
        )
        return body["data"]

    async def send_text(
        self,
        conversation_id: str,
        content: str,
        reply_to: Optional[str] = None,
        mentions: Optional[List[str]] = None,
        priority: str = "normal",
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"content": content, "mentions": mentions or [], "priority": priority}
        if reply_to:
            payload["replyTo"] = reply_to
        body = await self._request("POST", f"/conversations/{conversation_id}/messages/text", json=payload)
        return body["data"]

    async def send_media(
        self,
        conversation_id: str,
        files: Sequence[UploadTuple],
        content: Optional[str] = None,
    ) -> Dict[str, Any]:
        multipart = [("files", (name, data, mime)) for name, data, mime in files]
        form = {"content": content} if content else None
        body = await self._request(
            "POST", f"/conversations/{conversation_id}/messages/media", files=multipart, data=form
        )
        return body["data"]

    async def mark_read(self, conversation_id: str, message_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        payload = {"messageIds": message_ids} if message_ids else {}
        return await self._request("POST", f"/conversations/{conversation_id}/read", json=payload)

    async def archive(self, conversation_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/conversations/{conversation_id}/archive")

    async def edit_message(self, message_id: str, content: str) -> Dict[str, Any]:
        body = await self._request("PATCH", f"/messages/{message_id}", json={"content": content})
        return body["data"]

    async def delete_message(self, message_id: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/messages/{message_id}")

    async def mark_delivered(self, message_id: str) -> Dict[str, Any]:
        body = await self._request("POST", f"/messages/{message_id}/delivered")
        return body["data"]

    async def available_users(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/users/available")
        return body["data"]
