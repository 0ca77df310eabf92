from typing import Any, Dict, List, Optional

import httpx

from marketchat.core.config import client_settings
from marketchat.core.logging import get_logger


logger = get_logger(__name__)


class ApiError(Exception):
    """A failed REST call. retryable is True for timeouts, transport errors and 5xx."""

    def __init__(self, detail: str, status_code: Optional[int] = None, retryable: bool = False) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.retryable = retryable


class ChatApiClient:
    """Thin async wrapper over the conversation/message REST surface."""

    def __init__(
        self,
        token: str,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url or client_settings.API_BASE_URL,
            timeout=timeout if timeout is not None else client_settings.REQUEST_TIMEOUT,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def list_conversations(self) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        cursor = None
        while True:
            params: Dict[str, Any] = {"limit": 100}
            if cursor:
                params["cursor"] = cursor
            page = await self._request("GET", "/conversations", params=params)
            items.extend(page["items"])
            cursor = page.get("next_cursor")
            if not cursor:
                return items

    async def start_conversation(self, participant_id: str, service_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("POST", "/conversations", json={"participant_id": participant_id, "service_id": service_id})

    async def list_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/conversations/{conversation_id}/messages")
        return data["items"]

    async def create_message(self, conversation_id: str, content: str, reply_to: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("POST", "/messages", json={"conversation_id": conversation_id, "content": content, "reply_to": reply_to})

    async def update_message(self, message_id: str, content: str) -> Dict[str, Any]:
        return await self._request("PUT", f"/messages/{message_id}", json={"content": content})

    async def delete_message(self, message_id: str) -> None:
        await self._request("DELETE", f"/messages/{message_id}")

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("%s %s timed out", method, url)
            raise ApiError("Request timed out. Please check your connection and try again.", retryable=True) from exc
        except httpx.TransportError as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise ApiError("Unable to reach the chat server.", retryable=True) from exc

        if response.is_success:
            return response.json() if response.content else None
        detail = _detail(response)
        raise ApiError(detail, status_code=response.status_code, retryable=response.status_code >= 500)


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and isinstance(body.get("detail"), str):
        return body["detail"]
    return response.reason_phrase
