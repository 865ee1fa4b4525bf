"""远端会话存储客户端。

聊天后端的 REST 端点：
- GET    {base_url}/chat            -> 会话摘要列表
- GET    {base_url}/chat/{id}       -> 会话消息列表
- DELETE {base_url}/chat/{id}
- PATCH  {base_url}/chat/{id}       body {"title": ...}
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from chat_core.domain.exceptions import ApiError, NotFound, ProtocolError, TransportError
from chat_core.domain.models import ConversationSummary, Message


def _parse_ts(raw: Any) -> datetime:
    if not raw:
        return datetime.now(timezone.utc)
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError as e:
        raise ProtocolError(code="BAD_TIMESTAMP", message=str(e))


class HttpConversationStore:
    def __init__(self, settings, client: Optional[httpx.AsyncClient] = None):
        self._settings = settings
        self._client = client

    async def list(self) -> List[ConversationSummary]:
        data = await self._request("GET", "/chat")
        if not isinstance(data, list):
            raise ProtocolError(code="BAD_RESPONSE", message="conversation list must be an array")
        return [self._to_summary(item) for item in data]

    async def get_history(self, conversation_id: str) -> List[Message]:
        data = await self._request("GET", f"/chat/{conversation_id}")
        # 部分后端把消息包在 {"messages": [...]} 里
        if isinstance(data, dict):
            data = data.get("messages") or []
        if not isinstance(data, list):
            raise ProtocolError(code="BAD_RESPONSE", message="message history must be an array")
        return [self._to_message(item, conversation_id) for item in data]

    async def delete(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/chat/{conversation_id}")

    async def rename(self, conversation_id: str, title: str) -> None:
        await self._request("PATCH", f"/chat/{conversation_id}", json={"title": title})

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Any:
        url = f"{self._settings.api_base_url}{path}"
        headers = {"Accept": "application/json"}
        token = getattr(self._settings, "api_token", None)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            if self._client is not None:
                resp = await self._client.request(method, url, json=json, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                    resp = await client.request(method, url, json=json, headers=headers)
        except httpx.RequestError as e:
            raise TransportError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)
        if resp.status_code == 404:
            raise NotFound(code="CONVERSATION_NOT_FOUND", message=path, http_status=404)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise ProtocolError(code="BAD_JSON", message=str(e))

    @staticmethod
    def _to_summary(item: Dict[str, Any]) -> ConversationSummary:
        try:
            return ConversationSummary(
                id=str(item["id"]),
                title=item.get("title") or "",
                updated_at=_parse_ts(item.get("updated_at") or item.get("created_at")),
                message_count=int(item.get("message_count") or 0),
                created_at=_parse_ts(item["created_at"]) if item.get("created_at") else None,
            )
        except (KeyError, TypeError) as e:
            raise ProtocolError(code="BAD_RESPONSE", message=f"bad conversation summary: {e}")

    @staticmethod
    def _to_message(item: Dict[str, Any], conversation_id: str) -> Message:
        role = item.get("role")
        if role not in ("user", "assistant"):
            raise ProtocolError(code="BAD_RESPONSE", message=f"unsupported message role: {role!r}")
        try:
            return Message(
                id=str(item["id"]),
                conversation_id=str(item.get("chat_id") or conversation_id),
                role=role,
                content=item.get("content") or "",
                created_at=_parse_ts(item.get("created_at")),
            )
        except (KeyError, TypeError) as e:
            raise ProtocolError(code="BAD_RESPONSE", message=f"bad message record: {e}")
