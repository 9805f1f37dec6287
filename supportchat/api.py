"""
REST access to the support backend.

Pull operations (chat lists, a single chat, message history, stats) feed the
session store through its merge path; mutating operations (create, claim,
solve, close, send, feedback) only report what the backend answered. No call
is retried here: network failures become TransportError, refusals become
AuthorizationError and any other non-2xx becomes ApiError.
"""
import logging
from typing import Any, Optional

import httpx

from supportchat.attachments import PreparedUpload
from supportchat.config import API_URL, REQUEST_TIMEOUT
from supportchat.db.models import (
    AgentStats,
    Category,
    Chat,
    ChatFilters,
    DEFAULT_CATEGORIES,
    Feedback,
    Message,
    canonical_id,
)
from supportchat.errors import ApiError, AuthorizationError, TransportError
from supportchat.identity import Identity

logger = logging.getLogger(__name__)

_AUTHORIZATION_STATUSES = {401, 403, 409}


def _error_detail(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or None
    if isinstance(body, dict):
        return body.get("error") or body.get("message") or body.get("detail")
    return None


class SupportApi:
    """Thin async client over the backend's REST surface for one identity."""

    def __init__(
        self,
        identity: Identity,
        base_url: str = API_URL,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self.identity = identity
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "SupportApi":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ─────────────────────────────────────────────
    # Transport
    # ─────────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = {**self.identity.auth_headers(), **kwargs.pop("headers", {})}
        try:
            resp = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} transport failure: {type(e).__name__}: {e}")
            raise TransportError(method, path, e) from e

        if resp.status_code in _AUTHORIZATION_STATUSES:
            raise AuthorizationError(resp.status_code, _error_detail(resp), path)
        if resp.status_code >= 400:
            raise ApiError(resp.status_code, _error_detail(resp), path)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    # ─────────────────────────────────────────────
    # Chats (pull)
    # ─────────────────────────────────────────────

    async def list_chats(self, filters: Optional[ChatFilters] = None) -> list[Chat]:
        """List the chats visible to the identity.

        Agents get the filtered admin list, users their history and guests
        the chat bound to their session token (zero or one entries).
        """
        if self.identity.is_agent:
            params = (filters or ChatFilters()).to_params()
            data = await self._request("GET", "/chats/admin/all", params=params)
        elif self.identity.is_guest:
            if not self.identity.session_id:
                return []
            data = await self._request("GET", f"/chats/session/{self.identity.session_id}")
            data = [data] if isinstance(data, dict) else (data or [])
        else:
            data = await self._request("GET", "/chats/history")
        return [Chat.from_payload(c) for c in (data or []) if isinstance(c, dict) and c]

    async def fetch_chat(self, chat_id) -> Optional[Chat]:
        """Fetch one chat's canonical record.

        There is no single-chat endpoint, so the record is picked out of the
        identity's list endpoint.
        """
        cid = canonical_id(chat_id)
        for chat in await self.list_chats():
            if chat.id == cid:
                return chat
        logger.debug(f"Chat {cid} not visible to {self.identity.kind} identity")
        return None

    async def fetch_messages(self, chat_id) -> list[Message]:
        data = await self._request("GET", f"/messages/chat/{canonical_id(chat_id)}")
        return [Message.from_payload(m) for m in (data or [])]

    async def fetch_agent_stats(self) -> list[AgentStats]:
        data = await self._request("GET", "/chats/admin/stats")
        return [AgentStats.from_payload(s) for s in (data or [])]

    async def fetch_global_stats(self) -> dict:
        return await self._request("GET", "/superadmin/stats") or {}

    async def fetch_categories(self) -> list[Category]:
        """Active chat categories; falls back to the built-in list on failure."""
        try:
            data = await self._request("GET", "/categories/active")
        except (ApiError, TransportError) as e:
            logger.warning(f"Loading categories failed, using defaults: {e}")
            return list(DEFAULT_CATEGORIES)
        cats = [Category(name=c["name"], display_name=c.get("display_name") or c["name"])
                for c in (data or []) if isinstance(c, dict) and c.get("name")]
        return cats or list(DEFAULT_CATEGORIES)

    # ─────────────────────────────────────────────
    # Chats (mutations)
    # ─────────────────────────────────────────────

    async def create_chat(self, category: str) -> tuple[str, Optional[str]]:
        """Create a chat; returns (chat_id, session_id issued for guests)."""
        if not category:
            raise ValueError("category is required")
        path = "/chats/guest" if self.identity.is_guest else "/chats"
        data = await self._request("POST", path, json={"category": category}) or {}
        chat_id = canonical_id(data.get("chatId", data.get("id")))
        if chat_id is None:
            raise ApiError(200, "chat creation response carried no chat id", path)
        logger.info(f"Chat created: {chat_id} category='{category}'")
        return chat_id, data.get("sessionId")

    async def claim_chat(self, chat_id) -> Any:
        return await self._request("POST", f"/chats/{canonical_id(chat_id)}/claim")

    async def solve_chat(self, chat_id) -> Any:
        return await self._request("POST", f"/chats/{canonical_id(chat_id)}/solve")

    async def close_chat(self, chat_id) -> Any:
        return await self._request("POST", f"/chats/{canonical_id(chat_id)}/close")

    # ─────────────────────────────────────────────
    # Messages & feedback
    # ─────────────────────────────────────────────

    async def send_message(
        self,
        chat_id,
        content: Optional[str] = None,
        upload: Optional[PreparedUpload] = None,
    ) -> Optional[Message]:
        """Submit a message as multipart form data.

        Returns the persisted message when the backend echoes it back, so
        the caller can merge it before (or after) the push broadcast.
        """
        form = {"chatId": canonical_id(chat_id)}
        if content:
            form["content"] = content
        if self.identity.is_guest:
            path = "/messages/guest"
            form["sessionId"] = self.identity.session_id
        elif self.identity.is_agent:
            path = "/messages/admin"
        else:
            path = "/messages"
        # plain fields go out as filename-less parts so the body is multipart even without a file
        parts = {name: (None, value) for name, value in form.items()}
        if upload:
            parts.update(upload.as_files())
        data = await self._request("POST", path, files=parts)
        if isinstance(data, dict):
            payload = data.get("message", data)
            if isinstance(payload, dict) and "id" in payload and "created_at" in payload:
                payload = {"chat_id": form["chatId"], **payload}
                return Message.from_payload(payload)
        return None

    async def submit_feedback(self, feedback: Feedback) -> Any:
        return await self._request("POST", f"/feedback/{canonical_id(feedback.chat_id)}",
                                   json=feedback.to_payload())
