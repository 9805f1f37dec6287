"""
Shared fixtures for the supportchat unit and scenario tests.

The backend is an in-process FastAPI app driven through httpx.ASGITransport,
so REST calls exercise real request/response handling without a server.
Push events go through an in-memory hub that feeds every attached
EventChannel, either immediately (during the REST request that caused them,
i.e. before the response) or later when a test flushes held events.
"""
import asyncio
import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from supportchat.api import SupportApi
from supportchat.channel import EventChannel
from supportchat.identity import Identity

BASE_TIME = datetime(2026, 3, 1, 3, 30, tzinfo=timezone.utc)


# ===========================
# Test Data Builder
# ===========================

class TestDataBuilder:
    """Generate wire payloads for messages and chats."""
    __test__ = False

    @staticmethod
    def message(
        mid: int = 101,
        chat_id: Any = 7,
        content: Optional[str] = "Test message",
        sender_type: str = "user",
        sender_name: str = "Test User",
        offset: int = 0,
        **extra,
    ) -> dict:
        return {
            "id": mid,
            "chat_id": chat_id,
            "sender_type": sender_type,
            "sender_name": sender_name,
            "content": content,
            "created_at": (BASE_TIME + timedelta(seconds=offset)).isoformat(),
            **extra,
        }

    @staticmethod
    def chat(chat_id: Any = 7, status: str = "open", claimed_by=None, **extra) -> dict:
        return {
            "id": chat_id,
            "category": "others",
            "status": status,
            "claimed_by": claimed_by,
            "user_id": None,
            "session_id": "guest_1",
            "last_message": None,
            "message_count": 0,
            **extra,
        }


# ===========================
# Push channel simulation
# ===========================

class FakeTransport:
    """In-memory ChannelTransport recording outbound signals."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, dict]] = []
        self.open_count = 0
        self.closed = False
        self.fail_sends = False
        self._queue: asyncio.Queue = asyncio.Queue()

    async def open(self) -> None:
        self.open_count += 1

    async def send(self, event_type: str, payload: dict) -> None:
        if self.fail_sends:
            raise ConnectionError("fake channel send failure")
        self.sent.append((event_type, payload))

    def push(self, event_type: str, payload: Any) -> None:
        self._queue.put_nowait((event_type, payload))

    async def frames(self):
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(None)

    def signals(self, event_type: str) -> list[dict]:
        return [p for t, p in self.sent if t == event_type]


class ChannelHub:
    """Fans backend events out to every attached client channel."""

    def __init__(self) -> None:
        self.channels: list[EventChannel] = []
        self.hold = False
        self.held: list[tuple[str, dict]] = []
        self.history: list[tuple[str, dict]] = []

    def attach(self, channel: EventChannel) -> None:
        self.channels.append(channel)

    def detach(self, channel: EventChannel) -> None:
        if channel in self.channels:
            self.channels.remove(channel)

    async def broadcast(self, event_type: str, payload: dict) -> None:
        self.history.append((event_type, payload))
        if self.hold:
            self.held.append((event_type, payload))
            return
        await self._deliver(event_type, payload)

    async def flush(self) -> None:
        held, self.held = self.held, []
        for event_type, payload in held:
            await self._deliver(event_type, payload)

    async def _deliver(self, event_type: str, payload: dict) -> None:
        for channel in list(self.channels):
            if channel.connected:
                await channel.feed(event_type, payload)


# ===========================
# Fake backend
# ===========================

class FakeBackend:
    """Minimal support backend with the REST surface the engine consumes."""

    def __init__(self) -> None:
        self.hub = ChannelHub()
        self.principals: dict[str, dict] = {}
        self.chats: dict[int, dict] = {}
        self.messages: list[dict] = []
        self.feedback: list[dict] = []
        self.requests: list[str] = []
        self.failures: dict[str, tuple[int, int]] = {}
        self._chat_ids = itertools.count(7)
        self._message_ids = itertools.count(101)
        self._sessions = itertools.count(1)
        self._clock = itertools.count(1)
        self.app = self._build_app()

    # ── setup helpers ───────────────────────────────────────────────────────

    def register(self, token: str, principal_id: int, name: str, role: str = "user") -> None:
        self.principals[token] = {"id": principal_id, "name": name, "role": role}

    def add_chat(self, chat_id: Optional[int] = None, **fields) -> dict:
        cid = chat_id if chat_id is not None else next(self._chat_ids)
        chat = {
            "id": cid, "category": "others", "status": "open", "claimed_by": None,
            "admin_name": None, "user_id": None, "user_name": None, "session_id": None,
            "last_message": None, "message_count": 0, "created_at": self._now(),
        }
        chat.update(fields)
        self.chats[cid] = chat
        return chat

    def add_message(self, chat_id: int, content: Optional[str], sender_type: str = "user",
                    sender_name: str = "Guest", **extra) -> dict:
        msg = {
            "id": next(self._message_ids), "chat_id": chat_id, "sender_type": sender_type,
            "sender_name": sender_name, "content": content, "file_path": None, "file_name": None,
            "created_at": self._now(), **extra,
        }
        self.messages.append(msg)
        chat = self.chats[chat_id]
        chat["last_message"] = content
        chat["message_count"] += 1
        return msg

    def fail(self, route: str, status: int = 500, times: int = 1) -> None:
        """Make the next ``times`` calls to ``route`` ("POST /chats/{id}/claim") answer ``status``."""
        self.failures[route] = (status, times)

    def _now(self) -> str:
        return (BASE_TIME + timedelta(seconds=next(self._clock))).isoformat()

    # ── app ─────────────────────────────────────────────────────────────────

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="fake-support-backend")
        backend = self

        def principal(request: Request) -> Optional[dict]:
            auth = request.headers.get("authorization", "")
            if auth.startswith("Bearer "):
                return backend.principals.get(auth[len("Bearer "):])
            return None

        def error(status: int, message: str) -> JSONResponse:
            return JSONResponse({"error": message}, status_code=status)

        app.add_middleware(_RecordAndFail, backend=backend)

        @app.get("/chats/history")
        async def chats_history(request: Request):
            who = principal(request)
            if who is None:
                return error(401, "unauthorized")
            return [c for c in backend.chats.values() if c["user_id"] == who["id"]]

        @app.get("/chats/session/{session_id}")
        async def chats_by_session(session_id: str):
            mine = [c for c in backend.chats.values() if c["session_id"] == session_id]
            return mine[-1] if mine else None

        @app.get("/chats/admin/all")
        async def chats_admin_all(request: Request, status: str = None, category: str = None, adminId: int = None):
            who = principal(request)
            if who is None or who["role"] != "admin":
                return error(403, "forbidden")
            rows = list(backend.chats.values())
            if status:
                rows = [c for c in rows if c["status"] == status]
            if category:
                rows = [c for c in rows if c["category"] == category]
            if adminId is not None:
                rows = [c for c in rows if c["claimed_by"] == adminId]
            return rows

        @app.get("/chats/admin/stats")
        async def chats_admin_stats():
            out = []
            for p in backend.principals.values():
                if p["role"] != "admin":
                    continue
                mine = [c for c in backend.chats.values() if c["claimed_by"] == p["id"]]
                out.append({
                    "id": p["id"], "name": p["name"],
                    "solved_count": sum(c["status"] == "solved" for c in mine),
                    "closed_count": sum(c["status"] == "closed" for c in mine),
                    "active_count": sum(c["status"] == "claimed" for c in mine),
                })
            return out

        @app.get("/superadmin/stats")
        async def superadmin_stats():
            counts = {s: 0 for s in ("open", "claimed", "solved", "closed")}
            for c in backend.chats.values():
                counts[c["status"]] += 1
            return {"total": len(backend.chats), **counts}

        @app.get("/categories/active")
        async def categories_active():
            return [{"name": "others", "display_name": "Lainnya"}, {"name": "akun", "display_name": "Akun"}]

        @app.post("/chats")
        async def create_chat(request: Request):
            who = principal(request)
            if who is None:
                return error(401, "unauthorized")
            body = await request.json()
            chat = backend.add_chat(category=body["category"], user_id=who["id"], user_name=who["name"])
            return {"chatId": chat["id"]}

        @app.post("/chats/guest")
        async def create_guest_chat(request: Request):
            body = await request.json()
            session_id = f"guest_srv_{next(backend._sessions)}"
            chat = backend.add_chat(category=body["category"], session_id=session_id)
            return {"chatId": chat["id"], "sessionId": session_id}

        @app.post("/chats/{chat_id}/claim")
        async def claim_chat(chat_id: int, request: Request):
            who = principal(request)
            chat = backend.chats.get(chat_id)
            if chat is None:
                return error(404, "chat not found")
            if who is None or who["role"] != "admin":
                return error(403, "forbidden")
            if chat["status"] != "open":
                return error(409, "Chat already claimed")
            chat.update(status="claimed", claimed_by=who["id"], admin_name=who["name"])
            await backend.hub.broadcast("chat-updated", {"chatId": chat_id, "status": "claimed"})
            return {"ok": True}

        async def transition(chat_id: int, request: Request, status: str):
            who = principal(request)
            chat = backend.chats.get(chat_id)
            if chat is None:
                return error(404, "chat not found")
            if who is None or chat["claimed_by"] != who["id"] or chat["status"] != "claimed":
                return error(403, "not the claimant")
            chat["status"] = status
            await backend.hub.broadcast("chat-updated", {"chatId": chat_id, "status": status})
            return {"ok": True}

        @app.post("/chats/{chat_id}/solve")
        async def solve_chat(chat_id: int, request: Request):
            return await transition(chat_id, request, "solved")

        @app.post("/chats/{chat_id}/close")
        async def close_chat(chat_id: int, request: Request):
            return await transition(chat_id, request, "closed")

        @app.get("/messages/chat/{chat_id}")
        async def chat_messages(chat_id: int):
            return [m for m in backend.messages if m["chat_id"] == chat_id]

        async def post_message(request: Request, sender_type: str):
            form = await request.form()
            chat_id = int(form["chatId"])
            chat = backend.chats.get(chat_id)
            if chat is None:
                return error(404, "chat not found")
            who = principal(request)
            if sender_type == "guest":
                if form.get("sessionId") != chat["session_id"]:
                    return error(403, "session mismatch")
                name, kind = "Guest", "user"
            elif sender_type == "admin":
                if who is None or chat["claimed_by"] != who["id"]:
                    return error(403, "not the claimant")
                name, kind = who["name"], "admin"
            else:
                if who is None:
                    return error(401, "unauthorized")
                name, kind = who["name"], "user"
            upload = form.get("image")
            extra = {}
            if upload is not None and hasattr(upload, "filename"):
                data = await upload.read()
                extra = {"file_path": f"/uploads/{len(data)}-{upload.filename}", "file_name": upload.filename}
            msg = backend.add_message(chat_id, form.get("content"), kind, name, **extra)
            await backend.hub.broadcast("new-message", dict(msg))
            return msg

        @app.post("/messages")
        async def post_user_message(request: Request):
            return await post_message(request, "user")

        @app.post("/messages/guest")
        async def post_guest_message(request: Request):
            return await post_message(request, "guest")

        @app.post("/messages/admin")
        async def post_admin_message(request: Request):
            return await post_message(request, "admin")

        @app.post("/feedback/{chat_id}")
        async def post_feedback(chat_id: int, request: Request):
            body = await request.json()
            backend.feedback.append({"chat_id": chat_id, **body})
            return {"ok": True}

        return app


class _RecordAndFail:
    """ASGI middleware logging every request and answering injected failures."""

    def __init__(self, app, backend: FakeBackend) -> None:
        self.app = app
        self.backend = backend

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            route = f"{scope['method']} {scope['path']}"
            self.backend.requests.append(route)
            for pattern, (status, times) in list(self.backend.failures.items()):
                if times > 0 and _route_matches(pattern, route):
                    self.backend.failures[pattern] = (status, times - 1)
                    response = JSONResponse({"error": "injected failure"}, status_code=status)
                    await response(scope, receive, send)
                    return
        await self.app(scope, receive, send)


def _route_matches(pattern: str, route: str) -> bool:
    p_parts, r_parts = pattern.split("/"), route.split("/")
    if len(p_parts) != len(r_parts):
        return False
    return all(p == r or (p.startswith("{") and p.endswith("}")) for p, r in zip(p_parts, r_parts))


# ===========================
# Identities
# ===========================

AGENT_A = dict(token="tok-a", principal_id="1", display_name="agentA")
AGENT_B = dict(token="tok-b", principal_id="2", display_name="agentB")
USER_U = dict(token="tok-u", principal_id="50", display_name="Budi")


def agent_identity(who: dict) -> Identity:
    return Identity(kind="agent", principal_id=who["principal_id"], display_name=who["display_name"],
                    token=who["token"])


def user_identity(who: dict = USER_U) -> Identity:
    return Identity(kind="user", principal_id=who["principal_id"], display_name=who["display_name"],
                    token=who["token"])


def guest_identity(session_id: str = "guest_local_1") -> Identity:
    return Identity(kind="guest", principal_id=None, display_name="Guest", session_id=session_id)


# ===========================
# Pytest Fixtures
# ===========================

@pytest.fixture
def test_data() -> TestDataBuilder:
    """Provide test data builder."""
    return TestDataBuilder()


@pytest.fixture
def backend() -> FakeBackend:
    b = FakeBackend()
    b.register(AGENT_A["token"], 1, AGENT_A["display_name"], role="admin")
    b.register(AGENT_B["token"], 2, AGENT_B["display_name"], role="admin")
    b.register(USER_U["token"], 50, USER_U["display_name"], role="user")
    return b


@pytest.fixture
def connect(backend: FakeBackend):
    """Return an async context manager yielding (api, channel, transport) for an identity."""

    @asynccontextmanager
    async def _connect(identity: Identity):
        http = httpx.AsyncClient(transport=httpx.ASGITransport(app=backend.app), base_url="http://backend")
        api = SupportApi(identity, client=http)
        transport = FakeTransport()
        channel = EventChannel(transport)
        backend.hub.attach(channel)
        try:
            yield api, channel, transport
        finally:
            backend.hub.detach(channel)
            await channel.close()
            await http.aclose()

    return _connect


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "sync: push/pull merge tests")
    config.addinivalue_line("markers", "claim: claim arbitration tests")
    config.addinivalue_line("markers", "lifecycle: lifecycle gating tests")
    config.addinivalue_line("markers", "presence: presence and typing tests")
    config.addinivalue_line("markers", "scenario: end-to-end scenarios")
