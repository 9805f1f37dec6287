"""
Data models (dataclasses) for supportchat.
These are plain Python objects shared by the REST fetcher, the push channel
and the session store. Wire payloads are converted here, once, so every
identifier downstream is already in canonical form.
"""
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Optional

STATUS_OPEN = "open"
STATUS_CLAIMED = "claimed"
STATUS_SOLVED = "solved"
STATUS_CLOSED = "closed"

CHAT_STATUSES = (STATUS_OPEN, STATUS_CLAIMED, STATUS_SOLVED, STATUS_CLOSED)
TERMINAL_STATUSES = frozenset({STATUS_SOLVED, STATUS_CLOSED})

# Rank used to refuse stale status overwrites; solved and closed share the top rank.
STATUS_RANK = {STATUS_OPEN: 0, STATUS_CLAIMED: 1, STATUS_SOLVED: 2, STATUS_CLOSED: 2}

SENDER_USER = "user"
SENDER_ADMIN = "admin"
SENDER_SYSTEM = "system"


def canonical_id(value: Any) -> Optional[str]:
    """Normalize a chat/message identifier to its canonical string form.

    The backend and the push channel disagree on whether identifiers are
    numbers or strings; ``5``, ``"5"`` and ``" 05 "`` all become ``"5"``.
    Non-numeric identifiers are kept as stripped strings.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError(f"Invalid identifier: {value!r}")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"Invalid identifier: {value!r}")
        return str(int(value))
    text = str(value).strip()
    if not text:
        return None
    if text.isdigit():
        return str(int(text))
    return text


def id_sort_key(value: str) -> tuple:
    # numeric ids sort numerically and before opaque ones
    if value.isdigit():
        return (0, int(value), "")
    return (1, 0, value)


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000 if value > 1e11 else value, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class Attachment:
    path: str            # server-relative, e.g. /uploads/abc.png
    name: Optional[str]  # original filename


@dataclass(frozen=True)
class Message:
    id: str
    chat_id: str
    sender_type: str     # user | admin | system
    sender_name: Optional[str]
    content: Optional[str]
    attachment: Optional[Attachment]
    created_at: datetime

    @property
    def order_key(self) -> tuple:
        return (self.created_at, id_sort_key(self.id))

    @classmethod
    def from_payload(cls, data: dict) -> "Message":
        mid = canonical_id(data.get("id"))
        chat_id = canonical_id(data.get("chat_id", data.get("chatId")))
        if mid is None or chat_id is None:
            raise ValueError(f"Message payload missing id or chat_id: {data!r}")
        sender_type = data.get("sender_type") or SENDER_SYSTEM
        file_path = data.get("file_path")
        attachment = Attachment(path=file_path, name=data.get("file_name")) if file_path else None
        return cls(
            id=mid,
            chat_id=chat_id,
            sender_type=sender_type,
            sender_name=data.get("sender_name"),
            content=data.get("content") or None,
            attachment=attachment,
            created_at=parse_timestamp(data.get("created_at")),
        )


@dataclass(frozen=True)
class Chat:
    """Client-side snapshot of one support chat.

    ``claimant`` is set if and only if ``status == "claimed"``; the
    constructor refuses anything else. ``admin_name`` is a display field and
    keeps naming the agent who handled a solved or closed chat.
    """
    id: str
    category: Optional[str] = None
    status: str = STATUS_OPEN
    claimant: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    user_name: Optional[str] = None
    admin_name: Optional[str] = None
    last_message: Optional[str] = None
    message_count: int = 0
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.status not in CHAT_STATUSES:
            raise ValueError(f"Invalid status '{self.status}'. Must be one of {CHAT_STATUSES}")
        if (self.claimant is not None) != (self.status == STATUS_CLAIMED):
            raise ValueError(f"Chat {self.id}: claimant={self.claimant!r} inconsistent with status '{self.status}'")
        if self.user_id is not None and self.session_id is not None:
            raise ValueError(f"Chat {self.id}: participant must be a user or a guest, not both")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def participant(self) -> Optional[tuple[str, str]]:
        if self.user_id is not None:
            return ("user", self.user_id)
        if self.session_id is not None:
            return ("guest", self.session_id)
        return None

    def evolve(self, **changes) -> "Chat":
        return replace(self, **changes)

    @classmethod
    def field_names(cls) -> frozenset:
        return frozenset(f.name for f in fields(cls))

    @classmethod
    def from_payload(cls, data: dict) -> "Chat":
        cid = canonical_id(data.get("id", data.get("chatId")))
        if cid is None:
            raise ValueError(f"Chat payload missing id: {data!r}")
        status = data.get("status") or STATUS_OPEN
        # Backends keep claimed_by after solve/close; it is only a claimant while claimed.
        claimed_by = canonical_id(data.get("claimed_by", data.get("claimant")))
        claimant = claimed_by if status == STATUS_CLAIMED else None
        if status == STATUS_CLAIMED and claimant is None:
            raise ValueError(f"Chat {cid} is claimed but carries no claimant")
        user_id = canonical_id(data.get("user_id"))
        session_id = data.get("session_id") if user_id is None else None
        created_at = data.get("created_at")
        return cls(
            id=cid,
            category=data.get("category"),
            status=status,
            claimant=claimant,
            user_id=user_id,
            session_id=session_id,
            user_name=data.get("user_name"),
            admin_name=data.get("admin_name"),
            last_message=data.get("last_message"),
            message_count=int(data.get("message_count") or 0),
            created_at=parse_timestamp(created_at) if created_at else None,
        )


@dataclass(frozen=True)
class AgentStats:
    id: str
    name: str
    solved_count: int = 0
    closed_count: int = 0
    active_count: int = 0

    @classmethod
    def from_payload(cls, data: dict) -> "AgentStats":
        return cls(
            id=canonical_id(data.get("id")) or "",
            name=data.get("name") or "",
            solved_count=int(data.get("solved_count") or 0),
            closed_count=int(data.get("closed_count") or 0),
            active_count=int(data.get("active_count") or 0),
        )


@dataclass(frozen=True)
class Category:
    name: str
    display_name: str


DEFAULT_CATEGORIES = (
    Category("racepack", "Racepack"),
    Category("akun", "Akun"),
    Category("event", "Event"),
    Category("pembayaran", "Pembayaran"),
    Category("others", "Lainnya"),
)


@dataclass
class Feedback:
    chat_id: str
    rating: int
    comment: Optional[str] = None
    session_id: Optional[str] = None

    def to_payload(self) -> dict:
        payload: dict[str, Any] = {"rating": self.rating}
        if self.comment:
            payload["comment"] = self.comment
        if self.session_id:
            payload["sessionId"] = self.session_id
        return payload


@dataclass
class ChatFilters:
    status: Optional[str] = None
    category: Optional[str] = None
    admin_id: Optional[str] = None

    def to_params(self) -> dict:
        params = {}
        if self.status:
            params["status"] = self.status
        if self.category:
            params["category"] = self.category
        if self.admin_id:
            params["adminId"] = self.admin_id
        return params


@dataclass
class ChatPreview:
    """Row of an agent's chat list, with the set of message ids already counted."""
    chat: Chat
    counted_ids: set = field(default_factory=set)
