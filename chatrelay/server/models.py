# chatrelay/server/models.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr


def format_timestamp(moment: Optional[datetime] = None) -> str:
    """Render a UTC instant as ISO-8601 with millisecond precision and a 'Z' suffix."""
    moment = moment or datetime.now(timezone.utc)
    return (
        moment.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def parse_timestamp(value: str) -> Optional[datetime]:
    """Inverse of format_timestamp; returns None for anything unparseable."""
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class ChatMessage(BaseModel):
    """
    A single chat message as stored in history and broadcast to clients.
    Immutable once created.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["message"] = "message"
    content: str
    username: str
    timestamp: str = Field(default_factory=format_timestamp)


class PostMessage(BaseModel):
    """Inbound request to post a chat message. Client username/timestamp are ignored."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["message"]
    content: StrictStr


class GetHistory(BaseModel):
    """Inbound request for the current history snapshot."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["get_history"]


class UnknownFrame(BaseModel):
    """Any well-formed frame whose declared type is not recognized."""

    type: Any = None
    raw: Dict[str, Any] = Field(default_factory=dict)


InboundFrame = Union[PostMessage, GetHistory, UnknownFrame]


@dataclass(frozen=True)
class Session:
    """The live association between an open connection and a declared username."""

    session_id: str
    connection: Any = field(repr=False, compare=False)
    username: str
    joined_at: str = field(default_factory=format_timestamp)


def history_payload(messages: Iterable[ChatMessage]) -> Dict[str, Any]:
    return {
        "type": "history",
        "messages": [message.model_dump() for message in messages],
    }


def users_payload(usernames: Iterable[str]) -> Dict[str, Any]:
    users: List[Dict[str, str]] = [{"username": name} for name in usernames]
    return {"type": "users", "users": users}
