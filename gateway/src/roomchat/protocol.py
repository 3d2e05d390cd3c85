"""Typed intents and notifications plus their JSON frame encoding.

Frames on the wire look like ``{"v": 1, "t": <event>, "body": <payload>}``.
Inbound frames decode to exactly one :data:`Intent` variant and every
:data:`Notification` variant encodes to exactly one outbound event name.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple, Union

from .errors import ValidationError
from .rooms import Message

PROTOCOL_VERSION = 1


# --- intents (client -> core) ---


@dataclass(frozen=True)
class Signup:
    event: ClassVar[str] = "signup"
    username: str
    password: str


@dataclass(frozen=True)
class Login:
    event: ClassVar[str] = "login"
    username: str
    password: str


@dataclass(frozen=True)
class Logout:
    event: ClassVar[str] = "logout"


@dataclass(frozen=True)
class CreateRoom:
    event: ClassVar[str] = "create_room"
    name: str


@dataclass(frozen=True)
class JoinRoom:
    event: ClassVar[str] = "join_room"
    name: str


@dataclass(frozen=True)
class SendMessage:
    event: ClassVar[str] = "send_message"
    room_name: str
    text: str


@dataclass(frozen=True)
class AdminGetAllData:
    event: ClassVar[str] = "admin_get_all_data"


@dataclass(frozen=True)
class AdminToggleBan:
    event: ClassVar[str] = "admin_toggle_ban"
    username: str


Intent = Union[Signup, Login, Logout, CreateRoom, JoinRoom, SendMessage, AdminGetAllData, AdminToggleBan]


# --- notifications (core -> client) ---


@dataclass(frozen=True)
class UserEntry:
    username: str
    is_banned: bool

    def to_wire(self) -> dict:
        return {"username": self.username, "isBanned": self.is_banned}


@dataclass(frozen=True)
class AuthSuccess:
    event: ClassVar[str] = "auth_success"
    username: str
    is_admin: bool

    def body(self) -> Any:
        return {"username": self.username, "isAdmin": self.is_admin}


@dataclass(frozen=True)
class AuthFailure:
    event: ClassVar[str] = "auth_error"
    message: str

    def body(self) -> Any:
        return self.message


@dataclass(frozen=True)
class InitRoomData:
    event: ClassVar[str] = "init_room_data"
    rooms: Tuple[str, ...]
    users: Tuple[UserEntry, ...]
    messages: Optional[Tuple[Message, ...]] = None
    current_room: Optional[str] = None

    def body(self) -> Any:
        body: Dict[str, Any] = {
            "rooms": list(self.rooms),
            "users": [user.to_wire() for user in self.users],
        }
        if self.messages is not None:
            body["messages"] = [message.to_wire() for message in self.messages]
        if self.current_room is not None:
            body["currentRoom"] = self.current_room
        return body


@dataclass(frozen=True)
class NewMessage:
    event: ClassVar[str] = "new_message"
    message: Message

    def body(self) -> Any:
        return self.message.to_wire()


@dataclass(frozen=True)
class UpdateRoomList:
    event: ClassVar[str] = "update_room_list"
    rooms: Tuple[str, ...]

    def body(self) -> Any:
        return list(self.rooms)


@dataclass(frozen=True)
class UpdateUserList:
    event: ClassVar[str] = "update_user_list"
    users: Tuple[UserEntry, ...]

    def body(self) -> Any:
        return [user.to_wire() for user in self.users]


@dataclass(frozen=True)
class ForceDisconnect:
    event: ClassVar[str] = "force_disconnect"
    reason: str

    def body(self) -> Any:
        return self.reason


@dataclass(frozen=True)
class ErrorNotice:
    event: ClassVar[str] = "error"
    code: str
    message: str

    def body(self) -> Any:
        return {"code": self.code, "message": self.message}


Notification = Union[
    AuthSuccess,
    AuthFailure,
    InitRoomData,
    NewMessage,
    UpdateRoomList,
    UpdateUserList,
    ForceDisconnect,
    ErrorNotice,
]


def encode_notification(notification: Notification) -> dict:
    return {"v": PROTOCOL_VERSION, "t": notification.event, "body": notification.body()}


# --- decoding ---


def _require_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")
    return value


def _credentials(body: Any) -> Tuple[str, str]:
    if not isinstance(body, dict):
        raise ValidationError("username and password required")
    return _require_str(body.get("username"), "username"), _require_str(body.get("password"), "password")


def _signup(body: Any) -> Intent:
    return Signup(*_credentials(body))


def _login(body: Any) -> Intent:
    return Login(*_credentials(body))


def _send_message(body: Any) -> Intent:
    if not isinstance(body, dict):
        raise ValidationError("roomName and text required")
    return SendMessage(
        room_name=_require_str(body.get("roomName"), "roomName"),
        text=_require_str(body.get("text"), "text"),
    )


_DECODERS: Dict[str, Callable[[Any], Intent]] = {
    Signup.event: _signup,
    Login.event: _login,
    Logout.event: lambda _: Logout(),
    CreateRoom.event: lambda body: CreateRoom(_require_str(body, "room name")),
    JoinRoom.event: lambda body: JoinRoom(_require_str(body, "room name")),
    SendMessage.event: _send_message,
    AdminGetAllData.event: lambda _: AdminGetAllData(),
    AdminToggleBan.event: lambda body: AdminToggleBan(_require_str(body, "username")),
}

INTENT_EVENTS: List[str] = list(_DECODERS)


def decode_intent(frame: Any) -> Intent:
    """Turn a decoded JSON frame into an intent or raise :class:`ValidationError`."""

    if not isinstance(frame, dict):
        raise ValidationError("frame must be an object")
    if frame.get("v") != PROTOCOL_VERSION:
        raise ValidationError("unsupported version")
    event = frame.get("t")
    decoder = _DECODERS.get(event) if isinstance(event, str) else None
    if decoder is None:
        raise ValidationError("unknown frame type")
    return decoder(frame.get("body"))
