from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from .errors import ValidationError


def _now_ms() -> int:
    return int(time.time() * 1000)


def clean_room_name(name: str | None) -> str:
    """Room names are stored and looked up without surrounding whitespace."""

    return (name or "").strip()


@dataclass(frozen=True)
class Message:
    """An immutable chat message appended to a room log."""

    id: int
    room_name: str
    sender_name: str
    text: str
    timestamp: int

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "roomName": self.room_name,
            "senderName": self.sender_name,
            "text": self.text,
            "timestamp": self.timestamp,
        }


@dataclass
class Room:
    name: str
    members: Dict[str, None] = field(default_factory=dict)
    messages: List[Message] = field(default_factory=list)


class RoomRegistry:
    """In-memory rooms with an append-only message log and per-room membership.

    A connection is a member of at most one room at a time: joining a room
    leaves whichever room the connection was in before.
    """

    def __init__(
        self,
        *,
        max_message_chars: int = 4000,
        max_room_name_chars: int = 64,
        now_func=_now_ms,
    ) -> None:
        self._lock = threading.Lock()
        self._rooms: Dict[str, Room] = {}
        self._room_of: Dict[str, str] = {}
        self._ids = itertools.count(1)
        self._now = now_func
        self.max_message_chars = max_message_chars
        self.max_room_name_chars = max_room_name_chars

    def ensure_room(self, name: str) -> Tuple[Room, bool]:
        """Return ``(room, created)``; existing rooms are returned untouched."""

        name = clean_room_name(name)
        if not name:
            raise ValidationError("Room name is required")
        if len(name) > self.max_room_name_chars:
            raise ValidationError("Room name is too long")
        with self._lock:
            room = self._rooms.get(name)
            if room is not None:
                return room, False
            room = Room(name=name)
            self._rooms[name] = room
            return room, True

    def has_room(self, name: str) -> bool:
        with self._lock:
            return name in self._rooms

    def list_room_names(self) -> List[str]:
        with self._lock:
            return list(self._rooms)

    def join(self, connection_id: str, room_name: str) -> str | None:
        """Move ``connection_id`` into ``room_name`` and return the room it left."""

        with self._lock:
            room = self._rooms.get(room_name)
            if room is None:
                raise ValidationError("Unknown room")
            previous = self._room_of.get(connection_id)
            if previous == room_name:
                return None
            if previous is not None:
                self._rooms[previous].members.pop(connection_id, None)
            room.members[connection_id] = None
            self._room_of[connection_id] = room_name
            return previous

    def leave(self, connection_id: str) -> str | None:
        with self._lock:
            previous = self._room_of.pop(connection_id, None)
            if previous is not None:
                self._rooms[previous].members.pop(connection_id, None)
            return previous

    def room_of(self, connection_id: str) -> str | None:
        with self._lock:
            return self._room_of.get(connection_id)

    def members(self, room_name: str) -> List[str]:
        with self._lock:
            room = self._rooms.get(room_name)
            if room is None:
                return []
            return list(room.members)

    def append_message(self, room_name: str, sender_name: str, text: str) -> Message:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message text is required")
        if len(text) > self.max_message_chars:
            raise ValidationError("Message text is too long")
        with self._lock:
            room = self._rooms.get(room_name)
            if room is None:
                raise ValidationError("Unknown room")
            message = Message(
                id=next(self._ids),
                room_name=room_name,
                sender_name=sender_name,
                text=text,
                timestamp=self._now(),
            )
            room.messages.append(message)
            return message

    def history(self, room_name: str) -> List[Message]:
        """Return every message of ``room_name``, oldest first."""

        with self._lock:
            room = self._rooms.get(room_name)
            if room is None:
                raise ValidationError("Unknown room")
            return list(room.messages)
