"""Room chat core: accounts, rooms, sessions and the protocol router."""

from .accounts import AccountStore, User
from .config import ChatConfig
from .hub import ConnectionHub, Delivery
from .rooms import Message, Room, RoomRegistry
from .router import ChatRouter
from .server import main, simulate
from .sessions import Session, SessionManager

__all__ = [
    "AccountStore",
    "User",
    "ChatConfig",
    "ConnectionHub",
    "Delivery",
    "Message",
    "Room",
    "RoomRegistry",
    "ChatRouter",
    "main",
    "simulate",
    "Session",
    "SessionManager",
]
