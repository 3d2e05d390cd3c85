"""The synchronization core: validates intents, mutates state, computes fan-out.

Every intent runs as one transaction under a single lock: session checks,
store mutation, recipient resolution and hand-off to the hub all happen
before the next intent is looked at. That is what gives every member of a
room the same ``new_message`` order.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Tuple, Type, Union

from .accounts import BANNED_MESSAGE, AccountStore, User
from .config import ChatConfig
from .errors import (
    AlreadyAuthenticated,
    AuthError,
    BannedError,
    ChatError,
    ConflictError,
    PermissionDenied,
    ValidationError,
)
from .hub import ConnectionHub, Delivery
from .protocol import (
    AdminGetAllData,
    AdminToggleBan,
    AuthFailure,
    AuthSuccess,
    CreateRoom,
    ErrorNotice,
    ForceDisconnect,
    InitRoomData,
    Intent,
    JoinRoom,
    Login,
    Logout,
    NewMessage,
    Notification,
    SendMessage,
    Signup,
    UpdateRoomList,
    UpdateUserList,
    UserEntry,
)
from .rooms import RoomRegistry, clean_room_name
from .sessions import Session, SessionManager

logger = logging.getLogger(__name__)

AUTH_REQUIRED = "Authentication required"
BANNED_REASON = "You have been banned"
REPLACED_REASON = "Signed in from another connection"

Handler = Callable[..., List[Delivery]]


@dataclass(frozen=True)
class Credentials:
    """Result of the password work for a signup or login.

    Hashing is slow, so transports compute this with
    :meth:`ChatRouter.check_credentials` off the event loop and hand it to
    :meth:`ChatRouter.handle`. Exactly one of the fields is set.
    """

    user: User | None = None
    password_hash: str | None = None
    error: ChatError | None = None


class ChatRouter:
    def __init__(
        self,
        config: ChatConfig | None = None,
        *,
        accounts: AccountStore | None = None,
        rooms: RoomRegistry | None = None,
        sessions: SessionManager | None = None,
        hub: ConnectionHub | None = None,
    ) -> None:
        self.config = config or ChatConfig()
        self.accounts = accounts or AccountStore()
        self.rooms = rooms or RoomRegistry(
            max_message_chars=self.config.max_message_chars,
            max_room_name_chars=self.config.max_room_name_chars,
        )
        self.sessions = sessions or SessionManager(single_session=self.config.single_session)
        self.hub = hub or ConnectionHub()
        self._lock = threading.RLock()
        self._handlers: Dict[Type, Handler] = {
            Signup: self._signup,
            Login: self._login,
            Logout: self._logout,
            CreateRoom: self._create_room,
            JoinRoom: self._join_room,
            SendMessage: self._send_message,
            AdminGetAllData: self._admin_get_all_data,
            AdminToggleBan: self._admin_toggle_ban,
        }
        self.accounts.seed_admin(self.config.admin_username, self.config.admin_password)
        self.rooms.ensure_room(self.config.general_room)

    # --- transport entry points ---

    def connect(self, connection_id: str) -> Session:
        with self._lock:
            return self.sessions.attach(connection_id)

    def check_credentials(self, intent: Union[Signup, Login]) -> Credentials:
        """Do the password hashing for ``intent`` without taking the router lock."""

        if isinstance(intent, Signup):
            return Credentials(password_hash=self.accounts.hash(intent.password or ""))
        try:
            return Credentials(user=self.accounts.authenticate(intent.username, intent.password))
        except ChatError as exc:
            return Credentials(error=exc)

    def handle(self, connection_id: str, intent: Intent, credentials: Credentials | None = None) -> List[Delivery]:
        """Apply ``intent`` for ``connection_id`` and dispatch the resulting deliveries.

        ``credentials`` is only read for signup and login; without it the
        password work happens inline.
        """

        handler = self._handlers.get(type(intent))
        if handler is None:
            raise TypeError(f"unsupported intent: {intent!r}")
        extra = {"credentials": credentials} if isinstance(intent, (Signup, Login)) else {}
        with self._lock:
            try:
                deliveries = handler(connection_id, intent, **extra)
            except ChatError as exc:
                deliveries = self._failure(connection_id, intent, exc)
            self.hub.dispatch(deliveries)
        return deliveries

    def reject(self, connection_id: str, error: ChatError) -> List[Delivery]:
        """Report a frame that never decoded into an intent."""

        deliveries = [self._direct(connection_id, ErrorNotice(error.code, str(error)))]
        with self._lock:
            self.hub.dispatch(deliveries)
        return deliveries

    def disconnect(self, connection_id: str) -> List[Delivery]:
        with self._lock:
            session = self.sessions.detach(connection_id)
            left = self.rooms.leave(connection_id)
            deliveries = self._presence(left) if left else []
            self.hub.dispatch(deliveries)
        if session is not None and session.username is not None:
            logger.info("%s disconnected (%s)", session.username, connection_id)
        return deliveries

    # --- intent handlers ---

    def _signup(self, connection_id: str, intent: Signup, credentials: Credentials | None = None) -> List[Delivery]:
        self._require_anonymous(connection_id)
        password_hash = credentials.password_hash if credentials is not None else None
        user = self.accounts.create_account(intent.username, intent.password, password_hash=password_hash)
        deliveries = self._sign_in(connection_id, user)
        deliveries.append(self._to_admins(UpdateUserList(self._all_users())))
        return deliveries

    def _login(self, connection_id: str, intent: Login, credentials: Credentials | None = None) -> List[Delivery]:
        self._require_anonymous(connection_id)
        credentials = credentials or self.check_credentials(intent)
        if credentials.error is not None:
            raise credentials.error
        # a ban may have landed after the password was checked
        if credentials.user.is_banned:
            raise BannedError(BANNED_MESSAGE)
        return self._sign_in(connection_id, credentials.user)

    def _logout(self, connection_id: str, intent: Logout) -> List[Delivery]:
        self._require_session(connection_id)
        left = self.rooms.leave(connection_id)
        self.sessions.sign_out(connection_id)
        return self._presence(left) if left else []

    def _create_room(self, connection_id: str, intent: CreateRoom) -> List[Delivery]:
        session = self._require_session(connection_id)
        room, created = self.rooms.ensure_room(intent.name)
        if not created:
            raise ConflictError("Room already exists")
        logger.info("%s created room %s", session.username, room.name)
        return [self._to_everyone(UpdateRoomList(tuple(self.rooms.list_room_names())))]

    def _join_room(self, connection_id: str, intent: JoinRoom) -> List[Delivery]:
        self._require_session(connection_id)
        room_name = clean_room_name(intent.name)
        if not self.rooms.has_room(room_name):
            raise ValidationError("Unknown room")
        return self._enter_room(connection_id, room_name)

    def _send_message(self, connection_id: str, intent: SendMessage) -> List[Delivery]:
        session = self._require_session(connection_id)
        room_name = clean_room_name(intent.room_name)
        if not self.rooms.has_room(room_name):
            raise ValidationError("Unknown room")
        if self.rooms.room_of(connection_id) != room_name:
            raise PermissionDenied("Join the room before sending to it")
        message = self.rooms.append_message(room_name, session.username, intent.text)
        return [self._to_room(room_name, NewMessage(message))]

    def _admin_get_all_data(self, connection_id: str, intent: AdminGetAllData) -> List[Delivery]:
        self._require_admin(connection_id)
        data = InitRoomData(rooms=tuple(self.rooms.list_room_names()), users=self._all_users())
        return [self._direct(connection_id, data)]

    def _admin_toggle_ban(self, connection_id: str, intent: AdminToggleBan) -> List[Delivery]:
        actor = self._require_admin(connection_id)
        target = self.accounts.get(intent.username)
        if target is None:
            raise ValidationError("Unknown user")
        banned = not target.is_banned
        self.accounts.set_ban(actor, target.username, banned)
        deliveries = [self._to_admins(UpdateUserList(self._all_users()))]
        if banned:
            deliveries.extend(self._evict(target.username, BANNED_REASON))
        return deliveries

    # --- transitions ---

    def _sign_in(self, connection_id: str, user: User) -> List[Delivery]:
        deliveries: List[Delivery] = []
        if self.sessions.single_session:
            deliveries.extend(self._evict(user.username, REPLACED_REASON))
        self.sessions.authenticate_session(connection_id, user)
        logger.info("%s signed in (%s)", user.username, connection_id)
        deliveries.append(self._direct(connection_id, AuthSuccess(user.username, user.is_admin)))
        deliveries.extend(self._enter_room(connection_id, self.config.general_room))
        return deliveries

    def _enter_room(self, connection_id: str, room_name: str) -> List[Delivery]:
        already_there = self.rooms.room_of(connection_id) == room_name
        previous = self.rooms.join(connection_id, room_name)
        self.sessions.set_current_room(connection_id, room_name)
        session = self.sessions.get(connection_id)
        data = InitRoomData(
            rooms=tuple(self.rooms.list_room_names()),
            users=self._user_view(session),
            messages=tuple(self.rooms.history(room_name)),
            current_room=room_name,
        )
        deliveries = [self._direct(connection_id, data)]
        if already_there:
            return deliveries
        if previous is not None:
            deliveries.extend(self._presence(previous))
        deliveries.extend(self._presence(room_name, exclude=connection_id))
        return deliveries

    def _evict(self, username: str, reason: str) -> List[Delivery]:
        deliveries: List[Delivery] = []
        for session in self.sessions.force_disconnect(username, reason):
            deliveries.append(self._direct(session.connection_id, ForceDisconnect(reason)))
            left = self.rooms.leave(session.connection_id)
            if left is not None:
                deliveries.extend(self._presence(left))
        return deliveries

    def _failure(self, connection_id: str, intent: Intent, exc: ChatError) -> List[Delivery]:
        if isinstance(exc, AuthError) or isinstance(intent, (Signup, Login)):
            logger.info("rejected %s from %s: %s", intent.event, connection_id, exc)
            return [self._direct(connection_id, AuthFailure(str(exc)))]
        logger.debug("rejected %s from %s: %s", intent.event, connection_id, exc)
        return [self._direct(connection_id, ErrorNotice(exc.code, str(exc)))]

    # --- session checks ---

    def _require_session(self, connection_id: str) -> Session:
        session = self.sessions.get(connection_id)
        if session is None or not session.authenticated:
            raise AuthError(AUTH_REQUIRED)
        return session

    def _require_anonymous(self, connection_id: str) -> Session:
        session = self.sessions.get(connection_id)
        if session is None:
            raise AuthError(AUTH_REQUIRED)
        if session.authenticated:
            raise AlreadyAuthenticated("Already signed in on this connection")
        return session

    def _require_admin(self, connection_id: str) -> User:
        session = self._require_session(connection_id)
        user = self.accounts.get(session.username)
        if user is None or not user.is_admin:
            raise PermissionDenied("Admin privileges required")
        return user

    # --- projections ---

    def _all_users(self) -> Tuple[UserEntry, ...]:
        return tuple(UserEntry(user.username, user.is_banned) for user in self.accounts.list_all())

    def _room_users(self, room_name: str) -> Tuple[UserEntry, ...]:
        entries: Dict[str, UserEntry] = {}
        for member in self.rooms.members(room_name):
            session = self.sessions.get(member)
            if session is None or session.username is None or session.username in entries:
                continue
            user = self.accounts.get(session.username)
            entries[session.username] = UserEntry(session.username, bool(user and user.is_banned))
        return tuple(entries.values())

    def _user_view(self, session: Session | None) -> Tuple[UserEntry, ...]:
        if session is None:
            return ()
        if session.is_admin:
            return self._all_users()
        if session.current_room is None:
            return ()
        return self._room_users(session.current_room)

    # --- fan-out primitives ---

    @staticmethod
    def _direct(connection_id: str, notification: Notification) -> Delivery:
        return Delivery((connection_id,), notification)

    def _to_everyone(self, notification: Notification) -> Delivery:
        """Address every signed-in connection.

        Anonymous connections are left out; they get the full room list in
        ``init_room_data`` once they sign in.
        """

        return Delivery(tuple(self.sessions.authenticated_connections()), notification, scope="global")

    def _to_room(self, room_name: str, notification: Notification) -> Delivery:
        return Delivery(tuple(self.rooms.members(room_name)), notification, scope="room")

    def _to_admins(self, notification: Notification) -> Delivery:
        return Delivery(tuple(self.sessions.admin_connections()), notification, scope="admins")

    def _presence(self, room_name: str, *, exclude: str | None = None) -> List[Delivery]:
        """Send the refreshed member list to the non-admin members of ``room_name``."""

        recipients = self._non_admins(m for m in self.rooms.members(room_name) if m != exclude)
        if not recipients:
            return []
        return [Delivery(recipients, UpdateUserList(self._room_users(room_name)), scope="room")]

    def _non_admins(self, connection_ids: Iterable[str]) -> Tuple[str, ...]:
        recipients = []
        for connection_id in connection_ids:
            session = self.sessions.get(connection_id)
            if session is not None and not session.is_admin:
                recipients.append(connection_id)
        return tuple(recipients)
