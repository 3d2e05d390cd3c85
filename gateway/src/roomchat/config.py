from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ChatConfig:
    general_room: str = "General"
    admin_username: str = "admin"
    admin_password: str = "admin"
    # A second login for the same user evicts the first connection.
    single_session: bool = True
    max_message_chars: int = 4000
    max_room_name_chars: int = 64
    ping_interval_s: int = 30
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576
    outbound_queue_size: int = 1000
