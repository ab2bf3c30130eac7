"""
Session Registry: in-memory lobby rooms keyed by join code.

Owns room membership before a game starts: creating rooms with fresh codes,
joining, leaving, and host hand-over. Every join-time violation comes back as a
JoinResult with an explicit RejectReason; nothing here raises for bad input.
The game session itself lives in the GameMaster.
"""
import logging
import random
from typing import Dict, List, Optional

from config import settings
from models.game import (
    ActionResult, JoinResult, LeaveResult, LobbyMember, RejectReason, Room, RoomStatus,
)

logger = logging.getLogger(__name__)

# Excludes easily confused characters: 0/O, 1/I
ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class SessionRegistry:

    def __init__(self, rng: Optional[random.Random] = None, code_length: Optional[int] = None):
        self._rng = rng or random.SystemRandom()
        self._code_length = code_length or settings.room_code_length
        self._rooms: Dict[str, Room] = {}          # room_code -> Room
        self._member_room: Dict[str, str] = {}     # member_id -> room_code

    # ── Codes ──────────────────────────────────────────────────────────────────

    def _generate_code(self) -> str:
        return "".join(
            self._rng.choice(ROOM_CODE_ALPHABET) for _ in range(self._code_length)
        )

    def _new_code(self) -> str:
        code = self._generate_code()
        while code in self._rooms:
            code = self._generate_code()
        return code

    @staticmethod
    def normalize(room_code: str) -> str:
        return room_code.strip().upper()

    def _valid_name(self, name: str) -> bool:
        name = name.strip()
        return 0 < len(name) <= settings.max_name_length

    # ── Membership ─────────────────────────────────────────────────────────────

    def create_room(self, host_name: str) -> JoinResult:
        """Create a room and seat its creator as host."""
        if not self._valid_name(host_name):
            return JoinResult(ok=False, reason=RejectReason.INVALID_NAME)

        host = LobbyMember(name=host_name.strip())
        room = Room(code=self._new_code(), members=[host], host_id=host.id)
        self._rooms[room.code] = room
        self._member_room[host.id] = room.code
        logger.info("[%s] Room created by %s", room.code, host.name)
        return JoinResult(ok=True, room=room, member=host)

    def join_room(self, room_code: str, player_name: str) -> JoinResult:
        room = self._rooms.get(self.normalize(room_code))
        if not room:
            return JoinResult(ok=False, reason=RejectReason.ROOM_NOT_FOUND)
        if room.status != RoomStatus.LOBBY:
            return JoinResult(ok=False, reason=RejectReason.GAME_IN_PROGRESS, room=room)
        if room.is_full:
            return JoinResult(ok=False, reason=RejectReason.ROOM_FULL, room=room)
        if not self._valid_name(player_name):
            return JoinResult(ok=False, reason=RejectReason.INVALID_NAME, room=room)

        name = player_name.strip()
        if name.lower() in {m.name.lower() for m in room.members}:
            return JoinResult(ok=False, reason=RejectReason.DUPLICATE_NAME, room=room)

        member = LobbyMember(name=name)
        room.members.append(member)
        self._member_room[member.id] = room.code
        logger.info(
            "[%s] %s joined (%d/%d)", room.code, name, len(room.members), room.max_players
        )
        return JoinResult(ok=True, room=room, member=member)

    def leave(self, member_id: str) -> LeaveResult:
        """
        Remove a member from whichever room they are in.
        Deletes the room once it is empty; hands host to the next member in
        join order if the host left.
        """
        room_code = self._member_room.pop(member_id, None)
        if not room_code:
            return LeaveResult()
        room = self._rooms.get(room_code)
        if not room:
            return LeaveResult()

        was_host = room.host_id == member_id
        room.members = [m for m in room.members if m.id != member_id]
        logger.info("[%s] Member %s left", room_code, member_id)

        if not room.members:
            self._rooms.pop(room_code, None)
            logger.info("[%s] Room deleted (empty)", room_code)
            return LeaveResult(room=room, was_host=was_host, room_closed=True)

        if was_host:
            room.host_id = room.members[0].id
            logger.info("[%s] New host: %s", room_code, room.members[0].name)

        return LeaveResult(room=room, was_host=was_host)

    def close_room(self, room_code: str) -> Optional[Room]:
        room = self._rooms.pop(self.normalize(room_code), None)
        if room:
            for m in room.members:
                self._member_room.pop(m.id, None)
            logger.info("[%s] Room closed", room.code)
        return room

    # ── Queries ────────────────────────────────────────────────────────────────

    def get_room(self, room_code: str) -> Optional[Room]:
        return self._rooms.get(self.normalize(room_code))

    def get_room_by_member(self, member_id: str) -> Optional[Room]:
        room_code = self._member_room.get(member_id)
        return self._rooms.get(room_code) if room_code else None

    def members(self, room_code: str) -> List[LobbyMember]:
        room = self.get_room(room_code)
        return list(room.members) if room else []

    def players_needed(self, room_code: str) -> int:
        room = self.get_room(room_code)
        return room.players_needed if room else 0

    def is_full(self, room_code: str) -> bool:
        room = self.get_room(room_code)
        return bool(room and room.is_full)

    def set_status(self, room_code: str, status: RoomStatus) -> ActionResult:
        room = self.get_room(room_code)
        if not room:
            return ActionResult.reject(RejectReason.ROOM_NOT_FOUND)
        room.status = status
        return ActionResult.accept()

    def room_count(self) -> int:
        return len(self._rooms)
