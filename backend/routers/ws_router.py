"""
WebSocket Hub: real-time multiplayer connection management.

URL: /ws/{room_code}?playerId={player_id}

Connection flow:
  1. Accept connection → validate room + member exist
  2. Send private "connected" message with the lobby snapshot
     (plus the seat-scoped "state" if a game is running)
  3. Broadcast "room_update" to everyone in the room
  4. Message loop (_handle_message dispatcher)
  5. On disconnect: the member leaves the room, "room_update" goes out;
     an emptied room is closed and its game torn down

Client → server message types handled here:
  ping         keep-alive heartbeat → responds with "pong"
  view         resend this player's seat-scoped state
  description  description text, on your turn only
  message      discussion chat line
  vote         vote a seat out (voting phase only)
  guess        guess which seat is controlled (guess phase only)
  advance      discussion → voting, terminal results → guess

Every accepted game action makes the GameMaster emit events; the listener
below pushes a fresh "state" message to each connected player, built by the
visibility filter for that player's seat.
"""
import json
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query

from models.game import ActionResult, GameEvent, RejectReason
from agents.game_master import GameMaster
from services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Connection Manager ─────────────────────────────────────────────────────────

class ConnectionManager:
    """
    Tracks active WebSocket connections per room.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        # {room_code: {player_id: WebSocket}}
        self._rooms: Dict[str, Dict[str, WebSocket]] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def connect(self, room_code: str, player_id: str, ws: WebSocket) -> None:
        await ws.accept()
        self._rooms.setdefault(room_code, {})[player_id] = ws
        logger.debug(
            "[%s] %s connected (%d total)", room_code, player_id, self.count(room_code)
        )

    def disconnect(self, room_code: str, player_id: str) -> None:
        room_conns = self._rooms.get(room_code, {})
        room_conns.pop(player_id, None)
        if not room_conns:
            self._rooms.pop(room_code, None)

    def count(self, room_code: str) -> int:
        return len(self._rooms.get(room_code, {}))

    def player_ids(self, room_code: str) -> List[str]:
        return list(self._rooms.get(room_code, {}))

    # ── Sending ────────────────────────────────────────────────────────────────

    async def send_to(self, room_code: str, player_id: str, message: Dict) -> None:
        """Send a private message to a single player."""
        ws = self._rooms.get(room_code, {}).get(player_id)
        if ws:
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning("[%s] send_to %s failed: %s", room_code, player_id, exc)
                self.disconnect(room_code, player_id)

    async def broadcast(
        self,
        room_code: str,
        message: Dict,
        exclude: Optional[str] = None,
    ) -> None:
        """Broadcast a message to all connected players in a room."""
        for pid, ws in list(self._rooms.get(room_code, {}).items()):
            if pid == exclude:
                continue
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning("[%s] broadcast to %s failed: %s", room_code, pid, exc)
                self.disconnect(room_code, pid)

    async def send_error(self, room_code: str, player_id: str, code: str, message: str) -> None:
        await self.send_to(room_code, player_id, {
            "type": "error", "message": message, "code": code,
        })


manager = ConnectionManager()


# ── Pushes ─────────────────────────────────────────────────────────────────────

async def broadcast_room_update(room_code: str, registry: SessionRegistry) -> None:
    room = registry.get_room(room_code)
    if room:
        await manager.broadcast(room.code, {"type": "room_update", "room": room.to_public()})


async def send_state(
    gm: GameMaster,
    room_code: str,
    player_id: str,
    events: Optional[List[GameEvent]] = None,
) -> None:
    """Send one player the game as their seat is allowed to see it."""
    seat_id = gm.seat_for(room_code, player_id)
    if seat_id is None:
        return
    view = await gm.get_view(room_code, seat_id)
    if view is None:
        return
    await manager.send_to(room_code, player_id, {
        "type": "state",
        "events": [e.model_dump(mode="json") for e in events or [] if e.visible_in_game],
        "view": view.model_dump(mode="json"),
    })


def state_pusher(gm: GameMaster):
    """GameMaster listener: push every connected player a fresh view."""
    async def _push(room_code: str, events: List[GameEvent]) -> None:
        for pid in manager.player_ids(room_code):
            await send_state(gm, room_code, pid, events)
    return _push


# ── WebSocket endpoint ─────────────────────────────────────────────────────────

@router.websocket("/ws/{room_code}")
async def websocket_endpoint(
    ws: WebSocket,
    room_code: str,
    playerId: str = Query(..., description="Player UUID from join response"),
):
    registry: SessionRegistry = ws.app.state.registry
    gm: GameMaster = ws.app.state.game_master

    # ── Validate room and member ───────────────────────────────────────────────
    room = registry.get_room(room_code)
    if not room:
        await ws.close(code=4404, reason="Room not found")
        return
    if not room.member(playerId):
        await ws.close(code=4403, reason="Player not found in this room")
        return
    code = room.code

    # ── Accept and register ────────────────────────────────────────────────────
    await manager.connect(code, playerId, ws)
    await manager.send_to(code, playerId, {
        "type": "connected",
        "playerId": playerId,
        "room": room.to_public(),
    })
    if gm.get_session(code):
        await send_state(gm, code, playerId)
    await broadcast_room_update(code, registry)

    # ── Message loop ───────────────────────────────────────────────────────────
    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send_error(code, playerId, "PARSE_ERROR", "Invalid JSON")
                continue
            if not isinstance(data, dict):
                await manager.send_error(code, playerId, "PARSE_ERROR", "Expected a JSON object")
                continue

            msg_type = data.get("type", "")
            # Frontend sends { type, data: { ... } }; unwrap inner payload for handlers
            inner_data = data.get("data") if isinstance(data.get("data"), dict) else {}
            await _handle_message(gm, code, playerId, msg_type, inner_data)

    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(code, playerId)
        result = await gm.leave(playerId)
        if not result.room_closed:
            await broadcast_room_update(code, registry)


# ── Message dispatcher ─────────────────────────────────────────────────────────

async def _handle_message(
    gm: GameMaster, room_code: str, player_id: str, msg_type: str, data: Dict
) -> None:
    try:
        await _dispatch_message(gm, room_code, player_id, msg_type, data)
    except WebSocketDisconnect:
        raise
    except Exception:
        logger.exception("[%s] Unhandled error in _handle_message (type=%s)", room_code, msg_type)
        await manager.send_error(room_code, player_id, "SERVER_ERROR", "Internal server error")


_GAME_ACTIONS = {"description", "message", "vote", "guess", "advance"}


async def _dispatch_message(
    gm: GameMaster, room_code: str, player_id: str, msg_type: str, data: Dict
) -> None:
    if msg_type == "ping":
        await manager.send_to(room_code, player_id, {"type": "pong"})
        return

    if msg_type == "view":
        await send_state(gm, room_code, player_id)
        return

    if msg_type not in _GAME_ACTIONS:
        await manager.send_error(
            room_code, player_id, "UNKNOWN_TYPE", f"Unknown message type: '{msg_type}'"
        )
        return

    seat_id = gm.seat_for(room_code, player_id)
    if seat_id is None:
        reason = RejectReason.ROOM_NOT_FOUND
        if gm.get_session(room_code) is not None:
            reason = RejectReason.SEAT_NOT_FOUND
        await _report(room_code, player_id, ActionResult.reject(reason))
        return

    if msg_type == "description":
        result = await gm.submit_description(room_code, seat_id, str(data.get("text", "")))
    elif msg_type == "message":
        result = await gm.submit_discussion_message(room_code, seat_id, str(data.get("text", "")))
    elif msg_type == "vote":
        result = await gm.submit_vote(room_code, seat_id, str(data.get("targetId", "")))
    elif msg_type == "guess":
        result = await gm.submit_participant_guess(room_code, seat_id, str(data.get("targetId", "")))
    else:
        result = await gm.advance_phase(room_code, seat_id)

    await _report(room_code, player_id, result)


async def _report(room_code: str, player_id: str, result: ActionResult) -> None:
    # Accepted actions reach everyone through the state pusher
    if not result:
        await manager.send_error(room_code, player_id, result.reason.value.upper(), result.message)
