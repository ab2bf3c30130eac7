"""
Room and game HTTP endpoints.

Routes:
  POST /api/rooms                          Create room + register host as first player
  POST /api/rooms/{code}/join              Player joins the lobby
  POST /api/rooms/{code}/leave             Player leaves (room deleted once empty)
  GET  /api/rooms/{code}                   Public lobby state
  POST /api/rooms/{code}/start             Host starts the game (role assignment)
  GET  /api/rooms/{code}/view              Seat-scoped game view for one player
  POST /api/rooms/{code}/description       Submit a description on your turn
  POST /api/rooms/{code}/messages          Discussion chat line
  POST /api/rooms/{code}/advance           Discussion → voting, results → guess
  POST /api/rooms/{code}/vote              Vote a seat out
  POST /api/rooms/{code}/guess             Guess which seat is controlled
  GET  /api/rooms/{code}/events            Event log (visible only, or all after the reveal)
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from models.game import (
    ActionResult, AdvanceRequest, CreateRoomRequest, JoinRoomRequest,
    JoinRoomResponse, RejectReason, TargetRequest, TextRequest,
)
from agents.game_master import GameMaster
from services.session_registry import SessionRegistry
from routers.ws_router import broadcast_room_update

logger = logging.getLogger(__name__)

router = APIRouter(tags=["rooms"])

_STATUS_BY_REASON = {
    RejectReason.ROOM_NOT_FOUND: 404,
    RejectReason.SEAT_NOT_FOUND: 404,
    RejectReason.NOT_HOST: 403,
    RejectReason.EMPTY_TEXT: 422,
    RejectReason.TEXT_TOO_LONG: 422,
    RejectReason.INVALID_NAME: 422,
}


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_game_master(request: Request) -> GameMaster:
    return request.app.state.game_master


def raise_for_reject(result: ActionResult) -> None:
    """Translate a rejected ActionResult into an HTTPException."""
    if result:
        return
    raise HTTPException(
        status_code=_STATUS_BY_REASON.get(result.reason, 409),
        detail={"code": result.reason.value, "message": result.message},
    )


def resolve_seat(gm: GameMaster, room_code: str, player_id: str) -> str:
    """Map a lobby player id to the private id of the seat it holds."""
    if gm.get_session(room_code) is None:
        raise HTTPException(
            status_code=404,
            detail={"code": RejectReason.ROOM_NOT_FOUND.value, "message": "No game in this room"},
        )
    seat_id = gm.seat_for(room_code, player_id)
    if seat_id is None:
        raise HTTPException(
            status_code=404,
            detail={"code": RejectReason.SEAT_NOT_FOUND.value, "message": "Unknown player"},
        )
    return seat_id


def _join_response(result) -> JoinRoomResponse:
    room = result.room
    return JoinRoomResponse(
        room_code=room.code,
        player_id=result.member.id,
        players=[m.to_public() for m in room.members],
        players_needed=room.players_needed,
        is_full=room.is_full,
    )


# ── Lobby ──────────────────────────────────────────────────────────────────────

@router.post("/rooms", response_model=JoinRoomResponse, status_code=201)
async def create_room(
    body: CreateRoomRequest, registry: SessionRegistry = Depends(get_registry)
):
    """Create a new room and register the host as the first player."""
    result = registry.create_room(body.player_name)
    raise_for_reject(result)
    logger.info("Room %s created by host %s", result.room.code, result.member.id)
    return _join_response(result)


@router.post("/rooms/{room_code}/join", response_model=JoinRoomResponse)
async def join_room(
    room_code: str,
    body: JoinRoomRequest,
    registry: SessionRegistry = Depends(get_registry),
):
    result = registry.join_room(room_code, body.player_name)
    raise_for_reject(result)
    logger.info("Player %s joined room %s", result.member.id, result.room.code)
    await broadcast_room_update(result.room.code, registry)
    return _join_response(result)


@router.post("/rooms/{room_code}/leave")
async def leave_room(
    room_code: str,
    playerId: str = Query(..., description="Player UUID from join response"),
    registry: SessionRegistry = Depends(get_registry),
    gm: GameMaster = Depends(get_game_master),
):
    room = registry.get_room(room_code)
    if not room or not room.member(playerId):
        raise HTTPException(
            status_code=404,
            detail={"code": RejectReason.SEAT_NOT_FOUND.value, "message": "Player not in this room"},
        )
    result = await gm.leave(playerId)
    if not result.room_closed:
        await broadcast_room_update(room.code, registry)
    return {
        "room_code": room.code,
        "room_closed": result.room_closed,
        "host_id": None if result.room_closed else result.room.host_id,
    }


@router.get("/rooms/{room_code}")
async def get_room(room_code: str, registry: SessionRegistry = Depends(get_registry)):
    """Public lobby state: member names, host, players still needed."""
    room = registry.get_room(room_code)
    if not room:
        raise HTTPException(
            status_code=404,
            detail={"code": RejectReason.ROOM_NOT_FOUND.value, "message": "Room not found"},
        )
    return room.to_public()


@router.post("/rooms/{room_code}/start")
async def start_game(
    room_code: str,
    playerId: str = Query(..., description="Must match the room's host id"),
    registry: SessionRegistry = Depends(get_registry),
    gm: GameMaster = Depends(get_game_master),
):
    """
    Host starts the game.
    - Assigns factions, words and the controlled seat.
    - Sets room status to IN_PROGRESS.
    Requires exactly 3 human players.
    """
    result = await gm.start_game(room_code, playerId)
    raise_for_reject(result)
    session = result.session
    await broadcast_room_update(session.room_code, registry)
    return {
        "room_code": session.room_code,
        "phase": session.phase.value,
        "cycle": session.cycle,
        "seat_order": list(session.seat_order),
    }


# ── Game ───────────────────────────────────────────────────────────────────────

@router.get("/rooms/{room_code}/view")
async def get_view(
    room_code: str,
    playerId: str = Query(...),
    gm: GameMaster = Depends(get_game_master),
):
    view = await gm.get_view(room_code, resolve_seat(gm, room_code, playerId))
    if view is None:
        raise HTTPException(
            status_code=404,
            detail={"code": RejectReason.ROOM_NOT_FOUND.value, "message": "No game in this room"},
        )
    return view.model_dump(mode="json")


@router.post("/rooms/{room_code}/description")
async def submit_description(
    room_code: str, body: TextRequest, gm: GameMaster = Depends(get_game_master)
):
    result = await gm.submit_description(
        room_code, resolve_seat(gm, room_code, body.player_id), body.text
    )
    raise_for_reject(result)
    return {"ok": True, "phase": result.phase.value}


@router.post("/rooms/{room_code}/messages")
async def submit_message(
    room_code: str, body: TextRequest, gm: GameMaster = Depends(get_game_master)
):
    result = await gm.submit_discussion_message(
        room_code, resolve_seat(gm, room_code, body.player_id), body.text
    )
    raise_for_reject(result)
    return {"ok": True, "phase": result.phase.value}


@router.post("/rooms/{room_code}/advance")
async def advance_phase(
    room_code: str, body: AdvanceRequest, gm: GameMaster = Depends(get_game_master)
):
    result = await gm.advance_phase(room_code, resolve_seat(gm, room_code, body.player_id))
    raise_for_reject(result)
    return {"ok": True, "phase": result.phase.value}


@router.post("/rooms/{room_code}/vote")
async def submit_vote(
    room_code: str, body: TargetRequest, gm: GameMaster = Depends(get_game_master)
):
    result = await gm.submit_vote(
        room_code, resolve_seat(gm, room_code, body.player_id), body.target_id
    )
    raise_for_reject(result)
    return {"ok": True, "phase": result.phase.value}


@router.post("/rooms/{room_code}/guess")
async def submit_guess(
    room_code: str, body: TargetRequest, gm: GameMaster = Depends(get_game_master)
):
    result = await gm.submit_participant_guess(
        room_code, resolve_seat(gm, room_code, body.player_id), body.target_id
    )
    raise_for_reject(result)
    return {"ok": True, "phase": result.phase.value}


@router.get("/rooms/{room_code}/events")
async def get_events(room_code: str, gm: GameMaster = Depends(get_game_master)):
    """
    Returns game events.
    During the game: only visible_in_game=True events.
    After the final reveal: all events including hidden ones.
    """
    session = gm.get_session(room_code)
    if session is None:
        raise HTTPException(
            status_code=404,
            detail={"code": RejectReason.ROOM_NOT_FOUND.value, "message": "No game in this room"},
        )
    return {
        "room_code": session.room_code,
        "events": [e.model_dump(mode="json") for e in gm.public_events(room_code)],
    }
