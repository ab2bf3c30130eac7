from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Set, Tuple
from enum import Enum
from datetime import datetime, timezone
import uuid

from agents.turn_sequencer import TurnSequencer


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


class Faction(str, Enum):
    MAJORITY = "majority"   # shares the common word
    MINORITY = "minority"   # the odd one out


class Phase(str, Enum):
    LOBBY = "lobby"
    DESCRIPTION = "description"
    DISCUSSION = "discussion"
    VOTING = "voting"
    RESULTS = "results"
    GUESS = "guess"
    FINAL_REVEAL = "final_reveal"


# Phases at which a seat may learn its own faction
REVEAL_PHASES = {Phase.RESULTS, Phase.GUESS, Phase.FINAL_REVEAL}


class RoomStatus(str, Enum):
    LOBBY = "lobby"         # waiting for three humans
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


class MoveKind(str, Enum):
    DESCRIPTION = "description"
    DISCUSSION = "discussion"
    VOTE = "vote"


class Stance(str, Enum):
    SEEK_OUTLIER = "seek_outlier"   # majority: find the odd word
    BLEND_IN = "blend_in"           # minority: hide the odd word


class RejectReason(str, Enum):
    # Membership
    ROOM_NOT_FOUND = "room_not_found"
    ROOM_FULL = "room_full"
    DUPLICATE_NAME = "duplicate_name"
    INVALID_NAME = "invalid_name"
    GAME_IN_PROGRESS = "game_in_progress"
    NOT_ENOUGH_PLAYERS = "not_enough_players"
    NOT_HOST = "not_host"
    # Turn / phase
    WRONG_PHASE = "wrong_phase"
    NOT_YOUR_TURN = "not_your_turn"
    SEAT_NOT_FOUND = "seat_not_found"
    SEAT_ELIMINATED = "seat_eliminated"
    TARGET_NOT_ALIVE = "target_not_alive"
    SELF_TARGET = "self_target"
    ALREADY_SUBMITTED = "already_submitted"
    CONTROLLED_SEAT = "controlled_seat"
    EMPTY_TEXT = "empty_text"
    TEXT_TOO_LONG = "text_too_long"


REJECT_MESSAGES: Dict[RejectReason, str] = {
    RejectReason.ROOM_NOT_FOUND: "Room not found",
    RejectReason.ROOM_FULL: "Room is full",
    RejectReason.DUPLICATE_NAME: "Name already taken in this room",
    RejectReason.INVALID_NAME: "Name is empty or too long",
    RejectReason.GAME_IN_PROGRESS: "Game already in progress",
    RejectReason.NOT_ENOUGH_PLAYERS: "Need exactly 3 players to start",
    RejectReason.NOT_HOST: "Only the host can do that",
    RejectReason.WRONG_PHASE: "Not allowed in the current phase",
    RejectReason.NOT_YOUR_TURN: "It is not your turn",
    RejectReason.SEAT_NOT_FOUND: "Unknown player",
    RejectReason.SEAT_ELIMINATED: "Eliminated players cannot act",
    RejectReason.TARGET_NOT_ALIVE: "Target has been eliminated",
    RejectReason.SELF_TARGET: "You cannot pick yourself",
    RejectReason.ALREADY_SUBMITTED: "Already submitted",
    RejectReason.CONTROLLED_SEAT: "That seat cannot be driven from outside",
    RejectReason.EMPTY_TEXT: "Text is required",
    RejectReason.TEXT_TOO_LONG: "Text is too long",
}


class OutcomeReason(str, Enum):
    MINORITY_CAUGHT = "minority_caught"         # terminal, majority wins
    MAJORITY_DEPLETED = "majority_depleted"     # terminal, minority wins
    MAJORITY_ELIMINATED = "majority_eliminated" # new cycle, one fewer seat
    TIE = "tie"                                 # new cycle, same roster
    NO_VOTES = "no_votes"                       # degenerate tie


# One minority among four seats
FACTION_DISTRIBUTION: List[Faction] = [
    Faction.MAJORITY, Faction.MAJORITY, Faction.MAJORITY, Faction.MINORITY,
]

HUMAN_SEATS = 3

# (majority_word, minority_word)
WORD_PAIRS: List[Tuple[str, str]] = [
    ("Coffee", "Tea"),
    ("Apple", "Pear"),
    ("Soccer", "Basketball"),
    ("Cat", "Dog"),
    ("Sea", "River"),
    ("Guitar", "Violin"),
    ("Pizza", "Burger"),
    ("Train", "Bus"),
]


# ── Lobby ─────────────────────────────────────────────────────────────────────

class LobbyMember(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    joined_at: datetime = Field(default_factory=_utcnow)

    def to_public(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name}


class Room(BaseModel):
    code: str
    members: List[LobbyMember] = []   # join order
    host_id: str
    status: RoomStatus = RoomStatus.LOBBY
    max_players: int = HUMAN_SEATS
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def players_needed(self) -> int:
        return max(self.max_players - len(self.members), 0)

    @property
    def is_full(self) -> bool:
        return len(self.members) >= self.max_players

    def member(self, member_id: str) -> Optional[LobbyMember]:
        for m in self.members:
            if m.id == member_id:
                return m
        return None

    def to_public(self) -> Dict[str, Any]:
        return {
            "room_code": self.code,
            "status": self.status.value,
            "host_id": self.host_id,
            "players": [m.to_public() for m in self.members],
            "players_needed": self.players_needed,
            "is_full": self.is_full,
        }


# ── Game state ────────────────────────────────────────────────────────────────

class Seat(BaseModel):
    id: str
    name: str
    member_id: Optional[str] = None   # lobby member behind a human seat; never sent to clients
    is_controlled: bool = False
    faction: Faction
    word: str
    description: str = ""
    vote_target: Optional[str] = None
    has_described: bool = False
    has_voted: bool = False
    alive: bool = True

    def reset_round(self) -> None:
        self.description = ""
        self.vote_target = None
        self.has_described = False
        self.has_voted = False


class VoteOutcome(BaseModel):
    eliminated: Optional[str] = None
    tally: Dict[str, int] = {}
    votes: Dict[str, str] = {}   # voter -> target, snapshot of the resolved round
    tied: List[str] = []
    terminal: bool = False
    winner: Optional[Faction] = None
    reason: OutcomeReason
    cycle: int = 1


class ChatMessage(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    seat_id: str
    speaker: str
    text: str
    cycle: int
    timestamp: datetime = Field(default_factory=_utcnow)


class GameEvent(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    cycle: int
    phase: Phase
    actor: Optional[str] = None
    target: Optional[str] = None
    data: Dict[str, Any] = {}
    visible_in_game: bool = True
    timestamp: datetime = Field(default_factory=_utcnow)


class GameSession(BaseModel):
    room_code: str
    phase: Phase = Phase.DESCRIPTION
    cycle: int = 1
    seats: Dict[str, Seat] = {}
    seat_order: List[str] = []       # stable display order of all four seats
    alive_seat_ids: Set[str] = set()
    member_seats: Dict[str, str] = {}  # lobby member id -> seat id
    turn: TurnSequencer = Field(default_factory=TurnSequencer)
    word_pair: Tuple[str, str] = WORD_PAIRS[0]
    last_result: Optional[VoteOutcome] = None
    winner: Optional[Faction] = None
    guesses: Dict[str, str] = {}
    pending_guessers: Set[str] = set()
    transcript: List[ChatMessage] = []
    events: List[GameEvent] = []
    awaiting_participant: Optional[MoveKind] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def controlled_seat(self) -> Optional[Seat]:
        for seat in self.seats.values():
            if seat.is_controlled:
                return seat
        return None

    @property
    def human_seat_ids(self) -> List[str]:
        return [sid for sid in self.seat_order if not self.seats[sid].is_controlled]

    def alive_in_order(self) -> List[str]:
        """Alive seat ids in stable seat order."""
        return [sid for sid in self.seat_order if sid in self.alive_seat_ids]

    def factions(self) -> Dict[str, Faction]:
        return {sid: seat.faction for sid, seat in self.seats.items()}


# ── Result types ──────────────────────────────────────────────────────────────

class ActionResult(BaseModel):
    ok: bool
    reason: Optional[RejectReason] = None
    phase: Optional[Phase] = None

    def __bool__(self) -> bool:
        return self.ok

    @property
    def message(self) -> str:
        return REJECT_MESSAGES.get(self.reason, "") if self.reason else ""

    @classmethod
    def accept(cls, phase: Optional[Phase] = None) -> "ActionResult":
        return cls(ok=True, phase=phase)

    @classmethod
    def reject(cls, reason: RejectReason) -> "ActionResult":
        return cls(ok=False, reason=reason)


class JoinResult(ActionResult):
    room: Optional[Room] = None
    member: Optional[LobbyMember] = None


class LeaveResult(BaseModel):
    room: Optional[Room] = None
    was_host: bool = False
    room_closed: bool = False


class StartResult(ActionResult):
    session: Optional[GameSession] = None


# ── Participant adapter contract ──────────────────────────────────────────────

class ParticipantContext(BaseModel):
    room_code: str
    kind: MoveKind
    name: str
    word: str
    stance: Stance
    other_names: List[str]
    descriptions: List[Dict[str, str]] = []   # [{name, description}] visible so far
    transcript: List[Dict[str, str]] = []     # [{name, text}]
    eligible_targets: List[str] = []          # seat names
    cycle: int = 1


class ParticipantMove(BaseModel):
    content: str = ""
    vote_target: Optional[str] = None   # seat name
    thought_process: str = ""


# ── Seat-scoped views ─────────────────────────────────────────────────────────

class SeatView(BaseModel):
    id: str
    name: str
    alive: bool
    description: str = ""
    has_described: bool = False
    has_voted: bool = False
    # Populated only at final reveal
    is_controlled: Optional[bool] = None
    faction: Optional[Faction] = None
    word: Optional[str] = None


class GuessView(BaseModel):
    seat_id: str
    guessed_id: str
    correct: bool


class SeatScopedView(BaseModel):
    room_code: str
    phase: Phase
    cycle: int
    my_seat_id: str
    my_word: str
    my_faction: Optional[Faction] = None
    seats: List[SeatView]
    turn_order: List[str] = []
    current_turn: Optional[str] = None
    transcript: List[ChatMessage] = []
    last_result: Optional[VoteOutcome] = None
    winner: Optional[Faction] = None
    has_guessed: bool = False
    guesses_outstanding: int = 0
    guesses: List[GuessView] = []
    controlled_seat_id: Optional[str] = None


# ── HTTP request/response models ──────────────────────────────────────────────

class CreateRoomRequest(BaseModel):
    player_name: str


class JoinRoomRequest(BaseModel):
    player_name: str


class JoinRoomResponse(BaseModel):
    room_code: str
    player_id: str
    players: List[Dict[str, Any]]
    players_needed: int
    is_full: bool


class TextRequest(BaseModel):
    player_id: str
    text: str


class TargetRequest(BaseModel):
    player_id: str
    target_id: str


class AdvanceRequest(BaseModel):
    player_id: str
