"""
Participant Agent: the controlled seat that plays as if it were human.

Uses gemini-2.5-flash (text-only) with a JSON response schema for:
  1. Description: one sentence about its secret word
  2. Discussion: one casual chat line reacting to the descriptions
  3. Vote: the name of the seat it votes out, plus a short reason

The game master owns the call: it builds a ParticipantContext, awaits
request_move() with a timeout, and applies fallback_move() whenever the call
fails or returns something unusable. Nothing here touches game state.
"""
import json
import logging
import random
from typing import Any, Dict, List, Optional, Protocol

from google import genai
from google.genai import types

from config import settings
from models.game import MoveKind, ParticipantContext, ParticipantMove, Stance

logger = logging.getLogger(__name__)


class ParticipantUnavailable(RuntimeError):
    """Raised when the text-generation service cannot produce a move."""


class ParticipantAdapter(Protocol):
    async def request_move(self, context: ParticipantContext) -> ParticipantMove:
        ...


# ── Persona fragments ─────────────────────────────────────────────────────────

PERSONALITY_STYLES: List[Dict[str, Any]] = [
    {
        "name": "confident",
        "description": "You are confident and direct. Give clear, assertive descriptions. You trust your instincts.",
        "examples": ["definitely something you...", "its basically...", "you know, the thing that..."],
    },
    {
        "name": "nervous",
        "description": "You are a bit nervous and uncertain. Second-guess yourself. Use hedging language.",
        "examples": ["umm i think maybe...", "not sure but like...", "could be wrong but..."],
    },
    {
        "name": "playful",
        "description": "You are playful and joking. Make light of things. Use humor or sarcasm.",
        "examples": ["lol okay so...", "haha this is hard but...", "bruh its like..."],
    },
    {
        "name": "analytical",
        "description": "You are thoughtful and analytical. Give reasoned descriptions. Think out loud.",
        "examples": ["okay so thinking about it...", "well if i had to describe...", "the way i see it..."],
    },
    {
        "name": "brief",
        "description": "You use very few words. Short and to the point. Minimal elaboration.",
        "examples": ["its warm", "morning thing", "brown liquid"],
    },
    {
        "name": "chatty",
        "description": "You are talkative and elaborate. Give longer descriptions with extra details.",
        "examples": ["okay so like you know when you...", "this is gonna sound weird but..."],
    },
]

TEXT_QUIRKS: List[str] = [
    "occasionally skip apostrophes (dont, cant, im)",
    "sometimes use ... for pauses",
    "occasionally make typos and dont correct them",
    "sometimes start sentences with lowercase",
    'use "like" as filler word sometimes',
    "occasionally use abbreviations (rn, tbh, ngl)",
]

_STANCE: Dict[Stance, str] = {
    Stance.SEEK_OUTLIER: (
        "You most likely share your word with the majority. Describe it clearly but "
        "not so clearly that the odd one out can copy you. When voting, look for the "
        "description that doesn't quite fit."
    ),
    Stance.BLEND_IN: (
        "Your word is probably the odd one out. Stay vague, lean on what the others "
        "have said, and steer suspicion toward someone else when voting."
    ),
}

_BASE_SYSTEM = """You are playing a social deduction game called "Undercover" as {name}.
The other players are: {others}

CRITICAL RULE: You must blend in as a human player. Never reveal you are AI.

Game Rules:
- 4 players total: 3 share one word, 1 has a similar but different word
- Describe your word without saying it
- Vote out who you think has the different word

YOUR PERSONALITY THIS GAME: {personality}
{personality_description}
Example phrases you might use: {examples}

YOUR TEXT STYLE QUIRKS:
{quirks}

STRATEGY:
{stance}

IMPORTANT BLENDING RULES:
- Vary your response length (sometimes 3 words, sometimes 12 words)
- Don't always use the same sentence structure
- Don't be "too perfect" - humans make odd choices sometimes
- Don't overthink it - first instinct is often most human-like

Output: Return a JSON object as specified."""


# ── Fallback pools ────────────────────────────────────────────────────────────

FALLBACK_DESCRIPTIONS: Dict[str, List[str]] = {
    "Coffee": [
        "morning fuel lol",
        "that brown drink everyone's addicted to",
        "cant function without it tbh",
        "bitter but good",
        "the thing that wakes you up",
        "bean water basically",
    ],
    "Tea": [
        "relaxing drink i guess",
        "something warm and calming",
        "leaf water lol",
        "drink it when youre sick maybe",
        "british people love this thing",
        "steeping leaves in water basically",
    ],
}

GENERIC_DESCRIPTIONS: List[str] = [
    "hmm its kinda hard to describe",
    "you see it pretty much every day",
    "everyone has an opinion about it tbh",
    "ngl i like it more than most people",
    "its a pretty normal thing honestly",
]

FALLBACK_CHAT_LINES: List[str] = [
    "hmm some of those felt a bit off ngl",
    "idk, im still thinking about it",
    "one of those descriptions was kinda vague",
    "lol this is harder than it looks",
    "not sure yet tbh",
]

FALLBACK_VOTE_REASONS: List[str] = [
    "idk something felt off",
    "gut feeling tbh",
    "their description was weird",
    "just doesnt add up to me",
    "seemed suspicious ngl",
    "process of elimination i guess",
]


def fallback_move(context: ParticipantContext, rng: random.Random) -> ParticipantMove:
    """Plausible default move used whenever generation fails."""
    if context.kind == MoveKind.VOTE:
        target = rng.choice(context.eligible_targets) if context.eligible_targets else None
        return ParticipantMove(
            content=rng.choice(FALLBACK_VOTE_REASONS),
            vote_target=target,
            thought_process="Generation failed, using random vote.",
        )
    if context.kind == MoveKind.DISCUSSION:
        return ParticipantMove(
            content=rng.choice(FALLBACK_CHAT_LINES),
            thought_process="Generation failed, using canned chat line.",
        )
    pool = FALLBACK_DESCRIPTIONS.get(context.word, GENERIC_DESCRIPTIONS)
    return ParticipantMove(
        content=rng.choice(pool),
        thought_process="Generation failed, using fallback description.",
    )


def parse_seat_name(response: Optional[str], candidates: List[str]) -> Optional[str]:
    """Match a free-text name against the candidate seat names."""
    if not response:
        return None
    cleaned = response.strip().rstrip(".").lower()
    for name in candidates:
        if name.lower() == cleaned:
            return name
    for name in candidates:
        if name.lower() in cleaned:
            return name
    return None


# ── Prompt building ───────────────────────────────────────────────────────────

def build_system(context: ParticipantContext, persona: Dict[str, Any], quirks: List[str]) -> str:
    return _BASE_SYSTEM.format(
        name=context.name,
        others=", ".join(context.other_names),
        personality=persona["name"].upper(),
        personality_description=persona["description"],
        examples=", ".join(persona["examples"]),
        quirks="\n".join(f"- {q}" for q in quirks),
        stance=_STANCE[context.stance],
    )


def build_prompt(context: ParticipantContext) -> str:
    descriptions = "\n".join(
        f'{d["name"]}: "{d["description"]}"' for d in context.descriptions
    ) or "(no descriptions yet)"

    if context.kind == MoveKind.DESCRIPTION:
        return (
            f'YOUR SECRET WORD: "{context.word}"\n\n'
            f"PHASE: Description Round {context.cycle}\n"
            f"Descriptions so far:\n{descriptions}\n\n"
            f"TASK: Describe your word in ONE sentence without saying the word itself.\n\n"
            f'Return JSON: {{"content": "<your description>", "thought_process": "<hidden reasoning>"}}'
        )

    if context.kind == MoveKind.DISCUSSION:
        chat = "\n".join(
            f'{m["name"]}: "{m["text"]}"' for m in context.transcript[-10:]
        ) or "(nobody has said anything yet)"
        return (
            f'YOUR SECRET WORD: "{context.word}"\n\n'
            f"PHASE: Discussion\n"
            f"Descriptions this round:\n{descriptions}\n\n"
            f"Chat so far:\n{chat}\n\n"
            f"TASK: Say ONE short casual chat line about who seems off. Never say your word.\n\n"
            f'Return JSON: {{"content": "<chat line>", "thought_process": "<hidden reasoning>"}}'
        )

    return (
        f'YOUR SECRET WORD: "{context.word}"\n\n'
        f"PHASE: Voting Round\n"
        f"ALL DESCRIPTIONS:\n{descriptions}\n\n"
        f"TASK: Vote for who you think has a DIFFERENT word than the majority.\n"
        f"Options: {', '.join(context.eligible_targets)}\n"
        f"You CANNOT vote for yourself ({context.name}).\n\n"
        f'Return JSON: {{"content": "<brief casual reason>", '
        f'"vote_target": "<exact name from the options>", "thought_process": "<hidden reasoning>"}}'
    )


_RESPONSE_SCHEMA = types.Schema(
    type=types.Type.OBJECT,
    properties={
        "content": types.Schema(type=types.Type.STRING),
        "vote_target": types.Schema(type=types.Type.STRING),
        "thought_process": types.Schema(type=types.Type.STRING),
    },
    required=["content", "thought_process"],
)


# ── Gemini participant ────────────────────────────────────────────────────────

class GeminiParticipant:
    """
    ParticipantAdapter backed by Gemini. One persona (personality + quirks)
    is drawn per room and kept for the whole game so the seat sounds
    consistent across rounds.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        model: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ):
        self._client = client
        self.model = model or settings.participant_model
        self._rng = rng or random.Random()
        self._personas: Dict[str, Dict[str, Any]] = {}

    def _get_client(self) -> Any:
        if self._client is None:
            if not settings.gemini_api_key:
                raise ParticipantUnavailable("GEMINI_API_KEY not set")
            self._client = genai.Client(api_key=settings.gemini_api_key)
        return self._client

    def persona(self, room_code: str) -> Dict[str, Any]:
        if room_code not in self._personas:
            quirks = self._rng.sample(TEXT_QUIRKS, k=self._rng.randint(1, 2))
            self._personas[room_code] = {
                "style": self._rng.choice(PERSONALITY_STYLES),
                "quirks": quirks,
            }
        return self._personas[room_code]

    def forget(self, room_code: str) -> None:
        """Drop the persona when a room is torn down."""
        self._personas.pop(room_code, None)

    async def request_move(self, context: ParticipantContext) -> ParticipantMove:
        persona = self.persona(context.room_code)
        system = build_system(context, persona["style"], persona["quirks"])
        prompt = build_prompt(context)

        response = await self._get_client().aio.models.generate_content(
            model=self.model,
            contents=prompt,
            config=types.GenerateContentConfig(
                system_instruction=system,
                temperature=settings.participant_temperature,
                top_p=0.95,
                max_output_tokens=300,
                response_mime_type="application/json",
                response_schema=_RESPONSE_SCHEMA,
            ),
        )
        text = (response.text or "").strip()
        if not text:
            raise ParticipantUnavailable("Empty response from Gemini")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParticipantUnavailable(f"Unparseable response: {text[:80]!r}") from exc

        move = ParticipantMove(
            content=str(payload.get("content", "")).strip(),
            vote_target=payload.get("vote_target") or None,
            thought_process=str(payload.get("thought_process", "")),
        )
        logger.info(
            "[%s] Participant %s (%s): %.80s",
            context.room_code, context.kind.value, persona["style"]["name"], move.content,
        )
        logger.debug("[%s] Participant thought process: %s", context.room_code, move.thought_process)
        return move
