import asyncio
import logging
import os
from typing import Any, Dict, Optional, Set

from models.game import GameSession
from config import settings

logger = logging.getLogger(__name__)


def serialize_session(session: GameSession) -> Dict[str, Any]:
    """Flatten a finished session into a Firestore-friendly document."""
    controlled = session.controlled_seat
    return {
        "room_code": session.room_code,
        "cycles": session.cycle,
        "winner": session.winner.value if session.winner else None,
        "word_pair": list(session.word_pair),
        "controlled_seat_id": controlled.id if controlled else None,
        "seats": [
            {
                "id": seat.id,
                "name": seat.name,
                "is_controlled": seat.is_controlled,
                "faction": seat.faction.value,
                "word": seat.word,
                "alive": seat.alive,
            }
            for seat in (session.seats[sid] for sid in session.seat_order)
        ],
        "guesses": [
            {
                "seat_id": sid,
                "guessed_id": gid,
                "correct": bool(controlled and gid == controlled.id),
            }
            for sid, gid in session.guesses.items()
        ],
        "events": [
            e.model_dump(mode="json") for e in session.events
        ],
        "created_at": session.created_at.isoformat(),
    }


class ResultArchive:
    """
    Write-only Firestore archive of finished games.
    Documents are never read back; play never depends on this service.
    """

    COLLECTION = "undercover_results"

    def __init__(self, db: Optional[Any] = None):
        if db is None:
            if settings.firestore_emulator_host:
                os.environ["FIRESTORE_EMULATOR_HOST"] = settings.firestore_emulator_host
            # Lazy import so the service can be instantiated before GCP creds exist
            from google.cloud import firestore
            db = firestore.Client(project=settings.google_cloud_project or None)
        self.db = db
        self._pending: Set[asyncio.Task] = set()

    def _run(self, fn):
        """Run a sync Firestore call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, fn)

    def _result_ref(self, room_code: str):
        return self.db.collection(self.COLLECTION).document(room_code)

    async def save(self, session: GameSession) -> None:
        data = serialize_session(session)
        await self._run(lambda: self._result_ref(session.room_code).set(data))
        logger.info("[%s] Result archived", session.room_code)

    async def _save_logged(self, session: GameSession) -> None:
        try:
            await self.save(session)
        except Exception as exc:
            logger.warning("[%s] Result archive failed: %s", session.room_code, exc)

    def archive(self, session: GameSession) -> asyncio.Task:
        """Fire-and-forget save; failures are logged only."""
        task = asyncio.create_task(self._save_logged(session))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task


_result_archive: Optional[ResultArchive] = None


def get_result_archive() -> Optional[ResultArchive]:
    """Lazy singleton; None unless ARCHIVE_RESULTS is enabled."""
    global _result_archive
    if not settings.archive_results:
        return None
    if _result_archive is None:
        _result_archive = ResultArchive()
    return _result_archive
