from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    gemini_api_key: str = ""
    participant_model: str = "gemini-2.5-flash"
    participant_temperature: float = 1.0
    # Seconds to wait for the controlled seat's move before falling back
    participant_timeout_seconds: float = 20.0
    # Controlled seat posts one line per discussion phase
    participant_discussion: bool = True

    # Discussion ends by itself after this many seconds; 0 = explicit advance only
    discussion_seconds: float = 90.0
    # Minority wins once alive majority seats drop to this count or below
    minority_win_majority_floor: int = 1

    room_code_length: int = 6
    max_name_length: int = 24
    max_text_length: int = 280

    # Write final reveals to Firestore (write-only, never read back)
    archive_results: bool = False
    google_cloud_project: str = ""
    firestore_emulator_host: Optional[str] = None

    # CORS origins; set ALLOWED_ORIGINS env var for production (JSON list)
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    # Extra production origin; appended to allowed_origins
    extra_origin: str = ""
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
