from __future__ import annotations

import secrets
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
LOG_DIR = BASE_DIR / "logs"

# Face descriptor geometry and the matching operating point.
DESCRIPTOR_SIZE = 128
DEFAULT_MATCH_THRESHOLD = 0.6
DEFAULT_MIN_CONFIDENCE = 0.6
DEFAULT_CAPTURE_INTERVAL_MS = 1500

# Incident wording written to the log collection.
LATE_REASON_DEFAULT = "No reason provided"
LEAVE_REASON = "Period leave approved"
UNKNOWN_EMAIL = "Unknown"

ROLE_TEACHER = "teacher"
ROLE_ADMIN = "admin"
ROLES = (ROLE_TEACHER, ROLE_ADMIN)

GENDERS = ("L", "P")

STUDENTS_COLLECTION = "students"
LOGS_COLLECTION = "logs"
USERS_COLLECTION = "users"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TARDY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Tardy Scanner"
    app_id: str = "default-app"
    api_prefix: str = "/api"
    log_level: str = "INFO"

    database_url: str = f"sqlite:///{DATA_DIR / 'tardy_scanner.db'}"

    jwt_secret: str = Field(default_factory=lambda: secrets.token_urlsafe(48))
    jwt_algorithm: str = "HS256"
    access_token_minutes: int = 480
    initial_auth_token: str = ""

    bootstrap_admin_email: str = "admin@school.local"
    bootstrap_admin_password: str = ""

    match_threshold: float = DEFAULT_MATCH_THRESHOLD
    min_detection_confidence: float = DEFAULT_MIN_CONFIDENCE
    capture_interval_ms: int = DEFAULT_CAPTURE_INTERVAL_MS

    camera_index: int = 0
    frame_width: int = 1280
    frame_height: int = 720
    frame_fps: int = 30
    jpeg_quality: int = 78

    recognition_policy: str = "immediate"
    vote_window: int = 5
    vote_quorum: int = 3

    period_leave_genders_raw: str = "P"
    cors_origins_raw: str = "http://localhost:3000,http://localhost:5173"

    @property
    def capture_interval_seconds(self) -> float:
        return max(0.05, self.capture_interval_ms / 1000.0)

    @property
    def period_leave_genders(self) -> frozenset[str]:
        return frozenset(token.strip() for token in self.period_leave_genders_raw.split(",") if token.strip())

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def collection_path(app_id: str, name: str) -> str:
    return f"artifacts/{app_id}/public/data/{name}"
