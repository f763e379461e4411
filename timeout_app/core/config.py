"""Core application configuration and settings.

Every limit, collection name and default used by the managers lives on
``Settings``. The process entry point builds one instance and passes it to
the store and the managers explicitly.
"""
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Load environment variables
ROOT = Path(__file__).resolve().parents[2]
load_dotenv(dotenv_path=ROOT / ".env")

DEFAULT_JWT_SECRET = "development-secret-key-change-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        populate_by_name=True,
        extra="ignore",
    )

    # Application Settings
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    api_prefix: str = Field(default="", alias="API_PREFIX")
    cors_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://127.0.0.1:5173"
        ],
        alias="CORS_ORIGINS"
    )

    # Document store
    store_backend: str = Field(default="redis", alias="STORE_BACKEND")  # redis | memory
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_password: Optional[str] = Field(default=None, alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    redis_key_prefix: str = Field(default="timeout:", alias="REDIS_KEY_PREFIX")

    # Transaction retry
    transaction_max_attempts: int = Field(default=5, alias="TRANSACTION_MAX_ATTEMPTS")
    transaction_backoff_seconds: float = Field(default=0.05, alias="TRANSACTION_BACKOFF_SECONDS")

    # Caller identity
    jwt_secret_key: str = Field(default=DEFAULT_JWT_SECRET, alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=1440, alias="ACCESS_TOKEN_EXPIRE_MINUTES")  # 24 hours
    webhook_api_keys: list[str] = Field(default_factory=list, alias="WEBHOOK_API_KEYS")

    # Collection names
    users_collection: str = Field(default="users", alias="USERS_COLLECTION")
    rooms_collection: str = Field(default="studyRooms", alias="ROOMS_COLLECTION")
    classrooms_collection: str = Field(default="classrooms", alias="CLASSROOMS_COLLECTION")
    sessions_collection: str = Field(default="liveSessions", alias="SESSIONS_COLLECTION")

    # Study rooms
    max_room_name_length: int = 100
    max_room_description_length: int = 500
    max_room_subject_length: int = 50
    min_room_participants: int = 2
    max_room_participants: int = Field(default=20, alias="MAX_ROOM_MEMBERS")
    default_room_participants: int = 8
    min_timer_minutes: int = 5
    max_timer_minutes: int = 480  # 8 hours
    default_focus_minutes: int = 25
    default_short_break_minutes: int = 5
    default_long_break_minutes: int = 15
    default_timer_sessions: int = 4
    default_public_rooms_limit: int = 20
    max_public_rooms_limit: int = 50

    # Classrooms and live sessions
    max_classroom_name_length: int = 100
    max_subject_length: int = 50
    max_description_length: int = 500
    min_students: int = 1
    max_students: int = 100
    default_max_students: int = 30
    max_session_title_length: int = 200
    default_session_title: str = "Live Class Session"
    max_session_duration_minutes: int = 480
    max_participants_per_session: int = 50
    session_allow_student_video: bool = True
    session_allow_student_audio: bool = True
    session_allow_student_chat: bool = True
    session_auto_mute_on_join: bool = True
    session_require_approval: bool = False

    def validate_required_settings(self):
        """Validate settings that must not keep their development defaults."""
        if self.store_backend not in ("redis", "memory"):
            raise ValueError(
                f"STORE_BACKEND must be 'redis' or 'memory', got '{self.store_backend}'."
            )
        if self.transaction_max_attempts < 1:
            raise ValueError("TRANSACTION_MAX_ATTEMPTS must be at least 1.")
        if self.environment == "production":
            if self.jwt_secret_key == DEFAULT_JWT_SECRET:
                raise ValueError(
                    "JWT_SECRET_KEY must be set to a secure value in production."
                )
            if self.store_backend != "redis":
                raise ValueError(
                    "The in-memory document store cannot be used in production."
                )


def load_settings(**overrides) -> Settings:
    """Build and validate a settings instance.

    Validation errors are only fatal in production so that a partially
    configured development checkout still starts.
    """
    settings = Settings(**overrides)
    if settings.environment != "test":
        try:
            settings.validate_required_settings()
        except ValueError as e:
            print(f"Configuration Error: {e}")
            if settings.environment == "production":
                raise
    return settings
