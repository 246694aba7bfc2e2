from pydantic import field_validator
from pydantic_settings import BaseSettings
from slowapi import Limiter
from slowapi.util import get_remote_address


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # Server configuration
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _parse_cors(cls, v: object) -> list[str]:
        """Accept both a JSON list and a comma-separated string for CORS_ORIGINS."""
        if isinstance(v, str):
            return [o.strip() for o in v.split(",") if o.strip()]
        return v  # type: ignore[return-value]

    log_level: str = "INFO"
    environment: str = "development"
    sentry_dsn: str = ""

    # Supabase (database)
    supabase_url: str = ""
    supabase_service_key: str = ""
    sessions_table: str = "sessions"
    rooms_table: str = "rooms"
    chat_rooms_table: str = "chat_rooms"
    chat_messages_table: str = "chat_messages"

    # Access tokens are issued by the auth service; we only verify them.
    jwt_access_secret: str = ""
    jwt_algorithm: str = "HS256"

    # Shared secret for server-to-server notification pushes
    internal_api_secret: str = ""

    # Realtime
    outbound_queue_size: int = 256  # per connection; overflow drops events
    chat_history_limit: int = 500
    chat_post_rate_limit: str = "30/minute"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }


settings = Settings()

limiter = Limiter(key_func=get_remote_address)
