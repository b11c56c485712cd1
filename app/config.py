from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # Application settings
    app_name: str = "SSE Dispatch"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"

    # Logging settings
    log_level: str = "INFO"
    log_json: bool = True

    # CORS settings
    allowed_origins: list[str] = ["http://localhost:3000", "http://localhost:8000"]

    # Server-Sent Events settings
    sse_heartbeat_interval: int = 25
    sse_queue_size: int = 100
    sse_disconnect_poll_interval: float = 15.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


settings = Settings()
