from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    """
    Typed configuration for the chat relay, loaded from environment variables,
    a `.env` file or CLI args.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
        cli_prog_name="chat-relay",
    )

    port: int = Field(default=8000, alias="PORT")
    host: str = Field(default="0.0.0.0", alias="HOST")
    ws_path: str = Field(default="/", alias="WS_PATH")
    max_history: int = Field(default=100, ge=1, alias="MAX_HISTORY")
    history_file: Optional[str] = Field(
        default=None,
        alias="HISTORY_FILE",
        description="JSON-lines file used as the durable message log.",
    )
    heartbeat: Optional[float] = Field(
        default=None,
        alias="WS_HEARTBEAT",
        description="Seconds between transport-level pings. Disabled when unset.",
    )
    shutdown_timeout: float = Field(default=5.0, alias="SHUTDOWN_TIMEOUT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="rich", alias="LOG_FORMAT")

    @field_validator("log_level")
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "TRACE"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    def validate_log_format(cls, v):
        if v.lower() not in ("rich", "json"):
            raise ValueError("log_format must be 'rich' or 'json'")
        return v.lower()

    @field_validator("ws_path")
    def validate_ws_path(cls, v):
        if not v.startswith("/"):
            raise ValueError("ws_path must start with '/'")
        return v
