"""Settings via pydantic-settings with CHATLOOP_ env prefix.

The API key reads from the unprefixed COHERE_API_KEY so the same .env file
works for other Cohere tooling.
"""

import logging
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHATLOOP_", env_file=".env")

    api_key: str = Field("", validation_alias="COHERE_API_KEY")
    api_url: str = "https://api.cohere.com/v2/chat"
    model: str = "command-a-03-2025"

    # "v2" streams content-delta/tool-call-* events, "v1" the legacy
    # event_type flavour with chat_history + tool_results continuations
    wire_format: Literal["v2", "v1"] = "v2"
    temperature: float | None = None

    # Tool loop
    max_tool_rounds: int = Field(8, ge=0)  # Max continuation requests per exchange

    # HTTP
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    idle_read_timeout: float = 60.0  # seconds without a body chunk

    log_level: str = "info"

    @model_validator(mode="after")
    def _validate_timeouts(self) -> "Settings":
        if self.idle_read_timeout <= 0:
            raise ValueError("idle_read_timeout must be > 0")
        if self.idle_read_timeout > self.api_timeout_read:
            raise ValueError(
                f"idle_read_timeout ({self.idle_read_timeout}) must be <= "
                f"api_timeout_read ({self.api_timeout_read})"
            )
        return self


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
