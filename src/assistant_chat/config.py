"""Pydantic settings loaded from the environment and an optional .env file."""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful, multilingual assistant. Provide concise, accurate "
    "responses for general queries, coding assistance, and reasoning tasks."
)


class Settings(BaseSettings):
    """Runtime configuration, read from ``ASSISTANT_CHAT_*`` variables."""

    provider: Literal["groq", "openai", "gemini"] = "groq"
    api_key: SecretStr = SecretStr("")
    base_url: Optional[str] = None  # overrides the provider's default endpoint

    default_model: str = "llama-3.3-70b-versatile"
    temperature: float = Field(default=0.6, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, gt=0)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # "native" reads the upstream's incremental frames; "chunked" splits a
    # complete answer into word fragments for upstreams that cannot stream.
    stream_strategy: Literal["native", "chunked"] = "native"
    chunk_delay: float = Field(default=0.05, ge=0.0)
    request_timeout: float = Field(default=60.0, gt=0)

    log_level: str = "INFO"
    log_json: bool = False
    cors_origins: List[str] = ["*"]

    model_config = SettingsConfigDict(
        env_prefix="ASSISTANT_CHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Returns the process-wide settings instance"""
    return Settings()
