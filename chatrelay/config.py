from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Storage - one SQLite file per conversation lives in this directory
    PARTITION_DIR: str = "./data/partitions"

    LOG_LEVEL: str = "INFO"

    # Channel security
    WEBHOOK_SECRET: str = ""
    CHANNEL_TOKEN: str = ""

    # Redelivery / dead-letter policy
    DEAD_KNOCK_THRESHOLD: int = 2
    DEAD_TIMEOUT_SECONDS: int = 3
    CHANNEL_TIMEOUT_SECONDS: float = 4.5
    POLL_INTERVAL_SECONDS: float = 0.2
    CONTEXT_WINDOW: int = 6
    FALLBACK_REPLY: str = "Sorry, that took too long. Please send your message again."

    # Inference backend (Azure OpenAI chat completions)
    AZURE_AI_INFERENCE_ENDPOINT: str = ""
    AZURE_AI_INFERENCE_API_KEY: str = ""
    AZURE_AI_MODEL: str = "gpt-4.1-mini"
    AZURE_AI_API_VERSION: str = "2025-01-01-preview"
    AZURE_AI_MAX_TOKENS: int = 1000
    AZURE_AI_TEMPERATURE: float = 0.7
    INFERENCE_TIMEOUT_SECONDS: float = 30.0
    SYSTEM_PROMPT: str = "You are a helpful assistant. Keep answers short."
    IMAGE_PROMPT: str = "Describe the main object in this picture and answer briefly."


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
