from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Base de datos / app
    database_url: str = Field(default="sqlite:///./data/replai.db", alias="DATABASE_URL")
    frontend_origin: str = Field(default="http://localhost:5173", alias="FRONTEND_ORIGIN")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Marketplace (Wildberries)
    marketplace_feedbacks_url: str = Field(
        default="https://feedbacks-api.wildberries.ru", alias="MARKETPLACE_FEEDBACKS_URL"
    )
    marketplace_chat_url: str = Field(
        default="https://buyer-chat-api.wildberries.ru", alias="MARKETPLACE_CHAT_URL"
    )
    marketplace_timeout_seconds: float = Field(default=30, alias="MARKETPLACE_TIMEOUT_SECONDS")

    sync_page_size: int = Field(default=50, alias="SYNC_PAGE_SIZE")
    sync_page_delay_seconds: float = Field(default=0.35, alias="SYNC_PAGE_DELAY_SECONDS")
    archive_max_pages: int = Field(default=20, alias="ARCHIVE_MAX_PAGES")
    chat_events_max_pages: int = Field(default=10, alias="CHAT_EVENTS_MAX_PAGES")

    # Completion API (OpenAI-compatible, por defecto OpenRouter)
    openrouter_api_key: str = Field(default="", alias="OPENROUTER_API_KEY")
    completion_base_url: str = Field(default="https://openrouter.ai/api/v1", alias="COMPLETION_BASE_URL")
    completion_timeout_seconds: float = Field(default=60, alias="COMPLETION_TIMEOUT_SECONDS")
    ai_model_default: str = Field(default="openai/gpt-5.2", alias="AI_MODEL_DEFAULT")
    ai_model_light: str = Field(default="google/gemini-2.5-flash-lite", alias="AI_MODEL_LIGHT")
    ai_model_vision: str = Field(default="google/gemini-2.5-flash", alias="AI_MODEL_VISION")
    ai_max_tokens: int = Field(default=1000, alias="AI_MAX_TOKENS")
    ai_max_tokens_empty: int = Field(default=300, alias="AI_MAX_TOKENS_EMPTY")
    ai_temperature: float = Field(default=0.7, alias="AI_TEMPERATURE")

    # Pasarela de pago (Robokassa)
    robokassa_login: str = Field(default="", alias="ROBOKASSA_LOGIN")
    robokassa_password1: str = Field(default="", alias="ROBOKASSA_PASSWORD1")
    robokassa_password2: str = Field(default="", alias="ROBOKASSA_PASSWORD2")
    robokassa_url: str = Field(
        default="https://auth.robokassa.ru/Merchant/Index.aspx", alias="ROBOKASSA_URL"
    )
    robokassa_is_test: bool = Field(default=True, alias="ROBOKASSA_IS_TEST")
    robokassa_hash_algo: str = Field(default="md5", alias="ROBOKASSA_HASH_ALGO")

    # Ledger / jobs
    reply_cost_tokens: int = Field(default=1, alias="REPLY_COST_TOKENS")
    signup_bonus_tokens: int = Field(default=0, alias="SIGNUP_BONUS_TOKENS")
    archive_after_days: int = Field(default=7, alias="ARCHIVE_AFTER_DAYS")
    archive_batch_size: int = Field(default=100, alias="ARCHIVE_BATCH_SIZE")
    worker_poll_seconds: int = Field(default=600, alias="WORKER_POLL_SECONDS")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)


@lru_cache
def get_settings() -> Settings:
    return Settings()
