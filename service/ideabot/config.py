from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Supabase
    supabase_url: str
    supabase_service_role_key: str

    # Telegram
    telegram_bot_token: str
    telegram_channel_id: str  # -100... or @channel
    telegram_webhook_secret: str = ""  # Optional: for webhook verification
    webhook_base_url: str = ""  # Public URL, e.g. https://ideas-bot.onrender.com
    channel_public_username: str = ""  # For t.me links in the top ideas post
    telegram_timeout_seconds: float = 10.0
    admin_tg_ids: list[int] = []

    # Environment
    environment: str = "development"

    # Dialog SaaS: "voiceflow", "botpress" or "openai"
    dialog_provider: str = "voiceflow"
    dialog_timeout_seconds: float = 20.0

    voiceflow_api_key: str = ""
    voiceflow_version_id: str = ""
    voiceflow_runtime_url: str = "https://general-runtime.voiceflow.com"

    botpress_api_key: str = ""
    botpress_bot_id: str = ""
    botpress_api_url: str = "https://api.botpress.cloud/v1"

    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"

    # Priority payments (Telegram Stars)
    priority_price_stars: int = 300
    priority_boost_votes: int = 10

    # Submission validation
    min_title_length: int = 3
    min_description_length: int = 10
    submit_secret: str = ""  # Optional: X-Submit-Secret header for /submit
    submit_rate_limit: str = "20/minute"

    # Session store
    session_ttl_seconds: int = 3600
    session_max_entries: int = 10000

    # Pinned "top ideas" post
    top_ideas_auto_refresh: bool = False
    top_ideas_limit: int = 10

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
