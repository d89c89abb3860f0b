from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Database (stands in for the conversations/messages document store)
    database_url: str = "sqlite:///./lexia.db"

    # JWT (tokens are issued by the auth provider; we only read the subject)
    secret_key: str = "your-secret-key-change-in-production"
    algorithm: str = "HS256"

    # Frontend URL for CORS
    frontend_url: str = "http://localhost:3000"

    # Gemini (google-genai, API key supplied per request)
    gemini_model: str = "gemini-1.5-flash-latest"
    gemini_temperature: float = 0.4
    gemini_max_output_tokens: int = 8000

    # OpenAI (ChatGPT, API key supplied per request)
    openai_model: str = "gpt-4.1"
    openai_temperature: float = 0.4
    openai_max_tokens: int = 8000

    # Redis (optional pub/sub bridge for live subscriptions; empty = in-process only)
    redis_url: str = ""  # e.g. redis://localhost:6379/0
    change_channel: str = "lexia:changes"

    # Where the client controller reaches the relay
    relay_base_url: str = "http://localhost:8001"

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
