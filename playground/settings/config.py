# playground/settings/config.py  (Pydantic v2)
from typing import Literal, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ---------- LLM provider selection ----------
    # Provider used when a request does not name one explicitly
    LLM_PROVIDER: Literal["ollama", "anthropic", "openai"] = Field(default="ollama")
    DEFAULT_MODEL: str = Field(default="llama3.1:8b")
    LLM_TIMEOUT: float = Field(default=120.0)

    # ---------- Ollama ----------
    OLLAMA_BASE_URL: str = Field(default="http://host.docker.internal:11434")

    # ---------- Anthropic ----------
    ANTHROPIC_API_KEY: Optional[str] = Field(default=None)
    ANTHROPIC_BASE_URL: str = Field(default="https://api.anthropic.com")
    ANTHROPIC_VERSION: str = Field(default="2023-06-01")

    # ---------- OpenAI ----------
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    OPENAI_BASE_URL: str = Field(default="https://api.openai.com/v1")

    # ---------- Generation knobs ----------
    DEFAULT_TEMPERATURE: float = Field(default=0.7)
    DEFAULT_MAX_TOKENS: int = Field(default=8000)
    SECTION_MAX_TOKENS: int = Field(default=4000)
    # number of prior thread messages replayed to the model
    HISTORY_LIMIT: int = Field(default=50)
    # "preview" relays content frames live; "standard" only sends the settled report
    DEFAULT_STREAM_MODE: Literal["preview", "standard"] = Field(default="preview")

    # ---------- pydantic-settings config ----------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # allow lower/upper env names
        extra="ignore",
    )


settings = Settings()
