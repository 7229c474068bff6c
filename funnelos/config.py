import json
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load env values for provider SDKs that read os.environ directly.
_project_root = Path(__file__).resolve().parents[1]
load_dotenv(_project_root / ".env", override=False)


def _coerce_json(value: str):
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"

    DATABASE_URL: str = "sqlite:///./funnelos.db"
    DB_POOL_SIZE: int = 20
    DB_POOL_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30

    BACKEND_CORS_ORIGINS: list[str] = ["http://localhost:5173"]

    AUTH_JWT_SECRET: str = "change-me"
    AUTH_JWT_ALGORITHM: str = "HS256"
    AUTH_JWT_ISSUER: Optional[str] = None
    AUTH_JWT_AUDIENCE: Optional[str] = None

    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o"
    ANTHROPIC_API_KEY: Optional[str] = None
    ANTHROPIC_MODEL: str = "claude-sonnet-4-20250514"
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-1.5-pro"
    LLM_PROVIDER_ORDER: list[str] = ["openai", "anthropic", "gemini"]
    LLM_TEMPERATURE: float = 0.7

    # Retry policy applied on top of provider fallback for every generation call.
    GENERATION_MAX_RETRIES: int = 2
    GENERATION_RETRY_BASE_SECONDS: float = 2.0
    # Locks older than this are reclaimable. Unset means "largest generation timeout + grace".
    SECTION_LOCK_MAX_AGE_SECONDS: Optional[int] = None

    @field_validator("BACKEND_CORS_ORIGINS", "LLM_PROVIDER_ORDER", mode="before")
    @classmethod
    def split_list(cls, value: Any):
        if isinstance(value, str):
            parsed = _coerce_json(value)
            if isinstance(parsed, list):
                return parsed
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("LLM_PROVIDER_ORDER")
    @classmethod
    def validate_provider_order(cls, value: list[str]) -> list[str]:
        allowed = {"openai", "anthropic", "gemini"}
        normalized = [item.strip().lower() for item in value if item and item.strip()]
        unknown = [item for item in normalized if item not in allowed]
        if unknown:
            raise ValueError(f"Unknown LLM providers in LLM_PROVIDER_ORDER: {', '.join(unknown)}")
        if not normalized:
            raise ValueError("LLM_PROVIDER_ORDER must include at least one provider")
        return normalized

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
