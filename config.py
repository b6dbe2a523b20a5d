import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    data_file: str = (
        os.getenv("LIBRARY_DB_FILE")
        or os.getenv("LIBRARY_DATA_FILE")
        or "library.db"
    )
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "10"))

    # Ledger settings
    borrow_retry_attempts: int = int(os.getenv("BORROW_RETRY_ATTEMPTS", "3"))

    # Text generation (OpenAI-compatible chat completions)
    openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    openai_temperature: float = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))
    ai_timeout: float = float(os.getenv("AI_TIMEOUT", "5"))
    enable_ai_features: bool = _env_flag("ENABLE_AI_FEATURES", "True")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Ledger")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
