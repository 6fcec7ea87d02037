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

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Mini Library")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "12"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Circulation
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    reservation_hold_days: int = int(os.getenv("RESERVATION_HOLD_DAYS", "7"))

    # Gemini (Google Generative Language API)
    gemini_api_key: Optional[str] = os.getenv("GEMINI_API_KEY")
    gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    gemini_timeout: float = float(os.getenv("GEMINI_TIMEOUT", "20"))

    # AI feature flags and prompt sizes
    enable_ai_features: bool = _env_flag("ENABLE_AI_FEATURES", "True")
    ai_catalog_limit: int = int(os.getenv("AI_CATALOG_LIMIT", "100"))
    ai_recommend_pool: int = int(os.getenv("AI_RECOMMEND_POOL", "50"))


settings = Settings()
