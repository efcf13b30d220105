import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Storage
    db_file: str = os.getenv("LIBRARY_DB_FILE", "school_library.db")
    seed_demo_data: bool = _env_bool("LIBRARY_SEED_DEMO", "True")

    # Login (single librarian account)
    username: str = os.getenv("LIBRARY_USERNAME", "Trần Thị Kim Thoa")
    password: str = os.getenv("LIBRARY_PASSWORD", "12345")

    # Loan rules
    loan_days: int = int(os.getenv("LOAN_DAYS", "14"))
    renew_days: int = int(os.getenv("RENEW_DAYS", "7"))
    fine_per_day: int = int(os.getenv("FINE_PER_DAY", "5000"))
    borrow_limit: int = int(os.getenv("BORROW_LIMIT", "3"))

    # Gemini API
    gemini_api_key: Optional[str] = os.getenv("GEMINI_API_KEY")
    gemini_base_url: str = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
    gemini_timeout: float = float(os.getenv("GEMINI_TIMEOUT", "30"))

    # API server
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Application
    app_name: str = os.getenv("APP_NAME", "School Library Manager")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _env_bool("DEBUG", "False")


settings = Settings()
