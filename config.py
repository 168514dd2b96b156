import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    # Token of the bootstrap admin account
    api_key: str = os.getenv("API_KEY", "super-secret-key")
    admin_email: str = os.getenv("ADMIN_EMAIL", "admin@library.local")
    admin_name: str = os.getenv("ADMIN_NAME", "Library Admin")

    # Database settings
    data_file: Optional[str] = os.getenv("LIBRARY_DB_FILE")
    db_timeout: float = float(os.getenv("DB_TIMEOUT", "10"))

    # Loan rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    fine_per_day: int = int(os.getenv("FINE_PER_DAY", "5000"))

    # External API settings
    openlibrary_timeout: float = float(os.getenv("OPENLIBRARY_TIMEOUT", "10"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Loan Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
