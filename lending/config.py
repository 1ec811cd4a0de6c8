import os
from dataclasses import dataclass
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Database Settings
    database_file: str = os.getenv("LENDING_DB_FILE", "library.db")
    db_busy_timeout: float = float(os.getenv("LENDING_DB_BUSY_TIMEOUT", "10"))

    # Lending Policy Settings
    max_active_loans: int = int(os.getenv("MAX_ACTIVE_LOANS", "5"))
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    max_loan_days: int = int(os.getenv("MAX_LOAN_DAYS", "60"))
    fine_daily_rate: Decimal = Decimal(os.getenv("FINE_DAILY_RATE", "0.50"))
    # Run each borrow/return inside one BEGIN IMMEDIATE transaction
    serializable_lending: bool = _env_bool("SERIALIZABLE_LENDING", "True")

    # API Settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Application Settings
    app_name: str = os.getenv("APP_NAME", "Library Lending Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
