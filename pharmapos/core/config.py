# pharmapos/core/config.py
import os
from decimal import Decimal
from typing import List
from pydantic import BaseModel
from dotenv import load_dotenv
from urllib.parse import quote_plus

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def _database_url() -> str:
    explicit = os.getenv("DATABASE_URL", "").strip()
    if explicit:
        return explicit

    host = os.getenv("MYSQL_HOST", "").strip()
    if not host:
        return "sqlite:///./pharmapos.db"

    user = os.getenv("MYSQL_USER", "pharmapos")
    password = os.getenv("MYSQL_PASSWORD", "")
    port = int(os.getenv("MYSQL_PORT", "3306"))
    db_name = os.getenv("MYSQL_DB", "pharmapos")
    driver = os.getenv("DB_DRIVER", "pymysql")
    return (f"mysql+{driver}://{quote_plus(user)}:{quote_plus(password)}"
            f"@{host}:{port}/{db_name}?charset=utf8mb4")


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "PharmaPOS")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ))

    # ---------- Database ----------
    DATABASE_URL: str = _database_url()
    DB_ECHO: bool = _flag("DB_ECHO")
    # Busy timeout for SQLite, pool checkout timeout for server databases.
    DB_LOCK_TIMEOUT_SECONDS: int = int(
        os.getenv("DB_LOCK_TIMEOUT_SECONDS", "30"))

    # ---------- Billing ----------
    TAX_RATE: Decimal = Decimal(os.getenv("TAX_RATE", "13") or "13")
    INVOICE_PREFIX: str = os.getenv("INVOICE_PREFIX", "INV")
    INVOICE_NUMBER_PAD: int = int(os.getenv("INVOICE_NUMBER_PAD", "6"))
    REFUND_RESTOCK: bool = _flag("REFUND_RESTOCK", "true")
    CUSTOMER_STATS_RETRIES: int = int(
        os.getenv("CUSTOMER_STATS_RETRIES", "3"))

    # ---------- Stock ----------
    ALLOCATION_MAX_RETRIES: int = int(
        os.getenv("ALLOCATION_MAX_RETRIES", "3"))
    MINIMUM_STOCK_LEVEL: int = int(os.getenv("MINIMUM_STOCK_LEVEL", "10"))
    NEAR_EXPIRY_MONTHS: int = int(os.getenv("NEAR_EXPIRY_MONTHS", "3"))

    # ---------- Logging ----------
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: str = os.getenv("LOG_FILE", "")

    TIMEZONE: str = os.getenv("TIMEZONE", "Asia/Kathmandu")


settings = Settings()
