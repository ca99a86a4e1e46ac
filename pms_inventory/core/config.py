"""
PMS Inventory Configuration
Core settings for the inventory stock-accounting service
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
from pathlib import Path


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Application Info
    APP_NAME: str = "PMS Inventory API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Database Configuration
    # SQLite is for development and tests; production runs on PostgreSQL
    DATABASE_URL: str = "sqlite:///./pms_inventory.db"
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20

    # CORS
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",  # Next.js frontend
    ]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Path = Path("logs")
    LOG_FILE: str = "app.log"
    ERROR_LOG_FILE: str = "error.log"
    INVENTORY_LOG_FILE: str = "inventory.log"
    LOG_TO_FILE: bool = False

    # Precision
    QUANTITY_DECIMAL_PLACES: int = 3
    COST_DECIMAL_PLACES: int = 4
    CURRENCY_DECIMAL_PLACES: int = 2

    # Business Logic Settings
    DEFAULT_EXPIRY_ALERT_DAYS: int = 7
    EXPIRATION_REPORT_DAYS: int = 30
    PO_NUMBER_PREFIX: str = "PO"
    ITEM_CODE_PREFIX: str = "ITM"
    MAX_PO_SEQUENCE_PER_DAY: int = 9999
    CYCLE_COUNT_PREFIX: str = "CC"
    MAX_CYCLE_COUNT_SEQUENCE_PER_YEAR: int = 9999
    ABC_CLASS_A_CUTOFF: int = 80
    ABC_CLASS_B_CUTOFF: int = 95

    # Date Formats
    PO_DATE_FORMAT: str = "%Y%m%d"

    # API Configuration
    API_V1_STR: str = "/api/v1"
    DOCS_URL: str = "/docs"
    REDOC_URL: str = "/redoc"
    OPENAPI_URL: str = "/openapi.json"
    DEFAULT_PAGE_SIZE: int = 100

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise and validate the log level name"""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL"""
        if not v:
            raise ValueError("DATABASE_URL must not be empty")
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


# Global settings instance
settings = Settings()
