import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API Settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database Settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    db_timeout: float = float(os.getenv("DB_TIMEOUT", "5.0"))  # seconds

    # Circulation Settings
    # every "today" comparison is made in this zone
    library_timezone: str = os.getenv("LIBRARY_TIMEZONE", "UTC")
    default_renewal_days: int = int(os.getenv("DEFAULT_RENEWAL_DAYS", "7"))

    # Application Settings
    app_name: str = os.getenv("APP_NAME", "Community Library Circulation")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


# Global settings instance
settings = Settings()
