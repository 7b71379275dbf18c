import os
from functools import lru_cache
from typing import List


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    def __init__(self):
        self.DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
        self.DATABASE_NAME = os.getenv("DATABASE_NAME", "lims")
        self.SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
        self.ALGORITHM = "HS256"
        self.ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 12))
        self.RESET_TOKEN_EXPIRE_MINUTES = int(os.getenv("RESET_TOKEN_EXPIRE_MINUTES", 60))
        self.ENVIRONMENT = os.getenv("ENVIRONMENT", "development").strip().lower()
        self.MOCK_AUTH = _flag("MOCK_AUTH")
        self.STORE_TIMEOUT_MS = int(os.getenv("STORE_TIMEOUT_MS", 5000))
        self.UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
        self.LOG_DIR = os.getenv("LOG_DIR", "logs")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        self.LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", 30))
        self.CORS_ORIGINS: List[str] = [
            o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
        ]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def mock_auth_enabled(self) -> bool:
        # Never honoured in production, whatever the flag says.
        return self.MOCK_AUTH and not self.is_production


@lru_cache()
def get_settings() -> Settings:
    return Settings()
