from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # --- APP ---
    APP_NAME: str = "Storefront API"
    API_PREFIX: str = "/api"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["*"]

    # --- DATABASE ---
    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "storefront"

    # --- AUTH ---
    SECRET_KEY: str
    TOKEN_EXPIRY_HOURS: float = 1.0

    # --- UPLOADS ---
    UPLOAD_DIR: str = "uploads"

    # --- ORDERS / PAYMENTS ---
    PAYMENT_DELAY_SECONDS: float = 1.5
    RESTOCK_ON_CANCEL: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = False

    @field_validator("SECRET_KEY")
    @classmethod
    def _check_secret_key(cls, value: str) -> str:
        if not value or len(value) < 16:
            raise ValueError("SECRET_KEY must be at least 16 characters long")
        return value

    @field_validator("TOKEN_EXPIRY_HOURS")
    @classmethod
    def _check_expiry(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("TOKEN_EXPIRY_HOURS must be positive")
        return value

    def __repr__(self):
        """Hide secrets when printed"""
        return (
            f"<Settings APP_NAME={self.APP_NAME} "
            f"DATABASE_NAME={self.DATABASE_NAME} "
            f"SECRET_KEY=**** RESTOCK_ON_CANCEL={self.RESTOCK_ON_CANCEL}>"
        )


settings = Settings()
