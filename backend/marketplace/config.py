from pydantic_settings import BaseSettings
from typing import List

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./dev.db"
    APP_HOST: str = "127.0.0.1"
    APP_PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    FRONTEND_ORIGINS: List[str] = ["http://localhost:3000"]

    SECRET_KEY: str = "change-this-secret"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 10080

    PAYMENT_CURRENCY: str = "EUR"
    PAYMENT_MOCK_DELAY_MS: int = 200
    PAYMENT_MOCK_TRANSIENT_RATE: float = 0.01
    PAYMENT_TIMEOUT_MS: int = 5000
    PAYMENT_MAX_RETRIES: int = 2
    PAYMENT_RECONCILE_AFTER_SECONDS: int = 900
    REQUIRE_PAYMENT_BEFORE_TRANSIT: bool = True

    NOTIFY_MOCK_DELAY_MS: int = 50
    NOTIFY_MAX_ATTEMPTS: int = 3
    NOTIFY_BATCH_SIZE: int = 50

    SCHEDULER_ENABLED: bool = True
    NOTIFY_DISPATCH_INTERVAL_SECONDS: int = 10
    RECONCILE_INTERVAL_SECONDS: int = 60

    PACKAGE_LOCK_TIMEOUT_SECONDS: int = 10
    TRANSFER_CODE_LENGTH: int = 6
    REQUIRE_TRANSFER_CODE_ON_ACCEPT: bool = False
    DEFAULT_RIDE_PRICE_PER_KG: float = 5.0
    RELAY_RIDE_PRICE_PER_KG: float = 2.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

settings = Settings()
