from pydantic_settings import BaseSettings
from pydantic import Field
import os
from pathlib import Path
import dotenv

# Always load apps/.env (relative to this file), regardless of where the process is started.
_APPS_DIR = Path(__file__).resolve().parents[1]
dotenv.load_dotenv(dotenv_path=_APPS_DIR / ".env", override=False)


class Settings(BaseSettings):
    # Fallback file store. One JSON document per collection lives here.
    DATA_DIR: str = Field(default=os.getenv("DATA_DIR", "./data"))

    # Primary backend (Firestore). Leave empty to run on the file store only.
    FIREBASE_CREDENTIALS_PATH: str = Field(default=os.getenv("FIREBASE_CREDENTIALS_PATH", ""))
    # Per-call deadline for primary backend calls; expiry falls back to the file store.
    FIRESTORE_TIMEOUT_SECONDS: float = Field(default=float(os.getenv("FIRESTORE_TIMEOUT_SECONDS", "10")))

    # Webhook retry pipeline
    WEBHOOK_MAX_RETRIES: int = Field(default=int(os.getenv("WEBHOOK_MAX_RETRIES", "3")))
    WEBHOOK_RETRY_BASE_DELAY_SECONDS: float = Field(default=float(os.getenv("WEBHOOK_RETRY_BASE_DELAY_SECONDS", "60")))
    WEBHOOK_EVENT_PAUSE_SECONDS: float = Field(default=float(os.getenv("WEBHOOK_EVENT_PAUSE_SECONDS", "1.0")))
    WEBHOOK_PROCESSOR_INTERVAL_MINUTES: int = Field(default=int(os.getenv("WEBHOOK_PROCESSOR_INTERVAL_MINUTES", "5")))
    # If set, webhook ingestion requires header: X-Webhook-Secret
    WEBHOOK_SECRET: str = Field(default=os.getenv("WEBHOOK_SECRET", ""))

    # Template field keys for COD handling.
    # These must match the field names configured in the dispatch platform template.
    COD_AMOUNT_FIELD: str = Field(default=os.getenv("COD_AMOUNT_FIELD", "cod_amount"))
    COD_COLLECTED_FIELD: str = Field(default=os.getenv("COD_COLLECTED_FIELD", "cod_collected"))

    APP_HOST: str = Field(default=os.getenv("APP_HOST", "0.0.0.0"))
    APP_PORT: int = Field(default=int(os.getenv("APP_PORT", "8000")))
    LOG_LEVEL: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
