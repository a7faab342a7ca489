from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent.parent  # project root
ENV_PATH = BASE_DIR / ".env"

load_dotenv(dotenv_path=ENV_PATH)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        case_sensitive=False,
    )

    DATABASE_URL: str = "sqlite+aiosqlite:///./offerguard.db"
    DB_ECHO: bool = False
    AUTO_CREATE_TABLES: bool = False

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"
    JWT_ACCESS_MINUTES: int = 30

    # keyed hash for BSSIDs, NFC UIDs and device fingerprints
    IDENTIFIER_PEPPER: str = "change-me"

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Both gates were switched off in the field "for testing". Production
    # intent still needs product sign-off; see DESIGN.md.
    REQUIRE_LIVE_PRESENCE: bool = True
    REQUIRE_FIRST_VISIT_GATE: bool = False

    PRESENCE_MAX_DISTANCE_M: float = 100.0
    PRESENCE_REQUIRED_SIGNALS: int = 2
    PRESENCE_SCAN_WINDOW_SECONDS: int = 300

    HIGH_RISK_THRESHOLD: int = 70

    STAFF_QR_DEFAULT_TTL_SECONDS: int = 120
    STAFF_QR_MIN_TTL_SECONDS: int = 30
    STAFF_QR_MAX_TTL_SECONDS: int = 900
    ONBOARD_QR_DEFAULT_TTL_SECONDS: int = 3600
    ONBOARD_QR_MAX_TTL_SECONDS: int = 86400

    STAFF_SESSION_MINUTES: int = 30

    QR_LINK_BASE: str = "offerguard://"
    QR_SHORT_BASE: str = "https://ogd.ly"


settings = Settings()
