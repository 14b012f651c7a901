import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env from the project root
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


@dataclass
class Settings:
    environment: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", "development").lower())
    jwt_secret: str = field(default_factory=lambda: os.getenv("JWT_SECRET", "devsecret"))
    jwt_algorithm: str = field(default_factory=lambda: os.getenv("JWT_ALGORITHM", "HS256"))
    mongo_uri: str = field(default_factory=lambda: os.getenv("MONGO_URI", ""))
    mongo_db_name: str = field(default_factory=lambda: os.getenv("MONGO_DB_NAME", "pharma_ledger"))
    otp_ttl_seconds: int = field(default_factory=lambda: int(os.getenv("OTP_TTL_SECONDS", "300")))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())
    cors_origins: list[str] = field(
        default_factory=lambda: [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


settings = Settings()
