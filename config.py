import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "plantation"
    jwt_secret: str = "change-me"
    jwt_expires_hours: int = 24
    bcrypt_rounds: int = 12
    public_base_url: Optional[str] = None
    log_level: str = "INFO"
    port: int = 8000


def load_settings() -> Settings:
    load_dotenv()
    return Settings(
        database_url=os.getenv("DATABASE_URL", Settings.database_url),
        database_name=os.getenv("DATABASE_NAME", Settings.database_name),
        jwt_secret=os.getenv("JWT_SECRET", Settings.jwt_secret),
        jwt_expires_hours=int(os.getenv("JWT_EXPIRES_HOURS", Settings.jwt_expires_hours)),
        bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", Settings.bcrypt_rounds)),
        # Empty string means "derive from the incoming request"
        public_base_url=os.getenv("PUBLIC_BASE_URL") or None,
        log_level=os.getenv("LOG_LEVEL", Settings.log_level).upper(),
        port=int(os.getenv("PORT", Settings.port)),
    )


def configure_logging(level: str = "INFO"):
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)
    root.setLevel(level)
