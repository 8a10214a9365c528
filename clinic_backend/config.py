from __future__ import annotations

import logging
import os
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(dotenv_path=PROJECT_ROOT / ".env")

# SQLite file in the project root unless overridden
DATABASE_URL = os.getenv("CLINIC_DATABASE_URL", f"sqlite:///{PROJECT_ROOT / 'clinic.sqlite'}")

# Calendar days (slots, blocks, "today") are evaluated in this timezone
CLINIC_TIMEZONE = ZoneInfo(os.getenv("CLINIC_TIMEZONE", "UTC"))

# Shared secret of the identity provider (HS256)
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "60"))

STORE_CAS_RETRIES = int(os.getenv("STORE_CAS_RETRIES", "5"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=level or LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
