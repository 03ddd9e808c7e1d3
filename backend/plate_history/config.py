# backend/plate_history/config.py

import os

from dotenv import load_dotenv

# Load .env from the working directory (no-op when absent)
load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./plate_history.db")
SQL_ECHO = _env_bool("SQL_ECHO")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))

# External plate recognition service (POST /process-image, /process-image-url)
RECOGNITION_API_URL = os.getenv("RECOGNITION_API_URL", "http://127.0.0.1:8001").rstrip("/")
RECOGNITION_TIMEOUT = float(os.getenv("RECOGNITION_TIMEOUT", "30"))
